"""
Client-side context pruning for providers without native context editing.
"""

from __future__ import annotations

import json
from typing import Dict, List, Sequence

from .types import Message, PruningInstruction, ToolOutcome, ToolRequest

CLEARED_PLACEHOLDER = "[tool result cleared to save context]"

# Rough chars-per-token ratio; only used to compare against configured sizes.
_CHARS_PER_TOKEN = 4


def _block_chars(block) -> int:
    if isinstance(block, ToolOutcome):
        content = block.content
        return len(content) if isinstance(content, str) else len(json.dumps(content, default=str))
    if isinstance(block, ToolRequest):
        return len(block.name) + len(json.dumps(block.input, default=str))
    return len(getattr(block, "text", ""))


def estimate_tokens(messages: Sequence[Message]) -> int:
    chars = sum(_block_chars(b) for m in messages for b in m.content)
    return chars // _CHARS_PER_TOKEN


def apply_pruning(messages: Sequence[Message], instruction: PruningInstruction) -> List[Message]:
    """
    Return a copy of ``messages`` with older local tool outcomes blanked.

    The ``keep_recent`` newest outcomes and outcomes of exempt tools are left
    alone. Nothing is cleared unless at least ``clear_at_least_tokens`` would be freed.
    """
    names: Dict[str, str] = {}
    for message in messages:
        for block in message.tool_requests():
            names[block.id] = block.name

    candidates = []
    for mi, message in enumerate(messages):
        for bi, block in enumerate(message.content):
            if not isinstance(block, ToolOutcome) or block.external:
                continue
            if names.get(block.request_id) in instruction.exclude_tools:
                continue
            if block.content == CLEARED_PLACEHOLDER:
                continue
            candidates.append((mi, bi))

    keep = max(0, instruction.keep_recent)
    to_clear = candidates[: max(0, len(candidates) - keep)]
    freed = sum(_block_chars(messages[mi].content[bi]) for mi, bi in to_clear) // _CHARS_PER_TOKEN
    if not to_clear or freed < instruction.clear_at_least_tokens:
        return list(messages)

    clear_set = set(to_clear)
    pruned: List[Message] = []
    for mi, message in enumerate(messages):
        if not any((mi, bi) in clear_set for bi in range(len(message.content))):
            pruned.append(message)
            continue
        blocks = []
        for bi, block in enumerate(message.content):
            if (mi, bi) in clear_set:
                block = ToolOutcome(
                    request_id=block.request_id,
                    content=CLEARED_PLACEHOLDER,
                    is_error=block.is_error,
                )
            blocks.append(block)
        pruned.append(Message(role=message.role, content=tuple(blocks), timestamp=message.timestamp))
    return pruned
