"""
When to ask the model service to prune old tool outcomes from the context.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

from src.llm.pruning import estimate_tokens
from src.llm.types import Message, PruningInstruction

logger = logging.getLogger(__name__)


class ContextPruningPolicy:
    def __init__(
        self,
        trigger_tokens: int,
        keep_recent: int,
        clear_at_least: int,
        exempt_tools: Sequence[str] = ("memory",),
        enabled: bool = True,
    ):
        self.trigger_tokens = trigger_tokens
        self.keep_recent = keep_recent
        self.clear_at_least = clear_at_least
        self.exempt_tools: Tuple[str, ...] = tuple(exempt_tools)
        self.enabled = enabled

    def instruction_for(self, messages: Sequence[Message]) -> Optional[PruningInstruction]:
        """Return a pruning instruction once the history outgrows the trigger, else None."""
        if not self.enabled:
            return None
        size = estimate_tokens(messages)
        if size < self.trigger_tokens:
            return None
        logger.info("Context pruning active: ~%s tokens (trigger %s)", size, self.trigger_tokens)
        return PruningInstruction(
            keep_recent=self.keep_recent,
            clear_at_least_tokens=self.clear_at_least,
            trigger_tokens=self.trigger_tokens,
            exclude_tools=self.exempt_tools,
        )
