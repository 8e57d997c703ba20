"""
Anthropic Messages API client with streaming, server tools and context editing.
"""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator, List, Optional, Sequence

import anthropic

from .types import (
    BlockStop,
    ContentBlock,
    Message,
    ModelInvocationError,
    ModelStreamEvent,
    ModelTurn,
    PruningInstruction,
    TextBlock,
    TextDelta,
    ToolOutcome,
    ToolRequest,
    TurnComplete,
)

DEFAULT_ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")
CONTEXT_MANAGEMENT_BETA = "context-management-2025-06-27"

logger = logging.getLogger(__name__)


def to_anthropic_block(block: ContentBlock) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolRequest):
        return {
            "type": "server_tool_use" if block.external else "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    if block.external:
        return {"type": block.block_type, "tool_use_id": block.request_id, "content": block.content}
    out = {"type": "tool_result", "tool_use_id": block.request_id, "content": block.content}
    if block.is_error:
        out["is_error"] = True
    return out


def to_anthropic_message(message: Message) -> dict:
    return {"role": message.role, "content": [to_anthropic_block(b) for b in message.content]}


def from_anthropic_content(content: Sequence[Any]) -> List[ContentBlock]:
    """Convert final-message content blocks (SDK objects or dicts) to neutral blocks."""
    blocks: List[ContentBlock] = []
    for raw in content:
        data = raw.model_dump() if hasattr(raw, "model_dump") else dict(raw)
        kind = data.get("type")
        if kind == "text":
            blocks.append(TextBlock(text=data.get("text") or ""))
        elif kind == "tool_use":
            blocks.append(ToolRequest(id=data["id"], name=data["name"], input=data.get("input") or {}))
        elif kind == "server_tool_use":
            blocks.append(
                ToolRequest(id=data["id"], name=data["name"], input=data.get("input") or {}, external=True)
            )
        elif kind and kind.endswith("_tool_result") and "tool_use_id" in data:
            blocks.append(
                ToolOutcome(
                    request_id=data["tool_use_id"],
                    content=data.get("content"),
                    external=True,
                    block_type=kind,
                )
            )
        else:
            logger.debug("Dropping unsupported content block type %s", kind)
    return blocks


def context_management_params(instruction: PruningInstruction) -> dict:
    edit: dict = {
        "type": "clear_tool_uses_20250919",
        "trigger": {"type": "input_tokens", "value": instruction.trigger_tokens},
        "keep": {"type": "tool_uses", "value": instruction.keep_recent},
        "clear_at_least": {"type": "input_tokens", "value": instruction.clear_at_least_tokens},
    }
    if instruction.exclude_tools:
        edit["exclude_tools"] = list(instruction.exclude_tools)
    return {"edits": [edit]}


class AnthropicModelClient:
    """Streams one model turn at a time from the Anthropic API."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self.model_name = model_name or DEFAULT_ANTHROPIC_MODEL
        if client is None:
            key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not key:
                raise ValueError("API key required. Set ANTHROPIC_API_KEY.")
            client = anthropic.AsyncAnthropic(api_key=key, max_retries=3)
        self.client = client

    async def stream_turn(
        self,
        *,
        system: str,
        messages: Sequence[Message],
        tools: Sequence[Any],
        max_tokens: int,
        temperature: float,
        pruning: Optional[PruningInstruction] = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        declarations = [t.to_anthropic() for t in tools]
        params: dict = {
            "model": self.model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}],
            "messages": [to_anthropic_message(m) for m in messages],
            "tools": declarations,
        }
        betas: List[str] = []
        if pruning is not None:
            params["context_management"] = context_management_params(pruning)
            betas.append(CONTEXT_MANAGEMENT_BETA)
        if any(d.get("type", "").startswith("memory_") for d in declarations) and CONTEXT_MANAGEMENT_BETA not in betas:
            betas.append(CONTEXT_MANAGEMENT_BETA)
        if betas:
            params["betas"] = betas

        try:
            async with self.client.beta.messages.stream(**params) as stream:
                async for event in stream:
                    if event.type == "content_block_delta" and getattr(event.delta, "type", None) == "text_delta":
                        yield TextDelta(event.delta.text)
                    elif event.type == "content_block_stop":
                        yield BlockStop()
                final = await stream.get_final_message()
        except anthropic.APIError as exc:
            raise ModelInvocationError(f"Anthropic request failed: {exc}") from exc

        usage = getattr(final, "usage", None)
        yield TurnComplete(
            ModelTurn(
                blocks=from_anthropic_content(final.content),
                stop_reason=final.stop_reason,
                input_tokens=getattr(usage, "input_tokens", 0) or 0,
                output_tokens=getattr(usage, "output_tokens", 0) or 0,
            )
        )
