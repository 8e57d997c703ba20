"""
Provider-neutral conversation primitives and model stream events.

Clients translate these to and from their wire formats; the orchestrator
and the transcript store only ever see these types.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Literal, Optional, Protocol, Sequence, Tuple, Union


Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolRequest:
    """A model-issued tool call. ``external`` requests are fulfilled by the provider."""

    id: str
    name: str
    input: dict
    external: bool = False


@dataclass(frozen=True)
class ToolOutcome:
    """
    Result paired with a ToolRequest id.

    Local outcomes carry serialized JSON text in ``content``. Outcomes of
    externally-fulfilled requests keep the provider payload as-is and
    remember the provider block type so it can be replayed verbatim.
    """

    request_id: str
    content: Any
    is_error: bool = False
    external: bool = False
    block_type: str = "tool_result"


ContentBlock = Union[TextBlock, ToolRequest, ToolOutcome]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class Message:
    """A single conversation message. Immutable once built."""

    role: Role
    content: Tuple[ContentBlock, ...]
    timestamp: dt.datetime = field(default_factory=_utcnow)

    @classmethod
    def text(cls, role: Role, text: str) -> "Message":
        return cls(role=role, content=(TextBlock(text),))

    @classmethod
    def of(cls, role: Role, blocks: Sequence[ContentBlock]) -> "Message":
        return cls(role=role, content=tuple(blocks))

    def text_blocks(self) -> List[TextBlock]:
        return [b for b in self.content if isinstance(b, TextBlock)]

    def tool_requests(self) -> List[ToolRequest]:
        return [b for b in self.content if isinstance(b, ToolRequest)]

    def tool_outcomes(self) -> List[ToolOutcome]:
        return [b for b in self.content if isinstance(b, ToolOutcome)]

    def joined_text(self) -> str:
        return "\n".join(b.text for b in self.text_blocks())


def block_to_dict(block: ContentBlock) -> dict:
    """Serialize a block for storage."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolRequest):
        return {
            "type": "tool_request",
            "id": block.id,
            "name": block.name,
            "input": block.input,
            "external": block.external,
        }
    return {
        "type": "tool_outcome",
        "request_id": block.request_id,
        "content": block.content,
        "is_error": block.is_error,
        "external": block.external,
        "block_type": block.block_type,
    }


def block_from_dict(data: dict) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data.get("text", ""))
    if kind == "tool_request":
        return ToolRequest(
            id=data["id"],
            name=data["name"],
            input=data.get("input") or {},
            external=bool(data.get("external", False)),
        )
    if kind == "tool_outcome":
        return ToolOutcome(
            request_id=data["request_id"],
            content=data.get("content"),
            is_error=bool(data.get("is_error", False)),
            external=bool(data.get("external", False)),
            block_type=data.get("block_type") or "tool_result",
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


# --- Model stream ---


@dataclass
class ModelTurn:
    """Everything a single model invocation produced."""

    blocks: List[ContentBlock]
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class BlockStop:
    """A content block finished streaming."""


@dataclass(frozen=True)
class TurnComplete:
    turn: ModelTurn


ModelStreamEvent = Union[TextDelta, BlockStop, TurnComplete]


@dataclass(frozen=True)
class PruningInstruction:
    """Drop older tool outcome content, keeping the most recent ``keep`` and exempt tools."""

    keep_recent: int
    clear_at_least_tokens: int
    trigger_tokens: int
    exclude_tools: Tuple[str, ...] = ()


class ModelInvocationError(Exception):
    """The model service failed to produce a turn."""


class ModelClient(Protocol):
    model_name: str

    def stream_turn(
        self,
        *,
        system: str,
        messages: Sequence[Message],
        tools: Sequence[Any],
        max_tokens: int,
        temperature: float,
        pruning: Optional[PruningInstruction] = None,
    ) -> AsyncIterator[ModelStreamEvent]:
        ...
