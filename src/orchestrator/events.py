"""
Events the orchestrator emits toward the one client watching a session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union


@dataclass(frozen=True)
class ContentDelta:
    type: ClassVar[str] = "content_delta"
    terminal: ClassVar[bool] = False

    content: str
    is_exploration: bool
    is_final_result: bool
    phase: str

    def to_payload(self) -> dict:
        return {
            "type": self.type,
            "content": self.content,
            "isExploration": self.is_exploration,
            "isFinalResult": self.is_final_result,
            "phase": self.phase,
        }


@dataclass(frozen=True)
class ToolStarted:
    type: ClassVar[str] = "tool_use"
    terminal: ClassVar[bool] = False

    tool: str
    tool_id: str
    input: dict
    is_server_tool: bool = False

    def to_payload(self) -> dict:
        return {
            "type": self.type,
            "tool": self.tool,
            "toolId": self.tool_id,
            "input": self.input,
            "isServerTool": self.is_server_tool,
        }


@dataclass(frozen=True)
class ToolFinished:
    type: ClassVar[str] = "tool_result"
    terminal: ClassVar[bool] = False

    tool: str
    tool_id: str
    result: Any
    result_summary: str

    def to_payload(self) -> dict:
        return {
            "type": self.type,
            "tool": self.tool,
            "toolId": self.tool_id,
            "result": self.result,
            "resultSummary": self.result_summary,
        }


@dataclass(frozen=True)
class FinalResponse:
    type: ClassVar[str] = "final_response"
    terminal: ClassVar[bool] = False

    iteration: int
    text_block_count: int

    def to_payload(self) -> dict:
        return {
            "type": self.type,
            "iteration": self.iteration,
            "textBlockCount": self.text_block_count,
            "message": "Analysis complete - final response delivered",
        }


@dataclass(frozen=True)
class SessionEnded:
    type: ClassVar[str] = "end"
    terminal: ClassVar[bool] = True

    total_iterations: int
    session_id: str
    status: str = "completed"
    reason: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "type": self.type,
            "totalIterations": self.total_iterations,
            "sessionId": self.session_id,
            "status": self.status,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ErrorOccurred:
    type: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True

    error: str

    def to_payload(self) -> dict:
        return {"type": self.type, "error": self.error}


StreamEvent = Union[ContentDelta, ToolStarted, ToolFinished, FinalResponse, SessionEnded, ErrorOccurred]
