"""
Orchestrator: the conversation loop, its events, and the channel that streams them.
"""

from .agent import CohortOrchestrator
from .config import CohortBuilderConfig
from .context import ContextPruningPolicy
from .events import (
    ContentDelta,
    ErrorOccurred,
    FinalResponse,
    SessionEnded,
    StreamEvent,
    ToolFinished,
    ToolStarted,
)
from .phase import PhaseTracker, classify_text
from .session import ConversationSession
from .streaming import EventChannel, format_sse, pump, start_pump

__all__ = [
    "CohortBuilderConfig",
    "CohortOrchestrator",
    "ContentDelta",
    "ContextPruningPolicy",
    "ConversationSession",
    "ErrorOccurred",
    "EventChannel",
    "FinalResponse",
    "PhaseTracker",
    "SessionEnded",
    "StreamEvent",
    "ToolFinished",
    "ToolStarted",
    "classify_text",
    "format_sse",
    "pump",
    "start_pump",
]
