"""
Append-only persistence of cohort-builder conversations.
"""

from .store import (
    SessionSummary,
    SessionTranscript,
    ToolInvocation,
    TranscriptError,
    TranscriptStore,
    UsageStats,
)

__all__ = [
    "SessionSummary",
    "SessionTranscript",
    "ToolInvocation",
    "TranscriptError",
    "TranscriptStore",
    "UsageStats",
]
