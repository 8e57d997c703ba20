"""
Request and response models for the cohort builder API.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ChatMessageIn(BaseModel):
    """A prior turn supplied by the client."""

    role: Literal["user", "assistant"]
    content: str = ""


class CohortChatRequest(BaseModel):
    """Request body for POST /api/cohort/chat."""

    messages: List[ChatMessageIn] = Field(default_factory=list, description="Prior conversation turns")
    query: str = Field(..., min_length=1, description="New user message")
    sessionId: Optional[str] = Field(None, description="Resume this session; omit to start a new one")
    userId: Optional[str] = None


class Suggestion(BaseModel):
    id: str
    query: str
    category: str


class SuggestionsResponse(BaseModel):
    suggestions: List[Suggestion]


class SaveCohortRequest(BaseModel):
    """Request body for POST /api/cohort/save."""

    name: str = Field("Untitled cohort", min_length=1)
    sql: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    breakdown: Optional[Dict[str, Dict[str, float]]] = None
    evaluation: Optional[Dict[str, Any]] = None


class SaveCohortResponse(BaseModel):
    success: bool = True
    cohortId: str


class ExportCohortRequest(BaseModel):
    """Request body for POST /api/cohort/export."""

    query: str = Field(..., min_length=1)
    format: str = "sql"


class SessionOut(BaseModel):
    sessionId: str
    userId: str
    appTag: str
    workflowTag: Optional[str] = None
    model: str
    status: str
    terminationReason: Optional[str] = None
    iterationCount: int
    messageCount: int
    totalInputTokens: int
    totalOutputTokens: int
    startedAt: dt.datetime
    lastActivityAt: dt.datetime
    completedAt: Optional[dt.datetime] = None


class SessionListResponse(BaseModel):
    sessions: List[SessionOut]


class SessionDetailResponse(BaseModel):
    session: SessionOut
    messages: List[Dict[str, Any]]
    toolInvocations: List[Dict[str, Any]]


class UsageResponse(BaseModel):
    tenantId: str
    sessionCount: int
    messageCount: int
    totalInputTokens: int
    totalOutputTokens: int
    sessionsByApp: Dict[str, int]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    analytics: bool = False
    transcripts: bool = False
    tools: List[str] = Field(default_factory=list)
