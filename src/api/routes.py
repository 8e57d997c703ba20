"""
API routes: cohort chat (SSE), suggestions, save, export, session history, usage, health.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from src.auth.context import SessionContext
from src.auth.tenant import RequestIdentity, get_request_identity
from src.llm.types import Message, block_to_dict
from src.orchestrator import CohortOrchestrator, EventChannel, format_sse, start_pump
from src.transcripts import SessionSummary, TranscriptStore

from .deps import get_orchestrator, get_transcripts
from .models import (
    CohortChatRequest,
    ExportCohortRequest,
    HealthResponse,
    SaveCohortRequest,
    SaveCohortResponse,
    SessionDetailResponse,
    SessionListResponse,
    SessionOut,
    Suggestion,
    SuggestionsResponse,
    UsageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])

SUGGESTIONS: List[Suggestion] = [
    Suggestion(id="1", query="Show me women aged 25-34 in Berlin with income > €50,000", category="demographic"),
    Suggestion(id="2", query="Find parents with two children who buy organic food", category="psychographic"),
    Suggestion(id="3", query="Which demographics shop at Aldi weekly?", category="behavioral"),
    Suggestion(id="4", query="Build a cohort of 500,000 people likely to buy premium skincare", category="campaign"),
    Suggestion(id="5", query="Urban millennials interested in sustainable products", category="lifestyle"),
    Suggestion(id="6", query="High-income families with children under 10", category="demographic"),
]


def _session_out(summary: SessionSummary) -> SessionOut:
    return SessionOut(
        sessionId=summary.session_id,
        userId=summary.user_id,
        appTag=summary.app_tag,
        workflowTag=summary.workflow_tag,
        model=summary.model,
        status=summary.status,
        terminationReason=summary.termination_reason,
        iterationCount=summary.iteration_count,
        messageCount=summary.message_count,
        totalInputTokens=summary.total_input_tokens,
        totalOutputTokens=summary.total_output_tokens,
        startedAt=summary.started_at,
        lastActivityAt=summary.last_activity_at,
        completedAt=summary.completed_at,
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    """Health check."""
    state = request.app.state
    analytics = getattr(state, "analytics", None)
    registry = getattr(state, "registry", None)
    analytics_ok = await analytics.check_health() if analytics is not None else False
    return HealthResponse(
        status="ok",
        analytics=analytics_ok,
        transcripts=getattr(state, "transcripts", None) is not None,
        tools=registry.names() if registry is not None else [],
    )


async def _session_is_foreign(store: Optional[TranscriptStore], ctx: SessionContext) -> bool:
    if store is None or not ctx.session_id:
        return False
    try:
        return await store.owned_by_other_tenant(ctx.session_id, ctx.tenant_id)
    except Exception:
        # Lookup failure must not block the live conversation.
        logger.exception("Session ownership check failed", extra={"context": ctx.log_fields()})
        return False


@router.post("/cohort/chat")
async def cohort_chat(
    request: Request,
    body: CohortChatRequest,
    identity: RequestIdentity = Depends(get_request_identity),
) -> StreamingResponse:
    """Run one conversational turn and stream its events via SSE."""
    orchestrator: CohortOrchestrator = get_orchestrator(request)
    ctx = SessionContext(
        tenant_id=identity.tenant_id,
        user_id=identity.user_id(body.userId),
        session_id=body.sessionId,
        correlation_id=identity.correlation_id,
    )
    if await _session_is_foreign(orchestrator.transcripts, ctx):
        raise HTTPException(status_code=404, detail="Session not found")

    history = [Message.text(m.role, m.content) for m in body.messages if m.content]
    session = orchestrator.open_session(ctx, history)
    logger.info(
        "Cohort chat: history=%s query_len=%s", len(history), len(body.query), extra={"context": ctx.log_fields()}
    )

    channel = EventChannel(ctx)
    background = getattr(request.app.state, "background_tasks", None)
    start_pump(orchestrator.run(session, ctx, body.query), channel, background)

    async def stream():
        try:
            async for event in channel.events():
                yield format_sse(event)
        finally:
            channel.disconnect()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Correlation-ID": ctx.correlation_id,
        },
    )


@router.get("/cohort/suggestions", response_model=SuggestionsResponse)
async def suggestions() -> SuggestionsResponse:
    """Canned example queries."""
    return SuggestionsResponse(suggestions=SUGGESTIONS)


@router.post("/cohort/save", response_model=SaveCohortResponse)
async def save_cohort(
    body: SaveCohortRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    store: TranscriptStore = Depends(get_transcripts),
) -> SaveCohortResponse:
    cohort_id = await store.save_cohort(
        identity.tenant_id,
        identity.user_id(),
        name=body.name,
        sql=body.sql,
        size=body.size,
        breakdown=body.breakdown,
        evaluation=body.evaluation,
    )
    return SaveCohortResponse(cohortId=cohort_id)


@router.post("/cohort/export")
async def export_cohort(
    body: ExportCohortRequest,
    identity: RequestIdentity = Depends(get_request_identity),
) -> PlainTextResponse:
    """Return the cohort query as a downloadable .sql file."""
    logger.info("Exporting cohort for tenant %s (format=%s)", identity.tenant_id, body.format)
    if body.format != "sql":
        raise HTTPException(status_code=400, detail="Unsupported format")
    filename = f"cohort_{int(time.time() * 1000)}.sql"
    return PlainTextResponse(
        body.query,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/cohort/sessions", response_model=SessionListResponse)
async def list_sessions(
    identity: RequestIdentity = Depends(get_request_identity),
    store: TranscriptStore = Depends(get_transcripts),
    app_tag: Optional[str] = Query(None, alias="appTag"),
    workflow_tag: Optional[str] = Query(None, alias="workflowTag"),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
) -> SessionListResponse:
    """The caller's sessions, newest activity first."""
    summaries = await store.list_user_sessions(
        identity.tenant_id,
        identity.user_id(),
        app_tag=app_tag,
        workflow_tag=workflow_tag,
        limit=limit,
        skip=skip,
    )
    return SessionListResponse(sessions=[_session_out(s) for s in summaries])


@router.get("/cohort/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session(
    session_id: str,
    identity: RequestIdentity = Depends(get_request_identity),
    store: TranscriptStore = Depends(get_transcripts),
) -> SessionDetailResponse:
    transcript = await store.get_session(session_id, identity.tenant_id)
    if transcript is None:
        raise HTTPException(status_code=404, detail="Session not found")
    messages: List[dict[str, Any]] = [
        {
            "role": m.role,
            "content": [block_to_dict(b) for b in m.content],
            "timestamp": m.timestamp.isoformat(),
        }
        for m in transcript.messages
    ]
    return SessionDetailResponse(
        session=_session_out(transcript.summary),
        messages=messages,
        toolInvocations=[i.to_payload() for i in transcript.invocations],
    )


@router.get("/cohort/usage", response_model=UsageResponse)
async def usage(
    identity: RequestIdentity = Depends(get_request_identity),
    store: TranscriptStore = Depends(get_transcripts),
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
) -> UsageResponse:
    """Token and session totals for the tenant."""
    stats = await store.usage_stats(identity.tenant_id, start, end)
    return UsageResponse(
        tenantId=stats.tenant_id,
        sessionCount=stats.session_count,
        messageCount=stats.message_count,
        totalInputTokens=stats.total_input_tokens,
        totalOutputTokens=stats.total_output_tokens,
        sessionsByApp=stats.sessions_by_app,
    )
