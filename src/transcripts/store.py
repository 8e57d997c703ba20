"""
Transcript store over async SQLAlchemy.

Messages are only ever appended; each assistant append also records its
token usage and the tool invocations of that turn.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import ChatMessageRecord, ChatSessionRecord, SavedCohortRecord, ToolInvocationRecord
from src.llm.types import Message, block_from_dict, block_to_dict

logger = logging.getLogger(__name__)


class TranscriptError(Exception):
    """The requested transcript operation is not allowed."""


@dataclass
class ToolInvocation:
    """Audit detail for one tool call within an assistant turn."""

    tool_name: str
    tool_id: str
    input: Any
    result: Any = None
    is_server_tool: bool = False
    is_error: bool = False
    timestamp: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    def to_payload(self) -> dict:
        return {
            "toolName": self.tool_name,
            "toolId": self.tool_id,
            "input": self.input,
            "result": self.result,
            "timestamp": self.timestamp.isoformat(),
            "isServerTool": self.is_server_tool,
            "isError": self.is_error,
        }


@dataclass
class SessionSummary:
    session_id: str
    tenant_id: str
    user_id: str
    app_tag: str
    workflow_tag: Optional[str]
    model: str
    status: str
    termination_reason: Optional[str]
    iteration_count: int
    message_count: int
    total_input_tokens: int
    total_output_tokens: int
    started_at: dt.datetime
    last_activity_at: dt.datetime
    completed_at: Optional[dt.datetime]


@dataclass
class SessionTranscript:
    summary: SessionSummary
    messages: List[Message]
    invocations: List[ToolInvocation]


@dataclass
class UsageStats:
    tenant_id: str
    session_count: int = 0
    message_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    sessions_by_app: Dict[str, int] = field(default_factory=dict)


def _summary(row: ChatSessionRecord) -> SessionSummary:
    return SessionSummary(
        session_id=row.id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        app_tag=row.app_tag,
        workflow_tag=row.workflow_tag,
        model=row.model,
        status=row.status,
        termination_reason=row.termination_reason,
        iteration_count=row.iteration_count,
        message_count=row.message_count,
        total_input_tokens=row.total_input_tokens,
        total_output_tokens=row.total_output_tokens,
        started_at=row.started_at,
        last_activity_at=row.last_activity_at,
        completed_at=row.completed_at,
    )


class TranscriptStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _get_owned(self, db: AsyncSession, session_id: str, tenant_id: str) -> ChatSessionRecord:
        row = await db.get(ChatSessionRecord, session_id)
        if row is None or row.tenant_id != tenant_id:
            raise TranscriptError(f"Unknown session: {session_id}")
        return row

    async def owned_by_other_tenant(self, session_id: str, tenant_id: str) -> bool:
        async with self._session_factory() as db:
            owner = await db.scalar(select(ChatSessionRecord.tenant_id).where(ChatSessionRecord.id == session_id))
        return owner is not None and owner != tenant_id

    async def ensure_session(
        self,
        session_id: str,
        tenant_id: str,
        user_id: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        max_iterations: int,
        app_tag: str = "cohort_builder",
        workflow_tag: Optional[str] = None,
    ) -> bool:
        """
        Create the session, or reactivate it for a resumed turn.

        Returns True when a new session was created. Raises TranscriptError
        if the id belongs to another tenant.
        """
        async with self._session_factory() as db:
            row = await db.get(ChatSessionRecord, session_id)
            now = dt.datetime.utcnow()
            if row is not None:
                if row.tenant_id != tenant_id:
                    raise TranscriptError(f"Session {session_id} belongs to another tenant")
                row.status = "active"
                row.termination_reason = None
                row.completed_at = None
                row.last_activity_at = now
                await db.commit()
                return False
            db.add(
                ChatSessionRecord(
                    id=session_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    app_tag=app_tag,
                    workflow_tag=workflow_tag,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    max_iterations=max_iterations,
                    started_at=now,
                    last_activity_at=now,
                )
            )
            await db.commit()
        logger.info("Created chat session %s for tenant %s", session_id, tenant_id)
        return True

    async def append_message(
        self,
        session_id: str,
        tenant_id: str,
        message: Message,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        invocations: Sequence[ToolInvocation] = (),
    ) -> int:
        """Append ``message`` and return its position in the session."""
        async with self._session_factory() as db:
            row = await self._get_owned(db, session_id, tenant_id)
            position = row.message_count
            record = ChatMessageRecord(
                session_id=session_id,
                position=position,
                role=message.role,
                content=[block_to_dict(b) for b in message.content],
                input_tokens=max(0, input_tokens),
                output_tokens=max(0, output_tokens),
                tool_names=[inv.tool_name for inv in invocations] or None,
                created_at=message.timestamp,
            )
            db.add(record)
            await db.flush()
            for inv in invocations:
                db.add(
                    ToolInvocationRecord(
                        message_id=record.id,
                        session_id=session_id,
                        tool_name=inv.tool_name,
                        tool_id=inv.tool_id,
                        input=inv.input,
                        result=inv.result,
                        is_server_tool=inv.is_server_tool,
                        is_error=inv.is_error,
                        invoked_at=inv.timestamp,
                    )
                )
            row.message_count = position + 1
            row.total_input_tokens += max(0, input_tokens)
            row.total_output_tokens += max(0, output_tokens)
            row.last_activity_at = dt.datetime.utcnow()
            await db.commit()
        return position

    async def complete_session(
        self,
        session_id: str,
        tenant_id: str,
        *,
        status: str = "completed",
        reason: Optional[str] = None,
        iteration_count: Optional[int] = None,
    ) -> None:
        async with self._session_factory() as db:
            row = await self._get_owned(db, session_id, tenant_id)
            now = dt.datetime.utcnow()
            row.status = status
            row.termination_reason = reason
            row.completed_at = now
            row.last_activity_at = now
            if iteration_count is not None:
                row.iteration_count += iteration_count
            await db.commit()
        logger.info("Session %s finished: status=%s reason=%s", session_id, status, reason)

    async def get_session(self, session_id: str, tenant_id: str) -> Optional[SessionTranscript]:
        async with self._session_factory() as db:
            row = await db.get(ChatSessionRecord, session_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            records = (
                await db.scalars(
                    select(ChatMessageRecord)
                    .where(ChatMessageRecord.session_id == session_id)
                    .order_by(ChatMessageRecord.position)
                )
            ).all()
            calls = (
                await db.scalars(
                    select(ToolInvocationRecord)
                    .where(ToolInvocationRecord.session_id == session_id)
                    .order_by(ToolInvocationRecord.id)
                )
            ).all()
            messages = [
                Message(
                    role=r.role,
                    content=tuple(block_from_dict(b) for b in r.content),
                    timestamp=r.created_at,
                )
                for r in records
            ]
            invocations = [
                ToolInvocation(
                    tool_name=c.tool_name,
                    tool_id=c.tool_id,
                    input=c.input,
                    result=c.result,
                    is_server_tool=c.is_server_tool,
                    is_error=c.is_error,
                    timestamp=c.invoked_at,
                )
                for c in calls
            ]
            return SessionTranscript(summary=_summary(row), messages=messages, invocations=invocations)

    async def _list(self, stmt, limit: int, skip: int) -> List[SessionSummary]:
        stmt = stmt.order_by(ChatSessionRecord.last_activity_at.desc()).offset(max(0, skip)).limit(max(1, limit))
        async with self._session_factory() as db:
            rows = (await db.scalars(stmt)).all()
        return [_summary(r) for r in rows]

    @staticmethod
    def _filtered(tenant_id: str, app_tag: Optional[str], workflow_tag: Optional[str]):
        stmt = select(ChatSessionRecord).where(ChatSessionRecord.tenant_id == tenant_id)
        if app_tag is not None:
            stmt = stmt.where(ChatSessionRecord.app_tag == app_tag)
        if workflow_tag is not None:
            stmt = stmt.where(ChatSessionRecord.workflow_tag == workflow_tag)
        return stmt

    async def list_user_sessions(
        self,
        tenant_id: str,
        user_id: str,
        *,
        app_tag: Optional[str] = None,
        workflow_tag: Optional[str] = None,
        limit: int = 50,
        skip: int = 0,
    ) -> List[SessionSummary]:
        stmt = self._filtered(tenant_id, app_tag, workflow_tag).where(ChatSessionRecord.user_id == user_id)
        return await self._list(stmt, limit, skip)

    async def list_tenant_sessions(
        self,
        tenant_id: str,
        *,
        app_tag: Optional[str] = None,
        workflow_tag: Optional[str] = None,
        limit: int = 100,
        skip: int = 0,
    ) -> List[SessionSummary]:
        return await self._list(self._filtered(tenant_id, app_tag, workflow_tag), limit, skip)

    async def usage_stats(
        self,
        tenant_id: str,
        start: Optional[dt.datetime] = None,
        end: Optional[dt.datetime] = None,
    ) -> UsageStats:
        conditions = [ChatSessionRecord.tenant_id == tenant_id]
        if start is not None:
            conditions.append(ChatSessionRecord.started_at >= start)
        if end is not None:
            conditions.append(ChatSessionRecord.started_at <= end)

        async with self._session_factory() as db:
            totals = (
                await db.execute(
                    select(
                        func.count(ChatSessionRecord.id),
                        func.coalesce(func.sum(ChatSessionRecord.message_count), 0),
                        func.coalesce(func.sum(ChatSessionRecord.total_input_tokens), 0),
                        func.coalesce(func.sum(ChatSessionRecord.total_output_tokens), 0),
                    ).where(*conditions)
                )
            ).one()
            by_app = (
                await db.execute(
                    select(ChatSessionRecord.app_tag, func.count(ChatSessionRecord.id))
                    .where(*conditions)
                    .group_by(ChatSessionRecord.app_tag)
                )
            ).all()

        return UsageStats(
            tenant_id=tenant_id,
            session_count=int(totals[0]),
            message_count=int(totals[1]),
            total_input_tokens=int(totals[2]),
            total_output_tokens=int(totals[3]),
            sessions_by_app={app: int(count) for app, count in by_app},
        )

    async def save_cohort(
        self,
        tenant_id: str,
        user_id: str,
        *,
        name: str,
        sql: str,
        size: int,
        breakdown: Optional[dict] = None,
        evaluation: Optional[dict] = None,
    ) -> str:
        cohort_id = f"cohort_{uuid.uuid4().hex[:12]}"
        async with self._session_factory() as db:
            db.add(
                SavedCohortRecord(
                    id=cohort_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    name=name,
                    sql=sql,
                    size=size,
                    breakdown=breakdown,
                    evaluation=evaluation,
                )
            )
            await db.commit()
        logger.info("Saved cohort %s for tenant %s (size=%s)", cohort_id, tenant_id, size)
        return cohort_id
