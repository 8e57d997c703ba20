"""
Per-session push channel between the orchestrator task and the HTTP response.

The producer publishes events in orchestrator order; the consumer drains
them as SSE frames. The channel closes exactly once, either after a
terminal event or when the consumer goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Optional, Set

from src.auth.context import SessionContext

from .events import ErrorOccurred, StreamEvent, ToolFinished, ToolStarted

logger = logging.getLogger(__name__)

_CLOSED = object()


def format_sse(event: StreamEvent) -> str:
    """One SSE frame: ``event: <type>`` plus the JSON payload."""
    data = json.dumps(event.to_payload(), default=str)
    return f"event: {event.type}\ndata: {data}\n\n"


class EventChannel:
    """Ordered, append-only, single-consumer event queue for one session."""

    def __init__(self, ctx: SessionContext):
        self.ctx = ctx
        self._queue: asyncio.Queue = asyncio.Queue()
        self._started: Set[str] = set()
        self._closed = False
        self._disconnected = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def publish(self, event: StreamEvent) -> bool:
        """
        Queue an event. Returns False when it was dropped because the channel
        is already closed.
        """
        if self._closed:
            logger.debug("Dropping %s event on closed channel", event.type, extra={"context": self.ctx.log_fields()})
            return False
        if isinstance(event, ToolStarted):
            self._started.add(event.tool_id)
        elif isinstance(event, ToolFinished) and event.tool_id not in self._started:
            raise ValueError(f"tool_result for {event.tool_id} published before its tool_use")
        self._queue.put_nowait(event)
        if event.terminal:
            self.close()
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def disconnect(self) -> None:
        """The consumer went away: stop further iterations and close."""
        if not self._closed:
            logger.info("Client disconnected; cancelling session", extra={"context": self.ctx.log_fields()})
            self._disconnected = True
        self.ctx.cancel()
        self.close()

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


async def pump(events: AsyncIterator[StreamEvent], channel: EventChannel) -> None:
    """Forward orchestrator events into ``channel``; any failure becomes an error event."""
    try:
        async for event in events:
            channel.publish(event)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("Orchestrator failed", extra={"context": channel.ctx.log_fields()})
        channel.publish(ErrorOccurred(error=str(exc) or exc.__class__.__name__))
    finally:
        channel.close()


def start_pump(
    events: AsyncIterator[StreamEvent],
    channel: EventChannel,
    background: Optional[Set[asyncio.Task]] = None,
) -> asyncio.Task:
    """Run ``pump`` as a task so the orchestrator outlives a disconnected reader."""
    task = asyncio.create_task(pump(events, channel))
    if background is not None:
        background.add(task)
        task.add_done_callback(background.discard)
    return task
