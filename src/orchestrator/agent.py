"""
Cohort-building agent: drives the model through tool-using turns until it
answers without tools or the iteration ceiling is reached.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from src.auth.context import SessionContext
from src.evaluation import infer_requirements
from src.llm.types import (
    BlockStop,
    Message,
    ModelClient,
    ModelInvocationError,
    ModelTurn,
    TextDelta,
    ToolOutcome,
    ToolRequest,
    TurnComplete,
)
from src.tools import ErrorClassifier, ToolContext, ToolError, ToolRegistry
from src.transcripts import ToolInvocation, TranscriptStore

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
from .phase import PhaseTracker
from .session import ConversationSession

logger = logging.getLogger(__name__)


def _serialize(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class CohortOrchestrator:
    """
    Runs one conversational turn at a time for a session.

    Model calls and tool calls within a session are strictly sequential.
    The only shared state is the sealed tool registry and the clients it wraps.
    """

    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry,
        config: Optional[CohortBuilderConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        transcripts: Optional[TranscriptStore] = None,
        pruning: Optional[ContextPruningPolicy] = None,
    ):
        self.model = model
        self.registry = registry
        self.config = config or CohortBuilderConfig()
        self.classifier = classifier or ErrorClassifier()
        self.transcripts = transcripts
        if pruning is None:
            pruning = ContextPruningPolicy(
                trigger_tokens=self.config.pruning_trigger_tokens,
                keep_recent=self.config.pruning_keep_recent,
                clear_at_least=self.config.pruning_clear_at_least,
                exempt_tools=self.config.pruning_exempt_tools,
                enabled=self.config.context_pruning,
            )
        self.pruning = pruning

    def open_session(self, ctx: SessionContext, history: Sequence[Message] = ()) -> ConversationSession:
        """Start (or resume, when ``ctx.session_id`` is set) a session seeded with prior turns."""
        if not ctx.session_id:
            ctx.session_id = str(uuid.uuid4())
        session = ConversationSession(
            session_id=ctx.session_id,
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            model=self.config.model or self.model.model_name,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            max_iterations=self.config.max_iterations,
            app_tag=self.config.app_tag,
            workflow_tag=self.config.workflow_tag,
        )
        session.extend(history)
        return session

    async def _record(self, ctx: SessionContext, what: str, action: Callable[[], Awaitable[Any]]) -> None:
        """Best-effort transcript write: failures are logged and never reach the conversation."""
        if self.transcripts is None:
            return
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Transcript %s failed", what, extra={"context": ctx.log_fields()})

    async def _append(
        self,
        ctx: SessionContext,
        session: ConversationSession,
        message: Message,
        input_tokens: int = 0,
        output_tokens: int = 0,
        invocations: Sequence[ToolInvocation] = (),
    ) -> None:
        session.append(message)
        await self._record(
            ctx,
            "append",
            lambda: self.transcripts.append_message(
                session.session_id,
                session.tenant_id,
                message,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                invocations=invocations,
            ),
        )

    async def _finish(self, ctx: SessionContext, session: ConversationSession, status: str, reason: str) -> None:
        session.finish(status, reason)
        logger.info(
            "Session finished: status=%s reason=%s iterations=%s input_tokens=%s output_tokens=%s",
            status,
            reason,
            session.iteration,
            session.input_tokens,
            session.output_tokens,
            extra={"context": ctx.log_fields()},
        )
        await self._record(
            ctx,
            "complete",
            lambda: self.transcripts.complete_session(
                session.session_id,
                session.tenant_id,
                status=status,
                reason=reason,
                iteration_count=session.iteration,
            ),
        )

    async def _dispatch(
        self, request: ToolRequest, tool_ctx: ToolContext
    ) -> Tuple[ToolOutcome, Any, str, bool]:
        """Run one local tool. Failures come back as a classified diagnostic, never raised."""
        tool = self.registry.get(request.name)
        log_ctx = {"context": tool_ctx.session.log_fields()}
        logger.info("Dispatching tool %s (%s)", request.name, request.id, extra=log_ctx)
        try:
            if tool is None or tool.external:
                raise ToolError(f"Unknown tool: {request.name}")
            result = await tool.execute(request.input, tool_ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            diagnostic = self.classifier.classify(request.name, exc, request.input)
            logger.warning(
                "Tool %s failed (%s): %s",
                request.name,
                diagnostic.kind,
                exc,
                exc_info=not isinstance(exc, ToolError),
                extra=log_ctx,
            )
            payload = diagnostic.to_payload()
            summary = f"{request.name} failed ({diagnostic.kind})"
            return ToolOutcome(request_id=request.id, content=_serialize(payload)), payload, summary, True
        return (
            ToolOutcome(request_id=request.id, content=_serialize(result)),
            result,
            tool.summary(request.input, result),
            False,
        )

    def _external_summary(self, name: str, content: Any) -> str:
        tool = self.registry.get(name)
        return tool.summary({}, content) if tool is not None else f"{name} completed"

    async def _stream_turn(
        self,
        session: ConversationSession,
        tracker: PhaseTracker,
    ) -> AsyncIterator[Any]:
        """Yield ContentDelta events, then the completed ModelTurn as the last item."""
        pruning = self.pruning.instruction_for(session.messages)
        turn: Optional[ModelTurn] = None
        stream = self.model.stream_turn(
            system=self.config.system_prompt,
            messages=session.messages,
            tools=self.registry.definitions(),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            pruning=pruning,
        )
        async for event in stream:
            if isinstance(event, TextDelta):
                classification, phase = tracker.feed(event.text, session.iteration)
                yield ContentDelta(
                    content=event.text,
                    is_exploration=classification.is_exploration,
                    is_final_result=classification.is_final_result,
                    phase=phase,
                )
            elif isinstance(event, BlockStop):
                tracker.block_stop()
            elif isinstance(event, TurnComplete):
                turn = event.turn
        if turn is None:
            raise ModelInvocationError("Model stream ended without a complete turn")
        yield turn

    async def run(
        self,
        session: ConversationSession,
        ctx: SessionContext,
        user_text: str,
    ) -> AsyncIterator[StreamEvent]:
        """Process one user turn, yielding stream events until a terminal one."""
        try:
            async for event in self._run_turns(session, ctx, user_text):
                yield event
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Conversation loop failed", extra={"context": ctx.log_fields()})
            if session.status == "active":
                await self._finish(ctx, session, "incomplete", "error")
            yield ErrorOccurred(error=str(exc) or "Conversation loop failed")

    async def _run_turns(
        self,
        session: ConversationSession,
        ctx: SessionContext,
        user_text: str,
    ) -> AsyncIterator[StreamEvent]:
        log_ctx = {"context": ctx.log_fields()}
        await self._record(
            ctx,
            "ensure",
            lambda: self.transcripts.ensure_session(
                session.session_id,
                session.tenant_id,
                session.user_id,
                model=session.model,
                temperature=session.temperature,
                max_tokens=session.max_tokens,
                max_iterations=session.max_iterations,
                app_tag=session.app_tag,
                workflow_tag=session.workflow_tag,
            ),
        )
        await self._append(ctx, session, Message.text("user", user_text))
        tracker = PhaseTracker(self.config.analyzing_after_iterations)
        # Server tool requests whose provider result has not arrived yet.
        pending_external: Dict[str, ToolInvocation] = {}

        while not session.exhausted:
            if ctx.cancelled:
                await self._finish(ctx, session, "incomplete", "cancelled")
                yield SessionEnded(session.iteration, session.session_id, "incomplete", "cancelled")
                return

            iteration = session.next_iteration()
            logger.info("Iteration %s (model=%s)", iteration, session.model, extra=log_ctx)
            tool_ctx = ToolContext(
                session=ctx,
                requirements=infer_requirements(session.recent_user_texts(self.config.requirement_window)),
            )

            turn: Optional[ModelTurn] = None
            try:
                async for item in self._stream_turn(session, tracker):
                    if isinstance(item, ModelTurn):
                        turn = item
                    else:
                        yield item
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Model invocation failed: %s", exc, exc_info=True, extra=log_ctx)
                await self._finish(ctx, session, "incomplete", "model_error")
                yield ErrorOccurred(error=str(exc) or "Model invocation failed")
                return

            session.add_usage(turn.input_tokens, turn.output_tokens)
            logger.info(
                "Turn complete: blocks=%s stop_reason=%s",
                len(turn.blocks),
                turn.stop_reason,
                extra=log_ctx,
            )

            # Rejects the whole turn before any of its tools run.
            session.check_request_ids(turn.blocks)

            outcomes: List[ToolOutcome] = []
            invocations: List[ToolInvocation] = []
            for block in turn.blocks:
                if isinstance(block, ToolRequest):
                    if block.external:
                        invocation = ToolInvocation(block.name, block.id, block.input, is_server_tool=True)
                        pending_external[block.id] = invocation
                        invocations.append(invocation)
                        yield ToolStarted(block.name, block.id, block.input, is_server_tool=True)
                        continue
                    if ctx.cancelled:
                        # Client is gone: answer the request without running it.
                        outcomes.append(
                            ToolOutcome(block.id, _serialize({"error": "Cancelled before execution"}), is_error=True)
                        )
                        continue
                    yield ToolStarted(block.name, block.id, block.input)
                    outcome, result, summary, failed = await self._dispatch(block, tool_ctx)
                    outcomes.append(outcome)
                    invocations.append(
                        ToolInvocation(block.name, block.id, block.input, result=result, is_error=failed)
                    )
                    yield ToolFinished(block.name, block.id, result, summary)
                elif isinstance(block, ToolOutcome) and block.external:
                    invocation = pending_external.pop(block.request_id, None)
                    name = invocation.tool_name if invocation is not None else "web_search"
                    if invocation is not None:
                        invocation.result = block.content
                    else:
                        # Unpaired provider result; announce it so start/finish stay paired.
                        yield ToolStarted(name, block.request_id, {}, is_server_tool=True)
                    yield ToolFinished(name, block.request_id, block.content, self._external_summary(name, block.content))

            await self._append(
                ctx,
                session,
                Message.of("assistant", turn.blocks),
                input_tokens=turn.input_tokens,
                output_tokens=turn.output_tokens,
                invocations=invocations,
            )

            if outcomes:
                await self._append(ctx, session, Message.of("user", outcomes))
                continue

            if turn.stop_reason == "pause_turn":
                # The provider paused mid server-tool work; resending the history resumes it.
                logger.info("Server tool turn paused; resuming", extra=log_ctx)
                continue

            text_blocks = [b for b in turn.blocks if not isinstance(b, (ToolRequest, ToolOutcome))]
            yield FinalResponse(iteration=iteration, text_block_count=len(text_blocks))
            await self._finish(ctx, session, "completed", "final_response")
            yield SessionEnded(session.iteration, session.session_id, "completed", "final_response")
            return

        if ctx.cancelled:
            await self._finish(ctx, session, "incomplete", "cancelled")
            yield SessionEnded(session.iteration, session.session_id, "incomplete", "cancelled")
            return
        logger.warning("Iteration ceiling %s reached without a final answer", session.max_iterations, extra=log_ctx)
        await self._finish(ctx, session, "completed", "iteration_limit")
        yield SessionEnded(session.iteration, session.session_id, "completed", "iteration_limit")
