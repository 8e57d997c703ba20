"""
Tests for the cohort-building conversation loop (scripted model, in-process tools).
"""

from __future__ import annotations

import json
from typing import Any, List, Optional

import pytest

from src.auth.context import SessionContext
from src.llm.types import (
    BlockStop,
    ModelInvocationError,
    ModelTurn,
    TextBlock,
    TextDelta,
    ToolOutcome,
    ToolRequest,
    TurnComplete,
)
from src.orchestrator import (
    CohortBuilderConfig,
    CohortOrchestrator,
    ContentDelta,
    ErrorOccurred,
    FinalResponse,
    SessionEnded,
    ToolFinished,
    ToolStarted,
)
from src.tools import ToolContext, ToolDefinition, ToolError, ToolRegistry, web_search_tool


class ScriptedModel:
    """Plays back one scripted turn (or exception) per call."""

    model_name = "scripted-model"

    def __init__(self, turns: List[Any], repeat_last: bool = False, complete: bool = True):
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.complete = complete
        self.calls: List[dict] = []

    async def stream_turn(self, *, system, messages, tools, max_tokens, temperature, pruning=None):
        self.calls.append({"messages": list(messages), "tools": list(tools), "pruning": pruning})
        index = len(self.calls) - 1
        if index >= len(self.turns):
            if not self.repeat_last:
                raise AssertionError("model called more often than scripted")
            index = len(self.turns) - 1
        step = self.turns[index]
        if isinstance(step, Exception):
            raise step
        stop_reason = None
        if isinstance(step, ModelTurn):
            blocks, stop_reason = step.blocks, step.stop_reason
        else:
            blocks = step(len(self.calls) - 1) if callable(step) else step
        for block in blocks:
            if isinstance(block, TextBlock):
                yield TextDelta(block.text)
                yield BlockStop()
        if self.complete:
            yield TurnComplete(
                ModelTurn(blocks=list(blocks), stop_reason=stop_reason, input_tokens=100, output_tokens=20)
            )


def _tool(name: str, executor, summarize=None) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"{name} tool",
        input_schema={"type": "object", "properties": {}},
        executor=executor,
        summarize=summarize,
    )


async def _lookup(tool_input: dict, context: ToolContext) -> dict:
    return {"rows": 3, "tenant": context.tenant_id}


def _orchestrator(model, tools, **config) -> CohortOrchestrator:
    registry = ToolRegistry(tools).seal()
    return CohortOrchestrator(model=model, registry=registry, config=CohortBuilderConfig(**config))


async def _run(orchestrator: CohortOrchestrator, query: str = "Find young parents in Berlin", ctx=None):
    ctx = ctx or SessionContext(tenant_id="acme", user_id="u1")
    session = orchestrator.open_session(ctx)
    events = [event async for event in orchestrator.run(session, ctx, query)]
    return session, events


def _tool_events(events):
    return [e for e in events if isinstance(e, (ToolStarted, ToolFinished))]


@pytest.mark.anyio
async def test_tool_round_trip_then_final_answer():
    model = ScriptedModel(
        [
            [TextBlock("Let me check the data."), ToolRequest("t1", "lookup", {})],
            [TextBlock("## Cohort Overview\nAbout 500,000 people.")],
        ]
    )
    session, events = await _run(_orchestrator(model, [_tool("lookup", _lookup)]))

    started = [e for e in events if isinstance(e, ToolStarted)]
    finished = [e for e in events if isinstance(e, ToolFinished)]
    assert [e.tool_id for e in started] == ["t1"]
    assert [e.tool_id for e in finished] == ["t1"]
    assert events.index(started[0]) < events.index(finished[0])
    assert finished[0].result == {"rows": 3, "tenant": "acme"}
    assert finished[0].result_summary == "Retrieved lookup data"

    assert isinstance(events[-2], FinalResponse)
    assert events[-2].iteration == 2
    assert events[-2].text_block_count == 1
    assert isinstance(events[-1], SessionEnded)
    assert events[-1].reason == "final_response"
    assert events[-1].total_iterations == 2
    assert events[-1].session_id == session.session_id

    deltas = [e for e in events if isinstance(e, ContentDelta)]
    assert deltas[0].is_exploration
    assert deltas[-1].is_final_result
    assert deltas[-1].phase == "finalizing"

    roles = [m.role for m in session.messages]
    assert roles == ["user", "assistant", "user", "assistant"]
    outcome = session.messages[2].tool_outcomes()[0]
    assert outcome.request_id == "t1"
    assert json.loads(outcome.content) == {"rows": 3, "tenant": "acme"}
    assert len(model.calls[1]["messages"]) == 3
    assert session.status == "completed"
    assert session.input_tokens == 200
    assert session.output_tokens == 40


@pytest.mark.anyio
async def test_tool_failure_is_classified_and_session_continues():
    async def failing(tool_input: dict, context: ToolContext) -> dict:
        raise ToolError("Table 'people' not found")

    model = ScriptedModel(
        [
            [ToolRequest("t1", "sql", {"sql": "SELECT COUNT(*) FROM people"})],
            [TextBlock("Fixed it.")],
        ]
    )
    session, events = await _run(_orchestrator(model, [_tool("sql", failing)]))

    assert not any(isinstance(e, ErrorOccurred) for e in events)
    finished = next(e for e in events if isinstance(e, ToolFinished))
    assert finished.result["type"] == "TABLE_NAME_ERROR"
    assert finished.result["suggestion"]
    assert finished.result_summary == "sql failed (TABLE_NAME_ERROR)"

    outcome = session.messages[2].tool_outcomes()[0]
    assert outcome.is_error is False
    assert json.loads(outcome.content)["type"] == "TABLE_NAME_ERROR"
    assert isinstance(events[-1], SessionEnded) and events[-1].reason == "final_response"


@pytest.mark.anyio
async def test_unknown_tool_is_reported_to_model():
    model = ScriptedModel([[ToolRequest("t1", "nope", {})], [TextBlock("ok")]])
    _, events = await _run(_orchestrator(model, [_tool("lookup", _lookup)]))
    finished = next(e for e in events if isinstance(e, ToolFinished))
    assert finished.result["type"] == "TOOL_EXECUTION_ERROR"
    assert "Unknown tool" in finished.result["error"]


@pytest.mark.anyio
async def test_iteration_ceiling_ends_without_final_response():
    model = ScriptedModel(
        [lambda i: [ToolRequest(f"t{i}", "lookup", {})]],
        repeat_last=True,
    )
    session, events = await _run(_orchestrator(model, [_tool("lookup", _lookup)], max_iterations=3))

    assert len(model.calls) == 3
    assert session.iteration == 3
    assert not any(isinstance(e, FinalResponse) for e in events)
    end = events[-1]
    assert isinstance(end, SessionEnded)
    assert end.reason == "iteration_limit"
    assert end.total_iterations == 3
    ids = [e.tool_id for e in events if isinstance(e, ToolStarted)]
    assert ids == ["t0", "t1", "t2"]
    assert len(set(ids)) == len(ids)


@pytest.mark.anyio
async def test_model_failure_emits_error_and_marks_incomplete():
    model = ScriptedModel([ModelInvocationError("overloaded")])
    session, events = await _run(_orchestrator(model, []))
    assert isinstance(events[-1], ErrorOccurred)
    assert events[-1].error == "overloaded"
    assert not any(isinstance(e, SessionEnded) for e in events)
    assert session.status == "incomplete"
    assert session.termination_reason == "model_error"


@pytest.mark.anyio
async def test_stream_without_completed_turn_is_a_model_failure():
    model = ScriptedModel([[TextBlock("partial")]], complete=False)
    session, events = await _run(_orchestrator(model, []))
    assert isinstance(events[-1], ErrorOccurred)
    assert session.termination_reason == "model_error"


@pytest.mark.anyio
async def test_disconnect_during_tool_lets_it_finish_and_stops_iterating():
    finished_calls = []

    async def slow(tool_input: dict, context: ToolContext) -> str:
        context.session.cancel()  # client goes away while the tool runs
        finished_calls.append(tool_input)
        return "done"

    model = ScriptedModel(
        [[ToolRequest("t1", "slow", {"n": 1}), ToolRequest("t2", "slow", {"n": 2})]],
    )
    session, events = await _run(_orchestrator(model, [_tool("slow", slow)]))

    assert finished_calls == [{"n": 1}]
    assert [(type(e).__name__, e.tool_id) for e in _tool_events(events)] == [
        ("ToolStarted", "t1"),
        ("ToolFinished", "t1"),
    ]
    assert len(model.calls) == 1
    assert isinstance(events[-1], SessionEnded)
    assert events[-1].status == "incomplete"
    assert events[-1].reason == "cancelled"
    assert session.status == "incomplete"

    outcomes = session.messages[-1].tool_outcomes()
    assert [o.request_id for o in outcomes] == ["t1", "t2"]
    assert outcomes[1].is_error


@pytest.mark.anyio
async def test_external_tool_blocks_are_passed_through():
    model = ScriptedModel(
        [
            [
                ToolRequest("srv1", "web_search", {"query": "organic food trends"}, external=True),
                ToolOutcome("srv1", [{"type": "web_search_result", "url": "https://example.com"}], external=True,
                            block_type="web_search_tool_result"),
                TextBlock("Searching done."),
            ],
        ]
    )
    session, events = await _run(_orchestrator(model, [web_search_tool()]))

    started = next(e for e in events if isinstance(e, ToolStarted))
    finished = next(e for e in events if isinstance(e, ToolFinished))
    assert started.is_server_tool
    assert finished.tool_id == "srv1"
    assert finished.result_summary == "Web search completed"
    # A finished turn with only server tools is the final answer.
    assert len(model.calls) == 1
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert isinstance(events[-2], FinalResponse) and events[-2].text_block_count == 1
    assert isinstance(events[-1], SessionEnded) and events[-1].reason == "final_response"


@pytest.mark.anyio
async def test_paused_server_tool_turn_is_resumed():
    model = ScriptedModel(
        [
            ModelTurn(
                blocks=[ToolRequest("srv1", "web_search", {"query": "premium skincare buyers"}, external=True)],
                stop_reason="pause_turn",
            ),
            [
                ToolOutcome("srv1", [], external=True, block_type="web_search_tool_result"),
                TextBlock("Here is the cohort."),
            ],
        ]
    )
    session, events = await _run(_orchestrator(model, [web_search_tool()]))

    assert len(model.calls) == 2
    assert [m.role for m in session.messages] == ["user", "assistant", "assistant"]
    tool_events = _tool_events(events)
    assert [(type(e).__name__, e.tool_id) for e in tool_events] == [("ToolStarted", "srv1"), ("ToolFinished", "srv1")]
    assert tool_events[1].tool == "web_search"
    assert isinstance(events[-1], SessionEnded) and events[-1].reason == "final_response"


@pytest.mark.anyio
async def test_duplicate_request_ids_end_session_before_running_tools():
    calls = []

    async def counting(tool_input: dict, context: ToolContext) -> str:
        calls.append(tool_input)
        return "ok"

    model = ScriptedModel([[ToolRequest("", "lookup", {}), ToolRequest("", "lookup", {})]])
    session, events = await _run(_orchestrator(model, [_tool("lookup", counting)]))

    assert calls == []
    assert not _tool_events(events)
    assert isinstance(events[-1], ErrorOccurred)
    assert "Duplicate tool request id" in events[-1].error
    assert session.status == "incomplete"
    assert session.termination_reason == "error"


@pytest.mark.anyio
async def test_unexpected_failure_marks_transcript_incomplete():
    class RecordingTranscripts:
        def __init__(self):
            self.completed = []

        async def ensure_session(self, *args, **kwargs):
            return None

        async def append_message(self, *args, **kwargs):
            return None

        async def complete_session(self, session_id, tenant_id, **kwargs):
            self.completed.append((kwargs["status"], kwargs["reason"]))

    transcripts = RecordingTranscripts()
    model = ScriptedModel(
        [
            [ToolRequest("t1", "lookup", {})],
            [ToolRequest("t1", "lookup", {})],
        ]
    )
    orchestrator = CohortOrchestrator(
        model=model,
        registry=ToolRegistry([_tool("lookup", _lookup)]).seal(),
        transcripts=transcripts,  # type: ignore[arg-type]
    )
    _, events = await _run(orchestrator)

    assert [e.tool_id for e in events if isinstance(e, ToolStarted)] == ["t1"]
    assert isinstance(events[-1], ErrorOccurred)
    assert transcripts.completed == [("incomplete", "error")]


@pytest.mark.anyio
async def test_requirements_are_inferred_for_tools():
    seen = {}

    async def capture(tool_input: dict, context: ToolContext) -> str:
        seen["target"] = context.requirements.target_size
        seen["genders"] = context.requirements.genders
        return "ok"

    model = ScriptedModel([[ToolRequest("t1", "capture", {})], [TextBlock("done")]])
    await _run(_orchestrator(model, [_tool("capture", capture)]), query="Build a cohort of 500,000 women")
    assert seen == {"target": 500_000, "genders": ("female",)}


@pytest.mark.anyio
async def test_pruning_instruction_sent_once_history_is_large():
    model = ScriptedModel([[TextBlock("done")]])
    orchestrator = _orchestrator(model, [], pruning_trigger_tokens=0, pruning_keep_recent=2)
    await _run(orchestrator)
    pruning = model.calls[0]["pruning"]
    assert pruning is not None
    assert pruning.keep_recent == 2
    assert pruning.exclude_tools == ("memory",)

    quiet = ScriptedModel([[TextBlock("done")]])
    await _run(_orchestrator(quiet, [], context_pruning=False))
    assert quiet.calls[0]["pruning"] is None


class BrokenTranscripts:
    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise RuntimeError("database is down")

    ensure_session = append_message = complete_session = _fail


@pytest.mark.anyio
async def test_transcript_failures_do_not_break_the_conversation():
    transcripts = BrokenTranscripts()
    model = ScriptedModel([[ToolRequest("t1", "lookup", {})], [TextBlock("done")]])
    orchestrator = CohortOrchestrator(
        model=model,
        registry=ToolRegistry([_tool("lookup", _lookup)]).seal(),
        transcripts=transcripts,  # type: ignore[arg-type]
    )
    _, events = await _run(orchestrator)
    assert isinstance(events[-1], SessionEnded)
    assert events[-1].reason == "final_response"
    assert transcripts.calls >= 5


def test_open_session_assigns_id_and_seeds_history():
    from src.llm.types import Message

    orchestrator = _orchestrator(ScriptedModel([]), [])
    ctx = SessionContext(tenant_id="acme")
    session = orchestrator.open_session(ctx, [Message.text("user", "hi"), Message.text("assistant", "hello")])
    assert ctx.session_id and session.session_id == ctx.session_id
    assert session.model == "scripted-model"
    assert len(session.messages) == 2

    resumed = orchestrator.open_session(SessionContext(tenant_id="acme", session_id="s-1"))
    assert resumed.session_id == "s-1"
