"""
Tests for the provider clients' conversions and streaming (no network).
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from src.llm import create_client
from src.llm.anthropic_client import (
    CONTEXT_MANAGEMENT_BETA,
    AnthropicModelClient,
    context_management_params,
    from_anthropic_content,
    to_anthropic_block,
)
from src.llm.client import OpenAICompatibleClient, to_openai_messages
from src.llm.pruning import CLEARED_PLACEHOLDER, apply_pruning
from src.llm.types import (
    BlockStop,
    Message,
    PruningInstruction,
    TextBlock,
    TextDelta,
    ToolOutcome,
    ToolRequest,
    TurnComplete,
    block_from_dict,
    block_to_dict,
)
from src.tools import MemoryStore, memory_tool, web_search_tool


def _history():
    return [
        Message.text("user", "Find parents"),
        Message.of(
            "assistant",
            [
                TextBlock("Looking."),
                ToolRequest("srv1", "web_search", {"query": "parents"}, external=True),
                ToolOutcome("srv1", [{"type": "web_search_result"}], external=True, block_type="web_search_tool_result"),
                ToolRequest("t1", "sql", {"sql": "SELECT COUNT(*) FROM synthie"}),
            ],
        ),
        Message.of("user", [ToolOutcome("t1", '{"rows": 1}')]),
    ]


def test_block_dict_round_trip_preserves_external_flags():
    for message in _history():
        for block in message.content:
            assert block_from_dict(block_to_dict(block)) == block


def test_anthropic_block_conversion():
    history = _history()
    blocks = [to_anthropic_block(b) for b in history[1].content]
    assert blocks[1]["type"] == "server_tool_use"
    assert blocks[2] == {"type": "web_search_tool_result", "tool_use_id": "srv1", "content": [{"type": "web_search_result"}]}
    assert blocks[3]["type"] == "tool_use"
    error = to_anthropic_block(ToolOutcome("t1", "bad", is_error=True))
    assert error == {"type": "tool_result", "tool_use_id": "t1", "content": "bad", "is_error": True}


def test_from_anthropic_content():
    blocks = from_anthropic_content(
        [
            {"type": "text", "text": "Hi"},
            {"type": "server_tool_use", "id": "srv1", "name": "web_search", "input": {"query": "q"}},
            {"type": "web_search_tool_result", "tool_use_id": "srv1", "content": []},
            {"type": "tool_use", "id": "t1", "name": "catalog", "input": {}},
            {"type": "thinking", "thinking": "..."},
        ]
    )
    assert blocks[0] == TextBlock("Hi")
    assert blocks[1].external and blocks[1].name == "web_search"
    assert blocks[2].external and blocks[2].block_type == "web_search_tool_result"
    assert blocks[3] == ToolRequest("t1", "catalog", {})
    assert len(blocks) == 4


def test_context_management_params():
    params = context_management_params(PruningInstruction(keep_recent=3, clear_at_least_tokens=5000, trigger_tokens=30000, exclude_tools=("memory",)))
    edit = params["edits"][0]
    assert edit["type"] == "clear_tool_uses_20250919"
    assert edit["keep"] == {"type": "tool_uses", "value": 3}
    assert edit["exclude_tools"] == ["memory"]


def test_openai_messages_drop_external_blocks():
    out = to_openai_messages("system prompt", _history())
    assert out[0] == {"role": "system", "content": "system prompt"}
    assistant = out[2]
    assert assistant["content"] == "Looking."
    assert [c["id"] for c in assistant["tool_calls"]] == ["t1"]
    assert out[3] == {"role": "tool", "tool_call_id": "t1", "content": '{"rows": 1}'}
    assert len(out) == 4


def test_apply_pruning_keeps_recent_and_exempt():
    messages = []
    for i in range(4):
        name = "memory" if i == 0 else "sql"
        messages.append(Message.of("assistant", [ToolRequest(f"t{i}", name, {})]))
        messages.append(Message.of("user", [ToolOutcome(f"t{i}", "x" * 400)]))
    pruned = apply_pruning(messages, PruningInstruction(keep_recent=1, clear_at_least_tokens=10, trigger_tokens=0, exclude_tools=("memory",)))
    contents = [m.tool_outcomes()[0].content for m in pruned if m.role == "user"]
    assert contents[0] == "x" * 400  # exempt
    assert contents[1] == CLEARED_PLACEHOLDER
    assert contents[2] == CLEARED_PLACEHOLDER
    assert contents[3] == "x" * 400  # most recent
    assert messages[3].tool_outcomes()[0].content == "x" * 400  # input untouched

    untouched = apply_pruning(messages, PruningInstruction(keep_recent=1, clear_at_least_tokens=10_000, trigger_tokens=0))
    assert untouched == messages


def test_apply_pruning_keeps_everything_when_fewer_outcomes_than_keep():
    messages = []
    for request_id in ("a", "b"):
        messages.append(Message.of("assistant", [ToolRequest(request_id, "sql", {})]))
        messages.append(Message.of("user", [ToolOutcome(request_id, "x" * 40_000)]))
    pruned = apply_pruning(messages, PruningInstruction(keep_recent=3, clear_at_least_tokens=1000, trigger_tokens=0))
    assert pruned == messages
    assert all(m.tool_outcomes()[0].content != CLEARED_PLACEHOLDER for m in pruned if m.role == "user")


def test_create_client_rejects_unknown_provider():
    with pytest.raises(ValueError):
        create_client(provider="carrier-pigeon")


class _FakeAnthropicStream:
    def __init__(self, events, final):
        self._events = events
        self._final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event

    async def get_final_message(self):
        return self._final


class _FakeAnthropicMessages:
    def __init__(self, stream):
        self._stream = stream
        self.params = None

    def stream(self, **params):
        self.params = params
        return self._stream


@pytest.mark.anyio
async def test_anthropic_stream_turn(tmp_path):
    final = SimpleNamespace(
        content=[
            {"type": "text", "text": "Hi"},
            {"type": "tool_use", "id": "t1", "name": "sql", "input": {"sql": "SELECT 1"}},
        ],
        stop_reason="tool_use",
        usage=SimpleNamespace(input_tokens=12, output_tokens=3),
    )
    events = [
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text="Hi")),
        SimpleNamespace(type="content_block_stop"),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="input_json_delta", partial_json="{")),
        SimpleNamespace(type="content_block_stop"),
    ]
    messages_api = _FakeAnthropicMessages(_FakeAnthropicStream(events, final))
    client = AnthropicModelClient(model_name="claude-test", client=SimpleNamespace(beta=SimpleNamespace(messages=messages_api)))

    out = [
        e
        async for e in client.stream_turn(
            system="sys",
            messages=[Message.text("user", "hi")],
            tools=[web_search_tool(), memory_tool(MemoryStore(tmp_path))],
            max_tokens=100,
            temperature=0.5,
        )
    ]
    assert out[0] == TextDelta("Hi")
    assert out[1] == BlockStop()
    turn = out[-1].turn
    assert isinstance(out[-1], TurnComplete)
    assert turn.blocks == [TextBlock("Hi"), ToolRequest("t1", "sql", {"sql": "SELECT 1"})]
    assert (turn.input_tokens, turn.output_tokens) == (12, 3)

    params = messages_api.params
    assert params["model"] == "claude-test"
    assert params["system"][0]["cache_control"] == {"type": "ephemeral"}
    assert params["betas"] == [CONTEXT_MANAGEMENT_BETA]
    assert "context_management" not in params
    assert params["tools"][0]["type"] == "web_search_20250305"


class _FakeCompletions:
    def __init__(self, chunks):
        self._chunks = chunks
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    choices = []
    if content is not None or tool_calls is not None or finish_reason is not None:
        choices = [SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls), finish_reason=finish_reason)]
    return SimpleNamespace(choices=choices, usage=usage)


def _fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


@pytest.mark.anyio
async def test_openai_stream_turn_assembles_tool_calls():
    chunks = [
        _chunk(content="Checking"),
        _chunk(tool_calls=[_fragment(0, id="c1", name="sql", arguments='{"sql": ')]),
        _chunk(tool_calls=[_fragment(0, arguments='"SELECT 1"}')]),
        _chunk(finish_reason="tool_calls"),
        _chunk(usage=SimpleNamespace(prompt_tokens=40, completion_tokens=7)),
    ]
    completions = _FakeCompletions(chunks)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    client = OpenAICompatibleClient(model_name="glm-test", api_token="k", base_url="http://llm.test/v1", client=fake)

    out = [
        e
        async for e in client.stream_turn(
            system="sys",
            messages=[Message.text("user", "hi")],
            tools=[web_search_tool()],
            max_tokens=100,
            temperature=0.2,
        )
    ]
    assert out[0] == TextDelta("Checking")
    turn = out[-1].turn
    assert turn.blocks == [TextBlock("Checking"), ToolRequest("c1", "sql", {"sql": "SELECT 1"})]
    assert turn.stop_reason == "tool_use"
    assert (turn.input_tokens, turn.output_tokens) == (40, 7)
    # External tools are not declared to OpenAI-compatible providers.
    assert "tools" not in completions.kwargs
    assert completions.kwargs["stream_options"] == {"include_usage": True}
    assert json.loads(json.dumps(completions.kwargs["messages"]))[0]["role"] == "system"
