"""
Tests for the tool capability registry.
"""

from __future__ import annotations

import pytest

from src.analytics import AnalyticsClient, AnalyticsSettings
from src.auth.context import SessionContext
from src.tools import ToolContext, ToolDefinition, ToolError, ToolRegistry, build_registry, web_search_tool


async def _echo(tool_input: dict, context: ToolContext) -> dict:
    return {"tenant": context.tenant_id, **tool_input}


ECHO = ToolDefinition(
    name="echo",
    description="Echo input",
    input_schema={
        "type": "object",
        "properties": {"text": {"type": "string"}, "mode": {"type": "string", "enum": ["a", "b"]}},
        "required": ["text"],
    },
    executor=_echo,
)


def _ctx() -> ToolContext:
    return ToolContext(session=SessionContext(tenant_id="acme"))


def test_register_and_lookup():
    registry = ToolRegistry([ECHO, web_search_tool()])
    assert registry.names() == ["echo", "web_search"]
    assert "echo" in registry
    assert registry.get("missing") is None
    assert len(registry) == 2


def test_duplicate_and_sealed():
    registry = ToolRegistry([ECHO])
    with pytest.raises(ValueError):
        registry.register(ECHO)
    registry.seal()
    assert registry.sealed
    with pytest.raises(RuntimeError):
        registry.register(web_search_tool())


@pytest.mark.anyio
async def test_execute_checks_input():
    assert await ECHO.execute({"text": "hi"}, _ctx()) == {"tenant": "acme", "text": "hi"}
    with pytest.raises(ToolError, match="Missing required"):
        await ECHO.execute({}, _ctx())
    with pytest.raises(ToolError, match="type string"):
        await ECHO.execute({"text": 5}, _ctx())
    with pytest.raises(ToolError, match="one of"):
        await ECHO.execute({"text": "hi", "mode": "c"}, _ctx())
    with pytest.raises(ToolError):
        await ECHO.execute(["not", "a", "dict"], _ctx())  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_external_tool_declarations():
    tool = web_search_tool(max_uses=3)
    assert tool.external
    assert tool.to_openai() is None
    assert tool.to_anthropic() == {"type": "web_search_20250305", "name": "web_search", "max_uses": 3}
    with pytest.raises(ToolError):
        await tool.execute({"query": "x"}, _ctx())


def test_local_tool_declarations():
    assert ECHO.to_anthropic()["input_schema"] == ECHO.input_schema
    assert ECHO.to_openai()["function"]["name"] == "echo"
    assert ECHO.summary({}, None) == "Retrieved echo data"


@pytest.mark.anyio
async def test_build_registry_is_sealed(tmp_path):
    from src.tools import MemoryStore

    analytics = AnalyticsClient(AnalyticsSettings())
    try:
        registry = build_registry(analytics, memory_store=MemoryStore(tmp_path))
        assert registry.sealed
        assert registry.names() == ["web_search", "catalog", "sql", "memory"]
        without_search = build_registry(analytics, enable_web_search=False)
        assert without_search.names() == ["catalog", "sql"]
    finally:
        await analytics.aclose()
