"""
Tests for the analytical-service client (MCP tool calls, result decoding, health).
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager

import httpx
import pytest
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, ErrorData, TextContent

import src.analytics.client as client_module
from src.analytics import AnalyticsClient, AnalyticsError, AnalyticsSettings


def _text_result(payload, is_error: bool = False) -> CallToolResult:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


class FakeSession:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = []

    async def call_tool(self, name, arguments, read_timeout_seconds=None):
        self.calls.append((name, arguments, read_timeout_seconds))
        if self.error is not None:
            raise self.error
        return self.result


def _client(session: FakeSession, **settings) -> AnalyticsClient:
    tenants = []

    @asynccontextmanager
    async def factory(tenant_id):
        tenants.append(tenant_id)
        yield session

    client = AnalyticsClient(AnalyticsSettings(base_url="http://analytics.test", **settings), session_factory=factory)
    client.tenants = tenants
    return client


@pytest.mark.anyio
async def test_execute_sql_calls_sql_tool_for_tenant():
    session = FakeSession(_text_result({"results": [{"count": 7}], "row_count": 1}))
    client = _client(session)
    result = await client.execute_sql("SELECT COUNT(*) AS count FROM synthie", "acme")
    await client.aclose()

    assert client.tenants == ["acme"]
    name, arguments, timeout = session.calls[0]
    assert name == "sql"
    assert arguments["max_results"] == 1000
    assert arguments["database"] == "synthiedb"
    assert timeout.total_seconds() == 60.0
    assert result.success
    assert result.data == [{"count": 7}]
    payload = result.to_payload()
    assert payload["metadata"]["rowCount"] == 1
    assert payload["metadata"]["columns"] == ["count"]


@pytest.mark.anyio
async def test_get_schema_decodes_text_and_structured_content():
    client = _client(FakeSession(_text_result({"tables": ["synthie"]})))
    assert await client.get_schema("acme") == {"tables": ["synthie"]}

    structured = CallToolResult(content=[], structuredContent={"tables": ["other"]})
    client = _client(FakeSession(structured))
    assert await client.get_schema("acme") == {"tables": ["other"]}


@pytest.mark.anyio
async def test_jsonl_results_are_decoded():
    lines = "\n".join(
        [
            json.dumps({"type": "metadata", "sql": "q", "columns": ["gender", "n"], "row_count": 2}),
            json.dumps({"gender": "female", "n": 3}),
            '{"gender": "male", "n": NaN}',
            json.dumps({"type": "completion", "execution_time_ms": 12}),
        ]
    )
    client = _client(FakeSession(_text_result(lines)))
    result = await client.execute_sql("SELECT gender, COUNT(*) AS n FROM synthie GROUP BY gender", "acme")
    assert result.data == [{"gender": "female", "n": 3}, {"gender": "male", "n": None}]
    assert result.columns == ["gender", "n"]
    assert result.execution_time == 12


@pytest.mark.anyio
async def test_error_results_become_unsuccessful():
    client = _client(FakeSession(_text_result('Binder Error: Referenced column "x" not found')))
    result = await client.execute_sql("SELECT x FROM synthie", "acme")
    assert not result.success
    assert "Binder Error" in result.error

    client = _client(FakeSession(_text_result("table synthie2 does not exist", is_error=True)))
    result = await client.execute_sql("SELECT 1 FROM synthie2", "acme")
    assert not result.success
    assert result.error == "table synthie2 does not exist"


@pytest.mark.anyio
async def test_protocol_and_transport_errors_raise():
    request = httpx.Request("POST", "http://analytics.test/mcp")
    cases = (
        (McpError(ErrorData(code=-32000, message="database offline")), "database offline"),
        (httpx.ReadTimeout("slow", request=request), "timeout"),
        (httpx.ConnectError("refused", request=request), "connection failed"),
    )
    for error, expected in cases:
        client = _client(FakeSession(error=error))
        with pytest.raises(AnalyticsError, match=expected):
            await client.execute_sql("SELECT COUNT(*) FROM synthie", "acme")


@pytest.mark.anyio
async def test_default_session_initializes_before_calling(monkeypatch):
    seen = {"order": []}

    @asynccontextmanager
    async def fake_transport(url, headers=None, timeout=None):
        seen["url"] = url
        seen["headers"] = headers
        yield "read", "write", lambda: "session-1"

    class FakeClientSession:
        def __init__(self, read, write):
            seen["streams"] = (read, write)

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        async def initialize(self):
            seen["order"].append("initialize")

        async def call_tool(self, name, arguments, read_timeout_seconds=None):
            seen["order"].append(name)
            return _text_result({"tables": []})

    monkeypatch.setattr(client_module, "streamablehttp_client", fake_transport)
    monkeypatch.setattr(client_module, "ClientSession", FakeClientSession)

    client = AnalyticsClient(AnalyticsSettings(base_url="http://analytics.test/", api_key="secret"))
    assert await client.get_schema("acme") == {"tables": []}
    await client.aclose()

    assert seen["url"] == "http://analytics.test/mcp"
    assert seen["headers"] == {"X-Tenant-ID": "acme", "Authorization": "Bearer secret"}
    assert seen["order"] == ["initialize", "catalog"]


@pytest.mark.anyio
async def test_health_check():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        return httpx.Response(200, json={"status": "ok"})

    settings = AnalyticsSettings(base_url="http://analytics.test")
    http = httpx.AsyncClient(base_url=settings.base_url, transport=httpx.MockTransport(handler))
    client = AnalyticsClient(settings, http=http)
    assert await client.check_health() is True
    await client.aclose()
