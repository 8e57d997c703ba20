"""
Async client for the analytical-query service, an MCP server over streamable HTTP.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from .config import AnalyticsSettings
from .results import decode_tool_result

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], AsyncContextManager[ClientSession]]


class AnalyticsError(Exception):
    """Transport or protocol failure talking to the analytical service."""


@dataclass
class QueryResult:
    success: bool
    data: List[dict] = field(default_factory=list)
    row_count: int = 0
    execution_time: Optional[float] = None
    database: Optional[str] = None
    columns: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_payload(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "data": self.data,
            "metadata": {
                "rowCount": self.row_count,
                "executionTime": self.execution_time,
                "database": self.database,
                "columns": self.columns,
            },
        }


class AnalyticsClient:
    """
    Talks to the analytical service on behalf of one tenant per call.

    Each tool call opens an MCP session (``initialize`` handshake, then
    ``tools/call``) scoped by the tenant header; the SDK carries the
    server-issued ``Mcp-Session-Id`` for the lifetime of that session.
    ``session_factory`` replaces the transport, e.g. in tests.
    """

    def __init__(
        self,
        settings: Optional[AnalyticsSettings] = None,
        http: Optional[httpx.AsyncClient] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.settings = settings or AnalyticsSettings()
        self._http = http or httpx.AsyncClient(base_url=self.settings.base_url, timeout=self.settings.timeout)
        self._session_factory = session_factory or self._open_session

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, tenant_id: str) -> Dict[str, str]:
        headers = {"X-Tenant-ID": tenant_id}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    @asynccontextmanager
    async def _open_session(self, tenant_id: str) -> AsyncIterator[ClientSession]:
        async with streamablehttp_client(
            self.settings.mcp_url,
            headers=self._headers(tenant_id),
            timeout=self.settings.timeout,
        ) as (read, write, get_session_id):
            async with ClientSession(read, write) as session:
                await session.initialize()
                logger.debug("MCP session %s opened for tenant %s", get_session_id(), tenant_id)
                yield session

    async def _call_tool(self, name: str, arguments: dict, tenant_id: str) -> Any:
        try:
            async with self._session_factory(tenant_id) as session:
                result = await session.call_tool(
                    name,
                    arguments,
                    read_timeout_seconds=dt.timedelta(seconds=self.settings.timeout),
                )
        except McpError as exc:
            raise AnalyticsError(exc.error.message or "Analytical service error") from exc
        except httpx.TimeoutException as exc:
            raise AnalyticsError(f"Analytical service timeout after {self.settings.timeout}s") from exc
        except (httpx.HTTPError, OSError) as exc:
            raise AnalyticsError(f"Analytical service connection failed: {exc}") from exc
        return decode_tool_result(result)

    async def get_schema(self, tenant_id: str, database: Optional[str] = None) -> Any:
        """Describe tables, columns and sample values for the tenant's data source."""
        return await self._call_tool(
            "catalog",
            {
                "database": database or self.settings.database,
                "include_sample_data": True,
                "sample_rows": self.settings.sample_rows,
            },
            tenant_id,
        )

    async def execute_sql(self, sql: str, tenant_id: str, database: Optional[str] = None) -> QueryResult:
        database = database or self.settings.database
        started = time.perf_counter()
        raw = await self._call_tool(
            "sql",
            {"sql": sql, "database": database, "max_results": self.settings.max_rows},
            tenant_id,
        )
        if not isinstance(raw, dict):
            raise AnalyticsError("Unexpected query result format from analytical service")
        if raw.get("error") or raw.get("success") is False:
            return QueryResult(success=False, error=str(raw.get("error") or "Query execution failed"))

        rows = raw.get("results") or raw.get("data") or raw.get("rows") or []
        elapsed = raw.get("execution_time_ms") or raw.get("executionTime")
        if elapsed is None:
            elapsed = round((time.perf_counter() - started) * 1000, 1)
        columns = raw.get("columns") or (list(rows[0].keys()) if rows and isinstance(rows[0], dict) else [])
        return QueryResult(
            success=True,
            data=rows,
            row_count=raw.get("row_count") or raw.get("rowCount") or len(rows),
            execution_time=elapsed,
            database=database,
            columns=columns,
        )

    async def check_health(self) -> bool:
        try:
            response = await self._http.get(self.settings.health_path, timeout=5.0)
        except httpx.HTTPError as exc:
            logger.warning("Analytical service health check failed: %s", exc)
            return False
        return response.is_success
