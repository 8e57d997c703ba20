"""
Settings for the analytical-query service.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


DANGEROUS_KEYWORDS: Tuple[str, ...] = (
    "drop",
    "delete",
    "insert",
    "update",
    "alter",
    "create",
    "truncate",
    "grant",
    "revoke",
    "attach",
    "copy",
    "pragma",
)


@dataclass
class AnalyticsSettings:
    """Where the analytical service lives and what it holds."""

    base_url: str = "http://localhost:8002"
    mcp_path: str = "/mcp"
    health_path: str = "/health"
    timeout: float = 60.0
    api_key: Optional[str] = None
    database: str = "synthiedb"
    table: str = "synthie"
    max_rows: int = 1000
    sample_rows: int = 5
    total_population: int = 83_000_000
    dangerous_keywords: Tuple[str, ...] = field(default=DANGEROUS_KEYWORDS)

    @classmethod
    def from_env(cls) -> "AnalyticsSettings":
        return cls(
            base_url=os.getenv("ANALYTICS_BASE_URL", cls.base_url),
            mcp_path=os.getenv("ANALYTICS_MCP_PATH", cls.mcp_path),
            health_path=os.getenv("ANALYTICS_HEALTH_PATH", cls.health_path),
            timeout=_get_env_float("ANALYTICS_TIMEOUT", cls.timeout),
            api_key=os.getenv("ANALYTICS_API_KEY") or None,
            database=os.getenv("ANALYTICS_DATABASE", cls.database),
            table=os.getenv("ANALYTICS_TABLE", cls.table),
            max_rows=_get_env_int("ANALYTICS_MAX_ROWS", cls.max_rows),
            total_population=_get_env_int("ANALYTICS_TOTAL_POPULATION", cls.total_population),
        )

    @property
    def mcp_url(self) -> str:
        return self.base_url.rstrip("/") + self.mcp_path
