"""
Decode MCP ``tools/call`` results from the analytical service into plain payloads.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from mcp.types import CallToolResult

logger = logging.getLogger(__name__)

_ERROR_PREFIXES = ("Error:",)
_ERROR_MARKERS = ("Binder Error:", "SQL execution failed:")


def _parse_jsonl(text: str) -> dict:
    result: dict = {"results": [], "columns": [], "row_count": 0, "sql": ""}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line.replace(": NaN", ": null"))
        except json.JSONDecodeError:
            logger.debug("Skipping unparseable JSONL line: %s", line[:100])
            continue
        kind = parsed.get("type") if isinstance(parsed, dict) else None
        if kind == "metadata":
            result["sql"] = parsed.get("sql", "")
            result["columns"] = parsed.get("columns") or []
            result["row_count"] = parsed.get("row_count", 0)
            result["truncated"] = parsed.get("truncated")
        elif kind == "completion":
            result["execution_time_ms"] = parsed.get("execution_time_ms")
            result["actual_row_count"] = parsed.get("actual_row_count")
        else:
            result["results"].append(parsed)
    return result


def _first_text(result: CallToolResult) -> Optional[str]:
    for item in result.content:
        text = getattr(item, "text", None)
        if isinstance(text, str):
            return text
    return None


def decode_tool_result(result: CallToolResult) -> Any:
    """
    Turn a tool result into the tool's own payload.

    Structured content wins; otherwise the first text item is decoded as JSON
    or JSON lines. Error results and error text become
    ``{"success": False, "error": ...}``.
    """
    text = _first_text(result)
    if result.isError or (text is not None and (text.startswith(_ERROR_PREFIXES) or any(m in text for m in _ERROR_MARKERS))):
        return {"success": False, "error": text or "Tool execution failed"}
    if result.structuredContent is not None:
        return result.structuredContent
    if text is None:
        return None
    if "\n" in text and '"type": "metadata"' in text:
        return _parse_jsonl(text)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text
