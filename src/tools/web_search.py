"""
Web search, fulfilled by the model provider rather than locally.
"""

from __future__ import annotations

from .registry import ToolDefinition

WEB_SEARCH_MAX_USES = 5


def web_search_tool(max_uses: int = WEB_SEARCH_MAX_USES) -> ToolDefinition:
    return ToolDefinition(
        name="web_search",
        description="Search the web for market context, brand information and current trends.",
        input_schema={"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
        provider_spec={"type": "web_search_20250305", "name": "web_search", "max_uses": max_uses},
        summarize=lambda tool_input, result: "Web search completed",
    )
