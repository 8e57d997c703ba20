"""
Schema discovery tool.
"""

from __future__ import annotations

from typing import Any

from src.analytics import AnalyticsClient

from .registry import ToolContext, ToolDefinition


def catalog_tool(client: AnalyticsClient) -> ToolDefinition:
    settings = client.settings

    async def execute(tool_input: dict, context: ToolContext) -> Any:
        return await client.get_schema(context.tenant_id, settings.database)

    return ToolDefinition(
        name="catalog",
        description=(
            f"Explore the schema of the {settings.table} table ({settings.total_population:,} population records).\n\n"
            "Returns the available columns with their data types, sample values and value ranges "
            "(demographics, psychographics, behaviors, geography).\n\n"
            "Call this FIRST in every new conversation, and whenever you are unsure of exact column "
            "names or how values are labeled, before writing SQL.\n\n"
            f"The database has ONE table called '{settings.table}'. All queries use this table name."
        ),
        input_schema={"type": "object", "properties": {}},
        executor=execute,
        summarize=lambda tool_input, result: "Retrieved database schema",
    )
