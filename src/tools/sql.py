"""
Read-only SQL tool. Count queries are graded by the cohort evaluator and the
grade is merged into the result handed back to the model.
"""

from __future__ import annotations

import logging
from typing import Any

from src.analytics import AnalyticsClient, SQLValidator
from src.evaluation import CohortEvaluator, cohort_from_result

from .registry import ToolContext, ToolDefinition, ToolError

logger = logging.getLogger(__name__)


def _summarize(tool_input: dict, result: Any) -> str:
    rows = result.get("data") if isinstance(result, dict) else None
    return f"Executed SQL query ({len(rows or [])} rows)"


def sql_tool(client: AnalyticsClient, evaluator: CohortEvaluator, validator: SQLValidator) -> ToolDefinition:
    settings = client.settings

    async def execute(tool_input: dict, context: ToolContext) -> dict:
        sql = tool_input["sql"]
        validation = validator.validate(sql)
        if not validation.valid:
            raise ToolError("SQL validation failed:\n" + validation.format_message())

        result = await client.execute_sql(sql, context.tenant_id, settings.database)
        if not result.success:
            raise ToolError(result.error or "Query execution failed")

        payload = result.to_payload()
        if validation.warnings:
            payload["warnings"] = [w.to_payload() for w in validation.warnings]

        cohort = cohort_from_result(sql, result.data)
        if cohort is not None:
            evaluation = evaluator.evaluate(cohort, context.requirements)
            payload["evaluation"] = evaluation.to_payload()
            logger.info(
                "Count query evaluated: size=%s score=%s",
                cohort.size,
                evaluation.quality_score,
                extra={"context": context.session.log_fields()},
            )
        return payload

    return ToolDefinition(
        name="sql",
        description=(
            f"Execute a read-only SQL query on the '{settings.table}' table "
            f"({settings.total_population:,} population records).\n\n"
            "Returns rows plus a row count. COUNT(*) queries additionally return a quality "
            "evaluation of the resulting cohort against the user's requirements; use its issues "
            "and suggestions to refine your filters.\n\n"
            "Guidelines:\n"
            f"- The table name is ALWAYS '{settings.table}' (not '{settings.database}')\n"
            "- Call catalog first to learn the columns\n"
            f"- Cohort size: SELECT COUNT(*) FROM {settings.table} WHERE ...\n"
            f"- Breakdown: SELECT gender, COUNT(*) AS count FROM {settings.table} WHERE ... GROUP BY gender\n"
            "- Filter with WHERE and use LIMIT for row-level queries\n"
            "- Only SELECT (or WITH ... SELECT) statements are allowed"
        ),
        input_schema={
            "type": "object",
            "properties": {
                "sql": {
                    "type": "string",
                    "description": f"SQL query to execute against the {settings.table} table.",
                },
                "query": {"type": "string", "description": "Alias for sql."},
            },
            "required": ["sql"],
        },
        executor=execute,
        summarize=_summarize,
        input_aliases=(("query", "sql"),),
    )
