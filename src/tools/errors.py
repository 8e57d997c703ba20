"""
Turn raw tool failures into structured, actionable diagnostics for the model.

The diagnostic is returned to the model as the tool's outcome so it can
correct its input on the next iteration instead of failing the session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Literal, Optional, Tuple

logger = logging.getLogger(__name__)

DiagnosticKind = Literal[
    "TABLE_NAME_ERROR",
    "SQL_SYNTAX_ERROR",
    "COLUMN_NOT_FOUND",
    "QUERY_TIMEOUT",
    "DATABASE_CONNECTION_ERROR",
    "TOOL_EXECUTION_ERROR",
]


@dataclass(frozen=True)
class ToolDiagnostic:
    kind: DiagnosticKind
    error: str
    suggestion: str
    correct_example: Optional[str] = None
    next_action: Optional[str] = None
    tool_name: Optional[str] = None
    input: Optional[Any] = None

    def to_payload(self) -> dict:
        payload: dict = {"error": self.error, "type": self.kind, "suggestion": self.suggestion}
        if self.correct_example is not None:
            payload["correctExample"] = self.correct_example
        if self.next_action is not None:
            payload["nextAction"] = self.next_action
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
            payload["input"] = self.input
        return payload


Matcher = Callable[[str], bool]


@dataclass(frozen=True)
class _Rule:
    tools: Tuple[str, ...]
    matches: Matcher
    build: Callable[[str], ToolDiagnostic]


class ErrorClassifier:
    """
    First matching rule wins; rules are scoped to tool names.

    Anything unmatched becomes ``TOOL_EXECUTION_ERROR`` carrying the tool
    name and the input that failed.
    """

    def __init__(self, table_name: str = "synthie", database_name: str = "synthiedb"):
        self.table = table_name
        self.database = database_name
        self._rules: List[_Rule] = [
            _Rule(("sql",), self._is_table_error, self._table_error),
            _Rule(("sql",), lambda m: any(s in m for s in ("syntax", "parse", "validation failed")), self._syntax_error),
            _Rule(("sql",), lambda m: "column" in m or "field" in m, self._column_error),
            _Rule(("sql",), lambda m: "timeout" in m or "timed out" in m or "too long" in m, self._timeout),
            _Rule(("sql", "catalog"), lambda m: "database" in m or "connection" in m, self._connection_error),
        ]

    def classify(self, tool_name: str, error: BaseException | str, tool_input: Any = None) -> ToolDiagnostic:
        message = str(error) or type(error).__name__
        lowered = message.lower()
        for rule in self._rules:
            if tool_name in rule.tools and rule.matches(lowered):
                diagnostic = rule.build(message)
                break
        else:
            diagnostic = self._generic(message, tool_name, tool_input)
        logger.info("Classified %s failure as %s", tool_name, diagnostic.kind)
        return diagnostic

    def _is_table_error(self, lowered: str) -> bool:
        if self.database.lower() in lowered:
            return True
        return "table" in lowered and any(s in lowered for s in ("not found", "does not exist", "invalid table"))

    def _table_error(self, message: str) -> ToolDiagnostic:
        return ToolDiagnostic(
            kind="TABLE_NAME_ERROR",
            error=message,
            suggestion=(
                f"The table name should be '{self.table}' (not '{self.database}' or other variations).\n\n"
                "Try this instead:\n"
                f"- Wrong: SELECT COUNT(*) FROM {self.database} WHERE ...\n"
                f"- Correct: SELECT COUNT(*) FROM {self.table} WHERE ...\n\n"
                f"The database is called '{self.database}', but the TABLE inside it is called '{self.table}'."
            ),
            correct_example=f"SELECT COUNT(*) FROM {self.table} WHERE age BETWEEN 25 AND 34",
        )

    def _syntax_error(self, message: str) -> ToolDiagnostic:
        return ToolDiagnostic(
            kind="SQL_SYNTAX_ERROR",
            error=message,
            suggestion=(
                "Your SQL query has a syntax error.\n\n"
                "Common fixes:\n"
                "1. Check column names exist (use the catalog tool first)\n"
                "2. Only read-only SELECT queries are allowed\n"
                "3. Use single quotes for strings: WHERE state_label = 'Berlin'\n"
                "4. Check for missing parentheses or commas\n\n"
                "Example valid query:\n"
                "SELECT gender, COUNT(*) AS total, AVG(income) AS avg_income\n"
                f"FROM {self.table}\n"
                "WHERE age BETWEEN 25 AND 34 AND state_label = 'Berlin'\n"
                "GROUP BY gender"
            ),
            correct_example=f"SELECT COUNT(*) FROM {self.table} WHERE age > 25 AND income > 50000",
        )

    def _column_error(self, message: str) -> ToolDiagnostic:
        return ToolDiagnostic(
            kind="COLUMN_NOT_FOUND",
            error=message,
            suggestion=(
                "The column name in your query doesn't exist in the database.\n\n"
                "Steps to fix:\n"
                "1. Call the 'catalog' tool to see all available columns\n"
                "2. Check the exact spelling and case of column names\n"
                "3. Common columns include: age, gender, income, state_label, education_level, household_size"
            ),
            next_action="Call the catalog tool to see all available columns and their sample values",
        )

    def _timeout(self, message: str) -> ToolDiagnostic:
        return ToolDiagnostic(
            kind="QUERY_TIMEOUT",
            error=message,
            suggestion=(
                "Your query took too long to execute.\n\n"
                "Performance tips:\n"
                "1. Add a LIMIT clause for large result sets: LIMIT 1000\n"
                "2. Use WHERE filters before GROUP BY to reduce rows\n"
                "3. Start with COUNT(*) to estimate result size\n"
                "4. Avoid SELECT * without filters"
            ),
            correct_example=f"SELECT COUNT(*) FROM {self.table} WHERE age > 25 LIMIT 1000",
        )

    def _connection_error(self, message: str) -> ToolDiagnostic:
        return ToolDiagnostic(
            kind="DATABASE_CONNECTION_ERROR",
            error=message,
            suggestion=(
                "Could not reach the analytical database.\n\n"
                "This is usually a temporary issue. Please:\n"
                "1. Try again in a moment\n"
                "2. If the problem persists, the analytical service may be down"
            ),
            next_action="Retry the request, or notify the user if the problem persists",
        )

    def _generic(self, message: str, tool_name: str, tool_input: Any) -> ToolDiagnostic:
        return ToolDiagnostic(
            kind="TOOL_EXECUTION_ERROR",
            error=message,
            suggestion=(
                f"Something went wrong while executing the '{tool_name}' tool.\n\n"
                "What you can try:\n"
                "1. Check the tool input parameters are correct\n"
                f"2. For SQL queries: verify syntax and table name ('{self.table}')\n"
                "3. For catalog: retry the request\n"
                "4. Simplify the request and try again\n\n"
                "If you need to see what data is available, call the 'catalog' tool first."
            ),
            tool_name=tool_name,
            input=tool_input,
        )
