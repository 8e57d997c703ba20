"""
Read-only SQL validation before a query reaches the analytical service.

Errors block execution; warnings ride along with the result so the model
can tighten its next query.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .config import DANGEROUS_KEYWORDS

logger = logging.getLogger(__name__)

_TABLE_REF = re.compile(r"\b(?:from|join)\s+([a-z_][a-z0-9_]*)", re.I)
_CTE_NAME = re.compile(r"(?:\bwith|,)\s*(?:recursive\s+)?([a-z_][a-z0-9_]*)\s+as\s*\(", re.I)


@dataclass(frozen=True)
class ValidationIssue:
    type: str
    message: str
    suggestion: str

    def to_payload(self) -> dict:
        return {"type": self.type, "message": self.message, "suggestion": self.suggestion}


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def format_message(self) -> str:
        if self.valid and not self.warnings:
            return "SQL validation passed"
        lines: List[str] = []
        if self.errors:
            lines.append("Validation errors:")
            for i, err in enumerate(self.errors, start=1):
                lines.append(f"{i}. {err.message}")
                lines.append(f"   -> {err.suggestion}")
        if self.warnings:
            lines.append("Warnings:")
            for i, warn in enumerate(self.warnings, start=1):
                lines.append(f"{i}. {warn.message}")
                lines.append(f"   -> {warn.suggestion}")
        return "\n".join(lines)


class SQLValidator:
    """Checks that a query is a plain SELECT against the one allowed table."""

    def __init__(
        self,
        table: str = "synthie",
        database: str = "synthiedb",
        dangerous_keywords: Optional[Iterable[str]] = None,
    ):
        self.table = table.lower()
        self.database = database.lower()
        self.dangerous_keywords = tuple(k.lower() for k in (dangerous_keywords or DANGEROUS_KEYWORDS))

    def validate(self, sql: Optional[str]) -> ValidationResult:
        result = ValidationResult()
        if not sql or not sql.strip():
            result.errors.append(ValidationIssue("EMPTY_QUERY", "SQL query is empty", "Provide a valid SQL query"))
            return result

        normalized = sql.lower().strip()
        result.errors.extend(self._dangerous_keywords(normalized))
        result.errors.extend(self._table_names(normalized))
        result.errors.extend(self._syntax(normalized, sql))
        result.warnings.extend(self._performance(normalized))

        logger.info(
            "SQL validation: valid=%s errors=%s warnings=%s",
            result.valid,
            len(result.errors),
            len(result.warnings),
        )
        return result

    def _dangerous_keywords(self, normalized: str) -> List[ValidationIssue]:
        return [
            ValidationIssue(
                "DANGEROUS_KEYWORD",
                f"Dangerous keyword detected: {kw.upper()}",
                f"This operation is not allowed. Use SELECT queries only to retrieve data from the {self.table} table.",
            )
            for kw in self.dangerous_keywords
            if re.search(rf"\b{re.escape(kw)}\b", normalized)
        ]

    def _table_names(self, normalized: str) -> List[ValidationIssue]:
        errors: List[ValidationIssue] = []
        ctes = {m.group(1).lower() for m in _CTE_NAME.finditer(normalized)}
        seen = set()
        for m in _TABLE_REF.finditer(normalized):
            name = m.group(1).lower()
            if name in seen or name == self.table or name in ctes or name == self.database:
                continue
            seen.add(name)
            errors.append(
                ValidationIssue(
                    "INVALID_TABLE",
                    f"Invalid table name: {name}",
                    f"Only the '{self.table}' table is available. Use: SELECT ... FROM {self.table} WHERE ...",
                )
            )
        if self.database in normalized:
            errors.append(
                ValidationIssue(
                    "INVALID_TABLE",
                    f"Invalid table reference: {self.database}",
                    f"Use the table name '{self.table}', not the database name '{self.database}'. "
                    f"Correct: SELECT ... FROM {self.table}",
                )
            )
        return errors

    def _syntax(self, normalized: str, original: str) -> List[ValidationIssue]:
        errors: List[ValidationIssue] = []
        if not re.match(r"(select|with)\b", normalized):
            errors.append(
                ValidationIssue(
                    "SYNTAX_ERROR",
                    "Query must start with SELECT",
                    f"Only SELECT queries are allowed for data retrieval. Example: SELECT * FROM {self.table} WHERE ...",
                )
            )
        if not re.search(r"\bfrom\b", normalized):
            errors.append(
                ValidationIssue(
                    "SYNTAX_ERROR",
                    "Missing FROM clause",
                    f"SELECT queries must include a FROM clause. Example: SELECT COUNT(*) FROM {self.table}",
                )
            )
        opened, closed = original.count("("), original.count(")")
        if opened != closed:
            errors.append(
                ValidationIssue(
                    "SYNTAX_ERROR",
                    f"Unmatched parentheses ({opened} open, {closed} close)",
                    "Check that all opening parentheses have matching closing parentheses",
                )
            )
        if original.count("'") % 2:
            errors.append(
                ValidationIssue("SYNTAX_ERROR", "Unclosed single quote", "Check that all single quotes are properly closed")
            )
        if original.count('"') % 2:
            errors.append(
                ValidationIssue("SYNTAX_ERROR", "Unclosed double quote", "Check that all double quotes are properly closed")
            )
        return errors

    def _performance(self, normalized: str) -> List[ValidationIssue]:
        warnings: List[ValidationIssue] = []
        has_limit = re.search(r"\blimit\b", normalized) is not None
        if "select *" in normalized and not has_limit:
            warnings.append(
                ValidationIssue(
                    "MISSING_LIMIT",
                    "SELECT * without LIMIT may return too many rows",
                    f"Consider adding a LIMIT clause. Example: SELECT * FROM {self.table} LIMIT 1000",
                )
            )
        if not re.search(r"\bwhere\b", normalized) and not has_limit and "count(" not in normalized:
            warnings.append(
                ValidationIssue(
                    "BROAD_QUERY",
                    "Query has no WHERE clause or LIMIT - may be too broad",
                    "Add filters to narrow results. Example: WHERE age > 25 AND state_label = 'Berlin'",
                )
            )
        if re.search(r"like\s+'%", normalized):
            warnings.append(
                ValidationIssue(
                    "PERFORMANCE",
                    "LIKE with leading wildcard can be slow on large datasets",
                    "Prefer trailing wildcards (LIKE 'term%') over leading ones (LIKE '%term')",
                )
            )
        return warnings
