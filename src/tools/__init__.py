"""
Tool capability registry and the tools offered to the cohort-building model.
"""

from __future__ import annotations

from typing import Optional

from src.analytics import AnalyticsClient, SQLValidator
from src.evaluation import CohortEvaluator, EvaluatorConfig

from .catalog import catalog_tool
from .errors import ErrorClassifier, ToolDiagnostic
from .memory import MemoryStore, memory_tool
from .registry import ToolContext, ToolDefinition, ToolError, ToolRegistry
from .sql import sql_tool
from .web_search import web_search_tool


def build_registry(
    analytics: AnalyticsClient,
    memory_store: Optional[MemoryStore] = None,
    evaluator: Optional[CohortEvaluator] = None,
    enable_web_search: bool = True,
) -> ToolRegistry:
    """Register the standard tools and seal the registry."""
    settings = analytics.settings
    evaluator = evaluator or CohortEvaluator(EvaluatorConfig(total_population=settings.total_population))
    validator = SQLValidator(table=settings.table, database=settings.database, dangerous_keywords=settings.dangerous_keywords)

    registry = ToolRegistry()
    if enable_web_search:
        registry.register(web_search_tool())
    registry.register(catalog_tool(analytics))
    registry.register(sql_tool(analytics, evaluator, validator))
    if memory_store is not None:
        registry.register(memory_tool(memory_store))
    return registry.seal()


__all__ = [
    "ErrorClassifier",
    "MemoryStore",
    "ToolContext",
    "ToolDefinition",
    "ToolDiagnostic",
    "ToolError",
    "ToolRegistry",
    "build_registry",
    "catalog_tool",
    "memory_tool",
    "sql_tool",
    "web_search_tool",
]
