"""
Analytical-query collaborator: schema discovery and read-only SQL over MCP.
"""

from .client import AnalyticsClient, AnalyticsError, QueryResult
from .config import AnalyticsSettings
from .sql_validator import SQLValidator, ValidationResult

__all__ = [
    "AnalyticsClient",
    "AnalyticsError",
    "AnalyticsSettings",
    "QueryResult",
    "SQLValidator",
    "ValidationResult",
]
