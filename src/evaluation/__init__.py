"""
Cohort evaluation: requirement inference, result extraction and quality scoring.
"""

from .cohort_evaluator import (
    CohortData,
    CohortEvaluator,
    CohortRequirements,
    DimensionScore,
    EvaluationIssue,
    EvaluationResult,
    EvaluatorConfig,
    Range,
)
from .extraction import cohort_from_result, is_count_query
from .requirements import infer_requirements

__all__ = [
    "CohortData",
    "CohortEvaluator",
    "CohortRequirements",
    "DimensionScore",
    "EvaluationIssue",
    "EvaluationResult",
    "EvaluatorConfig",
    "Range",
    "cohort_from_result",
    "infer_requirements",
    "is_count_query",
]
