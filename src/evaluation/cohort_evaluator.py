"""
Cohort quality evaluator: size match, demographic diversity and requirement fit.

A pure function of its inputs. The returned result is fed back to the model
alongside the query result so it can refine its filters.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple

logger = logging.getLogger(__name__)

Severity = Literal["critical", "high", "medium", "low"]
Dimension = Literal["size", "diversity", "requirements"]

BREAKDOWN_KEYS = ("byAge", "byGender", "byLocation", "byIncome")


@dataclass(frozen=True)
class Range:
    min: Optional[float] = None
    max: Optional[float] = None


@dataclass(frozen=True)
class CohortRequirements:
    """Requirements inferred from what the user asked for."""

    target_size: Optional[int] = None
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    age_range: Optional[Range] = None
    genders: Tuple[str, ...] = ()
    locations: Tuple[str, ...] = ()
    income_range: Optional[Range] = None
    description: str = ""

    @property
    def has_size_constraint(self) -> bool:
        return self.target_size is not None or self.min_size is not None or self.max_size is not None


@dataclass(frozen=True)
class CohortData:
    size: int
    sql: str
    breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass(frozen=True)
class DimensionScore:
    score: float
    weight: float
    details: str

    def to_payload(self) -> dict:
        return {"score": self.score, "weight": self.weight, "details": self.details}


@dataclass(frozen=True)
class EvaluationIssue:
    severity: Severity
    dimension: Dimension
    message: str
    suggestion: str

    def to_payload(self) -> dict:
        return {
            "severity": self.severity,
            "dimension": self.dimension,
            "message": self.message,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True)
class EvaluationResult:
    quality_score: int
    passed: bool
    size_match: DimensionScore
    diversity: DimensionScore
    requirement_fit: DimensionScore
    issues: Tuple[EvaluationIssue, ...]
    suggestions: Tuple[str, ...]
    summary: str

    def to_payload(self) -> dict:
        return {
            "qualityScore": self.quality_score,
            "passed": self.passed,
            "dimensions": {
                "sizeMatch": self.size_match.to_payload(),
                "diversity": self.diversity.to_payload(),
                "requirementFit": self.requirement_fit.to_payload(),
            },
            "issues": [i.to_payload() for i in self.issues],
            "suggestions": list(self.suggestions),
            "summary": self.summary,
        }


@dataclass
class EvaluatorConfig:
    quality_threshold: int = 70
    total_population: int = 83_000_000
    size_weight: float = 0.4
    diversity_weight: float = 0.2
    requirement_weight: float = 0.4


def _fmt(num: float) -> str:
    return f"{int(num):,}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def distribution_diversity(distribution: Dict[str, float]) -> float:
    """Normalized Shannon entropy of a distribution, scaled to 0-100."""
    values = list(distribution.values())
    total = sum(values)
    if total <= 0 or len(values) < 2:
        return 0.0
    entropy = 0.0
    for value in values:
        if value > 0:
            p = value / total
            entropy -= p * math.log2(p)
    return entropy / math.log2(len(values)) * 100


_AGE_FLOOR = re.compile(r"^\s*(\d+)")


def _age_floor(label: str) -> Optional[float]:
    """Leading age of a bucket label: "34", "25-34" and "25+" all start at their first number."""
    m = _AGE_FLOOR.match(str(label))
    return float(m.group(1)) if m else None


class CohortEvaluator:
    """Scores a cohort against requirements on three weighted dimensions."""

    def __init__(self, config: Optional[EvaluatorConfig] = None):
        self.config = config or EvaluatorConfig()

    def evaluate(self, cohort: CohortData, requirements: CohortRequirements) -> EvaluationResult:
        size_match = self._size_match(cohort, requirements)
        diversity = self._diversity(cohort)
        fit = self._requirement_fit(cohort, requirements)

        score = _round_half_up(
            size_match.score * size_match.weight
            + diversity.score * diversity.weight
            + fit.score * fit.weight
        )
        passed = score >= self.config.quality_threshold
        issues = self._issues(size_match, diversity, fit, cohort, requirements)
        suggestions = self._suggestions(cohort, requirements)

        parts = [
            f"Quality Score: {score}/100 ({'PASSED' if passed else 'NEEDS IMPROVEMENT'})",
            f"Cohort Size: {_fmt(cohort.size)} people",
        ]
        if issues:
            parts.append(f"Issues Found: {len(issues)}")

        logger.info("Cohort evaluated: size=%s score=%s passed=%s issues=%s", cohort.size, score, passed, len(issues))
        return EvaluationResult(
            quality_score=score,
            passed=passed,
            size_match=size_match,
            diversity=diversity,
            requirement_fit=fit,
            issues=tuple(issues),
            suggestions=tuple(suggestions),
            summary=" | ".join(parts),
        )

    def _percent_of_population(self, size: int) -> float:
        return size / self.config.total_population * 100

    def _size_match(self, cohort: CohortData, req: CohortRequirements) -> DimensionScore:
        size = cohort.size
        score: float = 100
        details = ""

        if req.target_size:
            target = req.target_size
            deviation = abs(size - target) / target
            pct = f"{deviation * 100:.1f}% deviation"
            if deviation <= 0.05:
                score, details = 100, f"Size {_fmt(size)} matches target {_fmt(target)} ({pct})"
            elif deviation <= 0.15:
                score, details = 85, f"Size {_fmt(size)} close to target {_fmt(target)} ({pct})"
            elif deviation <= 0.30:
                score, details = 65, f"Size {_fmt(size)} somewhat off target {_fmt(target)} ({pct})"
            else:
                score, details = 40, f"Size {_fmt(size)} significantly off target {_fmt(target)} ({pct})"

        if req.min_size is not None and size < req.min_size:
            score = min(score, 30)
            details = f"Size {_fmt(size)} below minimum {_fmt(req.min_size)}"
        if req.max_size is not None and size > req.max_size:
            score = min(score, 30)
            details = f"Size {_fmt(size)} exceeds maximum {_fmt(req.max_size)}"

        if not req.has_size_constraint:
            share = self._percent_of_population(size)
            if size == 0:
                score, details = 0, "Cohort is empty - no matching records found"
            elif size < 1000:
                score = 50
                details = f"Very small cohort ({_fmt(size)} people, {share:.3f}% of population) - may lack statistical significance"
            elif size > 50_000_000:
                score = 50
                details = f"Very large cohort ({_fmt(size)} people, {share:.1f}% of population) - may be too broad"
            else:
                score = 100
                details = f"Cohort size {_fmt(size)} ({share:.2f}% of population) seems reasonable"

        return DimensionScore(score=score, weight=self.config.size_weight, details=details)

    def _diversity(self, cohort: CohortData) -> DimensionScore:
        scores = [
            distribution_diversity(cohort.breakdown[key])
            for key in BREAKDOWN_KEYS
            if cohort.breakdown.get(key)
        ]
        if not scores:
            return DimensionScore(100, self.config.diversity_weight, "No demographic breakdown available")
        return DimensionScore(
            score=sum(scores) / len(scores),
            weight=self.config.diversity_weight,
            details=f"Average diversity score across {len(scores)} demographic dimensions",
        )

    def _requirement_fit(self, cohort: CohortData, req: CohortRequirements) -> DimensionScore:
        score = 100
        problems: List[str] = []
        by_age = cohort.breakdown.get("byAge")
        by_gender = cohort.breakdown.get("byGender")
        by_location = cohort.breakdown.get("byLocation")

        if req.age_range is not None and by_age:
            low = req.age_range.min if req.age_range.min is not None else -math.inf
            high = req.age_range.max if req.age_range.max is not None else math.inf
            for label, count in by_age.items():
                # A bucket counts by its lower edge, so "30-39" fits a 25-35 request.
                age = _age_floor(label)
                if age is None or not count:
                    continue
                if age < low or age > high:
                    problems.append("Some cohort members outside specified age range")
                    score -= 20
                    break

        if req.genders and by_gender:
            allowed = {g.lower() for g in req.genders}
            if any(count and g.lower() not in allowed for g, count in by_gender.items()):
                problems.append("Cohort includes genders not in requirements")
                score -= 15

        if req.locations and by_location:
            allowed = {loc.lower() for loc in req.locations}
            if any(count and loc.lower() not in allowed for loc, count in by_location.items()):
                problems.append("Cohort includes locations not in requirements")
                score -= 15

        details = "; ".join(problems) if problems else "Cohort appears to match stated requirements"
        return DimensionScore(score=max(0, score), weight=self.config.requirement_weight, details=details)

    def _size_suggestion(self, cohort: CohortData, req: CohortRequirements) -> str:
        if not req.target_size:
            return "Consider specifying a target cohort size for better evaluation"
        current, target = cohort.size, req.target_size
        if current > target:
            return f"Reduce cohort by {(current / target - 1) * 100:.0f}% - add filters like age range, income level, or specific locations"
        if current == 0:
            return "Increase cohort - no records matched, relax filters or broaden criteria"
        if current < target:
            return f"Increase cohort by {(target / current - 1) * 100:.0f}% - relax filters or broaden criteria"
        return "Cohort size matches target"

    def _issues(
        self,
        size_match: DimensionScore,
        diversity: DimensionScore,
        fit: DimensionScore,
        cohort: CohortData,
        req: CohortRequirements,
    ) -> List[EvaluationIssue]:
        issues: List[EvaluationIssue] = []
        if size_match.score < 70:
            severity: Severity = "critical" if size_match.score < 50 else "medium"
            issues.append(
                EvaluationIssue(severity, "size", size_match.details, self._size_suggestion(cohort, req))
            )
        if diversity.score < 50:
            issues.append(
                EvaluationIssue(
                    "medium",
                    "diversity",
                    "Cohort lacks demographic diversity",
                    "Consider broadening filters to include more demographic variation",
                )
            )
        if fit.score < 70:
            issues.append(
                EvaluationIssue(
                    "high",
                    "requirements",
                    fit.details,
                    "Refine SQL filters to better match stated requirements",
                )
            )
        return issues

    def _suggestions(self, cohort: CohortData, req: CohortRequirements) -> List[str]:
        out: List[str] = []
        if req.target_size and cohort.size != req.target_size:
            ratio = cohort.size / req.target_size
            if ratio > 1.5:
                out.append(
                    "Cohort is too large - add more restrictive filters (e.g., age ranges, income thresholds, specific locations)"
                )
            elif ratio < 0.5:
                out.append("Cohort is too small - relax some filters or broaden demographic criteria")
        if cohort.size == 0:
            out.append("No matching records found - try relaxing filters or checking for typos in location names")
        if self._percent_of_population(cohort.size) > 60:
            out.append("Cohort is very broad (>60% of population) - add more specific targeting criteria")
        return out
