"""
Settings for the conversational cohort builder.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from .prompts import DEFAULT_SYSTEM_PROMPT


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CohortBuilderConfig:
    """Model parameters, loop bounds and context-pruning settings."""

    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 8192
    max_iterations: int = 20
    context_pruning: bool = True
    pruning_trigger_tokens: int = 30000
    pruning_keep_recent: int = 3
    pruning_clear_at_least: int = 5000
    pruning_exempt_tools: Tuple[str, ...] = ("memory",)
    analyzing_after_iterations: int = 3
    requirement_window: int = 3
    app_tag: str = "cohort_builder"
    workflow_tag: Optional[str] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @classmethod
    def from_env(cls) -> "CohortBuilderConfig":
        exempt = os.getenv("COHORT_PRUNING_EXEMPT_TOOLS")
        return cls(
            model=os.getenv("COHORT_LLM_MODEL") or None,
            temperature=_get_env_float("COHORT_LLM_TEMPERATURE", cls.temperature),
            max_tokens=_get_env_int("COHORT_LLM_MAX_TOKENS", cls.max_tokens),
            max_iterations=max(1, _get_env_int("COHORT_MAX_ITERATIONS", cls.max_iterations)),
            context_pruning=_get_env_bool("COHORT_CONTEXT_PRUNING", cls.context_pruning),
            pruning_trigger_tokens=_get_env_int("COHORT_PRUNING_TRIGGER_TOKENS", cls.pruning_trigger_tokens),
            pruning_keep_recent=_get_env_int("COHORT_PRUNING_KEEP_RECENT", cls.pruning_keep_recent),
            pruning_clear_at_least=_get_env_int("COHORT_PRUNING_CLEAR_AT_LEAST", cls.pruning_clear_at_least),
            pruning_exempt_tools=(
                tuple(t.strip() for t in exempt.split(",") if t.strip()) if exempt is not None else ("memory",)
            ),
            analyzing_after_iterations=_get_env_int("COHORT_ANALYZING_AFTER", cls.analyzing_after_iterations),
            workflow_tag=os.getenv("COHORT_WORKFLOW_TAG") or None,
        )
