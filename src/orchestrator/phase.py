"""
Best-effort phase labelling of streamed model text.

Used only to decorate ``content_delta`` events for the UI. Nothing in the
loop's termination or tool handling depends on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

EXPLORATION_PHRASES = ("let me", "checking", "exploring", "i need to", "i'll check")
FINAL_MARKERS = ("##", "**Cohort", "### ")
FINAL_PHRASES = ("here's your cohort", "cohort overview")

PHASES = ("exploring", "analyzing", "finalizing")


@dataclass(frozen=True)
class TextClassification:
    is_exploration: bool
    is_final_result: bool


def classify_text(text: str) -> TextClassification:
    lowered = text.lower()
    return TextClassification(
        is_exploration=any(p in lowered for p in EXPLORATION_PHRASES),
        is_final_result=any(m in text for m in FINAL_MARKERS) or any(p in lowered for p in FINAL_PHRASES),
    )


class PhaseTracker:
    """Accumulates the current text block and advances the phase, never backwards."""

    def __init__(self, analyzing_after: int = 3):
        self.analyzing_after = analyzing_after
        self.phase = PHASES[0]
        self._block = ""

    def _advance(self, phase: str) -> None:
        if PHASES.index(phase) > PHASES.index(self.phase):
            self.phase = phase

    def feed(self, delta: str, iteration: int) -> Tuple[TextClassification, str]:
        self._block += delta
        result = classify_text(self._block)
        if result.is_final_result:
            self._advance("finalizing")
        elif iteration > self.analyzing_after and not result.is_exploration:
            self._advance("analyzing")
        return result, self.phase

    def block_stop(self) -> None:
        self._block = ""
