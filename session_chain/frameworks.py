"""Evaluation frameworks turning a session self-assessment into a 0-100 score."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .models import SessionEvaluation
from .utils import round_half_up

SCORED_DIMENSIONS = ("prompt_quality", "context_provided", "independence_level", "scope_quality")


@dataclass(frozen=True)
class EvaluationFramework:
    id: str
    name: str
    description: str
    weights: Dict[str, float]

    def compute_session_score(self, evaluation: SessionEvaluation) -> float:
        """Weighted share of the maximum (5) across the scored dimensions, times 100."""
        total = sum(
            (getattr(evaluation, dimension) / 5) * self.weights[dimension]
            for dimension in SCORED_DIMENSIONS
        )
        return total * 100

    def score(self, evaluation: SessionEvaluation) -> int:
        return round_half_up(self.compute_session_score(evaluation))


SPACE = EvaluationFramework(
    id="space",
    name="SPACE",
    description="Weighted rubric based on the SPACE developer productivity framework.",
    weights={
        "prompt_quality": 0.30,
        "context_provided": 0.25,
        "independence_level": 0.25,
        "scope_quality": 0.20,
    },
)

RAW = EvaluationFramework(
    id="raw",
    name="Basic",
    description="Equal-weight average of the four scored dimensions.",
    weights={dimension: 0.25 for dimension in SCORED_DIMENSIONS},
)

FRAMEWORKS = {SPACE.id: SPACE, RAW.id: RAW}


def get_framework(framework_id: Optional[str] = None) -> EvaluationFramework:
    """Return the named framework, defaulting to SPACE for unknown ids."""
    return FRAMEWORKS.get(framework_id or "", SPACE)
