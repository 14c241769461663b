"""
Scoring-strategy weights and the adapter that retunes them from feedback.

Each weight is clamped into its own range so no strategy can dominate or
vanish. Weights are relative: the scoring engine divides by their sum.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from .config import (
    ADAPT_CREDIT_PRIORS,
    ADAPT_MIN_FEEDBACK,
    ADAPT_SUCCESS_THRESHOLD,
    ADAPT_WINDOW,
    DEFAULT_STRATEGY_WEIGHTS,
    STRATEGY_WEIGHT_BOUNDS,
)
from .feedback import UserFeedback

logger = logging.getLogger(__name__)

STRATEGIES = ("collaborative", "content", "domain_specific", "progress")


def clamp_weight(name: str, value: float) -> float:
    low, high = STRATEGY_WEIGHT_BOUNDS[name]
    return max(low, min(high, value))


@dataclass(frozen=True)
class ModelWeights:
    """Relative strategy weights plus per-user personalization factors."""

    collaborative: float = DEFAULT_STRATEGY_WEIGHTS["collaborative"]
    content: float = DEFAULT_STRATEGY_WEIGHTS["content"]
    domain_specific: float = DEFAULT_STRATEGY_WEIGHTS["domain_specific"]
    progress: float = DEFAULT_STRATEGY_WEIGHTS["progress"]
    personalized_adjustments: dict[str, dict[str, float]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Clamp every weight into its bounds; bad values fall back to the default."""
        for name in STRATEGIES:
            try:
                value = float(getattr(self, name))
            except (TypeError, ValueError):
                value = DEFAULT_STRATEGY_WEIGHTS[name]
            object.__setattr__(self, name, clamp_weight(name, value))
        adjustments = {
            str(user_id): {str(k): float(v) for k, v in factors.items()}
            for user_id, factors in (self.personalized_adjustments or {}).items()
        }
        object.__setattr__(self, "personalized_adjustments", adjustments)

    def as_dict(self) -> dict[str, float]:
        """Strategy name -> weight."""
        return {name: getattr(self, name) for name in STRATEGIES}

    def with_adjustments(self, adjustments: dict[str, dict[str, float]]) -> "ModelWeights":
        return replace(self, personalized_adjustments=adjustments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata,
            **self.as_dict(),
            "personalized_adjustments": self.personalized_adjustments,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ModelWeights":
        return cls(
            **{name: payload.get(name, DEFAULT_STRATEGY_WEIGHTS[name]) for name in STRATEGIES},
            personalized_adjustments=payload.get("personalized_adjustments", {}),
            metadata=payload.get("metadata", {}),
        )


def adapt_weights(entries: Sequence[UserFeedback], current: ModelWeights) -> ModelWeights:
    """
    Retune strategy weights from the feedback log.

    Needs at least ADAPT_MIN_FEEDBACK entries and looks only at the most
    recent ADAPT_WINDOW. Each successful outcome credits every strategy
    by its prior; the totals are normalized and clamped. With too little
    data or no successes the current weights are returned unchanged.
    """
    if len(entries) < ADAPT_MIN_FEEDBACK:
        logger.debug(
            f"Skipping weight adaptation: {len(entries)} feedbacks < {ADAPT_MIN_FEEDBACK}"
        )
        return current

    window = list(entries)[-ADAPT_WINDOW:]
    totals = dict.fromkeys(STRATEGIES, 0.0)
    successes = 0
    for entry in window:
        if (entry.rating + entry.effectiveness) / 2 > ADAPT_SUCCESS_THRESHOLD:
            successes += 1
            for name in STRATEGIES:
                totals[name] += ADAPT_CREDIT_PRIORS[name]

    grand_total = sum(totals.values())
    if grand_total <= 0:
        logger.debug("Skipping weight adaptation: no successful outcomes in window")
        return current

    adapted = replace(
        current,
        **{name: totals[name] / grand_total for name in STRATEGIES},
        metadata={**current.metadata, "adapted_from": len(window), "successes": successes},
    )
    logger.info(f"Adapted strategy weights from {len(window)} feedbacks: {adapted.as_dict()}")
    return adapted
