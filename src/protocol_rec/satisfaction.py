import logging
from dataclasses import dataclass
from typing import Any

from .config import (
    PERSONALIZATION_FACTOR_CEILING,
    RATING_RANGE,
    SATISFACTION_BASE_CONFIDENCE,
    SATISFACTION_BASELINE_RATING,
    SATISFACTION_FACTOR_CONFIDENCE,
    SATISFACTION_HISTORY_WEIGHT,
    SATISFACTION_METRICS_CONFIDENCE,
    SATISFACTION_RERANK_WEIGHT,
)
from .feedback import ProtocolPerformanceMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SatisfactionPrediction:
    predicted_rating: float
    confidence: float
    factors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "predicted_rating": self.predicted_rating,
            "confidence": self.confidence,
            "factors": list(self.factors),
        }


def predict_satisfaction(
    metrics: ProtocolPerformanceMetrics | None,
    factors: dict[str, float] | None = None,
) -> SatisfactionPrediction:
    """
    Expected rating (1-5) of a protocol for a user.

    Starts from a neutral baseline, blends in the protocol's average rating
    when it has feedback, then applies each boosting personalization factor.
    The returned factors describe what influenced the prediction.
    """
    rating = SATISFACTION_BASELINE_RATING
    confidence = SATISFACTION_BASE_CONFIDENCE
    explanations = []

    if metrics is not None:
        rating = (
            metrics.avg_rating * SATISFACTION_HISTORY_WEIGHT
            + rating * (1 - SATISFACTION_HISTORY_WEIGHT)
        )
        confidence += SATISFACTION_METRICS_CONFIDENCE
        explanations.append(f"Historical performance: {metrics.avg_rating:.1f}/5")

    for name in sorted(factors or {}):
        value = min(factors[name], PERSONALIZATION_FACTOR_CEILING)
        if value > 1:
            rating *= value
            confidence += SATISFACTION_FACTOR_CONFIDENCE
            explanations.append(f"User preference: {name}")

    low, high = RATING_RANGE
    return SatisfactionPrediction(
        predicted_rating=max(low, min(high, rating)),
        confidence=max(0.0, min(1.0, confidence)),
        factors=tuple(explanations),
    )


def blend_with_satisfaction(score: float, prediction: SatisfactionPrediction) -> float:
    """Mix a ranking score with the normalized predicted rating."""
    high = RATING_RANGE[1]
    return (
        score * (1 - SATISFACTION_RERANK_WEIGHT)
        + (prediction.predicted_rating / high) * SATISFACTION_RERANK_WEIGHT
    )
