"""
Recommendation engine facade.

Ties the catalog, scoring engine, feedback store and learning state
together. Learning state (the retained feedback, performance metrics,
personalization factors, adapted weights) lives in an immutable
LearningSnapshot that record() replaces under a write lock; read paths
take the current snapshot once at call start, so a concurrent record()
never changes state mid-scoring.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from .catalog import ProtocolCatalog
from .collaborative import NeighborSource
from .config import (
    CHURN_DEFAULT_LIMIT,
    DEFAULT_K_NEIGHBORS,
    FORECAST_DEFAULT_HORIZON,
    SATISFACTION_REASON_MIN_CONFIDENCE,
)
from .errors import ValidationError
from .feedback import FeedbackStore, ProtocolPerformanceMetrics, UserFeedback
from .forecast import (
    ChurnRiskEntry,
    ForecastPoint,
    UserActivity,
    churn_risk,
    forecast_series,
    forecast_user_growth,
)
from .model_weights import ModelWeights, adapt_weights
from .personalization import PersonalizationModel, UserInsights, user_insights
from .profile import RecommendationContext
from .recommender import RecommendationScore, ScoringEngine, sort_key
from .satisfaction import SatisfactionPrediction, blend_with_satisfaction, predict_satisfaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LearningSnapshot:
    """Everything scoring and prediction read from the learning loop."""

    weights: ModelWeights = field(default_factory=ModelWeights)
    personalization: PersonalizationModel = field(default_factory=PersonalizationModel)
    metrics: dict[str, ProtocolPerformanceMetrics] = field(default_factory=dict)
    entries: tuple[UserFeedback, ...] = ()

    @property
    def total_feedbacks(self) -> int:
        return len(self.entries)


class RecommendationEngine:
    """
    In-process recommendation and adaptive-learning engine.

    Args:
        catalog: protocol catalog; the built-in default catalog when omitted
        store: feedback store; a fresh in-memory store when omitted
        neighbor_source: similar-user lookup for the collaborative strategy
        clock: returns "now"; stamps feedback and anchors forecasts
        weights: starting strategy weights, also restored by reset()
    """

    def __init__(
        self,
        catalog: ProtocolCatalog | None = None,
        store: FeedbackStore | None = None,
        neighbor_source: NeighborSource | None = None,
        clock: Callable[[], datetime] = datetime.now,
        weights: ModelWeights | None = None,
        k_neighbors: int = DEFAULT_K_NEIGHBORS,
    ):
        self.catalog = catalog if catalog is not None else ProtocolCatalog()
        self.store = store if store is not None else FeedbackStore()
        self.clock = clock
        self.scoring = ScoringEngine(self.catalog, neighbor_source, k_neighbors=k_neighbors)
        self._initial_weights = weights or ModelWeights()
        self._write_lock = threading.Lock()
        self._snapshot = self._derive_all(LearningSnapshot(weights=self._initial_weights))

    # ------------------------------------------------------------------
    # Learning state
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> LearningSnapshot:
        return self._snapshot

    def _derive_all(self, base: LearningSnapshot) -> LearningSnapshot:
        entries = self.store.entries()
        personalization = PersonalizationModel.rebuild(entries)
        return self._with_weights(base, entries, personalization)

    def _with_weights(
        self,
        base: LearningSnapshot,
        entries: Sequence[UserFeedback],
        personalization: PersonalizationModel,
    ) -> LearningSnapshot:
        weights = adapt_weights(entries, base.weights)
        return LearningSnapshot(
            weights=weights.with_adjustments(personalization.as_dict()),
            personalization=personalization,
            metrics=self.store.all_metrics(),
            entries=tuple(entries),
        )

    def record(self, feedback: UserFeedback) -> UserFeedback:
        """
        Append feedback and refresh learning state.

        Raises NotFoundError for an unknown protocol. Entries without a
        timestamp are stamped with the engine clock. Returns the stored entry.
        """
        if not isinstance(feedback, UserFeedback):
            raise ValidationError(f"Expected UserFeedback, got {type(feedback).__name__}")
        self.catalog.get(feedback.protocol_id)
        if feedback.timestamp is None:
            feedback = replace(feedback, timestamp=self.clock())

        with self._write_lock:
            evicted = self.store.record(feedback)
            entries = self.store.entries()
            personalization = self._snapshot.personalization
            for user_id in {feedback.user_id} | {f.user_id for f in evicted}:
                user_entries = [f for f in entries if f.user_id == user_id]
                personalization = personalization.refresh(user_id, user_entries)
            self._snapshot = self._with_weights(self._snapshot, entries, personalization)
        return feedback

    def replay(self, entries: Iterable[UserFeedback]) -> int:
        """Load previously persisted feedback and re-derive all learning state."""
        with self._write_lock:
            count = self.store.load(entries)
            self._snapshot = self._derive_all(self._snapshot)
        logger.info(f"Replayed {count} feedback entries")
        return count

    def reset(self) -> None:
        """Forget all feedback and return to the starting weights."""
        with self._write_lock:
            self.store.clear()
            self._snapshot = LearningSnapshot(weights=self._initial_weights)
        logger.info("Learning state reset")

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    def recommend(
        self,
        context: RecommendationContext,
        max_results: int = 5,
        use_learning: bool = True,
    ) -> list[RecommendationScore]:
        """
        Rank the catalog for one user.

        With learning enabled the adapted weights and the user's
        personalization factors are used, and scores are blended with the
        predicted satisfaction before the final sort.
        """
        if max_results < 0:
            raise ValidationError(f"max_results must be non-negative, got {max_results}")

        snapshot = self._snapshot
        user_id = context.profile.id
        if use_learning:
            weights = snapshot.weights
            factors = snapshot.personalization.factors_for(user_id)
        else:
            weights = self._initial_weights
            factors = {}

        ranked = self.scoring.score_all(context, weights, factors, snapshot.metrics)
        if use_learning:
            ranked = [self._rerank(rec, snapshot, factors) for rec in ranked]
            ranked.sort(key=sort_key)
        return ranked[:max_results]

    def _rerank(
        self,
        rec: RecommendationScore,
        snapshot: LearningSnapshot,
        factors: dict[str, float],
    ) -> RecommendationScore:
        prediction = predict_satisfaction(snapshot.metrics.get(rec.protocol_id), factors)
        reasons = rec.reasons
        if prediction.confidence > SATISFACTION_REASON_MIN_CONFIDENCE:
            reasons = reasons + (f"Predicted satisfaction: {prediction.predicted_rating:.1f}/5",)
        score = max(0.0, min(1.0, blend_with_satisfaction(rec.score, prediction)))
        return replace(rec, score=score, reasons=reasons)

    def predict(self, user_id: str, protocol_id: str) -> SatisfactionPrediction:
        self.catalog.get(protocol_id)
        snapshot = self._snapshot
        return predict_satisfaction(
            snapshot.metrics.get(protocol_id),
            snapshot.personalization.factors_for(user_id),
        )

    def factors_for(self, user_id: str) -> dict[str, float]:
        return self._snapshot.personalization.factors_for(user_id)

    def metrics_of(self, protocol_id: str) -> ProtocolPerformanceMetrics | None:
        return self._snapshot.metrics.get(protocol_id)

    @property
    def weights(self) -> ModelWeights:
        return self._snapshot.weights

    def user_insights(self, user_id: str) -> UserInsights:
        entries = self._snapshot.entries
        return user_insights(user_id, [f for f in entries if f.user_id == user_id])

    def export_snapshot(self) -> dict[str, Any]:
        """Learning state summary for offline analysis."""
        snapshot = self._snapshot
        entries = snapshot.entries

        performance = sorted(
            snapshot.metrics.values(),
            key=lambda m: (-m.avg_rating, m.protocol_id),
        )
        user_ids = sorted({f.user_id for f in entries})
        insights = [
            user_insights(user_id, [f for f in entries if f.user_id == user_id])
            for user_id in user_ids
        ]
        insights.sort(key=lambda i: (-i.total_feedbacks, i.user_id))

        return {
            "total_feedbacks": len(entries),
            "protocol_performance": [m.to_dict() for m in performance],
            "model_weights": snapshot.weights.to_dict(),
            "user_insights": [
                {
                    "user_id": i.user_id,
                    "total_feedbacks": i.total_feedbacks,
                    "average_rating": i.average_rating,
                    "completion_rate": i.completion_rate,
                }
                for i in insights
            ],
        }

    # ------------------------------------------------------------------
    # Forecasting
    # ------------------------------------------------------------------

    def forecast_series(
        self,
        history: Sequence[float],
        horizon: int = FORECAST_DEFAULT_HORIZON,
        users: bool = False,
    ) -> list[ForecastPoint]:
        """Monthly forecast starting after the clock's current month."""
        start = self.clock().date()
        if users:
            return forecast_user_growth(history, horizon, start=start)
        return forecast_series(history, horizon, start=start)

    def churn_risk(
        self,
        users: Iterable[UserActivity],
        limit: int = CHURN_DEFAULT_LIMIT,
    ) -> list[ChurnRiskEntry]:
        return churn_risk(users, self.clock(), limit=limit)
