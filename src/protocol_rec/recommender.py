from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .catalog import Protocol, ProtocolCatalog
from .collaborative import NeighborSource, NullNeighborSource
from .config import (
    CONFIDENCE_BASE,
    CONFIDENCE_DIFFICULTY,
    CONFIDENCE_EQUIPMENT,
    CONFIDENCE_FEASIBILITY,
    CONFIDENCE_GOAL_OVERLAP,
    CONFIDENCE_PROGRESS,
    DECLINING_RECOVERY_BONUS,
    DEFAULT_K_NEIGHBORS,
    DOMAIN_SCORE_CAP,
    FACTOR_COMPLETED_PROTOCOL_RATE,
    FACTOR_EFFECTIVE_PROTOCOL_SCORE,
    FACTOR_ENJOYED_PROTOCOL_RATING,
    GOAL_ALIGNMENT_WEIGHT,
    IMPROVING_ADVANCED_BONUS,
    METABOLIC_MATCH_WEIGHT,
    METABOLIC_MISMATCH_SCORE,
    PENALTY_FREQUENCY_TOO_HIGH,
    PENALTY_MISSING_EQUIPMENT,
    PENALTY_SESSION_TOO_LONG,
    PERSONALIZATION_FACTOR_CEILING,
    PLATEAU_VARIETY_BONUS,
    PRINCIPLE_BONUSES,
    PROGRESS_ALIGNMENT_WEIGHT,
    PROGRESS_NEUTRAL_SCORE,
    RECOVERY_MATCH_WEIGHT,
    RECOVERY_MISMATCH_SCORE,
    TREND_DELTA_THRESHOLD,
    TREND_MIN_SESSIONS,
    TREND_WINDOW,
    VARIETY_PRINCIPLES,
)
from .features import FeatureVector, cosine_similarity, vectorize
from .profile import (
    ProgressData,
    RecommendationContext,
    UserProfile,
    WorkoutSession,
    ideal_metabolic_demand,
    ideal_recovery_requirement,
)
from .taxonomy import Difficulty, Principle, RecoveryRequirement, estimate_session_minutes

if TYPE_CHECKING:
    from .feedback import ProtocolPerformanceMetrics
    from .model_weights import ModelWeights

logger = logging.getLogger(__name__)

IMPROVING = "improving"
PLATEAU = "plateau"
DECLINING = "declining"


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class RecommendationScore:
    """One ranked protocol with its explanation."""

    protocol_id: str
    score: float
    confidence: float
    gmaxing_compatibility: float
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol_id": self.protocol_id,
            "score": round(self.score, 4),
            "confidence": round(self.confidence, 4),
            "gmaxing_compatibility": round(self.gmaxing_compatibility, 4),
            "reasons": list(self.reasons),
        }


@dataclass
class ScoringInput:
    """Per-request state shared by every strategy while scoring one context."""

    context: RecommendationContext
    user_vector: FeatureVector
    catalog: ProtocolCatalog
    neighbor_source: NeighborSource
    neighbors: list[tuple[str, float]] = field(default_factory=list)
    trend: str | None = None

    @property
    def profile(self) -> UserProfile:
        return self.context.profile


StrategyFunc = Callable[[ScoringInput, Protocol], tuple[float, list[str], list[str]]]


# ---------------------------------------------------------------------------
# Content similarity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ContentMatch:
    similarity: float
    penalty: float
    warnings: tuple[str, ...] = ()

    @property
    def score(self) -> float:
        return self.similarity * self.penalty


def missing_equipment(profile: UserProfile, protocol: Protocol) -> list[str]:
    return sorted(e.value for e in protocol.required_equipment - profile.equipment)


def content_match(
    user_vector: FeatureVector,
    protocol_vector: FeatureVector,
    profile: UserProfile,
    protocol: Protocol,
) -> ContentMatch:
    """
    Cosine similarity clamped to [0, 1], scaled by feasibility penalties.

    Penalties multiply: missing equipment, sessions longer than the user's
    available time, and more sessions per week than the user trains.
    """
    similarity = _clamp(cosine_similarity(user_vector, protocol_vector))
    penalty = 1.0
    warnings = []

    missing = missing_equipment(profile, protocol)
    if missing:
        penalty *= PENALTY_MISSING_EQUIPMENT
        warnings.append(f"Missing equipment: {', '.join(missing)}")

    session_minutes = estimate_session_minutes(protocol.category, protocol.difficulty)
    if session_minutes > profile.available_time_minutes:
        penalty *= PENALTY_SESSION_TOO_LONG
        warnings.append(
            f"Sessions run about {session_minutes} min, over your "
            f"{profile.available_time_minutes:g} min"
        )

    if protocol.sessions_per_week > profile.weekly_frequency:
        penalty *= PENALTY_FREQUENCY_TOO_HIGH
        warnings.append(
            f"Needs {protocol.sessions_per_week} sessions/week, you train {profile.weekly_frequency}"
        )

    return ContentMatch(similarity=similarity, penalty=penalty, warnings=tuple(warnings))


def _content_strategy(scoring: ScoringInput, protocol: Protocol) -> tuple[float, list[str], list[str]]:
    match = content_match(
        scoring.user_vector,
        scoring.catalog.embedding_of(protocol.id),
        scoring.profile,
        protocol,
    )
    return match.score, [], list(match.warnings)


# ---------------------------------------------------------------------------
# Collaborative estimate
# ---------------------------------------------------------------------------

def collaborative_estimate(
    neighbors: list[tuple[str, float]],
    source: NeighborSource,
    protocol_id: str,
) -> float:
    """
    Similarity-weighted mean of neighbour ratings (0-1).

    Neighbours who never rated the protocol are skipped; with no usable
    ratings the estimate is 0.0.
    """
    total = 0.0
    weight_sum = 0.0
    for user_id, similarity in neighbors:
        if similarity <= 0:
            continue
        rating = source.rating(user_id, protocol_id)
        if rating is None:
            continue
        total += rating * similarity
        weight_sum += similarity
    return total / weight_sum if weight_sum > 0 else 0.0


def _collaborative_strategy(scoring: ScoringInput, protocol: Protocol) -> tuple[float, list[str], list[str]]:
    estimate = collaborative_estimate(scoring.neighbors, scoring.neighbor_source, protocol.id)
    reasons = ["Rated highly by users like you"] if estimate >= 0.8 else []
    return estimate, reasons, []


# ---------------------------------------------------------------------------
# Domain-specific (G-Maxing) compatibility
# ---------------------------------------------------------------------------

def progress_alignment(progress: ProgressData, protocol: Protocol) -> float:
    """
    How much of the protocol's goals is still ahead of the user (0-1).

    Mean remaining progress over the protocol goals the user tracks;
    0.0 when none are tracked.
    """
    tracked = [g for g in protocol.goals if g in progress.goal_progress]
    if not tracked:
        return 0.0
    return sum(1.0 - progress.goal_progress[g] for g in tracked) / len(tracked)


def domain_compatibility(
    profile: UserProfile,
    protocol: Protocol,
    progress: ProgressData | None = None,
) -> float:
    score = 0.0
    for principle in protocol.principles:
        score += PRINCIPLE_BONUSES.get(principle.value, 0.0)

    metabolic = 1.0 if protocol.metabolic_demand == ideal_metabolic_demand(profile) else METABOLIC_MISMATCH_SCORE
    score += metabolic * METABOLIC_MATCH_WEIGHT

    recovery = 1.0 if protocol.recovery_requirement == ideal_recovery_requirement(profile) else RECOVERY_MISMATCH_SCORE
    score += recovery * RECOVERY_MATCH_WEIGHT

    if progress is not None:
        score += progress_alignment(progress, protocol) * PROGRESS_ALIGNMENT_WEIGHT

    return _clamp(score, 0.0, DOMAIN_SCORE_CAP)


def _domain_strategy(scoring: ScoringInput, protocol: Protocol) -> tuple[float, list[str], list[str]]:
    score = domain_compatibility(scoring.profile, protocol, scoring.context.current_progress)
    return score, [], []


# ---------------------------------------------------------------------------
# Progress trend
# ---------------------------------------------------------------------------

def classify_trend(sessions: tuple[WorkoutSession, ...] | list[WorkoutSession]) -> str:
    """
    Classify recent performance as improving, plateau or declining.

    Users with too little history count as improving. Otherwise the first
    and last of the most recent sessions are compared; a missing
    performance score counts as 0.
    """
    if len(sessions) < TREND_MIN_SESSIONS:
        return IMPROVING
    recent = [s.performance_score or 0.0 for s in list(sessions)[-TREND_WINDOW:]]
    delta = recent[-1] - recent[0]
    if delta > TREND_DELTA_THRESHOLD:
        return IMPROVING
    if delta < -TREND_DELTA_THRESHOLD:
        return DECLINING
    return PLATEAU


def goal_alignment(profile: UserProfile, protocol: Protocol) -> float:
    """Share of the protocol's goals the user is pursuing."""
    if not protocol.goals:
        return 0.0
    return len(protocol.goals & set(profile.goals)) / len(protocol.goals)


def progress_adjustment(
    context: RecommendationContext,
    protocol: Protocol,
    trend: str | None = None,
) -> tuple[float, list[str]]:
    if not context.recent_sessions:
        return PROGRESS_NEUTRAL_SCORE, []

    trend = trend or classify_trend(context.recent_sessions)
    score = PROGRESS_NEUTRAL_SCORE
    reasons = []

    variety = {p.value for p in protocol.principles} & VARIETY_PRINCIPLES
    if trend == PLATEAU and variety:
        score += PLATEAU_VARIETY_BONUS
        reasons.append("Adds variety to break through your plateau")
    if trend == DECLINING and protocol.recovery_requirement == RecoveryRequirement.HIGH:
        score += DECLINING_RECOVERY_BONUS
        reasons.append("Recovery-focused while your performance dips")
    if trend == IMPROVING and protocol.difficulty == Difficulty.ADVANCED:
        score += IMPROVING_ADVANCED_BONUS
        reasons.append("Raises the challenge as you keep improving")

    score += goal_alignment(context.profile, protocol) * GOAL_ALIGNMENT_WEIGHT
    return _clamp(score), reasons


def _progress_strategy(scoring: ScoringInput, protocol: Protocol) -> tuple[float, list[str], list[str]]:
    score, reasons = progress_adjustment(scoring.context, protocol, scoring.trend)
    return score, reasons, []


# ---------------------------------------------------------------------------
# Reasons, confidence, personalization
# ---------------------------------------------------------------------------

def build_reasons(profile: UserProfile, protocol: Protocol) -> list[str]:
    """Human-readable reasons for the fits that hold between user and protocol."""
    reasons = []

    matching_goals = [g.value for g in profile.goals if g in protocol.goals]
    if matching_goals:
        reasons.append(f"Matches your goals: {', '.join(matching_goals)}")

    if not missing_equipment(profile, protocol):
        reasons.append("Works with the equipment you have")

    if protocol.difficulty == profile.fitness_level:
        reasons.append(f"Difficulty suited to your level ({protocol.difficulty.value})")

    if Principle.GENETIC_OPTIMIZATION in protocol.principles:
        reasons.append("Built on G-Maxing genetic optimization principles")

    session_minutes = estimate_session_minutes(protocol.category, protocol.difficulty)
    if session_minutes <= profile.available_time_minutes:
        reasons.append(f"{session_minutes} min sessions fit your schedule")

    if protocol.sessions_per_week <= profile.weekly_frequency:
        reasons.append(f"{protocol.sessions_per_week} sessions/week fits your availability")

    return reasons


def compute_confidence(context: RecommendationContext, protocol: Protocol) -> float:
    profile = context.profile
    confidence = CONFIDENCE_BASE

    if not missing_equipment(profile, protocol):
        confidence += CONFIDENCE_EQUIPMENT

    if protocol.goals:
        overlap = len(protocol.goals & set(profile.goals))
        confidence += overlap / len(protocol.goals) * CONFIDENCE_GOAL_OVERLAP

    if protocol.difficulty == profile.fitness_level:
        confidence += CONFIDENCE_DIFFICULTY

    if context.current_progress is not None:
        confidence += CONFIDENCE_PROGRESS

    session_minutes = estimate_session_minutes(protocol.category, protocol.difficulty)
    fits_time = session_minutes <= profile.available_time_minutes
    fits_frequency = protocol.sessions_per_week <= profile.weekly_frequency
    if fits_time and fits_frequency:
        confidence += CONFIDENCE_FEASIBILITY

    return _clamp(confidence)


def _factor_applies(
    name: str,
    protocol: Protocol,
    metrics: "ProtocolPerformanceMetrics | None",
) -> bool:
    if name == "prefers-high-difficulty":
        return protocol.difficulty in (Difficulty.ADVANCED, Difficulty.EXPERT)
    if name == "prefers-low-difficulty":
        return protocol.difficulty in (Difficulty.BEGINNER, Difficulty.INTERMEDIATE)
    if name == "needs-simpler-protocols":
        return protocol.difficulty == Difficulty.BEGINNER
    if metrics is None:
        return False
    if name == "effectiveness-focused":
        return metrics.effectiveness_score >= FACTOR_EFFECTIVE_PROTOCOL_SCORE
    if name == "enjoyment-important":
        return metrics.avg_rating >= FACTOR_ENJOYED_PROTOCOL_RATING
    if name == "high-completion":
        return metrics.completion_rate >= FACTOR_COMPLETED_PROTOCOL_RATE
    return False


def personalization_multiplier(
    factors: dict[str, float],
    protocol: Protocol,
    metrics: "ProtocolPerformanceMetrics | None" = None,
) -> tuple[float, list[str]]:
    """
    Combined boost from the user's factors that apply to this protocol.

    Each factor is capped at the ceiling before multiplying in.
    Returns (multiplier, names of applied factors).
    """
    multiplier = 1.0
    applied = []
    for name in sorted(factors):
        value = factors[name]
        if value <= 1.0 or not _factor_applies(name, protocol, metrics):
            continue
        multiplier *= min(value, PERSONALIZATION_FACTOR_CEILING)
        applied.append(name)
    return multiplier, applied


def sort_key(rec: RecommendationScore) -> tuple[float, float, str]:
    return (-rec.score, -rec.confidence, rec.protocol_id)


# ---------------------------------------------------------------------------
# Scoring engine
# ---------------------------------------------------------------------------

DEFAULT_STRATEGIES: dict[str, StrategyFunc] = {
    "collaborative": _collaborative_strategy,
    "content": _content_strategy,
    "domain_specific": _domain_strategy,
    "progress": _progress_strategy,
}


class ScoringEngine:
    """
    Composable scoring pipeline over the protocol catalog.

    Each strategy returns (score, reasons, warnings) for one protocol; the
    final score is the weight-normalized combination of strategy scores,
    boosted by applicable personalization factors and capped at 1.0.
    """

    def __init__(
        self,
        catalog: ProtocolCatalog,
        neighbor_source: NeighborSource | None = None,
        strategies: dict[str, StrategyFunc] | None = None,
        k_neighbors: int = DEFAULT_K_NEIGHBORS,
    ):
        self.catalog = catalog
        self.neighbor_source = neighbor_source or NullNeighborSource()
        self.strategies = strategies if strategies is not None else dict(DEFAULT_STRATEGIES)
        self.k_neighbors = k_neighbors

    def prepare(self, context: RecommendationContext) -> ScoringInput:
        """Build the per-request state shared by all strategies."""
        neighbors = self.neighbor_source.neighbors(context.profile, self.k_neighbors)
        trend = classify_trend(context.recent_sessions) if context.recent_sessions else None
        return ScoringInput(
            context=context,
            user_vector=vectorize(context.profile),
            catalog=self.catalog,
            neighbor_source=self.neighbor_source,
            neighbors=neighbors,
            trend=trend,
        )

    def score(
        self,
        scoring: ScoringInput,
        protocol: Protocol,
        weights: "ModelWeights",
        factors: dict[str, float] | None = None,
        metrics: "ProtocolPerformanceMetrics | None" = None,
    ) -> RecommendationScore:
        weight_table = weights.as_dict()
        weighted_sum = 0.0
        weight_total = 0.0
        extra_reasons: list[str] = []
        warnings: list[str] = []
        gmaxing = 0.0

        for name, strategy in self.strategies.items():
            strategy_score, strategy_reasons, strategy_warnings = strategy(scoring, protocol)
            strategy_score = _clamp(strategy_score)
            weight = weight_table.get(name, 0.0)
            weighted_sum += strategy_score * weight
            weight_total += weight
            extra_reasons.extend(strategy_reasons)
            warnings.extend(strategy_warnings)
            if name == "domain_specific":
                gmaxing = strategy_score

        final = weighted_sum / weight_total if weight_total > 0 else 0.0

        reasons = build_reasons(scoring.profile, protocol) + extra_reasons
        if factors:
            multiplier, applied = personalization_multiplier(factors, protocol, metrics)
            if applied:
                final *= multiplier
                reasons.append(f"Personalized for you: {', '.join(applied)}")
        reasons.extend(warnings)

        return RecommendationScore(
            protocol_id=protocol.id,
            score=_clamp(final),
            confidence=compute_confidence(scoring.context, protocol),
            gmaxing_compatibility=_clamp(gmaxing),
            reasons=tuple(reasons),
        )

    def score_all(
        self,
        context: RecommendationContext,
        weights: "ModelWeights",
        factors: dict[str, float] | None = None,
        metrics: dict[str, "ProtocolPerformanceMetrics"] | None = None,
    ) -> list[RecommendationScore]:
        """Score every catalog protocol and return them best first."""
        scoring = self.prepare(context)
        metrics = metrics or {}
        results = [
            self.score(scoring, protocol, weights, factors, metrics.get(protocol.id))
            for protocol in self.catalog.list_protocols()
        ]
        results.sort(key=sort_key)
        logger.debug(f"Scored {len(results)} protocols for user {context.profile.id}")
        return results
