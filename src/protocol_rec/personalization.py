"""
Per-user personalization factors and insight summaries.

Factors are derived from a user's own feedback entries only and are always
recomputable from the log; PersonalizationModel merely caches them.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import (
    EFFECTIVENESS_FOCUS_THRESHOLD,
    ENJOYMENT_FOCUS_THRESHOLD,
    HIGH_COMPLETION_THRESHOLD,
    HIGH_DIFFICULTY_THRESHOLD,
    INSIGHTS_TOP_PROTOCOLS,
    LOW_COMPLETION_THRESHOLD,
    LOW_DIFFICULTY_THRESHOLD,
    PERSONALIZATION_FACTOR_CEILING,
    PERSONALIZATION_FACTORS,
    PERSONALIZATION_MIN_FEEDBACK,
)
from .feedback import UserFeedback

logger = logging.getLogger(__name__)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def derive_factors(entries: list[UserFeedback]) -> dict[str, float]:
    """
    Multiplicative factors for one user's feedback history.

    Returns an empty map below PERSONALIZATION_MIN_FEEDBACK entries.
    """
    if len(entries) < PERSONALIZATION_MIN_FEEDBACK:
        return {}

    avg_difficulty = _mean([f.difficulty for f in entries])
    avg_effectiveness = _mean([f.effectiveness for f in entries])
    avg_enjoyment = _mean([f.enjoyment for f in entries])
    completion_rate = sum(1 for f in entries if f.completed) / len(entries)

    names = []
    if avg_difficulty > HIGH_DIFFICULTY_THRESHOLD:
        names.append("prefers-high-difficulty")
    elif avg_difficulty < LOW_DIFFICULTY_THRESHOLD:
        names.append("prefers-low-difficulty")
    if avg_effectiveness > EFFECTIVENESS_FOCUS_THRESHOLD:
        names.append("effectiveness-focused")
    if avg_enjoyment > ENJOYMENT_FOCUS_THRESHOLD:
        names.append("enjoyment-important")
    if completion_rate > HIGH_COMPLETION_THRESHOLD:
        names.append("high-completion")
    elif completion_rate < LOW_COMPLETION_THRESHOLD:
        names.append("needs-simpler-protocols")

    return {
        name: min(PERSONALIZATION_FACTORS[name], PERSONALIZATION_FACTOR_CEILING)
        for name in names
    }


class PersonalizationModel:
    """Cache of factor maps keyed by user id."""

    def __init__(self, factors: dict[str, dict[str, float]] | None = None):
        self._factors: dict[str, dict[str, float]] = {
            user_id: dict(f) for user_id, f in (factors or {}).items()
        }

    def factors_for(self, user_id: str) -> dict[str, float]:
        return dict(self._factors.get(user_id, {}))

    def refresh(self, user_id: str, entries: list[UserFeedback]) -> "PersonalizationModel":
        """Return a new model with one user's factors re-derived."""
        updated = dict(self._factors)
        factors = derive_factors(entries)
        if factors:
            updated[user_id] = factors
        else:
            updated.pop(user_id, None)
        return PersonalizationModel(updated)

    @classmethod
    def rebuild(cls, entries: Iterable[UserFeedback]) -> "PersonalizationModel":
        """Derive every user's factors from the full log."""
        by_user: dict[str, list[UserFeedback]] = defaultdict(list)
        for entry in entries:
            by_user[entry.user_id].append(entry)
        factors = {}
        for user_id, user_entries in by_user.items():
            derived = derive_factors(user_entries)
            if derived:
                factors[user_id] = derived
        logger.debug(f"Rebuilt personalization for {len(factors)} of {len(by_user)} users")
        return cls(factors)

    def as_dict(self) -> dict[str, dict[str, float]]:
        return {user_id: dict(f) for user_id, f in self._factors.items()}

    def __len__(self) -> int:
        return len(self._factors)


@dataclass(frozen=True)
class UserInsights:
    user_id: str
    total_feedbacks: int
    average_rating: float
    completion_rate: float
    preferred_difficulty: str
    top_protocols: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_feedbacks": self.total_feedbacks,
            "average_rating": self.average_rating,
            "completion_rate": self.completion_rate,
            "preferred_difficulty": self.preferred_difficulty,
            "top_protocols": list(self.top_protocols),
            "suggestions": list(self.suggestions),
        }


def user_insights(user_id: str, entries: list[UserFeedback]) -> UserInsights:
    """Summarize one user's feedback history."""
    if not entries:
        return UserInsights(
            user_id=user_id,
            total_feedbacks=0,
            average_rating=0.0,
            completion_rate=0.0,
            preferred_difficulty="unknown",
            suggestions=("Try more protocols to unlock personalized recommendations",),
        )

    total = len(entries)
    average_rating = _mean([f.rating for f in entries])
    completion_rate = sum(1 for f in entries if f.completed) / total
    avg_difficulty = _mean([f.difficulty for f in entries])

    if avg_difficulty > HIGH_DIFFICULTY_THRESHOLD:
        preferred = "advanced"
    elif avg_difficulty < LOW_DIFFICULTY_THRESHOLD:
        preferred = "beginner"
    else:
        preferred = "intermediate"

    ratings: dict[str, list[float]] = defaultdict(list)
    for entry in entries:
        ratings[entry.protocol_id].append(entry.rating)
    ranked = sorted(ratings.items(), key=lambda item: (-_mean(item[1]), item[0]))
    top_protocols = tuple(protocol_id for protocol_id, _ in ranked[:INSIGHTS_TOP_PROTOCOLS])

    suggestions = []
    if completion_rate < LOW_COMPLETION_THRESHOLD:
        suggestions.append("Consider shorter or less intense protocols")
    if average_rating > 4:
        suggestions.append("You are doing well, try more advanced protocols")
    if avg_difficulty < LOW_DIFFICULTY_THRESHOLD and completion_rate > HIGH_COMPLETION_THRESHOLD:
        suggestions.append("You are ready for harder challenges")

    return UserInsights(
        user_id=user_id,
        total_feedbacks=total,
        average_rating=average_rating,
        completion_rate=completion_rate,
        preferred_difficulty=preferred,
        top_protocols=top_protocols,
        suggestions=tuple(suggestions),
    )
