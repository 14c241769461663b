"""
Trend forecasting and churn-risk ranking.

Forecasts fit an ordinary least-squares line over the history (x = period
index) and extrapolate from the last observed value. Confidence decays
with the horizon and never increases.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Sequence

import numpy as np

from .config import (
    CHURN_DEFAULT_LIMIT,
    CHURN_INACTIVE_DAYS,
    CHURN_LOW_ENGAGEMENT,
    CHURN_PROLONGED_INACTIVE_DAYS,
    CHURN_SHORT_SESSION_SECONDS,
    FORECAST_CONFIDENCE_FLOOR,
    FORECAST_CONFIDENCE_START,
    FORECAST_CONFIDENCE_STEP,
)
from .errors import ValidationError
from .utils import parse_timestamp_naive

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ForecastPoint:
    period: str
    predicted_value: float
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "predicted_value": self.predicted_value,
            "confidence": self.confidence,
        }


def linear_trend(history: Sequence[float]) -> float:
    """
    Closed-form OLS slope over (index, value) pairs.

    Returns 0.0 for fewer than two points.
    """
    n = len(history)
    if n < 2:
        return 0.0
    y = np.asarray(history, dtype=np.float64)
    x = np.arange(n, dtype=np.float64)
    sum_x = x.sum()
    denominator = n * np.dot(x, x) - sum_x * sum_x
    return float((n * np.dot(x, y) - sum_x * y.sum()) / denominator)


def forecast_confidence(step: int) -> float:
    return max(FORECAST_CONFIDENCE_FLOOR, FORECAST_CONFIDENCE_START - FORECAST_CONFIDENCE_STEP * step)


def month_label(start: date, offset: int) -> str:
    """YYYY-MM label for the month `offset` months after `start`."""
    month_index = start.year * 12 + (start.month - 1) + offset
    return f"{month_index // 12:04d}-{month_index % 12 + 1:02d}"


def forecast_series(
    history: Sequence[float],
    horizon: int,
    start: date | None = None,
    round_values: bool = False,
) -> list[ForecastPoint]:
    """
    Extrapolate `horizon` monthly periods past the end of `history`.

    With fewer than two points the forecast is flat at the last value
    (0.0 for an empty history). Predictions never go below zero.
    """
    if horizon < 0:
        raise ValidationError(f"horizon must be non-negative, got {horizon}")
    if horizon == 0:
        return []

    start = start or date.today()
    slope = linear_trend(history)
    last = float(history[-1]) if len(history) else 0.0

    points = []
    for step in range(1, horizon + 1):
        value = max(0.0, last + slope * step)
        if round_values:
            value = float(round(value))
        points.append(ForecastPoint(
            period=month_label(start, step),
            predicted_value=value,
            confidence=forecast_confidence(step),
        ))
    return points


def forecast_user_growth(
    history: Sequence[float],
    horizon: int,
    start: date | None = None,
) -> list[ForecastPoint]:
    """Same as forecast_series with values rounded to whole users."""
    return forecast_series(history, horizon, start=start, round_values=True)


# ---------------------------------------------------------------------------
# Engagement and churn
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserActivity:
    """Activity and spend summary for one user, as reported by analytics."""

    user_id: str
    last_activity: datetime
    registration_date: datetime | None = None
    total_sessions: int = 0
    average_session_duration: float = 0.0  # seconds
    protocols_generated: int = 0
    coaching_purchases: int = 0
    total_spent: float = 0.0
    engagement_score: float | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "UserActivity":
        try:
            engagement = payload.get("engagement_score")
            last_activity = parse_timestamp_naive(payload["last_activity"])
            if last_activity is None:
                raise ValidationError("last_activity must be set")
            return cls(
                user_id=str(payload["user_id"]),
                last_activity=last_activity,
                registration_date=parse_timestamp_naive(payload.get("registration_date")),
                total_sessions=int(payload.get("total_sessions", 0)),
                average_session_duration=float(payload.get("average_session_duration", 0.0)),
                protocols_generated=int(payload.get("protocols_generated", 0)),
                coaching_purchases=int(payload.get("coaching_purchases", 0)),
                total_spent=float(payload.get("total_spent", 0.0)),
                engagement_score=float(engagement) if engagement is not None else None,
            )
        except KeyError as exc:
            raise ValidationError(f"Missing activity field: {exc.args[0]}") from None
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed activity record: {exc}") from None


def _days_between(earlier: datetime, later: datetime) -> float:
    # Offsets are dropped on both sides so aware and naive inputs compare
    delta = parse_timestamp_naive(later) - parse_timestamp_naive(earlier)
    return delta.total_seconds() / SECONDS_PER_DAY


def engagement_score(user: UserActivity, now: datetime) -> float:
    """Heuristic 0-100 engagement from recency, usage, purchases and loyalty."""
    score = 0.0

    inactive_days = _days_between(user.last_activity, now)
    if inactive_days < 7:
        score += 30
    elif inactive_days < 30:
        score += 20
    elif inactive_days < 90:
        score += 10

    score += min(user.protocols_generated * 5, 25)
    score += user.coaching_purchases * 15

    if user.average_session_duration > 300:
        score += 20
    elif user.average_session_duration > 120:
        score += 10

    if user.registration_date is not None:
        if _days_between(user.registration_date, now) > 90 and user.total_sessions > 20:
            score += 10

    return min(score, 100.0)


@dataclass(frozen=True)
class ChurnRiskEntry:
    user_id: str
    risk_score: float
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "risk_score": self.risk_score, "reasons": list(self.reasons)}


def churn_reasons(user: UserActivity, engagement: float, now: datetime) -> list[str]:
    reasons = []
    if _days_between(user.last_activity, now) > CHURN_PROLONGED_INACTIVE_DAYS:
        reasons.append("Prolonged inactivity")
    if user.average_session_duration < CHURN_SHORT_SESSION_SECONDS:
        reasons.append("Sessions too short")
    if user.protocols_generated == 0:
        reasons.append("Not using protocols")
    if engagement < CHURN_LOW_ENGAGEMENT:
        reasons.append("Low engagement")
    return reasons


def churn_risk(
    users: Iterable[UserActivity],
    now: datetime,
    limit: int = CHURN_DEFAULT_LIMIT,
) -> list[ChurnRiskEntry]:
    """
    Rank paying users who have gone quiet by how likely they are to leave.

    A user is considered when inactive for more than CHURN_INACTIVE_DAYS
    with some historical spend. Missing engagement scores are computed.
    """
    entries = []
    for user in users:
        if _days_between(user.last_activity, now) <= CHURN_INACTIVE_DAYS or user.total_spent <= 0:
            continue
        engagement = (
            user.engagement_score
            if user.engagement_score is not None
            else engagement_score(user, now)
        )
        entries.append(ChurnRiskEntry(
            user_id=user.user_id,
            risk_score=max(0.0, min(100.0, 100.0 - engagement)),
            reasons=tuple(churn_reasons(user, engagement, now)),
        ))

    entries.sort(key=lambda e: (-e.risk_score, e.user_id))
    logger.debug(f"{len(entries)} users at churn risk, returning top {limit}")
    return entries[:limit]
