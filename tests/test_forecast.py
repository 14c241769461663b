from datetime import date, datetime, timedelta

import pytest

from conftest import FIXED_NOW
from protocol_rec.errors import ValidationError
from protocol_rec.forecast import (
    UserActivity,
    churn_risk,
    engagement_score,
    forecast_confidence,
    forecast_series,
    forecast_user_growth,
    linear_trend,
    month_label,
)

START = date(2024, 6, 15)


def test_linear_trend():
    assert linear_trend([100, 110, 120, 130]) == pytest.approx(10.0)
    assert linear_trend([5]) == 0.0
    assert linear_trend([]) == 0.0


def test_forecast_extends_the_trend():
    points = forecast_series([100, 110, 120, 130], horizon=1, start=START)
    assert len(points) == 1
    assert points[0].period == "2024-07"
    assert points[0].predicted_value == pytest.approx(140.0)
    assert points[0].confidence == pytest.approx(0.85)


def test_confidence_decays_to_floor():
    confidences = [p.confidence for p in forecast_series([1, 2, 3], horizon=8, start=START)]
    assert confidences == sorted(confidences, reverse=True)
    assert confidences[-1] == pytest.approx(0.6)
    assert forecast_confidence(100) == pytest.approx(0.6)


def test_short_histories_forecast_flat():
    assert [p.predicted_value for p in forecast_series([42], 3, start=START)] == [42.0] * 3
    assert [p.predicted_value for p in forecast_series([], 2, start=START)] == [0.0, 0.0]


def test_forecast_never_goes_negative():
    points = forecast_series([30, 20, 10], horizon=3, start=START)
    assert [p.predicted_value for p in points] == [0.0, 0.0, 0.0]


def test_horizon_edges():
    assert forecast_series([1, 2], 0, start=START) == []
    with pytest.raises(ValidationError):
        forecast_series([1, 2], -1, start=START)


def test_month_labels_wrap_years():
    assert month_label(date(2024, 11, 30), 1) == "2024-12"
    assert month_label(date(2024, 11, 30), 2) == "2025-01"
    assert month_label(date(2024, 1, 1), 25) == "2026-02"


def test_user_growth_is_rounded():
    points = forecast_user_growth([10, 11, 13], horizon=2, start=START)
    assert [p.predicted_value for p in points] == [round(13 + 1.5), round(13 + 3.0)]


def _activity(user_id, days_inactive, **overrides):
    data = dict(user_id=user_id, last_activity=FIXED_NOW - timedelta(days=days_inactive), total_spent=600.0)
    data.update(overrides)
    return UserActivity(**data)


def test_engagement_score_components():
    user = _activity(
        "u1", 2,
        protocols_generated=10,
        coaching_purchases=1,
        average_session_duration=400,
        registration_date=FIXED_NOW - timedelta(days=200),
        total_sessions=30,
    )
    # 30 recency + 25 capped usage + 15 coaching + 20 duration + 10 loyalty
    assert engagement_score(user, FIXED_NOW) == 100.0
    assert engagement_score(_activity("u2", 100), FIXED_NOW) == 0.0


def test_churn_risk_ranking_and_reasons():
    users = [
        _activity("quiet", 40, engagement_score=20),
        _activity("recent", 3, engagement_score=5),
        _activity("free", 60, total_spent=0.0, engagement_score=0),
        _activity("busy", 20, engagement_score=70, protocols_generated=3, average_session_duration=200),
        _activity("also-quiet", 40, engagement_score=20),
    ]

    ranked = churn_risk(users, FIXED_NOW)

    assert [e.user_id for e in ranked] == ["also-quiet", "quiet", "busy"]
    assert ranked[1].risk_score == 80.0
    assert ranked[1].reasons == (
        "Prolonged inactivity",
        "Sessions too short",
        "Not using protocols",
        "Low engagement",
    )
    assert ranked[2].reasons == ()
    assert len(churn_risk(users, FIXED_NOW, limit=1)) == 1


def test_activity_from_dict():
    activity = UserActivity.from_dict({
        "user_id": "u1",
        "last_activity": "2024-05-01T00:00:00",
        "total_spent": "19.99",
    })
    assert activity.last_activity == datetime(2024, 5, 1)
    assert activity.total_spent == pytest.approx(19.99)
    with pytest.raises(ValidationError):
        UserActivity.from_dict({"user_id": "u1"})


def test_churn_accepts_timestamps_with_offsets():
    users = [UserActivity.from_dict({
        "user_id": "exported",
        "last_activity": "2024-04-01T00:00:00+00:00",
        "registration_date": "2023-01-01T00:00:00+02:00",
        "total_spent": 25,
    })]

    assert users[0].last_activity.tzinfo is None
    ranked = churn_risk(users, FIXED_NOW)
    assert [e.user_id for e in ranked] == ["exported"]
    assert "Prolonged inactivity" in ranked[0].reasons


def test_activity_needs_last_activity():
    with pytest.raises(ValidationError):
        UserActivity.from_dict({"user_id": "u1", "last_activity": ""})


def test_engagement_with_aware_activity_and_naive_clock():
    from datetime import timezone

    aware = UserActivity(user_id="u1", last_activity=datetime(2024, 6, 14, tzinfo=timezone.utc))
    naive = UserActivity(user_id="u1", last_activity=datetime(2024, 6, 14))
    assert engagement_score(aware, FIXED_NOW) == engagement_score(naive, FIXED_NOW)
