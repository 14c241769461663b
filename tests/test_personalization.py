import pytest

from conftest import make_feedback
from protocol_rec.personalization import PersonalizationModel, derive_factors, user_insights
from test_feedback import ten_sessions


def test_factors_need_three_entries():
    assert derive_factors([make_feedback(difficulty=9)] * 2) == {}
    assert derive_factors([make_feedback(difficulty=9)] * 3) == {
        "prefers-high-difficulty": 1.2,
        "high-completion": 1.15,
    }


def test_ten_session_factors():
    factors = derive_factors(ten_sessions())
    assert factors == {"effectiveness-focused": 1.3, "high-completion": 1.15}


def test_low_difficulty_and_low_completion():
    entries = [make_feedback(difficulty=2, completed=False, enjoyment=9)] * 4
    assert derive_factors(entries) == {
        "prefers-low-difficulty": 1.2,
        "enjoyment-important": 1.1,
        "needs-simpler-protocols": 1.25,
    }


def test_factors_never_exceed_ceiling(monkeypatch):
    from protocol_rec import personalization

    monkeypatch.setitem(personalization.PERSONALIZATION_FACTORS, "effectiveness-focused", 2.0)
    factors = derive_factors([make_feedback(effectiveness=10)] * 3)
    assert factors["effectiveness-focused"] == 1.3


def test_model_refresh_returns_new_model():
    model = PersonalizationModel()
    refreshed = model.refresh("u1", ten_sessions())

    assert model.factors_for("u1") == {}
    assert refreshed.factors_for("u1")["high-completion"] == 1.15
    # Dropping below the gate removes the user
    assert len(refreshed.refresh("u1", ten_sessions()[:2])) == 0


def test_rebuild_groups_by_user():
    entries = ten_sessions("u1") + [make_feedback(user_id="u2")] * 2
    model = PersonalizationModel.rebuild(entries)
    assert set(model.as_dict()) == {"u1"}


def test_insights_for_unknown_user():
    insights = user_insights("ghost", [])
    assert insights.total_feedbacks == 0
    assert insights.preferred_difficulty == "unknown"
    assert insights.suggestions


def test_insights_summary():
    entries = ten_sessions() + [
        make_feedback(protocol_id="gmax-fat-loss-metabolic", rating=5),
        make_feedback(protocol_id="gmax-powerlifting-elite", rating=2),
        make_feedback(protocol_id="gmax-hypertrophy-accelerated", rating=3),
    ]

    insights = user_insights("u1", entries)

    assert insights.total_feedbacks == 13
    assert insights.preferred_difficulty == "intermediate"
    assert insights.top_protocols == (
        "gmax-fat-loss-metabolic",
        "gmax-strength-foundation",
        "gmax-hypertrophy-accelerated",
    )
    assert insights.average_rating == pytest.approx((47 + 10) / 13)
    assert "You are doing well, try more advanced protocols" in insights.suggestions
    assert insights.to_dict()["top_protocols"][0] == "gmax-fat-loss-metabolic"
