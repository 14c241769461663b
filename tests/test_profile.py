from datetime import datetime

import pytest

from conftest import make_profile
from protocol_rec.errors import ValidationError
from protocol_rec.profile import (
    ProgressData,
    RecommendationContext,
    UserProfile,
    WorkoutSession,
    ideal_metabolic_demand,
    ideal_recovery_requirement,
)
from protocol_rec.taxonomy import Difficulty, Equipment, Goal, MetabolicDemand, RecoveryRequirement


def test_profile_coerces_and_dedupes():
    profile = make_profile(goals=["strength", "strength", "fat-loss"], equipment=["barbell"])
    assert profile.fitness_level is Difficulty.BEGINNER
    assert profile.goals == [Goal.STRENGTH, Goal.FAT_LOSS]
    assert profile.equipment == frozenset({Equipment.BARBELL})


def test_profile_rejects_bad_values():
    with pytest.raises(ValidationError):
        make_profile(fitness_level="pro")
    with pytest.raises(ValidationError):
        make_profile(goals=["flexibility"])
    with pytest.raises(ValidationError):
        make_profile(weekly_frequency=-1)


def test_profile_from_dict_reports_missing_fields():
    with pytest.raises(ValidationError, match="age"):
        UserProfile.from_dict({"id": "u1", "weight": 70, "height": 170, "fitness_level": "beginner"})
    with pytest.raises(ValidationError):
        UserProfile.from_dict({"id": "u1", "age": "old", "weight": 70, "height": 170,
                               "fitness_level": "beginner"})


def test_context_from_dict_parses_progress_and_sessions():
    context = RecommendationContext.from_dict({
        "profile": {
            "id": "u9", "age": 28, "weight": 70, "height": 175,
            "fitness_level": "intermediate", "goals": ["muscle-gain"],
        },
        "current_progress": {"goal_progress": {"muscle-gain": 1.4}, "weeks_completed": 3},
        "recent_sessions": [
            {"date": "2024-05-01T10:00:00", "performance_score": 0.5},
            {"performance_score": 0.7},
        ],
    })

    assert context.profile.id == "u9"
    # Progress is clamped into 0-1
    assert context.current_progress.goal_progress == {Goal.MUSCLE_GAIN: 1.0}
    assert context.current_progress.weeks_completed == 3
    assert context.recent_sessions[0].date == datetime(2024, 5, 1, 10, 0)
    assert context.recent_sessions[-1].performance_score == 0.7


def test_bare_profile_payload_is_accepted_as_context():
    context = RecommendationContext.from_dict({
        "id": "u2", "age": 40, "weight": 90, "height": 185, "fitness_level": "advanced",
    })
    assert context.profile.fitness_level is Difficulty.ADVANCED
    assert context.current_progress is None
    assert context.recent_sessions == ()


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, MetabolicDemand.MODERATE),
        ({"age": 22, "fitness_level": "advanced"}, MetabolicDemand.HIGH),
        ({"age": 50}, MetabolicDemand.LOW_MODERATE),
        ({"age": 50, "goals": ["fat-loss"]}, MetabolicDemand.HIGH),
    ],
)
def test_ideal_metabolic_demand(overrides, expected):
    assert ideal_metabolic_demand(make_profile(**overrides)) is expected


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, RecoveryRequirement.STANDARD),
        ({"age": 45}, RecoveryRequirement.ENHANCED),
        ({"age": 45, "weekly_frequency": 6}, RecoveryRequirement.ACTIVE),
        ({"weekly_frequency": 6, "medical_conditions": {"asthma"}}, RecoveryRequirement.HIGH),
    ],
)
def test_ideal_recovery_requirement(overrides, expected):
    assert ideal_recovery_requirement(make_profile(**overrides)) is expected


def test_sessions_and_progress_defaults():
    assert WorkoutSession().performance_score is None
    assert ProgressData().goal_progress == {}
