import importlib
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from protocol_rec.catalog import Protocol, ProtocolCatalog  # noqa: E402
from protocol_rec.feedback import UserFeedback  # noqa: E402
from protocol_rec.profile import RecommendationContext, UserProfile  # noqa: E402

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0)


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("PROTOCOL_REC_DB", str(db_path))
    import protocol_rec.config as config

    importlib.reload(config)
    yield config
    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("PROTOCOL_REC_DB", str(db_path))
    monkeypatch.delenv("PROTOCOL_REC_CATALOG", raising=False)

    import protocol_rec.config as config
    import protocol_rec.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


def make_profile(**overrides) -> UserProfile:
    data = dict(
        id="u1",
        age=30,
        weight=80,
        height=180,
        fitness_level="beginner",
        goals=["strength", "muscle-gain"],
        equipment={"barbell", "dumbbells", "bench"},
        available_time_minutes=60,
        weekly_frequency=3,
    )
    data.update(overrides)
    return UserProfile(**data)


def make_feedback(**overrides) -> UserFeedback:
    data = dict(
        user_id="u1",
        protocol_id="gmax-strength-foundation",
        rating=4,
        completed=True,
        effectiveness=7,
        difficulty=5,
        enjoyment=6,
        timestamp=FIXED_NOW,
    )
    data.update(overrides)
    return UserFeedback(**data)


def make_protocol(**overrides) -> Protocol:
    data = dict(
        id="barbell-basics",
        name="Barbell Basics",
        category="strength",
        difficulty="beginner",
        duration_weeks=8,
        sessions_per_week=3,
        required_equipment={"barbell"},
        goals={"strength"},
        principles={"progressive-overload"},
        target_muscles={"legs"},
        metabolic_demand="moderate",
        recovery_requirement="standard",
    )
    data.update(overrides)
    return Protocol(**data)


@pytest.fixture
def profile():
    return make_profile()


@pytest.fixture
def context(profile):
    return RecommendationContext(profile=profile)


@pytest.fixture
def catalog():
    return ProtocolCatalog()
