"""
Feature vectors shared by protocols and user profiles.

Both sides are encoded into one fixed layout so cosine similarity between a
user and a protocol is always defined. Blocks a side has no information for
stay at zero (protocols carry no demographics, users no program duration).

Layout (in order):
    level         one-hot difficulty / fitness level
    category      one-hot protocol category (users: affinity from goals)
    duration      duration_weeks / 24
    frequency     sessions per week / 7
    equipment     presence flags over the equipment vocabulary
    goals         presence flags over the goal vocabulary
    metabolic     one-hot metabolic demand (users: their ideal demand)
    session_time  session minutes / 180 (users: available time)
    demographics  age / 100, weight / 200, height / 250
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .config import (
    AGE_NORM,
    DURATION_NORM_WEEKS,
    FEATURE_SCHEMA_VERSION,
    FREQUENCY_NORM,
    GOAL_CATEGORY_AFFINITY,
    HEIGHT_NORM,
    SESSION_TIME_NORM,
    WEIGHT_NORM,
)
from .errors import SchemaVersionMismatch
from .profile import UserProfile, ideal_metabolic_demand
from .taxonomy import (
    Category,
    Difficulty,
    Equipment,
    Goal,
    MetabolicDemand,
    estimate_session_minutes,
)

if TYPE_CHECKING:
    from .catalog import Protocol

logger = logging.getLogger(__name__)

FEATURE_BLOCKS: list[tuple[str, int]] = [
    ("level", len(Difficulty)),
    ("category", len(Category)),
    ("duration", 1),
    ("frequency", 1),
    ("equipment", len(Equipment)),
    ("goals", len(Goal)),
    ("metabolic", len(MetabolicDemand)),
    ("session_time", 1),
    ("demographics", 3),
]


def _block_offsets() -> dict[str, int]:
    offsets = {}
    position = 0
    for name, size in FEATURE_BLOCKS:
        offsets[name] = position
        position += size
    return offsets


BLOCK_OFFSETS = _block_offsets()
FEATURE_DIMENSION = sum(size for _, size in FEATURE_BLOCKS)


@dataclass(frozen=True, eq=False)
class FeatureVector:
    """Read-only numeric encoding tagged with the schema it was built under."""

    values: np.ndarray
    schema_version: int = FEATURE_SCHEMA_VERSION

    def __post_init__(self) -> None:
        arr = np.array(self.values, dtype=np.float64)
        arr.setflags(write=False)
        object.__setattr__(self, "values", arr)

    def __len__(self) -> int:
        return len(self.values)

    def block(self, name: str) -> np.ndarray:
        """Return the slice of values belonging to a named layout block."""
        size = dict(FEATURE_BLOCKS)[name]
        start = BLOCK_OFFSETS[name]
        return self.values[start:start + size]


def _one_hot(arr: np.ndarray, block: str, enum_cls, value) -> None:
    members = list(enum_cls)
    arr[BLOCK_OFFSETS[block] + members.index(enum_cls(value))] = 1.0


def _flags(arr: np.ndarray, block: str, enum_cls, values) -> None:
    members = list(enum_cls)
    offset = BLOCK_OFFSETS[block]
    for value in values:
        arr[offset + members.index(enum_cls(value))] = 1.0


def embed_protocol(protocol: "Protocol") -> FeatureVector:
    """Build the embedding for a protocol."""
    arr = np.zeros(FEATURE_DIMENSION, dtype=np.float64)
    _one_hot(arr, "level", Difficulty, protocol.difficulty)
    _one_hot(arr, "category", Category, protocol.category)
    arr[BLOCK_OFFSETS["duration"]] = protocol.duration_weeks / DURATION_NORM_WEEKS
    arr[BLOCK_OFFSETS["frequency"]] = protocol.sessions_per_week / FREQUENCY_NORM
    _flags(arr, "equipment", Equipment, protocol.required_equipment)
    _flags(arr, "goals", Goal, protocol.goals)
    _one_hot(arr, "metabolic", MetabolicDemand, protocol.metabolic_demand)
    session_minutes = estimate_session_minutes(protocol.category, protocol.difficulty)
    arr[BLOCK_OFFSETS["session_time"]] = session_minutes / SESSION_TIME_NORM
    return FeatureVector(arr, schema_version=FEATURE_SCHEMA_VERSION)


def vectorize(profile: UserProfile) -> FeatureVector:
    """Build the feature vector for a user profile."""
    arr = np.zeros(FEATURE_DIMENSION, dtype=np.float64)
    _one_hot(arr, "level", Difficulty, profile.fitness_level)
    categories = {GOAL_CATEGORY_AFFINITY[goal.value] for goal in profile.goals}
    _flags(arr, "category", Category, categories)
    arr[BLOCK_OFFSETS["frequency"]] = profile.weekly_frequency / FREQUENCY_NORM
    _flags(arr, "equipment", Equipment, profile.equipment)
    _flags(arr, "goals", Goal, profile.goals)
    _one_hot(arr, "metabolic", MetabolicDemand, ideal_metabolic_demand(profile))
    arr[BLOCK_OFFSETS["session_time"]] = profile.available_time_minutes / SESSION_TIME_NORM
    demographics = BLOCK_OFFSETS["demographics"]
    arr[demographics] = profile.age / AGE_NORM
    arr[demographics + 1] = profile.weight / WEIGHT_NORM
    arr[demographics + 2] = profile.height / HEIGHT_NORM
    return FeatureVector(arr, schema_version=FEATURE_SCHEMA_VERSION)


def check_schema(vector: FeatureVector) -> None:
    """Raise SchemaVersionMismatch unless the vector matches the current schema."""
    if vector.schema_version != FEATURE_SCHEMA_VERSION:
        raise SchemaVersionMismatch(FEATURE_SCHEMA_VERSION, vector.schema_version)
    if len(vector) != FEATURE_DIMENSION:
        raise SchemaVersionMismatch(
            FEATURE_SCHEMA_VERSION,
            vector.schema_version,
            f"length {len(vector)} != {FEATURE_DIMENSION}",
        )


def cosine_similarity(a: FeatureVector, b: FeatureVector) -> float:
    """
    Cosine similarity between two vectors built under the same schema.

    Returns 0.0 when either vector has zero magnitude.
    """
    check_schema(a)
    check_schema(b)
    norm_a = float(np.linalg.norm(a.values))
    norm_b = float(np.linalg.norm(b.values))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a.values, b.values) / (norm_a * norm_b))
