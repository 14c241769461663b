"""
Controlled vocabularies for protocols and user profiles.

Member order is significant: features.py lays out one-hot and flag blocks
in enum declaration order, so reordering members changes the feature
schema (bump FEATURE_SCHEMA_VERSION in config.py).

This module has no imports from other protocol_rec modules besides config.
"""

from __future__ import annotations

from enum import Enum

from .config import (
    CATEGORY_BASE_MINUTES,
    DEFAULT_SESSION_BASE_MINUTES,
    DIFFICULTY_TIME_MULTIPLIERS,
)


class Difficulty(str, Enum):
    """Protocol difficulty, also used as a user's fitness level."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class Category(str, Enum):
    STRENGTH = "strength"
    HYPERTROPHY = "hypertrophy"
    FAT_LOSS = "fat-loss"
    POWERLIFTING = "powerlifting"
    CONDITIONING = "conditioning"


class Equipment(str, Enum):
    BARBELL = "barbell"
    DUMBBELLS = "dumbbells"
    KETTLEBELLS = "kettlebells"
    MACHINES = "machines"
    CABLES = "cables"
    BODYWEIGHT = "bodyweight"
    BENCH = "bench"
    POWER_RACK = "power-rack"
    PLATFORM = "platform"


class Goal(str, Enum):
    STRENGTH = "strength"
    MUSCLE_GAIN = "muscle-gain"
    FAT_LOSS = "fat-loss"
    CONDITIONING = "conditioning"
    AESTHETICS = "aesthetics"
    COMPETITION = "competition"


class Principle(str, Enum):
    """Training principles a protocol is built on."""

    PROGRESSIVE_OVERLOAD = "progressive-overload"
    COMPOUND_MOVEMENTS = "compound-movements"
    GENETIC_OPTIMIZATION = "genetic-optimization"
    VOLUME_PERIODIZATION = "volume-periodization"
    MUSCLE_CONFUSION = "muscle-confusion"
    METABOLIC_STRESS = "metabolic-stress"
    METABOLIC_CONDITIONING = "metabolic-conditioning"
    HIIT = "hiit"
    CIRCUIT_TRAINING = "circuit-training"
    SPECIFICITY = "specificity"
    PEAKING = "peaking"
    MAX_EFFORT = "max-effort"


class MuscleGroup(str, Enum):
    CHEST = "chest"
    BACK = "back"
    LEGS = "legs"
    SHOULDERS = "shoulders"
    ARMS = "arms"
    CORE = "core"
    FULL_BODY = "full-body"


class MetabolicDemand(str, Enum):
    """Ordinal, lowest first."""

    LOW = "low"
    LOW_MODERATE = "low-moderate"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very-high"


class RecoveryRequirement(str, Enum):
    """Ordinal, lowest first."""

    STANDARD = "standard"
    ACTIVE = "active"
    ENHANCED = "enhanced"
    HIGH = "high"


def estimate_session_minutes(category: Category, difficulty: Difficulty) -> int:
    """
    Estimate a single session's length in minutes.

    Category base time scaled by a difficulty multiplier; deterministic so
    penalties and reasons agree with each other.
    """
    base = CATEGORY_BASE_MINUTES.get(Category(category).value, DEFAULT_SESSION_BASE_MINUTES)
    multiplier = DIFFICULTY_TIME_MULTIPLIERS[Difficulty(difficulty).value]
    return round(base * multiplier)
