"""
Configuration constants for the protocol recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables where noted.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Storage
DB_PATH = Path(os.environ.get("PROTOCOL_REC_DB", "data/protocol_rec.db"))
CATALOG_PATH = Path(os.environ["PROTOCOL_REC_CATALOG"]) if os.environ.get("PROTOCOL_REC_CATALOG") else None

# Feedback log
FEEDBACK_RETENTION_LIMIT = _get_int_env("PROTOCOL_REC_FEEDBACK_RETENTION", 10000, min_val=1)
SINK_MAX_RETRIES = 3
SINK_RETRY_DELAY = _get_float_env("PROTOCOL_REC_SINK_RETRY_DELAY", 0.1, min_val=0.0)

# Feedback value ranges (inclusive)
RATING_RANGE = (1, 5)
SURVEY_SCALE_RANGE = (1, 10)  # effectiveness, difficulty, enjoyment

# Feature vector schema
# Increment this when:
# - an enum in taxonomy.py gains, loses or reorders members
# - a normalization divisor changes
# - a block is added to or removed from the layout in features.py
FEATURE_SCHEMA_VERSION = 1

DURATION_NORM_WEEKS = 24
FREQUENCY_NORM = 7
AGE_NORM = 100
WEIGHT_NORM = 200
HEIGHT_NORM = 250
SESSION_TIME_NORM = 180

# Goal -> protocol category affinity used to place users in the category block
GOAL_CATEGORY_AFFINITY = {
    "strength": "strength",
    "muscle-gain": "hypertrophy",
    "aesthetics": "hypertrophy",
    "fat-loss": "fat-loss",
    "conditioning": "conditioning",
    "competition": "powerlifting",
}

# Session time estimation (minutes)
DEFAULT_SESSION_BASE_MINUTES = 45
CATEGORY_BASE_MINUTES = {
    "strength": 60,
    "powerlifting": 90,
    "fat-loss": 40,
    "hypertrophy": 75,
}
DIFFICULTY_TIME_MULTIPLIERS = {
    "beginner": 0.8,
    "intermediate": 1.0,
    "advanced": 1.2,
    "expert": 1.4,
}

# Content-based penalties
PENALTY_MISSING_EQUIPMENT = 0.3
PENALTY_SESSION_TOO_LONG = 0.5
PENALTY_FREQUENCY_TOO_HIGH = 0.7

# Domain-specific (G-Maxing) scoring
PRINCIPLE_BONUSES = {
    "genetic-optimization": 0.3,
    "progressive-overload": 0.2,
    "compound-movements": 0.2,
}
METABOLIC_MATCH_WEIGHT = 0.15
METABOLIC_MISMATCH_SCORE = 0.5
RECOVERY_MATCH_WEIGHT = 0.15
RECOVERY_MISMATCH_SCORE = 0.6
PROGRESS_ALIGNMENT_WEIGHT = 0.1
DOMAIN_SCORE_CAP = 1.0

# Progress-trend scoring
PROGRESS_NEUTRAL_SCORE = 0.5
TREND_WINDOW = 5
TREND_MIN_SESSIONS = 3
TREND_DELTA_THRESHOLD = 0.1
VARIETY_PRINCIPLES = {"muscle-confusion"}
PLATEAU_VARIETY_BONUS = 0.3
DECLINING_RECOVERY_BONUS = 0.2
IMPROVING_ADVANCED_BONUS = 0.25
GOAL_ALIGNMENT_WEIGHT = 0.2

# Collaborative filtering
DEFAULT_K_NEIGHBORS = _get_int_env("PROTOCOL_REC_COLLAB_NEIGHBORS", 10, min_val=1)
COLLAB_MIN_SIMILARITY = 0.0
COLLAB_RATING_SCALE = 5.0

# Confidence
CONFIDENCE_BASE = 0.5
CONFIDENCE_EQUIPMENT = 0.2
CONFIDENCE_GOAL_OVERLAP = 0.2
CONFIDENCE_DIFFICULTY = 0.15
CONFIDENCE_PROGRESS = 0.1
CONFIDENCE_FEASIBILITY = 0.15

# Strategy weights (relative, not probabilistic)
DEFAULT_STRATEGY_WEIGHTS = {
    "collaborative": 0.2,
    "content": 0.3,
    "domain_specific": 0.4,
    "progress": 0.1,
}
STRATEGY_WEIGHT_BOUNDS = {
    "collaborative": (0.1, 0.4),
    "content": (0.1, 0.4),
    "domain_specific": (0.3, 0.6),
    "progress": (0.05, 0.2),
}

# Weight adaptation
ADAPT_MIN_FEEDBACK = _get_int_env("PROTOCOL_REC_ADAPT_MIN_FEEDBACK", 50, min_val=1)
ADAPT_WINDOW = _get_int_env("PROTOCOL_REC_ADAPT_WINDOW", 500, min_val=1)
ADAPT_SUCCESS_THRESHOLD = 6.0
# Credit attributed per successful outcome; the defaults double as priors
ADAPT_CREDIT_PRIORS = dict(DEFAULT_STRATEGY_WEIGHTS)

# Personalization
PERSONALIZATION_MIN_FEEDBACK = 3
PERSONALIZATION_FACTOR_CEILING = 1.3
HIGH_DIFFICULTY_THRESHOLD = 7
LOW_DIFFICULTY_THRESHOLD = 4
EFFECTIVENESS_FOCUS_THRESHOLD = 8
ENJOYMENT_FOCUS_THRESHOLD = 8
HIGH_COMPLETION_THRESHOLD = 0.8
LOW_COMPLETION_THRESHOLD = 0.5
PERSONALIZATION_FACTORS = {
    "prefers-high-difficulty": 1.2,
    "prefers-low-difficulty": 1.2,
    "effectiveness-focused": 1.3,
    "enjoyment-important": 1.1,
    "high-completion": 1.15,
    "needs-simpler-protocols": 1.25,
}
# Protocol-side thresholds deciding whether a factor applies during scoring
FACTOR_EFFECTIVE_PROTOCOL_SCORE = 8.0
FACTOR_ENJOYED_PROTOCOL_RATING = 4.0
FACTOR_COMPLETED_PROTOCOL_RATE = 0.8

# Satisfaction prediction
SATISFACTION_BASELINE_RATING = 3.5
SATISFACTION_BASE_CONFIDENCE = 0.3
SATISFACTION_HISTORY_WEIGHT = 0.6
SATISFACTION_METRICS_CONFIDENCE = 0.2
SATISFACTION_FACTOR_CONFIDENCE = 0.1
SATISFACTION_RERANK_WEIGHT = _get_float_env("PROTOCOL_REC_SATISFACTION_WEIGHT", 0.3, min_val=0.0)
SATISFACTION_REASON_MIN_CONFIDENCE = 0.5

# User insights
INSIGHTS_TOP_PROTOCOLS = 3

# Forecasting
FORECAST_DEFAULT_HORIZON = 6
FORECAST_CONFIDENCE_START = 0.9
FORECAST_CONFIDENCE_STEP = 0.05
FORECAST_CONFIDENCE_FLOOR = 0.6

# Churn risk
CHURN_INACTIVE_DAYS = 14
CHURN_PROLONGED_INACTIVE_DAYS = 30
CHURN_SHORT_SESSION_SECONDS = 60
CHURN_LOW_ENGAGEMENT = 30
CHURN_DEFAULT_LIMIT = _get_int_env("PROTOCOL_REC_CHURN_LIMIT", 10, min_val=1)
