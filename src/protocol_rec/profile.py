import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .taxonomy import Difficulty, Equipment, Goal, MetabolicDemand, RecoveryRequirement

logger = logging.getLogger(__name__)


def _coerce_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r}") from None


@dataclass
class UserProfile:
    """A user's physical characteristics, goals and constraints for one scoring request."""
    id: str
    age: float
    weight: float
    height: float
    fitness_level: Difficulty
    goals: list[Goal] = field(default_factory=list)
    equipment: frozenset[Equipment] = field(default_factory=frozenset)
    available_time_minutes: float = 60
    weekly_frequency: int = 3
    medical_conditions: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        """Normalize enum fields so callers may pass plain strings."""
        self.fitness_level = _coerce_enum(Difficulty, self.fitness_level, "fitness level")
        # Goals keep caller order but drop duplicates
        goals = [_coerce_enum(Goal, g, "goal") for g in self.goals]
        self.goals = list(dict.fromkeys(goals))
        self.equipment = frozenset(_coerce_enum(Equipment, e, "equipment") for e in self.equipment)
        self.medical_conditions = frozenset(str(c) for c in self.medical_conditions)
        if self.weekly_frequency < 0 or self.available_time_minutes < 0:
            raise ValidationError("Weekly frequency and available time must be non-negative")

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "UserProfile":
        try:
            return cls(
                id=str(payload["id"]),
                age=float(payload["age"]),
                weight=float(payload["weight"]),
                height=float(payload["height"]),
                fitness_level=payload["fitness_level"],
                goals=list(payload.get("goals", [])),
                equipment=frozenset(payload.get("equipment", [])),
                available_time_minutes=float(payload.get("available_time_minutes", 60)),
                weekly_frequency=int(payload.get("weekly_frequency", 3)),
                medical_conditions=frozenset(payload.get("medical_conditions", [])),
            )
        except ValidationError:
            raise
        except KeyError as exc:
            raise ValidationError(f"Missing profile field: {exc.args[0]}") from None
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed profile: {exc}") from None


@dataclass(frozen=True)
class WorkoutSession:
    """One logged training session; performance_score is normalized to 0-1."""
    date: datetime | None = None
    performance_score: float | None = None
    duration_minutes: float | None = None
    protocol_id: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WorkoutSession":
        date = payload.get("date")
        return cls(
            date=datetime.fromisoformat(date) if isinstance(date, str) else date,
            performance_score=payload.get("performance_score"),
            duration_minutes=payload.get("duration_minutes"),
            protocol_id=payload.get("protocol_id"),
        )


@dataclass(frozen=True)
class ProgressData:
    """
    Progress toward goals reported by the session/profile collaborator.

    goal_progress maps a goal to the fraction already achieved (0-1).
    """
    goal_progress: dict[Goal, float] = field(default_factory=dict)
    current_protocol_id: str | None = None
    weeks_completed: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ProgressData":
        progress = {
            _coerce_enum(Goal, goal, "goal"): max(0.0, min(1.0, float(value)))
            for goal, value in (payload.get("goal_progress") or {}).items()
        }
        return cls(
            goal_progress=progress,
            current_protocol_id=payload.get("current_protocol_id"),
            weeks_completed=int(payload.get("weeks_completed", 0)),
        )


@dataclass(frozen=True)
class RecommendationContext:
    """Everything known about the user for a single recommendation request."""
    profile: UserProfile
    current_progress: ProgressData | None = None
    recent_sessions: tuple[WorkoutSession, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RecommendationContext":
        profile_data = payload.get("profile", payload)
        progress = payload.get("current_progress")
        sessions = payload.get("recent_sessions") or []
        return cls(
            profile=UserProfile.from_dict(profile_data),
            current_progress=ProgressData.from_dict(progress) if progress else None,
            recent_sessions=tuple(WorkoutSession.from_dict(s) for s in sessions),
        )


def ideal_metabolic_demand(profile: UserProfile) -> MetabolicDemand:
    """Metabolic demand best suited to the user's age, level and goals."""
    ideal = MetabolicDemand.MODERATE
    if profile.age < 25 and profile.fitness_level == Difficulty.ADVANCED:
        ideal = MetabolicDemand.HIGH
    if profile.age > 45:
        ideal = MetabolicDemand.LOW_MODERATE
    # Fat loss overrides age-based moderation
    if Goal.FAT_LOSS in profile.goals:
        ideal = MetabolicDemand.HIGH
    return ideal


def ideal_recovery_requirement(profile: UserProfile) -> RecoveryRequirement:
    """Recovery requirement best suited to the user; later rules take precedence."""
    ideal = RecoveryRequirement.STANDARD
    if profile.age > 40:
        ideal = RecoveryRequirement.ENHANCED
    if profile.weekly_frequency > 5:
        ideal = RecoveryRequirement.ACTIVE
    if profile.medical_conditions:
        ideal = RecoveryRequirement.HIGH
    return ideal
