"""
Protocol catalog.

Holds the protocol definitions and a memoized feature embedding per
protocol. Definitions are immutable; replacing one through upsert() only
invalidates that protocol's embedding.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from .errors import NotFoundError, ValidationError
from .features import FeatureVector, embed_protocol
from .taxonomy import (
    Category,
    Difficulty,
    Equipment,
    Goal,
    MetabolicDemand,
    MuscleGroup,
    Principle,
    RecoveryRequirement,
)

logger = logging.getLogger(__name__)


def _enum_set(enum_cls, values: Iterable[Any], field_name: str) -> frozenset:
    try:
        return frozenset(enum_cls(v) for v in values)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}: {exc}") from None


@dataclass(frozen=True)
class Protocol:
    """A structured training program."""

    id: str
    name: str
    category: Category
    difficulty: Difficulty
    duration_weeks: int
    sessions_per_week: int
    required_equipment: frozenset[Equipment] = field(default_factory=frozenset)
    goals: frozenset[Goal] = field(default_factory=frozenset)
    principles: frozenset[Principle] = field(default_factory=frozenset)
    target_muscles: frozenset[MuscleGroup] = field(default_factory=frozenset)
    metabolic_demand: MetabolicDemand = MetabolicDemand.MODERATE
    recovery_requirement: RecoveryRequirement = RecoveryRequirement.STANDARD

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "category", Category(self.category))
            object.__setattr__(self, "difficulty", Difficulty(self.difficulty))
            object.__setattr__(self, "metabolic_demand", MetabolicDemand(self.metabolic_demand))
            object.__setattr__(
                self, "recovery_requirement", RecoveryRequirement(self.recovery_requirement)
            )
        except ValueError as exc:
            raise ValidationError(f"Protocol {self.id}: {exc}") from None
        object.__setattr__(
            self, "required_equipment", _enum_set(Equipment, self.required_equipment, "equipment")
        )
        object.__setattr__(self, "goals", _enum_set(Goal, self.goals, "goal"))
        object.__setattr__(self, "principles", _enum_set(Principle, self.principles, "principle"))
        object.__setattr__(
            self, "target_muscles", _enum_set(MuscleGroup, self.target_muscles, "muscle group")
        )
        if self.duration_weeks <= 0 or self.sessions_per_week <= 0:
            raise ValidationError(f"Protocol {self.id}: duration and frequency must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "difficulty": self.difficulty.value,
            "duration_weeks": self.duration_weeks,
            "sessions_per_week": self.sessions_per_week,
            "required_equipment": sorted(e.value for e in self.required_equipment),
            "goals": sorted(g.value for g in self.goals),
            "principles": sorted(p.value for p in self.principles),
            "target_muscles": sorted(m.value for m in self.target_muscles),
            "metabolic_demand": self.metabolic_demand.value,
            "recovery_requirement": self.recovery_requirement.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Protocol":
        try:
            return cls(
                id=str(payload["id"]),
                name=str(payload.get("name", payload["id"])),
                category=payload["category"],
                difficulty=payload["difficulty"],
                duration_weeks=int(payload["duration_weeks"]),
                sessions_per_week=int(payload["sessions_per_week"]),
                required_equipment=payload.get("required_equipment", []),
                goals=payload.get("goals", []),
                principles=payload.get("principles", []),
                target_muscles=payload.get("target_muscles", []),
                metabolic_demand=payload.get("metabolic_demand", MetabolicDemand.MODERATE),
                recovery_requirement=payload.get(
                    "recovery_requirement", RecoveryRequirement.STANDARD
                ),
            )
        except ValidationError:
            raise
        except KeyError as exc:
            raise ValidationError(f"Missing protocol field: {exc.args[0]}") from None
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed protocol: {exc}") from None


DEFAULT_PROTOCOLS: tuple[Protocol, ...] = (
    Protocol(
        id="gmax-strength-foundation",
        name="G-Max Strength Foundation",
        category=Category.STRENGTH,
        difficulty=Difficulty.BEGINNER,
        duration_weeks=8,
        sessions_per_week=3,
        required_equipment=frozenset({Equipment.BARBELL, Equipment.DUMBBELLS, Equipment.BENCH}),
        goals=frozenset({Goal.STRENGTH, Goal.MUSCLE_GAIN}),
        principles=frozenset({
            Principle.PROGRESSIVE_OVERLOAD,
            Principle.COMPOUND_MOVEMENTS,
            Principle.GENETIC_OPTIMIZATION,
        }),
        target_muscles=frozenset({
            MuscleGroup.CHEST, MuscleGroup.BACK, MuscleGroup.LEGS, MuscleGroup.SHOULDERS,
        }),
        metabolic_demand=MetabolicDemand.MODERATE,
        recovery_requirement=RecoveryRequirement.STANDARD,
    ),
    Protocol(
        id="gmax-hypertrophy-accelerated",
        name="G-Max Hypertrophy Accelerated",
        category=Category.HYPERTROPHY,
        difficulty=Difficulty.INTERMEDIATE,
        duration_weeks=12,
        sessions_per_week=4,
        required_equipment=frozenset({
            Equipment.BARBELL, Equipment.DUMBBELLS, Equipment.CABLES, Equipment.MACHINES,
        }),
        goals=frozenset({Goal.MUSCLE_GAIN, Goal.AESTHETICS}),
        principles=frozenset({
            Principle.VOLUME_PERIODIZATION,
            Principle.MUSCLE_CONFUSION,
            Principle.METABOLIC_STRESS,
        }),
        target_muscles=frozenset({
            MuscleGroup.CHEST, MuscleGroup.BACK, MuscleGroup.LEGS,
            MuscleGroup.SHOULDERS, MuscleGroup.ARMS,
        }),
        metabolic_demand=MetabolicDemand.HIGH,
        recovery_requirement=RecoveryRequirement.ENHANCED,
    ),
    Protocol(
        id="gmax-fat-loss-metabolic",
        name="G-Max Metabolic Fat Loss",
        category=Category.FAT_LOSS,
        difficulty=Difficulty.INTERMEDIATE,
        duration_weeks=6,
        sessions_per_week=5,
        required_equipment=frozenset({
            Equipment.BODYWEIGHT, Equipment.KETTLEBELLS, Equipment.DUMBBELLS,
        }),
        goals=frozenset({Goal.FAT_LOSS, Goal.CONDITIONING}),
        principles=frozenset({
            Principle.METABOLIC_CONDITIONING, Principle.HIIT, Principle.CIRCUIT_TRAINING,
        }),
        target_muscles=frozenset({MuscleGroup.FULL_BODY}),
        metabolic_demand=MetabolicDemand.VERY_HIGH,
        recovery_requirement=RecoveryRequirement.ACTIVE,
    ),
    Protocol(
        id="gmax-powerlifting-elite",
        name="G-Max Powerlifting Elite",
        category=Category.POWERLIFTING,
        difficulty=Difficulty.EXPERT,
        duration_weeks=16,
        sessions_per_week=4,
        required_equipment=frozenset({
            Equipment.BARBELL, Equipment.POWER_RACK, Equipment.BENCH, Equipment.PLATFORM,
        }),
        goals=frozenset({Goal.STRENGTH, Goal.COMPETITION}),
        principles=frozenset({Principle.SPECIFICITY, Principle.PEAKING, Principle.MAX_EFFORT}),
        target_muscles=frozenset({MuscleGroup.CHEST, MuscleGroup.BACK, MuscleGroup.LEGS}),
        metabolic_demand=MetabolicDemand.LOW_MODERATE,
        recovery_requirement=RecoveryRequirement.HIGH,
    ),
)


class ProtocolCatalog:
    """
    Read-mostly registry of protocols with memoized embeddings.

    Iteration order is insertion order, which keeps scoring deterministic.
    """

    def __init__(self, protocols: Iterable[Protocol] | None = None):
        self._lock = threading.RLock()
        self._protocols: dict[str, Protocol] = {}
        self._embeddings: dict[str, FeatureVector] = {}
        for protocol in (DEFAULT_PROTOCOLS if protocols is None else protocols):
            self._protocols[protocol.id] = protocol

    def __len__(self) -> int:
        return len(self._protocols)

    def __contains__(self, protocol_id: object) -> bool:
        return protocol_id in self._protocols

    def list_protocols(self) -> list[Protocol]:
        with self._lock:
            return list(self._protocols.values())

    def get(self, protocol_id: str) -> Protocol:
        """Return a protocol by id, raising NotFoundError when unknown."""
        try:
            return self._protocols[protocol_id]
        except KeyError:
            raise NotFoundError(protocol_id) from None

    def embedding_of(self, protocol_id: str) -> FeatureVector:
        """Return the protocol's embedding, computing it on first use."""
        with self._lock:
            cached = self._embeddings.get(protocol_id)
            if cached is not None:
                return cached
            vector = embed_protocol(self.get(protocol_id))
            self._embeddings[protocol_id] = vector
            logger.debug(f"Computed embedding for {protocol_id}")
            return vector

    def upsert(self, protocol: Protocol) -> None:
        """Add or replace a protocol; only its own embedding is invalidated."""
        with self._lock:
            previous = self._protocols.get(protocol.id)
            self._protocols[protocol.id] = protocol
            if previous != protocol:
                self._embeddings.pop(protocol.id, None)

    def remove(self, protocol_id: str) -> Protocol:
        with self._lock:
            if protocol_id not in self._protocols:
                raise NotFoundError(protocol_id)
            self._embeddings.pop(protocol_id, None)
            return self._protocols.pop(protocol_id)

    def reload(self, protocols: Iterable[Protocol]) -> None:
        """
        Replace the whole catalog.

        Embeddings of protocols whose definition is unchanged are kept.
        """
        with self._lock:
            incoming = {p.id: p for p in protocols}
            for protocol_id in list(self._embeddings):
                if self._protocols.get(protocol_id) != incoming.get(protocol_id):
                    del self._embeddings[protocol_id]
            self._protocols = incoming
        logger.info(f"Catalog reloaded with {len(incoming)} protocols")


def load_catalog(path: str | Path) -> ProtocolCatalog:
    """
    Load a catalog from a JSON file holding a list of protocol objects.

    Rows that fail validation are skipped with a warning; an empty result
    raises ValidationError.
    """
    catalog_path = Path(path)
    try:
        payload = json.loads(catalog_path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Cannot read catalog {catalog_path}: {exc}") from None
    if isinstance(payload, dict):
        payload = payload.get("protocols", [])

    protocols = []
    for row in payload:
        try:
            protocols.append(Protocol.from_dict(row))
        except ValidationError as exc:
            logger.warning(f"Skipping protocol in {catalog_path}: {exc}")

    if not protocols:
        raise ValidationError(f"No valid protocols in {catalog_path}")
    logger.info(f"Loaded {len(protocols)} protocols from {catalog_path}")
    return ProtocolCatalog(protocols)
