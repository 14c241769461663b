"""
Feedback log and per-protocol performance aggregation.

The log is append-only and bounded by a retention ceiling. Metrics are a
pure function of the log: whenever the log changes, every protocol whose
entries changed is recomputed from scratch.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Protocol as TypingProtocol

from .config import FEEDBACK_RETENTION_LIMIT, RATING_RANGE, SURVEY_SCALE_RANGE
from .errors import ValidationError

logger = logging.getLogger(__name__)


def _check_range(name: str, value: Any, bounds: tuple[int, int]) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    low, high = bounds
    if not low <= value <= high:
        raise ValidationError(f"{name}={value} outside [{low}, {high}]")
    return value


@dataclass(frozen=True)
class UserFeedback:
    """Post-session survey answers for one (user, protocol) pair."""

    user_id: str
    protocol_id: str
    rating: float
    completed: bool
    effectiveness: float
    difficulty: float
    enjoyment: float
    timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if not self.user_id or not self.protocol_id:
            raise ValidationError("Feedback needs both user_id and protocol_id")
        _check_range("rating", self.rating, RATING_RANGE)
        _check_range("effectiveness", self.effectiveness, SURVEY_SCALE_RANGE)
        _check_range("difficulty", self.difficulty, SURVEY_SCALE_RANGE)
        _check_range("enjoyment", self.enjoyment, SURVEY_SCALE_RANGE)
        object.__setattr__(self, "completed", bool(self.completed))

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "protocol_id": self.protocol_id,
            "rating": self.rating,
            "completed": self.completed,
            "effectiveness": self.effectiveness,
            "difficulty": self.difficulty,
            "enjoyment": self.enjoyment,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "UserFeedback":
        try:
            timestamp = payload.get("timestamp")
            if isinstance(timestamp, str):
                timestamp = datetime.fromisoformat(timestamp)
            return cls(
                user_id=str(payload["user_id"]),
                protocol_id=str(payload["protocol_id"]),
                rating=payload["rating"],
                completed=payload.get("completed", False),
                effectiveness=payload["effectiveness"],
                difficulty=payload["difficulty"],
                enjoyment=payload["enjoyment"],
                timestamp=timestamp,
            )
        except ValidationError:
            raise
        except KeyError as exc:
            raise ValidationError(f"Missing feedback field: {exc.args[0]}") from None
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed feedback: {exc}") from None


@dataclass(frozen=True)
class ProtocolPerformanceMetrics:
    protocol_id: str
    avg_rating: float
    completion_rate: float
    effectiveness_score: float
    total_feedbacks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol_id": self.protocol_id,
            "avg_rating": self.avg_rating,
            "completion_rate": self.completion_rate,
            "effectiveness_score": self.effectiveness_score,
            "total_feedbacks": self.total_feedbacks,
        }


def compute_metrics(
    entries: Iterable[UserFeedback], protocol_id: str
) -> ProtocolPerformanceMetrics | None:
    """Aggregate every entry for a protocol; None when it has no feedback."""
    relevant = [f for f in entries if f.protocol_id == protocol_id]
    if not relevant:
        return None
    total = len(relevant)
    return ProtocolPerformanceMetrics(
        protocol_id=protocol_id,
        avg_rating=sum(f.rating for f in relevant) / total,
        completion_rate=sum(1 for f in relevant if f.completed) / total,
        effectiveness_score=sum(f.effectiveness for f in relevant) / total,
        total_feedbacks=total,
    )


class FeedbackSink(TypingProtocol):
    """Durable storage port; submit() must not block the caller."""

    def submit(self, feedback: UserFeedback) -> None: ...


class FeedbackStore:
    """
    Bounded, append-only feedback log with derived performance metrics.

    Writes are serialized behind one lock. The sink, when present, is
    handed each entry only after the in-memory state is updated.
    """

    def __init__(self, retention_limit: int = FEEDBACK_RETENTION_LIMIT, sink: FeedbackSink | None = None):
        if retention_limit < 1:
            raise ValueError("retention_limit must be at least 1")
        self.retention_limit = retention_limit
        self.sink = sink
        self._lock = threading.Lock()
        self._entries: deque[UserFeedback] = deque()
        self._metrics: dict[str, ProtocolPerformanceMetrics] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, feedback: UserFeedback) -> list[UserFeedback]:
        """
        Append one entry and recompute affected metrics.

        Returns the entries evicted by the retention ceiling.
        """
        with self._lock:
            evicted = self._append([feedback])
        if self.sink is not None:
            self.sink.submit(feedback)
        return evicted

    def load(self, entries: Iterable[UserFeedback]) -> int:
        """Replay entries from durable storage without re-submitting them to the sink."""
        batch = list(entries)
        with self._lock:
            self._append(batch)
        logger.debug(f"Replayed {len(batch)} feedback entries")
        return len(batch)

    def _append(self, batch: list[UserFeedback]) -> list[UserFeedback]:
        # Caller holds the lock
        self._entries.extend(batch)
        evicted = []
        while len(self._entries) > self.retention_limit:
            evicted.append(self._entries.popleft())
        if evicted:
            logger.debug(f"Evicted {len(evicted)} feedback entries past retention limit")

        affected = {f.protocol_id for f in batch} | {f.protocol_id for f in evicted}
        for protocol_id in affected:
            metrics = compute_metrics(self._entries, protocol_id)
            if metrics is None:
                self._metrics.pop(protocol_id, None)
            else:
                self._metrics[protocol_id] = metrics
        return evicted

    def metrics_of(self, protocol_id: str) -> ProtocolPerformanceMetrics | None:
        return self._metrics.get(protocol_id)

    def all_metrics(self) -> dict[str, ProtocolPerformanceMetrics]:
        with self._lock:
            return dict(self._metrics)

    def entries(self) -> list[UserFeedback]:
        """Snapshot of the log, oldest first."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._metrics.clear()
