"""
Neighbour lookup for the collaborative strategy.

The scoring engine only sees the NeighborSource interface. The default
implementation finds similar users by cosine similarity over profile
feature vectors and reads their ratings from the feedback log.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol as TypingProtocol

import numpy as np

from .config import COLLAB_MIN_SIMILARITY, COLLAB_RATING_SCALE, DEFAULT_K_NEIGHBORS
from .feedback import UserFeedback
from .features import check_schema, vectorize
from .profile import UserProfile

logger = logging.getLogger(__name__)


class NeighborSource(TypingProtocol):
    def neighbors(self, profile: UserProfile, k: int) -> list[tuple[str, float]]:
        """Return up to k (user_id, similarity) pairs, most similar first."""
        ...

    def rating(self, user_id: str, protocol_id: str) -> float | None:
        """Return a user's normalized (0-1) rating of a protocol, if any."""
        ...


class NullNeighborSource:
    """Source with no known users; collaborative scores stay at zero."""

    def neighbors(self, profile: UserProfile, k: int) -> list[tuple[str, float]]:
        return []

    def rating(self, user_id: str, protocol_id: str) -> float | None:
        return None


class ProfileNeighborSource:
    """
    Neighbours from known profiles, ratings from the feedback log.

    Only the latest entry per (user, protocol) pair counts, so newer
    feedback supersedes older feedback for the same pair.
    """

    def __init__(self, profiles: Iterable[UserProfile], feedback: Iterable[UserFeedback] = ()):
        self._profiles = {p.id: p for p in profiles}
        self._user_ids = list(self._profiles)
        self._user_index = {user_id: idx for idx, user_id in enumerate(self._user_ids)}
        self._protocol_index: dict[str, int] = {}
        self._matrix = None
        self._normalized = None

        self._build_profile_matrix()
        self._build_rating_matrix(feedback)

    def _build_profile_matrix(self) -> None:
        if not self._user_ids:
            return
        vectors = []
        for user_id in self._user_ids:
            vector = vectorize(self._profiles[user_id])
            check_schema(vector)
            vectors.append(vector.values)
        matrix = np.vstack(vectors)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        self._normalized = matrix / norms

    def _build_rating_matrix(self, feedback: Iterable[UserFeedback]) -> None:
        """Build a sparse users x protocols matrix of latest ratings scaled to 0-1."""
        from scipy.sparse import csr_matrix

        latest: dict[tuple[int, str], float] = {}
        for entry in feedback:
            user_idx = self._user_index.get(entry.user_id)
            if user_idx is None:
                continue
            # Log order is chronological, later entries overwrite earlier ones
            latest[(user_idx, entry.protocol_id)] = entry.rating / COLLAB_RATING_SCALE

        if not latest:
            return

        for _, protocol_id in latest:
            self._protocol_index.setdefault(protocol_id, len(self._protocol_index))

        rows, cols, values = [], [], []
        for (user_idx, protocol_id), value in latest.items():
            rows.append(user_idx)
            cols.append(self._protocol_index[protocol_id])
            values.append(value)

        self._matrix = csr_matrix(
            (values, (rows, cols)),
            shape=(len(self._user_ids), len(self._protocol_index)),
            dtype=np.float64,
        )
        logger.debug(f"Built rating matrix {self._matrix.shape} with {len(values)} ratings")

    def neighbors(self, profile: UserProfile, k: int = DEFAULT_K_NEIGHBORS) -> list[tuple[str, float]]:
        if self._normalized is None or k <= 0:
            return []

        target = vectorize(profile)
        check_schema(target)
        norm = np.linalg.norm(target.values)
        if norm == 0:
            return []
        similarities = self._normalized @ (target.values / norm)

        # Never count the requesting user as their own neighbour
        own_idx = self._user_index.get(profile.id)
        if own_idx is not None:
            similarities[own_idx] = -np.inf

        # Stable sort keeps ties in insertion order
        order = np.argsort(-similarities, kind="stable")[:k]
        return [
            (self._user_ids[i], float(similarities[i]))
            for i in order
            if similarities[i] > COLLAB_MIN_SIMILARITY
        ]

    def rating(self, user_id: str, protocol_id: str) -> float | None:
        if self._matrix is None:
            return None
        user_idx = self._user_index.get(user_id)
        protocol_idx = self._protocol_index.get(protocol_id)
        if user_idx is None or protocol_idx is None:
            return None
        value = self._matrix[user_idx, protocol_idx]
        return float(value) if value else None
