"""Vector index over the SQLite knowledge store."""

from __future__ import annotations

import math
from dataclasses import dataclass

from concierge.db import Database


@dataclass(slots=True)
class VectorMatch:
    id: str
    score: float


class VectorIndex:
    """Exact cosine-similarity index keyed by document id."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, vector_id: str, values: list[float]) -> None:
        if not values:
            raise ValueError(f"Refusing to index empty vector for {vector_id}")
        self._db.upsert_vector(vector_id, values)

    def query(self, values: list[float], top_k: int = 5) -> list[VectorMatch]:
        """Return up to ``top_k`` stored vectors, most similar first."""

        matches = [
            VectorMatch(id=vector_id, score=_cosine(values, stored))
            for vector_id, stored in self._db.iter_vectors()
            if len(stored) == len(values)
        ]
        matches.sort(key=lambda match: match.score, reverse=True)
        return matches[:top_k]


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0
