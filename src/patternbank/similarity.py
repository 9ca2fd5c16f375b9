"""
Similarity search -- cosine scoring of a query vector against a namespace.

Two backends share one contract: return candidates ranked by similarity
(descending, ties by pattern id). LinearSearch scans vectors with numpy;
SqliteVecSearch scores inside SQLite with sqlite-vec's vec_distance_cosine.
Either can be replaced by an ANN index without touching callers.
"""

import logging
import math
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from patternbank.errors import ValidationError
from patternbank.types import Pattern

if TYPE_CHECKING:
    from patternbank.store import PatternStore

logger = logging.getLogger("patternbank.similarity")


class Candidate:
    """A pattern, its vector, and its similarity to the current query."""

    __slots__ = ("pattern", "vector", "similarity")

    def __init__(self, pattern: Pattern, vector: Sequence[float], similarity: float):
        self.pattern = pattern
        self.vector = vector
        self.similarity = similarity

    def __repr__(self) -> str:
        return f"Candidate({self.pattern.id!r}, similarity={self.similarity:.3f})"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. Exactly symmetric: sim(a, b) == sim(b, a)."""
    if len(a) != len(b):
        raise ValidationError(f"vector dimensions differ: {len(a)} != {len(b)}")
    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    # Multiply the norms in a fixed order so swapping the arguments cannot change rounding
    denom = min(norm_a, norm_b) * max(norm_a, norm_b)
    return max(-1.0, min(1.0, dot / denom))


def score_candidates(
    query_vector: Sequence[float],
    pool: Iterable[Tuple[Pattern, Sequence[float]]],
    limit: Optional[int] = None,
) -> List[Candidate]:
    """Score (pattern, vector) pairs against the query and rank them."""
    pool = list(pool)
    if not pool:
        return []
    query = np.asarray(query_vector, dtype=np.float64)
    matrix = np.asarray([vec for _, vec in pool], dtype=np.float64)
    if matrix.shape[1] != query.shape[0]:
        raise ValidationError(f"query has dimension {query.shape[0]}, stored vectors have {matrix.shape[1]}")
    query_norm = np.linalg.norm(query)
    if query_norm == 0.0:
        raise ValidationError("query vector has zero length")
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0.0] = np.inf
    sims = np.clip(matrix @ query / (norms * query_norm), -1.0, 1.0)

    ranked = [Candidate(pattern, vec, float(sim)) for (pattern, vec), sim in zip(pool, sims)]
    ranked.sort(key=lambda c: (-c.similarity, c.pattern.id))
    return ranked[:limit] if limit else ranked


class SimilaritySearch(Protocol):
    name: str

    def search(
        self,
        query_vector: Sequence[float],
        namespace: str,
        store: "PatternStore",
        limit: Optional[int] = None,
        method: Optional[str] = None,
    ) -> List[Candidate]: ...


class LinearSearch:
    """Brute-force scan of every embedded pattern in the namespace."""

    name = "linear"

    def search(self, query_vector, namespace, store, limit=None, method=None) -> List[Candidate]:
        return score_candidates(query_vector, store.iter_embedded(namespace, method=method), limit=limit)


class SqliteVecSearch:
    """Score inside SQLite using the sqlite-vec extension."""

    name = "sqlite-vec"

    def search(self, query_vector, namespace, store, limit=None, method=None) -> List[Candidate]:
        if len(query_vector) != store.dimension:
            raise ValidationError(f"query has dimension {len(query_vector)}, store expects {store.dimension}")
        scored = store.vec_cosine_scores(query_vector, namespace, limit=limit, method=method)
        ranked = [Candidate(pattern, vec, max(-1.0, min(1.0, 1.0 - dist))) for pattern, vec, dist in scored]
        ranked.sort(key=lambda c: (-c.similarity, c.pattern.id))
        return ranked


_BACKENDS = {
    LinearSearch.name: LinearSearch,
    SqliteVecSearch.name: SqliteVecSearch,
}


def create_search(name: str) -> SimilaritySearch:
    backend = _BACKENDS.get(name)
    if backend is None:
        raise ValidationError(f"unknown search backend {name!r}; available: {', '.join(sorted(_BACKENDS))}")
    return backend()
