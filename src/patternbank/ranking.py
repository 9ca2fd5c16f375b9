"""
MMR ranking -- balance relevance, reliability, freshness and diversity.

    score = 0.4 * similarity + 0.3 * confidence + 0.2 * recency + 0.1 * diversity

Selection is greedy maximal marginal relevance: pick the best remaining
candidate, then lower the diversity term of everything left in proportion to
its similarity to the pick. Candidates closer than the near-duplicate
threshold to any pick are dropped outright, so the result never holds two
near-identical patterns.

Ties break on higher confidence, then more recent use, then lexicographic
id. Given the same candidates and the same ``now`` the output is identical.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from patternbank.similarity import Candidate
from patternbank.types import Pattern, utcnow

logger = logging.getLogger("patternbank.ranking")

SIMILARITY_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.3
RECENCY_WEIGHT = 0.2
DIVERSITY_WEIGHT = 0.1

DEFAULT_NEAR_DUPLICATE_THRESHOLD = 0.92
DEFAULT_RECENCY_HALF_LIFE_DAYS = 7.0


def recency_score(reference: datetime, now: datetime, half_life_days: float = DEFAULT_RECENCY_HALF_LIFE_DAYS) -> float:
    """Exponential decay in [0, 1]: 1.0 when just used, 0.5 after one half-life."""
    age_days = max(0.0, (now - reference).total_seconds() / 86400.0)
    return 0.5 ** (age_days / half_life_days)


class RankedPattern:
    """One query result."""

    __slots__ = ("pattern", "score", "similarity", "recency", "diversity")

    def __init__(self, pattern: Pattern, score: float, similarity: float, recency: float, diversity: float):
        self.pattern = pattern
        self.score = score
        self.similarity = similarity
        self.recency = recency
        self.diversity = diversity

    def to_dict(self) -> Dict[str, object]:
        return {
            "pattern": self.pattern.to_dict(),
            "score": round(self.score, 6),
            "similarity": round(self.similarity, 6),
        }

    def __repr__(self) -> str:
        return f"RankedPattern({self.pattern.id!r}, score={self.score:.3f}, similarity={self.similarity:.3f})"


class MMRRanker:
    def __init__(
        self,
        near_duplicate_threshold: float = DEFAULT_NEAR_DUPLICATE_THRESHOLD,
        half_life_days: float = DEFAULT_RECENCY_HALF_LIFE_DAYS,
        weights: Tuple[float, float, float, float] = (
            SIMILARITY_WEIGHT,
            CONFIDENCE_WEIGHT,
            RECENCY_WEIGHT,
            DIVERSITY_WEIGHT,
        ),
    ):
        self.near_duplicate_threshold = near_duplicate_threshold
        self.half_life_days = half_life_days
        self.weights = weights

    def rank(self, candidates: Iterable[Candidate], k: int, now: Optional[datetime] = None) -> List[RankedPattern]:
        if k <= 0:
            return []
        now = now or utcnow()

        # Deduplicate by id and fix a canonical order so input order never matters
        by_id: Dict[str, Candidate] = {}
        for cand in candidates:
            by_id.setdefault(cand.pattern.id, cand)
        pool = [by_id[pid] for pid in sorted(by_id)]
        if not pool:
            return []

        matrix = np.asarray([c.vector for c in pool], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        unit = matrix / norms

        w_sim, w_conf, w_rec, w_div = self.weights
        recency = [recency_score(c.pattern.reference_time, now, self.half_life_days) for c in pool]
        base = [
            w_sim * c.similarity + w_conf * c.pattern.confidence + w_rec * rec
            for c, rec in zip(pool, recency)
        ]
        diversity = [1.0] * len(pool)
        remaining = set(range(len(pool)))
        selected: List[RankedPattern] = []

        def sort_key(i: int):
            p = pool[i].pattern
            return (
                -(base[i] + w_div * diversity[i]),
                -p.confidence,
                -p.reference_time.timestamp(),
                p.id,
            )

        while remaining and len(selected) < k:
            best = min(remaining, key=sort_key)
            remaining.discard(best)
            cand = pool[best]
            selected.append(
                RankedPattern(
                    pattern=cand.pattern,
                    score=base[best] + w_div * diversity[best],
                    similarity=cand.similarity,
                    recency=recency[best],
                    diversity=diversity[best],
                )
            )
            if not remaining:
                break
            sims = unit @ unit[best]
            for i in list(remaining):
                sim = float(sims[i])
                if sim > self.near_duplicate_threshold:
                    remaining.discard(i)
                    logger.debug("Dropped near-duplicate %s of %s (%.3f)", pool[i].pattern.id, cand.pattern.id, sim)
                    continue
                diversity[i] = min(diversity[i], min(1.0, max(0.0, 1.0 - sim)))

        return selected
