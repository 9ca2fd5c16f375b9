"""Tests for patternbank.ranking -- multi-factor MMR selection."""
import random
from datetime import datetime, timedelta, timezone

import pytest

from patternbank.ranking import MMRRanker, recency_score
from patternbank.similarity import Candidate, cosine_similarity

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _cand(make_pattern, vector, similarity, **kwargs):
    kwargs.setdefault("created_at", NOW)
    return Candidate(make_pattern(**kwargs), vector, similarity)


class TestRecency:
    def test_fresh_is_one(self):
        assert recency_score(NOW, NOW) == 1.0

    def test_half_life(self):
        assert recency_score(NOW - timedelta(days=7), NOW) == pytest.approx(0.5)

    def test_future_reference_is_clamped(self):
        assert recency_score(NOW + timedelta(days=1), NOW) == 1.0


class TestScoring:
    def test_single_candidate_score(self, make_pattern):
        c = _cand(make_pattern, [1.0, 0.0], 0.8, confidence=0.5)
        [result] = MMRRanker().rank([c], k=5, now=NOW)
        assert result.score == pytest.approx(0.4 * 0.8 + 0.3 * 0.5 + 0.2 * 1.0 + 0.1 * 1.0)
        assert result.diversity == 1.0

    def test_confidence_breaks_similarity_tie(self, make_pattern):
        low = _cand(make_pattern, [1.0, 0.0], 0.7, id="pat-a", confidence=0.3)
        high = _cand(make_pattern, [0.0, 1.0], 0.7, id="pat-b", confidence=0.9)
        results = MMRRanker().rank([low, high], k=2, now=NOW)
        assert [r.pattern.id for r in results] == ["pat-b", "pat-a"]

    def test_equal_scores_break_on_id(self, make_pattern):
        a = _cand(make_pattern, [1.0, 0.0], 0.5, id="pat-b")
        b = _cand(make_pattern, [0.0, 1.0], 0.5, id="pat-a")
        results = MMRRanker().rank([a, b], k=1, now=NOW)
        assert results[0].pattern.id == "pat-a"

    def test_recent_use_wins_tie(self, make_pattern):
        old = _cand(make_pattern, [1.0, 0.0], 0.5, id="pat-a", last_used_at=NOW - timedelta(days=30))
        new = _cand(make_pattern, [0.0, 1.0], 0.5, id="pat-b", last_used_at=NOW)
        assert MMRRanker().rank([old, new], k=1, now=NOW)[0].pattern.id == "pat-b"

    def test_k_zero_and_empty(self, make_pattern):
        assert MMRRanker().rank([], k=3, now=NOW) == []
        assert MMRRanker().rank([_cand(make_pattern, [1.0], 1.0)], k=0, now=NOW) == []


class TestDiversity:
    def test_near_duplicates_suppressed(self, make_pattern):
        a = _cand(make_pattern, [1.0, 0.0, 0.0], 0.9)
        dup = _cand(make_pattern, [0.99, 0.01, 0.0], 0.89)
        other = _cand(make_pattern, [0.0, 1.0, 0.0], 0.3)
        results = MMRRanker().rank([a, dup, other], k=3, now=NOW)
        ids = [r.pattern.id for r in results]
        assert ids == [a.pattern.id, other.pattern.id]

    def test_no_pair_above_threshold_on_random_pools(self, make_pattern):
        rng = random.Random(11)
        ranker = MMRRanker()
        for _ in range(20):
            base = [rng.uniform(-1, 1) for _ in range(6)]
            pool = []
            for _ in range(15):
                vec = [x + rng.uniform(-0.15, 0.15) for x in base] if rng.random() < 0.5 else [
                    rng.uniform(-1, 1) for _ in range(6)
                ]
                pool.append(_cand(make_pattern, vec, rng.uniform(0, 1), confidence=rng.uniform(0.05, 0.95)))
            results = ranker.rank(pool, k=8, now=NOW)
            for i in range(len(results)):
                for j in range(i + 1, len(results)):
                    vi = next(c.vector for c in pool if c.pattern.id == results[i].pattern.id)
                    vj = next(c.vector for c in pool if c.pattern.id == results[j].pattern.id)
                    assert cosine_similarity(vi, vj) <= ranker.near_duplicate_threshold + 1e-9

    def test_diversity_penalizes_similar_second_pick(self, make_pattern):
        first = _cand(make_pattern, [1.0, 0.0], 0.9, id="pat-a")
        similar = _cand(make_pattern, [0.8, 0.6], 0.6, id="pat-b")
        distinct = _cand(make_pattern, [0.0, 1.0], 0.6, id="pat-c")
        results = MMRRanker().rank([first, similar, distinct], k=3, now=NOW)
        assert [r.pattern.id for r in results] == ["pat-a", "pat-c", "pat-b"]
        assert results[2].diversity == pytest.approx(0.2)


class TestDeterminism:
    def test_input_order_does_not_matter(self, make_pattern):
        rng = random.Random(5)
        pool = [
            _cand(make_pattern, [rng.uniform(-1, 1) for _ in range(4)], rng.uniform(0, 1))
            for _ in range(10)
        ]
        expected = [r.pattern.id for r in MMRRanker().rank(pool, k=5, now=NOW)]
        for _ in range(5):
            shuffled = pool[:]
            rng.shuffle(shuffled)
            assert [r.pattern.id for r in MMRRanker().rank(shuffled, k=5, now=NOW)] == expected
