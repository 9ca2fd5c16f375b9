"""Tests for patternbank.similarity -- cosine scoring and search backends."""
import random

import pytest

from patternbank.errors import ValidationError
from patternbank.similarity import LinearSearch, SqliteVecSearch, cosine_similarity, create_search, score_candidates
from patternbank.types import Embedding


class TestCosine:
    def test_symmetric_on_random_vectors(self):
        rng = random.Random(7)
        for _ in range(200):
            a = [rng.uniform(-1, 1) for _ in range(17)]
            b = [rng.uniform(-1, 1) for _ in range(17)]
            assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_identical_and_opposite(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValidationError):
            cosine_similarity([1.0], [1.0, 2.0])


class TestScoreCandidates:
    def test_sorted_by_similarity_then_id(self, make_pattern):
        a = make_pattern(id="pat-b")
        b = make_pattern(id="pat-a")
        c = make_pattern(id="pat-c")
        ranked = score_candidates([1.0, 0.0], [(a, [1.0, 0.0]), (b, [1.0, 0.0]), (c, [0.0, 1.0])])
        assert [r.pattern.id for r in ranked] == ["pat-a", "pat-b", "pat-c"]
        assert ranked[0].similarity == pytest.approx(1.0)
        assert ranked[2].similarity == pytest.approx(0.0)

    def test_limit(self, make_pattern):
        pool = [(make_pattern(), [1.0, float(i)]) for i in range(5)]
        assert len(score_candidates([1.0, 0.0], pool, limit=2)) == 2

    def test_empty_pool(self):
        assert score_candidates([1.0], []) == []

    def test_wrong_query_dimension(self, make_pattern):
        with pytest.raises(ValidationError):
            score_candidates([1.0, 0.0, 0.0], [(make_pattern(), [1.0, 0.0])])

    def test_zero_query(self, make_pattern):
        with pytest.raises(ValidationError):
            score_candidates([0.0, 0.0], [(make_pattern(), [1.0, 0.0])])


class TestLinearSearch:
    def test_only_embedded_patterns_are_scored(self, store, make_pattern):
        with_vec = make_pattern()
        without_vec = make_pattern()
        store.put_pattern(with_vec, Embedding(with_vec.id, [1.0] + [0.0] * 7, "hash"))
        store.put_pattern(without_vec)
        results = LinearSearch().search([1.0] + [0.0] * 7, "global", store)
        assert [r.pattern.id for r in results] == [with_vec.id]

    def test_namespace_isolation(self, store, make_pattern):
        p = make_pattern(namespace="other")
        store.put_pattern(p, Embedding(p.id, [1.0] * 8, "hash"))
        assert LinearSearch().search([1.0] * 8, "global", store) == []
        assert len(LinearSearch().search([1.0] * 8, "other", store)) == 1


class TestBackendRegistry:
    def test_create_known(self):
        assert isinstance(create_search("linear"), LinearSearch)
        assert isinstance(create_search("sqlite-vec"), SqliteVecSearch)

    def test_create_unknown(self):
        with pytest.raises(ValidationError):
            create_search("faiss")


class TestSqliteVecSearch:
    def test_matches_linear_ordering(self, tmp_home, make_pattern):
        pytest.importorskip("sqlite_vec")
        from patternbank.store import PatternStore

        s = PatternStore(tmp_home / "vec.db", dimension=8, load_vec_extension=True)
        try:
            rng = random.Random(3)
            for _ in range(6):
                p = make_pattern()
                s.put_pattern(p, Embedding(p.id, [rng.uniform(-1, 1) for _ in range(8)], "hash"))
            query = [rng.uniform(-1, 1) for _ in range(8)]
            linear = LinearSearch().search(query, "global", s)
            vec = SqliteVecSearch().search(query, "global", s)
            assert [c.pattern.id for c in vec] == [c.pattern.id for c in linear]
            for a, b in zip(vec, linear):
                assert a.similarity == pytest.approx(b.similarity, abs=1e-5)
        finally:
            s.close()
