"""Tests for patternbank.linker -- typed edges between patterns."""
import pytest

from patternbank.errors import NotFoundError, ValidationError
from patternbank.linker import PatternLinker
from patternbank.types import LinkType


@pytest.fixture
def linker(store, make_pattern):
    patterns = [make_pattern() for _ in range(3)]
    for p in patterns:
        store.put_pattern(p)
    lk = PatternLinker(store)
    lk.ids = [p.id for p in patterns]
    return lk


class TestLink:
    def test_link_accepts_string_type(self, linker):
        a, b, _ = linker.ids
        link = linker.link(a, b, "causes", 0.7)
        assert link.link_type is LinkType.CAUSES
        assert link.strength == 0.7

    def test_repeated_link_merges(self, linker):
        a, b, _ = linker.ids
        linker.link(a, b, LinkType.ENHANCES, 0.2)
        linker.link(a, b, LinkType.ENHANCES, 0.9)
        links = linker.links_of(a)
        assert len(links) == 1
        assert links[0].strength == 0.9

    def test_different_types_coexist(self, linker):
        a, b, _ = linker.ids
        linker.link(a, b, LinkType.ENHANCES)
        linker.link(a, b, LinkType.REQUIRES)
        assert len(linker.links_of(a)) == 2

    def test_self_link_fails(self, linker):
        a = linker.ids[0]
        with pytest.raises(ValidationError):
            linker.link(a, a, LinkType.CAUSES)
        assert linker.links_of(a) == []

    @pytest.mark.parametrize("strength", [-0.1, 1.5, "strong"])
    def test_bad_strength(self, linker, strength):
        a, b, _ = linker.ids
        with pytest.raises(ValidationError):
            linker.link(a, b, LinkType.CAUSES, strength)

    def test_unknown_type(self, linker):
        a, b, _ = linker.ids
        with pytest.raises(ValidationError):
            linker.link(a, b, "blocks")

    def test_missing_target(self, linker):
        with pytest.raises(NotFoundError):
            linker.link(linker.ids[0], "pat-missing", LinkType.CAUSES)


class TestTraversal:
    def test_neighbors_one_hop_only(self, linker):
        a, b, c = linker.ids
        linker.link(a, b, LinkType.CAUSES, 0.4)
        linker.link(b, c, LinkType.CAUSES, 0.9)
        assert linker.neighbors(a) == [b]
        assert linker.neighbors(b) == [c, a]

    def test_neighbors_direction(self, linker):
        a, b, c = linker.ids
        linker.link(a, b, LinkType.CAUSES)
        linker.link(c, a, LinkType.ALTERNATIVE)
        assert linker.neighbors(a, direction="out") == [b]
        assert linker.neighbors(a, direction="in") == [c]

    def test_bad_direction(self, linker):
        with pytest.raises(ValidationError):
            linker.links_of(linker.ids[0], direction="sideways")

    def test_unlink(self, linker):
        a, b, _ = linker.ids
        linker.link(a, b, LinkType.CAUSES)
        linker.unlink(a, b, "causes")
        assert linker.links_of(a) == []
        with pytest.raises(NotFoundError):
            linker.unlink(a, b, "causes")
