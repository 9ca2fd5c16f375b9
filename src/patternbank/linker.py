"""
Pattern linker -- typed, directed, weighted edges between patterns.

Adjacency is keyed by pattern id and only one hop is ever followed; there is
no transitive closure. Linking the same (source, target, type) twice keeps a
single edge carrying the latest strength.
"""

import logging
from typing import List, Optional

from patternbank.errors import ValidationError
from patternbank.store import PatternStore
from patternbank.types import LinkType, PatternLink, utcnow

logger = logging.getLogger("patternbank.linker")

_DIRECTIONS = ("both", "out", "in")


def _coerce_link_type(link_type) -> LinkType:
    try:
        return LinkType(link_type)
    except ValueError:
        valid = ", ".join(t.value for t in LinkType)
        raise ValidationError(f"unknown link type {link_type!r}; expected one of: {valid}") from None


class PatternLinker:
    def __init__(self, store: PatternStore):
        self.store = store

    def link(self, source_id: str, target_id: str, link_type, strength: float = 1.0) -> PatternLink:
        """Create or update the edge source -[type]-> target."""
        if source_id == target_id:
            raise ValidationError("a pattern cannot link to itself")
        kind = _coerce_link_type(link_type)
        try:
            strength = float(strength)
        except (TypeError, ValueError):
            raise ValidationError(f"link strength must be a number, got {strength!r}") from None
        if not 0.0 <= strength <= 1.0:
            raise ValidationError(f"link strength {strength} outside [0, 1]")

        now = utcnow()
        stored = self.store.upsert_link(PatternLink(source_id, target_id, kind, strength, now, now))
        logger.debug("Linked %s -[%s:%.2f]-> %s", source_id, kind.value, strength, target_id)
        return stored

    def unlink(self, source_id: str, target_id: str, link_type) -> None:
        self.store.delete_link(source_id, target_id, _coerce_link_type(link_type))

    def links_of(self, pattern_id: str, direction: str = "both", link_type=None) -> List[PatternLink]:
        if direction not in _DIRECTIONS:
            raise ValidationError(f"direction must be one of {_DIRECTIONS}, got {direction!r}")
        kind: Optional[LinkType] = _coerce_link_type(link_type) if link_type is not None else None
        return self.store.links_of(pattern_id, direction=direction, link_type=kind)

    def neighbors(self, pattern_id: str, direction: str = "both", link_type=None) -> List[str]:
        """Ids one hop away, strongest edge first, each id once."""
        seen = []
        for link in self.links_of(pattern_id, direction=direction, link_type=link_type):
            other = link.target_id if link.source_id == pattern_id else link.source_id
            if other not in seen:
                seen.append(other)
        return seen
