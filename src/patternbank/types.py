"""
PatternBank record types.

Lightweight slotted records for the four persisted entity kinds plus the
outcome log. Each record converts to and from a plain dict, which is the
shape used by snapshots.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_NAMESPACE = "global"

CONFIDENCE_FLOOR = 0.05
CONFIDENCE_CEILING = 0.95
INITIAL_CONFIDENCE = 0.50


class LinkType(str, Enum):
    """Relationship kinds between two patterns."""

    CAUSES = "causes"
    REQUIRES = "requires"
    CONFLICTS = "conflicts"
    ENHANCES = "enhances"
    ALTERNATIVE = "alternative"


class Outcome(str, Enum):
    """Trajectory state. OPEN is the only non-terminal value."""

    OPEN = "open"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def is_terminal(self) -> bool:
        return self is not Outcome.OPEN


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Handles naive strings (no tz), Z-suffix, and +00:00 suffix.
    Returns None when *value* is falsy.
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _optional_str(value: Any, field: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    return value


def _string_list(value: Any, field: str) -> List[str]:
    """A list of strings from a decoded record; None means empty."""
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"{field} must be a list of strings")
    return list(value)


class Pattern:
    """A stored knowledge fragment with a reliability score."""

    __slots__ = (
        "id",
        "namespace",
        "title",
        "content",
        "domain",
        "tags",
        "confidence",
        "usage_count",
        "created_at",
        "last_used_at",
    )

    def __init__(
        self,
        id: str,
        title: str,
        content: str,
        namespace: str = DEFAULT_NAMESPACE,
        domain: Optional[str] = None,
        tags: Optional[List[str]] = None,
        confidence: float = INITIAL_CONFIDENCE,
        usage_count: int = 0,
        created_at: Optional[datetime] = None,
        last_used_at: Optional[datetime] = None,
    ):
        self.id = id
        self.namespace = namespace
        self.title = title
        self.content = content
        self.domain = domain
        self.tags = list(tags or [])
        self.confidence = confidence
        self.usage_count = usage_count
        self.created_at = created_at or utcnow()
        self.last_used_at = last_used_at

    @property
    def text(self) -> str:
        """Text fed to the embedder: title and content together."""
        if self.title and self.title not in self.content:
            return f"{self.title}\n{self.content}"
        return self.content

    @property
    def reference_time(self) -> datetime:
        return self.last_used_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "title": self.title,
            "content": self.content,
            "domain": self.domain,
            "tags": list(self.tags),
            "confidence": self.confidence,
            "usage_count": self.usage_count,
            "created_at": format_dt(self.created_at),
            "last_used_at": format_dt(self.last_used_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        return cls(
            id=data["id"],
            namespace=data.get("namespace") or DEFAULT_NAMESPACE,
            title=_optional_str(data.get("title"), "title"),
            content=data["content"],
            domain=data.get("domain"),
            tags=_string_list(data.get("tags"), "tags"),
            confidence=float(data.get("confidence", INITIAL_CONFIDENCE)),
            usage_count=int(data.get("usage_count", 0)),
            created_at=parse_dt(data.get("created_at")),
            last_used_at=parse_dt(data.get("last_used_at")),
        )

    def __repr__(self) -> str:
        return f"Pattern(id={self.id!r}, namespace={self.namespace!r}, confidence={self.confidence:.3f})"


class Embedding:
    """The current vector for one pattern."""

    __slots__ = ("pattern_id", "vector", "method", "generated_at")

    def __init__(
        self,
        pattern_id: str,
        vector: List[float],
        method: str,
        generated_at: Optional[datetime] = None,
    ):
        self.pattern_id = pattern_id
        self.vector = list(vector)
        self.method = method
        self.generated_at = generated_at or utcnow()

    @property
    def dimension(self) -> int:
        return len(self.vector)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern_id": self.pattern_id,
            "vector": list(self.vector),
            "method": self.method,
            "generated_at": format_dt(self.generated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Embedding":
        return cls(
            pattern_id=data["pattern_id"],
            vector=[float(x) for x in data["vector"]],
            method=data.get("method", "hash"),
            generated_at=parse_dt(data.get("generated_at")),
        )


class PatternLink:
    """Typed directed edge between two patterns."""

    __slots__ = ("source_id", "target_id", "link_type", "strength", "created_at", "updated_at")

    def __init__(
        self,
        source_id: str,
        target_id: str,
        link_type: LinkType,
        strength: float = 1.0,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.source_id = source_id
        self.target_id = target_id
        self.link_type = LinkType(link_type)
        self.strength = strength
        self.created_at = created_at or utcnow()
        self.updated_at = updated_at or self.created_at

    @property
    def key(self):
        return (self.source_id, self.target_id, self.link_type.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "link_type": self.link_type.value,
            "strength": self.strength,
            "created_at": format_dt(self.created_at),
            "updated_at": format_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternLink":
        return cls(
            source_id=data["source_id"],
            target_id=data["target_id"],
            link_type=LinkType(data["link_type"]),
            strength=float(data.get("strength", 1.0)),
            created_at=parse_dt(data.get("created_at")),
            updated_at=parse_dt(data.get("updated_at")),
        )

    def __repr__(self) -> str:
        return (
            f"PatternLink({self.source_id!r} -[{self.link_type.value}:{self.strength:.2f}]-> {self.target_id!r})"
        )


class TaskTrajectory:
    """Ordered steps of one task attempt and its terminal outcome."""

    __slots__ = ("task_id", "steps", "outcome", "confidence", "started_at", "ended_at")

    def __init__(
        self,
        task_id: str,
        steps: Optional[List[str]] = None,
        outcome: Outcome = Outcome.OPEN,
        confidence: float = INITIAL_CONFIDENCE,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ):
        self.task_id = task_id
        self.steps = list(steps or [])
        self.outcome = Outcome(outcome)
        self.confidence = confidence
        self.started_at = started_at or utcnow()
        self.ended_at = ended_at

    @property
    def is_sealed(self) -> bool:
        return self.outcome.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "steps": list(self.steps),
            "outcome": self.outcome.value,
            "confidence": self.confidence,
            "started_at": format_dt(self.started_at),
            "ended_at": format_dt(self.ended_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskTrajectory":
        return cls(
            task_id=data["task_id"],
            steps=_string_list(data.get("steps"), "steps"),
            outcome=Outcome(data.get("outcome", Outcome.OPEN.value)),
            confidence=float(data.get("confidence", INITIAL_CONFIDENCE)),
            started_at=parse_dt(data.get("started_at")),
            ended_at=parse_dt(data.get("ended_at")),
        )


class OutcomeEvent:
    """One reported success/failure for a pattern."""

    __slots__ = ("pattern_id", "success", "outcome_id", "confidence_before", "confidence_after", "recorded_at")

    def __init__(
        self,
        pattern_id: str,
        success: bool,
        confidence_before: float,
        confidence_after: float,
        outcome_id: Optional[str] = None,
        recorded_at: Optional[datetime] = None,
    ):
        self.pattern_id = pattern_id
        self.success = bool(success)
        self.outcome_id = outcome_id
        self.confidence_before = confidence_before
        self.confidence_after = confidence_after
        self.recorded_at = recorded_at or utcnow()
