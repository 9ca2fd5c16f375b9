"""PatternBank -- self-learning semantic memory.

Store short knowledge fragments, retrieve them by meaning, and let reported
outcomes teach the engine which ones are reliable::

    from patternbank import MemoryEngine

    with MemoryEngine("/tmp/patterns.db") as engine:
        pid = engine.store("global", "Cache reads", "Use a cache for repeated reads")
        hits = engine.query("global", "performance optimization")
        engine.report_outcome(hits[0].pattern.id, success=True)
"""

__version__ = "0.1.0"

from patternbank.config import EngineConfig
from patternbank.engine import MemoryEngine
from patternbank.errors import (
    ConcurrencyConflict,
    EmbeddingProviderError,
    InvalidStateError,
    NotFoundError,
    PatternBankError,
    StorageError,
    ValidationError,
)
from patternbank.ranking import RankedPattern
from patternbank.types import (
    DEFAULT_NAMESPACE,
    Embedding,
    LinkType,
    Outcome,
    Pattern,
    PatternLink,
    TaskTrajectory,
)

__all__ = [
    "__version__",
    "MemoryEngine",
    "EngineConfig",
    "RankedPattern",
    "Pattern",
    "Embedding",
    "PatternLink",
    "TaskTrajectory",
    "LinkType",
    "Outcome",
    "DEFAULT_NAMESPACE",
    "PatternBankError",
    "NotFoundError",
    "ValidationError",
    "StorageError",
    "EmbeddingProviderError",
    "ConcurrencyConflict",
    "InvalidStateError",
]
