"""
PatternBank configuration -- environment-driven settings.

All values are resolved lazily so tests can override them with env vars:

    PATTERNBANK_HOME              data directory (default ~/.patternbank)
    PATTERNBANK_DIM               embedding dimension (default 384)
    PATTERNBANK_EMBEDDER          embedder name: hash | onnx | sentence-transformers
    PATTERNBANK_EMBED_TIMEOUT     seconds allowed for a pluggable embedder call
    PATTERNBANK_SEARCH_BACKEND    linear | sqlite-vec
    PATTERNBANK_MAX_CONTENT_SIZE  max characters per pattern content
    PATTERNBANK_ENCRYPT           1 to encrypt exported snapshot files
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger("patternbank.config")

DEFAULT_DIMENSION = 384
DEFAULT_EMBEDDER = "hash"
DEFAULT_EMBED_TIMEOUT_S = 2.0
DEFAULT_SEARCH_BACKEND = "linear"
DEFAULT_MAX_CONTENT_SIZE = 1_000_000
DB_FILENAME = "patternbank.db"


def patternbank_home() -> Path:
    """Resolve PATTERNBANK_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("PATTERNBANK_HOME", str(Path.home() / ".patternbank")))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def encryption_enabled() -> bool:
    """Encrypted snapshot files are opt-in: PATTERNBANK_ENCRYPT=1."""
    val = os.environ.get("PATTERNBANK_ENCRYPT", "").strip().lower()
    return val in ("1", "true", "yes")


class EngineConfig:
    """Settings for one MemoryEngine. Explicit arguments win over env vars."""

    __slots__ = (
        "db_path",
        "dimension",
        "embedder",
        "embed_timeout",
        "search_backend",
        "max_content_size",
    )

    def __init__(
        self,
        db_path: Optional[Path] = None,
        dimension: int = DEFAULT_DIMENSION,
        embedder: str = DEFAULT_EMBEDDER,
        embed_timeout: float = DEFAULT_EMBED_TIMEOUT_S,
        search_backend: str = DEFAULT_SEARCH_BACKEND,
        max_content_size: int = DEFAULT_MAX_CONTENT_SIZE,
    ):
        self.db_path = Path(db_path) if db_path else patternbank_home() / DB_FILENAME
        self.dimension = dimension
        self.embedder = embedder
        self.embed_timeout = embed_timeout
        self.search_backend = search_backend
        self.max_content_size = max_content_size

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        values = {
            "dimension": _env_int("PATTERNBANK_DIM", DEFAULT_DIMENSION),
            "embedder": os.environ.get("PATTERNBANK_EMBEDDER", DEFAULT_EMBEDDER).strip() or DEFAULT_EMBEDDER,
            "embed_timeout": _env_float("PATTERNBANK_EMBED_TIMEOUT", DEFAULT_EMBED_TIMEOUT_S),
            "search_backend": os.environ.get("PATTERNBANK_SEARCH_BACKEND", DEFAULT_SEARCH_BACKEND).strip()
            or DEFAULT_SEARCH_BACKEND,
            "max_content_size": _env_int("PATTERNBANK_MAX_CONTENT_SIZE", DEFAULT_MAX_CONTENT_SIZE),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def __repr__(self) -> str:
        return (
            f"EngineConfig(db_path={str(self.db_path)!r}, dimension={self.dimension}, "
            f"embedder={self.embedder!r}, search_backend={self.search_backend!r})"
        )
