"""PatternBank test configuration."""
import os
import sys
import pytest
from pathlib import Path

# Ensure the patternbank package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

_ENV_VARS = (
    "PATTERNBANK_HOME",
    "PATTERNBANK_DIM",
    "PATTERNBANK_EMBEDDER",
    "PATTERNBANK_EMBED_TIMEOUT",
    "PATTERNBANK_SEARCH_BACKEND",
    "PATTERNBANK_MAX_CONTENT_SIZE",
    "PATTERNBANK_ENCRYPT",
)


@pytest.fixture(autouse=True)
def _isolated_env():
    """Snapshot and restore PATTERNBANK_* env vars around every test."""
    saved = {name: os.environ.get(name) for name in _ENV_VARS}
    for name in _ENV_VARS:
        os.environ.pop(name, None)
    yield
    for name, value in saved.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value
    from patternbank.crypto import reset_crypto_state
    reset_crypto_state()


@pytest.fixture
def tmp_home(tmp_path):
    """Create a temporary PatternBank home directory for testing."""
    home = tmp_path / ".patternbank"
    home.mkdir()
    os.environ["PATTERNBANK_HOME"] = str(home)
    # Default: plaintext snapshots for deterministic output
    os.environ["PATTERNBANK_ENCRYPT"] = "0"
    yield home


@pytest.fixture
def tmp_home_encrypted(tmp_home):
    """Temporary home with encrypted snapshot files enabled."""
    os.environ["PATTERNBANK_ENCRYPT"] = "1"
    from patternbank.crypto import reset_crypto_state
    reset_crypto_state()
    yield tmp_home


@pytest.fixture
def store(tmp_home):
    """Create a fresh PatternStore (small dimension) for testing."""
    from patternbank.store import PatternStore
    s = PatternStore(tmp_home / "test.db", dimension=8)
    yield s
    s.close()


@pytest.fixture
def engine(tmp_home):
    """Create a fresh MemoryEngine with the default hash embedder."""
    from patternbank.engine import MemoryEngine
    e = MemoryEngine(tmp_home / "engine.db")
    yield e
    e.close()


@pytest.fixture
def make_pattern():
    """Factory for Pattern records with sensible defaults."""
    from patternbank.types import Pattern

    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        kwargs.setdefault("id", f"pat-{counter['n']:012x}")
        kwargs.setdefault("title", f"title {counter['n']}")
        kwargs.setdefault("content", f"content number {counter['n']}")
        return Pattern(**kwargs)

    return _make
