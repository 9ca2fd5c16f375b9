"""
PatternBank Embeddings -- text to fixed-length unit vectors.

Provides:
- HashEmbedder: deterministic, offline, dependency-light default
- OnnxEmbedder / SentenceTransformerEmbedder: optional higher-fidelity providers
- FallbackEmbedder: runs a provider under a timeout and falls back to the
  hash embedder on any failure, with a circuit breaker
- create_embedder(name): registry lookup used by configuration

The hash embedder sums pseudo-random Gaussian directions, one per text
feature (stemmed word, word trigram, lexicon concept), each seeded from a
BLAKE2b digest of the feature. Texts sharing features land closer under
cosine similarity. Accuracy is below a learned model but costs ~1 ms and
never touches the network.
"""

import hashlib
import logging
import math
import os
import re
import threading
import time as _time_module
import unicodedata
from collections import Counter, OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from patternbank.config import DEFAULT_DIMENSION, DEFAULT_EMBED_TIMEOUT_S
from patternbank.errors import EmbeddingProviderError, ValidationError

__all__ = [
    "Embedder",
    "HashEmbedder",
    "OnnxEmbedder",
    "SentenceTransformerEmbedder",
    "FallbackEmbedder",
    "HASH_METHOD",
    "canonicalize",
    "tokenize",
    "create_embedder",
    "build_fallback_embedder",
    "register_embedder",
    "available_embedders",
]

logger = logging.getLogger("patternbank.embedding")

HASH_METHOD = "hash"

_FEATURE_CACHE_MAX = 4096

# Feature weights: whole words dominate, concepts bridge vocabulary,
# trigrams catch morphological variants the stemmer misses.
_WORD_WEIGHT = 1.0
_CONCEPT_WEIGHT = 1.0
_TRIGRAM_WEIGHT = 0.25

_MARKDOWN_STRIP_RE = re.compile(r"[*#`~\[\]()>|_]")
_WHITESPACE_COLLAPSE_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[a-z0-9]+")

_STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "do", "for",
        "from", "has", "have", "how", "i", "if", "in", "into", "is", "it",
        "its", "of", "on", "or", "so", "that", "the", "their", "then", "this",
        "to", "was", "we", "were", "what", "when", "which", "with", "you",
    }
)

_SUFFIXES = (
    "ation",
    "tion",
    "ment",
    "ing",
    "ness",
    "ity",
    "ous",
    "ive",
    "able",
    "ed",
    "er",
    "es",
    "ly",
    "al",
    "s",
)

# Small built-in concept lexicon. Words are stemmed at import time so lookups
# match whatever the tokenizer produces.
_CONCEPT_LEXICON: Dict[str, Tuple[str, ...]] = {
    "performance": (
        "performance", "perf", "fast", "faster", "speed", "speedup", "latency",
        "throughput", "cache", "caching", "cached", "memoize", "memoization",
        "optimize", "optimise", "optimization", "optimisation", "efficient",
        "efficiency", "slow", "bottleneck", "benchmark", "profiling", "hot",
    ),
    "reliability": (
        "retry", "retries", "backoff", "timeout", "fallback", "resilient",
        "resilience", "fault", "failover", "circuit", "breaker", "idempotent",
        "robust", "recover", "recovery",
    ),
    "security": (
        "security", "secure", "auth", "authentication", "authorization",
        "token", "jwt", "password", "encrypt", "encryption", "secret",
        "credential", "permission", "vulnerability", "sanitize",
    ),
    "storage": (
        "database", "db", "sql", "sqlite", "postgres", "postgresql", "table",
        "query", "index", "schema", "migration", "storage", "persist",
        "persistence", "read", "write", "disk",
    ),
    "testing": (
        "test", "tests", "testing", "unit", "integration", "mock", "fixture",
        "assert", "coverage", "pytest", "regression",
    ),
    "concurrency": (
        "thread", "threads", "lock", "mutex", "async", "await", "concurrent",
        "concurrency", "parallel", "race", "deadlock", "queue", "worker",
    ),
    "errors": (
        "error", "errors", "exception", "bug", "crash", "fail", "failure",
        "traceback", "debug", "fix", "broken",
    ),
    "deployment": (
        "deploy", "deployment", "release", "docker", "kubernetes", "container",
        "ci", "pipeline", "build", "rollback", "production",
    ),
    "api": (
        "api", "endpoint", "rest", "http", "request", "response", "client",
        "server", "route", "graphql", "rpc",
    ),
    "logging": (
        "log", "logs", "logging", "logger", "trace", "tracing", "metric",
        "metrics", "monitor", "monitoring", "observability", "alert",
    ),
}


def canonicalize(text: str) -> str:
    """Canonicalize text for matching: NFKC normalize, strip markdown, collapse whitespace."""
    text = unicodedata.normalize("NFKC", text)
    text = _MARKDOWN_STRIP_RE.sub(" ", text)
    text = _WHITESPACE_COLLAPSE_RE.sub(" ", text).strip()
    return text.lower()


def stem(word: str) -> str:
    """Lightweight stemming: strip one common suffix, keeping a 3-char stem."""
    for suffix in _SUFFIXES:
        if word.endswith(suffix) and len(word) - len(suffix) >= 3:
            return word[: -len(suffix)]
    return word


def tokenize(text: str) -> List[str]:
    """Canonicalize, split, drop stop words, stem."""
    return [stem(w) for w in _TOKEN_RE.findall(canonicalize(text)) if w not in _STOPWORDS]


def _build_concept_index() -> Dict[str, Tuple[str, ...]]:
    index: Dict[str, List[str]] = {}
    for concept, words in _CONCEPT_LEXICON.items():
        for word in words:
            index.setdefault(stem(word), []).append(concept)
    return {k: tuple(v) for k, v in index.items()}


_CONCEPT_INDEX = _build_concept_index()


def _features(text: str) -> Counter:
    """Weighted feature bag for a text."""
    feats: Counter = Counter()
    for token in tokenize(text):
        feats[f"w:{token}"] += _WORD_WEIGHT
        for concept in _CONCEPT_INDEX.get(token, ()):
            feats[f"c:{concept}"] += _CONCEPT_WEIGHT
        padded = f"#{token}#"
        for i in range(len(padded) - 2):
            feats[f"t:{padded[i:i + 3]}"] += _TRIGRAM_WEIGHT
    return feats


class Embedder(Protocol):
    """Anything that turns text into a fixed-length vector."""

    name: str
    dimension: int

    def embed(self, text: str) -> List[float]: ...


def _normalize(vector: np.ndarray) -> List[float]:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0 or not math.isfinite(norm):
        raise ValueError("cannot normalize a zero or non-finite vector")
    return (vector / norm).tolist()


class HashEmbedder:
    """Deterministic seeded-projection embedder. Same input, same vector."""

    name = HASH_METHOD

    def __init__(self, dimension: int = DEFAULT_DIMENSION):
        if dimension < 8:
            raise ValidationError(f"embedding dimension must be >= 8, got {dimension}")
        self.dimension = dimension
        self._cache: OrderedDict = OrderedDict()
        self._cache_lock = threading.Lock()

    def _direction(self, feature: str) -> np.ndarray:
        with self._cache_lock:
            cached = self._cache.get(feature)
            if cached is not None:
                self._cache.move_to_end(feature)
                return cached
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        rng = np.random.default_rng(int.from_bytes(digest, byteorder="big"))
        direction = rng.standard_normal(self.dimension)
        with self._cache_lock:
            self._cache[feature] = direction
            while len(self._cache) > _FEATURE_CACHE_MAX:
                self._cache.popitem(last=False)
        return direction

    def embed(self, text: str) -> List[float]:
        feats = _features(text or "")
        if not feats:
            return _normalize(self._direction("__empty__"))
        vector = np.zeros(self.dimension, dtype=np.float64)
        # Sorted so float summation order never depends on dict ordering
        for feature in sorted(feats):
            vector += feats[feature] * self._direction(feature)
        return _normalize(vector)


# ---------------------------------------------------------------------------
# Optional model-backed providers
# ---------------------------------------------------------------------------

_ONNX_DEFAULT_DIR = "~/.cache/patternbank/models/bge-small-en-v1.5-onnx"
_ST_DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"


class OnnxEmbedder:
    """bge-small-en-v1.5 via ONNX Runtime. The model loads on first use."""

    name = "onnx"

    def __init__(self, dimension: int = DEFAULT_DIMENSION, model_dir: Optional[str] = None):
        self.dimension = dimension
        self.model_dir = Path(
            os.path.expanduser(model_dir or os.environ.get("PATTERNBANK_ONNX_MODEL_DIR", _ONNX_DEFAULT_DIR))
        )
        self._model = None
        self._load_lock = threading.Lock()

    def _load(self):
        with self._load_lock:
            if self._model is not None:
                return self._model
            import onnxruntime as ort
            from tokenizers import Tokenizer

            model_path = self.model_dir / "model.onnx"
            if not model_path.exists():
                raise FileNotFoundError(f"ONNX model not found at {model_path}")
            tokenizer = Tokenizer.from_file(str(self.model_dir / "tokenizer.json"))
            tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
            tokenizer.enable_truncation(max_length=512)
            sess_opts = ort.SessionOptions()
            sess_opts.log_severity_level = 4
            sess_opts.enable_cpu_mem_arena = False
            session = ort.InferenceSession(
                str(model_path), sess_options=sess_opts, providers=["CPUExecutionProvider"]
            )
            self._model = (tokenizer, session)
            logger.info("Loaded ONNX embedding model from %s", self.model_dir)
            return self._model

    def embed(self, text: str) -> List[float]:
        try:
            tokenizer, session = self._load()
            encoded = tokenizer.encode_batch([text])
            ids = np.array([e.ids for e in encoded], dtype=np.int64)
            mask = np.array([e.attention_mask for e in encoded], dtype=np.int64)
            feed = {"input_ids": ids, "attention_mask": mask}
            if "token_type_ids" in {i.name for i in session.get_inputs()}:
                feed["token_type_ids"] = np.zeros_like(ids)
            outputs = session.run(None, feed)
            embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
            if embeddings.ndim == 3:
                mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
                summed = np.sum(embeddings * mask_expanded, axis=1)
                embeddings = summed / np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
            return _normalize(np.asarray(embeddings[0], dtype=np.float64))
        except Exception as e:
            raise EmbeddingProviderError(f"onnx embedding failed: {e}") from e


class SentenceTransformerEmbedder:
    """sentence-transformers (PyTorch) provider. The model loads on first use."""

    name = "sentence-transformers"

    def __init__(self, dimension: int = DEFAULT_DIMENSION, model_name: str = _ST_DEFAULT_MODEL):
        self.dimension = dimension
        self.model_name = model_name
        self._model = None
        self._load_lock = threading.Lock()

    def _load(self):
        with self._load_lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(self.model_name)
                logger.info("Loaded sentence-transformers model %s", self.model_name)
            return self._model

    def embed(self, text: str) -> List[float]:
        try:
            vector = self._load().encode(text, normalize_embeddings=True)
            return [float(x) for x in vector]
        except Exception as e:
            raise EmbeddingProviderError(f"sentence-transformers embedding failed: {e}") from e


# ---------------------------------------------------------------------------
# Fallback wrapper
# ---------------------------------------------------------------------------


class FallbackEmbedder:
    """Run a provider under a timeout; fall back to the hash embedder on failure.

    After ``max_failures`` consecutive failures the provider is skipped for
    ``cooldown_s`` seconds (circuit breaker), then retried.
    """

    def __init__(
        self,
        primary: Optional[Embedder],
        fallback: HashEmbedder,
        timeout: float = DEFAULT_EMBED_TIMEOUT_S,
        max_failures: int = 3,
        cooldown_s: float = 300.0,
    ):
        if primary is not None and primary.dimension != fallback.dimension:
            raise ValidationError(
                f"{primary.name} produces {primary.dimension}-dim vectors, store expects {fallback.dimension}"
            )
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout
        self.max_failures = max_failures
        self.cooldown_s = cooldown_s
        self._failures = 0
        self._tripped_at = 0.0
        self._state_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def name(self) -> str:
        return self.primary.name if self.primary is not None else self.fallback.name

    @property
    def dimension(self) -> int:
        return self.fallback.dimension

    def embed(self, text: str) -> List[float]:
        return self.embed_tracked(text)[0]

    def embed_tracked(self, text: str) -> Tuple[List[float], str]:
        """Embed text. Returns (vector, method) where method names the embedder used."""
        if self.primary is None or self._breaker_open():
            return self.fallback.embed(text), self.fallback.name
        try:
            vector = self._call_primary(text)
        except EmbeddingProviderError as e:
            self._record_failure()
            logger.warning("Embedding provider %s failed, using hash fallback: %s", self.primary.name, e)
            return self.fallback.embed(text), self.fallback.name
        self._record_success()
        return vector, self.primary.name

    def _call_primary(self, text: str) -> List[float]:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="embedding")
        future = self._executor.submit(self.primary.embed, text)
        try:
            vector = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise EmbeddingProviderError(f"{self.primary.name} timed out after {self.timeout:.1f}s") from None
        except EmbeddingProviderError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(f"{self.primary.name} raised {type(e).__name__}: {e}") from e
        if len(vector) != self.dimension:
            raise EmbeddingProviderError(
                f"{self.primary.name} returned {len(vector)}-dim vector, expected {self.dimension}"
            )
        try:
            return _normalize(np.asarray(vector, dtype=np.float64))
        except ValueError as e:
            raise EmbeddingProviderError(f"{self.primary.name} returned an unusable vector: {e}") from e

    def _breaker_open(self) -> bool:
        with self._state_lock:
            if self._failures < self.max_failures:
                return False
            if _time_module.monotonic() - self._tripped_at >= self.cooldown_s:
                logger.info("Circuit breaker cooldown expired, retrying %s", self.name)
                self._failures = 0
                return False
            return True

    def _record_failure(self) -> None:
        with self._state_lock:
            self._failures += 1
            if self._failures == self.max_failures:
                self._tripped_at = _time_module.monotonic()

    def _record_success(self) -> None:
        with self._state_lock:
            self._failures = 0

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_EMBEDDER_FACTORIES: Dict[str, Callable[[int], Embedder]] = {
    HashEmbedder.name: HashEmbedder,
    OnnxEmbedder.name: OnnxEmbedder,
    SentenceTransformerEmbedder.name: SentenceTransformerEmbedder,
}


def register_embedder(name: str, factory: Callable[[int], Embedder]) -> None:
    """Register a provider factory: fn(dimension) -> Embedder."""
    _EMBEDDER_FACTORIES[name] = factory


def available_embedders() -> List[str]:
    return sorted(_EMBEDDER_FACTORIES)


def create_embedder(name: str, dimension: int = DEFAULT_DIMENSION) -> Embedder:
    factory = _EMBEDDER_FACTORIES.get(name)
    if factory is None:
        raise ValidationError(f"unknown embedder {name!r}; available: {', '.join(available_embedders())}")
    return factory(dimension)


def build_fallback_embedder(
    name: str,
    dimension: int = DEFAULT_DIMENSION,
    timeout: float = DEFAULT_EMBED_TIMEOUT_S,
) -> FallbackEmbedder:
    """FallbackEmbedder for a configured name. 'hash' needs no wrapper provider."""
    fallback = HashEmbedder(dimension)
    primary = None if name == HASH_METHOD else create_embedder(name, dimension)
    return FallbackEmbedder(primary, fallback, timeout=timeout)
