"""
PatternBank engine -- the public operation surface.

A MemoryEngine is an explicit handle owning one record store, the embedders
it has used, one similarity backend and the ranker. Open as many as you like
(one per database file); nothing is shared through module globals.

    with MemoryEngine(db_path) as engine:
        pid = engine.store("global", "Cache reads", "Use a cache for repeated reads")
        results = engine.query("global", "performance optimization", k=3)
        engine.report_outcome(results[0].pattern.id, success=True)

Public API:
    Core:        store, get, delete, list, query, find_similar
    Learning:    report_outcome
    Graph:       link, unlink, links_of, neighbors
    Trajectory:  trajectory_start, trajectory_append_step, trajectory_end, trajectory_get
    Snapshot:    export, import_snapshot, export_to_file, import_from_file
    Maintenance: consolidate, backup, backfill_embeddings, reembed, stats
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from patternbank import consolidation as _consolidation
from patternbank import snapshot as _snapshot
from patternbank.config import EngineConfig
from patternbank.confidence import update_confidence
from patternbank.embedding import FallbackEmbedder, build_fallback_embedder
from patternbank.errors import ValidationError
from patternbank.linker import PatternLinker
from patternbank.ranking import MMRRanker, RankedPattern
from patternbank.similarity import Candidate, create_search
from patternbank.store import PatternStore
from patternbank.trajectory import TrajectoryTracker
from patternbank.types import (
    DEFAULT_NAMESPACE,
    INITIAL_CONFIDENCE,
    Embedding,
    Pattern,
    PatternLink,
    TaskTrajectory,
    utcnow,
)

logger = logging.getLogger("patternbank.engine")

_BACKUPS_KEPT = 3


def new_pattern_id() -> str:
    return f"pat-{uuid.uuid4().hex[:12]}"


def _check_namespace(namespace: Optional[str]) -> str:
    if namespace is None:
        return DEFAULT_NAMESPACE
    if not isinstance(namespace, str) or not namespace.strip():
        raise ValidationError("namespace must be a non-empty string")
    return namespace


class MemoryEngine:
    """Persistent semantic memory with confidence learning."""

    def __init__(self, db_path=None, config: Optional[EngineConfig] = None, **overrides):
        if config is None:
            config = EngineConfig.from_env(db_path=db_path, **overrides)
        self.config = config
        self.search = create_search(config.search_backend)
        self.ranker = MMRRanker()
        self._embedders: Dict[str, FallbackEmbedder] = {}
        self._embedders_lock = threading.Lock()
        self._embedder(config.embedder)

        self.records = PatternStore(
            config.db_path,
            dimension=config.dimension,
            load_vec_extension=config.search_backend == "sqlite-vec",
        )
        self.linker = PatternLinker(self.records)
        self.trajectories = TrajectoryTracker(self.records)
        logger.info("Opened pattern store %s (%s)", config.db_path, config)

    # ------------------------------------------------------------------
    # Embedders
    # ------------------------------------------------------------------

    def _embedder(self, hint: Optional[str] = None) -> FallbackEmbedder:
        name = self.config.embedder if hint is None else hint
        if not isinstance(name, str) or not name:
            raise ValidationError(f"embedder hint must be a registered embedder name, got {hint!r}")
        with self._embedders_lock:
            embedder = self._embedders.get(name)
            if embedder is None:
                embedder = build_fallback_embedder(name, self.config.dimension, self.config.embed_timeout)
                self._embedders[name] = embedder
        return embedder

    def _embed_pattern(self, pattern: Pattern, hint: Optional[str] = None) -> Embedding:
        vector, method = self._embedder(hint).embed_tracked(pattern.text)
        return Embedding(pattern.id, vector, method, utcnow())

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def store(
        self,
        namespace: Optional[str],
        title: Optional[str],
        content: str,
        domain: Optional[str] = None,
        tags: Optional[List[str]] = None,
        embedder_hint: Optional[str] = None,
    ) -> str:
        """Persist a new pattern with its embedding. Returns the pattern id."""
        namespace = _check_namespace(namespace)
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content must be a non-empty string")
        if len(content) > self.config.max_content_size:
            raise ValidationError(
                f"content is {len(content)} characters, limit is {self.config.max_content_size}"
            )
        if title is not None and not isinstance(title, str):
            raise ValidationError("title must be a string")
        if tags is not None and (
            not isinstance(tags, (list, tuple)) or not all(isinstance(t, str) for t in tags)
        ):
            raise ValidationError("tags must be a list of strings")

        pattern = Pattern(
            id=new_pattern_id(),
            namespace=namespace,
            title=(title or "").strip(),
            content=content,
            domain=domain,
            tags=list(tags or []),
            confidence=INITIAL_CONFIDENCE,
            created_at=utcnow(),
        )
        # Embed outside the write transaction; the provider may be slow.
        embedding = self._embed_pattern(pattern, embedder_hint)
        self.records.put_pattern(pattern, embedding)
        logger.debug("Stored %s in %s (%s)", pattern.id, namespace, embedding.method)
        return pattern.id

    def get(self, pattern_id: str) -> Pattern:
        return self.records.get_pattern(pattern_id)

    def delete(self, pattern_id: str) -> None:
        self.records.delete_pattern(pattern_id)
        logger.debug("Deleted %s", pattern_id)

    def list(self, namespace: Optional[str] = None) -> List[Pattern]:
        return list(self.records.list_by_namespace(_check_namespace(namespace)))

    def query(
        self,
        namespace: Optional[str],
        text: str,
        k: int = 5,
        min_confidence: float = 0.0,
        now: Optional[datetime] = None,
    ) -> List[RankedPattern]:
        """Top-k patterns by MMR score. Read-only: usage is counted by report_outcome.

        Only patterns embedded by the same embedder as the query are scored;
        vectors from another embedder live in a different space. Run
        ``reembed`` to bring a namespace onto one embedder.
        """
        namespace = _check_namespace(namespace)
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("query text must be a non-empty string")
        if isinstance(k, bool) or not isinstance(k, int) or k < 0:
            raise ValidationError(f"k must be a non-negative integer, got {k!r}")
        if not 0.0 <= min_confidence <= 1.0:
            raise ValidationError(f"min_confidence {min_confidence} outside [0, 1]")
        if k == 0:
            return []

        query_vector, method = self._embedder().embed_tracked(text)
        candidates = [
            c
            for c in self.search.search(query_vector, namespace, self.records, method=method)
            if c.pattern.confidence >= min_confidence
        ]
        return self.ranker.rank(candidates, k, now=now)

    def find_similar(self, pattern_id: str, k: int = 5) -> List[Candidate]:
        """Nearest neighbours of a stored pattern within its namespace."""
        pattern = self.records.get_pattern(pattern_id)
        embedding = self.records.get_embedding(pattern_id)
        if embedding is None or embedding.dimension != self.config.dimension:
            logger.debug("No usable embedding for %s; nothing to compare", pattern_id)
            return []
        # k + 1 because the source pattern is its own best match
        results = self.search.search(
            embedding.vector, pattern.namespace, self.records, limit=k + 1, method=embedding.method
        )
        return [c for c in results if c.pattern.id != pattern_id][:k]

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def report_outcome(self, pattern_id: str, success: bool, outcome_id: Optional[str] = None) -> float:
        """Apply a success/failure to a pattern's confidence. Returns the new confidence."""
        if not isinstance(success, bool):
            raise ValidationError(f"success must be a bool, got {success!r}")
        if outcome_id is not None and (not isinstance(outcome_id, str) or not outcome_id):
            raise ValidationError("outcome_id must be a non-empty string")
        event, applied = self.records.apply_outcome(pattern_id, success, update_confidence, outcome_id=outcome_id)
        if not applied:
            logger.debug("Outcome %s for %s already recorded", outcome_id, pattern_id)
            return self.records.get_pattern(pattern_id).confidence
        logger.debug(
            "Outcome for %s: %s, confidence %.4f -> %.4f",
            pattern_id,
            "success" if success else "failure",
            event.confidence_before,
            event.confidence_after,
        )
        return event.confidence_after

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def link(self, source_id: str, target_id: str, link_type, strength: float = 1.0) -> PatternLink:
        return self.linker.link(source_id, target_id, link_type, strength)

    def unlink(self, source_id: str, target_id: str, link_type) -> None:
        self.linker.unlink(source_id, target_id, link_type)

    def links_of(self, pattern_id: str, direction: str = "both", link_type=None) -> List[PatternLink]:
        return self.linker.links_of(pattern_id, direction=direction, link_type=link_type)

    def neighbors(self, pattern_id: str, direction: str = "both", link_type=None) -> List[str]:
        return self.linker.neighbors(pattern_id, direction=direction, link_type=link_type)

    # ------------------------------------------------------------------
    # Trajectories
    # ------------------------------------------------------------------

    def trajectory_start(self, task_id: str) -> TaskTrajectory:
        return self.trajectories.start(task_id)

    def trajectory_append_step(self, task_id: str, text: str) -> int:
        return self.trajectories.append_step(task_id, text)

    def trajectory_end(self, task_id: str, outcome) -> TaskTrajectory:
        return self.trajectories.end(task_id, outcome)

    def trajectory_get(self, task_id: str) -> TaskTrajectory:
        return self.trajectories.get(task_id)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def export(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        return _snapshot.export_snapshot(self.records, namespace)

    def import_snapshot(self, doc: Dict[str, Any], replace: bool = False) -> Dict[str, Any]:
        return _snapshot.import_snapshot(self.records, doc, replace=replace)

    def export_to_file(self, filepath, namespace: Optional[str] = None) -> Dict[str, Any]:
        result = _snapshot.write_snapshot_file(self.export(namespace), filepath)
        logger.info("Exported %d patterns to %s", result["pattern_count"], filepath)
        return result

    def import_from_file(self, filepath, replace: bool = False) -> Dict[str, Any]:
        result = self.import_snapshot(_snapshot.read_snapshot_file(filepath), replace=replace)
        result["filepath"] = str(filepath)
        return result

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def backup(self, dest=None) -> Path:
        """Copy the database aside, keeping only the newest few automatic backups."""
        if dest is not None:
            return self.records.backup_to(dest)
        backups_dir = self.config.db_path.parent / "backups"
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        path = self.records.backup_to(backups_dir / f"pre-consolidate-{timestamp}.db")
        logger.info("Database backup: %s", path)
        backups = sorted(backups_dir.glob("pre-consolidate-*.db"), reverse=True)
        for old in backups[_BACKUPS_KEPT:]:
            old.unlink()
        return path

    def consolidate(
        self,
        namespace: Optional[str],
        confidence_floor: float,
        min_usage: int = _consolidation.DEFAULT_MIN_USAGE,
        dedup_threshold: float = _consolidation.DEFAULT_DEDUP_THRESHOLD,
        dry_run: bool = False,
        backup: bool = True,
    ) -> Dict[str, Any]:
        """Prune weak patterns and merge near-duplicates in one namespace."""
        namespace = _check_namespace(namespace)
        if backup and not dry_run:
            self.backup()
        return _consolidation.consolidate(
            self.records,
            namespace,
            confidence_floor,
            min_usage=min_usage,
            dedup_threshold=dedup_threshold,
            dry_run=dry_run,
        )

    def backfill_embeddings(self, namespace: Optional[str] = None) -> int:
        """Embed patterns that have no (usable) embedding. Returns how many were filled."""
        pending = self.records.patterns_without_embedding(namespace)
        if not pending:
            return 0
        self.records.put_embeddings([self._embed_pattern(p) for p in pending])
        logger.info("Backfilled %d embeddings", len(pending))
        return len(pending)

    def reembed(self, namespace: Optional[str] = None, embedder_hint: Optional[str] = None) -> int:
        """Replace every embedding (of one namespace, or all) using one embedder."""
        namespaces = [namespace] if namespace is not None else self.records.namespaces()
        embedder = self._embedder(embedder_hint)
        embeddings = []
        for ns in namespaces:
            for pattern in self.records.list_by_namespace(ns):
                vector, method = embedder.embed_tracked(pattern.text)
                embeddings.append(Embedding(pattern.id, vector, method, utcnow()))
        if embeddings:
            self.records.put_embeddings(embeddings)
        logger.info("Re-embedded %d patterns with %s", len(embeddings), embedder.name)
        return len(embeddings)

    def stats(self, namespace: Optional[str] = None) -> Dict[str, Any]:
        namespaces = [namespace] if namespace is not None else self.records.namespaces()
        return {
            "db_path": str(self.config.db_path),
            "dimension": self.config.dimension,
            "embedder": self._embedder().name,
            "search_backend": self.search.name,
            "counts": self.records.counts(),
            "usage": self.records.usage_stats(namespace),
            "recent": {ns: [p.id for p in self.records.recent_patterns(ns, limit=5)] for ns in namespaces},
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        with self._embedders_lock:
            embedders, self._embedders = self._embedders, {}
        for embedder in embedders.values():
            embedder.close()
        self.records.close()

    def __enter__(self) -> "MemoryEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
