"""
PatternBank SQLite Store -- durable records for patterns, embeddings, links,
trajectories and outcome events.

One writer connection, serialized by a lock, runs every mutation inside a
``BEGIN IMMEDIATE`` transaction, so multi-field writes (pattern + embedding,
link upsert, confidence update) commit together or not at all. Readers use
one connection per thread; with WAL journaling they see a consistent
snapshot and never a half-committed write.

Usage:
    store = PatternStore(db_path)
    store.put_pattern(pattern, embedding)
    pattern = store.get_pattern(pattern.id)
"""

import json
import logging
import math
import sqlite3
import struct
import threading
import time as _time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from patternbank.config import DEFAULT_DIMENSION
from patternbank.crypto import secure_connect
from patternbank.errors import ConcurrencyConflict, InvalidStateError, NotFoundError, StorageError, ValidationError
from patternbank.types import (
    CONFIDENCE_CEILING,
    CONFIDENCE_FLOOR,
    Embedding,
    LinkType,
    Outcome,
    OutcomeEvent,
    Pattern,
    PatternLink,
    TaskTrajectory,
    format_dt,
    parse_dt,
    utcnow,
)

logger = logging.getLogger("patternbank.store")

SCHEMA_VERSION = 1

_PAGE_SIZE = 500

# ---------------------------------------------------------------------------
# SQLite retry -- handles write contention between store instances sharing
# one database file. busy_timeout covers most cases; this wrapper retries
# with exponential backoff before surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 4
_DB_RETRY_BASE_DELAY = 0.05  # seconds


def _is_lock_error(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "database is locked" in msg or "database is busy" in msg


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn, retrying with backoff while the database is locked."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if not _is_lock_error(e):
                raise
            conflict = ConcurrencyConflict(str(e))
            if attempt == _DB_RETRY_ATTEMPTS - 1:
                raise StorageError(f"database stayed locked after {_DB_RETRY_ATTEMPTS} attempts") from conflict
            delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
            logger.warning(
                "database is locked (attempt %d/%d), retrying in %.2fs", attempt + 1, _DB_RETRY_ATTEMPTS, delay
            )
            _time.sleep(delay)


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes (sqlite-vec compatible layout)."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes) -> List[float]:
    return list(struct.unpack(f"{len(data) // 4}f", data))


_PATTERN_COLUMNS = (
    "id, namespace, title, content, domain, tags, confidence, usage_count, created_at, last_used_at"
)


def _row_to_pattern(row: tuple) -> Pattern:
    pid, namespace, title, content, domain, tags_json, confidence, usage_count, created_at, last_used_at = row
    return Pattern(
        id=pid,
        namespace=namespace,
        title=title,
        content=content,
        domain=domain,
        tags=json.loads(tags_json) if tags_json else [],
        confidence=confidence,
        usage_count=usage_count or 0,
        created_at=parse_dt(created_at),
        last_used_at=parse_dt(last_used_at),
    )


def _row_to_link(row: tuple) -> PatternLink:
    source_id, target_id, link_type, strength, created_at, updated_at = row
    return PatternLink(
        source_id=source_id,
        target_id=target_id,
        link_type=LinkType(link_type),
        strength=strength,
        created_at=parse_dt(created_at),
        updated_at=parse_dt(updated_at),
    )


class MergeGroup:
    """Consolidation instruction: fold ``absorbed_ids`` into ``survivor_id``."""

    __slots__ = ("survivor_id", "absorbed_ids", "confidence", "usage_count", "last_used_at")

    def __init__(
        self,
        survivor_id: str,
        absorbed_ids: List[str],
        confidence: float,
        usage_count: int,
        last_used_at: Optional[datetime],
    ):
        self.survivor_id = survivor_id
        self.absorbed_ids = list(absorbed_ids)
        self.confidence = confidence
        self.usage_count = usage_count
        self.last_used_at = last_used_at


class ConsolidationPlan:
    """What a consolidation pass will delete and merge."""

    __slots__ = ("prune_ids", "merges")

    def __init__(self, prune_ids: Optional[List[str]] = None, merges: Optional[List[MergeGroup]] = None):
        self.prune_ids = list(prune_ids or [])
        self.merges = list(merges or [])


class PatternStore:
    """SQLite-backed record store. One instance per database handle; no globals."""

    def __init__(self, db_path, dimension: int = DEFAULT_DIMENSION, load_vec_extension: bool = False):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.dimension = dimension
        self._load_vec = load_vec_extension

        self._lock = threading.RLock()
        self._local = threading.local()
        # thread ident -> (thread, connection); entries of finished threads are pruned
        self._readers: Dict[int, Tuple[threading.Thread, sqlite3.Connection]] = {}
        self._readers_lock = threading.Lock()
        self._closed = False

        try:
            self._conn = self._connect()
            self._init_schema()
        except sqlite3.Error as e:
            raise StorageError(f"cannot open pattern store at {self.db_path}: {e}") from e

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with WAL and foreign keys enabled."""
        conn = secure_connect(self.db_path, timeout=30, check_same_thread=False, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        if self._load_vec:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        return conn

    def _reader(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageError("pattern store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                raise StorageError(f"cannot open reader connection: {e}") from e
            self._local.conn = conn
            self._local.depth = 0
            with self._readers_lock:
                self._prune_readers()
                self._readers[threading.get_ident()] = (threading.current_thread(), conn)
        return conn

    def _prune_readers(self) -> None:
        """Close reader connections whose owning thread has exited. Caller holds _readers_lock."""
        for ident, (thread, conn) in list(self._readers.items()):
            if thread.is_alive():
                continue
            del self._readers[ident]
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.debug("Closing reader of finished thread failed: %s", e)

    @contextmanager
    def _read_txn(self) -> Iterator[sqlite3.Connection]:
        """Consistent snapshot for multi-statement reads. Re-entrant per thread."""
        conn = self._reader()
        outermost = self._local.depth == 0
        self._local.depth += 1
        try:
            if outermost:
                conn.execute("BEGIN")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"read failed: {e}") from e
        finally:
            self._local.depth -= 1
            if outermost and conn.in_transaction:
                conn.execute("COMMIT")

    @contextmanager
    def _write_txn(self, mode: str = "IMMEDIATE") -> Iterator[sqlite3.Connection]:
        """Serialized all-or-nothing write. Rolls back on any exception."""
        if self._closed:
            raise StorageError("pattern store is closed")
        with self._lock:
            conn = self._conn
            try:
                _retry_on_locked(conn.execute, f"BEGIN {mode}")
            except sqlite3.Error as e:
                raise StorageError(f"cannot begin transaction: {e}") from e
            try:
                yield conn
                _retry_on_locked(conn.execute, "COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StorageError(f"write failed and was rolled back: {e}") from e
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error("Rollback failed: %s", e)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create tables, indexes and views if they don't exist."""
        c = self._conn
        c.execute("BEGIN IMMEDIATE")
        try:
            c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.info("Initializing pattern store schema v%d at %s", SCHEMA_VERSION, self.db_path)
            elif row[0] > SCHEMA_VERSION:
                raise StorageError(f"database schema v{row[0]} is newer than supported v{SCHEMA_VERSION}")

            c.execute(f"""
                CREATE TABLE IF NOT EXISTS patterns (
                    id TEXT PRIMARY KEY,
                    namespace TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    content TEXT NOT NULL,
                    domain TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    confidence REAL NOT NULL
                        CHECK (confidence >= {CONFIDENCE_FLOOR} AND confidence <= {CONFIDENCE_CEILING}),
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    last_used_at TEXT
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_patterns_namespace ON patterns(namespace, id)")
            c.execute("""
                CREATE INDEX IF NOT EXISTS idx_patterns_recent
                ON patterns(namespace, COALESCE(last_used_at, created_at))
            """)

            c.execute("""
                CREATE TABLE IF NOT EXISTS embeddings (
                    pattern_id TEXT PRIMARY KEY REFERENCES patterns(id) ON DELETE CASCADE,
                    vector BLOB NOT NULL,
                    dimension INTEGER NOT NULL,
                    method TEXT NOT NULL,
                    generated_at TEXT NOT NULL
                )
            """)

            link_types = ", ".join(f"'{t.value}'" for t in LinkType)
            c.execute(f"""
                CREATE TABLE IF NOT EXISTS links (
                    source_id TEXT NOT NULL REFERENCES patterns(id) ON DELETE CASCADE,
                    target_id TEXT NOT NULL REFERENCES patterns(id) ON DELETE CASCADE,
                    link_type TEXT NOT NULL CHECK (link_type IN ({link_types})),
                    strength REAL NOT NULL CHECK (strength >= 0 AND strength <= 1),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (source_id, target_id, link_type),
                    CHECK (source_id <> target_id)
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_links_target ON links(target_id)")

            outcomes = ", ".join(f"'{o.value}'" for o in Outcome)
            c.execute(f"""
                CREATE TABLE IF NOT EXISTS trajectories (
                    task_id TEXT PRIMARY KEY,
                    outcome TEXT NOT NULL DEFAULT 'open' CHECK (outcome IN ({outcomes})),
                    confidence REAL NOT NULL
                        CHECK (confidence >= {CONFIDENCE_FLOOR} AND confidence <= {CONFIDENCE_CEILING}),
                    started_at TEXT NOT NULL,
                    ended_at TEXT
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS trajectory_steps (
                    task_id TEXT NOT NULL REFERENCES trajectories(task_id) ON DELETE CASCADE,
                    seq INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    PRIMARY KEY (task_id, seq)
                )
            """)

            c.execute("""
                CREATE TABLE IF NOT EXISTS outcomes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    pattern_id TEXT NOT NULL REFERENCES patterns(id) ON DELETE CASCADE,
                    outcome_id TEXT UNIQUE,
                    success INTEGER NOT NULL,
                    confidence_before REAL NOT NULL,
                    confidence_after REAL NOT NULL,
                    recorded_at TEXT NOT NULL
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_outcomes_pattern ON outcomes(pattern_id)")

            # Read-optimized views
            c.execute("""
                CREATE VIEW IF NOT EXISTS recent_patterns AS
                SELECT id, namespace, title, confidence, usage_count, created_at, last_used_at,
                       COALESCE(last_used_at, created_at) AS touched_at
                FROM patterns
            """)
            c.execute("""
                CREATE VIEW IF NOT EXISTS pattern_usage_stats AS
                SELECT p.namespace AS namespace,
                       COUNT(*) AS pattern_count,
                       COALESCE(SUM(p.usage_count), 0) AS total_usage,
                       AVG(p.confidence) AS avg_confidence,
                       MIN(p.confidence) AS min_confidence,
                       MAX(p.confidence) AS max_confidence,
                       SUM(CASE WHEN e.pattern_id IS NULL THEN 1 ELSE 0 END) AS pending_embeddings,
                       COALESCE(SUM(o.successes), 0) AS successes,
                       COALESCE(SUM(o.failures), 0) AS failures
                FROM patterns p
                LEFT JOIN embeddings e ON e.pattern_id = p.id
                LEFT JOIN (
                    SELECT pattern_id, SUM(success) AS successes, SUM(1 - success) AS failures
                    FROM outcomes GROUP BY pattern_id
                ) o ON o.pattern_id = p.id
                GROUP BY p.namespace
            """)
            c.execute("COMMIT")
        except BaseException:
            if c.in_transaction:
                c.execute("ROLLBACK")
            raise

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _check_vector(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise ValidationError(f"embedding has dimension {len(vector)}, store expects {self.dimension}")
        if not all(math.isfinite(x) for x in vector):
            raise ValidationError("embedding contains non-finite values")

    @staticmethod
    def _check_pattern(pattern: Pattern) -> None:
        if not pattern.id:
            raise ValidationError("pattern id must be non-empty")
        if not pattern.namespace:
            raise ValidationError("namespace must be non-empty")
        if not pattern.content:
            raise ValidationError("content must be a non-empty string")
        if not CONFIDENCE_FLOOR <= pattern.confidence <= CONFIDENCE_CEILING:
            raise ValidationError(
                f"confidence {pattern.confidence} outside [{CONFIDENCE_FLOOR}, {CONFIDENCE_CEILING}]"
            )
        if pattern.usage_count < 0:
            raise ValidationError("usage_count must be >= 0")

    @staticmethod
    def _check_trajectory(trajectory: TaskTrajectory) -> None:
        if not isinstance(trajectory.task_id, str) or not trajectory.task_id:
            raise ValidationError("task id must be a non-empty string")
        if not all(isinstance(step, str) for step in trajectory.steps):
            raise ValidationError(f"trajectory {trajectory.task_id!r} steps must be strings")
        if not CONFIDENCE_FLOOR <= trajectory.confidence <= CONFIDENCE_CEILING:
            raise ValidationError(
                f"trajectory confidence {trajectory.confidence} outside [{CONFIDENCE_FLOOR}, {CONFIDENCE_CEILING}]"
            )

    @staticmethod
    def _pattern_params(pattern: Pattern) -> tuple:
        return (
            pattern.id,
            pattern.namespace,
            pattern.title,
            pattern.content,
            pattern.domain,
            json.dumps(list(pattern.tags)),
            pattern.confidence,
            pattern.usage_count,
            format_dt(pattern.created_at),
            format_dt(pattern.last_used_at),
        )

    def _write_embedding(self, conn: sqlite3.Connection, embedding: Embedding) -> None:
        conn.execute(
            """INSERT INTO embeddings (pattern_id, vector, dimension, method, generated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(pattern_id) DO UPDATE SET
                   vector = excluded.vector, dimension = excluded.dimension,
                   method = excluded.method, generated_at = excluded.generated_at""",
            (
                embedding.pattern_id,
                _serialize_f32(embedding.vector),
                len(embedding.vector),
                embedding.method,
                format_dt(embedding.generated_at),
            ),
        )

    @staticmethod
    def _exists(conn: sqlite3.Connection, pattern_id: str) -> bool:
        return conn.execute("SELECT 1 FROM patterns WHERE id = ?", (pattern_id,)).fetchone() is not None

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def put_pattern(self, pattern: Pattern, embedding: Optional[Embedding] = None) -> str:
        """Insert a new pattern, and its embedding when given, atomically."""
        self._check_pattern(pattern)
        if embedding is not None:
            if embedding.pattern_id != pattern.id:
                raise ValidationError("embedding does not belong to this pattern")
            self._check_vector(embedding.vector)

        with self._write_txn() as conn:
            if self._exists(conn, pattern.id):
                raise ValidationError(f"pattern {pattern.id!r} already exists")
            conn.execute(
                f"INSERT INTO patterns ({_PATTERN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._pattern_params(pattern),
            )
            if embedding is not None:
                self._write_embedding(conn, embedding)
        return pattern.id

    def get_pattern(self, pattern_id: str) -> Pattern:
        with self._read_txn() as conn:
            row = conn.execute(f"SELECT {_PATTERN_COLUMNS} FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
        if row is None:
            raise NotFoundError("pattern", pattern_id)
        return _row_to_pattern(row)

    def get_patterns(self, pattern_ids: Sequence[str]) -> Dict[str, Pattern]:
        """Fetch several patterns at once; unknown ids are simply absent."""
        if not pattern_ids:
            return {}
        found: Dict[str, Pattern] = {}
        ids = list(dict.fromkeys(pattern_ids))
        with self._read_txn() as conn:
            for i in range(0, len(ids), _PAGE_SIZE):
                chunk = ids[i:i + _PAGE_SIZE]
                placeholders = ",".join("?" * len(chunk))
                for row in conn.execute(
                    f"SELECT {_PATTERN_COLUMNS} FROM patterns WHERE id IN ({placeholders})", chunk
                ):
                    pattern = _row_to_pattern(row)
                    found[pattern.id] = pattern
        return found

    def delete_pattern(self, pattern_id: str) -> None:
        """Delete a pattern; its embedding, links and outcome log go with it."""
        with self._write_txn() as conn:
            cur = conn.execute("DELETE FROM patterns WHERE id = ?", (pattern_id,))
            if cur.rowcount == 0:
                raise NotFoundError("pattern", pattern_id)

    def list_by_namespace(self, namespace: str) -> Iterator[Pattern]:
        """Iterate a namespace's patterns in id order, one page at a time."""
        last_id = ""
        while True:
            with self._read_txn() as conn:
                rows = conn.execute(
                    f"""SELECT {_PATTERN_COLUMNS} FROM patterns
                        WHERE namespace = ? AND id > ? ORDER BY id LIMIT ?""",
                    (namespace, last_id, _PAGE_SIZE),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_pattern(row)
            last_id = rows[-1][0]

    def namespaces(self) -> List[str]:
        with self._read_txn() as conn:
            rows = conn.execute("SELECT DISTINCT namespace FROM patterns ORDER BY namespace").fetchall()
        return [r[0] for r in rows]

    def apply_outcome(
        self,
        pattern_id: str,
        success: bool,
        update: Callable[[float, bool], float],
        outcome_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[OutcomeEvent, bool]:
        """Apply a confidence update and log it in one transaction.

        Returns (event, applied). A repeated ``outcome_id`` returns the
        originally logged event with applied=False and changes nothing.
        """
        now = now or utcnow()
        with self._write_txn() as conn:
            if outcome_id is not None:
                prior = conn.execute(
                    """SELECT pattern_id, success, confidence_before, confidence_after, recorded_at
                       FROM outcomes WHERE outcome_id = ?""",
                    (outcome_id,),
                ).fetchone()
                if prior is not None:
                    if prior[0] != pattern_id:
                        raise ValidationError(f"outcome id {outcome_id!r} was already used for {prior[0]!r}")
                    event = OutcomeEvent(
                        pattern_id=prior[0],
                        success=bool(prior[1]),
                        confidence_before=prior[2],
                        confidence_after=prior[3],
                        outcome_id=outcome_id,
                        recorded_at=parse_dt(prior[4]),
                    )
                    return event, False

            row = conn.execute("SELECT confidence FROM patterns WHERE id = ?", (pattern_id,)).fetchone()
            if row is None:
                raise NotFoundError("pattern", pattern_id)
            before = row[0]
            after = update(before, success)
            conn.execute(
                """UPDATE patterns
                   SET confidence = ?, usage_count = usage_count + 1, last_used_at = ?
                   WHERE id = ?""",
                (after, format_dt(now), pattern_id),
            )
            conn.execute(
                """INSERT INTO outcomes
                   (pattern_id, outcome_id, success, confidence_before, confidence_after, recorded_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (pattern_id, outcome_id, 1 if success else 0, before, after, format_dt(now)),
            )
        event = OutcomeEvent(
            pattern_id=pattern_id,
            success=success,
            confidence_before=before,
            confidence_after=after,
            outcome_id=outcome_id,
            recorded_at=now,
        )
        return event, True

    def outcome_history(self, pattern_id: str) -> List[OutcomeEvent]:
        with self._read_txn() as conn:
            rows = conn.execute(
                """SELECT pattern_id, success, confidence_before, confidence_after, outcome_id, recorded_at
                   FROM outcomes WHERE pattern_id = ? ORDER BY id""",
                (pattern_id,),
            ).fetchall()
        return [
            OutcomeEvent(
                pattern_id=r[0],
                success=bool(r[1]),
                confidence_before=r[2],
                confidence_after=r[3],
                outcome_id=r[4],
                recorded_at=parse_dt(r[5]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def put_embedding(self, embedding: Embedding) -> None:
        """Insert or replace the current embedding of an existing pattern."""
        self.put_embeddings([embedding])

    def put_embeddings(self, embeddings: Sequence[Embedding]) -> None:
        """Replace several embeddings in one transaction."""
        for embedding in embeddings:
            self._check_vector(embedding.vector)
        with self._write_txn() as conn:
            for embedding in embeddings:
                if not self._exists(conn, embedding.pattern_id):
                    raise NotFoundError("pattern", embedding.pattern_id)
                self._write_embedding(conn, embedding)

    def get_embedding(self, pattern_id: str) -> Optional[Embedding]:
        with self._read_txn() as conn:
            row = conn.execute(
                "SELECT vector, method, generated_at FROM embeddings WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        if row is None:
            return None
        return Embedding(pattern_id, _deserialize_f32(row[0]), row[1], parse_dt(row[2]))

    def iter_embedded(self, namespace: str, method: Optional[str] = None) -> List[Tuple[Pattern, List[float]]]:
        """All (pattern, vector) pairs in a namespace that are searchable.

        With ``method`` set, only vectors produced by that embedder are returned.
        """
        columns = ", ".join("p." + c.strip() for c in _PATTERN_COLUMNS.split(","))
        sql = f"""SELECT {columns}, e.vector
                  FROM patterns p JOIN embeddings e ON e.pattern_id = p.id
                  WHERE p.namespace = ? AND e.dimension = ?"""
        params: List[Any] = [namespace, self.dimension]
        if method is not None:
            sql += " AND e.method = ?"
            params.append(method)
        with self._read_txn() as conn:
            rows = conn.execute(sql + " ORDER BY p.id", params).fetchall()
        return [(_row_to_pattern(row[:-1]), _deserialize_f32(row[-1])) for row in rows]

    def vec_cosine_scores(
        self,
        query_vector: Sequence[float],
        namespace: str,
        limit: Optional[int] = None,
        method: Optional[str] = None,
    ) -> List[Tuple[Pattern, List[float], float]]:
        """Cosine distances computed by sqlite-vec. Requires load_vec_extension=True."""
        if not self._load_vec:
            raise StorageError("sqlite-vec search requested but the extension is not loaded")
        columns = ", ".join("p." + c.strip() for c in _PATTERN_COLUMNS.split(","))
        sql = f"""SELECT {columns}, e.vector, vec_distance_cosine(e.vector, ?) AS distance
                  FROM patterns p JOIN embeddings e ON e.pattern_id = p.id
                  WHERE p.namespace = ? AND e.dimension = ?"""
        params: List[Any] = [_serialize_f32(query_vector), namespace, self.dimension]
        if method is not None:
            sql += " AND e.method = ?"
            params.append(method)
        sql += " ORDER BY distance, p.id"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._read_txn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(_row_to_pattern(row[:-2]), _deserialize_f32(row[-2]), row[-1]) for row in rows]

    def patterns_without_embedding(self, namespace: Optional[str] = None) -> List[Pattern]:
        """Patterns pending backfill (no embedding, or one of the wrong dimension)."""
        columns = ", ".join("p." + c.strip() for c in _PATTERN_COLUMNS.split(","))
        sql = f"""SELECT {columns} FROM patterns p
                  LEFT JOIN embeddings e ON e.pattern_id = p.id
                  WHERE (e.pattern_id IS NULL OR e.dimension != ?)"""
        params: List[Any] = [self.dimension]
        if namespace is not None:
            sql += " AND p.namespace = ?"
            params.append(namespace)
        with self._read_txn() as conn:
            rows = conn.execute(sql + " ORDER BY p.id", params).fetchall()
        return [_row_to_pattern(r) for r in rows]

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def upsert_link(self, link: PatternLink) -> PatternLink:
        """Insert a link, or update strength if (source, target, type) exists."""
        if link.source_id == link.target_id:
            raise ValidationError("a pattern cannot link to itself")
        if not 0.0 <= link.strength <= 1.0:
            raise ValidationError(f"link strength {link.strength} outside [0, 1]")
        with self._write_txn() as conn:
            for pid in (link.source_id, link.target_id):
                if not self._exists(conn, pid):
                    raise NotFoundError("pattern", pid)
            conn.execute(
                """INSERT INTO links (source_id, target_id, link_type, strength, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(source_id, target_id, link_type) DO UPDATE SET
                       strength = excluded.strength, updated_at = excluded.updated_at""",
                (
                    link.source_id,
                    link.target_id,
                    link.link_type.value,
                    link.strength,
                    format_dt(link.created_at),
                    format_dt(link.updated_at),
                ),
            )
            row = conn.execute(
                """SELECT source_id, target_id, link_type, strength, created_at, updated_at
                   FROM links WHERE source_id = ? AND target_id = ? AND link_type = ?""",
                link.key,
            ).fetchone()
        return _row_to_link(row)

    def links_of(
        self,
        pattern_id: str,
        direction: str = "both",
        link_type: Optional[LinkType] = None,
    ) -> List[PatternLink]:
        if direction == "out":
            where, params = "source_id = ?", [pattern_id]
        elif direction == "in":
            where, params = "target_id = ?", [pattern_id]
        elif direction == "both":
            where, params = "(source_id = ? OR target_id = ?)", [pattern_id, pattern_id]
        else:
            raise ValidationError(f"direction must be 'out', 'in' or 'both', got {direction!r}")
        if link_type is not None:
            where += " AND link_type = ?"
            params.append(LinkType(link_type).value)
        with self._read_txn() as conn:
            rows = conn.execute(
                f"""SELECT source_id, target_id, link_type, strength, created_at, updated_at
                    FROM links WHERE {where}
                    ORDER BY strength DESC, source_id, target_id, link_type""",
                params,
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def delete_link(self, source_id: str, target_id: str, link_type: LinkType) -> None:
        with self._write_txn() as conn:
            cur = conn.execute(
                "DELETE FROM links WHERE source_id = ? AND target_id = ? AND link_type = ?",
                (source_id, target_id, LinkType(link_type).value),
            )
            if cur.rowcount == 0:
                raise NotFoundError("link", f"{source_id}->{target_id}:{LinkType(link_type).value}")

    # ------------------------------------------------------------------
    # Trajectories
    # ------------------------------------------------------------------

    def create_trajectory(self, trajectory: TaskTrajectory) -> None:
        if not trajectory.task_id:
            raise ValidationError("task id must be non-empty")
        with self._write_txn() as conn:
            exists = conn.execute(
                "SELECT 1 FROM trajectories WHERE task_id = ?", (trajectory.task_id,)
            ).fetchone()
            if exists:
                raise ValidationError(f"trajectory {trajectory.task_id!r} already exists")
            self._write_trajectory(conn, trajectory)

    def _write_trajectory(self, conn: sqlite3.Connection, trajectory: TaskTrajectory) -> None:
        conn.execute(
            """INSERT INTO trajectories (task_id, outcome, confidence, started_at, ended_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(task_id) DO UPDATE SET
                   outcome = excluded.outcome, confidence = excluded.confidence,
                   started_at = excluded.started_at, ended_at = excluded.ended_at""",
            (
                trajectory.task_id,
                trajectory.outcome.value,
                trajectory.confidence,
                format_dt(trajectory.started_at),
                format_dt(trajectory.ended_at),
            ),
        )
        conn.execute("DELETE FROM trajectory_steps WHERE task_id = ?", (trajectory.task_id,))
        conn.executemany(
            "INSERT INTO trajectory_steps (task_id, seq, text) VALUES (?, ?, ?)",
            [(trajectory.task_id, i, text) for i, text in enumerate(trajectory.steps, 1)],
        )

    @staticmethod
    def _trajectory_state(conn: sqlite3.Connection, task_id: str) -> Tuple[Outcome, float]:
        row = conn.execute("SELECT outcome, confidence FROM trajectories WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            raise NotFoundError("trajectory", task_id)
        return Outcome(row[0]), row[1]

    def append_trajectory_step(self, task_id: str, text: str) -> int:
        """Append a step to an open trajectory. Returns the new step count."""
        with self._write_txn() as conn:
            outcome, _ = self._trajectory_state(conn, task_id)
            if outcome.is_terminal:
                raise InvalidStateError(f"trajectory {task_id!r} is sealed ({outcome.value})")
            seq = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM trajectory_steps WHERE task_id = ?", (task_id,)
            ).fetchone()[0]
            conn.execute(
                "INSERT INTO trajectory_steps (task_id, seq, text) VALUES (?, ?, ?)", (task_id, seq, text)
            )
        return seq

    def seal_trajectory(
        self,
        task_id: str,
        outcome: Outcome,
        update: Callable[[float, bool], float],
        now: Optional[datetime] = None,
    ) -> None:
        outcome = Outcome(outcome)
        if not outcome.is_terminal:
            raise ValidationError("a trajectory can only end with success or failure")
        now = now or utcnow()
        with self._write_txn() as conn:
            current, confidence = self._trajectory_state(conn, task_id)
            if current.is_terminal:
                raise InvalidStateError(f"trajectory {task_id!r} is already sealed ({current.value})")
            conn.execute(
                "UPDATE trajectories SET outcome = ?, confidence = ?, ended_at = ? WHERE task_id = ?",
                (outcome.value, update(confidence, outcome is Outcome.SUCCESS), format_dt(now), task_id),
            )

    def get_trajectory(self, task_id: str) -> TaskTrajectory:
        with self._read_txn() as conn:
            trajectory = self._load_trajectory(conn, task_id)
        if trajectory is None:
            raise NotFoundError("trajectory", task_id)
        return trajectory

    @staticmethod
    def _load_trajectory(conn: sqlite3.Connection, task_id: str) -> Optional[TaskTrajectory]:
        row = conn.execute(
            "SELECT task_id, outcome, confidence, started_at, ended_at FROM trajectories WHERE task_id = ?",
            (task_id,),
        ).fetchone()
        if row is None:
            return None
        steps = [
            r[0] for r in conn.execute("SELECT text FROM trajectory_steps WHERE task_id = ? ORDER BY seq", (task_id,))
        ]
        return TaskTrajectory(
            task_id=row[0],
            steps=steps,
            outcome=Outcome(row[1]),
            confidence=row[2],
            started_at=parse_dt(row[3]),
            ended_at=parse_dt(row[4]),
        )

    def list_trajectories(self, outcome: Optional[Outcome] = None) -> List[TaskTrajectory]:
        with self._read_txn() as conn:
            if outcome is None:
                rows = conn.execute("SELECT task_id FROM trajectories ORDER BY started_at, task_id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT task_id FROM trajectories WHERE outcome = ? ORDER BY started_at, task_id",
                    (Outcome(outcome).value,),
                ).fetchall()
            return [self.get_trajectory(r[0]) for r in rows]

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def recent_patterns(self, namespace: str, limit: int = 10) -> List[Pattern]:
        """Most recently used (or created) patterns, via the recent_patterns view."""
        with self._read_txn() as conn:
            ids = [
                r[0]
                for r in conn.execute(
                    """SELECT id FROM recent_patterns WHERE namespace = ?
                       ORDER BY touched_at DESC, id LIMIT ?""",
                    (namespace, limit),
                )
            ]
            found = self.get_patterns(ids)
        return [found[i] for i in ids if i in found]

    def usage_stats(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        columns = (
            "namespace",
            "pattern_count",
            "total_usage",
            "avg_confidence",
            "min_confidence",
            "max_confidence",
            "pending_embeddings",
            "successes",
            "failures",
        )
        sql = f"SELECT {', '.join(columns)} FROM pattern_usage_stats"
        params: List[Any] = []
        if namespace is not None:
            sql += " WHERE namespace = ?"
            params.append(namespace)
        with self._read_txn() as conn:
            rows = conn.execute(sql + " ORDER BY namespace", params).fetchall()
        return [dict(zip(columns, row)) for row in rows]

    def counts(self) -> Dict[str, int]:
        with self._read_txn() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("patterns", "embeddings", "links", "trajectories", "outcomes")
            }

    # ------------------------------------------------------------------
    # Snapshot support
    # ------------------------------------------------------------------

    def read_snapshot(self, namespace: Optional[str] = None) -> Dict[str, list]:
        """Every record of the four entity kinds, read from one snapshot."""
        with self._read_txn() as conn:
            if namespace is None:
                pattern_rows = conn.execute(f"SELECT {_PATTERN_COLUMNS} FROM patterns ORDER BY id").fetchall()
            else:
                pattern_rows = conn.execute(
                    f"SELECT {_PATTERN_COLUMNS} FROM patterns WHERE namespace = ? ORDER BY id", (namespace,)
                ).fetchall()
            patterns = [_row_to_pattern(r) for r in pattern_rows]
            ids = {p.id for p in patterns}

            embeddings = []
            for pid, blob, method, generated_at in conn.execute(
                "SELECT pattern_id, vector, method, generated_at FROM embeddings ORDER BY pattern_id"
            ):
                if pid in ids:
                    embeddings.append(Embedding(pid, _deserialize_f32(blob), method, parse_dt(generated_at)))

            links = [
                _row_to_link(r)
                for r in conn.execute(
                    """SELECT source_id, target_id, link_type, strength, created_at, updated_at
                       FROM links ORDER BY source_id, target_id, link_type"""
                )
                if r[0] in ids and r[1] in ids
            ]
            trajectories = self.list_trajectories()
        return {"patterns": patterns, "embeddings": embeddings, "links": links, "trajectories": trajectories}

    def write_snapshot(
        self,
        patterns: Sequence[Pattern],
        embeddings: Sequence[Embedding],
        links: Sequence[PatternLink],
        trajectories: Sequence[TaskTrajectory],
        clear_namespaces: Optional[Sequence[str]] = None,
        clear_trajectories: bool = False,
        clear_all: bool = False,
    ) -> None:
        """Write a whole snapshot in one transaction, preserving ids and timestamps.

        ``clear_all`` empties every namespace and trajectory first. Without
        ``clear_trajectories`` a sealed trajectory already in the store is left
        alone when the incoming record is identical, and is an
        InvalidStateError otherwise.
        """
        for pattern in patterns:
            self._check_pattern(pattern)
        for embedding in embeddings:
            self._check_vector(embedding.vector)
        for link in links:
            if link.source_id == link.target_id:
                raise ValidationError("snapshot contains a self-referencing link")
            if not 0.0 <= link.strength <= 1.0:
                raise ValidationError(f"snapshot link strength {link.strength} outside [0, 1]")
        for trajectory in trajectories:
            self._check_trajectory(trajectory)
        clear_trajectories = clear_trajectories or clear_all

        with self._write_txn() as conn:
            if clear_all:
                conn.execute("DELETE FROM patterns")
            for ns in clear_namespaces or ():
                conn.execute("DELETE FROM patterns WHERE namespace = ?", (ns,))
            if clear_trajectories:
                conn.execute("DELETE FROM trajectories")

            for pattern in patterns:
                conn.execute(
                    f"""INSERT INTO patterns ({_PATTERN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            namespace = excluded.namespace, title = excluded.title,
                            content = excluded.content, domain = excluded.domain,
                            tags = excluded.tags, confidence = excluded.confidence,
                            usage_count = excluded.usage_count, created_at = excluded.created_at,
                            last_used_at = excluded.last_used_at""",
                    self._pattern_params(pattern),
                )
            for embedding in embeddings:
                if not self._exists(conn, embedding.pattern_id):
                    raise ValidationError(f"snapshot embedding for unknown pattern {embedding.pattern_id!r}")
                self._write_embedding(conn, embedding)
            for link in links:
                for pid in (link.source_id, link.target_id):
                    if not self._exists(conn, pid):
                        raise ValidationError(f"snapshot link references unknown pattern {pid!r}")
                conn.execute(
                    """INSERT INTO links (source_id, target_id, link_type, strength, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(source_id, target_id, link_type) DO UPDATE SET
                           strength = excluded.strength, created_at = excluded.created_at,
                           updated_at = excluded.updated_at""",
                    (
                        link.source_id,
                        link.target_id,
                        link.link_type.value,
                        link.strength,
                        format_dt(link.created_at),
                        format_dt(link.updated_at),
                    ),
                )
            for trajectory in trajectories:
                if not clear_trajectories:
                    current = self._load_trajectory(conn, trajectory.task_id)
                    if current is not None and current.is_sealed:
                        if current.to_dict() == trajectory.to_dict():
                            continue
                        raise InvalidStateError(
                            f"trajectory {trajectory.task_id!r} is sealed ({current.outcome.value}); "
                            "import with replace=True to overwrite it"
                        )
                self._write_trajectory(conn, trajectory)

    # ------------------------------------------------------------------
    # Consolidation support
    # ------------------------------------------------------------------

    def consolidate(
        self,
        namespace: str,
        planner: Callable[[List[Pattern], Dict[str, List[float]]], ConsolidationPlan],
        dry_run: bool = False,
    ) -> Tuple[ConsolidationPlan, Dict[str, int]]:
        """Plan and apply a consolidation pass under an exclusive lock.

        The planner sees a consistent view of the namespace and returns a
        ConsolidationPlan; the plan is applied in the same transaction.
        """
        stats = {"pruned": 0, "merged": 0, "links_repointed": 0, "orphan_links": 0, "orphan_embeddings": 0}
        with self._write_txn("EXCLUSIVE") as conn:
            patterns = [
                _row_to_pattern(r)
                for r in conn.execute(
                    f"SELECT {_PATTERN_COLUMNS} FROM patterns WHERE namespace = ? ORDER BY id", (namespace,)
                )
            ]
            vectors = {
                pid: _deserialize_f32(blob)
                for pid, blob in conn.execute(
                    """SELECT e.pattern_id, e.vector FROM embeddings e
                       JOIN patterns p ON p.id = e.pattern_id
                       WHERE p.namespace = ? AND e.dimension = ?""",
                    (namespace, self.dimension),
                )
            }
            plan = planner(patterns, vectors)
            if dry_run:
                stats["pruned"] = len(plan.prune_ids)
                stats["merged"] = sum(len(g.absorbed_ids) for g in plan.merges)
                return plan, stats

            for pid in plan.prune_ids:
                stats["pruned"] += conn.execute("DELETE FROM patterns WHERE id = ?", (pid,)).rowcount

            for group in plan.merges:
                stats["links_repointed"] += self._merge_group(conn, group)
                stats["merged"] += len(group.absorbed_ids)

            stats["orphan_links"] = conn.execute(
                """DELETE FROM links
                   WHERE source_id NOT IN (SELECT id FROM patterns)
                      OR target_id NOT IN (SELECT id FROM patterns)"""
            ).rowcount
            stats["orphan_embeddings"] = conn.execute(
                "DELETE FROM embeddings WHERE pattern_id NOT IN (SELECT id FROM patterns)"
            ).rowcount
        return plan, stats

    @staticmethod
    def _merge_group(conn: sqlite3.Connection, group: MergeGroup) -> int:
        members = set(group.absorbed_ids) | {group.survivor_id}

        def remap(pid: str) -> str:
            return group.survivor_id if pid in members else pid

        conn.execute(
            "UPDATE patterns SET confidence = ?, usage_count = ?, last_used_at = ? WHERE id = ?",
            (group.confidence, group.usage_count, format_dt(group.last_used_at), group.survivor_id),
        )
        repointed = 0
        for absorbed in group.absorbed_ids:
            rows = conn.execute(
                """SELECT source_id, target_id, link_type, strength, created_at, updated_at
                   FROM links WHERE source_id = ? OR target_id = ?""",
                (absorbed, absorbed),
            ).fetchall()
            for source_id, target_id, link_type, strength, created_at, updated_at in rows:
                new_source, new_target = remap(source_id), remap(target_id)
                if new_source == new_target:
                    continue
                conn.execute(
                    """INSERT INTO links (source_id, target_id, link_type, strength, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(source_id, target_id, link_type) DO UPDATE SET
                           strength = MAX(links.strength, excluded.strength),
                           updated_at = MAX(links.updated_at, excluded.updated_at)""",
                    (new_source, new_target, link_type, strength, created_at, updated_at),
                )
                repointed += 1
            conn.execute("UPDATE outcomes SET pattern_id = ? WHERE pattern_id = ?", (group.survivor_id, absorbed))
            conn.execute("DELETE FROM patterns WHERE id = ?", (absorbed,))
        return repointed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def backup_to(self, dest) -> Path:
        """Copy the live database to ``dest`` with the SQLite online backup API."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        if self._closed:
            raise StorageError("pattern store is closed")
        with self._lock:
            try:
                dst = secure_connect(dest)
                try:
                    self._conn.backup(dst)
                finally:
                    dst.close()
            except sqlite3.Error as e:
                raise StorageError(f"backup to {dest} failed: {e}") from e
        return dest

    def close(self) -> None:
        """Close all connections. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        with self._readers_lock:
            readers, self._readers = self._readers, {}
        for _, conn in readers.values():
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.debug("Reader close failed: %s", e)
        with self._lock:
            try:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Database close failed: %s", e)

    def __enter__(self) -> "PatternStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
