"""
Snapshot -- self-describing export/import of a pattern store.

Document layout:
    {
        "format": "patternbank-snapshot",
        "version": 1,
        "exported_at": "...",
        "dimension": 384,
        "namespace": null | "name",
        "patterns": [...], "embeddings": [...], "links": [...], "trajectories": [...]
    }

Import keeps ids, timestamps, confidences and vectors, so exporting a store
and importing it into an empty one reproduces it exactly.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from patternbank.crypto import decrypt, encrypt
from patternbank.errors import ValidationError
from patternbank.store import PatternStore
from patternbank.types import Embedding, Pattern, PatternLink, TaskTrajectory, format_dt, utcnow

logger = logging.getLogger("patternbank.snapshot")

SNAPSHOT_FORMAT = "patternbank-snapshot"
SNAPSHOT_VERSION = 1


def export_snapshot(store: PatternStore, namespace: Optional[str] = None) -> Dict[str, Any]:
    """Build a snapshot document. Links are kept only when both ends are exported."""
    records = store.read_snapshot(namespace)
    return {
        "format": SNAPSHOT_FORMAT,
        "version": SNAPSHOT_VERSION,
        "exported_at": format_dt(utcnow()),
        "dimension": store.dimension,
        "namespace": namespace,
        "patterns": [p.to_dict() for p in records["patterns"]],
        "embeddings": [e.to_dict() for e in records["embeddings"]],
        "links": [link.to_dict() for link in records["links"]],
        "trajectories": [t.to_dict() for t in records["trajectories"]],
    }


def _parse_records(doc: Dict[str, Any], key: str, parser):
    items = doc.get(key, [])
    if not isinstance(items, list):
        raise ValidationError(f"snapshot field {key!r} must be a list")
    try:
        return [parser(item) for item in items]
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"malformed {key} entry in snapshot: {e}") from e


def import_snapshot(store: PatternStore, doc: Dict[str, Any], replace: bool = False) -> Dict[str, Any]:
    """Write a snapshot document into the store in one transaction.

    With ``replace=True`` the snapshot's namespaces are emptied first (the
    whole store, trajectories included, for a full snapshot).
    """
    if not isinstance(doc, dict):
        raise ValidationError("snapshot must be a JSON object")
    if doc.get("format") != SNAPSHOT_FORMAT:
        raise ValidationError(f"not a patternbank snapshot (format={doc.get('format')!r})")
    version = doc.get("version")
    if not isinstance(version, int) or version > SNAPSHOT_VERSION or version < 1:
        raise ValidationError(f"unsupported snapshot version {version!r}")
    if doc.get("dimension") != store.dimension:
        raise ValidationError(f"snapshot dimension {doc.get('dimension')!r} does not match store {store.dimension}")

    patterns = _parse_records(doc, "patterns", Pattern.from_dict)
    embeddings = _parse_records(doc, "embeddings", Embedding.from_dict)
    links = _parse_records(doc, "links", PatternLink.from_dict)
    trajectories = _parse_records(doc, "trajectories", TaskTrajectory.from_dict)

    ids = [p.id for p in patterns]
    if len(ids) != len(set(ids)):
        raise ValidationError("snapshot contains duplicate pattern ids")

    namespace = doc.get("namespace")
    clear_namespaces = [namespace] if replace and namespace is not None else None

    store.write_snapshot(
        patterns,
        embeddings,
        links,
        trajectories,
        clear_namespaces=clear_namespaces,
        clear_all=bool(replace) and namespace is None,
    )
    result = {
        "patterns": len(patterns),
        "embeddings": len(embeddings),
        "links": len(links),
        "trajectories": len(trajectories),
        "replaced": bool(replace),
    }
    logger.info("Imported snapshot: %s", result)
    return result


def write_snapshot_file(doc: Dict[str, Any], filepath) -> Dict[str, Any]:
    """Write a snapshot as JSON with 0600 permissions (encrypted when enabled)."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    body = encrypt(json.dumps(doc, indent=2)).encode("utf-8")
    # Restricted permissions: snapshots contain plaintext knowledge
    fd = os.open(str(filepath), os.O_CREAT | os.O_WRONLY | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
    try:
        os.write(fd, body)
    finally:
        os.close(fd)
    return {
        "filepath": str(filepath),
        "pattern_count": len(doc.get("patterns", [])),
        "file_size_kb": filepath.stat().st_size / 1024,
        "exported_at": doc.get("exported_at"),
    }


def read_snapshot_file(filepath) -> Dict[str, Any]:
    filepath = Path(filepath)
    if filepath.is_symlink():
        raise ValidationError("snapshot file must not be a symlink")
    try:
        text = decrypt(filepath.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ValidationError(f"cannot decrypt snapshot {filepath}: {e}") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"snapshot {filepath} is not valid JSON: {e}") from e
