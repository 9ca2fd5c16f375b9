"""Tests for patternbank.snapshot -- export/import documents and files."""
import json
import os
import stat

import pytest

from patternbank.crypto import ENCRYPTED_PREFIX
from patternbank.engine import MemoryEngine
from patternbank.errors import InvalidStateError, ValidationError
from patternbank.snapshot import SNAPSHOT_FORMAT, SNAPSHOT_VERSION
from patternbank.types import Outcome


def _populate(engine):
    a = engine.store("global", "Cache reads", "Use a cache for repeated reads", domain="backend", tags=["perf"])
    b = engine.store("global", "Retry", "Retry transient failures with exponential backoff")
    c = engine.store("ops", "Rollback", "Keep the previous release ready for rollback")
    engine.report_outcome(a, True)
    engine.report_outcome(b, False)
    engine.link(a, b, "enhances", 0.4)
    engine.trajectory_start("task-1")
    engine.trajectory_append_step("task-1", "profile the endpoint")
    engine.trajectory_end("task-1", "success")
    engine.trajectory_start("task-2")
    return a, b, c


def _without_timestamp(doc):
    doc = dict(doc)
    doc.pop("exported_at")
    return doc


class TestExport:
    def test_document_shape(self, engine):
        _populate(engine)
        doc = engine.export()
        assert doc["format"] == SNAPSHOT_FORMAT
        assert doc["version"] == SNAPSHOT_VERSION
        assert doc["dimension"] == engine.config.dimension
        assert doc["namespace"] is None
        assert len(doc["patterns"]) == 3
        assert len(doc["embeddings"]) == 3
        assert len(doc["links"]) == 1
        assert {t["task_id"] for t in doc["trajectories"]} == {"task-1", "task-2"}
        json.dumps(doc)

    def test_namespace_export_drops_foreign_links(self, engine):
        a, _, c = _populate(engine)
        engine.link(a, c, "causes")
        doc = engine.export("ops")
        assert [p["id"] for p in doc["patterns"]] == [c]
        assert doc["links"] == []


class TestImport:
    def test_roundtrip_is_identity(self, engine, tmp_home):
        _populate(engine)
        doc = engine.export()
        with MemoryEngine(tmp_home / "fresh.db") as fresh:
            fresh.import_snapshot(doc)
            again = fresh.export()
        assert _without_timestamp(again) == _without_timestamp(doc)

    def test_imported_patterns_are_searchable(self, engine, tmp_home):
        a, _, _ = _populate(engine)
        doc = engine.export()
        with MemoryEngine(tmp_home / "fresh.db") as fresh:
            fresh.import_snapshot(doc)
            results = fresh.query("global", "performance optimization", k=1)
            assert results[0].pattern.id == a
            assert fresh.trajectory_get("task-1").steps == ["profile the endpoint"]

    def test_replace_clears_existing(self, engine, tmp_home):
        _populate(engine)
        doc = engine.export()
        with MemoryEngine(tmp_home / "other.db") as other:
            stale = other.store("global", "Stale", "This pattern should disappear")
            other.import_snapshot(doc, replace=True)
            assert stale not in {p.id for p in other.list("global")}
            assert len(other.list("global")) == 2

    def test_merge_keeps_existing(self, engine, tmp_home):
        _populate(engine)
        doc = engine.export()
        with MemoryEngine(tmp_home / "other.db") as other:
            kept = other.store("global", "Local", "A pattern only this store knows")
            other.import_snapshot(doc)
            assert kept in {p.id for p in other.list("global")}

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda d: d.update(format="something-else"),
            lambda d: d.update(version=99),
            lambda d: d.update(dimension=12),
            lambda d: d.update(patterns="nope"),
            lambda d: d["patterns"][0].pop("content"),
            lambda d: d["links"].append(dict(d["links"][0], source_id="pat-ghost")),
            lambda d: d["patterns"][0].update(tags="perf"),
            lambda d: d["patterns"][0].update(title=42),
            lambda d: d["trajectories"][0].update(confidence=7.5),
            lambda d: d["trajectories"][0].update(confidence=0.0),
            lambda d: d["trajectories"][0].update(steps="abc"),
            lambda d: d["trajectories"][0].update(steps=[1, 2]),
        ],
    )
    def test_invalid_documents_rejected_without_side_effects(self, engine, tmp_home, mutate):
        _populate(engine)
        doc = engine.export()
        mutate(doc)
        with MemoryEngine(tmp_home / "target.db") as target:
            with pytest.raises(ValidationError):
                target.import_snapshot(doc)
            assert target.records.counts()["patterns"] == 0
            assert target.records.list_trajectories() == []

    def test_null_title_becomes_empty(self, engine, tmp_home):
        a, _, _ = _populate(engine)
        doc = engine.export()
        next(p for p in doc["patterns"] if p["id"] == a)["title"] = None
        with MemoryEngine(tmp_home / "fresh.db") as fresh:
            fresh.import_snapshot(doc)
            assert fresh.get(a).title == ""

    def test_full_replace_clears_every_namespace(self, engine, tmp_home):
        _populate(engine)
        doc = engine.export()
        with MemoryEngine(tmp_home / "other.db") as other:
            scratch = other.store("scratch", "Scratch", "A namespace the snapshot does not mention")
            other.trajectory_start("local-task")
            other.import_snapshot(doc, replace=True)
            assert other.list("scratch") == []
            assert scratch not in {p.id for p in other.list("global")}
            assert {t.task_id for t in other.trajectories.list()} == {"task-1", "task-2"}

    def test_not_a_dict(self, engine):
        with pytest.raises(ValidationError):
            engine.import_snapshot(["not", "a", "snapshot"])


class TestFiles:
    def test_file_roundtrip_and_permissions(self, engine, tmp_home):
        _populate(engine)
        path = tmp_home / "exports" / "snap.json"
        result = engine.export_to_file(path)
        assert result["pattern_count"] == 3
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert json.loads(path.read_text())["format"] == SNAPSHOT_FORMAT

        with MemoryEngine(tmp_home / "fresh.db") as fresh:
            imported = fresh.import_from_file(path)
            assert imported["patterns"] == 3
            assert _without_timestamp(fresh.export()) == _without_timestamp(engine.export())

    def test_encrypted_file(self, tmp_home_encrypted):
        with MemoryEngine(tmp_home_encrypted / "enc.db") as engine:
            pid = engine.store("global", "Secret", "Rotate credentials every quarter")
            path = tmp_home_encrypted / "snap.enc"
            engine.export_to_file(path)
            raw = path.read_text()
            assert raw.startswith(ENCRYPTED_PREFIX)
            assert "Rotate credentials" not in raw

        with MemoryEngine(tmp_home_encrypted / "fresh.db") as fresh:
            fresh.import_from_file(path)
            assert fresh.get(pid).content == "Rotate credentials every quarter"

    def test_garbage_file(self, engine, tmp_home):
        path = tmp_home / "garbage.json"
        path.write_text("{not json")
        with pytest.raises(ValidationError):
            engine.import_from_file(path)

    def test_symlink_rejected(self, engine, tmp_home):
        _populate(engine)
        real = tmp_home / "real.json"
        engine.export_to_file(real)
        link = tmp_home / "link.json"
        link.symlink_to(real)
        with pytest.raises(ValidationError):
            engine.import_from_file(link)


class TestSealedTrajectories:
    def _seal_task(self, engine):
        engine.trajectory_start("task-x")
        engine.trajectory_append_step("task-x", "only step")
        return engine.trajectory_end("task-x", "success")

    def test_merge_import_cannot_reopen_sealed(self, engine):
        sealed = self._seal_task(engine)
        doc = engine.export()
        entry = next(t for t in doc["trajectories"] if t["task_id"] == "task-x")
        entry.update(outcome="open", steps=[], confidence=0.5, ended_at=None)
        with pytest.raises(InvalidStateError):
            engine.import_snapshot(doc)
        after = engine.trajectory_get("task-x")
        assert after.to_dict() == sealed.to_dict()

    def test_merge_import_cannot_rewrite_sealed_steps(self, engine):
        self._seal_task(engine)
        doc = engine.export()
        entry = next(t for t in doc["trajectories"] if t["task_id"] == "task-x")
        entry["steps"] = ["rewritten"]
        with pytest.raises(InvalidStateError):
            engine.import_snapshot(doc)
        assert engine.trajectory_get("task-x").steps == ["only step"]

    def test_identical_reimport_is_accepted(self, engine):
        self._seal_task(engine)
        doc = engine.export()
        engine.import_snapshot(doc)
        assert _without_timestamp(engine.export()) == _without_timestamp(doc)

    def test_replace_may_overwrite_sealed(self, engine):
        self._seal_task(engine)
        doc = engine.export()
        entry = next(t for t in doc["trajectories"] if t["task_id"] == "task-x")
        entry.update(outcome="open", steps=[], confidence=0.5, ended_at=None)
        engine.import_snapshot(doc, replace=True)
        assert engine.trajectory_get("task-x").outcome is Outcome.OPEN

    def test_open_trajectory_is_upserted(self, engine):
        engine.trajectory_start("task-y")
        doc = engine.export()
        entry = next(t for t in doc["trajectories"] if t["task_id"] == "task-y")
        entry["steps"] = ["imported step"]
        engine.import_snapshot(doc)
        assert engine.trajectory_get("task-y").steps == ["imported step"]
