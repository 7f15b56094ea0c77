"""Tests for the file-backed entity store (engine/store.py)."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from work_pipeline.engine.model import ContainerKind, Entity, EntityRef
from work_pipeline.engine.store import EntityStore, StoreCorruptedError


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".work_pipeline"
    d.mkdir()
    return d


@pytest.fixture
def store(state_dir: Path) -> EntityStore:
    return EntityStore(state_dir)


class TestEntityStore:
    def test_empty_read(self, store: EntityStore) -> None:
        assert store.read_snapshot() == []
        assert store.locked_pipelines() is None

    def test_add_and_read(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.add(Entity(kind=ContainerKind.PROJECT, id="p1", title="Proj"))
            tx.add(Entity(kind=ContainerKind.TASK, id="t1", title="First"))
            tx.add(Entity(kind=ContainerKind.TASK, id="t2", title="Second"))

        assert [e.id for e in store.read_snapshot()] == ["p1", "t1", "t2"]
        assert [e.id for e in store.read_snapshot(ContainerKind.TASK)] == ["t1", "t2"]
        assert store.get_one("p1").kind is ContainerKind.PROJECT
        assert store.get_one("nonexistent") is None

    def test_file_layout(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.add(Entity(kind=ContainerKind.FEATURE, id="f1", title="F", blocked_by=[EntityRef("t9")]))
            tx.lock_pipelines({"pipelines": {"task": ["NEW", "ACTIVE", "CLOSED"]}})

        data = yaml.safe_load(store.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["pipelines"] == {"pipelines": {"task": ["NEW", "ACTIVE", "CLOSED"]}}
        assert data["projects"] == []
        assert data["features"][0]["blocked_by"] == ["t9"]
        assert data["tasks"] == []

    def test_duplicate_add_raises(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.add(Entity(id="t1", title="First"))
            with pytest.raises(ValueError, match="already exists"):
                tx.add(Entity(id="t1", title="Duplicate"))

    def test_exception_discards_changes(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.add(Entity(id="t1", title="Keep", status="NEW"))

        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.get("t1").transition("ACTIVE")
                tx.add(Entity(id="t2", title="Lost"))
                raise RuntimeError("boom")

        snapshot = store.read_snapshot()
        assert [e.id for e in snapshot] == ["t1"]
        assert snapshot[0].status == "NEW"
        assert snapshot[0].version == 1

    def test_clean_transaction_does_not_write(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.list_all()
        assert not store.path.exists()

    def test_find_filters(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.add(Entity(id="t1", status="NEW", feature_id="f1", project_id="p1"))
            tx.add(Entity(id="t2", status="ACTIVE", feature_id="f1", project_id="p1"))
            tx.add(Entity(id="t3", status="NEW", feature_id="f2", blocked_by=[EntityRef("t1")]))

        with store.transaction() as tx:
            assert [e.id for e in tx.find(ContainerKind.TASK, status="NEW")] == ["t1", "t3"]
            assert [e.id for e in tx.find(ContainerKind.TASK, feature_id="f1")] == ["t1", "t2"]
            assert [e.id for e in tx.find(ContainerKind.TASK, project_id="p1", status="ACTIVE")] == ["t2"]
            assert [e.id for e in tx.find(ContainerKind.TASK, blocked=True)] == ["t3"]
            assert [e.id for e in tx.tasks_of_feature("f1")] == ["t1", "t2"]
            assert [e.id for e in tx.dependents_of("t1")] == ["t3"]
            assert tx.get("t1", ContainerKind.FEATURE) is None

    def test_corrupted_file_refused(self, store: EntityStore) -> None:
        store.path.write_text("projects: [unclosed\n", encoding="utf-8")
        with pytest.raises(StoreCorruptedError):
            store.read_snapshot()
        with pytest.raises(StoreCorruptedError):
            with store.transaction():
                pass

    def test_concurrent_transactions_serialize(self, store: EntityStore) -> None:
        with store.transaction() as tx:
            tx.add(Entity(id="t1", title="Counter"))

        def bump() -> None:
            for _ in range(5):
                with store.transaction() as tx:
                    tx.get("t1").touch()
                    tx.mark_dirty()

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_one("t1").version == 21
