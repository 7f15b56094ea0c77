"""Tests for advance / revert / terminate (engine/engine.py)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from work_pipeline.constants import EXIT_STATE
from work_pipeline.engine.engine import PipelineEngine
from work_pipeline.engine.errors import (
    BlockedError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from work_pipeline.engine.model import ContainerKind
from work_pipeline.engine.pipelines import PipelineRegistry


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / ".work_pipeline"
    d.mkdir()
    return d


@pytest.fixture
def engine(state_dir: Path) -> PipelineEngine:
    return PipelineEngine(state_dir)


def _version(engine: PipelineEngine, kind: str, entity_id: str) -> int:
    return engine.get_entity(kind, entity_id).version


class TestAdvance:
    def test_advance_moves_to_next_state(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Write parser")
        assert task.status == "NEW"
        assert task.version == 1

        result = engine.advance("task", task.id, 1)
        assert result.old_status == "NEW"
        assert result.new_status == "ACTIVE"
        assert result.pipeline_position == "2 of 3"
        assert result.entity.version == 2

        stored = engine.get_entity("task", task.id)
        assert stored.status == "ACTIVE"
        assert stored.version == 2

    def test_advance_to_closed_has_no_position(self, engine: PipelineEngine) -> None:
        project = engine.create_project("Platform")
        engine.advance(ContainerKind.PROJECT, project.id, 1)
        result = engine.advance(ContainerKind.PROJECT, project.id, 2)
        assert result.new_status == "CLOSED"
        assert result.pipeline_position is None

    def test_missing_entity(self, engine: PipelineEngine) -> None:
        with pytest.raises(NotFoundError, match="task not found: task-nope"):
            engine.advance("task", "task-nope", 1)

    def test_wrong_kind_is_not_found(self, engine: PipelineEngine) -> None:
        feature = engine.create_feature("Search")
        with pytest.raises(NotFoundError):
            engine.advance("task", feature.id, 1)

    def test_unknown_kind(self, engine: PipelineEngine) -> None:
        with pytest.raises(ValidationError, match="Unknown container kind"):
            engine.advance("epic", "x", 1)

    def test_version_conflict_changes_nothing(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Write parser")
        with pytest.raises(ConflictError) as excinfo:
            engine.advance("task", task.id, 7)
        assert excinfo.value.expected == 7
        assert excinfo.value.actual == 1
        assert excinfo.value.to_dict()["code"] == "CONFLICT"
        assert "Version conflict: expected 7, found 1" in str(excinfo.value)

        stored = engine.get_entity("task", task.id)
        assert stored.status == "NEW"
        assert stored.version == 1

    def test_blocked_advance_lists_blockers_and_reason(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Ship")
        engine.block("task", task.id, 1, "NO_OP", reason="waiting on vendor")
        with pytest.raises(BlockedError) as excinfo:
            engine.advance("task", task.id, 2)
        assert excinfo.value.blockers == ["NO_OP"]
        assert excinfo.value.reason == "waiting on vendor"
        assert "Reason: waiting on vendor" in excinfo.value.message
        assert _version(engine, "task", task.id) == 2

    def test_restricted_next_move(self, state_dir: Path) -> None:
        registry = PipelineRegistry.from_config({"transitions": {"task": {"ACTIVE": {"next": None}}}})
        engine = PipelineEngine(state_dir, registry)
        task = engine.create_task("Stuck")
        engine.advance("task", task.id, 1)
        with pytest.raises(InvalidOperationError, match="no next state from ACTIVE"):
            engine.advance("task", task.id, 2)


class TestRevert:
    def test_advance_then_revert_restores_status(self, engine: PipelineEngine) -> None:
        for kind, create in (
            ("project", engine.create_project),
            ("feature", engine.create_feature),
            ("task", engine.create_task),
        ):
            entity = create(f"{kind} item")
            engine.advance(kind, entity.id, 1)
            result = engine.revert(kind, entity.id, 2)
            assert result.new_status == entity.status
            assert result.entity.version == entity.version + 2

    def test_revert_at_first_state(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Fresh")
        with pytest.raises(InvalidOperationError, match=r"already at the first pipeline state \(NEW\)"):
            engine.revert("task", task.id, 1)

    def test_revert_into_side_state_and_resume(self, state_dir: Path) -> None:
        registry = PipelineRegistry.from_config({
            "transitions": {
                "task": {
                    "ACTIVE": {"prev": "ON_HOLD"},
                    "ON_HOLD": {"next": "ACTIVE", "prev": "NEW"},
                },
            },
        })
        engine = PipelineEngine(state_dir, registry)
        task = engine.create_task("Parked")
        engine.advance("task", task.id, 1)

        held = engine.revert("task", task.id, 2)
        assert held.new_status == "ON_HOLD"
        assert held.pipeline_position == "off-pipeline (ON_HOLD)"

        resumed = engine.advance("task", task.id, 3)
        assert resumed.new_status == "ACTIVE"
        assert resumed.entity.version == 4

    def test_revert_has_no_side_effects(self, engine: PipelineEngine) -> None:
        feature = engine.create_feature("Checkout")
        task = engine.create_task("Cart", feature_id=feature.id)
        engine.advance("task", task.id, 1)
        assert engine.get_entity("feature", feature.id).status == "ACTIVE"

        result = engine.revert("task", task.id, 2)
        assert result.feature_transition is None
        assert result.messages == []
        assert engine.get_entity("feature", feature.id).status == "ACTIVE"

    def test_version_conflict_changes_nothing(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Moving")
        engine.advance("task", task.id, 1)
        with pytest.raises(ConflictError) as excinfo:
            engine.revert("task", task.id, 9)
        assert excinfo.value.actual == 2
        stored = engine.get_entity("task", task.id)
        assert stored.status == "ACTIVE"
        assert stored.version == 2


class TestTerminate:
    def test_version_conflict_changes_nothing(self, engine: PipelineEngine) -> None:
        blocker = engine.create_task("Dependency")
        task = engine.create_task("Dependent")
        engine.block("task", task.id, 1, [blocker.id])
        with pytest.raises(ConflictError):
            engine.terminate("task", task.id, 9, reason="descoped")
        stored = engine.get_entity("task", task.id)
        assert stored.status == "NEW"
        assert stored.version == 2
        assert stored.blocker_ids() == [blocker.id]
        assert [e["type"] for e in engine.get_entity_events(task.id)] == ["entity.created", "entity.blocked"]

    def test_terminate_while_blocked_keeps_blockers(self, engine: PipelineEngine) -> None:
        blocker = engine.create_task("Dependency")
        task = engine.create_task("Dependent")
        engine.block("task", task.id, 1, [blocker.id])

        result = engine.terminate("task", task.id, 2, reason="descoped")
        assert result.new_status == EXIT_STATE
        assert result.reason == "descoped"
        assert result.pipeline_position is None
        stored = engine.get_entity("task", task.id)
        assert stored.blocker_ids() == [blocker.id]
        assert stored.version == 3

    def test_terminate_reports_but_keeps_dependents_blocked(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Upstream")
        feature = engine.create_feature("Downstream")
        engine.block("feature", feature.id, 1, [task.id])

        result = engine.terminate("task", task.id, 1)
        assert [d.id for d in result.affected_dependents] == [feature.id]
        assert result.unblocked == []
        assert any(m.startswith("WARNING:") for m in result.messages)

        stored = engine.get_entity("feature", feature.id)
        assert stored.blocker_ids() == [task.id]
        assert stored.version == 2

    def test_terminal_entities_reject_transitions(self, engine: PipelineEngine) -> None:
        closed = engine.create_task("Done")
        engine.advance("task", closed.id, 1)
        engine.advance("task", closed.id, 2)
        exited = engine.create_task("Dropped")
        engine.terminate("task", exited.id, 1)

        for entity_id, version, status in ((closed.id, 3, "CLOSED"), (exited.id, 2, EXIT_STATE)):
            with pytest.raises(InvalidOperationError, match=f"Cannot advance: task is in terminal state {status}"):
                engine.advance("task", entity_id, version)
            with pytest.raises(InvalidOperationError, match=f"Cannot revert: task is in terminal state {status}"):
                engine.revert("task", entity_id, version)
            with pytest.raises(InvalidOperationError, match=f"already in terminal state {status}"):
                engine.terminate("task", entity_id, version)


class TestEvents:
    def test_events_written_after_commit(self, engine: PipelineEngine, state_dir: Path) -> None:
        task = engine.create_task("Logged")
        engine.advance("task", task.id, 1)

        lines = (state_dir / "artifacts" / "pipeline_events.jsonl").read_text(encoding="utf-8").splitlines()
        events = [json.loads(line) for line in lines]
        assert [e["type"] for e in events] == ["entity.created", "entity.advanced"]
        assert events[1]["entity_id"] == task.id
        assert events[1]["status"] == "ACTIVE"
        assert events[1]["details"] == {"old_status": "NEW"}
        assert "ts" in events[1]

    def test_failed_operation_records_nothing(self, engine: PipelineEngine) -> None:
        task = engine.create_task("Logged")
        with pytest.raises(ConflictError):
            engine.advance("task", task.id, 5)
        assert [e["type"] for e in engine.get_recent_events()] == ["entity.created"]

    def test_entity_events_filter(self, engine: PipelineEngine) -> None:
        a = engine.create_task("A")
        b = engine.create_task("B")
        engine.advance("task", a.id, 1)
        events = engine.get_entity_events(a.id)
        assert [e["type"] for e in events] == ["entity.created", "entity.advanced"]
        assert all(e["entity_id"] == a.id for e in events)
        assert engine.get_entity_events(b.id, limit=1)[0]["type"] == "entity.created"

    def test_entity_events_found_behind_busy_neighbours(self, engine: PipelineEngine) -> None:
        quiet = engine.create_task("Quiet")
        engine.advance("task", quiet.id, 1)
        busy = engine.create_task("Busy")
        for version in range(1, 21):
            engine.set_related("task", busy.id, version, [])

        events = engine.get_entity_events(quiet.id, limit=2)
        assert [e["type"] for e in events] == ["entity.created", "entity.advanced"]
        assert [e["type"] for e in engine.get_entity_events(quiet.id, limit=1)] == ["entity.advanced"]

    def test_recent_events_limit(self, engine: PipelineEngine) -> None:
        assert engine.get_recent_events() == []
        for i in range(3):
            engine.create_project(f"P{i}")
        assert len(engine.get_recent_events(limit=2)) == 2
        assert engine.get_recent_events(limit=0) == []
