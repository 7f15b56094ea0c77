"""Tests for the pipeline HTTP API."""

from __future__ import annotations

from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from work_pipeline.server.api import create_app


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    d = tmp_path / "board" / ".work_pipeline"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def app(state_dir: Path):
    return create_app(state_dir=state_dir, enable_cors=False)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _create(client: AsyncClient, kinds: str, **body) -> dict:
    resp = await client.post(f"/api/v1/{kinds}", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["entity"]


@pytest.mark.anyio
class TestRoot:
    async def test_root(self, client: AsyncClient, state_dir: Path) -> None:
        resp = await client.get("/")
        assert resp.status_code == 200
        assert resp.json()["name"] == "work-pipeline"
        assert resp.json()["state_dir"] == str(state_dir.resolve())

    async def test_pipelines(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/pipelines")
        assert resp.status_code == 200
        assert resp.json()["pipelines"]["task"]["states"] == ["NEW", "ACTIVE", "CLOSED"]


@pytest.mark.anyio
class TestCRUD:
    async def test_list_empty(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tasks")
        assert resp.status_code == 200
        assert resp.json() == {"entities": [], "total": 0}

    async def test_create_and_get(self, client: AsyncClient) -> None:
        project = await _create(client, "projects", title="Platform")
        feature = await _create(client, "features", title="Search", project_id=project["id"])
        task = await _create(client, "tasks", title="Index", feature_id=feature["id"], priority="HIGH", complexity=3)
        assert task["status"] == "NEW"
        assert task["version"] == 1
        assert task["project_id"] == project["id"]
        assert task["priority"] == "HIGH"

        resp = await client.get(f"/api/v1/tasks/{task['id']}")
        assert resp.status_code == 200
        assert resp.json()["entity"]["title"] == "Index"

    async def test_explicit_id(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Pinned", id="task-pinned")
        assert task["id"] == "task-pinned"

    async def test_get_nonexistent(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tasks/task-nope")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "NOT_FOUND"

    async def test_unknown_kind(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/epics")
        assert resp.status_code == 404

    async def test_validation_error(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/tasks", json={"title": "Orphan", "feature_id": "feat-missing"})
        assert resp.status_code == 422
        assert resp.json()["detail"] == {
            "code": "VALIDATION_ERROR",
            "message": "Parent feature not found: feat-missing",
        }

    async def test_list_filters(self, client: AsyncClient) -> None:
        a = await _create(client, "tasks", title="A")
        await _create(client, "tasks", title="B")
        await client.post(f"/api/v1/tasks/{a['id']}/advance", json={"version": 1})

        resp = await client.get("/api/v1/tasks", params={"status": "ACTIVE"})
        assert resp.json()["total"] == 1
        assert resp.json()["entities"][0]["id"] == a["id"]

    async def test_set_related(self, client: AsyncClient) -> None:
        a = await _create(client, "tasks", title="A")
        b = await _create(client, "features", title="B")
        resp = await client.post(f"/api/v1/tasks/{a['id']}/related", json={"version": 1, "related_to": [b["id"]]})
        assert resp.status_code == 200
        assert resp.json()["entity"]["related_to"] == [b["id"]]


@pytest.mark.anyio
class TestTransitions:
    async def test_advance_and_revert(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Move me")
        resp = await client.post(f"/api/v1/tasks/{task['id']}/advance", json={"version": 1})
        assert resp.status_code == 200
        data = resp.json()
        assert data["old_status"] == "NEW"
        assert data["new_status"] == "ACTIVE"
        assert data["pipeline_position"] == "2 of 3"
        assert data["entity"]["version"] == 2

        resp = await client.post(f"/api/v1/tasks/{task['id']}/revert", json={"version": 2})
        assert resp.status_code == 200
        assert resp.json()["new_status"] == "NEW"

    async def test_conflict(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Stale")
        resp = await client.post(f"/api/v1/tasks/{task['id']}/advance", json={"version": 4})
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["code"] == "CONFLICT"
        assert detail["expected"] == 4
        assert detail["actual"] == 1

    async def test_invalid_operation(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Fresh")
        resp = await client.post(f"/api/v1/tasks/{task['id']}/revert", json={"version": 1})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_OPERATION"

    async def test_terminate_with_reason(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Drop")
        resp = await client.post(f"/api/v1/tasks/{task['id']}/terminate", json={"version": 1, "reason": "descoped"})
        assert resp.status_code == 200
        assert resp.json()["new_status"] == "WILL_NOT_IMPLEMENT"
        assert resp.json()["reason"] == "descoped"

    async def test_missing_version_is_rejected(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="No version")
        resp = await client.post(f"/api/v1/tasks/{task['id']}/advance", json={})
        assert resp.status_code == 422


@pytest.mark.anyio
class TestBlocking:
    async def test_block_then_advance_is_locked(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Held")
        resp = await client.post(
            f"/api/v1/tasks/{task['id']}/block",
            json={"version": 1, "blockers": "NO_OP", "reason": "vendor"},
        )
        assert resp.status_code == 200
        assert resp.json()["added_blockers"] == ["NO_OP"]
        assert resp.json()["total_blockers"] == ["NO_OP"]
        assert resp.json()["entity"]["blocked_reason"] == "vendor"

        resp = await client.post(f"/api/v1/tasks/{task['id']}/advance", json={"version": 2})
        assert resp.status_code == 423
        detail = resp.json()["detail"]
        assert detail["code"] == "BLOCKED"
        assert detail["blockers"] == ["NO_OP"]
        assert detail["reason"] == "vendor"

    async def test_auto_unblock_and_dependencies(self, client: AsyncClient) -> None:
        blocker = await _create(client, "tasks", title="Blocker")
        waiting = await _create(client, "features", title="Waiting")
        resp = await client.post(
            f"/api/v1/features/{waiting['id']}/block",
            json={"version": 1, "blockers": [blocker["id"]]},
        )
        assert resp.status_code == 200

        resp = await client.get(f"/api/v1/tasks/{blocker['id']}/dependencies", params={"direction": "dependents"})
        assert resp.status_code == 200
        assert [d["id"] for d in resp.json()["dependents"]] == [waiting["id"]]

        resp = await client.get("/api/v1/blocked/features")
        assert resp.json()["total"] == 1

        await client.post(f"/api/v1/tasks/{blocker['id']}/advance", json={"version": 1})
        resp = await client.post(f"/api/v1/tasks/{blocker['id']}/advance", json={"version": 2})
        assert resp.json()["unblocked"] == [{"id": waiting["id"], "kind": "feature"}]

        resp = await client.get(f"/api/v1/features/{waiting['id']}/workflow")
        assert resp.json()["is_blocked"] is False

    async def test_unblock(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Held")
        await client.post(
            f"/api/v1/tasks/{task['id']}/block",
            json={"version": 1, "blockers": "NO_OP", "reason": "vendor"},
        )
        resp = await client.post(f"/api/v1/tasks/{task['id']}/unblock", json={"version": 2, "blockers": "NO_OP"})
        assert resp.status_code == 200
        assert resp.json()["fully_unblocked"] is True
        assert resp.json()["entity"]["blocked_reason"] is None

    async def test_bad_block_input(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Held")
        resp = await client.post(f"/api/v1/tasks/{task['id']}/block", json={"version": 1, "blockers": "NO_OP"})
        assert resp.status_code == 422
        assert "blocked_reason is required" in resp.json()["detail"]["message"]

    async def test_bad_direction(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="T")
        resp = await client.get(f"/api/v1/tasks/{task['id']}/dependencies", params={"direction": "sideways"})
        assert resp.status_code == 422

    async def test_cycles(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/cycles")
        assert resp.status_code == 200
        assert resp.json() == {"cycles": []}


@pytest.mark.anyio
class TestQueries:
    async def test_next_task(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tasks/next")
        assert resp.json() == {"task": None}

        await _create(client, "tasks", title="Later", priority="LOW")
        soon = await _create(client, "tasks", title="Soon", priority="HIGH")
        resp = await client.get("/api/v1/tasks/next")
        assert resp.json()["task"]["id"] == soon["id"]

    async def test_next_feature(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/features/next")
        assert resp.status_code == 200
        assert resp.json() == {"feature": None}

        await _create(client, "features", title="Later", priority="LOW")
        soon = await _create(client, "features", title="Soon", priority="HIGH")
        resp = await client.get("/api/v1/features/next")
        assert resp.json()["feature"]["id"] == soon["id"]

        resp = await client.get("/api/v1/features/next", params={"priority": "URGENT"})
        assert resp.status_code == 422

    async def test_events(self, client: AsyncClient) -> None:
        task = await _create(client, "tasks", title="Logged")
        await client.post(f"/api/v1/tasks/{task['id']}/advance", json={"version": 1})

        resp = await client.get(f"/api/v1/tasks/{task['id']}/events")
        assert resp.status_code == 200
        assert [e["type"] for e in resp.json()["events"]] == ["entity.created", "entity.advanced"]

        resp = await client.get("/api/v1/events", params={"limit": 1})
        assert len(resp.json()["events"]) == 1

    async def test_state_dir_override(self, client: AsyncClient, tmp_path: Path) -> None:
        other = tmp_path / "other"
        resp = await client.post("/api/v1/projects", params={"state_dir": str(other)}, json={"title": "Elsewhere"})
        assert resp.status_code == 201
        assert (await client.get("/api/v1/projects")).json()["total"] == 0
        assert (await client.get("/api/v1/projects", params={"state_dir": str(other)})).json()["total"] == 1

    async def test_broken_config_is_500(self, client: AsyncClient, state_dir: Path) -> None:
        (state_dir / "config.yaml").write_text("version: '9'\n", encoding="utf-8")
        resp = await client.get("/api/v1/tasks")
        assert resp.status_code == 500
        assert resp.json()["detail"]["code"] == "CONFIG_ERROR"
