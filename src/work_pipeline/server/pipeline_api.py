"""Pipeline API endpoints for projects, features and tasks.

This module provides a FastAPI router with container CRUD, status
transitions, blocking, dependency queries and the event log.  It is mounted
under ``/api/v1`` by the main ``create_app`` factory.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar, Union

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..engine.engine import PipelineEngine
from ..engine.errors import PipelineError
from ..engine.model import ContainerKind

T = TypeVar("T")

# Structured engine error code -> HTTP status.
ERROR_STATUS: dict[str, int] = {
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "BLOCKED": 423,
    "INVALID_OPERATION": 400,
    "VALIDATION_ERROR": 422,
}


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    title: str
    summary: str = ""
    description: str = ""
    priority: Optional[str] = None
    related_to: list[str] = Field(default_factory=list)
    id: Optional[str] = None


class CreateFeatureRequest(CreateProjectRequest):
    project_id: Optional[str] = None


class CreateTaskRequest(CreateProjectRequest):
    feature_id: Optional[str] = None
    project_id: Optional[str] = None
    complexity: Optional[int] = None


class VersionedRequest(BaseModel):
    version: int


class TerminateRequest(VersionedRequest):
    reason: Optional[str] = None


class BlockRequest(VersionedRequest):
    blockers: Union[list[str], str]
    reason: Optional[str] = None


class UnblockRequest(VersionedRequest):
    blockers: Union[list[str], str]


class RelatedRequest(VersionedRequest):
    related_to: list[str] = Field(default_factory=list)


class EntityResponse(BaseModel):
    """Standard wrapper for single-entity responses."""
    entity: dict[str, Any]


class EntityListResponse(BaseModel):
    entities: list[dict[str, Any]]
    total: int


class EventListResponse(BaseModel):
    events: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _kind_from_plural(kinds: str) -> ContainerKind:
    for kind in ContainerKind:
        if kinds in (kind.plural, kind.value):
            return kind
    raise HTTPException(
        status_code=404,
        detail={"code": "NOT_FOUND", "message": f"Unknown container kind: {kinds}"},
    )


def _guard(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call an engine operation, translating structured failures to HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except PipelineError as exc:
        status = ERROR_STATUS.get(exc.code, 400)
        logger.debug("Engine rejected {}: {} {}", getattr(fn, "__name__", fn), exc.code, exc.message)
        raise HTTPException(status_code=status, detail=exc.to_dict())


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_pipeline_router(get_engine: Callable[[Optional[str]], PipelineEngine]) -> APIRouter:
    """Create the pipeline API router.

    Parameters
    ----------
    get_engine:
        A callable ``(state_dir_param: str | None) -> PipelineEngine`` that
        resolves the engine for the current request's state directory.
    """
    router = APIRouter(prefix="/api/v1", tags=["pipeline"])

    # ------------------------------------------------------------------
    # Fixed routes (registered before the ``/{kinds}`` catch-alls)
    # ------------------------------------------------------------------

    @router.get("/pipelines")
    async def describe_pipelines(state_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        engine = get_engine(state_dir)
        return {"pipelines": engine.describe_pipelines()}

    @router.get("/events", response_model=EventListResponse)
    async def list_events(
        state_dir: Optional[str] = Query(None),
        entity_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> EventListResponse:
        engine = get_engine(state_dir)
        if entity_id:
            return EventListResponse(events=engine.get_entity_events(entity_id, limit=limit))
        return EventListResponse(events=engine.get_recent_events(limit=limit))

    @router.get("/tasks/next")
    async def next_task(
        state_dir: Optional[str] = Query(None),
        project_id: Optional[str] = Query(None),
        feature_id: Optional[str] = Query(None),
        priority: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        engine = get_engine(state_dir)
        task = _guard(engine.get_next_task, project_id=project_id, feature_id=feature_id, priority=priority)
        return {"task": task.to_dict() if task else None}

    @router.get("/features/next")
    async def next_feature(
        state_dir: Optional[str] = Query(None),
        project_id: Optional[str] = Query(None),
        priority: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        engine = get_engine(state_dir)
        feature = _guard(engine.get_next_feature, project_id=project_id, priority=priority)
        return {"feature": feature.to_dict() if feature else None}

    @router.get("/blocked/{kinds}", response_model=EntityListResponse)
    async def list_blocked(
        kinds: str,
        state_dir: Optional[str] = Query(None),
        project_id: Optional[str] = Query(None),
        feature_id: Optional[str] = Query(None),
    ) -> EntityListResponse:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        rows = engine.get_blocked(kind, project_id=project_id, feature_id=feature_id)
        data = [e.to_dict() for e in rows]
        return EntityListResponse(entities=data, total=len(data))

    @router.get("/cycles")
    async def blocking_cycles(state_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        engine = get_engine(state_dir)
        return {"cycles": engine.find_blocking_cycles()}

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @router.post("/projects", response_model=EntityResponse, status_code=201)
    async def create_project(
        body: CreateProjectRequest,
        state_dir: Optional[str] = Query(None),
    ) -> EntityResponse:
        engine = get_engine(state_dir)
        data = body.model_dump()
        data["entity_id"] = data.pop("id")
        entity = _guard(engine.create_project, **data)
        return EntityResponse(entity=entity.to_dict())

    @router.post("/features", response_model=EntityResponse, status_code=201)
    async def create_feature(
        body: CreateFeatureRequest,
        state_dir: Optional[str] = Query(None),
    ) -> EntityResponse:
        engine = get_engine(state_dir)
        data = body.model_dump()
        data["entity_id"] = data.pop("id")
        entity = _guard(engine.create_feature, **data)
        return EntityResponse(entity=entity.to_dict())

    @router.post("/tasks", response_model=EntityResponse, status_code=201)
    async def create_task(
        body: CreateTaskRequest,
        state_dir: Optional[str] = Query(None),
    ) -> EntityResponse:
        engine = get_engine(state_dir)
        data = body.model_dump()
        data["entity_id"] = data.pop("id")
        entity = _guard(engine.create_task, **data)
        return EntityResponse(entity=entity.to_dict())

    @router.get("/{kinds}", response_model=EntityListResponse)
    async def list_entities(
        kinds: str,
        state_dir: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        project_id: Optional[str] = Query(None),
        feature_id: Optional[str] = Query(None),
        blocked: Optional[bool] = Query(None),
    ) -> EntityListResponse:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        rows = engine.list_entities(
            kind,
            status=status,
            project_id=project_id,
            feature_id=feature_id,
            blocked=blocked,
        )
        data = [e.to_dict() for e in rows]
        return EntityListResponse(entities=data, total=len(data))

    @router.get("/{kinds}/{entity_id}", response_model=EntityResponse)
    async def get_entity(
        kinds: str,
        entity_id: str,
        state_dir: Optional[str] = Query(None),
    ) -> EntityResponse:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        entity = engine.get_entity(kind, entity_id)
        if entity is None:
            raise HTTPException(
                status_code=404,
                detail={"code": "NOT_FOUND", "message": f"{kind.value} not found: {entity_id}"},
            )
        return EntityResponse(entity=entity.to_dict())

    @router.post("/{kinds}/{entity_id}/related", response_model=EntityResponse)
    async def set_related(
        kinds: str,
        entity_id: str,
        body: RelatedRequest,
        state_dir: Optional[str] = Query(None),
    ) -> EntityResponse:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        entity = _guard(engine.set_related, kind, entity_id, body.version, body.related_to)
        return EntityResponse(entity=entity.to_dict())

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    @router.post("/{kinds}/{entity_id}/advance")
    async def advance(
        kinds: str,
        entity_id: str,
        body: VersionedRequest,
        state_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.advance, kind, entity_id, body.version).to_dict()

    @router.post("/{kinds}/{entity_id}/revert")
    async def revert(
        kinds: str,
        entity_id: str,
        body: VersionedRequest,
        state_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.revert, kind, entity_id, body.version).to_dict()

    @router.post("/{kinds}/{entity_id}/terminate")
    async def terminate(
        kinds: str,
        entity_id: str,
        body: TerminateRequest,
        state_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.terminate, kind, entity_id, body.version, reason=body.reason).to_dict()

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    @router.post("/{kinds}/{entity_id}/block")
    async def block(
        kinds: str,
        entity_id: str,
        body: BlockRequest,
        state_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.block, kind, entity_id, body.version, body.blockers, reason=body.reason).to_dict()

    @router.post("/{kinds}/{entity_id}/unblock")
    async def unblock(
        kinds: str,
        entity_id: str,
        body: UnblockRequest,
        state_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.unblock, kind, entity_id, body.version, body.blockers).to_dict()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @router.get("/{kinds}/{entity_id}/workflow")
    async def workflow_state(
        kinds: str,
        entity_id: str,
        state_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.get_workflow_state, kind, entity_id)

    @router.get("/{kinds}/{entity_id}/dependencies")
    async def dependencies(
        kinds: str,
        entity_id: str,
        state_dir: Optional[str] = Query(None),
        direction: str = Query("both"),
    ) -> dict[str, Any]:
        kind = _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return _guard(engine.get_dependencies, entity_id, kind, direction)

    @router.get("/{kinds}/{entity_id}/events", response_model=EventListResponse)
    async def entity_events(
        kinds: str,
        entity_id: str,
        state_dir: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> EventListResponse:
        _kind_from_plural(kinds)
        engine = get_engine(state_dir)
        return EventListResponse(events=engine.get_entity_events(entity_id, limit=limit))

    return router
