"""Pipeline engine: status transitions, blocking and container CRUD.

This is the primary entry point for all work-item manipulation.  It wraps
:class:`EntityStore` with the business rules (pipeline lookups, version
guard, blocking gate, auto-unblock, parent-feature cascades) and records a
runtime event for every committed mutation.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from loguru import logger

from ..constants import ARTIFACTS_DIR, EVENTS_FILE, EXIT_STATE, NO_OP
from ..io_utils import _append_event, _read_jsonl_matching, _read_jsonl_tail
from .blocking import (
    BlockerInput,
    auto_unblock,
    find_affected_dependents,
    find_cycles,
    normalize_block_input,
    normalize_unblock_input,
    resolve_dependencies,
    resolve_dependents,
    validate_blocker_refs,
    would_close_cycle,
)
from .cascade import apply_feature_rules
from .errors import (
    BlockedError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from .model import ContainerKind, DependentRef, Entity, EntityRef, Priority, blocker_to_str
from .pipelines import PipelineRegistry
from .store import EntityStore, _StoreTx

KindLike = Union[ContainerKind, str]

DIRECTIONS = ("dependencies", "dependents", "both")

# Kinds that ``get_next`` can pick from.
NEXT_KINDS = (ContainerKind.TASK, ContainerKind.FEATURE)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

def _refs(items: list[DependentRef]) -> list[dict[str, Any]]:
    return [item.to_dict() for item in items]


@dataclass
class TransitionResult:
    entity: Entity
    old_status: str
    new_status: str
    pipeline_position: Optional[str] = None
    messages: list[str] = field(default_factory=list)
    unblocked: list[DependentRef] = field(default_factory=list)
    feature_transition: Optional[dict[str, Any]] = None
    feature_unblocked: list[DependentRef] = field(default_factory=list)
    affected_dependents: list[DependentRef] = field(default_factory=list)
    feature_affected_dependents: list[DependentRef] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "old_status": self.old_status,
            "new_status": self.new_status,
            "pipeline_position": self.pipeline_position,
            "messages": list(self.messages),
            "unblocked": _refs(self.unblocked),
            "feature_transition": self.feature_transition,
            "feature_unblocked": _refs(self.feature_unblocked),
            "affected_dependents": _refs(self.affected_dependents),
            "feature_affected_dependents": _refs(self.feature_affected_dependents),
            "reason": self.reason,
        }


@dataclass
class BlockResult:
    entity: Entity
    added_blockers: list[str]
    total_blockers: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "added_blockers": list(self.added_blockers),
            "total_blockers": list(self.total_blockers),
        }


@dataclass
class UnblockResult:
    entity: Entity
    removed_blockers: list[str]
    remaining_blockers: list[str]
    fully_unblocked: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity.to_dict(),
            "removed_blockers": list(self.removed_blockers),
            "remaining_blockers": list(self.remaining_blockers),
            "fully_unblocked": self.fully_unblocked,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _coerce_kind(kind: KindLike) -> ContainerKind:
    if isinstance(kind, ContainerKind):
        return kind
    try:
        return ContainerKind(str(kind).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown container kind: {kind}") from None


def _coerce_priority(value: Optional[str]) -> Priority:
    if value is None:
        return Priority.MEDIUM
    try:
        return Priority(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid priority: {value}. Use HIGH, MEDIUM or LOW") from None


def _coerce_complexity(value: Any) -> int:
    try:
        complexity = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid complexity: {value}") from None
    if not 1 <= complexity <= 10:
        raise ValidationError(f"Complexity must be between 1 and 10, got {complexity}")
    return complexity


def _work_order(entity: Entity) -> tuple[int, int, str]:
    return (entity.priority.sort_key, entity.complexity, entity.created_at)


def _check_version(entity: Entity, expected_version: int) -> None:
    if entity.version != expected_version:
        raise ConflictError(expected_version, entity.version)


def _require(tx: _StoreTx, kind: ContainerKind, entity_id: str) -> Entity:
    entity = tx.get(entity_id, kind)
    if entity is None:
        raise NotFoundError(kind.value, entity_id)
    return entity


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class PipelineEngine:
    """Drive projects, features and tasks through their pipelines.

    Parameters
    ----------
    state_dir:
        Directory holding the entity store and the event log.
    registry:
        Pipelines in force; defaults to ``NEW -> ACTIVE -> CLOSED`` for
        every kind.  Once the store holds data, the pipelines snapshot saved
        with it replaces *registry*.
    """

    def __init__(self, state_dir: Path, registry: Optional[PipelineRegistry] = None) -> None:
        self.store = EntityStore(state_dir)
        self.registry = _honour_lock(self.store, registry or PipelineRegistry.default())
        self._state_dir = state_dir
        self._events_path = state_dir / ARTIFACTS_DIR / EVENTS_FILE

    # ------------------------------------------------------------------
    # Transactions and events
    # ------------------------------------------------------------------

    @contextmanager
    def _write(self) -> Iterator[_StoreTx]:
        """Store transaction that snapshots the pipelines and flushes events on commit."""
        with self.store.transaction() as tx:
            yield tx
            if tx.dirty and tx.locked_pipelines is None:
                tx.lock_pipelines(self.registry.to_config())
        self._flush_events(tx.events)

    def _flush_events(self, events: list[dict[str, Any]]) -> None:
        for event in events:
            try:
                _append_event(self._events_path, event)
            except Exception:
                logger.exception("Failed to append pipeline event {} for {}", event.get("type"), event.get("entity_id"))

    def get_recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return _read_jsonl_tail(self._events_path, limit)

    def get_entity_events(self, entity_id: str, limit: int = 100) -> list[dict[str, Any]]:
        return _read_jsonl_matching(
            self._events_path,
            limit,
            lambda event: str(event.get("entity_id")) == entity_id,
        )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def _create(
        self,
        kind: ContainerKind,
        *,
        title: str,
        summary: str = "",
        description: str = "",
        priority: Optional[str] = None,
        complexity: Any = None,
        project_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        related_to: Optional[list[str]] = None,
        entity_id: Optional[str] = None,
    ) -> Entity:
        if not (title or "").strip():
            raise ValidationError(f"{kind.value} title is required")
        if entity_id is not None and (not entity_id.strip() or entity_id.strip() == NO_OP):
            raise ValidationError(f"Invalid {kind.value} id: {entity_id!r}")
        entity = Entity(
            kind=kind,
            id=(entity_id or "").strip(),
            title=title.strip(),
            summary=summary or "",
            description=description or "",
            priority=_coerce_priority(priority),
            status=self.registry.first_state(kind),
        )
        if complexity is not None:
            entity.complexity = _coerce_complexity(complexity)

        with self._write() as tx:
            if tx.get(entity.id) is not None:
                raise ValidationError(f"Entity id already exists: {entity.id}")
            if feature_id:
                feature = tx.get(feature_id, ContainerKind.FEATURE)
                if feature is None:
                    raise ValidationError(f"Parent feature not found: {feature_id}")
                if project_id and feature.project_id and project_id != feature.project_id:
                    raise ValidationError(
                        f"Feature {feature_id} belongs to project {feature.project_id}, not {project_id}"
                    )
                project_id = project_id or feature.project_id
                entity.feature_id = feature_id
            if project_id:
                if tx.get(project_id, ContainerKind.PROJECT) is None:
                    raise ValidationError(f"Parent project not found: {project_id}")
                entity.project_id = project_id
            entity.related_to = self._validated_related(tx, entity.id, related_to or [])
            tx.add(entity)
            tx.record("entity.created", entity, title=entity.title, priority=entity.priority.value)

        logger.info("Created {} {}: {}", kind.value, entity.id, entity.title)
        return entity

    def create_project(
        self,
        title: str,
        summary: str = "",
        description: str = "",
        priority: Optional[str] = None,
        related_to: Optional[list[str]] = None,
        entity_id: Optional[str] = None,
    ) -> Entity:
        return self._create(
            ContainerKind.PROJECT,
            title=title,
            summary=summary,
            description=description,
            priority=priority,
            related_to=related_to,
            entity_id=entity_id,
        )

    def create_feature(
        self,
        title: str,
        project_id: Optional[str] = None,
        summary: str = "",
        description: str = "",
        priority: Optional[str] = None,
        related_to: Optional[list[str]] = None,
        entity_id: Optional[str] = None,
    ) -> Entity:
        return self._create(
            ContainerKind.FEATURE,
            title=title,
            summary=summary,
            description=description,
            priority=priority,
            project_id=project_id,
            related_to=related_to,
            entity_id=entity_id,
        )

    def create_task(
        self,
        title: str,
        feature_id: Optional[str] = None,
        project_id: Optional[str] = None,
        summary: str = "",
        description: str = "",
        priority: Optional[str] = None,
        complexity: Any = None,
        related_to: Optional[list[str]] = None,
        entity_id: Optional[str] = None,
    ) -> Entity:
        """Create a task; its ``project_id`` is inherited from the feature when omitted."""
        return self._create(
            ContainerKind.TASK,
            title=title,
            summary=summary,
            description=description,
            priority=priority,
            complexity=complexity,
            project_id=project_id,
            feature_id=feature_id,
            related_to=related_to,
            entity_id=entity_id,
        )

    def get_entity(self, kind: KindLike, entity_id: str) -> Optional[Entity]:
        kind = _coerce_kind(kind)
        entity = self.store.get_one(entity_id)
        if entity is None or entity.kind != kind:
            return None
        return entity

    def list_entities(
        self,
        kind: KindLike,
        *,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        blocked: Optional[bool] = None,
    ) -> list[Entity]:
        kind = _coerce_kind(kind)
        with self.store.transaction() as tx:
            return tx.find(kind, status=status, project_id=project_id, feature_id=feature_id, blocked=blocked)

    def _validated_related(self, tx: _StoreTx, entity_id: str, related_to: list[str]) -> list[str]:
        out: list[str] = []
        for raw in related_to:
            related_id = str(raw).strip()
            if not related_id or related_id == entity_id:
                raise ValidationError(f"Invalid related entity id: {raw!r}")
            if tx.get(related_id) is None:
                raise ValidationError(f"Related entity not found: {related_id}")
            if related_id not in out:
                out.append(related_id)
        return out

    def set_related(
        self,
        kind: KindLike,
        entity_id: str,
        expected_version: int,
        related_to: list[str],
    ) -> Entity:
        """Replace the informational ``related_to`` list."""
        kind = _coerce_kind(kind)
        with self._write() as tx:
            entity = _require(tx, kind, entity_id)
            _check_version(entity, expected_version)
            entity.related_to = self._validated_related(tx, entity.id, related_to)
            entity.touch()
            tx.mark_dirty()
            tx.record("entity.related_set", entity, related_to=list(entity.related_to))
        logger.info("Set related entities of {} {}: {}", kind.value, entity_id, entity.related_to)
        return entity

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _reject_terminal(self, entity: Entity, verb: str) -> None:
        if self.registry.is_terminal(entity.kind, entity.status):
            raise InvalidOperationError(
                f"Cannot {verb}: {entity.kind.value} is in terminal state {entity.status}"
            )

    def _cascade(
        self,
        tx: _StoreTx,
        result: TransitionResult,
        *,
        terminating: bool,
    ) -> None:
        outcome = apply_feature_rules(
            tx,
            self.registry,
            result.entity,
            result.old_status,
            result.new_status,
            terminating=terminating,
        )
        result.feature_transition = outcome.feature_transition
        result.feature_unblocked = outcome.feature_unblocked
        result.feature_affected_dependents = outcome.feature_affected_dependents
        result.messages.extend(outcome.messages)

    def advance(self, kind: KindLike, entity_id: str, expected_version: int) -> TransitionResult:
        """Move an entity to the next status of its pipeline.

        Raises ``BlockedError`` while ``blocked_by`` is non-empty.  Reaching
        the closed state auto-unblocks dependents, and a task change runs the
        parent-feature cascade.
        """
        kind = _coerce_kind(kind)
        with self._write() as tx:
            entity = _require(tx, kind, entity_id)
            _check_version(entity, expected_version)
            self._reject_terminal(entity, "advance")
            if entity.blocked_by:
                raise BlockedError(kind.value, entity.blocker_ids(), entity.blocked_reason)
            target = self.registry.next_state(kind, entity.status)
            if target is None:
                raise InvalidOperationError(f"Cannot advance: no next state from {entity.status}")

            old_status = entity.status
            entity.transition(target)
            tx.mark_dirty()
            tx.record("entity.advanced", entity, old_status=old_status)
            result = TransitionResult(
                entity=entity,
                old_status=old_status,
                new_status=target,
                pipeline_position=self.registry.pipeline_position(kind, target),
            )

            if target == self.registry.closed_state(kind):
                result.unblocked = auto_unblock(tx, entity.id)
                if result.unblocked:
                    result.messages.append(f"Auto-unblocked {len(result.unblocked)} dependent(s).")
            self._cascade(tx, result, terminating=False)

        logger.info("Advanced {} {}: {} -> {}", kind.value, entity_id, old_status, target)
        return result

    def revert(self, kind: KindLike, entity_id: str, expected_version: int) -> TransitionResult:
        """Move an entity back to its previous status.  No side effects."""
        kind = _coerce_kind(kind)
        with self._write() as tx:
            entity = _require(tx, kind, entity_id)
            _check_version(entity, expected_version)
            self._reject_terminal(entity, "revert")
            target = self.registry.prev_state(kind, entity.status)
            if target is None:
                if entity.status == self.registry.first_state(kind):
                    raise InvalidOperationError(
                        f"Cannot revert: {kind.value} is already at the first pipeline state ({entity.status})."
                    )
                raise InvalidOperationError(f"Cannot revert: no previous state from {entity.status}")

            old_status = entity.status
            entity.transition(target)
            tx.mark_dirty()
            tx.record("entity.reverted", entity, old_status=old_status)
            result = TransitionResult(
                entity=entity,
                old_status=old_status,
                new_status=target,
                pipeline_position=self.registry.pipeline_position(kind, target),
            )

        logger.info("Reverted {} {}: {} -> {}", kind.value, entity_id, old_status, target)
        return result

    def terminate(
        self,
        kind: KindLike,
        entity_id: str,
        expected_version: int,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Move an entity to ``WILL_NOT_IMPLEMENT``.

        Allowed while blocked; ``blocked_by`` is kept.  Dependents are never
        unblocked, only reported in ``affected_dependents``.
        """
        kind = _coerce_kind(kind)
        reason = (reason or "").strip() or None
        with self._write() as tx:
            entity = _require(tx, kind, entity_id)
            _check_version(entity, expected_version)
            if self.registry.is_terminal(kind, entity.status):
                raise InvalidOperationError(
                    f"Cannot terminate: {kind.value} is already in terminal state {entity.status}"
                )

            old_status = entity.status
            entity.transition(EXIT_STATE)
            tx.mark_dirty()
            tx.record("entity.terminated", entity, old_status=old_status, reason=reason)
            result = TransitionResult(
                entity=entity,
                old_status=old_status,
                new_status=EXIT_STATE,
                reason=reason,
            )
            result.affected_dependents = find_affected_dependents(tx, entity.id)
            if result.affected_dependents:
                ids = ", ".join(d.id for d in result.affected_dependents)
                result.messages.append(
                    f"WARNING: {len(result.affected_dependents)} dependent(s) remain blocked by {entity.id}: {ids}"
                )
            self._cascade(tx, result, terminating=True)

        logger.info("Terminated {} {} (was {})", kind.value, entity_id, old_status)
        return result

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    def block(
        self,
        kind: KindLike,
        entity_id: str,
        expected_version: int,
        blockers: BlockerInput,
        reason: Optional[str] = None,
    ) -> BlockResult:
        """Add blockers (entity ids, or ``NO_OP`` with a reason).  Additive and idempotent."""
        kind = _coerce_kind(kind)
        items = normalize_block_input(blockers, reason)
        with self._write() as tx:
            entity = _require(tx, kind, entity_id)
            _check_version(entity, expected_version)
            if self.registry.is_terminal(kind, entity.status):
                raise InvalidOperationError(
                    f"Cannot block: {kind.value} is in terminal state {entity.status}"
                )
            validate_blocker_refs(tx, self.registry, entity.id, items)

            for item in items:
                if isinstance(item, EntityRef) and not entity.is_blocked_by(item.id):
                    if would_close_cycle(tx, entity.id, item.id):
                        logger.warning("Blocking {} on {} closes a blocking cycle", entity.id, item.id)
            added = entity.merge_blockers(items)
            if entity.has_external_hold and (reason or "").strip():
                entity.blocked_reason = reason.strip()
            entity.touch()
            tx.mark_dirty()
            tx.record(
                "entity.blocked",
                entity,
                added=[blocker_to_str(b) for b in added],
                blocked_by=entity.blocker_ids(),
            )

        logger.info("Blocked {} {} by {}", kind.value, entity_id, entity.blocker_ids())
        return BlockResult(
            entity=entity,
            added_blockers=[blocker_to_str(b) for b in added],
            total_blockers=entity.blocker_ids(),
        )

    def unblock(
        self,
        kind: KindLike,
        entity_id: str,
        expected_version: int,
        blockers: BlockerInput,
    ) -> UnblockResult:
        """Remove exactly the named blockers; unknown ones are ignored."""
        kind = _coerce_kind(kind)
        items = normalize_unblock_input(blockers)
        with self._write() as tx:
            entity = _require(tx, kind, entity_id)
            _check_version(entity, expected_version)
            removed = entity.drop_blockers(items)
            entity.touch()
            tx.mark_dirty()
            tx.record(
                "entity.unblocked",
                entity,
                removed=[blocker_to_str(b) for b in removed],
                blocked_by=entity.blocker_ids(),
            )

        logger.info("Unblocked {} {}: removed {}", kind.value, entity_id, [blocker_to_str(b) for b in removed])
        return UnblockResult(
            entity=entity,
            removed_blockers=[blocker_to_str(b) for b in removed],
            remaining_blockers=entity.blocker_ids(),
            fully_unblocked=not entity.blocked_by,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_dependencies(
        self,
        entity_id: str,
        kind: KindLike,
        direction: str = "both",
    ) -> dict[str, Any]:
        kind = _coerce_kind(kind)
        if direction not in DIRECTIONS:
            raise ValidationError(f"Invalid direction: {direction}. Use one of {', '.join(DIRECTIONS)}")
        with self.store.transaction() as tx:
            entity = _require(tx, kind, entity_id)
            out: dict[str, Any] = {"id": entity.id, "kind": kind.value, "direction": direction}
            if direction in ("dependencies", "both"):
                out["dependencies"] = resolve_dependencies(tx, self.registry, entity.id)
            if direction in ("dependents", "both"):
                out["dependents"] = resolve_dependents(tx, self.registry, entity.id)
        return out

    def get_workflow_state(self, kind: KindLike, entity_id: str) -> dict[str, Any]:
        kind = _coerce_kind(kind)
        with self.store.transaction() as tx:
            entity = _require(tx, kind, entity_id)
            related = [r for r in resolve_dependencies(tx, self.registry, entity.id) if r["relation"] == "related_to"]
        return {
            "id": entity.id,
            "kind": kind.value,
            "title": entity.title,
            "status": entity.status,
            "version": entity.version,
            "next_status": self.registry.next_state(kind, entity.status),
            "prev_status": self.registry.prev_state(kind, entity.status),
            "is_terminal": self.registry.is_terminal(kind, entity.status),
            "is_blocked": entity.is_blocked,
            "blocked_by": entity.blocker_ids(),
            "blocked_reason": entity.blocked_reason,
            "pipeline_position": self.registry.pipeline_position(kind, entity.status),
            "related": related,
        }

    def get_next(
        self,
        kind: KindLike,
        project_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Optional[Entity]:
        """Pick the next unblocked task or feature still in its first pipeline state.

        Candidates are ordered by priority, then complexity, then creation
        time.  ``feature_id`` only narrows tasks.
        """
        kind = _coerce_kind(kind)
        if kind not in NEXT_KINDS:
            raise ValidationError(f"Cannot pick the next {kind.value}; use task or feature")
        if feature_id and kind is not ContainerKind.TASK:
            raise ValidationError("feature_id only filters tasks")
        wanted = _coerce_priority(priority) if priority else None
        first = self.registry.first_state(kind)
        with self.store.transaction() as tx:
            candidates = tx.find(
                kind,
                status=first,
                project_id=project_id,
                feature_id=feature_id,
                blocked=False,
            )
        if wanted is not None:
            candidates = [e for e in candidates if e.priority == wanted]
        if not candidates:
            return None
        return sorted(candidates, key=_work_order)[0]

    def get_next_task(
        self,
        project_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Optional[Entity]:
        return self.get_next(ContainerKind.TASK, project_id=project_id, feature_id=feature_id, priority=priority)

    def get_next_feature(
        self,
        project_id: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Optional[Entity]:
        return self.get_next(ContainerKind.FEATURE, project_id=project_id, priority=priority)

    def get_blocked(
        self,
        kind: KindLike,
        project_id: Optional[str] = None,
        feature_id: Optional[str] = None,
    ) -> list[Entity]:
        kind = _coerce_kind(kind)
        with self.store.transaction() as tx:
            rows = tx.find(kind, project_id=project_id, feature_id=feature_id, blocked=True)
        return sorted(rows, key=_work_order)

    def describe_pipelines(self) -> dict[str, Any]:
        return self.registry.describe()

    def find_blocking_cycles(self) -> list[list[str]]:
        with self.store.transaction() as tx:
            return find_cycles(tx)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _honour_lock(store: EntityStore, registry: PipelineRegistry) -> PipelineRegistry:
    locked = store.locked_pipelines()
    if locked is None:
        return registry
    locked_registry = PipelineRegistry.from_config(locked)
    if locked_registry.to_config() != registry.to_config():
        logger.warning(
            "Pipelines for {} differ from the snapshot locked in the store; using the locked snapshot",
            store.path,
        )
    return locked_registry


def open_engine(state_dir: Optional[Path] = None) -> PipelineEngine:
    """Build an engine from ``config.yaml``.

    Once the store holds data, the pipeline snapshot saved alongside it wins
    over later edits of the config file.
    """
    from ..config import load_registry, resolve_state_dir

    resolved = resolve_state_dir(state_dir)
    return PipelineEngine(resolved, load_registry(resolved))
