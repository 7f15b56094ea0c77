"""Blocking-graph helpers shared by the engine and the cascade rules.

Everything here operates on an open store transaction so that block/unblock,
auto-unblock and the cascades triggered by a transition all commit together.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Iterable, Optional, Union

from ..constants import NO_OP
from .errors import ValidationError
from .model import (
    EXTERNAL_HOLD,
    Blocker,
    ContainerKind,
    DependentRef,
    EntityRef,
    ExternalHold,
    parse_blocker,
)
from .pipelines import PipelineRegistry
from .store import _StoreTx

BlockerInput = Union[str, Blocker, Iterable[Union[str, Blocker]]]

# Kinds whose rows may be named as blockers.
BLOCKER_KINDS = (ContainerKind.TASK, ContainerKind.FEATURE)


# ---------------------------------------------------------------------------
# Input normalisation
# ---------------------------------------------------------------------------

def _coerce_item(item: Any) -> Blocker:
    if isinstance(item, (EntityRef, ExternalHold)):
        return item
    if not isinstance(item, str):
        raise ValidationError(f"Invalid blocker item: expected id string, got {type(item).__name__}")
    clean = item.strip()
    if not clean:
        raise ValidationError("Invalid blocker item: id must not be blank")
    return parse_blocker(clean)


def normalize_block_input(blockers: BlockerInput, reason: Optional[str]) -> list[Blocker]:
    """Validate the shape of a ``block`` request.

    Accepts the ``NO_OP`` sentinel on its own (a reason is then mandatory) or
    a non-empty collection of entity ids.
    """
    if isinstance(blockers, ExternalHold) or (isinstance(blockers, str) and blockers.strip() == NO_OP):
        if not (reason or "").strip():
            raise ValidationError("blocked_reason is required when blocking with NO_OP")
        return [EXTERNAL_HOLD]
    if isinstance(blockers, EntityRef):
        return [blockers]
    if isinstance(blockers, str) or blockers is None:
        raise ValidationError('blockers must be a list of entity ids or the string "NO_OP"')

    items = [_coerce_item(item) for item in blockers]
    if not items:
        raise ValidationError("blockers must not be empty. Use unblock to remove blockers.")
    if EXTERNAL_HOLD in items and any(item != EXTERNAL_HOLD for item in items):
        raise ValidationError('NO_OP cannot be mixed with entity ids; block with "NO_OP" on its own')
    if EXTERNAL_HOLD in items and not (reason or "").strip():
        raise ValidationError("blocked_reason is required when blocking with NO_OP")
    deduped: list[Blocker] = []
    for item in items:
        if item not in deduped:
            deduped.append(item)
    return deduped


def normalize_unblock_input(blockers: BlockerInput) -> list[Blocker]:
    if isinstance(blockers, (EntityRef, ExternalHold)):
        return [blockers]
    if isinstance(blockers, str):
        if blockers.strip() == NO_OP:
            return [EXTERNAL_HOLD]
        raise ValidationError('blockers must be a list of entity ids or the string "NO_OP"')
    if blockers is None:
        raise ValidationError('blockers must be a list of entity ids or the string "NO_OP"')
    items = [_coerce_item(item) for item in blockers]
    if not items:
        raise ValidationError("blockers must not be empty")
    return items


def validate_blocker_refs(
    tx: _StoreTx,
    registry: PipelineRegistry,
    target_id: str,
    blockers: list[Blocker],
) -> None:
    """Every referenced blocker must be an existing, non-terminal task or feature."""
    for blocker in blockers:
        if not isinstance(blocker, EntityRef):
            continue
        if blocker.id == target_id:
            raise ValidationError(f"An entity cannot block itself: {blocker.id}")
        entity = tx.get(blocker.id)
        if entity is None or entity.kind not in BLOCKER_KINDS:
            raise ValidationError(f"Blocker entity not found: {blocker.id}")
        if registry.is_terminal(entity.kind, entity.status):
            raise ValidationError(
                f"Cannot use {blocker.id} as blocker: it is in terminal state {entity.status}"
            )


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------

def auto_unblock(tx: _StoreTx, target_id: str) -> list[DependentRef]:
    """Strip *target_id* from every blocker list that references it.

    Each touched row gets a version bump.  Returns the rows whose blocker
    list became empty.
    """
    unblocked: list[DependentRef] = []
    ref = EntityRef(target_id)
    for entity in tx.dependents_of(target_id):
        entity.drop_blockers([ref])
        entity.touch()
        tx.mark_dirty()
        tx.record("entity.auto_unblocked", entity, cleared=target_id, remaining=entity.blocker_ids())
        if not entity.blocked_by:
            unblocked.append(DependentRef(entity.id, entity.kind))
    return unblocked


def find_affected_dependents(tx: _StoreTx, target_id: str) -> list[DependentRef]:
    """Read-only: every entity currently blocked by *target_id*."""
    return [DependentRef(e.id, e.kind) for e in tx.dependents_of(target_id)]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _describe(tx: _StoreTx, registry: PipelineRegistry, entity_id: str, relation: str) -> dict[str, Any]:
    other = tx.get(entity_id)
    if other is None:
        return {"id": entity_id, "kind": None, "relation": relation, "status": None, "is_terminal": None}
    return {
        "id": other.id,
        "kind": other.kind.value,
        "relation": relation,
        "title": other.title,
        "status": other.status,
        "is_terminal": registry.is_terminal(other.kind, other.status),
    }


def resolve_dependencies(tx: _StoreTx, registry: PipelineRegistry, entity_id: str) -> list[dict[str, Any]]:
    """Resolve the outgoing edges of *entity_id* (its blockers and relations)."""
    entity = tx.get(entity_id)
    if entity is None:
        return []
    out: list[dict[str, Any]] = []
    for blocker in entity.blocked_by:
        if isinstance(blocker, ExternalHold):
            out.append({
                "id": NO_OP,
                "kind": None,
                "relation": "blocked_by",
                "reason": entity.blocked_reason,
            })
        else:
            out.append(_describe(tx, registry, blocker.id, "blocked_by"))
    for related_id in entity.related_to:
        out.append(_describe(tx, registry, related_id, "related_to"))
    return out


def resolve_dependents(tx: _StoreTx, registry: PipelineRegistry, entity_id: str) -> list[dict[str, Any]]:
    """Every entity pointing at *entity_id* through ``blocked_by`` or ``related_to``."""
    out: list[dict[str, Any]] = []
    for other in tx.list_all():
        if other.is_blocked_by(entity_id):
            out.append(_describe(tx, registry, other.id, "blocks"))
        if entity_id in other.related_to:
            out.append(_describe(tx, registry, other.id, "related_to"))
    return out


def would_close_cycle(tx: _StoreTx, target_id: str, new_blocker_id: str) -> bool:
    """Return True if blocking *target_id* on *new_blocker_id* closes a cycle.

    We check whether *target_id* is reachable from *new_blocker_id* by
    following existing blocked-by edges.
    """
    visited: set[str] = set()
    queue: deque[str] = deque([new_blocker_id])
    while queue:
        current = queue.popleft()
        if current == target_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        node = tx.get(current)
        if node:
            for blocker in node.blocked_by:
                if isinstance(blocker, EntityRef):
                    queue.append(blocker.id)
    return False


def find_cycles(tx: _StoreTx) -> list[list[str]]:
    """List blocked-by cycles (each once, starting from its smallest id)."""
    graph: dict[str, list[str]] = {
        e.id: [b.id for b in e.blocked_by if isinstance(b, EntityRef)]
        for e in tx.list_all()
    }
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()

    def visit(node: str, path: list[str], on_path: set[str]) -> None:
        for nxt in graph.get(node, []):
            if nxt in on_path:
                cycle = path[path.index(nxt):]
                pivot = cycle.index(min(cycle))
                canonical = tuple(cycle[pivot:] + cycle[:pivot])
                if canonical not in seen:
                    seen.add(canonical)
                    cycles.append(list(canonical))
                continue
            if nxt not in graph:
                continue
            on_path.add(nxt)
            path.append(nxt)
            visit(nxt, path, on_path)
            path.pop()
            on_path.discard(nxt)

    for start in sorted(graph):
        visit(start, [start], {start})
    return cycles
