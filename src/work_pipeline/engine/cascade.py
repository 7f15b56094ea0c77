"""Keep a parent feature's status consistent with its tasks.

Evaluated once, right after a task's own status write and inside the same
store transaction:

* starting the first task of a feature moves the feature out of its first
  state;
* once every task of a feature is terminal, the feature follows: exited if
  all tasks were exited, otherwise closed (which in turn auto-unblocks the
  feature's dependents).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..constants import EXIT_STATE
from .blocking import auto_unblock, find_affected_dependents
from .model import ContainerKind, DependentRef, Entity
from .pipelines import PipelineRegistry
from .store import _StoreTx


@dataclass
class CascadeOutcome:
    feature_transition: Optional[dict[str, Any]] = None
    feature_unblocked: list[DependentRef] = field(default_factory=list)
    feature_affected_dependents: list[DependentRef] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


def _move_feature(
    tx: _StoreTx,
    feature: Entity,
    new_status: str,
    rule: str,
    task: Entity,
) -> dict[str, Any]:
    old_status = feature.status
    feature.transition(new_status)
    tx.mark_dirty()
    tx.record("feature.cascaded", feature, rule=rule, old_status=old_status, task_id=task.id)
    logger.info("Feature {} cascaded {} -> {} ({}, task {})", feature.id, old_status, new_status, rule, task.id)
    return {
        "feature_id": feature.id,
        "old_status": old_status,
        "new_status": new_status,
        "rule": rule,
        "version": feature.version,
    }


def _auto_advance_on_start(
    tx: _StoreTx,
    registry: PipelineRegistry,
    task: Entity,
    feature: Entity,
    old_status: str,
    new_status: str,
    outcome: CascadeOutcome,
) -> None:
    task_states = registry.get(ContainerKind.TASK).states
    if (old_status, new_status) != (task_states[0], task_states[1]):
        return
    feature_states = registry.get(ContainerKind.FEATURE).states
    if feature.status != feature_states[0]:
        return
    target = feature_states[1]
    # The feature's own blockers do not hold back this move.
    if registry.next_state(ContainerKind.FEATURE, feature.status) != target:
        return
    outcome.feature_transition = _move_feature(tx, feature, target, "auto_advance", task)
    outcome.messages.append(f"Feature auto-advanced to {target} because task started.")


def _all_tasks_terminal(
    tx: _StoreTx,
    registry: PipelineRegistry,
    task: Entity,
    feature: Entity,
    outcome: CascadeOutcome,
) -> None:
    if registry.is_terminal(ContainerKind.FEATURE, feature.status):
        return
    siblings = tx.tasks_of_feature(feature.id)
    if not siblings:
        return
    if not all(registry.is_terminal(ContainerKind.TASK, t.status) for t in siblings):
        return

    if all(t.status == EXIT_STATE for t in siblings):
        outcome.feature_transition = _move_feature(tx, feature, EXIT_STATE, "all_exited", task)
        outcome.messages.append(f"Feature set to {EXIT_STATE} because all tasks were terminated.")
        outcome.feature_affected_dependents = find_affected_dependents(tx, feature.id)
        if outcome.feature_affected_dependents:
            ids = ", ".join(d.id for d in outcome.feature_affected_dependents)
            outcome.messages.append(
                f"WARNING: {len(outcome.feature_affected_dependents)} dependent(s) remain blocked "
                f"by feature {feature.id}: {ids}"
            )
        return

    closed = registry.closed_state(ContainerKind.FEATURE)
    outcome.feature_transition = _move_feature(tx, feature, closed, "all_terminal", task)
    outcome.messages.append("Feature auto-closed because all tasks are in terminal states.")
    outcome.feature_unblocked = auto_unblock(tx, feature.id)
    if outcome.feature_unblocked:
        outcome.messages.append(f"Auto-unblocked {len(outcome.feature_unblocked)} dependent(s) of the feature.")


def apply_feature_rules(
    tx: _StoreTx,
    registry: PipelineRegistry,
    task: Entity,
    old_status: str,
    new_status: str,
    *,
    terminating: bool = False,
) -> CascadeOutcome:
    """Run the parent-feature rules for a task that just changed status.

    A task without a parent, or whose parent no longer exists, is a no-op.
    """
    outcome = CascadeOutcome()
    if task.kind is not ContainerKind.TASK or not task.feature_id:
        return outcome
    feature = tx.get(task.feature_id, ContainerKind.FEATURE)
    if feature is None:
        logger.debug("Task {} references missing feature {}; no cascade", task.id, task.feature_id)
        return outcome

    if not terminating:
        _auto_advance_on_start(tx, registry, task, feature, old_status, new_status, outcome)
    _all_tasks_terminal(tx, registry, task, feature, outcome)
    return outcome
