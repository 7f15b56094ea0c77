"""Work-item model shared by projects, features and tasks.

One dataclass covers all three container kinds; the kind only changes which
pipeline governs ``status`` and which parent links are meaningful.  The
``blocked_by`` list holds tagged blockers: either a reference to another
entity or the external-hold sentinel persisted as ``NO_OP``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Union

from ..constants import DEFAULT_COMPLEXITY, DEFAULT_PRIORITY, NO_OP, PRIORITY_ORDER
from ..utils import _generate_id, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ContainerKind(str, Enum):
    """The three entity types that share the pipeline engine."""

    PROJECT = "project"
    FEATURE = "feature"
    TASK = "task"

    @property
    def id_prefix(self) -> str:
        return {"project": "proj", "feature": "feat", "task": "task"}[self.value]

    @property
    def plural(self) -> str:
        return f"{self.value}s"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def sort_key(self) -> int:
        return PRIORITY_ORDER[self.value]


# ---------------------------------------------------------------------------
# Blockers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityRef:
    """Blocked by another project, feature or task."""

    id: str

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class ExternalHold:
    """Blocked for a reason tracked outside the board (see ``blocked_reason``)."""

    def __str__(self) -> str:
        return NO_OP


EXTERNAL_HOLD = ExternalHold()

Blocker = Union[EntityRef, ExternalHold]


def parse_blocker(raw: str) -> Blocker:
    if raw == NO_OP:
        return EXTERNAL_HOLD
    return EntityRef(raw)


def blocker_to_str(blocker: Blocker) -> str:
    return str(blocker)


# ---------------------------------------------------------------------------
# Entity
# ---------------------------------------------------------------------------

@dataclass
class Entity:
    """A versioned work item (project, feature or task)."""

    kind: ContainerKind = ContainerKind.TASK
    id: str = ""
    title: str = ""
    summary: str = ""
    description: str = ""
    priority: Priority = Priority.MEDIUM
    complexity: int = DEFAULT_COMPLEXITY
    status: str = ""
    version: int = 1

    # Blocking graph
    blocked_by: list[Blocker] = field(default_factory=list)
    blocked_reason: Optional[str] = None
    related_to: list[str] = field(default_factory=list)

    # Hierarchy
    project_id: Optional[str] = None
    feature_id: Optional[str] = None

    created_at: str = field(default_factory=_now_iso)
    modified_at: str = field(default_factory=_now_iso)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = _generate_id(self.kind.id_prefix)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "summary": self.summary,
            "description": self.description,
            "priority": self.priority.value,
            "complexity": self.complexity,
            "status": self.status,
            "version": self.version,
            "blocked_by": self.blocker_ids(),
            "blocked_reason": self.blocked_reason,
            "related_to": list(self.related_to),
            "project_id": self.project_id,
            "feature_id": self.feature_id,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], kind: Optional[ContainerKind] = None) -> "Entity":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        resolved_kind = kind or ContainerKind(str(d.get("kind") or "task"))
        try:
            priority = Priority(str(d.get("priority") or DEFAULT_PRIORITY).upper())
        except ValueError:
            priority = Priority.MEDIUM
        blocked_by: list[Blocker] = []
        for raw in list(d.get("blocked_by") or []):
            blocker = parse_blocker(str(raw))
            if blocker not in blocked_by:
                blocked_by.append(blocker)
        return cls(
            kind=resolved_kind,
            id=str(d.get("id") or ""),
            title=str(d.get("title") or ""),
            summary=str(d.get("summary") or ""),
            description=str(d.get("description") or ""),
            priority=priority,
            complexity=int(d.get("complexity") or DEFAULT_COMPLEXITY),
            status=str(d.get("status") or ""),
            version=int(d.get("version") or 1),
            blocked_by=blocked_by,
            blocked_reason=d.get("blocked_reason"),
            related_to=[str(r) for r in list(d.get("related_to") or [])],
            project_id=d.get("project_id"),
            feature_id=d.get("feature_id"),
            created_at=str(d.get("created_at") or _now_iso()),
            modified_at=str(d.get("modified_at") or _now_iso()),
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Record a successful write: bump ``version`` and ``modified_at``."""
        self.version += 1
        self.modified_at = _now_iso()

    def transition(self, new_status: str) -> None:
        self.status = new_status
        self.touch()

    # ------------------------------------------------------------------
    # Blocker helpers
    # ------------------------------------------------------------------

    @property
    def is_blocked(self) -> bool:
        return bool(self.blocked_by)

    @property
    def has_external_hold(self) -> bool:
        return EXTERNAL_HOLD in self.blocked_by

    def blocker_ids(self) -> list[str]:
        return [blocker_to_str(b) for b in self.blocked_by]

    def is_blocked_by(self, entity_id: str) -> bool:
        return EntityRef(entity_id) in self.blocked_by

    def merge_blockers(self, blockers: Iterable[Blocker]) -> list[Blocker]:
        """Add *blockers* that are not yet present; return the ones added."""
        added: list[Blocker] = []
        for blocker in blockers:
            if blocker not in self.blocked_by:
                self.blocked_by.append(blocker)
                added.append(blocker)
        return added

    def drop_blockers(self, blockers: Iterable[Blocker]) -> list[Blocker]:
        """Remove *blockers* that are present; return the ones removed.

        ``blocked_reason`` only survives while the external hold remains.
        """
        targets = set(blockers)
        removed = [b for b in self.blocked_by if b in targets]
        self.blocked_by = [b for b in self.blocked_by if b not in targets]
        if not self.has_external_hold:
            self.blocked_reason = None
        return removed


@dataclass(frozen=True)
class DependentRef:
    """Lightweight pointer to an entity touched by a side effect."""

    id: str
    kind: ContainerKind

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind.value}
