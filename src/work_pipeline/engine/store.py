"""File-based entity store with a single-lock transaction boundary.

Projects, features and tasks live in one YAML document (``entities.yaml``)
inside the state directory, next to the pipeline snapshot that was in force
when the first entity was written.  All reads and writes go through
:meth:`EntityStore.transaction`, which holds an exclusive file lock for the
whole read-validate-write-cascade sequence and persists with
write-tmp-then-rename.  If the body raises, nothing is written.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from ..constants import STORE_FILE, STORE_LOCK_FILE
from ..io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from .model import ContainerKind, Entity

STORE_FORMAT_VERSION = 1


class StoreCorruptedError(RuntimeError):
    """The store file exists but cannot be parsed."""


# ---------------------------------------------------------------------------
# Low-level I/O
# ---------------------------------------------------------------------------

def _load_raw(path: Path) -> dict[str, Any]:
    data, err = _load_data_with_error(path, {})
    if err:
        raise StoreCorruptedError(f"Refusing to use store {path}: {err}")
    return data


def _decode(data: dict[str, Any]) -> dict[ContainerKind, list[Entity]]:
    out: dict[ContainerKind, list[Entity]] = {}
    for kind in ContainerKind:
        rows = data.get(kind.plural)
        rows = rows if isinstance(rows, list) else []
        out[kind] = [Entity.from_dict(row, kind) for row in rows if isinstance(row, dict)]
    return out


# ---------------------------------------------------------------------------
# EntityStore
# ---------------------------------------------------------------------------

class EntityStore:
    """Thread- and process-safe, file-backed store for :class:`Entity` rows.

    Parameters
    ----------
    state_dir:
        Directory holding ``entities.yaml`` and its lock file.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / STORE_FILE
        self._lock_path = state_dir / STORE_LOCK_FILE

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> tuple[dict[ContainerKind, list[Entity]], Optional[dict[str, Any]]]:
        raw = _load_raw(self._store_path)
        pipelines = raw.get("pipelines")
        return _decode(raw), pipelines if isinstance(pipelines, dict) else None

    def _save(self, tx: "_StoreTx") -> None:
        payload: dict[str, Any] = {"version": STORE_FORMAT_VERSION}
        if tx.locked_pipelines is not None:
            payload["pipelines"] = tx.locked_pipelines
        for kind in ContainerKind:
            payload[kind.plural] = [e.to_dict() for e in tx.list_all(kind)]
        _atomic_write_yaml(self._store_path, payload)

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["_StoreTx"]:
        """Acquire the lock, load rows, yield a transaction, and save on clean exit.

        Usage::

            with store.transaction() as tx:
                task = tx.get("task-abc123")
                task.transition("ACTIVE")
                tx.mark_dirty()
                # saved on exit; discarded if the block raises
        """
        with FileLock(self._lock_path):
            rows, pipelines = self._load()
            tx = _StoreTx(rows, pipelines)
            yield tx
            if tx.dirty:
                self._save(tx)

    def read_snapshot(self, kind: Optional[ContainerKind] = None) -> list[Entity]:
        """Return a read-only snapshot (no lock held after return)."""
        with FileLock(self._lock_path):
            rows, _ = self._load()
        if kind is not None:
            return list(rows[kind])
        return [e for k in ContainerKind for e in rows[k]]

    def get_one(self, entity_id: str) -> Optional[Entity]:
        for entity in self.read_snapshot():
            if entity.id == entity_id:
                return entity
        return None

    def locked_pipelines(self) -> Optional[dict[str, Any]]:
        with FileLock(self._lock_path):
            _, pipelines = self._load()
        return pipelines


class _StoreTx:
    """In-memory transaction over every entity in the store.

    Mutations happen on the loaded objects; callers flag them with
    :meth:`mark_dirty` and the owning ``transaction`` flushes on exit.
    Events recorded through :meth:`record` are handed back to the engine
    only once the write has committed.
    """

    def __init__(
        self,
        rows: dict[ContainerKind, list[Entity]],
        locked_pipelines: Optional[dict[str, Any]] = None,
    ) -> None:
        self._rows = rows
        self.locked_pipelines = locked_pipelines
        self.dirty = False
        self.events: list[dict[str, Any]] = []
        self._index: dict[str, Entity] = {e.id: e for k in ContainerKind for e in rows[k]}

    # -- lookups ------------------------------------------------------------

    def get(self, entity_id: str, kind: Optional[ContainerKind] = None) -> Optional[Entity]:
        entity = self._index.get(entity_id)
        if entity is None or (kind is not None and entity.kind != kind):
            return None
        return entity

    def list_all(self, kind: Optional[ContainerKind] = None) -> list[Entity]:
        if kind is not None:
            return list(self._rows[kind])
        return [e for k in ContainerKind for e in self._rows[k]]

    def find(
        self,
        kind: ContainerKind,
        *,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        feature_id: Optional[str] = None,
        blocked: Optional[bool] = None,
    ) -> list[Entity]:
        out: list[Entity] = []
        for e in self._rows[kind]:
            if status and e.status != status:
                continue
            if project_id is not None and e.project_id != project_id:
                continue
            if feature_id is not None and e.feature_id != feature_id:
                continue
            if blocked is not None and e.is_blocked != blocked:
                continue
            out.append(e)
        return out

    def tasks_of_feature(self, feature_id: str) -> list[Entity]:
        return self.find(ContainerKind.TASK, feature_id=feature_id)

    def dependents_of(self, entity_id: str) -> list[Entity]:
        """Every entity whose ``blocked_by`` references *entity_id*."""
        return [e for e in self.list_all() if e.is_blocked_by(entity_id)]

    @property
    def has_data(self) -> bool:
        return bool(self._index)

    # -- mutations ----------------------------------------------------------

    def add(self, entity: Entity) -> Entity:
        if entity.id in self._index:
            raise ValueError(f"Entity {entity.id} already exists")
        self._index[entity.id] = entity
        self._rows[entity.kind].append(entity)
        self.dirty = True
        return entity

    def mark_dirty(self) -> None:
        self.dirty = True

    def lock_pipelines(self, snapshot: dict[str, Any]) -> None:
        if self.locked_pipelines != snapshot:
            self.locked_pipelines = snapshot
            self.dirty = True

    def record(self, event_type: str, entity: Entity, **details: Any) -> None:
        payload: dict[str, Any] = {
            "type": event_type,
            "entity_id": entity.id,
            "kind": entity.kind.value,
            "status": entity.status,
            "version": entity.version,
        }
        if details:
            payload["details"] = details
        self.events.append(payload)
