"""File helpers for the state directory: locking, YAML documents and the event log."""

from __future__ import annotations

import json
import os
from collections import deque
from pathlib import Path
from typing import IO, Any, Callable, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES
from .utils import _now_iso

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]


def _lock_handle(handle: IO[str]) -> None:
    if fcntl is not None:
        fcntl.flock(handle, fcntl.LOCK_EX)
    elif os.name == "nt":
        import msvcrt

        handle.seek(0)
        handle.truncate(WINDOWS_LOCK_BYTES)
        handle.flush()
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)


def _unlock_handle(handle: IO[str]) -> None:
    if fcntl is not None:
        fcntl.flock(handle, fcntl.LOCK_UN)
    elif os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)


class FileLock:
    """Exclusive advisory lock on a sidecar file.

    One instance guards one critical section; open a new one per
    transaction so concurrent threads never share a handle.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._handle: Optional[IO[str]] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+", encoding="utf-8")
        try:
            _lock_handle(handle)
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock_handle(handle)
        finally:
            handle.close()


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """Read a YAML mapping and return ``(data, error_message)``.

    A missing or empty file yields ``(default, None)``.  Unreadable or
    malformed content yields ``(default, message)`` so that callers can
    refuse to overwrite it.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected a mapping, got {type(data).__name__}"
    return data, None


def _atomic_write_yaml(path: Path, data: dict[str, Any], *, header: str = "") -> None:
    """Replace *path* with *data* dumped as YAML, preceded by an optional comment *header*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    body = yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(header + body)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    """Append one JSON line; ``ts`` is stamped when the event lacks one."""
    events_path.parent.mkdir(parents=True, exist_ok=True)
    record = {"ts": _now_iso(), **event}
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, sort_keys=False) + "\n")


def _read_jsonl_tail(path: Path, limit: int) -> list[dict[str, Any]]:
    """Return up to *limit* trailing JSON objects from a JSONL file."""
    return _read_jsonl_matching(path, limit)


def _read_jsonl_matching(
    path: Path,
    limit: int,
    predicate: Optional[Callable[[dict[str, Any]], bool]] = None,
) -> list[dict[str, Any]]:
    """Return up to *limit* trailing JSON objects of a JSONL file that satisfy *predicate*.

    The whole file is scanned so that older matches are found however many
    unrelated lines follow them.
    """
    if limit < 1 or not path.exists():
        return []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    events: deque[dict[str, Any]] = deque(maxlen=limit)
    for line in lines:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and (predicate is None or predicate(payload)):
            events.append(payload)
    return list(events)
