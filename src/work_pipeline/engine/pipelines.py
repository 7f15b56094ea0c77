"""Per-kind status pipelines and the pure lookups the engine relies on.

A pipeline is a linear backbone of statuses (first entry is where new items
start, last entry is the terminal "closed" status) plus an optional
transition table that overrides or restricts movement for individual
statuses.  ``WILL_NOT_IMPLEMENT`` is the exit state shared by every kind and
is never listed in a backbone.

Example transition table (task kind)::

    ACTIVE:  {prev: ON_HOLD}           # revert from ACTIVE parks the item
    ON_HOLD: {next: ACTIVE, prev: NEW} # resume, or return to the start

An explicit ``null`` target removes that move altogether.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from ..constants import EXIT_STATE
from .errors import ConfigError
from .model import ContainerKind

KindLike = Union[ContainerKind, str]

# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------

CATALOGS: dict[ContainerKind, tuple[str, ...]] = {
    ContainerKind.PROJECT: ("NEW", "ACTIVE", "CLOSED"),
    ContainerKind.FEATURE: ("NEW", "ACTIVE", "READY_TO_PROD", "CLOSED"),
    ContainerKind.TASK: ("NEW", "ACTIVE", "TO_BE_TESTED", "READY_TO_PROD", "CLOSED"),
}

# Statuses that may only be reached through a transition table entry.
SIDE_STATES: tuple[str, ...] = ("ON_HOLD",)

MINIMUM_STATES: tuple[str, ...] = ("NEW", "ACTIVE", "CLOSED")

DEFAULT_PIPELINES: dict[ContainerKind, tuple[str, ...]] = {
    kind: MINIMUM_STATES for kind in ContainerKind
}

_MOVES = ("next", "prev")


def _kind(kind: KindLike) -> ContainerKind:
    return kind if isinstance(kind, ContainerKind) else ContainerKind(str(kind))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_pipeline(kind: KindLike, states: list[str]) -> Optional[str]:
    """Return an error message if *states* is not a valid backbone for *kind*."""
    kind = _kind(kind)
    catalog = CATALOGS[kind]

    if len(states) < len(MINIMUM_STATES):
        return f"Pipeline must have at least {len(MINIMUM_STATES)} states: {', '.join(MINIMUM_STATES)}"
    if EXIT_STATE in states:
        return f"'{EXIT_STATE}' is the shared exit state and must not be listed in a pipeline"
    for state in states:
        if state not in catalog:
            return f"Unknown state '{state}' for {kind.value}. Allowed: {', '.join(catalog)}"
    for required in MINIMUM_STATES:
        if required not in states:
            return f"Pipeline must include '{required}'"
    if states[0] != catalog[0]:
        return f"Pipeline must start with '{catalog[0]}'"
    if states[-1] != catalog[-1]:
        return f"Pipeline must end with '{catalog[-1]}'"
    last_index = -1
    for state in states:
        idx = catalog.index(state)
        if idx <= last_index:
            return f"States must appear in catalog order. '{state}' is out of order."
        last_index = idx
    return None


def validate_transitions(
    kind: KindLike,
    states: list[str],
    table: Mapping[str, Mapping[str, Optional[str]]],
) -> Optional[str]:
    """Return an error message if the transition table is inconsistent."""
    kind = _kind(kind)
    reachable = set(states) | set(SIDE_STATES)
    closed = states[-1]
    for source, moves in table.items():
        if source in (closed, EXIT_STATE):
            return f"{kind.value} transition from terminal state '{source}' is not allowed"
        if source not in reachable:
            return f"Unknown {kind.value} state '{source}' in transitions"
        if not isinstance(moves, Mapping):
            return f"{kind.value} transitions for '{source}' must be a mapping of next/prev"
        for move, target in moves.items():
            if move not in _MOVES:
                return f"Unknown move '{move}' for {kind.value} state '{source}' (use next/prev)"
            if target is None:
                continue
            if target == EXIT_STATE:
                return f"'{EXIT_STATE}' is reached through terminate, not through transitions"
            if target not in reachable:
                return f"Unknown {kind.value} target state '{target}' for '{source}'"
            if move == "prev" and target == closed:
                return f"{kind.value} revert target cannot be the closed state '{closed}'"
    return None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Pipeline:
    """Backbone plus transition overrides for one container kind."""

    kind: ContainerKind
    states: tuple[str, ...]
    transitions: Mapping[str, Mapping[str, Optional[str]]] = field(default_factory=dict)

    @property
    def first(self) -> str:
        return self.states[0]

    @property
    def closed(self) -> str:
        return self.states[-1]

    @property
    def terminal(self) -> tuple[str, str]:
        return (self.closed, EXIT_STATE)

    @property
    def side_states(self) -> tuple[str, ...]:
        seen: list[str] = []
        for source, moves in self.transitions.items():
            for candidate in (source, *moves.values()):
                if candidate and candidate not in self.states and candidate not in seen:
                    seen.append(candidate)
        return tuple(seen)

    def statuses(self) -> list[str]:
        return [*self.states, *self.side_states, EXIT_STATE]

    def is_valid_status(self, status: str) -> bool:
        return status in self.statuses()

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal

    def _override(self, status: str, move: str) -> tuple[bool, Optional[str]]:
        moves = self.transitions.get(status)
        if moves is not None and move in moves:
            return True, moves[move]
        return False, None

    def next_state(self, status: str) -> Optional[str]:
        if self.is_terminal(status):
            return None
        found, target = self._override(status, "next")
        if found:
            return target
        if status not in self.states:
            return None
        return self.states[self.states.index(status) + 1]

    def prev_state(self, status: str) -> Optional[str]:
        if self.is_terminal(status):
            return None
        found, target = self._override(status, "prev")
        if found:
            return target
        if status not in self.states:
            return None
        idx = self.states.index(status)
        return self.states[idx - 1] if idx > 0 else None

    def position(self, status: str) -> Optional[str]:
        if self.is_terminal(status):
            return None
        if status in self.states:
            return f"{self.states.index(status) + 1} of {len(self.states)}"
        if status in self.side_states:
            return f"off-pipeline ({status})"
        return None

    def to_config(self) -> dict[str, Any]:
        data: dict[str, Any] = {"states": list(self.states)}
        if self.transitions:
            data["transitions"] = {k: dict(v) for k, v in self.transitions.items()}
        return data

    def describe(self) -> dict[str, Any]:
        statuses = [s for s in self.statuses() if not self.is_terminal(s)]
        return {
            "states": list(self.states),
            "side_states": list(self.side_states),
            "first": self.first,
            "closed": self.closed,
            "exit": EXIT_STATE,
            "next": {s: self.next_state(s) for s in statuses},
            "prev": {s: self.prev_state(s) for s in statuses},
        }


def build_pipeline(
    kind: KindLike,
    states: list[str],
    transitions: Optional[Mapping[str, Mapping[str, Optional[str]]]] = None,
) -> Pipeline:
    kind = _kind(kind)
    states = [str(s) for s in states]
    error = validate_pipeline(kind, states)
    if error:
        raise ConfigError(f"Invalid {kind.value} pipeline: {error}")
    table: dict[str, dict[str, Optional[str]]] = {}
    for source, moves in (transitions or {}).items():
        if not isinstance(moves, Mapping):
            raise ConfigError(f"Invalid {kind.value} transitions: '{source}' must map next/prev")
        table[str(source)] = {
            str(move): (str(target) if target is not None else None)
            for move, target in moves.items()
        }
    error = validate_transitions(kind, states, table)
    if error:
        raise ConfigError(f"Invalid {kind.value} transitions: {error}")
    return Pipeline(kind=kind, states=tuple(states), transitions=table)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class PipelineRegistry:
    """Read-only set of pipelines, one per container kind."""

    def __init__(self, pipelines: Mapping[ContainerKind, Pipeline]) -> None:
        missing = [k.value for k in ContainerKind if k not in pipelines]
        if missing:
            raise ConfigError(f"Missing pipelines for: {', '.join(missing)}")
        self._pipelines = dict(pipelines)

    @classmethod
    def default(cls) -> "PipelineRegistry":
        return cls({kind: build_pipeline(kind, list(states)) for kind, states in DEFAULT_PIPELINES.items()})

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PipelineRegistry":
        """Build from the ``pipelines`` / ``transitions`` blocks of a config mapping.

        Kinds without an explicit pipeline fall back to the default backbone.
        """
        raw_pipelines = config.get("pipelines") or {}
        raw_transitions = config.get("transitions") or {}
        if not isinstance(raw_pipelines, Mapping):
            raise ConfigError("'pipelines' must be a mapping of kind -> state list")
        if not isinstance(raw_transitions, Mapping):
            raise ConfigError("'transitions' must be a mapping of kind -> table")
        unknown = [k for k in (*raw_pipelines, *raw_transitions) if k not in {c.value for c in ContainerKind}]
        if unknown:
            raise ConfigError(f"Unknown container kind(s) in config: {', '.join(sorted(set(map(str, unknown))))}")

        pipelines: dict[ContainerKind, Pipeline] = {}
        for kind in ContainerKind:
            states = raw_pipelines.get(kind.value, list(DEFAULT_PIPELINES[kind]))
            if not isinstance(states, list):
                raise ConfigError(f"Config pipelines.{kind.value} must be a list")
            pipelines[kind] = build_pipeline(kind, states, raw_transitions.get(kind.value))
        return cls(pipelines)

    def to_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "pipelines": {k.value: list(p.states) for k, p in self._pipelines.items()},
        }
        transitions = {
            k.value: {s: dict(m) for s, m in p.transitions.items()}
            for k, p in self._pipelines.items()
            if p.transitions
        }
        if transitions:
            config["transitions"] = transitions
        return config

    def get(self, kind: KindLike) -> Pipeline:
        return self._pipelines[_kind(kind)]

    # -- pure lookups --------------------------------------------------------

    def next_state(self, kind: KindLike, current: str) -> Optional[str]:
        return self.get(kind).next_state(current)

    def prev_state(self, kind: KindLike, current: str) -> Optional[str]:
        return self.get(kind).prev_state(current)

    def is_terminal(self, kind: KindLike, status: str) -> bool:
        return self.get(kind).is_terminal(status)

    def pipeline_position(self, kind: KindLike, status: str) -> Optional[str]:
        return self.get(kind).position(status)

    def is_valid_status(self, kind: KindLike, status: str) -> bool:
        return self.get(kind).is_valid_status(status)

    def statuses(self, kind: KindLike) -> list[str]:
        return self.get(kind).statuses()

    def first_state(self, kind: KindLike) -> str:
        return self.get(kind).first

    def closed_state(self, kind: KindLike) -> str:
        return self.get(kind).closed

    def describe(self) -> dict[str, Any]:
        return {k.value: p.describe() for k, p in self._pipelines.items()}
