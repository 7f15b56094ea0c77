"""Status pipeline and dependency-blocking engine.

This package provides the shared work-item model, the file-backed store, the
per-kind pipeline registry and the engine that moves projects, features and
tasks through their pipelines.
"""

from .engine import BlockResult, PipelineEngine, TransitionResult, UnblockResult, open_engine
from .errors import (
    BlockedError,
    ConfigError,
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    PipelineError,
    ValidationError,
)
from .model import ContainerKind, DependentRef, Entity, EntityRef, ExternalHold, Priority
from .pipelines import Pipeline, PipelineRegistry

__all__ = [
    "BlockResult",
    "BlockedError",
    "ConfigError",
    "ConflictError",
    "ContainerKind",
    "DependentRef",
    "Entity",
    "EntityRef",
    "ExternalHold",
    "InvalidOperationError",
    "NotFoundError",
    "Pipeline",
    "PipelineEngine",
    "PipelineError",
    "PipelineRegistry",
    "Priority",
    "TransitionResult",
    "UnblockResult",
    "ValidationError",
    "open_engine",
]
