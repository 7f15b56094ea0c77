"""Structured failures raised by the pipeline engine.

Every error carries a stable ``code`` so transports can map it without
parsing messages.  All of them are raised before any write and abort the
surrounding store transaction.
"""

from __future__ import annotations

from typing import Any, Optional


class PipelineError(ValueError):
    """Base class for engine failures."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class NotFoundError(PipelineError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ConflictError(PipelineError):
    code = "CONFLICT"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Version conflict: expected {expected}, found {actual}")
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["expected"] = self.expected
        data["actual"] = self.actual
        return data


class InvalidOperationError(PipelineError):
    code = "INVALID_OPERATION"


class BlockedError(PipelineError):
    code = "BLOCKED"

    def __init__(self, kind: str, blockers: list[str], reason: Optional[str] = None) -> None:
        message = f"Cannot advance: {kind} is blocked by {', '.join(blockers)}"
        if reason:
            message += f". Reason: {reason}"
        super().__init__(message)
        self.blockers = list(blockers)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["blockers"] = list(self.blockers)
        data["reason"] = self.reason
        return data


class ValidationError(PipelineError):
    code = "VALIDATION_ERROR"


class ConfigError(ValueError):
    """Invalid pipeline configuration."""
