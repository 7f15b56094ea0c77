"""Provide the public `work_pipeline` package exports."""

from __future__ import annotations

from .engine import PipelineEngine, PipelineRegistry, open_engine

__all__ = ["PipelineEngine", "PipelineRegistry", "open_engine"]
