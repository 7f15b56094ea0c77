"""HTTP transport for the pipeline engine."""

from .api import create_app

__all__ = ["create_app"]
