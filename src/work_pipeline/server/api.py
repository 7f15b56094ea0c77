from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ..config import resolve_state_dir
from ..engine.engine import PipelineEngine, open_engine
from ..engine.errors import ConfigError
from ..engine.store import StoreCorruptedError
from .pipeline_api import create_pipeline_router

API_VERSION = "1.0.0"


def create_app(
    state_dir: Optional[Path] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        state_dir: Default state directory (falls back to ``$WORK_PIPELINE_HOME``
            or ``./.work_pipeline``).
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Work Pipeline",
        description="Status pipelines and dependency blocking for projects, features and tasks",
        version=API_VERSION,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_state_dir = resolve_state_dir(state_dir)

    def _get_engine(state_dir_param: Optional[str] = None) -> PipelineEngine:
        """Open the engine for the requested state directory, or the default one."""
        target = Path(state_dir_param) if state_dir_param else app.state.default_state_dir
        try:
            return open_engine(target)
        except (ConfigError, StoreCorruptedError) as e:
            logger.error("Cannot open pipeline engine in {}: {}", target, e)
            raise HTTPException(status_code=500, detail={"code": "CONFIG_ERROR", "message": str(e)})

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "work-pipeline",
            "version": API_VERSION,
            "status": "running",
            "state_dir": str(app.state.default_state_dir),
        }

    app.include_router(create_pipeline_router(_get_engine))
    return app
