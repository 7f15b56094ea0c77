"""Load pipeline configuration from `<state_dir>/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import CONFIG_FILE, CONFIG_VERSION, HOME_ENV_VAR, STATE_DIR_NAME, SUPPORTED_CONFIG_VERSIONS
from .engine.errors import ConfigError
from .engine.pipelines import PipelineRegistry
from .io_utils import _atomic_write_yaml, _load_data_with_error

DEFAULT_CONFIG_HEADER = """\
# work-pipeline configuration.
#
# pipelines: ordered backbone per kind. Allowed states, in catalog order:
#   project: NEW, ACTIVE, CLOSED
#   feature: NEW, ACTIVE, READY_TO_PROD, CLOSED
#   task:    NEW, ACTIVE, TO_BE_TESTED, READY_TO_PROD, CLOSED
# Every pipeline starts with NEW, contains ACTIVE and ends with CLOSED.
# WILL_NOT_IMPLEMENT is reached through terminate and is never listed.
#
# transitions (optional): per-status next/prev overrides. A null target
# removes the move. ON_HOLD is only reachable through this table, e.g.
#
#   transitions:
#     task:
#       ACTIVE: {prev: ON_HOLD}
#       ON_HOLD: {next: ACTIVE, prev: NEW}
#
# Once the store holds data, the pipelines saved with it take precedence.

"""


def resolve_state_dir(state_dir: Optional[Path | str] = None) -> Path:
    """Return the state directory: explicit path, then ``$WORK_PIPELINE_HOME``, then ``./.work_pipeline``."""
    if state_dir:
        return Path(state_dir).expanduser().resolve()
    env = os.environ.get(HOME_ENV_VAR, "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.cwd() / STATE_DIR_NAME).resolve()


def load_config(state_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        state_dir: Directory holding ``config.yaml``.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = state_dir / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def build_registry(config: dict[str, Any]) -> PipelineRegistry:
    """Validate a config mapping and build the pipeline registry from it."""
    version = config.get("version")
    if version is not None and str(version) not in SUPPORTED_CONFIG_VERSIONS:
        raise ConfigError(
            f"Unsupported config version {version!r}; expected one of {', '.join(sorted(SUPPORTED_CONFIG_VERSIONS))}"
        )
    return PipelineRegistry.from_config(config)


def load_registry(state_dir: Path) -> PipelineRegistry:
    config, err = load_config(state_dir)
    if err:
        raise ConfigError(f"Cannot read {state_dir / CONFIG_FILE}: {err}")
    if not config:
        logger.debug("No pipeline config in {}; using defaults", state_dir)
    return build_registry(config)


def write_default_config(path: Path, *, overwrite: bool = False) -> Path:
    """Write the commented default ``config.yaml``; keep an existing file unless *overwrite*."""
    if path.exists() and not overwrite:
        return path
    data: dict[str, Any] = {"version": CONFIG_VERSION}
    data.update(PipelineRegistry.default().to_config())
    _atomic_write_yaml(path, data, header=DEFAULT_CONFIG_HEADER)
    logger.info("Wrote default pipeline config to {}", path)
    return path
