"""Load optional runner configuration from `.ralph/config.yaml` and the manager config file."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_SECONDS,
    DEFAULT_SELF_IMPROVEMENT_EVERY,
    LINEAR_API_URL,
    STATE_DIR_NAME,
    TIMEOUT_CLEANUP,
    TIMEOUT_COMMIT,
    TIMEOUT_GUARDRAIL,
    TIMEOUT_IMPLEMENTATION,
    TIMEOUT_PLANNING,
    TIMEOUT_SELF_IMPROVEMENT,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error
from .models import Unit
from .utils import _coerce_int

DEFAULT_UNIT_TIMEOUTS: dict[Unit, int] = {
    Unit.PLAN: TIMEOUT_PLANNING,
    Unit.IMPLEMENT: TIMEOUT_IMPLEMENTATION,
    Unit.GUARDRAIL: TIMEOUT_GUARDRAIL,
    Unit.CLEANUP: TIMEOUT_CLEANUP,
    Unit.COMMIT: TIMEOUT_COMMIT,
    Unit.REFACTOR: TIMEOUT_CLEANUP,
    Unit.SELF_IMPROVEMENT: TIMEOUT_SELF_IMPROVEMENT,
}


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_workers_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the workers configuration block from the runner config.

    Args:
        config: Runner configuration dictionary.

    Returns:
        The `workers` config mapping, or an empty dict if not present.
    """
    raw = _get_nested(config, "workers")
    return raw if isinstance(raw, dict) else {}


def get_unit_timeouts(config: dict[str, Any]) -> dict[Unit, int]:
    """Resolve per-unit timeouts in seconds.

    Entries under `timeouts` are keyed by unit name (`plan`, `implement`, ...).
    Non-positive or non-integer values are ignored.
    """
    timeouts = dict(DEFAULT_UNIT_TIMEOUTS)
    raw = _get_nested(config, "timeouts")
    if not isinstance(raw, dict):
        return timeouts
    for unit in Unit:
        value = _coerce_int(raw.get(unit.value))
        if value is not None and value > 0:
            timeouts[unit] = value
    return timeouts


def get_max_retries(config: dict[str, Any]) -> int:
    value = _coerce_int(config.get("max_retries"))
    if value is None or value < 1:
        return DEFAULT_MAX_RETRIES
    return value


def get_self_improvement_every(config: dict[str, Any]) -> int:
    """How often (in iterations) the self-improvement unit runs; 0 disables it."""
    value = _coerce_int(config.get("self_improvement_every"))
    if value is None or value < 0:
        return DEFAULT_SELF_IMPROVEMENT_EVERY
    return value


@dataclass(frozen=True)
class ManagerConfig:
    """Settings for the ticket queue manager."""

    token: str
    project: str
    escalate_user: str
    base_branch: Optional[str] = None
    poll_seconds: int = DEFAULT_POLL_SECONDS
    api_url: str = LINEAR_API_URL


def load_manager_config(path: Path) -> ManagerConfig:
    """Read and validate the manager config file.

    The Linear token may be omitted from the file when `LINEAR_API_KEY` is set.

    Raises:
        ConfigError: If the file is missing, unparsable, or lacks a required field.
    """
    if not path.exists():
        raise ConfigError(f"Manager config not found: {path}")
    data, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Failed to parse manager config: {err}")

    token = str(data.get("token") or os.environ.get("LINEAR_API_KEY") or "").strip()
    project = str(data.get("project") or "").strip()
    escalate_user = str(data.get("escalate_user") or "").strip()
    missing = [
        name
        for name, value in (("token", token), ("project", project), ("escalate_user", escalate_user))
        if not value
    ]
    if missing:
        raise ConfigError(f"Manager config is missing required field(s): {', '.join(missing)}")

    poll_seconds = _coerce_int(data.get("poll_seconds"))
    return ManagerConfig(
        token=token,
        project=project,
        escalate_user=escalate_user.lstrip("@"),
        base_branch=str(data.get("base_branch") or "").strip() or None,
        poll_seconds=poll_seconds if poll_seconds and poll_seconds > 0 else DEFAULT_POLL_SECONDS,
        api_url=str(data.get("api_url") or LINEAR_API_URL).strip(),
    )
