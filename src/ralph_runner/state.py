"""Persist the run checkpoint and the manager's current-ticket record."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .constants import MANAGER_STATE_FILE, STATE_DIR_NAME, STATE_FILE
from .errors import CheckpointCorruptError
from .io_utils import _atomic_write_text
from .models import ManagerRunState, RunState, Unit


class CheckpointStore(Protocol):
    """Durable home of the single :class:`RunState` record."""

    def load(self) -> Optional[RunState]:
        """Return the stored record, None if there is none.

        Raises:
            CheckpointCorruptError: If a record exists but cannot be parsed.
        """
        ...

    def save(self, state: RunState) -> None: ...

    def clear(self) -> None: ...


def _parse_key_values(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _parse_int(values: dict[str, str], key: str) -> Optional[int]:
    if key not in values:
        return None
    try:
        return int(values[key])
    except ValueError as exc:
        raise CheckpointCorruptError(f"Checkpoint field {key}={values[key]!r} is not an integer") from exc


def format_run_state(state: RunState) -> str:
    lines = [
        f"iteration={state.iteration}",
        f"max_iterations={state.max_iterations}",
        f"current_step={state.current_step.number if state.current_step else 0}",
        f"last_completed_step={state.last_completed_step}",
    ]
    if state.outstanding_before_review is not None:
        lines.append(f"outstanding_before_review={state.outstanding_before_review}")
    return "\n".join(lines) + "\n"


def parse_run_state(text: str) -> RunState:
    """Parse a checkpoint file body.

    Records carrying `last_completed_workflow` come from the workflow-granular
    format; their `current_step` counts workflows rather than units, so it is
    dropped and only the workflow marker is kept.

    Raises:
        CheckpointCorruptError: On non-integer values or an unknown step number.
    """
    values = _parse_key_values(text)
    iteration = _parse_int(values, "iteration")
    max_iterations = _parse_int(values, "max_iterations")
    if iteration is None or max_iterations is None:
        raise CheckpointCorruptError("Checkpoint is missing iteration or max_iterations")

    legacy_workflow = _parse_int(values, "last_completed_workflow")
    if legacy_workflow is not None:
        return RunState(
            iteration=iteration,
            max_iterations=max_iterations,
            last_completed_workflow=legacy_workflow,
        )

    step_number = _parse_int(values, "current_step") or 0
    current_step: Optional[Unit] = None
    if step_number:
        try:
            current_step = Unit.from_number(step_number)
        except ValueError as exc:
            raise CheckpointCorruptError(str(exc)) from exc

    return RunState(
        iteration=iteration,
        max_iterations=max_iterations,
        current_step=current_step,
        last_completed_step=_parse_int(values, "last_completed_step") or 0,
        outstanding_before_review=_parse_int(values, "outstanding_before_review"),
    )


class FileCheckpointStore:
    """Checkpoint kept as `key=value` lines in `.ralph/ralph-state.txt`."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_project(cls, project_dir: Path) -> "FileCheckpointStore":
        return cls(project_dir / STATE_DIR_NAME / STATE_FILE)

    def load(self) -> Optional[RunState]:
        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CheckpointCorruptError(f"Unable to read {self.path.name}: {exc}") from exc
        return parse_run_state(text)

    def save(self, state: RunState) -> None:
        _atomic_write_text(self.path, format_run_state(state))
        logger.debug(
            "Checkpoint saved iteration={}/{} current_step={} last_completed_step={}",
            state.iteration,
            state.max_iterations,
            state.current_step.value if state.current_step else None,
            state.last_completed_step,
        )

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryCheckpointStore:
    """In-process checkpoint, used where nothing should touch disk."""

    def __init__(self, text: Optional[str] = None):
        self.text = text
        self.history: list[RunState] = []

    def load(self) -> Optional[RunState]:
        if self.text is None:
            return None
        return parse_run_state(self.text)

    def save(self, state: RunState) -> None:
        self.text = format_run_state(state)
        self.history.append(parse_run_state(self.text))

    def clear(self) -> None:
        self.text = None


class ManagerStateStore:
    """Persist which ticket/branch the manager is working on."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_project(cls, project_dir: Path) -> "ManagerStateStore":
        return cls(project_dir / STATE_DIR_NAME / MANAGER_STATE_FILE)

    def load(self) -> Optional[ManagerRunState]:
        """Return the saved record, or None when absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            values = _parse_key_values(self.path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning("Unable to read manager state {}: {}", self.path, exc)
            return None
        ticket_id = values.get("issue_id", "")
        branch = values.get("branch_name", "")
        if not ticket_id or not branch:
            logger.warning("Manager state {} is incomplete; ignoring it", self.path)
            return None
        try:
            cursor = int(values.get("iteration", "0") or 0)
        except ValueError:
            cursor = 0
        return ManagerRunState(ticket_id=ticket_id, branch_name=branch, iteration_cursor=cursor)

    def save(self, state: ManagerRunState) -> None:
        _atomic_write_text(
            self.path,
            f"issue_id={state.ticket_id}\nbranch_name={state.branch_name}\niteration={state.iteration_cursor}\n",
        )

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
