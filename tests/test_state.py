"""Test checkpoint and manager state persistence."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.errors import CheckpointCorruptError
from ralph_runner.models import ManagerRunState, RunState, Unit
from ralph_runner.state import (
    FileCheckpointStore,
    ManagerStateStore,
    MemoryCheckpointStore,
    format_run_state,
    parse_run_state,
)


def test_file_store_round_trip(tmp_path: Path) -> None:
    store = FileCheckpointStore.for_project(tmp_path)
    assert store.load() is None

    store.save(RunState(iteration=2, max_iterations=5, current_step=Unit.CLEANUP, last_completed_step=3))

    assert store.path == tmp_path / ".ralph" / "ralph-state.txt"
    loaded = store.load()
    assert loaded == RunState(iteration=2, max_iterations=5, current_step=Unit.CLEANUP, last_completed_step=3)

    store.clear()
    assert not store.path.exists()
    store.clear()


def test_file_layout_is_key_value_lines() -> None:
    text = format_run_state(
        RunState(
            iteration=1,
            max_iterations=3,
            current_step=Unit.SELF_IMPROVEMENT,
            last_completed_step=6,
            outstanding_before_review=4,
        )
    )
    assert text.splitlines() == [
        "iteration=1",
        "max_iterations=3",
        "current_step=7",
        "last_completed_step=6",
        "outstanding_before_review=4",
    ]


def test_non_integer_value_is_corrupt() -> None:
    with pytest.raises(CheckpointCorruptError):
        parse_run_state("iteration=abc\nmax_iterations=3\n")


def test_unknown_step_number_is_corrupt() -> None:
    with pytest.raises(CheckpointCorruptError):
        parse_run_state("iteration=1\nmax_iterations=3\ncurrent_step=42\n")


def test_missing_iteration_is_corrupt() -> None:
    with pytest.raises(CheckpointCorruptError):
        parse_run_state("current_step=1\n")


def test_workflow_granular_record_keeps_only_workflow_marker() -> None:
    state = parse_run_state("iteration=2\nmax_iterations=4\ncurrent_step=2\nlast_completed_workflow=1\n")
    assert state.iteration == 2
    assert state.current_step is None
    assert state.last_completed_workflow == 1


def test_memory_store_records_history() -> None:
    store = MemoryCheckpointStore()
    store.save(RunState(iteration=1, max_iterations=2, current_step=Unit.PLAN))
    store.save(RunState(iteration=1, max_iterations=2, current_step=Unit.IMPLEMENT, last_completed_step=1))

    assert [state.current_step for state in store.history] == [Unit.PLAN, Unit.IMPLEMENT]
    assert store.load().current_step == Unit.IMPLEMENT
    store.clear()
    assert store.load() is None


def test_manager_state_round_trip(tmp_path: Path) -> None:
    store = ManagerStateStore.for_project(tmp_path)
    store.save(ManagerRunState(ticket_id="abc", branch_name="linear/abc-x", iteration_cursor=3))

    assert "issue_id=abc" in store.path.read_text()
    assert store.load() == ManagerRunState(ticket_id="abc", branch_name="linear/abc-x", iteration_cursor=3)
    store.clear()
    assert store.load() is None


def test_incomplete_manager_state_is_ignored(tmp_path: Path) -> None:
    store = ManagerStateStore.for_project(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text("issue_id=abc\n")
    assert store.load() is None
