"""Test how the resume point is derived from the checkpoint."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.models import Unit
from ralph_runner.resume import ResumeDetector
from ralph_runner.state import MemoryCheckpointStore


def _detector(tmp_path: Path, store: MemoryCheckpointStore, **kwargs) -> ResumeDetector:
    return ResumeDetector(store, tmp_path, **kwargs)


def test_no_checkpoint_starts_fresh(tmp_path: Path) -> None:
    point = _detector(tmp_path, MemoryCheckpointStore()).detect(3)
    assert point.iteration == 1
    assert point.unit == Unit.PLAN
    assert not point.resumed


def test_recorded_step_is_resumed_exactly(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=2\nmax_iterations=3\ncurrent_step=4\nlast_completed_step=2\n")
    point = _detector(tmp_path, store).detect(3)

    assert point.resumed
    assert point.iteration == 2
    assert point.unit == Unit.CLEANUP
    assert point.last_completed_step == 2
    assert store.load() is not None


def test_review_step_carries_task_count(tmp_path: Path) -> None:
    store = MemoryCheckpointStore(
        "iteration=1\nmax_iterations=2\ncurrent_step=7\nlast_completed_step=6\noutstanding_before_review=5\n"
    )
    point = _detector(tmp_path, store).detect(2)
    assert point.unit == Unit.SELF_IMPROVEMENT
    assert point.outstanding_before_review == 5


def test_iteration_beyond_recorded_max_is_discarded(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=4\nmax_iterations=3\ncurrent_step=1\n")
    point = _detector(tmp_path, store).detect(10)
    assert not point.resumed
    assert point.iteration == 1
    assert store.load() is None


def test_iteration_beyond_requested_budget_is_discarded(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=3\nmax_iterations=5\ncurrent_step=2\n")
    point = _detector(tmp_path, store).detect(2)
    assert not point.resumed
    assert store.load() is None


def test_zero_iteration_is_discarded(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=0\nmax_iterations=5\n")
    assert not _detector(tmp_path, store).detect(5).resumed
    assert store.load() is None


def test_unparsable_checkpoint_is_discarded(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=two\nmax_iterations=5\n")
    point = _detector(tmp_path, store).detect(5)
    assert not point.resumed
    assert store.text is None


def test_workflow_record_with_plan_resumes_at_implement(tmp_path: Path) -> None:
    (tmp_path / ".ralph").mkdir()
    (tmp_path / ".ralph" / "PLAN.md").write_text("# Plan\n")
    store = MemoryCheckpointStore("iteration=2\nmax_iterations=3\ncurrent_step=1\nlast_completed_workflow=0\n")

    point = _detector(tmp_path, store).detect(3)

    assert point.resumed
    assert point.iteration == 2
    assert point.unit == Unit.IMPLEMENT


def test_workflow_record_after_workflow_a_resumes_at_review(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=1\nmax_iterations=3\ncurrent_step=2\nlast_completed_workflow=1\n")
    assert _detector(tmp_path, store).detect(3).unit == Unit.REFACTOR


def test_workflow_record_after_review_resumes_at_task_check(tmp_path: Path) -> None:
    (tmp_path / ".ralph").mkdir()
    (tmp_path / ".ralph" / "PLAN.md").write_text("# Plan\n")
    store = MemoryCheckpointStore("iteration=1\nmax_iterations=3\nlast_completed_workflow=2\n")

    point = _detector(tmp_path, store).detect(3)

    assert point.resumed
    assert point.iteration == 1
    assert point.unit is None


def test_workflow_record_without_progress_resumes_at_plan(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=1\nmax_iterations=3\nlast_completed_workflow=0\n")
    point = _detector(tmp_path, store).detect(3)
    assert point.resumed
    assert point.unit == Unit.PLAN


def test_interactive_decline_clears_checkpoint(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=2\nmax_iterations=3\ncurrent_step=2\nlast_completed_step=1\n")
    questions: list[str] = []

    def decline(question: str) -> bool:
        questions.append(question)
        return False

    point = _detector(tmp_path, store, interactive=True, confirm=decline).detect(3)

    assert questions == ["Continue from here?"]
    assert not point.resumed
    assert point.iteration == 1
    assert store.load() is None


def test_interactive_accept_resumes(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=2\nmax_iterations=3\ncurrent_step=2\nlast_completed_step=1\n")
    point = _detector(tmp_path, store, interactive=True, confirm=lambda _q: True).detect(3)
    assert point.resumed
    assert point.unit == Unit.IMPLEMENT


def test_unattended_never_asks(tmp_path: Path) -> None:
    store = MemoryCheckpointStore("iteration=1\nmax_iterations=3\ncurrent_step=3\nlast_completed_step=2\n")

    def fail(_question: str) -> bool:
        raise AssertionError("unattended resume must not prompt")

    point = _detector(tmp_path, store, interactive=False, confirm=fail).detect(3)
    assert point.unit == Unit.GUARDRAIL
