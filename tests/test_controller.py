"""Test iteration sequencing, checkpointing and termination of the workflow controller."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.controller import WorkflowController
from ralph_runner.errors import RalphError, WorkerTimeoutError
from ralph_runner.executor import RetryingStepExecutor
from ralph_runner.models import IterationProgress, RunOutcome, Unit
from ralph_runner.resume import ResumeDetector
from ralph_runner.state import MemoryCheckpointStore
from ralph_runner.workers.run import WorkerRunResult

COMPLETE = "All tasks are done. <promise>COMPLETE</promise>"
BLOCKED = "Missing credentials. <promise>BLOCKED</promise>"


class ScriptedWorker:
    """Answer each unit from a per-unit script; unscripted calls return plain text."""

    def __init__(
        self,
        responses: Optional[dict[str, list[str]]] = None,
        side_effects: Optional[dict[str, Callable[[], None]]] = None,
        timeouts: Optional[set[str]] = None,
    ):
        self.responses = {unit: list(texts) for unit, texts in (responses or {}).items()}
        self.side_effects = side_effects or {}
        self.timeouts = timeouts or set()
        self.calls: list[str] = []

    def run(self, *, unit: str, system_prompt: str, prompt: str, timeout_seconds: int, run_dir: Path):
        self.calls.append(unit)
        if unit in self.side_effects:
            self.side_effects[unit]()
        queue = self.responses.get(unit) or []
        text = queue.pop(0) if queue else f"{unit} finished"
        timed_out = unit in self.timeouts
        return WorkerRunResult(
            provider="scripted",
            prompt_path="prompt.txt",
            stdout_path="stdout.log",
            stderr_path="stderr.log",
            start_time="2025-01-01T00:00:00+00:00",
            end_time="2025-01-01T00:00:01+00:00",
            runtime_seconds=1,
            exit_code=124 if timed_out else 0,
            timed_out=timed_out,
            response_text=text,
        )


def _project(tmp_path: Path, tasks: int = 1) -> Path:
    state_dir = tmp_path / ".ralph"
    state_dir.mkdir()
    lines = ["# Product Requirements Document", "", "## Tasks"]
    lines += [f"- [ ] **Task {i}**" for i in range(1, tasks + 1)]
    (state_dir / "PRD.md").write_text("\n".join(lines) + "\n")
    return tmp_path


def _add_task(project_dir: Path) -> Callable[[], None]:
    added: list[bool] = []

    def add() -> None:
        if added:
            return
        added.append(True)
        with open(project_dir / ".ralph" / "PRD.md", "a") as handle:
            handle.write("- [ ] **Follow-up task**\n")

    return add


def _controller(
    project_dir: Path,
    worker: ScriptedWorker,
    store: MemoryCheckpointStore,
    progress: Optional[list[IterationProgress]] = None,
    callback: Optional[Callable[[IterationProgress], None]] = None,
    **kwargs,
) -> WorkflowController:
    executor = RetryingStepExecutor(worker, project_dir, max_retries=2, runs_dir=project_dir / "runs")
    if callback is None and progress is not None:
        callback = progress.append
    return WorkflowController(
        executor,
        store,
        project_dir,
        progress_callback=callback,
        git_summary=lambda _dir: ("feat: task", ["src/app.py"]),
        **kwargs,
    )


def test_complete_on_first_plan_finishes_after_iteration_one(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker({"plan": [COMPLETE]})
    store = MemoryCheckpointStore()
    progress: list[IterationProgress] = []

    result = _controller(project_dir, worker, store, progress).run(3)

    assert result.outcome == RunOutcome.COMPLETED
    assert result.iteration == 1
    assert result.exit_code == 0
    assert store.load() is None
    assert worker.calls == ["plan", "refactor", "self_improvement"]
    assert [p.iteration for p in progress] == [1]
    assert progress[0].steps_completed == ["Planning", "Agents refactor", "Self-improvement"]


def test_blocked_implement_halts_and_keeps_checkpoint(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker({"implement": [BLOCKED]})
    store = MemoryCheckpointStore()

    result = _controller(project_dir, worker, store).run(3)

    assert result.outcome == RunOutcome.BLOCKED
    assert result.blocked_unit == Unit.IMPLEMENT
    assert result.exit_code == 1
    assert worker.calls == ["plan", "implement"]
    saved = store.load()
    assert saved is not None
    assert saved.iteration == 1
    assert saved.current_step == Unit.IMPLEMENT
    assert saved.last_completed_step == 1


def test_blocked_plan_halts_before_implement(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker({"plan": [BLOCKED]})
    store = MemoryCheckpointStore()

    result = _controller(project_dir, worker, store).run(2)

    assert result.outcome == RunOutcome.BLOCKED
    assert worker.calls == ["plan"]
    assert store.load().current_step == Unit.PLAN


def test_checkpoint_written_before_and_after_each_unit(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker({"implement": [BLOCKED]})
    store = MemoryCheckpointStore()

    _controller(project_dir, worker, store).run(2)

    assert [(s.current_step, s.last_completed_step) for s in store.history] == [
        (Unit.PLAN, 0),
        (Unit.IMPLEMENT, 1),
        (Unit.IMPLEMENT, 1),
    ]


def test_budget_exhausted_without_completion(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker()
    store = MemoryCheckpointStore()
    progress: list[IterationProgress] = []

    result = _controller(project_dir, worker, store, progress).run(2)

    assert result.outcome == RunOutcome.ITERATION_LIMIT
    assert result.iteration == 2
    assert result.exit_code == 1
    assert store.load() is None
    assert worker.calls == ["plan", "implement", "cleanup", "commit"] * 2
    assert [p.iteration for p in progress] == [1, 2]
    assert progress[0].commit_message == "feat: task"
    assert progress[0].files_changed == ["src/app.py"]


def test_iteration_advance_resets_step_cursor(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    store = MemoryCheckpointStore()

    _controller(project_dir, ScriptedWorker(), store).run(2)

    second_iteration = [s for s in store.history if s.iteration == 2]
    assert second_iteration[0].current_step == Unit.PLAN
    assert second_iteration[0].last_completed_step == 0
    cursors = [s.last_completed_step for s in store.history if s.iteration == 1]
    assert cursors == sorted(cursors)


def test_review_adding_tasks_reenters_same_iteration(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker(
        {"plan": [COMPLETE, "planned follow-up", COMPLETE]},
        side_effects={"self_improvement": _add_task(project_dir)},
    )
    store = MemoryCheckpointStore()
    progress: list[IterationProgress] = []

    result = _controller(project_dir, worker, store, progress).run(3)

    assert worker.calls == [
        "plan", "refactor", "self_improvement",
        "plan", "implement", "cleanup", "commit",
        "plan", "refactor", "self_improvement",
    ]
    # The second plan call happened in iteration 1, not 2.
    reentry = store.history[store.history.index(next(
        s for s in store.history if s.current_step == Unit.SELF_IMPROVEMENT
    )) + 2]
    assert reentry.iteration == 1
    assert reentry.current_step == Unit.PLAN
    assert reentry.last_completed_step == 0
    assert result.outcome == RunOutcome.COMPLETED
    assert result.iteration == 2
    # The review pass that re-entered the loop is reported on its own.
    assert [p.iteration for p in progress] == [1, 1, 2]
    assert progress[0].steps_completed == ["Planning", "Agents refactor", "Self-improvement"]
    assert progress[1].steps_completed[0] == "Planning"
    assert "Agents refactor" not in progress[1].steps_completed


def test_review_without_new_tasks_completes(tmp_path: Path) -> None:
    project_dir = _project(tmp_path, tasks=3)
    worker = ScriptedWorker({"plan": [COMPLETE]})

    result = _controller(project_dir, worker, MemoryCheckpointStore()).run(5)

    assert result.outcome == RunOutcome.COMPLETED
    assert worker.calls.count("plan") == 1


def test_guardrail_runs_only_when_guardrails_file_exists(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    (project_dir / "GUARDRAILS.md").write_text("# Guardrails\n- Never drop tables\n")
    worker = ScriptedWorker({"guardrail": ["Checked. <promise>COMPLIANT</promise>"]})

    _controller(project_dir, worker, MemoryCheckpointStore()).run(1)

    assert worker.calls == ["plan", "implement", "guardrail", "cleanup", "commit"]


def test_non_compliant_guardrail_does_not_stop_the_run(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    (project_dir / "GUARDRAILS.md").write_text("# Guardrails\n")
    worker = ScriptedWorker({"guardrail": ["Fixed two violations"]})

    result = _controller(project_dir, worker, MemoryCheckpointStore()).run(1)

    assert result.outcome == RunOutcome.ITERATION_LIMIT
    assert "cleanup" in worker.calls


def test_self_improvement_skipped_when_not_due(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker({"plan": [COMPLETE]})

    _controller(project_dir, worker, MemoryCheckpointStore(), self_improvement_every=2).run(3)

    assert worker.calls == ["plan", "refactor"]


def test_resume_starts_exactly_at_recorded_unit(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    store = MemoryCheckpointStore("iteration=2\nmax_iterations=3\ncurrent_step=4\nlast_completed_step=2\n")
    start = ResumeDetector(store, project_dir).detect(3)
    worker = ScriptedWorker({"plan": [COMPLETE]})

    result = _controller(project_dir, worker, store).run(3, start)

    assert worker.calls == ["cleanup", "commit", "plan", "refactor", "self_improvement"]
    first = store.history[0]
    assert (first.iteration, first.current_step, first.last_completed_step) == (2, Unit.CLEANUP, 2)
    assert result.outcome == RunOutcome.COMPLETED
    assert result.iteration == 3


def test_resume_after_finished_review_only_checks_task_count(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    store = MemoryCheckpointStore("iteration=1\nmax_iterations=3\nlast_completed_workflow=2\n")
    start = ResumeDetector(store, project_dir).detect(3)
    worker = ScriptedWorker()
    progress: list[IterationProgress] = []

    result = _controller(project_dir, worker, store, progress).run(3, start)

    assert worker.calls == []
    assert result.outcome == RunOutcome.COMPLETED
    assert result.iteration == 1
    assert store.load() is None
    assert [p.iteration for p in progress] == [1]


def test_crash_mid_unit_resumes_at_that_unit(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    store = MemoryCheckpointStore()

    def crash() -> None:
        raise RuntimeError("power cut")

    with pytest.raises(RuntimeError):
        _controller(project_dir, ScriptedWorker(side_effects={"cleanup": crash}), store).run(2)

    start = ResumeDetector(store, project_dir).detect(2)
    assert (start.iteration, start.unit) == (1, Unit.CLEANUP)

    worker = ScriptedWorker({"plan": [COMPLETE]})
    _controller(project_dir, worker, store).run(2, start)
    assert worker.calls[:2] == ["cleanup", "commit"]
    assert "implement" not in worker.calls[:2]


def test_timeout_exhaustion_keeps_checkpoint(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)
    worker = ScriptedWorker(timeouts={"implement"})
    store = MemoryCheckpointStore()

    with pytest.raises(WorkerTimeoutError):
        _controller(project_dir, worker, store).run(2)

    assert worker.calls == ["plan", "implement", "implement"]
    assert store.load().current_step == Unit.IMPLEMENT


def test_failing_progress_callback_is_only_a_warning(tmp_path: Path) -> None:
    project_dir = _project(tmp_path)

    def broken(_progress: IterationProgress) -> None:
        raise ValueError("tracker down")

    result = _controller(project_dir, ScriptedWorker(), MemoryCheckpointStore(), callback=broken).run(1)

    assert result.outcome == RunOutcome.ITERATION_LIMIT


def test_missing_prd_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(RalphError):
        _controller(tmp_path, ScriptedWorker(), MemoryCheckpointStore()).run(1)


def test_start_outside_budget_is_rejected(tmp_path: Path) -> None:
    from ralph_runner.models import ResumePoint

    project_dir = _project(tmp_path)
    with pytest.raises(RalphError):
        _controller(project_dir, ScriptedWorker(), MemoryCheckpointStore()).run(2, ResumePoint(iteration=3))
