"""Test the retry policy of the step executor."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.errors import WorkerFatalError, WorkerTimeoutError
from ralph_runner.executor import RetryingStepExecutor
from ralph_runner.models import Unit
from ralph_runner.workers.run import WorkerRunResult


def _result(*, exit_code: int = 0, timed_out: bool = False, text: str = "", stderr: str = "",
            launch_error: str = "") -> WorkerRunResult:
    return WorkerRunResult(
        provider="fake",
        prompt_path="prompt.txt",
        stdout_path="stdout.log",
        stderr_path="stderr.log",
        start_time="2025-01-01T00:00:00+00:00",
        end_time="2025-01-01T00:00:01+00:00",
        runtime_seconds=1,
        exit_code=exit_code,
        timed_out=timed_out,
        response_text=text,
        stderr_text=stderr,
        launch_error=launch_error,
    )


class _QueueWorker:
    def __init__(self, results: list[WorkerRunResult]):
        self.results = list(results)
        self.calls: list[dict[str, object]] = []

    def run(self, *, unit: str, system_prompt: str, prompt: str, timeout_seconds: int, run_dir: Path):
        self.calls.append({"unit": unit, "timeout": timeout_seconds, "run_dir": run_dir})
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


def _executor(tmp_path: Path, worker: _QueueWorker, max_retries: int = 3) -> RetryingStepExecutor:
    return RetryingStepExecutor(worker, tmp_path, max_retries=max_retries, runs_dir=tmp_path / "runs")


def test_always_timing_out_worker_is_tried_exactly_max_retries_times(tmp_path: Path) -> None:
    worker = _QueueWorker([_result(exit_code=124, timed_out=True)])
    executor = _executor(tmp_path, worker)

    with pytest.raises(WorkerTimeoutError) as excinfo:
        executor.execute(Unit.IMPLEMENT, 60, iteration=1)

    assert len(worker.calls) == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.category == "timeout"
    assert excinfo.value.unit == "implement"


def test_timeout_then_success_returns_outcome(tmp_path: Path) -> None:
    worker = _QueueWorker([_result(exit_code=124, timed_out=True), _result(text="done")])
    outcome = _executor(tmp_path, worker).execute(Unit.PLAN, 60)

    assert len(worker.calls) == 2
    assert outcome.attempts == 2
    assert outcome.raw_text == "done"
    assert outcome.succeeded


def test_fatal_failure_is_not_retried(tmp_path: Path) -> None:
    worker = _QueueWorker([_result(exit_code=1, stderr="Error: Invalid API key")])

    with pytest.raises(WorkerFatalError) as excinfo:
        _executor(tmp_path, worker).execute(Unit.PLAN, 60)

    assert len(worker.calls) == 1
    assert excinfo.value.category == "authentication"
    assert "claude auth login" in excinfo.value.suggestion


def test_launch_error_is_fatal_not_found(tmp_path: Path) -> None:
    worker = _QueueWorker([_result(exit_code=127, launch_error="claude command not found in PATH")])

    with pytest.raises(WorkerFatalError) as excinfo:
        _executor(tmp_path, worker).execute(Unit.COMMIT, 60)

    assert len(worker.calls) == 1
    assert excinfo.value.category == "not_found"
    assert "not found" in str(excinfo.value)


def test_blocked_text_is_returned_without_retry(tmp_path: Path) -> None:
    """Blocked is a domain signal for the controller, not a retryable failure."""
    worker = _QueueWorker([_result(text="stuck <promise>BLOCKED</promise>")])
    outcome = _executor(tmp_path, worker).execute(Unit.IMPLEMENT, 60)

    assert len(worker.calls) == 1
    assert outcome.signaled_blocked
    assert not outcome.signaled_complete


def test_each_attempt_gets_its_own_run_dir(tmp_path: Path) -> None:
    worker = _QueueWorker([_result(exit_code=124, timed_out=True), _result(text="ok")])
    _executor(tmp_path, worker).execute(Unit.CLEANUP, 30, iteration=2)

    run_dirs = [call["run_dir"] for call in worker.calls]
    assert len(set(run_dirs)) == 2
    for run_dir in run_dirs:
        assert run_dir.parent == tmp_path / "runs"
        assert "002-cleanup" in run_dir.name
    assert all(call["timeout"] == 30 for call in worker.calls)


def test_max_retries_is_at_least_one(tmp_path: Path) -> None:
    worker = _QueueWorker([_result(exit_code=124, timed_out=True)])

    with pytest.raises(WorkerTimeoutError):
        _executor(tmp_path, worker, max_retries=0).execute(Unit.PLAN, 5)

    assert len(worker.calls) == 1
