"""Run one unit against the worker with a deadline and bounded timeout retries."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import DEFAULT_MAX_RETRIES, ERROR_CATEGORY_NOT_FOUND, RUNS_DIR, STATE_DIR_NAME
from .errors import WorkerFatalError, WorkerTimeoutError
from .models import StepOutcome, Unit
from .prompts import get_system_prompt, get_unit_prompt
from .signals import detect_signals
from .utils import _run_stamp
from .workers.diagnostics import classify_worker_failure
from .workers.run import Worker, WorkerRunResult


class RetryingStepExecutor:
    """Invoke the worker for a unit and classify the attempt.

    Only timeouts are retried, up to ``max_retries`` attempts in total. Any
    other failure (missing executable, authentication, rate limit, network,
    API errors) raises :class:`WorkerFatalError` after the first attempt. A
    clean exit returns a :class:`StepOutcome` whatever the text says; blocked
    and complete are for the controller to act on.
    """

    def __init__(
        self,
        worker: Worker,
        project_dir: Path,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        runs_dir: Optional[Path] = None,
    ):
        self.worker = worker
        self.project_dir = project_dir
        self.max_retries = max(1, int(max_retries))
        self.runs_dir = runs_dir or project_dir / STATE_DIR_NAME / RUNS_DIR

    def execute(self, unit: Unit, timeout_seconds: int, *, iteration: int = 0) -> StepOutcome:
        """Run ``unit`` with the project's system prompt and the unit's prompt.

        Raises:
            WorkerTimeoutError: Every attempt hit the deadline.
            WorkerFatalError: The worker failed for any other reason.
        """
        result, attempts = self.run_prompt(
            name=unit.value,
            label=unit.label,
            system_prompt=get_system_prompt(self.project_dir),
            prompt=get_unit_prompt(self.project_dir, unit),
            timeout_seconds=timeout_seconds,
            run_prefix=f"{iteration:03d}-{unit.value}",
        )
        signals = detect_signals(result.response_text)
        return StepOutcome(
            unit=unit,
            raw_text=result.response_text,
            succeeded=True,
            signaled_blocked=signals.blocked,
            signaled_complete=signals.complete,
            signaled_compliant=signals.compliant,
            attempts=attempts,
        )

    def run_prompt(
        self,
        *,
        name: str,
        label: str,
        system_prompt: str,
        prompt: str,
        timeout_seconds: int,
        run_prefix: Optional[str] = None,
    ) -> tuple[WorkerRunResult, int]:
        """Run an arbitrary prompt under the same retry policy as a unit.

        Returns:
            The successful run result and the number of attempts it took.
        """
        prefix = run_prefix or name
        attempt = 0
        while True:
            attempt += 1
            if attempt == 1:
                logger.info("{} (timeout: {}s)", label, timeout_seconds)
            else:
                logger.warning("Retrying {} (attempt {}/{})", label, attempt, self.max_retries)

            run_dir = self.runs_dir / f"{_run_stamp()}-{prefix}-{attempt}"
            result = self.worker.run(
                unit=name,
                system_prompt=system_prompt,
                prompt=prompt,
                timeout_seconds=timeout_seconds,
                run_dir=run_dir,
            )

            if result.timed_out:
                if attempt >= self.max_retries:
                    logger.error("{} timed out after {} attempts", label, self.max_retries)
                    raise WorkerTimeoutError(
                        f"{label} timed out after {self.max_retries} attempts ({timeout_seconds}s each)",
                        attempts=attempt,
                        unit=name,
                    )
                logger.warning("{} timed out after {}s, will retry", label, timeout_seconds)
                continue

            if not result.ok:
                raise self._fatal_error(name, label, result)

            return result, attempt

    @staticmethod
    def _fatal_error(name: str, label: str, result: WorkerRunResult) -> WorkerFatalError:
        if result.launch_error:
            logger.error("{} could not start: {}", label, result.launch_error)
            return WorkerFatalError(
                result.launch_error,
                category=ERROR_CATEGORY_NOT_FOUND,
                suggestion="Please ensure the worker CLI is installed and available in PATH.",
                unit=name,
            )
        details = classify_worker_failure(stderr=result.stderr_text, stream_error=result.stream_error)
        logger.error("{} failed ({}): exit code {}", label, details.category, result.exit_code)
        return WorkerFatalError(
            details.message,
            category=details.category,
            suggestion=details.suggestion,
            unit=name,
            technical=f"exit status {result.exit_code}",
        )
