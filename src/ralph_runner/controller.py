"""Sequence units into workflows and iterations, checkpointing around every unit."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .config import DEFAULT_UNIT_TIMEOUTS
from .constants import DEFAULT_SELF_IMPROVEMENT_EVERY
from .errors import RalphError
from .executor import RetryingStepExecutor
from .git_utils import iteration_git_summary
from .models import IterationProgress, ResumePoint, RunOutcome, RunResult, RunState, Unit
from .prd import count_incomplete_tasks, guardrails_path, prd_path
from .state import CheckpointStore
from .workflow import PLAN_AND_IMPLEMENT, REVIEW_AND_SELF_IMPROVE, UnitContext, next_unit, workflow_for

ProgressCallback = Callable[[IterationProgress], None]
GitSummary = Callable[[Path], tuple[str, list[str]]]


class WorkflowController:
    """Drive Workflow A (plan, implement, guardrail, cleanup, commit) and Workflow B
    (refactor, self-improvement) across iterations.

    Each Workflow A pass that reaches the commit unit ends an iteration. When the
    plan unit reports completion, Workflow B runs once; if it grew the number of
    open PRD tasks, Workflow A starts again inside the same iteration, otherwise
    the run is complete.

    The checkpoint is written before every unit (naming the unit about to run)
    and again as soon as the unit finishes (naming the unit to run next), so
    resuming always starts exactly at the recorded unit.
    """

    def __init__(
        self,
        executor: RetryingStepExecutor,
        store: CheckpointStore,
        project_dir: Path,
        *,
        timeouts: Optional[dict[Unit, int]] = None,
        self_improvement_every: int = DEFAULT_SELF_IMPROVEMENT_EVERY,
        progress_callback: Optional[ProgressCallback] = None,
        git_summary: GitSummary = iteration_git_summary,
    ):
        self.executor = executor
        self.store = store
        self.project_dir = project_dir
        self.timeouts = dict(DEFAULT_UNIT_TIMEOUTS)
        if timeouts:
            self.timeouts.update(timeouts)
        self.self_improvement_every = self_improvement_every
        self.progress_callback = progress_callback
        self.git_summary = git_summary

    def _context(self, iteration: int) -> UnitContext:
        return UnitContext(
            iteration=iteration,
            guardrails_present=guardrails_path(self.project_dir).exists(),
            self_improvement_every=self.self_improvement_every,
        )

    def _outstanding(self) -> int:
        return count_incomplete_tasks(prd_path(self.project_dir))

    def _save(
        self,
        iteration: int,
        max_iterations: int,
        unit: Unit,
        last_completed: int,
        outstanding_before: Optional[int],
    ) -> None:
        self.store.save(
            RunState(
                iteration=iteration,
                max_iterations=max_iterations,
                current_step=unit,
                last_completed_step=last_completed,
                outstanding_before_review=outstanding_before if unit in REVIEW_AND_SELF_IMPROVE else None,
            )
        )

    def _report_iteration(self, iteration: int, max_iterations: int, steps: list[str]) -> None:
        if self.progress_callback is None:
            return
        commit_message, files = self.git_summary(self.project_dir)
        progress = IterationProgress(
            iteration=iteration,
            max_iterations=max_iterations,
            steps_completed=list(steps),
            commit_message=commit_message,
            files_changed=files,
        )
        try:
            self.progress_callback(progress)
        except Exception as exc:
            # Reporting must never fail the run.
            logger.warning("Progress callback failed for iteration {}: {}", iteration, exc)

    def run(self, max_iterations: int, start: Optional[ResumePoint] = None) -> RunResult:
        """Run until completion, a blocked unit, or the iteration budget runs out.

        Args:
            max_iterations: Iteration budget (>= 1).
            start: Resume point; a fresh run starts at the plan unit of iteration 1.

        Returns:
            The terminal :class:`RunResult`. The checkpoint is cleared for
            `COMPLETED` and `ITERATION_LIMIT` and kept for `BLOCKED`.

        Raises:
            RalphError: If the PRD is missing or the resume point is outside the budget.
            WorkerError: When a unit times out on every attempt or fails fatally;
                the checkpoint is kept so the run can resume at that unit.
        """
        if max_iterations < 1:
            raise RalphError(f"Iteration budget must be at least 1 (got {max_iterations})")
        if not prd_path(self.project_dir).exists():
            raise RalphError(f"Required file {prd_path(self.project_dir)} not found. Run 'ralph init' first.")

        start = start or ResumePoint(iteration=1)
        if not 1 <= start.iteration <= max_iterations:
            raise RalphError(f"Cannot start at iteration {start.iteration} of {max_iterations}")

        iteration = start.iteration
        unit: Optional[Unit] = start.unit
        last_completed = start.last_completed_step if start.resumed else 0
        outstanding_before = start.outstanding_before_review
        steps: list[str] = []
        logger.info("Iteration {}/{}", iteration, max_iterations)

        while True:
            # None means Workflow B has no unit left to run.
            current = None if unit is None else workflow_for(unit).first_applicable(unit, self._context(iteration))

            if current is None:
                outstanding_after = self._outstanding()
                if outstanding_before is None:
                    logger.warning("No task count recorded before review; treating the PRD as unchanged")
                    outstanding_before = outstanding_after
                if outstanding_after > outstanding_before:
                    logger.info(
                        "Review added {} new PRD task(s); continuing iteration {}",
                        outstanding_after - outstanding_before,
                        iteration,
                    )
                    self._report_iteration(iteration, max_iterations, steps)
                    unit, last_completed, outstanding_before, steps = PLAN_AND_IMPLEMENT.first, 0, None, []
                    self._save(iteration, max_iterations, unit, last_completed, None)
                    continue
                self._report_iteration(iteration, max_iterations, steps)
                self.store.clear()
                logger.success("PRD complete after iteration {}/{}", iteration, max_iterations)
                return RunResult(RunOutcome.COMPLETED, iteration=iteration, max_iterations=max_iterations)

            self._save(iteration, max_iterations, current, last_completed, outstanding_before)
            outcome = self.executor.execute(current, self.timeouts[current], iteration=iteration)
            steps.append(current.label)

            if outcome.signaled_blocked:
                logger.error("{} reported it is blocked; stopping (checkpoint kept)", current.label)
                return RunResult(
                    RunOutcome.BLOCKED,
                    iteration=iteration,
                    max_iterations=max_iterations,
                    blocked_unit=current,
                    message=outcome.raw_text,
                )
            last_completed = current.number

            if current == Unit.COMMIT:
                self._report_iteration(iteration, max_iterations, steps)
                if iteration >= max_iterations:
                    self.store.clear()
                    logger.warning("Iteration limit reached ({}) without completing the PRD", max_iterations)
                    return RunResult(RunOutcome.ITERATION_LIMIT, iteration=iteration, max_iterations=max_iterations)
                iteration += 1
                unit, last_completed, outstanding_before, steps = PLAN_AND_IMPLEMENT.first, 0, None, []
                self._save(iteration, max_iterations, unit, last_completed, None)
                logger.info("Iteration {}/{}", iteration, max_iterations)
                continue

            if current == Unit.PLAN and outcome.signaled_complete:
                logger.success("Plan reports the PRD is complete; starting review")
                outstanding_before = self._outstanding()
                unit = REVIEW_AND_SELF_IMPROVE.first
            else:
                if current == Unit.GUARDRAIL and not outcome.signaled_compliant:
                    logger.warning("Guardrail verification did not report compliance; fixes may have been applied")
                unit = next_unit(current)

            successor = None if unit is None else workflow_for(unit).first_applicable(unit, self._context(iteration))
            if successor is not None:
                self._save(iteration, max_iterations, successor, last_completed, outstanding_before)
