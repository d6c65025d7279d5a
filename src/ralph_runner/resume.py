"""Decide where a run starts from the checkpoint left by a previous process."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from .errors import CheckpointCorruptError
from .models import ResumePoint, RunState, Unit
from .prd import plan_path
from .state import CheckpointStore

ConfirmFn = Callable[[str], bool]


def _validation_problem(state: RunState, max_iterations: int) -> Optional[str]:
    if state.iteration <= 0 or state.max_iterations <= 0:
        return "Checkpoint is corrupted."
    if state.iteration > state.max_iterations:
        return "Checkpoint iteration exceeds its recorded maximum."
    if state.iteration > max_iterations:
        return f"Checkpoint iteration {state.iteration} is beyond the requested budget of {max_iterations}."
    return None


class ResumeDetector:
    """Turn the stored checkpoint into a :class:`ResumePoint`.

    Invalid or unreadable checkpoints are discarded with a warning; they never
    stop the run. In interactive mode the operator confirms the resume point
    (default yes) and declining clears the checkpoint.
    """

    def __init__(
        self,
        store: CheckpointStore,
        project_dir: Path,
        *,
        interactive: bool = False,
        confirm: Optional[ConfirmFn] = None,
        console: Optional[Console] = None,
    ):
        self.store = store
        self.project_dir = project_dir
        self.interactive = interactive
        self.console = console or Console()
        self.confirm = confirm or self._ask

    def _ask(self, question: str) -> bool:
        return Confirm.ask(question, default=True, console=self.console)

    def _fresh(self, reason: str) -> ResumePoint:
        return ResumePoint(iteration=1, unit=Unit.PLAN, resumed=False, reason=reason)

    def resume_point_for(self, state: RunState) -> ResumePoint:
        """Map a valid checkpoint to the unit to start at."""
        if state.last_completed_workflow is not None or state.current_step is None:
            # Workflow-granular record: infer the unit from artifacts on disk.
            # No unit means the review already ran and only the task count is left to check.
            unit: Optional[Unit]
            if (state.last_completed_workflow or 0) >= 2:
                unit, reason = None, "review workflow finished"
            elif plan_path(self.project_dir).exists():
                unit, reason = Unit.IMPLEMENT, "plan in progress"
            elif (state.last_completed_workflow or 0) >= 1:
                unit, reason = Unit.REFACTOR, "plan-and-implement workflow finished"
            else:
                unit, reason = Unit.PLAN, "start of plan-and-implement workflow"
            return ResumePoint(iteration=state.iteration, unit=unit, resumed=True, reason=reason)

        return ResumePoint(
            iteration=state.iteration,
            unit=state.current_step,
            resumed=True,
            last_completed_step=state.last_completed_step,
            outstanding_before_review=state.outstanding_before_review,
            reason="recorded step",
        )

    def detect(self, max_iterations: int) -> ResumePoint:
        try:
            state = self.store.load()
        except CheckpointCorruptError as exc:
            logger.warning("Checkpoint could not be read ({}). Starting fresh.", exc)
            self.store.clear()
            return self._fresh("corrupt checkpoint discarded")

        if state is None:
            return self._fresh("no checkpoint")

        problem = _validation_problem(state, max_iterations)
        if problem:
            logger.warning("{} Starting fresh.", problem)
            self.store.clear()
            return self._fresh("invalid checkpoint discarded")

        point = self.resume_point_for(state)
        step = point.unit.label if point.unit else "Task check (after review)"
        where = f"iteration {point.iteration}/{state.max_iterations}, {step}"

        if self.interactive:
            self.console.print(
                Panel(
                    f"Iteration: {point.iteration}/{state.max_iterations}\n"
                    f"Resume from: {step} ({point.reason})",
                    title="Resume detected",
                    border_style="cyan",
                )
            )
            if not self.confirm("Continue from here?"):
                logger.info("Starting fresh")
                self.store.clear()
                return self._fresh("operator declined resume")
            logger.info("Resuming from {}", where)
        else:
            logger.info("Auto-resuming from {}", where)
        return point
