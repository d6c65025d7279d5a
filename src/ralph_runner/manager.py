"""Work a queue of Linear tickets, one branch and one controller run per ticket."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .config import ManagerConfig
from .constants import (
    LINEAR_PRIORITY_LABELS,
    LINEAR_STATE_DONE,
    LINEAR_STATE_IN_PROGRESS,
    LINEAR_STATE_TODO,
    MAX_FILES_IN_PROGRESS_COMMENT,
)
from .controller import ProgressCallback
from .errors import RalphError, TicketAPIError, TicketEscalatedError, VCSError
from .git_utils import (
    branch_name_for,
    create_branch,
    create_pull_request,
    current_branch,
    pull_request_body,
    ticket_id_from_branch,
)
from .linear import TicketTracker
from .models import IterationProgress, ManagerRunState, RunOutcome, RunResult, Ticket
from .state import ManagerStateStore

RunWorkflow = Callable[[int, ProgressCallback], RunResult]
PrepareTaskList = Callable[[str], Path]


def progress_comment(progress: IterationProgress) -> str:
    """Markdown summary of one finished iteration for the ticket thread."""
    parts = [f"**Iteration {progress.iteration}/{progress.max_iterations} completed**"]
    if progress.steps_completed:
        parts.append("\n**Steps completed:**")
        parts.extend(f"- ✅ {step}" for step in progress.steps_completed)
    if progress.commit_message:
        parts.append(f"\n**Commit:** `{progress.commit_message.splitlines()[0]}`")
    if progress.files_changed:
        parts.append(f"\n**Files changed:** {len(progress.files_changed)}")
        shown = progress.files_changed[:MAX_FILES_IN_PROGRESS_COMMENT]
        parts.extend(f"- `{path}`" for path in shown)
        hidden = len(progress.files_changed) - len(shown)
        if hidden > 0:
            parts.append(f"- ... and {hidden} more")
    return "\n".join(parts)


def start_comment(branch: str, prd_text: str) -> str:
    parts = [f"Starting work on branch: `{branch}`"]
    if prd_text.strip():
        parts.extend(["\n\n**PRD:**", "```markdown", prd_text.strip(), "```"])
    return "\n".join(parts)


class TicketQueueManager:
    """Move tickets `Todo -> In Progress -> Done`, escalating back to `Todo`.

    For each ticket a branch is checked out, a PRD is generated from the
    ticket, and ``run_workflow`` drives the controller. Any failure, a blocked
    run or an exhausted budget posts an escalation comment, returns the ticket
    to `Todo` and raises :class:`TicketEscalatedError`; the queue stops so a
    human can look. A failed pull request is only a warning.
    """

    def __init__(
        self,
        tracker: TicketTracker,
        config: ManagerConfig,
        project_dir: Path,
        *,
        max_iterations: int,
        run_workflow: RunWorkflow,
        prepare_task_list: PrepareTaskList,
        state_store: Optional[ManagerStateStore] = None,
        create_branch_fn: Callable[..., str] = create_branch,
        create_pull_request_fn: Callable[..., str] = create_pull_request,
        current_branch_fn: Callable[[Path], Optional[str]] = current_branch,
        sleep: Callable[[float], None] = time.sleep,
        max_tickets: Optional[int] = None,
    ):
        self.tracker = tracker
        self.config = config
        self.project_dir = project_dir
        self.max_iterations = max_iterations
        self.run_workflow = run_workflow
        self.prepare_task_list = prepare_task_list
        self.state_store = state_store or ManagerStateStore.for_project(project_dir)
        self.create_branch = create_branch_fn
        self.create_pull_request = create_pull_request_fn
        self.current_branch = current_branch_fn
        self.sleep = sleep
        self.max_tickets = max_tickets

    def _in_progress(self, ticket_id: str) -> bool:
        try:
            return self.tracker.verify_ticket_state(ticket_id, LINEAR_STATE_IN_PROGRESS)
        except TicketAPIError as exc:
            logger.warning("Could not verify ticket state for {}: {}", ticket_id, exc)
            return False

    def recover(self) -> Optional[ManagerRunState]:
        """Find the ticket a previous process left in flight.

        The saved manager state wins when its ticket is still `In Progress`;
        otherwise the checked-out branch is matched against the ticket branch
        pattern and verified the same way.
        """
        saved = self.state_store.load()
        if saved is not None:
            if self._in_progress(saved.ticket_id):
                logger.info(
                    "Resuming ticket {} on branch {} (last reported iteration {})",
                    saved.ticket_id,
                    saved.branch_name,
                    saved.iteration_cursor,
                )
                return saved
            logger.warning("Resume state invalid (ticket not in '{}'), discarding it", LINEAR_STATE_IN_PROGRESS)
            self.state_store.clear()

        branch = self.current_branch(self.project_dir)
        ticket_id = ticket_id_from_branch(branch or "")
        if ticket_id is None or not self._in_progress(ticket_id):
            return None
        logger.info("Detected in-progress ticket from branch {}, resuming", branch)
        state = ManagerRunState(ticket_id=ticket_id, branch_name=str(branch), iteration_cursor=1)
        self.state_store.save(state)
        return state

    def _comment(self, ticket: Ticket, body: str, *, mention: bool = False) -> None:
        mentions = [self.config.escalate_user] if mention else None
        try:
            self.tracker.add_comment(ticket.id, body, mentions)
        except TicketAPIError as exc:
            logger.warning("Failed to add comment to {}: {}", ticket.identifier or ticket.id, exc)

    def _escalate(self, ticket: Ticket, body: str, *, revert: bool = True) -> None:
        self._comment(ticket, body, mention=True)
        if revert:
            try:
                self.tracker.update_ticket_state(ticket, LINEAR_STATE_TODO)
            except TicketAPIError as exc:
                logger.warning("Failed to move {} back to {}: {}", ticket.identifier or ticket.id, LINEAR_STATE_TODO, exc)
        self.state_store.clear()
        logger.error("Escalated {} to {}", ticket.identifier or ticket.id, self.config.escalate_user)

    def _start_ticket(self, ticket: Ticket) -> tuple[str, str]:
        """Branch, PRD, start comment and `In Progress` for a fresh ticket.

        Returns:
            The branch name and the base branch it was cut from.
        """
        label = LINEAR_PRIORITY_LABELS.get(ticket.priority, str(ticket.priority))
        logger.info("Selected ticket {} {} (priority: {})", ticket.identifier, ticket.title, label)
        branch = branch_name_for(ticket.id, ticket.title)
        try:
            base = self.create_branch(self.project_dir, branch, self.config.base_branch)
        except VCSError as exc:
            self._escalate(ticket, f"❌ Error creating branch:\n\n**Error:** {exc}\n**Branch:** `{branch}`", revert=False)
            raise TicketEscalatedError(f"Failed to create git branch for {ticket.identifier}: {exc}") from exc

        try:
            prd_file = self.prepare_task_list(f"{ticket.title}\n\n{ticket.description}".strip())
        except RalphError as exc:
            self._escalate(
                ticket, f"❌ Error creating PRD for ticket:\n\n**Error:** {exc}\n**Branch:** `{branch}`", revert=False
            )
            raise TicketEscalatedError(f"Failed to create PRD for {ticket.identifier}: {exc}") from exc

        try:
            prd_text = prd_file.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not read {} for the start comment: {}", prd_file, exc)
            prd_text = ""
        self._comment(ticket, start_comment(branch, prd_text), mention=True)

        try:
            self.tracker.update_ticket_state(ticket, LINEAR_STATE_IN_PROGRESS)
        except TicketAPIError as exc:
            self._escalate(ticket, f"❌ Could not move ticket to {LINEAR_STATE_IN_PROGRESS}:\n\n**Error:** {exc}")
            raise TicketEscalatedError(f"Failed to start {ticket.identifier}: {exc}") from exc

        self.state_store.save(ManagerRunState(ticket_id=ticket.id, branch_name=branch, iteration_cursor=1))
        return branch, base

    def _resume_ticket(self, state: ManagerRunState) -> Optional[tuple[Ticket, str, str]]:
        try:
            ticket = self.tracker.get_ticket(state.ticket_id)
        except TicketAPIError as exc:
            logger.warning("Resume ticket {} could not be fetched ({}), starting fresh", state.ticket_id, exc)
            self.state_store.clear()
            return None
        try:
            base = self.create_branch(self.project_dir, state.branch_name, self.config.base_branch)
        except VCSError as exc:
            self._escalate(
                ticket, f"❌ Error checking out branch to resume:\n\n**Error:** {exc}\n**Branch:** `{state.branch_name}`"
            )
            return None
        return ticket, state.branch_name, base

    def _progress_reporter(self, ticket: Ticket, branch: str) -> ProgressCallback:
        def report(progress: IterationProgress) -> None:
            self.state_store.save(
                ManagerRunState(ticket_id=ticket.id, branch_name=branch, iteration_cursor=progress.iteration)
            )
            self.tracker.add_comment(ticket.id, progress_comment(progress))

        return report

    def _finish_ticket(self, ticket: Ticket, branch: str, base: str) -> Optional[str]:
        pr_url: Optional[str] = None
        title = f"{ticket.identifier}: {ticket.title}" if ticket.identifier else ticket.title
        try:
            pr_url = self.create_pull_request(
                self.project_dir,
                branch=branch,
                base_branch=base,
                title=title,
                body=pull_request_body(ticket_url=ticket.url, description=ticket.description, branch=branch),
            )
            logger.success("Pull request created: {}", pr_url)
        except VCSError as exc:
            logger.warning("Failed to create pull request: {}", exc)
            self._comment(
                ticket,
                f"⚠️ Work completed but failed to create pull request:\n\n**Error:** {exc}\n**Branch:** `{branch}`",
                mention=True,
            )

        success = [f"✅ Work completed successfully on branch: `{branch}`"]
        if pr_url:
            success.append(f"\n**Pull Request:** {pr_url}")
        self._comment(ticket, "\n".join(success))

        try:
            self.tracker.update_ticket_state(ticket, LINEAR_STATE_DONE)
        except TicketAPIError as exc:
            self._escalate(
                ticket, f"⚠️ Work completed but the ticket could not be moved to {LINEAR_STATE_DONE}:\n\n**Error:** {exc}"
            )
            raise TicketEscalatedError(f"Failed to complete {ticket.identifier}: {exc}") from exc
        self.state_store.clear()
        logger.success("Ticket {} completed", ticket.identifier or ticket.title)
        return pr_url

    def work_ticket(self, ticket: Ticket, branch: str, base: str) -> Optional[str]:
        """Run the controller for an `In Progress` ticket and settle its state.

        Returns:
            The pull request URL, or None when the PR could not be opened.

        Raises:
            TicketEscalatedError: The run failed, was blocked or hit its budget.
        """
        try:
            result = self.run_workflow(self.max_iterations, self._progress_reporter(ticket, branch))
        except RalphError as exc:
            self._escalate(ticket, f"❌ Error during ralph execution:\n\n**Error:** {exc}\n**Branch:** `{branch}`")
            raise TicketEscalatedError(f"Ralph execution failed for {ticket.identifier}: {exc}") from exc

        if result.outcome == RunOutcome.BLOCKED:
            unit = result.blocked_unit.label if result.blocked_unit else "A unit"
            self._escalate(
                ticket,
                f"🚫 {unit} reported it is blocked in iteration {result.iteration}/{result.max_iterations}.\n\n"
                f"**Branch:** `{branch}`\n\nPlease resolve the blocker and move the ticket back to Todo.",
            )
            raise TicketEscalatedError(f"Ticket {ticket.identifier} is blocked")

        if result.outcome == RunOutcome.ITERATION_LIMIT:
            self._escalate(
                ticket,
                f"⚠️ Iteration limit ({self.max_iterations}) reached but PRD not complete.\n\n"
                f"**Branch:** `{branch}`\n\nPlease review and continue manually.",
            )
            raise TicketEscalatedError(f"Iteration limit reached without completing {ticket.identifier}")

        return self._finish_ticket(ticket, branch, base)

    def run(self) -> int:
        """Work tickets until ``max_tickets`` are done (forever when unset).

        Returns:
            The number of tickets completed.
        """
        resume = self.recover()
        completed = 0
        while self.max_tickets is None or completed < self.max_tickets:
            if resume is not None:
                resumed = self._resume_ticket(resume)
                resume = None
                if resumed is None:
                    continue
                ticket, branch, base = resumed
            else:
                tickets = self.tracker.fetch_todo_tickets(self.config.project)
                if not tickets:
                    logger.info("No {} tickets found. Checking again in {}s", LINEAR_STATE_TODO, self.config.poll_seconds)
                    self.sleep(self.config.poll_seconds)
                    continue
                ticket = tickets[0]
                branch, base = self._start_ticket(ticket)

            self.work_ticket(ticket, branch, base)
            completed += 1
        return completed
