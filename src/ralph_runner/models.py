"""Define run state, unit and ticket models shared by the controller and the manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Unit(str, Enum):
    """Enumerate the fixed units of work, in checkpoint order."""

    PLAN = "plan"
    IMPLEMENT = "implement"
    GUARDRAIL = "guardrail"
    CLEANUP = "cleanup"
    COMMIT = "commit"
    REFACTOR = "refactor"
    SELF_IMPROVEMENT = "self_improvement"

    @property
    def number(self) -> int:
        """1-based position used as the persisted step cursor."""
        return UNIT_SEQUENCE.index(self) + 1

    @property
    def label(self) -> str:
        return UNIT_LABELS[self]

    @classmethod
    def from_number(cls, number: int) -> "Unit":
        """Resolve a persisted step cursor.

        Raises:
            ValueError: If ``number`` does not name a unit.
        """
        if not 1 <= number <= len(UNIT_SEQUENCE):
            raise ValueError(f"Unknown step number: {number}")
        return UNIT_SEQUENCE[number - 1]


UNIT_SEQUENCE: tuple[Unit, ...] = (
    Unit.PLAN,
    Unit.IMPLEMENT,
    Unit.GUARDRAIL,
    Unit.CLEANUP,
    Unit.COMMIT,
    Unit.REFACTOR,
    Unit.SELF_IMPROVEMENT,
)

UNIT_LABELS: dict[Unit, str] = {
    Unit.PLAN: "Planning",
    Unit.IMPLEMENT: "Implementation and validation",
    Unit.GUARDRAIL: "Guardrail verification",
    Unit.CLEANUP: "Cleanup and documentation",
    Unit.COMMIT: "Commit",
    Unit.REFACTOR: "Agents refactor",
    Unit.SELF_IMPROVEMENT: "Self-improvement",
}


class RunOutcome(str, Enum):
    """Terminal result of a controller run."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    ITERATION_LIMIT = "iteration_limit"


@dataclass
class RunState:
    """Checkpoint record written around every unit.

    ``current_step`` is the unit to run (or resume at); ``last_completed_step``
    is the number of the last unit finished in the current Workflow A pass,
    or 0.
    """

    iteration: int
    max_iterations: int
    current_step: Optional[Unit] = None
    last_completed_step: int = 0
    outstanding_before_review: Optional[int] = None
    # Older records only track whole workflows (0 none, 1 = A, 2 = B).
    last_completed_workflow: Optional[int] = None


@dataclass
class StepOutcome:
    """Normalized result of one successful unit execution."""

    unit: Unit
    raw_text: str
    succeeded: bool = True
    signaled_blocked: bool = False
    signaled_complete: bool = False
    signaled_compliant: bool = False
    attempts: int = 1


@dataclass
class RunResult:
    """What a controller run ended with."""

    outcome: RunOutcome
    iteration: int
    max_iterations: int
    blocked_unit: Optional[Unit] = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome == RunOutcome.COMPLETED else 1


@dataclass
class IterationProgress:
    """Summary handed to the progress callback after each completed iteration."""

    iteration: int
    max_iterations: int
    steps_completed: list[str] = field(default_factory=list)
    commit_message: str = ""
    files_changed: list[str] = field(default_factory=list)


@dataclass
class ResumePoint:
    """Where the controller should start, as decided from the checkpoint."""

    iteration: int
    # None: the review workflow has finished and only the convergence check remains.
    unit: Optional[Unit] = Unit.PLAN
    resumed: bool = False
    last_completed_step: int = 0
    outstanding_before_review: Optional[int] = None
    reason: str = ""


@dataclass
class Ticket:
    """Read-only view of a tracker issue."""

    id: str
    identifier: str
    title: str
    description: str = ""
    priority: int = 0
    team_id: str = ""
    state_name: str = ""
    url: str = ""

    @classmethod
    def from_node(cls, node: dict[str, Any]) -> "Ticket":
        """Build a ticket from a Linear GraphQL issue node."""
        team = node.get("team") if isinstance(node.get("team"), dict) else {}
        state = node.get("state") if isinstance(node.get("state"), dict) else {}
        priority = node.get("priority")
        return cls(
            id=str(node.get("id") or ""),
            identifier=str(node.get("identifier") or ""),
            title=str(node.get("title") or ""),
            description=str(node.get("description") or ""),
            priority=int(priority) if isinstance(priority, (int, float)) else 0,
            team_id=str(team.get("id") or ""),
            state_name=str(state.get("name") or ""),
            url=str(node.get("url") or ""),
        )

    @property
    def sort_key(self) -> tuple[int, str]:
        # Linear uses 0 for "no priority"; it sorts after Low (4).
        return (self.priority if self.priority > 0 else 99, self.identifier)


@dataclass
class ManagerRunState:
    """Ticket currently being worked, persisted for crash recovery."""

    ticket_id: str
    branch_name: str
    iteration_cursor: int = 0
