"""Exception types raised across the runner."""

from __future__ import annotations

from typing import Optional

from .constants import ERROR_CATEGORY_TIMEOUT, ERROR_CATEGORY_UNKNOWN


class RalphError(Exception):
    """Base class for all runner errors."""


class ConfigError(RalphError):
    """Raised when a config file is missing required values or cannot be parsed."""


class RunAlreadyActiveError(RalphError):
    """Raised when another orchestrator holds the working directory lock."""


class CheckpointCorruptError(RalphError):
    """Raised when a checkpoint record cannot be parsed or fails validation."""


class WorkerError(RalphError):
    """A worker invocation ended without producing a usable result."""

    def __init__(
        self,
        message: str,
        *,
        category: str = ERROR_CATEGORY_UNKNOWN,
        suggestion: str = "",
        unit: Optional[str] = None,
        technical: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.suggestion = suggestion
        self.unit = unit
        self.technical = technical

    def render(self) -> str:
        """Format the error with its suggestion for console output."""
        lines = [self.message]
        for line in self.suggestion.splitlines():
            if line.strip():
                lines.append(f"   {line}")
        if self.technical and self.message.lower() not in self.technical.lower():
            lines.append(f"   Technical details: {self.technical}")
        return "\n".join(lines)


class WorkerTimeoutError(WorkerError):
    """Every attempt of a unit hit its deadline."""

    def __init__(self, message: str, *, attempts: int, unit: Optional[str] = None) -> None:
        super().__init__(
            message,
            category=ERROR_CATEGORY_TIMEOUT,
            suggestion=(
                "The request took too long to complete. This may be due to a slow "
                "connection, API issues, or a very complex request."
            ),
            unit=unit,
        )
        self.attempts = attempts


class WorkerFatalError(WorkerError):
    """A non-timeout worker failure; never retried."""


class TicketAPIError(RalphError):
    """Raised when the ticket tracker rejects a request or is unreachable."""


class TicketEscalatedError(RalphError):
    """Raised after a ticket was handed back to a human (comment, back to Todo)."""


class VCSError(RalphError):
    """Raised when a git or GitHub CLI operation fails."""


class PullRequestError(VCSError):
    """Raised when a pull request cannot be created or looked up."""
