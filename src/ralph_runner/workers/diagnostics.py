"""Worker diagnostics: executable checks and failure classification."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from shutil import which

from ..constants import (
    ERROR_CATEGORY_API,
    ERROR_CATEGORY_AUTH,
    ERROR_CATEGORY_NETWORK,
    ERROR_CATEGORY_RATE_LIMIT,
    ERROR_CATEGORY_TIMEOUT,
    ERROR_CATEGORY_UNKNOWN,
)
from .config import WorkerProviderSpec

_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication",
    "unauthorized",
    "invalid api key",
    "api key",
    "not authenticated",
    "auth",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "connection",
    "timeout",
    "dns",
    "refused",
    "no such host",
)
_API_ERROR_PATTERNS: tuple[str, ...] = (
    "api error",
    "bad request",
    "400",
    "500",
    "502",
    "503",
    "internal server error",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "deadline exceeded",
)


@dataclass(frozen=True)
class FailureDetails:
    category: str
    message: str
    suggestion: str


def worker_executable(spec: WorkerProviderSpec) -> str:
    if spec.type == "claude":
        return spec.command
    parts = shlex.split(spec.command)
    return parts[0] if parts else ""


def check_worker(spec: WorkerProviderSpec) -> tuple[bool, str]:
    """Check that a provider's executable can be found on PATH."""
    exe = worker_executable(spec)
    if not exe:
        return False, "Missing command"
    if which(exe):
        return True, f"Found executable in PATH: {exe}"
    return False, f"Executable not found in PATH: {exe}"


def _first_match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in text:
            return pattern
    return None


def classify_worker_failure(*, stderr: str, stream_error: str = "") -> FailureDetails:
    """Map worker stderr and in-stream errors to a category with an operator hint.

    Rules are checked in order: authentication, rate limit, network, API error,
    timeout; anything else is ``unknown``.
    """
    combined = f"{stderr} {stream_error}".lower()
    stderr = stderr.strip()

    if _first_match(combined, _AUTH_PATTERNS):
        return FailureDetails(
            category=ERROR_CATEGORY_AUTH,
            message="Worker API authentication error",
            suggestion="The worker CLI could not authenticate. Please check your API key.\nRun: claude auth login",
        )
    if _first_match(combined, _RATE_LIMIT_PATTERNS):
        return FailureDetails(
            category=ERROR_CATEGORY_RATE_LIMIT,
            message="Worker API rate limit exceeded",
            suggestion="Too many requests. Please wait a few minutes and try again.",
        )
    if _first_match(combined, _NETWORK_PATTERNS):
        return FailureDetails(
            category=ERROR_CATEGORY_NETWORK,
            message="Network connection error",
            suggestion="Unable to reach the worker API. Please check your internet connection and try again.",
        )
    if _first_match(combined, _API_ERROR_PATTERNS):
        return FailureDetails(
            category=ERROR_CATEGORY_API,
            message="Worker API error",
            suggestion=(
                f"The API returned an error. Details: {stderr}"
                if stderr
                else "The API returned an error. Please try again later."
            ),
        )
    if _first_match(combined, _TIMEOUT_PATTERNS):
        return FailureDetails(
            category=ERROR_CATEGORY_TIMEOUT,
            message="Request timeout",
            suggestion="The request took too long to complete. This may be due to a slow connection or API issues.",
        )
    return FailureDetails(
        category=ERROR_CATEGORY_UNKNOWN,
        message="Worker command failed",
        suggestion=(
            f"An unexpected error occurred. Error details: {stderr}"
            if stderr
            else "An unexpected error occurred. Please check your worker CLI configuration and try again."
        ),
    )

