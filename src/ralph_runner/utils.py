"""Provide small helpers for timestamps, integers and slugs."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

_SLUG_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_SLUG_DASH_RUNS = re.compile(r"-+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")


def _coerce_int(value: Any) -> Optional[int]:
    """Parse an int from config/state values, returning None when it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def slugify(text: str) -> str:
    """Turn a ticket title into a branch-safe slug.

    Lowercases, maps spaces to dashes, drops anything outside ``[a-z0-9-]``,
    collapses dash runs and trims leading/trailing dashes.
    """
    slug = str(text or "").lower().replace(" ", "-")
    slug = _SLUG_INVALID_CHARS.sub("", slug)
    slug = _SLUG_DASH_RUNS.sub("-", slug)
    return slug.strip("-")


def _truncate(text: str, max_chars: int, suffix: str = "\n\n... (truncated)") -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + suffix
