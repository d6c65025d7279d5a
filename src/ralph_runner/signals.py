"""Detect sentinel markers in worker output."""

from __future__ import annotations

from dataclasses import dataclass

from .constants import MARKER_BLOCKED, MARKER_COMPLETE, MARKER_COMPLIANT


@dataclass(frozen=True)
class Signals:
    blocked: bool = False
    complete: bool = False
    compliant: bool = False


def detect_signals(text: str) -> Signals:
    """Scan worker text for the blocked/complete/compliant markers.

    A completion marker wins: when both markers appear the unit is treated as
    complete and not blocked.
    """
    text = text or ""
    complete = MARKER_COMPLETE in text
    blocked = MARKER_BLOCKED in text and not complete
    return Signals(blocked=blocked, complete=complete, compliant=MARKER_COMPLIANT in text)
