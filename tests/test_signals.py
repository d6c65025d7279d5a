"""Test sentinel marker detection."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner.signals import detect_signals


def test_plain_text_has_no_signals() -> None:
    signals = detect_signals("Implemented task 3, all tests pass.")
    assert not signals.blocked
    assert not signals.complete
    assert not signals.compliant


def test_blocked_marker_detected() -> None:
    signals = detect_signals("Cannot continue.\n<promise>BLOCKED</promise>\n")
    assert signals.blocked
    assert not signals.complete


def test_complete_wins_over_blocked() -> None:
    """When both markers appear the unit is complete and not blocked."""
    signals = detect_signals("<promise>BLOCKED</promise> ... <promise>COMPLETE</promise>")
    assert signals.complete
    assert not signals.blocked


def test_compliant_marker_is_independent() -> None:
    signals = detect_signals("<promise>COMPLIANT</promise>")
    assert signals.compliant
    assert not signals.blocked
    assert not signals.complete


def test_none_text_is_tolerated() -> None:
    assert detect_signals(None) == detect_signals("")  # type: ignore[arg-type]
