from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES
from .errors import RunAlreadyActiveError


class FileLock:
    """Cross-platform exclusive file lock.

    With ``blocking=False`` the lock is only tried once and
    :class:`RunAlreadyActiveError` is raised when another process holds it.
    """

    def __init__(self, lock_path: Path, blocking: bool = True):
        self.lock_path = lock_path
        self.blocking = blocking
        self.handle: Optional[Any] = None
        self.lock_bytes = WINDOWS_LOCK_BYTES

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.handle = open(self.lock_path, "w")
        try:
            self._acquire()
        except OSError as exc:
            self.handle.close()
            self.handle = None
            raise RunAlreadyActiveError(
                f"Another ralph process is already running in {self.lock_path.parent.parent}"
            ) from exc
        return self

    def _acquire(self) -> None:
        try:
            import fcntl
        except ImportError:
            if os.name == "nt":
                import msvcrt
                mode = msvcrt.LK_LOCK if self.blocking else msvcrt.LK_NBLCK
                self.handle.seek(0)
                self.handle.truncate(self.lock_bytes)
                self.handle.flush()
                msvcrt.locking(self.handle.fileno(), mode, self.lock_bytes)
            return
        flags = fcntl.LOCK_EX if self.blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        fcntl.flock(self.handle, flags)

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.handle:
            return
        try:
            import fcntl
            fcntl.flock(self.handle, fcntl.LOCK_UN)
        except ImportError:
            if os.name == "nt":
                import msvcrt
                self.handle.seek(0)
                msvcrt.locking(self.handle.fileno(), msvcrt.LK_UNLCK, self.lock_bytes)
        self.handle.close()
        self.handle = None


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    A missing file is not an error; parse and IO failures are reported so the
    caller can refuse to continue on a broken config.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _read_text_tail(path: Path, max_chars: int = 4000) -> str:
    """Last ``max_chars`` characters of a worker log; empty when it cannot be read."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return text[-max_chars:] if max_chars > 0 else ""
