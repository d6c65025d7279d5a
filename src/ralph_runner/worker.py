from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .utils import _now_iso

# Seconds given to a terminated worker before it is killed.
KILL_GRACE_SECONDS = 5
POLL_INTERVAL_SECONDS = 1


def _stream_pipe(pipe: Any, file_path: Path, on_line: Optional[Callable[[str], None]] = None) -> None:
    with open(file_path, "w", encoding="utf-8") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
            if on_line is not None:
                on_line(line)
    pipe.close()


def _stop_process(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def _run_worker_process(
    command_parts: list[str],
    *,
    project_dir: Path,
    run_dir: Path,
    timeout_seconds: int,
    stdin_text: Optional[str] = None,
    on_stdout_line: Optional[Callable[[str], None]] = None,
) -> dict[str, Any]:
    """Run one worker subprocess under a deadline, teeing its pipes to the run dir.

    Output is drained by reader threads into `stdout.log` / `stderr.log`; the
    calling thread only waits on the deadline. When the deadline fires the
    process is terminated, then killed after a short grace period.
    """
    run_dir.mkdir(parents=True, exist_ok=True)
    stdout_path = run_dir / "stdout.log"
    stderr_path = run_dir / "stderr.log"
    start_time = time.monotonic()
    start_iso = _now_iso()
    timed_out = False

    process = subprocess.Popen(
        command_parts,
        cwd=project_dir,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )
    logger.debug("Worker process started pid={} command={}", process.pid, command_parts[0])

    stdout_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stdout, stdout_path, on_stdout_line),
        daemon=True,
    )
    stderr_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stderr, stderr_path, None),
        daemon=True,
    )
    stdout_thread.start()
    stderr_thread.start()

    if stdin_text is not None and process.stdin:
        try:
            process.stdin.write(stdin_text)
            process.stdin.flush()
            process.stdin.close()
        except BrokenPipeError:
            logger.warning("Worker closed stdin before the prompt was fully written")

    while True:
        elapsed = time.monotonic() - start_time
        if elapsed > timeout_seconds:
            timed_out = True
            logger.warning("Worker exceeded {}s deadline; terminating pid={}", timeout_seconds, process.pid)
            _stop_process(process)
            break
        try:
            process.wait(timeout=min(POLL_INTERVAL_SECONDS, max(timeout_seconds - elapsed, 0.05)))
            break
        except subprocess.TimeoutExpired:
            continue

    exit_code = process.poll()
    if exit_code is None:
        exit_code = -1

    stdout_thread.join(timeout=KILL_GRACE_SECONDS)
    stderr_thread.join(timeout=KILL_GRACE_SECONDS)

    return {
        "stdout_path": str(stdout_path),
        "stderr_path": str(stderr_path),
        "start_time": start_iso,
        "end_time": _now_iso(),
        "runtime_seconds": int(time.monotonic() - start_time),
        "exit_code": exit_code,
        "timed_out": timed_out,
    }
