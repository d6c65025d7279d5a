"""Execute a worker provider and capture logs/artifacts."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from shutil import which
from typing import Callable, Optional, Protocol

from loguru import logger

from ..errors import ConfigError
from ..io_utils import _read_text_tail
from ..utils import _now_iso
from ..worker import _run_worker_process
from .config import WorkerProviderSpec, WorkersRuntimeConfig, resolve_worker_for_unit
from .output import StreamJsonCollector

TextSink = Callable[[str], None]


@dataclass(frozen=True)
class WorkerRunResult:
    provider: str
    prompt_path: str
    stdout_path: str
    stderr_path: str
    start_time: str
    end_time: str
    runtime_seconds: int
    exit_code: int
    timed_out: bool
    response_text: str = ""
    stderr_text: str = ""
    stream_error: str = ""
    launch_error: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.launch_error


class Worker(Protocol):
    """Anything that can run one prompt to completion under a deadline."""

    def run(
        self,
        *,
        unit: str,
        system_prompt: str,
        prompt: str,
        timeout_seconds: int,
        run_dir: Path,
    ) -> WorkerRunResult: ...


def _not_launched(spec: WorkerProviderSpec, run_dir: Path, prompt_path: Path, reason: str) -> WorkerRunResult:
    now = _now_iso()
    return WorkerRunResult(
        provider=spec.name,
        prompt_path=str(prompt_path),
        stdout_path=str(run_dir / "stdout.log"),
        stderr_path=str(run_dir / "stderr.log"),
        start_time=now,
        end_time=now,
        runtime_seconds=0,
        exit_code=127,
        timed_out=False,
        launch_error=reason,
    )


def _command_parts(spec: WorkerProviderSpec, *, prompt: str, prompt_path: Path, system_prompt_path: Path,
                   project_dir: Path) -> tuple[list[str], bool]:
    """Expand a `command` provider template; returns (argv, wants_stdin).

    The template is tokenized before placeholders are filled in, so each
    substituted value stays a single argument whatever quotes it contains.
    """
    try:
        template = shlex.split(spec.command)
    except ValueError as exc:
        raise ConfigError(f"Worker command for '{spec.name}' cannot be parsed: {exc}") from exc
    values = {
        "prompt_file": str(prompt_path),
        "system_prompt_file": str(system_prompt_path),
        "project_dir": str(project_dir),
        "prompt": prompt,
    }
    try:
        parts = [part.format(**values) for part in template]
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigError(f"Unknown placeholder in worker command for '{spec.name}': {exc}") from exc
    uses_placeholder = "{prompt_file}" in spec.command or "{prompt}" in spec.command
    wants_stdin = "-" in template
    if not uses_placeholder and not wants_stdin:
        raise ConfigError(
            f"Worker command for '{spec.name}' must include {{prompt_file}}, {{prompt}}, or '-' to accept stdin input."
        )
    return parts, wants_stdin and not uses_placeholder


def run_worker(
    *,
    spec: WorkerProviderSpec,
    system_prompt: str,
    prompt: str,
    project_dir: Path,
    run_dir: Path,
    timeout_seconds: int,
    on_text: Optional[TextSink] = None,
) -> WorkerRunResult:
    """Run the selected provider and return a normalized run result."""
    run_dir.mkdir(parents=True, exist_ok=True)
    prompt_path = run_dir / "prompt.txt"
    system_prompt_path = run_dir / "system_prompt.txt"
    prompt_path.write_text(prompt, encoding="utf-8")
    system_prompt_path.write_text(system_prompt, encoding="utf-8")

    if spec.type == "claude":
        if not which(spec.command):
            return _not_launched(spec, run_dir, prompt_path, f"{spec.command} command not found in PATH")
        logger.info("Starting Claude worker provider='{}' (timeout={}s)", spec.name, timeout_seconds)
        collector = StreamJsonCollector(on_text=on_text)
        command = [spec.command, "--system-prompt", system_prompt, *spec.flags, "-p", prompt]
        run_result = _run_worker_process(
            command,
            project_dir=project_dir,
            run_dir=run_dir,
            timeout_seconds=timeout_seconds,
            on_stdout_line=collector.feed_line,
        )
        stderr_text = _read_text_tail(Path(run_result["stderr_path"]))
        response_text = collector.response_text(stderr_text)
        stream_error = collector.stream_error
    elif spec.type == "command":
        parts, wants_stdin = _command_parts(
            spec,
            prompt=prompt,
            prompt_path=prompt_path,
            system_prompt_path=system_prompt_path,
            project_dir=project_dir,
        )
        if not parts or not which(parts[0]):
            exe = parts[0] if parts else spec.command
            return _not_launched(spec, run_dir, prompt_path, f"{exe} command not found in PATH")
        logger.info("Starting command worker provider='{}' (timeout={}s)", spec.name, timeout_seconds)
        run_result = _run_worker_process(
            parts,
            project_dir=project_dir,
            run_dir=run_dir,
            timeout_seconds=timeout_seconds,
            stdin_text=f"{system_prompt}\n\n{prompt}" if wants_stdin else None,
            on_stdout_line=on_text,
        )
        stderr_text = _read_text_tail(Path(run_result["stderr_path"]))
        response_text = Path(run_result["stdout_path"]).read_text(encoding="utf-8", errors="replace")
        stream_error = ""
    else:
        raise ConfigError(f"Unsupported worker type '{spec.type}'")

    return WorkerRunResult(
        provider=spec.name,
        prompt_path=str(prompt_path),
        stdout_path=str(run_result["stdout_path"]),
        stderr_path=str(run_result["stderr_path"]),
        start_time=str(run_result["start_time"]),
        end_time=str(run_result["end_time"]),
        runtime_seconds=int(run_result["runtime_seconds"]),
        exit_code=int(run_result["exit_code"]),
        timed_out=bool(run_result["timed_out"]),
        response_text=response_text,
        stderr_text=stderr_text.strip(),
        stream_error=stream_error,
    )


class ProviderWorker:
    """Route each unit to its configured provider and run it in the project directory."""

    def __init__(self, runtime: WorkersRuntimeConfig, project_dir: Path, on_text: Optional[TextSink] = None):
        self.runtime = runtime
        self.project_dir = project_dir
        self.on_text = on_text

    def spec_for(self, unit: str) -> WorkerProviderSpec:
        return resolve_worker_for_unit(self.runtime, unit)

    def run(
        self,
        *,
        unit: str,
        system_prompt: str,
        prompt: str,
        timeout_seconds: int,
        run_dir: Path,
    ) -> WorkerRunResult:
        return run_worker(
            spec=self.spec_for(unit),
            system_prompt=system_prompt,
            prompt=prompt,
            project_dir=self.project_dir,
            run_dir=run_dir,
            timeout_seconds=timeout_seconds,
            on_text=self.on_text,
        )
