#!/usr/bin/env python3
"""Provide the `ralph` CLI entrypoint and its subcommands.

`ralph <iterations>` drives the plan/implement/commit loop in the current
project; `ralph manager <config>` works a queue of Linear tickets.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import (
    get_max_retries,
    get_self_improvement_every,
    get_unit_timeouts,
    load_manager_config,
    load_runner_config,
)
from .constants import (
    LINEAR_PRIORITY_LABELS,
    LOCK_FILE,
    STATE_DIR_NAME,
    STOP_RESOLUTION_STEPS,
)
from .controller import ProgressCallback, WorkflowController
from .errors import ConfigError, RalphError, TicketAPIError, VCSError, WorkerError
from .executor import RetryingStepExecutor
from .git_utils import validate_git_setup
from .io_utils import FileLock
from .linear import LinearClient
from .manager import TicketQueueManager
from .models import RunOutcome, RunResult
from .prd import count_incomplete_tasks, create_guardrails, init_project, plan_path, prd_path
from .prompts import export_prompts
from .resume import ResumeDetector
from .state import FileCheckpointStore, ManagerStateStore
from .workers import ProviderWorker, get_workers_runtime_config, resolve_worker_for_unit
from .workers.diagnostics import check_worker

__all__ = ["main"]


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"'{value}' is not a valid number") from exc
    if number < 1:
        raise argparse.ArgumentTypeError("iterations must be at least 1")
    return number


def _add_common_arguments(parser: argparse.ArgumentParser, *, worker: bool = True) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    if worker:
        parser.add_argument(
            "--worker",
            type=str,
            default=None,
            help="Worker provider to use for every unit (overrides .ralph/config.yaml routing)",
        )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description=(
            "Ralph - drive a coding agent through plan, implement, verify, clean up and commit. "
            "Other commands: manager, tickets, init, export-prompts, status."
        ),
    )
    parser.add_argument("iterations", type=_positive_int, help="Maximum number of iterations")
    _add_common_arguments(parser)
    parser.add_argument(
        "--non-interactive",
        "--yes",
        dest="non_interactive",
        action="store_true",
        help="Resume from a checkpoint without asking",
    )
    parser.add_argument("--version", action="version", version=f"ralph {__version__}")
    return parser


def _build_manager_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph manager",
        description="Ralph - work Linear tickets one after another, each on its own branch",
    )
    parser.add_argument("config", type=Path, help="Manager config file (YAML)")
    parser.add_argument("iterations", type=_positive_int, help="Iteration budget per ticket")
    _add_common_arguments(parser)
    return parser


def _build_tickets_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph tickets",
        description="Ralph - list the tickets of the configured Linear project",
    )
    parser.add_argument("config", type=Path, help="Manager config file (YAML)")
    return parser


def _build_init_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph init",
        description="Ralph - create .ralph/PRD.md (generated from a description, or a sample)",
    )
    parser.add_argument("description", nargs="?", default=None, help="What to build")
    parser.add_argument(
        "--guardrails",
        action="store_true",
        help="Also generate GUARDRAILS.md from the project's files",
    )
    _add_common_arguments(parser)
    return parser


def _build_export_prompts_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph export-prompts",
        description="Ralph - write the built-in prompts into .ralph/ for customisation",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph status",
        description="Ralph - show the checkpoint and PRD progress",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _print_error(console: Console, message: str, *, title: str = "Error", steps: Optional[list[str]] = None) -> None:
    body = message
    if steps:
        body += "\n\nResolution steps:\n" + "\n".join(f"{i}. {step}" for i, step in enumerate(steps, 1))
    console.print(Panel(body, title=title, border_style="red"))


def _print_worker_error(console: Console, exc: WorkerError) -> None:
    title = f"{exc.unit} failed ({exc.category})" if exc.unit else f"Worker failed ({exc.category})"
    _print_error(console, exc.render(), title=title, steps=STOP_RESOLUTION_STEPS.get(exc.category))


def _text_sink(console: Console):
    def emit(text: str) -> None:
        console.print(text.rstrip("\n"), markup=False, highlight=False)

    return emit


def _load_config_or_raise(project_dir: Path) -> dict[str, Any]:
    config, err = load_runner_config(project_dir)
    if err:
        raise ConfigError(f"Invalid {STATE_DIR_NAME}/config.yaml: {err}")
    return config


def _build_executor(
    project_dir: Path,
    config: dict[str, Any],
    console: Console,
    worker: Optional[str] = None,
) -> RetryingStepExecutor:
    runtime = get_workers_runtime_config(config=config, cli_worker=worker)
    return RetryingStepExecutor(
        ProviderWorker(runtime, project_dir, on_text=_text_sink(console)),
        project_dir,
        max_retries=get_max_retries(config),
    )


def _run_workflow(
    project_dir: Path,
    max_iterations: int,
    executor: RetryingStepExecutor,
    config: dict[str, Any],
    console: Console,
    *,
    interactive: bool,
    progress_callback: Optional[ProgressCallback] = None,
) -> RunResult:
    store = FileCheckpointStore.for_project(project_dir)
    start = ResumeDetector(store, project_dir, interactive=interactive, console=console).detect(max_iterations)
    controller = WorkflowController(
        executor,
        store,
        project_dir,
        timeouts=get_unit_timeouts(config),
        self_improvement_every=get_self_improvement_every(config),
        progress_callback=progress_callback,
    )
    return controller.run(max_iterations, start)


def _report_result(console: Console, result: RunResult) -> None:
    if result.outcome == RunOutcome.COMPLETED:
        console.print(
            Panel(
                f"PRD complete after iteration {result.iteration}/{result.max_iterations}",
                title="Done",
                border_style="green",
            )
        )
    elif result.outcome == RunOutcome.BLOCKED:
        unit = result.blocked_unit.label if result.blocked_unit else "A unit"
        _print_error(
            console,
            f"{unit} reported it is blocked (iteration {result.iteration}/{result.max_iterations})",
            title="Blocked",
            steps=STOP_RESOLUTION_STEPS["blocked"],
        )
    else:
        _print_error(
            console,
            f"Iteration limit ({result.max_iterations}) reached without completing the PRD",
            title="Iteration limit",
            steps=STOP_RESOLUTION_STEPS["iteration_limit"],
        )


def _run_command(project_dir: Path, iterations: int, *, worker: Optional[str], interactive: bool) -> int:
    project_dir = project_dir.resolve()
    console = Console()
    try:
        with FileLock(project_dir / STATE_DIR_NAME / LOCK_FILE, blocking=False):
            config = _load_config_or_raise(project_dir)
            executor = _build_executor(project_dir, config, console, worker)
            console.print(
                Panel(
                    f"Project: {project_dir}\nIterations: {iterations}\n"
                    f"Open tasks: {count_incomplete_tasks(prd_path(project_dir))}",
                    title=f"ralph {__version__}",
                    border_style="cyan",
                )
            )
            result = _run_workflow(project_dir, iterations, executor, config, console, interactive=interactive)
    except WorkerError as exc:
        _print_worker_error(console, exc)
        return 1
    except RalphError as exc:
        _print_error(console, str(exc))
        return 1

    _report_result(console, result)
    return result.exit_code


def _manager_command(config_path: Path, iterations: int, project_dir: Path, *, worker: Optional[str]) -> int:
    project_dir = project_dir.resolve()
    console = Console()
    try:
        manager_config = load_manager_config(config_path)
        validate_git_setup(project_dir)
        with FileLock(project_dir / STATE_DIR_NAME / LOCK_FILE, blocking=False):
            config = _load_config_or_raise(project_dir)
            executor = _build_executor(project_dir, config, console, worker)
            store = FileCheckpointStore.for_project(project_dir)

            def prepare_task_list(description: str) -> Path:
                # A new ticket never resumes the previous ticket's checkpoint.
                store.clear()
                path, _ = init_project(project_dir, description, executor)
                return path

            def run_workflow(max_iterations: int, progress_callback: ProgressCallback) -> RunResult:
                return _run_workflow(
                    project_dir,
                    max_iterations,
                    executor,
                    config,
                    console,
                    interactive=False,
                    progress_callback=progress_callback,
                )

            manager = TicketQueueManager(
                LinearClient(manager_config.token, api_url=manager_config.api_url),
                manager_config,
                project_dir,
                max_iterations=iterations,
                run_workflow=run_workflow,
                prepare_task_list=prepare_task_list,
            )
            manager.run()
    except VCSError as exc:
        _print_error(console, str(exc), title="Git setup validation failed")
        return 1
    except RalphError as exc:
        _print_error(console, str(exc), title="Manager stopped")
        return 1
    return 0


def _tickets_command(config_path: Path) -> int:
    console = Console()
    try:
        manager_config = load_manager_config(config_path)
    except ConfigError as exc:
        _print_error(console, str(exc))
        return 1
    client = LinearClient(manager_config.token, api_url=manager_config.api_url)

    projects: list[dict[str, Any]] = []
    try:
        projects = client.list_projects()
    except TicketAPIError as exc:
        logger.warning("Could not list projects: {}", exc)
    if projects:
        table = Table(title="Available projects")
        table.add_column("Name")
        table.add_column("Slug")
        table.add_column("ID")
        for project in projects:
            table.add_row(str(project.get("name", "")), str(project.get("slugId", "")), str(project.get("id", "")))
        console.print(table)

    try:
        tickets = client.fetch_project_tickets(manager_config.project)
    except TicketAPIError as exc:
        tip = "Use the project ID (UUID) from the list above, not the slug." if projects else (
            "The project ID must be a UUID, not a slug."
        )
        _print_error(console, f"Failed to fetch tickets for project {manager_config.project}: {exc}\n\nTip: {tip}")
        return 1

    if not tickets:
        console.print("No tickets found in this project.")
        return 0
    table = Table(title=f"{len(tickets)} ticket(s) in project (all states)")
    table.add_column("#", justify="right")
    table.add_column("Identifier")
    table.add_column("Title")
    table.add_column("State")
    table.add_column("Priority")
    table.add_column("URL")
    for index, ticket in enumerate(tickets, 1):
        table.add_row(
            str(index),
            ticket.identifier,
            ticket.title,
            ticket.state_name,
            f"{LINEAR_PRIORITY_LABELS.get(ticket.priority, '?')} ({ticket.priority})",
            ticket.url,
        )
    console.print(table)
    return 0


def _init_command(project_dir: Path, description: Optional[str], *, guardrails: bool, worker: Optional[str]) -> int:
    project_dir = project_dir.resolve()
    console = Console()
    try:
        executor = None
        if description or guardrails:
            executor = _build_executor(project_dir, _load_config_or_raise(project_dir), console, worker)
        path, status = init_project(project_dir, description, executor)
        if status == "existing":
            console.print(f"Using existing PRD at {path}")
        else:
            console.print(f"PRD {status} at {path}")
        if guardrails and executor is not None:
            guardrails_file, created = create_guardrails(project_dir, executor)
            console.print(f"{'Created' if created else 'Kept existing'} {guardrails_file}")
    except WorkerError as exc:
        _print_worker_error(console, exc)
        return 1
    except RalphError as exc:
        _print_error(console, str(exc))
        return 1
    return 0


def _export_prompts_command(project_dir: Path) -> int:
    project_dir = project_dir.resolve()
    written, sample_prd = export_prompts(project_dir)
    for path in written:
        sys.stdout.write(f"Wrote {path}\n")
    if sample_prd:
        sys.stdout.write(f"Wrote sample PRD to {prd_path(project_dir)}\n")
    return 0


def _status_command(project_dir: Path, *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    errors: list[str] = []

    if not state_dir.exists():
        if as_json:
            sys.stdout.write('{"status":"missing_state_dir"}\n')
        else:
            sys.stdout.write(f"No state directory found at {state_dir}\n")
        return 0

    checkpoint: dict[str, Any] | None = None
    try:
        state = FileCheckpointStore.for_project(project_dir).load()
    except RalphError as exc:
        errors.append(str(exc))
        state = None
    if state is not None:
        checkpoint = {
            "iteration": state.iteration,
            "max_iterations": state.max_iterations,
            "current_step": state.current_step.value if state.current_step else None,
            "last_completed_step": state.last_completed_step,
        }

    manager_state = ManagerStateStore.for_project(project_dir).load()
    config, config_err = load_runner_config(project_dir)
    if config_err:
        errors.append(config_err)
    worker_status: dict[str, Any] = {}
    try:
        spec = resolve_worker_for_unit(get_workers_runtime_config(config=config), "plan")
        found, detail = check_worker(spec)
        worker_status = {"name": spec.name, "available": found, "detail": detail}
    except ConfigError as exc:
        errors.append(str(exc))

    payload = {
        "project_dir": str(project_dir),
        "state_dir": str(state_dir),
        "errors": errors,
        "checkpoint": checkpoint,
        "prd_exists": prd_path(project_dir).exists(),
        "open_tasks": count_incomplete_tasks(prd_path(project_dir)),
        "plan_exists": plan_path(project_dir).exists(),
        "manager": (
            {"ticket_id": manager_state.ticket_id, "branch": manager_state.branch_name}
            if manager_state
            else None
        ),
        "worker": worker_status or None,
    }
    if as_json:
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 2 if errors else 0

    sys.stdout.write(f"Project: {project_dir}\n")
    sys.stdout.write(f"State:   {state_dir}\n")
    if errors:
        sys.stdout.write("State errors:\n")
        for err in errors:
            sys.stdout.write(f"- {err}\n")
    if checkpoint:
        sys.stdout.write(
            f"Checkpoint: iteration {checkpoint['iteration']}/{checkpoint['max_iterations']} "
            f"step={checkpoint['current_step'] or '-'}\n"
        )
    else:
        sys.stdout.write("Checkpoint: none\n")
    if payload["prd_exists"]:
        sys.stdout.write(f"Open tasks: {payload['open_tasks']}\n")
    else:
        sys.stdout.write("PRD: missing (run 'ralph init')\n")
    if manager_state:
        sys.stdout.write(f"Ticket:  {manager_state.ticket_id} on {manager_state.branch_name}\n")
    if worker_status:
        sys.stdout.write(f"Worker:  {worker_status['name']} ({worker_status['detail']})\n")
    return 2 if errors else 0


def main(argv: list[str] | None = None) -> None:
    """Run the `ralph` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "manager":
            args = _build_manager_parser().parse_args(argv[1:])
            _configure_logging(args.log_level)
            raise SystemExit(_manager_command(args.config, args.iterations, args.project_dir, worker=args.worker))
        if argv[0] == "tickets":
            args = _build_tickets_parser().parse_args(argv[1:])
            raise SystemExit(_tickets_command(args.config))
        if argv[0] == "init":
            args = _build_init_parser().parse_args(argv[1:])
            _configure_logging(args.log_level)
            raise SystemExit(
                _init_command(
                    args.project_dir,
                    args.description,
                    guardrails=bool(args.guardrails),
                    worker=args.worker,
                )
            )
        if argv[0] == "export-prompts":
            args = _build_export_prompts_parser().parse_args(argv[1:])
            raise SystemExit(_export_prompts_command(args.project_dir))
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.project_dir, as_json=bool(args.json)))

    parser = _build_run_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    raise SystemExit(
        _run_command(
            args.project_dir,
            args.iterations,
            worker=args.worker,
            interactive=not args.non_interactive and sys.stdin.isatty(),
        )
    )


if __name__ == "__main__":
    main()
