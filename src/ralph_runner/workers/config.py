"""Parse worker provider configuration and resolve per-unit routing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from ..errors import ConfigError

WorkerProviderType = Literal["claude", "command"]

DEFAULT_WORKER = "claude"
DEFAULT_CLAUDE_COMMAND = "claude"
DEFAULT_CLAUDE_FLAGS: tuple[str, ...] = (
    "--dangerously-skip-permissions",
    "--no-session-persistence",
    "--output-format",
    "stream-json",
    "--verbose",
)


@dataclass(frozen=True)
class WorkerProviderSpec:
    name: str
    type: WorkerProviderType
    # claude: executable; command: template with {prompt_file}, {system_prompt_file},
    # {prompt}, {project_dir} placeholders, or "-" to read the prompt from stdin
    command: str = DEFAULT_CLAUDE_COMMAND
    # claude only
    flags: tuple[str, ...] = field(default=DEFAULT_CLAUDE_FLAGS)


@dataclass(frozen=True)
class WorkersRuntimeConfig:
    """Resolved worker configuration for a run."""

    default_worker: str
    routing: dict[str, str]
    providers: dict[str, WorkerProviderSpec]
    cli_worker_override: Optional[str] = None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def get_workers_runtime_config(
    *,
    config: dict[str, Any],
    cli_worker: Optional[str] = None,
) -> WorkersRuntimeConfig:
    """Build the worker runtime from the `workers` block of the runner config.

    A `claude` provider is always available; config entries may override it
    or add `command` providers wrapping any other agent CLI.
    """
    workers_cfg = _as_dict(config.get("workers"))
    routing = _as_dict(workers_cfg.get("routing"))
    providers_cfg = _as_dict(workers_cfg.get("providers"))

    default_worker = str(workers_cfg.get("default") or DEFAULT_WORKER).strip() or DEFAULT_WORKER

    providers: dict[str, WorkerProviderSpec] = {
        DEFAULT_WORKER: WorkerProviderSpec(name=DEFAULT_WORKER, type="claude"),
    }

    for name, raw in providers_cfg.items():
        if not isinstance(name, str) or not name.strip():
            continue
        item = _as_dict(raw)
        typ = str(item.get("type") or ("claude" if name == DEFAULT_WORKER else "")).strip().lower()
        command = str(item.get("command") or "").strip()
        if typ == "claude":
            flags = item.get("flags")
            providers[name] = WorkerProviderSpec(
                name=name,
                type="claude",
                command=command or DEFAULT_CLAUDE_COMMAND,
                flags=tuple(str(f) for f in flags) if isinstance(flags, list) else DEFAULT_CLAUDE_FLAGS,
            )
        elif typ == "command":
            if not command:
                raise ConfigError(f"Worker provider '{name}' of type 'command' needs a command")
            providers[name] = WorkerProviderSpec(name=name, type="command", command=command, flags=())
        else:
            raise ConfigError(f"Worker provider '{name}' has unsupported type '{typ}'")

    routing_out: dict[str, str] = {}
    for k, v in routing.items():
        if not isinstance(k, str) or not k.strip():
            continue
        if not isinstance(v, str) or not v.strip():
            continue
        routing_out[k.strip()] = v.strip()

    return WorkersRuntimeConfig(
        default_worker=default_worker,
        routing=routing_out,
        providers=providers,
        cli_worker_override=cli_worker.strip() if isinstance(cli_worker, str) and cli_worker.strip() else None,
    )


def resolve_worker_for_unit(runtime: WorkersRuntimeConfig, unit: str) -> WorkerProviderSpec:
    """Resolve which provider handles a unit (`plan`, `implement`, ..., or `prd`)."""
    if runtime.cli_worker_override:
        name = runtime.cli_worker_override
    else:
        name = runtime.routing.get(str(unit or "").strip()) or runtime.default_worker

    if name not in runtime.providers:
        available = ", ".join(sorted(runtime.providers.keys()))
        raise ConfigError(f"Unknown worker '{name}' (available: {available})")
    return runtime.providers[name]
