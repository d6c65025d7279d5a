"""Worker provider integrations (Claude CLI, arbitrary agent commands)."""

from .config import (
    WorkerProviderSpec,
    WorkersRuntimeConfig,
    get_workers_runtime_config,
    resolve_worker_for_unit,
)
from .run import ProviderWorker, Worker, WorkerRunResult, run_worker

__all__ = [
    "ProviderWorker",
    "Worker",
    "WorkerProviderSpec",
    "WorkersRuntimeConfig",
    "WorkerRunResult",
    "get_workers_runtime_config",
    "resolve_worker_for_unit",
    "run_worker",
]
