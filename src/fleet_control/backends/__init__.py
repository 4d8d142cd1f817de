"""Worker runtimes for fleet-control."""

from __future__ import annotations

from fleet_control.backends.base import RuntimeAdapterError, WorkerHandle, WorkerObservable, WorkerRuntime
from fleet_control.backends.local import SubprocessRuntime
from fleet_control.backends.tmux import TmuxRuntime
from fleet_control.config import RuntimeConfig

__all__ = [
	"RuntimeAdapterError",
	"SubprocessRuntime",
	"TmuxRuntime",
	"WorkerHandle",
	"WorkerObservable",
	"WorkerRuntime",
	"create_runtime",
]


def create_runtime(config: RuntimeConfig) -> WorkerRuntime:
	if config.type == "local":
		return SubprocessRuntime(config)
	if config.type == "tmux":
		return TmuxRuntime(config)
	raise ValueError(f"Unknown runtime type: {config.type}")
