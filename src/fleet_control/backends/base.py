"""Abstract base class for worker runtimes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol

from fleet_control.models import Phase


class RuntimeAdapterError(RuntimeError):
	"""A runtime call failed or timed out."""


@dataclass
class WorkerHandle:
	name: str
	phase: Phase
	work_item_id: int
	pid: int | None = None
	workspace_path: str = ""


class WorkerObservable(Protocol):
	"""What the supervisor needs to watch a worker: text output and liveness."""

	async def latest_output(self) -> str: ...

	async def is_alive(self) -> bool: ...


class _HandleObservable:
	def __init__(self, runtime: WorkerRuntime, handle: WorkerHandle) -> None:
		self._runtime = runtime
		self._handle = handle

	async def latest_output(self) -> str:
		return await self._runtime.output(self._handle)

	async def is_alive(self) -> bool:
		return await self._runtime.is_alive(self._handle)


class WorkerRuntime(ABC):
	"""Abstract base for spawning and observing opaque worker sessions."""

	@abstractmethod
	async def spawn(
		self, name: str, phase: Phase, work_item_id: int, workspace: str,
	) -> WorkerHandle:
		"""Start a worker session and send it the phase's role command."""

	@abstractmethod
	async def output(self, handle: WorkerHandle) -> str:
		"""Latest visible output of the worker."""

	@abstractmethod
	async def send_input(self, handle: WorkerHandle, text: str) -> None:
		"""Type ``text`` into the worker; an empty string sends a bare Enter."""

	@abstractmethod
	async def is_alive(self, handle: WorkerHandle) -> bool:
		...

	@abstractmethod
	async def kill(self, handle: WorkerHandle) -> None:
		"""Terminate the worker. Killing a dead worker is a no-op."""

	@abstractmethod
	def get_handle(self, name: str) -> WorkerHandle | None:
		"""Handle of a session spawned by this runtime, if known."""

	@abstractmethod
	async def list_sessions(self) -> list[str]:
		"""Names of sessions currently alive in the runtime."""

	def observe(self, handle: WorkerHandle) -> WorkerObservable:
		return _HandleObservable(self, handle)

	async def cleanup(self) -> None:
		"""Release runtime resources. Does not kill live sessions."""
