"""Local runtime -- runs workers as plain subprocesses with piped stdio."""

from __future__ import annotations

import asyncio
import logging

from fleet_control.backends.base import RuntimeAdapterError, WorkerHandle, WorkerRuntime
from fleet_control.config import RuntimeConfig, worker_env
from fleet_control.models import Phase

logger = logging.getLogger(__name__)


_MB = 1024 * 1024
_OUTPUT_WARNING_THRESHOLDS_MB = (10, 25, 50)


class SubprocessRuntime(WorkerRuntime):
	"""Execute workers as local subprocesses.

	Output is accumulated from stdout; input is written to stdin. Sessions
	do not survive a daemon restart, unlike the tmux runtime.
	"""

	def __init__(self, config: RuntimeConfig) -> None:
		self._config = config
		self._handles: dict[str, WorkerHandle] = {}
		self._processes: dict[str, asyncio.subprocess.Process] = {}
		self._stdout_bufs: dict[str, bytes] = {}
		self._max_output_bytes: int = config.max_output_mb * _MB
		self._output_warnings_fired: dict[str, set[int]] = {}

	async def spawn(
		self, name: str, phase: Phase, work_item_id: int, workspace: str,
	) -> WorkerHandle:
		try:
			proc = await asyncio.wait_for(
				asyncio.create_subprocess_exec(
					*self._config.command,
					cwd=workspace,
					stdin=asyncio.subprocess.PIPE,
					stdout=asyncio.subprocess.PIPE,
					stderr=asyncio.subprocess.STDOUT,
					env=worker_env(self._config),
				),
				timeout=self._config.command_timeout,
			)
		except (OSError, asyncio.TimeoutError) as exc:
			raise RuntimeAdapterError(f"Failed to spawn {name}: {exc}") from exc

		handle = WorkerHandle(
			name=name,
			phase=phase,
			work_item_id=work_item_id,
			pid=proc.pid,
			workspace_path=workspace,
		)
		self._processes[name] = proc
		self._handles[name] = handle
		self._stdout_bufs[name] = b""
		self._output_warnings_fired[name] = set()

		role_command = self._config.role_command(phase, work_item_id)
		if role_command:
			await self.send_input(handle, role_command)
		logger.info("Spawned %s (pid %s) in %s", name, proc.pid, workspace)
		return handle

	def _check_output_thresholds(self, name: str, size: int) -> None:
		"""Log warnings when output size crosses configured thresholds."""
		fired = self._output_warnings_fired.setdefault(name, set())
		for threshold_mb in _OUTPUT_WARNING_THRESHOLDS_MB:
			if size >= threshold_mb * _MB and threshold_mb not in fired:
				fired.add(threshold_mb)
				logger.warning("Worker %s output reached %dMB (%d bytes)", name, threshold_mb, size)

	async def output(self, handle: WorkerHandle) -> str:
		proc = self._processes.get(handle.name)
		if proc is None:
			return ""
		name = handle.name
		if proc.stdout:
			try:
				if proc.returncode is None:
					chunk = await asyncio.wait_for(proc.stdout.read(65536), timeout=0.1)
				else:
					chunk = await asyncio.wait_for(proc.stdout.read(), timeout=self._config.command_timeout)
				self._stdout_bufs[name] = self._stdout_bufs.get(name, b"") + chunk
			except asyncio.TimeoutError:
				pass
		buf = self._stdout_bufs.get(name, b"")
		self._check_output_thresholds(name, len(buf))
		if len(buf) >= self._max_output_bytes:
			# Keep the tail: completion markers appear at the end
			self._stdout_bufs[name] = buf[-self._max_output_bytes:]
		return self._stdout_bufs[name].decode(errors="replace")

	async def send_input(self, handle: WorkerHandle, text: str) -> None:
		proc = self._processes.get(handle.name)
		if proc is None or proc.stdin is None or proc.returncode is not None:
			raise RuntimeAdapterError(f"Worker {handle.name} is not accepting input")
		try:
			proc.stdin.write(text.encode() + b"\n")
			await asyncio.wait_for(proc.stdin.drain(), timeout=self._config.command_timeout)
		except (OSError, asyncio.TimeoutError) as exc:
			raise RuntimeAdapterError(f"Failed to send input to {handle.name}: {exc}") from exc

	async def is_alive(self, handle: WorkerHandle) -> bool:
		proc = self._processes.get(handle.name)
		return proc is not None and proc.returncode is None

	async def kill(self, handle: WorkerHandle) -> None:
		proc = self._processes.get(handle.name)
		if proc is not None and proc.returncode is None:
			proc.kill()
			await proc.wait()
		self._handles.pop(handle.name, None)

	def get_handle(self, name: str) -> WorkerHandle | None:
		return self._handles.get(name)

	async def list_sessions(self) -> list[str]:
		return [
			name for name, proc in self._processes.items()
			if proc.returncode is None
		]

	async def cleanup(self) -> None:
		self._processes = {
			name: proc for name, proc in self._processes.items()
			if proc.returncode is None
		}
		self._stdout_bufs = {name: self._stdout_bufs.get(name, b"") for name in self._processes}
