"""tmux runtime -- each worker is a detached session on a private socket."""

from __future__ import annotations

import asyncio
import logging
import shlex

from fleet_control.backends.base import RuntimeAdapterError, WorkerHandle, WorkerRuntime
from fleet_control.config import RuntimeConfig, worker_env
from fleet_control.models import Phase, parse_session_name

logger = logging.getLogger(__name__)


class TmuxRuntime(WorkerRuntime):
	"""Run workers inside tmux sessions on ``tmux -L <socket>``.

	Sessions outlive the daemon, so after a restart handles are rebuilt
	from session names alone.
	"""

	def __init__(self, config: RuntimeConfig) -> None:
		self._config = config
		self._handles: dict[str, WorkerHandle] = {}

	async def _tmux(self, *args: str, check: bool = True) -> tuple[int, str]:
		cmd = ["tmux", "-L", self._config.tmux_socket, *args]
		try:
			proc = await asyncio.create_subprocess_exec(
				*cmd,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except OSError as exc:
			raise RuntimeAdapterError(f"tmux unavailable: {exc}") from exc
		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._config.command_timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			raise RuntimeAdapterError(
				f"tmux {args[0]} timed out after {self._config.command_timeout:.0f}s"
			) from None
		output = stdout.decode(errors="replace") if stdout else ""
		returncode = proc.returncode if proc.returncode is not None else -1
		if check and returncode != 0:
			raise RuntimeAdapterError(f"tmux {' '.join(args[:3])} failed ({returncode}): {output.strip()}")
		return returncode, output

	async def spawn(
		self, name: str, phase: Phase, work_item_id: int, workspace: str,
	) -> WorkerHandle:
		args = ["new-session", "-d", "-s", name, "-c", workspace, "-x", "220", "-y", "50"]
		for key, value in sorted(worker_env(self._config).items()):
			args += ["-e", f"{key}={value}"]
		args.append(shlex.join(self._config.command))
		await self._tmux(*args)

		handle = WorkerHandle(name=name, phase=phase, work_item_id=work_item_id, workspace_path=workspace)
		self._handles[name] = handle

		role_command = self._config.role_command(phase, work_item_id)
		if role_command:
			await asyncio.sleep(self._config.startup_delay)
			await self.send_input(handle, role_command)
		logger.info("Spawned tmux session %s in %s", name, workspace)
		return handle

	async def output(self, handle: WorkerHandle) -> str:
		_, out = await self._tmux(
			"capture-pane", "-p", "-t", f"={handle.name}",
			"-S", f"-{self._config.capture_lines}",
		)
		return out

	async def send_input(self, handle: WorkerHandle, text: str) -> None:
		target = f"={handle.name}"
		if text:
			await self._tmux("send-keys", "-t", target, "-l", text)
		await self._tmux("send-keys", "-t", target, "Enter")

	async def is_alive(self, handle: WorkerHandle) -> bool:
		returncode, _ = await self._tmux("has-session", "-t", f"={handle.name}", check=False)
		return returncode == 0

	async def kill(self, handle: WorkerHandle) -> None:
		returncode, out = await self._tmux("kill-session", "-t", f"={handle.name}", check=False)
		if returncode != 0:
			logger.debug("kill-session %s: %s", handle.name, out.strip())
		self._handles.pop(handle.name, None)

	def get_handle(self, name: str) -> WorkerHandle | None:
		if name in self._handles:
			return self._handles[name]
		parsed = parse_session_name(name, self._config.session_prefix)
		if parsed is None:
			return None
		phase, work_item_id = parsed
		return WorkerHandle(name=name, phase=phase, work_item_id=work_item_id)

	async def list_sessions(self) -> list[str]:
		returncode, out = await self._tmux("list-sessions", "-F", "#{session_name}", check=False)
		if returncode != 0:
			# No server running on this socket
			return []
		return [line.strip() for line in out.splitlines() if line.strip()]
