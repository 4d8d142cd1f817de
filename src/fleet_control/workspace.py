"""Workspace provisioner -- one git worktree per work item."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path

from fleet_control.config import WorkspaceConfig

logger = logging.getLogger(__name__)

# Owner markers: <root>/.owners/<worktree name>, outside the worktree itself
OWNER_DIR = ".owners"


class WorkspaceError(RuntimeError):
	"""A git worktree operation failed."""


class WorkspaceInUseError(WorkspaceError):
	"""Refused to remove a workspace that is in active use."""


def _pid_alive(pid: int) -> bool:
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except PermissionError:
		# Exists but owned by someone else
		return True
	return True


class WorkspaceProvisioner:
	"""Per-item git worktrees under ``<repo>/<root>``.

	Issues get ``issue-<id>`` on branch ``feature/issue-<id>``; the branch is
	kept across attempts so a retried builder picks up where the previous
	one stopped. PRs get a detached ``pr-<id>`` worktree and the worker
	checks out the PR branch itself.
	"""

	def __init__(self, config: WorkspaceConfig) -> None:
		self.repo_path = config.resolved_repo
		self.root = config.resolved_root
		self.base_branch = config.base_branch
		self._timeout = config.command_timeout
		self._in_use: set[Path] = set()

	def path_for(self, work_item_id: int, pr: bool = False) -> Path:
		return self.root / (f"pr-{work_item_id}" if pr else f"issue-{work_item_id}")

	@staticmethod
	def branch_for(work_item_id: int) -> str:
		return f"feature/issue-{work_item_id}"

	async def _git(self, *args: str) -> tuple[int, str]:
		try:
			proc = await asyncio.create_subprocess_exec(
				"git", *args,
				cwd=str(self.repo_path),
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.STDOUT,
			)
		except OSError as exc:
			raise WorkspaceError(f"git unavailable: {exc}") from exc
		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			raise WorkspaceError(f"git {args[0]} timed out after {self._timeout:.0f}s") from None
		output = stdout.decode(errors="replace") if stdout else ""
		return (proc.returncode if proc.returncode is not None else -1), output

	def exists(self, work_item_id: int, pr: bool = False) -> bool:
		return self.path_for(work_item_id, pr).is_dir()

	async def create(self, work_item_id: int, pr: bool = False) -> Path:
		"""Create (or reuse) the worktree for an item. Returns its path."""
		path = self.path_for(work_item_id, pr)
		if path.is_dir():
			logger.info("Reusing workspace %s", path)
			return path

		self.root.mkdir(parents=True, exist_ok=True)
		if pr:
			rc, out = await self._git("worktree", "add", "--detach", str(path), self.base_branch)
		else:
			branch = self.branch_for(work_item_id)
			rc, _ = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
			if rc == 0:
				rc, out = await self._git("worktree", "add", str(path), branch)
			else:
				rc, out = await self._git("worktree", "add", "-b", branch, str(path), self.base_branch)
		if rc != 0:
			raise WorkspaceError(f"Failed to create worktree {path.name}: {out.strip()}")
		logger.info("Created workspace %s", path)
		return path

	def marker_path(self, work_item_id: int, pr: bool = False) -> Path:
		return self.root / OWNER_DIR / self.path_for(work_item_id, pr).name

	def mark_in_use(self, work_item_id: int, pr: bool = False, pid: int | None = None) -> None:
		path = self.path_for(work_item_id, pr)
		self._in_use.add(path)
		try:
			marker = self.marker_path(work_item_id, pr)
			marker.parent.mkdir(parents=True, exist_ok=True)
			marker.write_text(f"{pid or os.getpid()}\n")
		except OSError as exc:
			logger.warning("Could not write owner marker for %s: %s", path, exc)

	def release(self, work_item_id: int, pr: bool = False) -> None:
		path = self.path_for(work_item_id, pr)
		self._in_use.discard(path)
		try:
			self.marker_path(work_item_id, pr).unlink(missing_ok=True)
		except OSError as exc:
			logger.warning("Could not remove owner marker for %s: %s", path, exc)

	def owner_pid(self, work_item_id: int, pr: bool = False) -> int | None:
		try:
			return int(self.marker_path(work_item_id, pr).read_text().strip())
		except (OSError, ValueError):
			return None

	def has_external_process(self, work_item_id: int, pr: bool = False) -> bool:
		"""True if a live process other than this daemon owns the workspace."""
		pid = self.owner_pid(work_item_id, pr)
		if pid is None or pid == os.getpid():
			return False
		return _pid_alive(pid)

	def in_use(self, work_item_id: int, pr: bool = False) -> bool:
		if self.path_for(work_item_id, pr) in self._in_use:
			return True
		return self.has_external_process(work_item_id, pr)

	def last_modified(self, work_item_id: int, pr: bool = False) -> float | None:
		try:
			return self.path_for(work_item_id, pr).stat().st_mtime
		except OSError:
			return None

	async def remove(self, work_item_id: int, pr: bool = False) -> None:
		"""Delete the worktree. Raises WorkspaceInUseError while it is in use."""
		if self.in_use(work_item_id, pr):
			raise WorkspaceInUseError(f"Workspace {self.path_for(work_item_id, pr).name} is in use")
		path = self.path_for(work_item_id, pr)
		if not path.exists():
			return
		rc, out = await self._git("worktree", "remove", "--force", str(path))
		if rc != 0:
			logger.warning("git worktree remove failed for %s: %s", path, out.strip())
			shutil.rmtree(path, ignore_errors=True)
			await self._git("worktree", "prune")
		logger.info("Removed workspace %s", path)
