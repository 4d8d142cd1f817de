"""Shared pytest fixtures, fakes and factory functions for fleet-control tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from fleet_control.backends.base import RuntimeAdapterError, WorkerHandle, WorkerRuntime
from fleet_control.config import FleetConfig
from fleet_control.models import ItemKind, Phase, SessionStatus, SupervisorResult, WorkItem
from fleet_control.tracker.base import Comment, ReviewState, StateStore, TrackerError
from fleet_control.workspace import WorkspaceError


class FakeClock:
	"""Manually advanced clock; ``sleep`` advances it instead of waiting."""

	def __init__(self, start: float = 1_000_000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds

	async def sleep(self, seconds: float) -> None:
		self.now += seconds


class FakeStore(StateStore):
	"""In-memory tracker. Counts every write so tests can assert on them."""

	def __init__(self, clock: FakeClock | None = None) -> None:
		self.items: dict[int, WorkItem] = {}
		self.comments: dict[int, list[Comment]] = {}
		self.review_states: dict[int, ReviewState] = {}
		self.writes = 0
		self.label_writes: list[tuple[int, list[str], list[str]]] = []
		self.fail: set[str] = set()
		self.closed = False
		self._clock = clock

	def add(self, item: WorkItem) -> WorkItem:
		self.items[item.id] = item
		return item

	def _check(self, method: str) -> None:
		if method in self.fail:
			raise TrackerError(f"{method} unavailable")

	async def list_items(self, label: str | None, kind: ItemKind = ItemKind.ISSUE) -> list[WorkItem]:
		self._check("list_items")
		return [
			i for i in self.items.values()
			if i.kind == kind and (label is None or label in i.labels)
		]

	async def get_item(self, item_id: int) -> WorkItem:
		self._check("get_item")
		if item_id not in self.items:
			raise TrackerError(f"#{item_id} not found")
		return self.items[item_id]

	async def get_labels(self, item_id: int) -> list[str]:
		self._check("get_labels")
		if item_id not in self.items:
			raise TrackerError(f"#{item_id} not found")
		return list(self.items[item_id].labels)

	async def set_labels(
		self, item_id: int, add: list[str] | None = None, remove: list[str] | None = None,
	) -> None:
		self._check("set_labels")
		self.writes += 1
		self.label_writes.append((item_id, list(add or []), list(remove or [])))
		item = self.items[item_id]
		item.labels = [lbl for lbl in item.labels if lbl not in (remove or [])]
		for lbl in add or []:
			if lbl not in item.labels:
				item.labels.append(lbl)

	async def comment(self, item_id: int, text: str) -> None:
		self._check("comment")
		self.writes += 1
		created = self._clock() if self._clock else 0.0
		self.comments.setdefault(item_id, []).append(Comment("fleet-bot", text, created))

	async def list_comments(self, item_id: int) -> list[Comment]:
		self._check("list_comments")
		return list(self.comments.get(item_id, []))

	async def get_review_state(self, pr_id: int) -> ReviewState:
		self._check("get_review_state")
		return self.review_states.get(pr_id, ReviewState.NONE)

	async def close(self) -> None:
		self.closed = True


class FakeRuntime(WorkerRuntime):
	"""Scripted worker runtime: tests set output and liveness per session."""

	def __init__(self) -> None:
		self.handles: dict[str, WorkerHandle] = {}
		self.outputs: dict[str, str] = {}
		self.alive: dict[str, bool] = {}
		self.spawned: list[str] = []
		self.inputs: list[tuple[str, str]] = []
		self.killed: list[str] = []
		self.spawn_error: str | None = None
		self.observe_error = False
		self.on_input: Any = None
		self.cleaned_up = False

	async def spawn(self, name: str, phase: Phase, work_item_id: int, workspace: str) -> WorkerHandle:
		if self.spawn_error:
			raise RuntimeAdapterError(self.spawn_error)
		handle = WorkerHandle(name, phase, work_item_id, workspace_path=workspace)
		self.handles[name] = handle
		self.alive[name] = True
		self.outputs.setdefault(name, "")
		self.spawned.append(name)
		return handle

	async def output(self, handle: WorkerHandle) -> str:
		if self.observe_error:
			raise RuntimeAdapterError("pane gone")
		return self.outputs.get(handle.name, "")

	async def send_input(self, handle: WorkerHandle, text: str) -> None:
		self.inputs.append((handle.name, text))
		if self.on_input is not None:
			self.on_input(handle.name, text)

	async def is_alive(self, handle: WorkerHandle) -> bool:
		return self.alive.get(handle.name, False)

	async def kill(self, handle: WorkerHandle) -> None:
		self.alive[handle.name] = False
		self.killed.append(handle.name)

	def get_handle(self, name: str) -> WorkerHandle | None:
		return self.handles.get(name)

	async def list_sessions(self) -> list[str]:
		return [name for name, alive in self.alive.items() if alive]

	async def cleanup(self) -> None:
		self.cleaned_up = True


class FakeWorkspaces:
	"""Stand-in for WorkspaceProvisioner that never touches git."""

	def __init__(self, root: Path) -> None:
		self.root = root
		self.fail = False
		self.created: list[tuple[int, bool]] = []
		self.removed: list[tuple[int, bool]] = []
		self.in_use_items: set[tuple[int, bool]] = set()

	def path_for(self, work_item_id: int, pr: bool = False) -> Path:
		return self.root / (f"pr-{work_item_id}" if pr else f"issue-{work_item_id}")

	def exists(self, work_item_id: int, pr: bool = False) -> bool:
		return (work_item_id, pr) in self.created

	async def create(self, work_item_id: int, pr: bool = False) -> Path:
		if self.fail:
			raise WorkspaceError(f"cannot create worktree for #{work_item_id}")
		self.created.append((work_item_id, pr))
		return self.path_for(work_item_id, pr)

	def mark_in_use(self, work_item_id: int, pr: bool = False, pid: int | None = None) -> None:
		self.in_use_items.add((work_item_id, pr))

	def release(self, work_item_id: int, pr: bool = False) -> None:
		self.in_use_items.discard((work_item_id, pr))

	def has_external_process(self, work_item_id: int, pr: bool = False) -> bool:
		return False

	def last_modified(self, work_item_id: int, pr: bool = False) -> float | None:
		return None

	async def remove(self, work_item_id: int, pr: bool = False) -> None:
		self.removed.append((work_item_id, pr))


@pytest.fixture()
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> FakeStore:
	return FakeStore(clock)


@pytest.fixture()
def runtime() -> FakeRuntime:
	return FakeRuntime()


@pytest.fixture()
def workspaces(tmp_path: Path) -> FakeWorkspaces:
	return FakeWorkspaces(tmp_path / "worktrees")


@pytest.fixture()
def config(tmp_path: Path) -> FleetConfig:
	"""FleetConfig with state and worktrees under tmp_path."""
	cfg = FleetConfig()
	cfg.tracker.repo = "acme/widgets"
	cfg.workspace.repo_path = str(tmp_path / "repo")
	cfg.workspace.root = str(tmp_path / "worktrees")
	cfg.daemon.state_dir = str(tmp_path / "state")
	cfg.daemon.iteration_interval = 0.01
	cfg.daemon.shutdown_timeout = 1.0
	cfg.runtime.session_prefix = "fleet-"
	return cfg


def make_work_item(**overrides: Any) -> WorkItem:
	"""Create a WorkItem with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": 1,
		"kind": ItemKind.ISSUE,
		"title": "Test issue",
		"labels": [],
	}
	defaults.update(overrides)
	return WorkItem(**defaults)


def make_pr(**overrides: Any) -> WorkItem:
	"""Create a pull request WorkItem linked to issue #1 by default."""
	defaults: dict[str, Any] = {
		"id": 100,
		"kind": ItemKind.PR,
		"title": "Fix the thing",
		"labels": [],
		"body": "Closes #1",
		"head_ref": "feature/issue-1",
	}
	defaults.update(overrides)
	return WorkItem(**defaults)


def make_result(**overrides: Any) -> SupervisorResult:
	"""Create a SupervisorResult with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"status": SessionStatus.COMPLETED,
		"reason": "contract_satisfied",
		"elapsed": 60.0,
		"session_name": "fleet-builder-issue-1",
		"phase": Phase.BUILD,
		"work_item_id": 1,
	}
	defaults.update(overrides)
	return SupervisorResult(**defaults)
