"""Daemon control loop -- the single writer of dispatch decisions.

Each iteration: Snapshot -> Reap -> (breaker gate) Dispatch ->
RecoverySweeps -> Persist, then sleep until the next iteration or a stop
signal. Supervisors run as asyncio tasks and only return results; all
bookkeeping (retry records, failure events, labels on failure) happens
here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from fleet_control.archive import SessionArchiver
from fleet_control.backends.base import RuntimeAdapterError, WorkerRuntime
from fleet_control.classifier import (
	REASON_RUNTIME_ERROR,
	REASON_SPAWN_FAILED,
	REASON_STOP,
	REASON_WORKTREE_FAILED,
	classify,
)
from fleet_control.config import FleetConfig
from fleet_control.contracts import PhaseContractValidator, PhaseRefs
from fleet_control.daemon_state import StateFile
from fleet_control.failure_detector import DispatchGate, SystematicFailureDetector
from fleet_control.models import (
	DaemonState,
	FailureEvent,
	InFlightEntry,
	LabelInvariantError,
	Phase,
	SessionStatus,
	SupervisorResult,
	SystematicFailureState,
	WorkItem,
	parse_session_name,
	session_name_for,
)
from fleet_control.notifier import TelegramNotifier
from fleet_control.orphan_recovery import OrphanRecovery, RecoveryReport
from fleet_control.retry import RetryManager, without_linked_pr
from fleet_control.signals import CancellationToken, clear_stop
from fleet_control.supervisor import WorkerSupervisor
from fleet_control.tracker.base import StateStore, TrackerError
from fleet_control.workspace import WorkspaceError, WorkspaceProvisioner

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
	"""One iteration's view of the tracker, grouped by dispatch phase."""

	fix: list[WorkItem] = field(default_factory=list)
	review: list[WorkItem] = field(default_factory=list)
	build: list[WorkItem] = field(default_factory=list)
	intake: list[WorkItem] = field(default_factory=list)
	blocked: list[WorkItem] = field(default_factory=list)
	open_prs: list[WorkItem] = field(default_factory=list)

	def candidates(self) -> list[tuple[Phase, WorkItem]]:
		"""Dispatch order: fix, review, build, intake."""
		return (
			[(Phase.FIX, i) for i in self.fix]
			+ [(Phase.REVIEW, i) for i in self.review]
			+ [(Phase.BUILD, i) for i in self.build]
			+ [(Phase.INTAKE, i) for i in self.intake]
		)


@dataclass
class DaemonResult:
	iterations: int = 0
	completed: int = 0
	failed: int = 0
	stopped_reason: str = ""
	archive_path: Path | None = None


class FleetDaemon:
	"""Drives the pipeline by supervising worker sessions against the tracker."""

	def __init__(
		self,
		config: FleetConfig,
		store: StateStore,
		runtime: WorkerRuntime,
		workspaces: WorkspaceProvisioner,
		notifier: TelegramNotifier | None = None,
		token: CancellationToken | None = None,
		clock: Callable[[], float] = time.time,
		supervisor_clock: Callable[[], float] = time.monotonic,
		supervisor_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		self.config = config
		self._store = store
		self._runtime = runtime
		self._workspaces = workspaces
		self._notifier = notifier
		self._clock = clock
		labels = config.labels
		self._labels = labels

		state_dir = config.daemon.resolved_state_dir
		self.stop_file = state_dir / config.daemon.stop_file
		self.token = token or CancellationToken([self.stop_file])
		self.state_file = StateFile(state_dir)
		self.archiver = SessionArchiver(self.state_file, config.daemon.max_archived_sessions)

		self.state = DaemonState()
		self.validator = PhaseContractValidator(store, labels)
		self.supervisor = WorkerSupervisor(
			runtime,
			self.validator,
			config.supervisor,
			labels,
			store=store,
			token=self.token,
			role_command=config.runtime.role_command,
			pause_dir=state_dir / config.daemon.pause_dir,
			clock=supervisor_clock,
			sleep=supervisor_sleep,
		)
		self.retry = RetryManager(store, labels, config.retry, records=self.state.retries, clock=clock)
		self.detector = SystematicFailureDetector(
			config.systematic_failure,
			state=self.state.systematic_failure,
			clock=clock,
			on_state_change=self._on_breaker_change,
		)
		self.orphans = OrphanRecovery(
			store, labels, config.orphan, workspaces, runtime,
			session_prefix=config.runtime.session_prefix, clock=clock,
		)
		self._tasks: dict[int, asyncio.Task[SupervisorResult]] = {}
		self._notify_tasks: set[asyncio.Task[None]] = set()

	@property
	def active_items(self) -> set[int]:
		return set(self._tasks) | set(self.state.in_flight)

	def stop(self, reason: str = "stop requested") -> None:
		self.token.cancel(reason)

	def _notify(self, coro: Awaitable[None]) -> None:
		"""Fire-and-forget a notifier call from sync code."""
		task = asyncio.ensure_future(coro)
		self._notify_tasks.add(task)
		task.add_done_callback(self._notify_tasks.discard)

	def _on_breaker_change(self, old: str, new: str, st: SystematicFailureState) -> None:
		tg = self.config.notifications.telegram
		if self._notifier is None or (tg is not None and not tg.on_breaker):
			return
		if old == "inactive" and new == "active":
			self._notify(self._notifier.send_breaker_tripped(st.pattern, self.config.systematic_failure.base_cooldown))
		elif new == "inactive":
			self._notify(self._notifier.send_breaker_cleared(st.pattern or "unknown", st.probe_count))

	# -- lifecycle ---------------------------------------------------------

	async def run(self) -> DaemonResult:
		"""Run until a stop signal. State from a previous run is archived first."""
		result = DaemonResult()
		clear_stop(self.stop_file)
		self.archiver.rotate()
		self.persist()

		try:
			await self._adopt_sessions()
			report = await self._orphan_sweep()
			tg = self.config.notifications.telegram
			if self._notifier is not None and (tg is None or tg.on_daemon_lifecycle):
				await self._notifier.send_daemon_start(
					self.config.daemon.max_concurrency, len(report.recovered) if report else 0,
				)

			while not self.token.cancelled:
				await self.run_iteration()
				if await self.token.wait(self.config.daemon.iteration_interval):
					break
			result.stopped_reason = self.token.reason or "stopped"
		except asyncio.CancelledError:
			logger.info("Daemon cancelled")
			result.stopped_reason = "cancelled"
		except (RuntimeError, OSError) as exc:
			logger.error("Daemon infrastructure error: %s", exc, exc_info=True)
			result.stopped_reason = "error"
		finally:
			result.archive_path = await self.shutdown(result.stopped_reason or "stopped")
			result.iterations = self.state.iteration
			result.completed = self.state.counters.completed
			result.failed = self.state.counters.failed
		return result

	async def shutdown(self, reason: str) -> Path | None:
		"""Let supervisors see the stop signal, reap them, persist and archive."""
		self.token.cancel(reason)
		if self._tasks:
			logger.info("Waiting for %d supervisor(s) to finish their tick", len(self._tasks))
			_, pending = await asyncio.wait(
				list(self._tasks.values()), timeout=self.config.daemon.shutdown_timeout,
			)
			for task in pending:
				task.cancel()
			if pending:
				await asyncio.gather(*pending, return_exceptions=True)
		await self._reap()
		self.persist()
		archive_path = self.archiver.rotate()

		tg = self.config.notifications.telegram
		if self._notifier is not None:
			if tg is None or tg.on_daemon_lifecycle:
				await self._notifier.send_daemon_stop(
					self.state.iteration, self.state.counters.completed, self.state.counters.failed, reason,
				)
			if self._notify_tasks:
				await asyncio.gather(*self._notify_tasks, return_exceptions=True)
			await self._notifier.close()
		await self._runtime.cleanup()
		logger.info("Daemon stopped after %d iterations: %s", self.state.iteration, reason)
		return archive_path

	def persist(self) -> None:
		self.state.recent_failures = list(self.detector.events)
		try:
			self.state_file.save(self.state)
		except OSError as exc:
			logger.error("Failed to persist daemon state: %s", exc)

	# -- iteration ---------------------------------------------------------

	async def run_iteration(self) -> None:
		self.state.iteration += 1
		logger.debug("Iteration %d", self.state.iteration)

		snapshot: Snapshot | None = None
		try:
			snapshot = await self._snapshot()
		except TrackerError as exc:
			logger.error("Snapshot failed, skipping dispatch this iteration: %s", exc)

		await self._reap()

		if snapshot is not None and not self.token.cancelled:
			await self._dispatch(snapshot)
		if snapshot is not None:
			await self._recovery_sweeps(snapshot)
		self.persist()

	def _valid(self, items: list[WorkItem]) -> list[WorkItem]:
		valid = []
		for item in items:
			try:
				item.lifecycle_label(self._labels)
			except LabelInvariantError as exc:
				logger.error("Skipping item with conflicting labels: %s", exc)
				continue
			if item.has_label(self._labels.abort):
				continue
			valid.append(item)
		return valid

	async def _snapshot(self) -> Snapshot:
		labels = self._labels
		open_prs = await self._store.list_open_prs()
		snap = Snapshot(open_prs=open_prs)
		valid_prs = self._valid(open_prs)
		snap.fix = [p for p in valid_prs if p.has_label(labels.entry_label(Phase.FIX))]
		snap.review = [p for p in valid_prs if p.has_label(labels.entry_label(Phase.REVIEW))]
		snap.build = self._valid(await self._store.list_items(labels.entry_label(Phase.BUILD)))
		snap.blocked = self._valid(await self._store.list_items(labels.blocked))
		if self.config.daemon.enable_intake:
			unlabelled = await self._store.list_items(None)
			snap.intake = [
				i for i in self._valid(unlabelled)
				if i.lifecycle_label(labels) is None
			]
		return snap

	# -- reap --------------------------------------------------------------

	async def _reap(self) -> None:
		for item_id in [i for i, task in self._tasks.items() if task.done()]:
			task = self._tasks.pop(item_id)
			entry = self.state.in_flight.get(item_id)
			phase = entry.phase if entry else Phase.BUILD
			name = entry.session_name if entry else ""
			try:
				result = task.result()
			except asyncio.CancelledError:
				result = SupervisorResult(SessionStatus.SIGNALED_STOP, REASON_STOP, 0.0, name, phase, item_id)
			except Exception as exc:
				logger.error("Supervisor for #%d crashed: %s", item_id, exc, exc_info=exc)
				result = SupervisorResult(SessionStatus.ERRORED, REASON_RUNTIME_ERROR, 0.0, name, phase, item_id)
			await self.handle_result(result)

	async def handle_result(self, result: SupervisorResult) -> None:
		"""Apply one supervisor outcome to labels, retry records and the breaker."""
		item_id = result.work_item_id
		phase = result.phase
		self.state.in_flight.pop(item_id, None)
		self._workspaces.release(item_id, pr=phase.targets_pr)

		if result.succeeded:
			self.state.counters.completed += 1
			self.state.completed_items.append(item_id)
			self.retry.record_success(item_id)
			self.detector.record_success(item_id)
			try:
				await self._workspaces.remove(item_id, pr=phase.targets_pr)
			except WorkspaceError as exc:
				logger.warning("Could not remove workspace for #%d: %s", item_id, exc)
			return

		classification = classify(result)
		if classification is None:
			# Stop signal or pause: leave the item exactly as it is
			self.state.counters.stopped += 1
			self.detector.probe_aborted(item_id)
			return

		error_class = classification.error_class
		self.state.counters.failed += 1
		logger.warning(
			"%s #%d failed: %s (%s, %s)",
			phase.value, item_id, error_class, result.reason, classification.category.value,
		)
		self.detector.record(FailureEvent(item_id, error_class, phase, self._clock()))
		record = self.retry.record_failure(item_id, error_class)

		try:
			# Only builds have a blocked state; intake and PR phases are held by the record
			if phase == Phase.BUILD:
				await self._store.set_labels(
					item_id, add=[self._labels.blocked],
					remove=[self._labels.building, self._labels.curated],
				)
			await self._store.comment(
				item_id, self.retry.failure_comment(item_id, phase.role, result.reason, result.elapsed),
			)
		except TrackerError as exc:
			logger.error("Could not record failure of #%d in tracker: %s", item_id, exc)

		tg = self.config.notifications.telegram
		if record.exhausted and self._notifier is not None and (tg is None or tg.on_exhausted):
			await self._notifier.send_retries_exhausted(item_id, error_class, record.retry_count)

	# -- dispatch ----------------------------------------------------------

	async def _dispatch(self, snapshot: Snapshot) -> None:
		gate = self.detector.dispatch_gate()
		if gate == DispatchGate.BLOCKED:
			logger.info(
				"Dispatch suppressed: systematic failure %s", self.detector.state.pattern,
			)
			return
		capacity = self.config.daemon.max_concurrency - len(self._tasks)
		if capacity <= 0:
			return

		for phase, item in snapshot.candidates():
			if capacity <= 0 or self.token.cancelled:
				break
			if item.id in self.active_items:
				continue
			# The ready label is authoritative for builds; other phases check the hold
			if phase != Phase.BUILD and await self._held(item.id):
				continue

			gate = self.detector.dispatch_gate()
			if gate == DispatchGate.BLOCKED:
				logger.info("Breaker tripped mid-dispatch; stopping")
				break
			probe = gate == DispatchGate.PROBE
			if not await self._dispatch_one(phase, item, probe):
				continue
			capacity -= 1
			if probe:
				break

	async def _held(self, item_id: int) -> bool:
		"""True while a failed intake or PR item waits for its retry."""
		record = self.retry.get(item_id)
		if record is None:
			try:
				record = await self.retry.reconstruct(item_id)
			except TrackerError as exc:
				logger.warning("Could not rebuild retry record for #%d, skipping: %s", item_id, exc)
				return True
		return record.held

	async def _dispatch_one(self, phase: Phase, item: WorkItem, probe: bool) -> bool:
		"""Claim, provision and spawn. Returns False when the claim failed."""
		name = session_name_for(phase, item.id, self.config.runtime.session_prefix)
		if phase == Phase.BUILD:
			try:
				await self._store.set_labels(item.id, add=[self._labels.building], remove=[self._labels.ready])
			except TrackerError as exc:
				logger.warning("Could not claim #%d: %s", item.id, exc)
				return False

		self.state.counters.dispatched += 1
		if probe:
			self.detector.probe_started(item.id)
		self.state.in_flight[item.id] = InFlightEntry(name, phase, self._clock(), probe)
		logger.info("Dispatching %s for %s #%d%s", phase.role, item.kind.value, item.id, " (probe)" if probe else "")

		pr = phase.targets_pr
		try:
			workspace = await self._workspaces.create(item.id, pr=pr)
			self._workspaces.mark_in_use(item.id, pr=pr)
		except WorkspaceError as exc:
			logger.error("Workspace for #%d failed: %s", item.id, exc)
			await self.handle_result(SupervisorResult(SessionStatus.ERRORED, REASON_WORKTREE_FAILED, 0.0, name, phase, item.id))
			return True

		try:
			stale = self._runtime.get_handle(name)
			if stale is not None and await self._runtime.is_alive(stale):
				logger.warning("Killing leftover session %s before dispatch", name)
				await self._runtime.kill(stale)
			await self._runtime.spawn(name, phase, item.id, str(workspace))
		except RuntimeAdapterError as exc:
			logger.error("Spawn of %s failed: %s", name, exc)
			await self.handle_result(SupervisorResult(SessionStatus.ERRORED, REASON_SPAWN_FAILED, 0.0, name, phase, item.id))
			return True

		self._start_supervisor(name, phase, item.id)
		return True

	def _start_supervisor(self, name: str, phase: Phase, item_id: int, refs: PhaseRefs | None = None) -> None:
		if refs is None:
			refs = PhaseRefs(pr_number=item_id) if phase.targets_pr else PhaseRefs(issue_number=item_id)
		self._tasks[item_id] = asyncio.create_task(
			self.supervisor.supervise(name, phase, item_id, refs, self.config.supervisor.timeout_for(phase)),
			name=f"supervise-{name}",
		)

	async def _adopt_sessions(self) -> None:
		"""Resume supervising worker sessions that outlived a previous daemon."""
		try:
			names = await self._runtime.list_sessions()
		except RuntimeAdapterError as exc:
			logger.warning("Could not list runtime sessions: %s", exc)
			return
		for name in names:
			parsed = parse_session_name(name, self.config.runtime.session_prefix)
			if parsed is None:
				continue
			phase, item_id = parsed
			if item_id in self.active_items:
				continue
			try:
				labels = await self._store.get_labels(item_id)
			except TrackerError as exc:
				logger.warning("Cannot adopt %s: %s", name, exc)
				continue
			# A build was claimed at dispatch, so it carries building instead of ready
			expected = self._labels.building if phase == Phase.BUILD else self._labels.entry_label(phase)
			if expected is not None and expected not in labels:
				continue
			logger.info("Adopting live session %s", name)
			self.state.in_flight[item_id] = InFlightEntry(name, phase, self._clock())
			if self._workspaces.exists(item_id, pr=phase.targets_pr):
				self._workspaces.mark_in_use(item_id, pr=phase.targets_pr)
			self._start_supervisor(name, phase, item_id)

	# -- recovery ----------------------------------------------------------

	async def _recovery_sweeps(self, snapshot: Snapshot) -> None:
		await self._retry_sweep(snapshot)
		interval = self.config.orphan.sweep_interval
		if interval > 0 and self.state.iteration % interval == 0:
			await self._orphan_sweep()

	async def _retry_sweep(self, snapshot: Snapshot) -> None:
		candidates: list[int] = []
		# Blocked by a rejected PR: the fix phase owns it
		retryable, _ = without_linked_pr(snapshot.blocked, snapshot.open_prs)
		for item in retryable:
			if item.id in self.active_items:
				continue
			if self.retry.get(item.id) is None:
				try:
					await self.retry.reconstruct(item.id)
				except TrackerError as exc:
					logger.warning("Could not rebuild retry record for #%d: %s", item.id, exc)
					continue
			candidates.append(item.id)

		held: set[int] = set()
		for item in snapshot.fix + snapshot.review + snapshot.intake:
			if item.id not in self.active_items and await self._held(item.id):
				held.add(item.id)
				candidates.append(item.id)

		sweep = self.retry.sweep(candidates)
		for item_id in sweep.eligible:
			if self.token.cancelled:
				break
			try:
				await self.retry.dispatch_retry(item_id, relabel=item_id not in held)
			except TrackerError as exc:
				logger.error("Retry of #%d failed: %s", item_id, exc)
				continue
			self.state.counters.retries += 1

	async def _orphan_sweep(self, dry_run: bool = False) -> RecoveryReport | None:
		try:
			report = await self.orphans.sweep(self.active_items, dry_run=dry_run)
		except TrackerError as exc:
			logger.error("Orphan sweep failed: %s", exc)
			return None
		self.state.counters.recovered += len(report.recovered)
		flagged = [(f.work_item_id, f.reason) for f in report.findings if f.stale]
		if flagged and self._notifier is not None:
			await self._notifier.send_stale_items(flagged)
		return report

	def status(self) -> dict[str, object]:
		"""Point-in-time summary for logs and the CLI."""
		return {
			"iteration": self.state.iteration,
			"in_flight": {
				item_id: {
					"session": entry.session_name,
					"phase": entry.phase.value,
					"status": (
						self.supervisor.sessions[entry.session_name].status.value
						if entry.session_name in self.supervisor.sessions else "pending"
					),
					"probe": entry.probe,
				}
				for item_id, entry in self.state.in_flight.items()
			},
			"breaker": self.detector.get_summary(),
			"counters": vars(self.state.counters).copy(),
			"exhausted": sorted(i for i, r in self.state.retries.items() if r.exhausted),
		}
