"""Tests for the daemon control loop."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock, FakeRuntime, FakeStore, FakeWorkspaces, make_pr, make_result, make_work_item

from fleet_control.config import FleetConfig
from fleet_control.daemon import FleetDaemon
from fleet_control.failure_detector import DispatchGate
from fleet_control.models import Phase, RetryRecord, SessionStatus, SystematicFailureState, session_name_for
from fleet_control.notifier import TelegramNotifier
from fleet_control.signals import request_stop


def _yielding_sleep(clock: FakeClock) -> Callable[[float], Awaitable[None]]:
	async def sleep(seconds: float) -> None:
		clock.advance(seconds)
		await asyncio.sleep(0)
	return sleep


@pytest.fixture()
def notifier() -> AsyncMock:
	return AsyncMock(spec=TelegramNotifier)


@pytest.fixture()
def daemon(
	config: FleetConfig,
	store: FakeStore,
	runtime: FakeRuntime,
	workspaces: FakeWorkspaces,
	clock: FakeClock,
	notifier: AsyncMock,
) -> FleetDaemon:
	sup_clock = FakeClock(0.0)
	return FleetDaemon(
		config, store, runtime, workspaces,  # type: ignore[arg-type]
		notifier=notifier,
		clock=clock,
		supervisor_clock=sup_clock,
		supervisor_sleep=_yielding_sleep(sup_clock),
	)


async def _finish_supervisors(daemon: FleetDaemon) -> None:
	await asyncio.wait_for(asyncio.gather(*daemon._tasks.values()), timeout=10)
	await daemon._reap()


class TestDispatch:
	@pytest.mark.asyncio
	async def test_build_claims_and_spawns(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime, workspaces: FakeWorkspaces,
	) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=1, labels=[labels.ready]))
		await daemon.run_iteration()

		assert store.items[1].labels == [labels.building]
		assert runtime.spawned == ["fleet-builder-issue-1"]
		assert workspaces.created == [(1, False)]
		assert daemon.state.in_flight[1].phase == Phase.BUILD
		assert daemon.state.counters.dispatched == 1
		assert 1 in daemon._tasks
		daemon.stop("test")
		await _finish_supervisors(daemon)

	@pytest.mark.asyncio
	async def test_priority_fix_review_build(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime, workspaces: FakeWorkspaces,
	) -> None:
		labels = daemon.config.labels
		daemon.config.daemon.max_concurrency = 2
		store.add(make_work_item(id=3, labels=[labels.ready]))
		store.add(make_pr(id=201, labels=[labels.review_requested]))
		store.add(make_pr(id=200, labels=[labels.changes_requested]))
		await daemon.run_iteration()

		assert runtime.spawned == ["fleet-doctor-pr-200", "fleet-judge-pr-201"]
		assert workspaces.created == [(200, True), (201, True)]
		assert store.items[3].labels == [labels.ready]
		daemon.stop("test")
		await _finish_supervisors(daemon)

	@pytest.mark.asyncio
	async def test_conflicting_and_aborted_items_skipped(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime,
	) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=1, labels=[labels.ready, labels.blocked]))
		store.add(make_work_item(id=2, labels=[labels.ready, labels.abort]))
		await daemon.run_iteration()
		assert runtime.spawned == []
		assert store.label_writes == []

	@pytest.mark.asyncio
	async def test_snapshot_failure_skips_dispatch(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime,
	) -> None:
		store.add(make_work_item(id=1, labels=[daemon.config.labels.ready]))
		store.fail.add("list_items")
		await daemon.run_iteration()
		assert runtime.spawned == []
		assert daemon.state.iteration == 1
		assert daemon.state_file.exists()

	@pytest.mark.asyncio
	async def test_spawn_failure_blocks_item(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime,
	) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=1, labels=[labels.ready]))
		runtime.spawn_error = "tmux exploded"
		daemon.config.daemon.max_concurrency = 1
		await daemon._dispatch(await daemon._snapshot())

		assert store.items[1].labels == [labels.blocked]
		assert daemon.retry.get(1) is not None
		assert daemon.retry.get(1).error_class == "spawn_failed"  # type: ignore[union-attr]
		assert daemon.state.in_flight == {}


class TestFailureHandling:
	@pytest.mark.asyncio
	async def test_timeout_blocks_item(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime,
	) -> None:
		"""A builder that never completes is timed out, recorded as builder_stuck and blocked."""
		labels = daemon.config.labels
		daemon.config.supervisor.phase_timeouts["build"] = 100.0
		store.add(make_work_item(id=1, labels=[labels.ready]))
		await daemon.run_iteration()
		await _finish_supervisors(daemon)

		assert runtime.killed == ["fleet-builder-issue-1"]
		assert [(e.work_item_id, e.error_class) for e in daemon.detector.events] == [(1, "builder_stuck")]
		assert store.items[1].labels == [labels.blocked]
		assert daemon.state.counters.failed == 1
		body = store.comments[1][-1].body
		assert "`builder_stuck`" in body
		# First failure: nothing to cool down from
		assert "Retry 1/3 on the next sweep." in body

	@pytest.mark.asyncio
	async def test_pr_phase_failure_keeps_labels(self, daemon: FleetDaemon, store: FakeStore) -> None:
		labels = daemon.config.labels
		store.add(make_pr(id=100, labels=[labels.review_requested]))
		await daemon.handle_result(make_result(
			status=SessionStatus.TIMED_OUT, reason="timeout", phase=Phase.REVIEW, work_item_id=100,
		))
		assert store.items[100].labels == [labels.review_requested]
		assert daemon.retry.get(100).held  # type: ignore[union-attr]
		assert daemon.retry.get(100).error_class == "judge_stuck"  # type: ignore[union-attr]

	@pytest.mark.asyncio
	async def test_failure_while_cooling_states_wait(
		self, daemon: FleetDaemon, store: FakeStore, clock: FakeClock,
	) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=1, labels=[labels.building]))
		daemon.retry.records[1] = RetryRecord(retry_count=1, last_retry_at=clock.now, error_class="builder_stuck")
		await daemon.handle_result(make_result(status=SessionStatus.TIMED_OUT, reason="timeout"))
		assert "Retry 2/3 in 60 minutes." in store.comments[1][-1].body

	@pytest.mark.asyncio
	async def test_intake_failure_stays_unlabelled(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime,
	) -> None:
		"""A failed curator leaves the issue uncurated; the retry goes back through intake."""
		daemon.config.daemon.enable_intake = True
		store.add(make_work_item(id=7))
		await daemon.handle_result(make_result(
			status=SessionStatus.TIMED_OUT, reason="timeout", phase=Phase.INTAKE, work_item_id=7,
			session_name=session_name_for(Phase.INTAKE, 7, "fleet-"),
		))
		assert store.items[7].labels == []
		assert store.label_writes == []
		assert daemon.retry.get(7).held  # type: ignore[union-attr]

		# Held until the sweep releases it, without touching labels
		await daemon.run_iteration()
		assert runtime.spawned == []
		assert store.items[7].labels == []
		assert not daemon.retry.get(7).held  # type: ignore[union-attr]
		assert "Retry attempt 1/3" in store.comments[7][-1].body

		await daemon.run_iteration()
		assert runtime.spawned == [session_name_for(Phase.INTAKE, 7, "fleet-")]
		assert store.label_writes == []
		daemon.stop("test")
		await _finish_supervisors(daemon)

	@pytest.mark.asyncio
	async def test_stop_is_not_a_failure(self, daemon: FleetDaemon, store: FakeStore) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=1, labels=[labels.building]))
		await daemon.handle_result(make_result(status=SessionStatus.SIGNALED_STOP, reason="stop_signal"))
		assert store.items[1].labels == [labels.building]
		assert daemon.state.counters.stopped == 1
		assert daemon.state.counters.failed == 0
		assert len(daemon.detector.events) == 0

	@pytest.mark.asyncio
	async def test_success_removes_workspace(
		self, daemon: FleetDaemon, store: FakeStore, workspaces: FakeWorkspaces,
	) -> None:
		await daemon.handle_result(make_result())
		assert daemon.state.completed_items == [1]
		assert workspaces.removed == [(1, False)]


class TestCircuitBreaker:
	@pytest.mark.asyncio
	async def test_trip_stops_dispatch_then_probe_clears(
		self,
		daemon: FleetDaemon,
		store: FakeStore,
		runtime: FakeRuntime,
		workspaces: FakeWorkspaces,
		clock: FakeClock,
		notifier: AsyncMock,
	) -> None:
		labels = daemon.config.labels
		daemon.config.daemon.max_concurrency = 5
		for item_id in range(1, 5):
			store.add(make_work_item(id=item_id, labels=[labels.ready]))

		# Three worktree failures trip the breaker mid-dispatch
		workspaces.fail = True
		await daemon.run_iteration()

		assert daemon.detector.state.active
		assert daemon.detector.state.pattern == "worktree_failed"
		assert daemon.state.counters.dispatched == 3
		assert [lbl for lbl in store.items[4].labels] == [labels.ready]
		notifier.send_breaker_tripped.assert_called_once()

		# Still cooling down: nothing is dispatched
		workspaces.fail = False
		clock.advance(1000)
		await daemon.run_iteration()
		assert daemon.state.counters.dispatched == 3
		assert runtime.spawned == []

		# Cooldown over: exactly one probe goes out
		clock.advance(900)
		assert daemon.detector.dispatch_gate() == DispatchGate.PROBE
		await daemon.run_iteration()
		assert runtime.spawned == ["fleet-builder-issue-1"]
		assert daemon.detector.state.probe_item == 1
		assert daemon.state.in_flight[1].probe

		# The probe opens a labelled PR and the supervisor confirms it
		store.add(make_pr(id=100, labels=[labels.review_requested]))
		runtime.outputs["fleet-builder-issue-1"] = "https://github.com/acme/widgets/pull/100"
		await _finish_supervisors(daemon)

		assert daemon.detector.state == SystematicFailureState()
		assert len(daemon.detector.events) == 0
		daemon.persist()
		assert daemon.state.recent_failures == []

	@pytest.mark.asyncio
	async def test_differing_failures_do_not_trip(
		self, daemon: FleetDaemon, store: FakeStore,
	) -> None:
		for item_id, reason in ((1, "worktree_failed"), (2, "spawn_failed"), (3, "worktree_failed")):
			store.add(make_work_item(id=item_id))
			await daemon.handle_result(make_result(status=SessionStatus.ERRORED, reason=reason, work_item_id=item_id))
		assert not daemon.detector.state.active


class TestRetrySweep:
	@pytest.mark.asyncio
	async def test_final_retry_marks_exhausted(
		self, daemon: FleetDaemon, store: FakeStore, clock: FakeClock, notifier: AsyncMock,
	) -> None:
		labels = daemon.config.labels
		daemon.config.daemon.max_concurrency = 0
		store.add(make_work_item(id=5, labels=[labels.blocked]))
		daemon.retry.records[5] = RetryRecord(
			retry_count=2, last_retry_at=clock.now - 10**5, error_class="builder_stuck",
		)
		await daemon.run_iteration()

		record = daemon.retry.get(5)
		assert record is not None
		assert record.retry_count == 3
		assert record.exhausted
		assert store.items[5].labels == [labels.ready]
		assert daemon.state.counters.retries == 1

		# The last attempt fails: the item stays blocked for good
		store.items[5].labels = [labels.building]
		await daemon.handle_result(make_result(
			status=SessionStatus.TIMED_OUT, reason="timeout", work_item_id=5,
		))
		assert store.items[5].labels == [labels.blocked]
		assert "Retries exhausted" in store.comments[5][-1].body
		notifier.send_retries_exhausted.assert_awaited_once_with(5, "builder_stuck", 3)

		clock.advance(10**6)
		await daemon.run_iteration()
		assert store.items[5].labels == [labels.blocked]

	@pytest.mark.asyncio
	async def test_final_attempt_is_dispatched(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime, clock: FakeClock,
	) -> None:
		"""An exhausted record still lets the ready label it was given run once."""
		labels = daemon.config.labels
		store.add(make_work_item(id=5, labels=[labels.ready]))
		daemon.retry.records[5] = RetryRecord(
			retry_count=3, last_retry_at=clock.now, error_class="builder_stuck", exhausted=True,
		)
		await daemon.run_iteration()
		assert runtime.spawned == ["fleet-builder-issue-5"]
		daemon.stop("test")
		await _finish_supervisors(daemon)

	@pytest.mark.asyncio
	async def test_exhausted_pr_stays_held_after_restart(
		self,
		daemon: FleetDaemon,
		config: FleetConfig,
		store: FakeStore,
		workspaces: FakeWorkspaces,
		clock: FakeClock,
	) -> None:
		labels = config.labels
		config.retry.max_retries = 1
		config.daemon.max_concurrency = 0
		store.add(make_pr(id=100, labels=[labels.review_requested]))
		failure = make_result(
			status=SessionStatus.TIMED_OUT, reason="timeout", phase=Phase.REVIEW, work_item_id=100,
			session_name="fleet-judge-pr-100",
		)

		await daemon.handle_result(failure)
		await daemon.run_iteration()
		record = daemon.retry.get(100)
		assert record is not None
		assert (record.retry_count, record.exhausted, record.held) == (1, True, False)

		await daemon.handle_result(failure)
		assert daemon.retry.get(100).held  # type: ignore[union-attr]
		assert "Retries exhausted" in store.comments[100][-1].body

		# A new daemon starts with empty state and has only the tracker to go on
		config.daemon.max_concurrency = 3
		clock.advance(10**6)
		fresh_runtime = FakeRuntime()
		restarted = FleetDaemon(config, store, fresh_runtime, workspaces, clock=clock)  # type: ignore[arg-type]
		await restarted.run_iteration()

		assert fresh_runtime.spawned == []
		rebuilt = restarted.retry.get(100)
		assert rebuilt is not None
		assert (rebuilt.retry_count, rebuilt.exhausted, rebuilt.held) == (1, True, True)
		assert store.items[100].labels == [labels.review_requested]

	@pytest.mark.asyncio
	async def test_cooling_item_left_blocked(
		self, daemon: FleetDaemon, store: FakeStore, clock: FakeClock,
	) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=5, labels=[labels.blocked]))
		daemon.retry.records[5] = RetryRecord(retry_count=1, last_retry_at=clock.now, error_class="builder_stuck")
		await daemon.run_iteration()
		assert store.items[5].labels == [labels.blocked]

	@pytest.mark.asyncio
	async def test_blocked_with_linked_pr_left_to_fix_phase(
		self, daemon: FleetDaemon, store: FakeStore,
	) -> None:
		labels = daemon.config.labels
		daemon.config.daemon.max_concurrency = 0
		store.add(make_work_item(id=1, labels=[labels.blocked]))
		store.add(make_pr(id=100, labels=[labels.changes_requested]))
		await daemon.run_iteration()
		assert store.items[1].labels == [labels.blocked]
		assert daemon.retry.get(1) is None


class TestLifecycle:
	@pytest.mark.asyncio
	async def test_run_until_stop(self, daemon: FleetDaemon, runtime: FakeRuntime, notifier: AsyncMock) -> None:
		task = asyncio.create_task(daemon.run())
		await asyncio.sleep(0.05)
		daemon.stop("test over")
		result = await asyncio.wait_for(task, timeout=5)

		assert result.stopped_reason == "test over"
		assert result.iterations >= 1
		assert result.archive_path is not None and result.archive_path.exists()
		assert runtime.cleaned_up
		notifier.send_daemon_start.assert_awaited_once()
		notifier.send_daemon_stop.assert_awaited_once()
		notifier.close.assert_awaited_once()

	@pytest.mark.asyncio
	async def test_stop_file(self, daemon: FleetDaemon) -> None:
		task = asyncio.create_task(daemon.run())
		await asyncio.sleep(0.05)
		request_stop(daemon.stop_file)
		result = await asyncio.wait_for(task, timeout=5)
		assert result.stopped_reason.startswith("stop file")

	@pytest.mark.asyncio
	async def test_adopts_live_sessions(
		self, daemon: FleetDaemon, store: FakeStore, runtime: FakeRuntime,
	) -> None:
		labels = daemon.config.labels
		store.add(make_work_item(id=9, labels=[labels.building]))
		await runtime.spawn("fleet-builder-issue-9", Phase.BUILD, 9, "/tmp")
		await runtime.spawn("unrelated-session", Phase.BUILD, 0, "/tmp")
		await daemon._adopt_sessions()

		assert list(daemon.state.in_flight) == [9]
		assert 9 in daemon._tasks

		await daemon.shutdown("test")
		assert daemon.state.counters.stopped == 1
		assert store.items[9].labels == [labels.building]
		assert runtime.killed == []

	@pytest.mark.asyncio
	async def test_status(self, daemon: FleetDaemon) -> None:
		status = daemon.status()
		assert status["iteration"] == 0
		assert status["in_flight"] == {}
		assert status["exhausted"] == []
