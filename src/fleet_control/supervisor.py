"""Worker supervisor -- one polling loop per in-flight work item.

The supervisor watches an opaque worker through its text output and
liveness only. Each tick, in order:

1. stop signals (global token, per-item abort label) end supervision
   without touching the worker
2. the hard timeout kills the worker
3. output is hashed; a new hash counts as progress
4. a dead session is reconciled with one contract validation
5. completion: textual markers (confirmed by the validator), proactive
   check_only polls on a shrinking schedule, and an idle-triggered poll
6. stuck-at-prompt detection and nudging
7. stall classification against the warning/critical thresholds

Exactly one SupervisorResult is returned per call.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from fleet_control.backends.base import RuntimeAdapterError, WorkerHandle, WorkerObservable, WorkerRuntime
from fleet_control.classifier import (
	REASON_ABORT,
	REASON_CONTRACT,
	REASON_PAUSED,
	REASON_RUNTIME_ERROR,
	REASON_SESSION_EXITED,
	REASON_STALLED,
	REASON_STOP,
	REASON_TIMEOUT,
)
from fleet_control.config import SupervisorConfig
from fleet_control.contracts import ContractOutcome, ContractResult, PhaseContractValidator, PhaseRefs, ValidationMode
from fleet_control.models import PHASE_ROLES, LabelSet, Phase, SessionStatus, SupervisorResult, WorkerSession
from fleet_control.signals import CancellationToken, write_pause_signal
from fleet_control.tracker.base import StateStore, TrackerError

logger = logging.getLogger(__name__)

_EXIT_RE = re.compile(r"(^|\s|❯\s*|>\s*)/exit\s*$", re.MULTILINE)
_PR_URL_RE = re.compile(r"https://github\.com/\S+/pull/\d+")
_PROMPT_RE = re.compile(r"❯\s*/?(" + "|".join(PHASE_ROLES.values()) + r")\b")
_PROMPT_TAIL_LINES = 15


def output_hash(output: str) -> str:
	return hashlib.sha256(output.encode(errors="replace")).hexdigest()


def _tail(output: str, lines: int = _PROMPT_TAIL_LINES) -> str:
	return "\n".join([ln for ln in output.splitlines() if ln.strip()][-lines:])


def _label_added(label: str) -> re.Pattern[str]:
	return re.compile(r"--add-label[\s=]+[\"']?" + re.escape(label))


def completion_patterns(phase: Phase, labels: LabelSet) -> list[re.Pattern[str]]:
	"""Output patterns that suggest a worker finished ``phase``."""
	patterns = [_EXIT_RE]
	if phase == Phase.BUILD:
		patterns.append(_PR_URL_RE)
	elif phase == Phase.REVIEW:
		patterns += [_label_added(labels.approved), _label_added(labels.changes_requested)]
	elif phase == Phase.FIX:
		patterns.append(_label_added(labels.review_requested))
	else:
		patterns.append(_label_added(labels.curated))
	return patterns


@dataclass
class _Watch:
	"""Per-session polling bookkeeping."""

	session: WorkerSession
	handle: WorkerHandle
	observable: WorkerObservable
	refs: PhaseRefs
	timeout: float
	marker_hash: str = ""
	next_contract_check: float = 0.0
	idle_armed: bool = True
	last_abort_check: float | None = None
	last_prompt_check: float | None = None
	prompt_since: float | None = None
	last_failed_recovery: float | None = None


class WorkerSupervisor:
	"""Supervises worker sessions; never mutates daemon state."""

	def __init__(
		self,
		runtime: WorkerRuntime,
		validator: PhaseContractValidator,
		config: SupervisorConfig,
		labels: LabelSet,
		store: StateStore | None = None,
		token: CancellationToken | None = None,
		role_command: Callable[[Phase, int], str] | None = None,
		pause_dir: Path | None = None,
		clock: Callable[[], float] = time.monotonic,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		self._runtime = runtime
		self._validator = validator
		self._config = config
		self._labels = labels
		self._store = store
		self._token = token
		self._role_command = role_command
		self._pause_dir = pause_dir or Path(".fleet") / "signals"
		self._clock = clock
		self._sleep = sleep
		self.sessions: dict[str, WorkerSession] = {}

	def contract_interval(self, elapsed: float) -> float | None:
		"""Proactive check interval at ``elapsed``; None while still in the initial delay."""
		if self._config.contract_interval_override > 0:
			return self._config.contract_interval_override
		interval: float | None = None
		for threshold, value in self._config.contract_schedule:
			if elapsed >= threshold:
				interval = value
		return interval

	def at_prompt(self, output: str) -> bool:
		"""A role command sits at the prompt and the worker is not processing it."""
		tail = _tail(output)
		if self._config.processing_indicator and self._config.processing_indicator in tail:
			return False
		return _PROMPT_RE.search(tail) is not None

	async def supervise(
		self,
		session_name: str,
		phase: Phase,
		work_item_id: int,
		refs: PhaseRefs | None = None,
		timeout: float | None = None,
	) -> SupervisorResult:
		started = self._clock()
		timeout = self._config.timeout_for(phase) if timeout is None else timeout
		session = WorkerSession(
			name=session_name,
			phase=phase,
			work_item_id=work_item_id,
			started_at=started,
			last_progress_at=started,
		)

		def result(status: SessionStatus, reason: str) -> SupervisorResult:
			session.status = status
			return SupervisorResult(
				status=status,
				reason=reason,
				elapsed=self._clock() - started,
				session_name=session_name,
				phase=phase,
				work_item_id=work_item_id,
			)

		handle = self._runtime.get_handle(session_name)
		if handle is None:
			logger.error("No runtime handle for session %s", session_name)
			return result(SessionStatus.ERRORED, REASON_RUNTIME_ERROR)

		watch = _Watch(
			session=session,
			handle=handle,
			observable=self._runtime.observe(handle),
			refs=refs or PhaseRefs(),
			timeout=timeout,
		)
		first_threshold = self._config.contract_schedule[0][0] if self._config.contract_schedule else 0.0
		watch.next_contract_check = 0.0 if self._config.contract_interval_override > 0 else first_threshold
		session.status = SessionStatus.RUNNING
		self.sessions[session_name] = session
		logger.info("Supervising %s (%s #%d, timeout %.0fs)", session_name, phase.value, work_item_id, timeout)
		try:
			while True:
				outcome = await self._tick(watch)
				if outcome is not None:
					status, reason = outcome
					final = result(status, reason)
					logger.info(
						"Session %s finished: %s (%s) after %.0fs",
						session_name, status.value, reason, final.elapsed,
					)
					return final
				await self._sleep(self._config.poll_interval)
		finally:
			self.sessions.pop(session_name, None)

	async def _terminate(self, watch: _Watch) -> None:
		try:
			await self._runtime.kill(watch.handle)
		except RuntimeAdapterError as exc:
			logger.warning("Failed to kill %s: %s", watch.session.name, exc)

	async def _validate(self, watch: _Watch, mode: ValidationMode) -> ContractOutcome:
		session = watch.session
		try:
			outcome = await self._validator.validate(session.phase, session.work_item_id, watch.refs, mode)
		except TrackerError as exc:
			logger.warning("Contract check for %s failed: %s", session.name, exc)
			return ContractOutcome(ContractResult.NOT_SATISFIED, f"tracker error: {exc}")
		if outcome.pr_number is not None and watch.refs.pr_number is None and not session.phase.targets_pr:
			watch.refs.pr_number = outcome.pr_number
		return outcome

	async def _check_stop(self, watch: _Watch, now: float) -> str | None:
		if self._token is not None and self._token.cancelled:
			return REASON_STOP
		if self._store is None:
			return None
		last = watch.last_abort_check
		if last is not None and now - last < self._config.abort_check_interval:
			return None
		watch.last_abort_check = now
		try:
			labels = await self._store.get_labels(watch.session.work_item_id)
		except TrackerError as exc:
			logger.warning("Abort label check for %s failed: %s", watch.session.name, exc)
			return None
		return REASON_ABORT if self._labels.abort in labels else None

	async def _tick(self, watch: _Watch) -> tuple[SessionStatus, str] | None:
		session = watch.session
		now = self._clock()
		elapsed = now - session.started_at

		stop_reason = await self._check_stop(watch, now)
		if stop_reason is not None:
			logger.info("Session %s: %s, leaving worker running", session.name, stop_reason)
			return SessionStatus.SIGNALED_STOP, stop_reason

		if elapsed >= watch.timeout:
			logger.warning("Session %s timed out after %.0fs", session.name, elapsed)
			await self._terminate(watch)
			return SessionStatus.TIMED_OUT, REASON_TIMEOUT

		try:
			output = await watch.observable.latest_output()
			alive = await watch.observable.is_alive()
		except RuntimeAdapterError as exc:
			logger.error("Cannot observe %s: %s", session.name, exc)
			await self._terminate(watch)
			return SessionStatus.ERRORED, REASON_RUNTIME_ERROR

		digest = output_hash(output)
		if digest != session.last_output_hash:
			session.last_output_hash = digest
			session.last_progress_at = now
			watch.idle_armed = True
			if session.status in (SessionStatus.STUCK_WARN, SessionStatus.STUCK_CRITICAL):
				logger.info("Session %s producing output again", session.name)
				session.status = SessionStatus.RUNNING

		if not alive:
			outcome = await self._validate(watch, ValidationMode.NORMAL)
			await self._terminate(watch)
			if outcome.ok:
				return SessionStatus.COMPLETED, REASON_CONTRACT
			logger.warning("Session %s exited without meeting its contract: %s", session.name, outcome.reason)
			return SessionStatus.ERRORED, REASON_SESSION_EXITED

		if await self._detect_completion(watch, output, digest, now, elapsed):
			await self._terminate(watch)
			return SessionStatus.COMPLETED, REASON_CONTRACT

		await self._check_prompt_stuck(watch, output, now)

		return await self._classify_stall(watch)

	async def _detect_completion(
		self, watch: _Watch, output: str, digest: str, now: float, elapsed: float,
	) -> bool:
		session = watch.session

		# Textual markers, confirmed once per distinct output
		if digest != watch.marker_hash:
			patterns = completion_patterns(session.phase, self._labels)
			if any(p.search(output) for p in patterns):
				watch.marker_hash = digest
				outcome = await self._validate(watch, ValidationMode.NORMAL)
				if outcome.ok:
					logger.info("Session %s: completion marker confirmed (%s)", session.name, outcome.reason)
					return True
				logger.debug("Session %s: completion marker not confirmed: %s", session.name, outcome.reason)

		if self._config.proactive_checks and elapsed >= watch.next_contract_check:
			interval = self.contract_interval(elapsed)
			if interval is not None:
				watch.next_contract_check = elapsed + interval
				outcome = await self._validate(watch, ValidationMode.CHECK_ONLY)
				if outcome.ok:
					logger.info("Session %s: contract satisfied (proactive check at %.0fs)", session.name, elapsed)
					return True

		idle = now - session.last_progress_at
		if watch.idle_armed and idle >= self._config.idle_timeout:
			watch.idle_armed = False
			outcome = await self._validate(watch, ValidationMode.CHECK_ONLY)
			if outcome.ok:
				logger.info("Session %s: contract satisfied (idle %.0fs)", session.name, idle)
				return True
		return False

	async def _check_prompt_stuck(self, watch: _Watch, output: str, now: float) -> None:
		cfg = self._config
		if watch.last_prompt_check is not None and now - watch.last_prompt_check < cfg.prompt_stuck_check_interval:
			return
		watch.last_prompt_check = now

		if not self.at_prompt(output):
			watch.prompt_since = None
			return
		if watch.prompt_since is None:
			watch.prompt_since = now
			logger.debug("Session %s: command visible at prompt", watch.session.name)
		if now - watch.prompt_since < cfg.prompt_stuck_age_threshold:
			return
		if (
			watch.last_failed_recovery is not None
			and now - watch.last_failed_recovery < cfg.prompt_stuck_recovery_cooldown
		):
			return

		if await self._recover_prompt(watch):
			watch.prompt_since = None
			watch.last_failed_recovery = None
			watch.session.last_progress_at = self._clock()
			watch.idle_armed = True
			watch.session.status = SessionStatus.RUNNING
		else:
			watch.last_failed_recovery = now

	async def _processing(self, watch: _Watch) -> bool:
		try:
			return not self.at_prompt(await watch.observable.latest_output())
		except RuntimeAdapterError:
			return False

	async def _recover_prompt(self, watch: _Watch) -> bool:
		"""Nudge with Enter; if still stuck, retype the role command."""
		session = watch.session
		logger.warning("Session %s stuck at prompt; sending Enter", session.name)
		try:
			await self._runtime.send_input(watch.handle, "")
			await self._sleep(self._config.nudge_wait)
			if await self._processing(watch):
				logger.info("Session %s resumed after nudge", session.name)
				return True

			command = self._role_command(session.phase, session.work_item_id) if self._role_command else ""
			if command:
				logger.warning("Session %s still at prompt; resending %r", session.name, command)
				await self._runtime.send_input(watch.handle, command)
				await self._sleep(self._config.nudge_wait)
				if await self._processing(watch):
					logger.info("Session %s resumed after command retry", session.name)
					return True
		except RuntimeAdapterError as exc:
			logger.warning("Prompt recovery for %s failed: %s", session.name, exc)
			return False
		logger.warning(
			"Prompt recovery for %s failed; next attempt in %.0fs",
			session.name, self._config.prompt_stuck_recovery_cooldown,
		)
		return False

	async def _classify_stall(self, watch: _Watch) -> tuple[SessionStatus, str] | None:
		session = watch.session
		cfg = self._config
		idle = self._clock() - session.last_progress_at

		if idle > cfg.stuck_critical:
			if cfg.stuck_action == "warn":
				if session.status != SessionStatus.STUCK_CRITICAL:
					logger.error("Session %s stuck_critical: no output for %.0fs", session.name, idle)
					session.status = SessionStatus.STUCK_CRITICAL
				return None
			if cfg.stuck_action == "pause":
				write_pause_signal(
					self._pause_dir, session.name, session.work_item_id,
					f"no output for {idle:.0f}s",
				)
				return SessionStatus.STUCK_CRITICAL, REASON_PAUSED
			logger.error("Session %s stuck_critical: no output for %.0fs; killing", session.name, idle)
			await self._terminate(watch)
			return SessionStatus.STUCK_CRITICAL, REASON_STALLED

		if idle > cfg.stuck_warning and session.status == SessionStatus.RUNNING:
			logger.warning("Session %s stuck_warn: no output for %.0fs", session.name, idle)
			session.status = SessionStatus.STUCK_WARN
		return None
