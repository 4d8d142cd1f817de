"""Fleet-wide circuit breaker over classified worker failures.

Keeps a bounded ring buffer of FailureEvents. When the newest
``threshold`` events share one error class the breaker trips and the
daemon stops dispatching anything. After the cooldown a single probe is
allowed: success clears the breaker, failure keeps it tripped with the
cooldown already extended at probe start.

States: INACTIVE -> ACTIVE (cooling) -> PROBING -> INACTIVE | ACTIVE.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from enum import Enum

from fleet_control.config import SystematicFailureConfig
from fleet_control.models import FailureEvent, SystematicFailureState

logger = logging.getLogger(__name__)


class DispatchGate(str, Enum):
	OPEN = "open"
	BLOCKED = "blocked"
	PROBE = "probe"


class SystematicFailureDetector:
	"""Circuit breaker shared by the whole fleet."""

	def __init__(
		self,
		config: SystematicFailureConfig,
		state: SystematicFailureState | None = None,
		events: Iterable[FailureEvent] = (),
		clock: Callable[[], float] = time.time,
		on_state_change: Callable[[str, str, SystematicFailureState], None] | None = None,
	) -> None:
		self._config = config
		self.state = state if state is not None else SystematicFailureState()
		self.events: deque[FailureEvent] = deque(events, maxlen=config.buffer_size)
		self._clock = clock
		self._on_state_change = on_state_change

	def _notify(self, old: str, new: str) -> None:
		if self._on_state_change:
			self._on_state_change(old, new, self.state)

	def record(self, event: FailureEvent) -> bool:
		"""Add a failure. Returns True if this event tripped the breaker."""
		self.events.append(event)
		st = self.state

		if st.active:
			if st.probe_item is not None and event.work_item_id == st.probe_item:
				logger.warning(
					"Systematic failure probe #%d failed (%s); next probe in %.0fs",
					event.work_item_id, event.error_class,
					max(0.0, (st.cooldown_until or 0.0) - self._clock()),
				)
				st.probe_item = None
				self._notify("probing", "active")
			return False

		window = list(self.events)[-self._config.threshold:]
		if len(window) < self._config.threshold:
			return False
		if len({e.error_class for e in window}) != 1:
			return False

		now = self._clock()
		st.active = True
		st.pattern = event.error_class
		st.detected_at = now
		st.cooldown_until = now + self._config.base_cooldown
		st.probe_count = 0
		st.probe_item = None
		logger.warning(
			"Systematic failure detected: %d consecutive %s failures; pausing dispatch for %.0fs",
			self._config.threshold, event.error_class, self._config.base_cooldown,
		)
		self._notify("inactive", "active")
		return True

	def record_success(self, work_item_id: int) -> bool:
		"""Note a success. Returns True if it was the probe and cleared the breaker."""
		st = self.state
		if not st.active or st.probe_item != work_item_id:
			return False
		logger.info(
			"Systematic failure cleared: probe #%d succeeded after %d probe(s) (pattern %s)",
			work_item_id, st.probe_count, st.pattern,
		)
		# Listeners read the pattern and probe count from the state
		self._notify("probing", "inactive")
		self.clear()
		return True

	def probe_aborted(self, work_item_id: int) -> None:
		"""The probe ended without a verdict (e.g. stop signal)."""
		if self.state.probe_item == work_item_id:
			self.state.probe_item = None

	def dispatch_gate(self, now: float | None = None) -> DispatchGate:
		st = self.state
		if not st.active:
			return DispatchGate.OPEN
		if st.probe_item is not None:
			return DispatchGate.BLOCKED
		now = self._clock() if now is None else now
		if st.cooldown_until is not None and now < st.cooldown_until:
			return DispatchGate.BLOCKED
		return DispatchGate.PROBE

	def probe_started(self, work_item_id: int, now: float | None = None) -> None:
		st = self.state
		now = self._clock() if now is None else now
		st.probe_count += 1
		st.cooldown_until = now + self._config.base_cooldown * 2 ** st.probe_count
		st.probe_item = work_item_id
		logger.info(
			"Probe %d dispatched: #%d (pattern %s); cooldown extended to %.0fs",
			st.probe_count, work_item_id, st.pattern, st.cooldown_until - now,
		)
		if self.probes_exhausted:
			logger.warning(
				"Probe count %d exceeds max_probes=%d for pattern %s; manual attention advised",
				st.probe_count, self._config.max_probes, st.pattern,
			)
		self._notify("active", "probing")

	@property
	def probes_exhausted(self) -> bool:
		return self.state.probe_count > self._config.max_probes

	def clear(self) -> None:
		"""Reset the breaker and drop the failure history."""
		st = self.state
		st.active = False
		st.pattern = ""
		st.detected_at = None
		st.cooldown_until = None
		st.probe_count = 0
		st.probe_item = None
		self.events.clear()

	def get_summary(self) -> dict[str, object]:
		st = self.state
		return {
			"active": st.active,
			"pattern": st.pattern,
			"gate": self.dispatch_gate().value,
			"cooldown_remaining": max(0.0, (st.cooldown_until or 0.0) - self._clock()) if st.active else 0.0,
			"probe_count": st.probe_count,
			"probes_exhausted": self.probes_exhausted,
			"recent_failures": len(self.events),
		}
