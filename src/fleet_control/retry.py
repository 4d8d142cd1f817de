"""Per-item retry with exponential backoff.

Blocked items come back to ready after ``cooldown(retry_count)`` has passed
since their last retry. The dispatch that brings ``retry_count`` up to
``max_retries`` is the last automatic one: the record is marked exhausted
on that same dispatch and the item then stays blocked until a human acts.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from fleet_control.config import RetryConfig
from fleet_control.models import LabelSet, RetryRecord, WorkItem
from fleet_control.tracker.base import StateStore, references_issue

logger = logging.getLogger(__name__)

AUDIT_TAG = "**[fleet]"
_ATTEMPT_RE = re.compile(r"Retry attempt (\d+)/(\d+)")
_FAILURE_RE = re.compile(r"Previous failure: `([^`]+)`")
_FAILED_RE = re.compile(r"\*\*\[fleet\] \w+ failed\*\*")
_FAILED_CLASS_RE = re.compile(r"^Failure: `([^`]+)`", re.MULTILINE)
EXHAUSTED_TEXT = "Retries exhausted"


@dataclass
class RetrySweep:
	eligible: list[int] = field(default_factory=list)
	cooling_down: list[int] = field(default_factory=list)
	exhausted: list[int] = field(default_factory=list)


def without_linked_pr(blocked: Iterable[WorkItem], open_prs: list[WorkItem]) -> tuple[list[WorkItem], list[WorkItem]]:
	"""Split blocked issues into (generic retry, owned by an open PR).

	An issue whose PR is still open (typically with changes requested)
	goes back through the fix phase, never through a fresh build.
	"""
	retryable: list[WorkItem] = []
	linked: list[WorkItem] = []
	for item in blocked:
		if any(references_issue(pr, item.id) for pr in open_prs):
			linked.append(item)
		else:
			retryable.append(item)
	return retryable, linked


class RetryManager:
	"""Owns every RetryRecord mutation.

	``records`` is shared with the daemon state so that it is persisted
	with it; nothing else writes to it.
	"""

	def __init__(
		self,
		store: StateStore,
		labels: LabelSet,
		config: RetryConfig,
		records: dict[int, RetryRecord] | None = None,
		clock: Callable[[], float] = time.time,
	) -> None:
		self._store = store
		self._labels = labels
		self._config = config
		self.records: dict[int, RetryRecord] = records if records is not None else {}
		self._clock = clock

	def _policy(self, error_class: str) -> tuple[float, int]:
		policy = self._config.policies.get(error_class)
		if policy is None:
			return self._config.base_cooldown, self._config.max_retries
		return policy.base_cooldown, policy.max_retries

	def max_retries(self, error_class: str = "") -> int:
		return self._policy(error_class)[1]

	def cooldown(self, retry_count: int, error_class: str = "") -> float:
		"""min(base * multiplier**n, max_cooldown); non-decreasing in n."""
		base, _ = self._policy(error_class)
		try:
			raw = base * self._config.multiplier ** retry_count
		except OverflowError:
			return self._config.max_cooldown
		return min(raw, self._config.max_cooldown)

	def get(self, item_id: int) -> RetryRecord | None:
		return self.records.get(item_id)

	def eligible(self, item_id: int, now: float | None = None) -> bool:
		record = self.records.get(item_id)
		if record is None:
			return True
		if record.exhausted:
			return False
		if record.last_retry_at is None:
			return True
		now = self._clock() if now is None else now
		return now >= record.last_retry_at + self.cooldown(record.retry_count, record.error_class)

	def remaining_cooldown(self, item_id: int, now: float | None = None) -> float:
		record = self.records.get(item_id)
		if record is None or record.last_retry_at is None:
			return 0.0
		now = self._clock() if now is None else now
		ready_at = record.last_retry_at + self.cooldown(record.retry_count, record.error_class)
		return max(0.0, ready_at - now)

	def record_failure(self, item_id: int, error_class: str) -> RetryRecord:
		"""Note the failure class of a newly blocked item.

		Error classes whose policy allows zero retries escalate at once.
		"""
		record = self.records.setdefault(item_id, RetryRecord())
		record.error_class = error_class
		record.held = True
		if not record.exhausted and record.retry_count >= self.max_retries(error_class):
			record.exhausted = True
			logger.warning(
				"#%d exhausted after %d retries (last failure: %s)",
				item_id, record.retry_count, error_class,
			)
		return record

	def record_success(self, item_id: int) -> None:
		record = self.records.get(item_id)
		if record is not None:
			record.held = False

	def sweep(self, item_ids: Iterable[int], now: float | None = None) -> RetrySweep:
		now = self._clock() if now is None else now
		result = RetrySweep()
		for item_id in item_ids:
			record = self.records.get(item_id)
			if record is not None and record.exhausted:
				result.exhausted.append(item_id)
			elif self.eligible(item_id, now):
				result.eligible.append(item_id)
			else:
				result.cooling_down.append(item_id)
		return result

	async def dispatch_retry(self, item_id: int, relabel: bool = True) -> RetryRecord:
		"""Return a blocked item to ready and post the audit comment.

		With ``relabel=False`` only the bookkeeping and comment happen; PR
		phases have no blocked label to flip.
		"""
		record = self.records.setdefault(item_id, RetryRecord())
		if record.exhausted:
			raise ValueError(f"#{item_id} has exhausted its retries")
		now = self._clock()
		attempt = record.retry_count + 1
		max_retries = self.max_retries(record.error_class)

		if relabel:
			await self._store.set_labels(item_id, add=[self._labels.ready], remove=[self._labels.blocked])

		record.retry_count = attempt
		record.last_retry_at = now
		record.held = False
		if attempt >= max_retries:
			record.exhausted = True

		next_cooldown = self.cooldown(attempt, record.error_class)
		lines = [
			f"{AUDIT_TAG} Retry attempt {attempt}/{max_retries}**",
			"",
			f"Previous failure: `{record.error_class or 'unknown'}`",
		]
		if record.exhausted:
			lines += ["", "Final automatic attempt. Another failure leaves this for manual review."]
		else:
			lines += ["", f"If this attempt fails, next retry in {next_cooldown / 60:.0f} minutes."]
		try:
			await self._store.comment(item_id, "\n".join(lines))
		except Exception as exc:
			logger.warning("Retry comment on #%d failed: %s", item_id, exc)

		logger.info(
			"Retry %d/%d for #%d (previous failure %s)%s",
			attempt, max_retries, item_id, record.error_class,
			", final attempt" if record.exhausted else "",
		)
		return record

	def next_step(self, item_id: int) -> str:
		"""What happens next to a failed item, as stated in its audit comment."""
		record = self.records.get(item_id) or RetryRecord()
		if record.exhausted:
			return f"{EXHAUSTED_TEXT}: left for manual review."
		attempt = f"{record.retry_count + 1}/{self.max_retries(record.error_class)}"
		remaining = self.remaining_cooldown(item_id)
		if remaining <= 0:
			return f"Retry {attempt} on the next sweep."
		return f"Retry {attempt} in {remaining / 60:.0f} minutes."

	def failure_comment(self, item_id: int, role: str, reason: str, elapsed: float) -> str:
		record = self.records.get(item_id) or RetryRecord()
		return (
			f"{AUDIT_TAG} {role} failed**\n\n"
			f"Failure: `{record.error_class or 'unknown'}` ({reason}, after {elapsed / 60:.0f} minutes)\n\n"
			f"{self.next_step(item_id)}"
		)

	async def reconstruct(self, item_id: int) -> RetryRecord:
		"""Rebuild a missing record from this daemon's audit comments.

		Retry comments carry the attempt count and time; a failure comment
		after the latest retry means the item is still held.
		"""
		if item_id in self.records:
			return self.records[item_id]
		record = RetryRecord()
		for comment in await self._store.list_comments(item_id):
			body = comment.body
			if AUDIT_TAG not in body:
				continue
			attempt = _ATTEMPT_RE.search(body)
			if attempt is not None:
				record.retry_count = int(attempt.group(1))
				record.last_retry_at = comment.created_at or None
				record.held = False
				failure = _FAILURE_RE.search(body)
				if failure is not None:
					record.error_class = failure.group(1)
			elif _FAILED_RE.search(body):
				record.held = True
				failed = _FAILED_CLASS_RE.search(body)
				if failed is not None:
					record.error_class = failed.group(1)
				if EXHAUSTED_TEXT in body:
					record.exhausted = True
		if record.retry_count >= self.max_retries(record.error_class) and record.retry_count > 0:
			record.exhausted = True
		self.records[item_id] = record
		if record.retry_count or record.held:
			logger.info(
				"Rebuilt retry record for #%d: %d attempts%s",
				item_id, record.retry_count, ", held" if record.held else "",
			)
		return record
