"""Crash recovery for items left in the building label with no supervisor."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from fleet_control.backends.base import RuntimeAdapterError, WorkerRuntime
from fleet_control.config import OrphanConfig
from fleet_control.models import LabelSet, WorkItem, parse_session_name
from fleet_control.retry import AUDIT_TAG
from fleet_control.tracker.base import StateStore, TrackerError, references_issue
from fleet_control.workspace import WorkspaceProvisioner

logger = logging.getLogger(__name__)


class OrphanClass(str, Enum):
	LIVE = "live"
	IN_GRACE = "in_grace"
	ABANDONED = "abandoned"
	WAITING_ON_NEXT_PHASE = "waiting_on_next_phase"
	BLOCKED_BY_REJECTION = "blocked_by_rejection"
	STALE_BUT_ACTIVE = "stale_but_active"
	WORKSPACE_ACTIVE = "workspace_active"


@dataclass
class OrphanFinding:
	work_item_id: int
	classification: OrphanClass
	reason: str = ""
	pr_number: int | None = None
	stale: bool = False
	action_taken: bool = False


@dataclass
class RecoveryReport:
	findings: list[OrphanFinding] = field(default_factory=list)
	dry_run: bool = False

	def of(self, classification: OrphanClass) -> list[OrphanFinding]:
		return [f for f in self.findings if f.classification == classification]

	@property
	def recovered(self) -> list[int]:
		return [f.work_item_id for f in self.of(OrphanClass.ABANDONED) if f.action_taken]

	@property
	def blocked(self) -> list[int]:
		return [f.work_item_id for f in self.of(OrphanClass.BLOCKED_BY_REJECTION) if f.action_taken]

	@property
	def flagged(self) -> list[int]:
		return [f.work_item_id for f in self.findings if f.stale]


class OrphanRecovery:
	"""Classifies building-labelled items that no supervisor is watching.

	Only two classes lead to writes: abandoned items go back to ready and
	items whose PR was rejected go to blocked. Everything else is left
	alone, and nothing younger than the grace period is ever touched.
	"""

	def __init__(
		self,
		store: StateStore,
		labels: LabelSet,
		config: OrphanConfig,
		workspaces: WorkspaceProvisioner | None = None,
		runtime: WorkerRuntime | None = None,
		session_prefix: str = "",
		clock: Callable[[], float] = time.time,
	) -> None:
		self._store = store
		self._labels = labels
		self._config = config
		self._workspaces = workspaces
		self._runtime = runtime
		self._session_prefix = session_prefix
		self._clock = clock

	async def _runtime_items(self) -> set[int]:
		if self._runtime is None:
			return set()
		try:
			names = await self._runtime.list_sessions()
		except RuntimeAdapterError as exc:
			logger.warning("Could not list runtime sessions: %s", exc)
			return set()
		items: set[int] = set()
		for name in names:
			parsed = parse_session_name(name, self._session_prefix)
			if parsed is not None and not parsed[0].targets_pr:
				items.add(parsed[1])
		return items

	def classify(
		self,
		item: WorkItem,
		live_items: set[int],
		open_prs: list[WorkItem],
		runtime_items: set[int],
		now: float,
	) -> OrphanFinding:
		"""Pure classification; performs no reads or writes."""
		if item.id in live_items:
			return OrphanFinding(item.id, OrphanClass.LIVE, "supervised")

		age = now - max(item.created_at, item.updated_at)
		if age < self._config.grace_period:
			return OrphanFinding(item.id, OrphanClass.IN_GRACE, f"age {age:.0f}s")

		pr = next((p for p in open_prs if references_issue(p, item.id)), None)
		if pr is not None:
			if pr.has_label(self._labels.changes_requested):
				return OrphanFinding(item.id, OrphanClass.BLOCKED_BY_REJECTION, "linked PR has changes requested", pr.id)
			pr_idle = now - pr.updated_at
			if pr_idle > self._config.stale_pr_threshold:
				return OrphanFinding(
					item.id, OrphanClass.STALE_BUT_ACTIVE,
					f"linked PR #{pr.id} idle {pr_idle / 3600:.1f}h", pr.id, stale=True,
				)
			return OrphanFinding(item.id, OrphanClass.WAITING_ON_NEXT_PHASE, f"linked PR #{pr.id}", pr.id)

		if item.id in runtime_items:
			return OrphanFinding(item.id, OrphanClass.WORKSPACE_ACTIVE, "runtime session alive")
		if self._workspaces is not None:
			if self._workspaces.has_external_process(item.id):
				return OrphanFinding(item.id, OrphanClass.WORKSPACE_ACTIVE, "workspace owned by a live process")
			if self._workspaces.exists(item.id):
				mtime = self._workspaces.last_modified(item.id) or now
				ws_age = now - mtime
				stale = ws_age > self._config.grace_period * self._config.workspace_stale_factor
				return OrphanFinding(
					item.id, OrphanClass.WORKSPACE_ACTIVE,
					f"workspace untouched for {ws_age / 3600:.1f}h", stale=stale,
				)

		return OrphanFinding(item.id, OrphanClass.ABANDONED, f"no worker, PR or workspace after {age / 3600:.1f}h")

	async def sweep(self, live_items: Iterable[int] = (), dry_run: bool = False) -> RecoveryReport:
		"""Classify every building item and apply the recoveries."""
		live = set(live_items)
		now = self._clock()
		building = await self._store.list_items(self._labels.building)
		open_prs = await self._store.list_open_prs() if building else []
		runtime_items = await self._runtime_items() if building else set()

		report = RecoveryReport(dry_run=dry_run)
		for item in building:
			finding = self.classify(item, live, open_prs, runtime_items, now)
			report.findings.append(finding)
			if finding.stale:
				logger.warning("#%d flagged for manual review: %s", item.id, finding.reason)
			if dry_run or finding.classification not in (OrphanClass.ABANDONED, OrphanClass.BLOCKED_BY_REJECTION):
				continue
			try:
				await self._apply(finding)
			except TrackerError as exc:
				logger.error("Recovery of #%d failed: %s", item.id, exc)

		if report.findings:
			logger.info(
				"Orphan sweep%s: %d building, %d recovered, %d blocked, %d flagged",
				" (dry run)" if dry_run else "", len(report.findings),
				len(report.recovered), len(report.blocked), len(report.flagged),
			)
		return report

	async def _apply(self, finding: OrphanFinding) -> None:
		item_id = finding.work_item_id
		if finding.classification == OrphanClass.ABANDONED:
			await self._store.set_labels(item_id, add=[self._labels.ready], remove=[self._labels.building])
			await self._store.comment(
				item_id,
				f"{AUDIT_TAG} Auto-recovered from stale state**\n\n"
				f"{finding.reason}. Returned to `{self._labels.ready}` for another attempt.",
			)
			logger.info("Recovered abandoned #%d: %s", item_id, finding.reason)
		else:
			await self._store.set_labels(item_id, add=[self._labels.blocked], remove=[self._labels.building])
			await self._store.comment(
				item_id,
				f"{AUDIT_TAG} Blocked by review**\n\n"
				f"PR #{finding.pr_number} has changes requested. Moved to `{self._labels.blocked}`; "
				"the fix phase picks it up from the PR.",
			)
			logger.info("#%d blocked: PR #%s rejected", item_id, finding.pr_number)
		finding.action_taken = True
