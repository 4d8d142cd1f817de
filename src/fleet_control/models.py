"""Data models for fleet-control state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


class LabelInvariantError(ValueError):
	"""An item carries more than one label from a mutually-exclusive group."""


class Phase(str, Enum):
	INTAKE = "intake"
	BUILD = "build"
	REVIEW = "review"
	FIX = "fix"

	@property
	def role(self) -> str:
		return PHASE_ROLES[self]

	@property
	def targets_pr(self) -> bool:
		return self in (Phase.REVIEW, Phase.FIX)


PHASE_ROLES: dict[Phase, str] = {
	Phase.INTAKE: "curator",
	Phase.BUILD: "builder",
	Phase.REVIEW: "judge",
	Phase.FIX: "doctor",
}


class ItemKind(str, Enum):
	ISSUE = "issue"
	PR = "pr"


@dataclass
class LabelSet:
	"""Tracker label vocabulary."""

	curated: str = "fleet:curated"
	ready: str = "fleet:issue"
	building: str = "fleet:building"
	blocked: str = "fleet:blocked"
	review_requested: str = "fleet:review-requested"
	changes_requested: str = "fleet:changes-requested"
	approved: str = "fleet:pr"
	abort: str = "fleet:abort"

	@property
	def issue_group(self) -> tuple[str, ...]:
		return (self.curated, self.ready, self.building, self.blocked)

	@property
	def pr_group(self) -> tuple[str, ...]:
		return (self.review_requested, self.changes_requested, self.approved)

	def entry_label(self, phase: Phase) -> str | None:
		"""Label an item must carry to be dispatched into ``phase``.

		Intake has no entry label: it takes issues with no lifecycle label.
		"""
		return {
			Phase.INTAKE: None,
			Phase.BUILD: self.ready,
			Phase.REVIEW: self.review_requested,
			Phase.FIX: self.changes_requested,
		}[phase]


@dataclass
class WorkItem:
	"""An issue or pull request tracked by a stable id."""

	id: int
	kind: ItemKind = ItemKind.ISSUE
	title: str = ""
	labels: list[str] = field(default_factory=list)
	body: str = ""
	head_ref: str = ""
	draft: bool = False
	created_at: float = 0.0
	updated_at: float = 0.0

	def has_label(self, label: str) -> bool:
		return label in self.labels

	def lifecycle_label(self, labels: LabelSet) -> str | None:
		"""Return the single active lifecycle label, or None.

		Raises LabelInvariantError when more than one label of the item's
		exclusion group is present.
		"""
		group = labels.pr_group if self.kind == ItemKind.PR else labels.issue_group
		active = [name for name in group if name in self.labels]
		if len(active) > 1:
			raise LabelInvariantError(
				f"{self.kind.value} #{self.id} has conflicting labels: {sorted(active)}"
			)
		return active[0] if active else None


class SessionStatus(str, Enum):
	SPAWNING = "spawning"
	RUNNING = "running"
	STUCK_WARN = "stuck_warn"
	STUCK_CRITICAL = "stuck_critical"
	COMPLETED = "completed"
	TIMED_OUT = "timed_out"
	ERRORED = "errored"
	SIGNALED_STOP = "signaled_stop"


def session_name_for(phase: Phase, work_item_id: int, prefix: str = "") -> str:
	"""Deterministic session name, e.g. ``builder-issue-42``."""
	kind = "pr" if phase.targets_pr else "issue"
	return f"{prefix}{phase.role}-{kind}-{work_item_id}"


def parse_session_name(name: str, prefix: str = "") -> tuple[Phase, int] | None:
	"""Inverse of session_name_for; None for names this daemon did not create."""
	if not name.startswith(prefix):
		return None
	parts = name[len(prefix):].split("-")
	if len(parts) != 3 or not parts[2].isdigit():
		return None
	role, kind, item = parts
	for phase, phase_role in PHASE_ROLES.items():
		if phase_role == role and kind == ("pr" if phase.targets_pr else "issue"):
			return phase, int(item)
	return None


@dataclass
class WorkerSession:
	"""Ephemeral supervision record for one running worker."""

	name: str
	phase: Phase
	work_item_id: int
	started_at: float = 0.0
	last_progress_at: float = 0.0
	last_output_hash: str = ""
	status: SessionStatus = SessionStatus.SPAWNING


@dataclass
class SupervisorResult:
	"""The single terminal result a supervisor reports."""

	status: SessionStatus
	reason: str = ""
	elapsed: float = 0.0
	session_name: str = ""
	phase: Phase = Phase.BUILD
	work_item_id: int = 0

	@property
	def succeeded(self) -> bool:
		return self.status == SessionStatus.COMPLETED


@dataclass
class RetryRecord:
	"""Per-item retry bookkeeping. Never deleted, only marked exhausted."""

	retry_count: int = 0
	last_retry_at: float | None = None
	error_class: str = ""
	exhausted: bool = False
	# Failed since the last retry; waiting for the next sweep
	held: bool = False


@dataclass
class FailureEvent:
	work_item_id: int
	error_class: str
	phase: Phase
	timestamp: float = field(default_factory=time.time)


@dataclass
class SystematicFailureState:
	"""Fleet-wide breaker state."""

	active: bool = False
	pattern: str = ""
	detected_at: float | None = None
	cooldown_until: float | None = None
	probe_count: int = 0
	probe_item: int | None = None


@dataclass
class InFlightEntry:
	"""Summary of an in-flight session, persisted for crash analysis."""

	session_name: str
	phase: Phase
	started_at: float
	probe: bool = False


@dataclass
class DaemonCounters:
	dispatched: int = 0
	completed: int = 0
	failed: int = 0
	retries: int = 0
	recovered: int = 0
	stopped: int = 0


@dataclass
class DaemonState:
	"""Process-wide control loop state.

	A cache of tracker state: everything here can be rebuilt by re-querying
	the tracker (orphan recovery rediscovers in-flight items, retry records
	are parsed back from audit comments).
	"""

	version: int = 1
	iteration: int = 0
	started_at: str = field(default_factory=_now_iso)
	in_flight: dict[int, InFlightEntry] = field(default_factory=dict)
	recent_failures: list[FailureEvent] = field(default_factory=list)
	systematic_failure: SystematicFailureState = field(default_factory=SystematicFailureState)
	retries: dict[int, RetryRecord] = field(default_factory=dict)
	completed_items: list[int] = field(default_factory=list)
	counters: DaemonCounters = field(default_factory=DaemonCounters)
	session_summary: dict[str, Any] | None = None
