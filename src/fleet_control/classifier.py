"""Map supervisor results onto error classes and failure categories."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from fleet_control.models import Phase, SessionStatus, SupervisorResult

# Supervisor result reasons
REASON_CONTRACT = "contract_satisfied"
REASON_SESSION_EXITED = "session_exited"
REASON_TIMEOUT = "timeout"
REASON_STALLED = "stalled"
REASON_PAUSED = "paused"
REASON_STOP = "stop_signal"
REASON_ABORT = "abort_label"
REASON_RUNTIME_ERROR = "runtime_error"
REASON_WORKTREE_FAILED = "worktree_failed"
REASON_SPAWN_FAILED = "spawn_failed"


class FailureCategory(str, Enum):
	TRANSIENT_WORKER = "transient_worker"
	CONTRACT_VALIDATION = "contract_validation"
	EXTERNAL_REJECTION = "external_rejection"
	SYSTEMATIC = "systematic"
	EXHAUSTED = "exhausted"


@dataclass
class Classification:
	error_class: str
	category: FailureCategory


_EXTERNAL_REJECTIONS = ("changes_requested", "merge_conflict")


def category_for(error_class: str) -> FailureCategory:
	if error_class in _EXTERNAL_REJECTIONS:
		return FailureCategory.EXTERNAL_REJECTION
	if error_class.endswith(("_no_pr", "_contract_failed")):
		return FailureCategory.CONTRACT_VALIDATION
	return FailureCategory.TRANSIENT_WORKER


def classify(result: SupervisorResult) -> Classification | None:
	"""Error class for a non-successful result; None when nothing failed.

	Stop signals and pauses are not failures: the item is left where it is.
	"""
	if result.status in (SessionStatus.COMPLETED, SessionStatus.SIGNALED_STOP):
		return None
	if result.reason == REASON_PAUSED:
		return None

	role = result.phase.role
	if result.status in (SessionStatus.TIMED_OUT, SessionStatus.STUCK_CRITICAL, SessionStatus.STUCK_WARN):
		error_class = f"{role}_stuck"
	elif result.reason in (REASON_WORKTREE_FAILED, REASON_SPAWN_FAILED):
		error_class = result.reason
	elif result.reason == REASON_SESSION_EXITED:
		# Worker finished without meeting its contract
		error_class = "builder_no_pr" if result.phase == Phase.BUILD else f"{role}_contract_failed"
	else:
		error_class = f"{role}_errored"
	return Classification(error_class, category_for(error_class))
