"""Abstract base class for the label-based issue tracker."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from fleet_control.models import ItemKind, WorkItem


class TrackerError(RuntimeError):
	"""A tracker call failed or timed out."""


class ReviewState(str, Enum):
	NONE = "none"
	APPROVED = "approved"
	CHANGES_REQUESTED = "changes_requested"
	COMMENTED = "commented"


@dataclass
class Comment:
	author: str
	body: str
	created_at: float = 0.0


_CLOSING_RE = r"(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#{id}\b"


def references_issue(pr: WorkItem, issue_id: int) -> bool:
	"""True if the PR body closes ``issue_id`` or its branch is named for it."""
	if re.search(_CLOSING_RE.format(id=issue_id), pr.body or "", re.IGNORECASE):
		return True
	return re.search(rf"issue-{issue_id}\b", pr.head_ref or "") is not None


class StateStore(ABC):
	"""Snapshot reads and label writes against the remote tracker.

	Every call is time-bounded by the implementation and raises
	TrackerError on failure. Reads are snapshots and may be stale.
	"""

	@abstractmethod
	async def list_items(self, label: str | None, kind: ItemKind = ItemKind.ISSUE) -> list[WorkItem]:
		"""Open items carrying ``label`` (all open items when None)."""

	@abstractmethod
	async def get_item(self, item_id: int) -> WorkItem:
		"""Fetch a single issue or PR."""

	@abstractmethod
	async def get_labels(self, item_id: int) -> list[str]:
		...

	@abstractmethod
	async def set_labels(
		self, item_id: int, add: list[str] | None = None, remove: list[str] | None = None,
	) -> None:
		"""Add and remove labels. Removing an absent label is not an error."""

	@abstractmethod
	async def comment(self, item_id: int, text: str) -> None:
		...

	@abstractmethod
	async def list_comments(self, item_id: int) -> list[Comment]:
		...

	@abstractmethod
	async def get_review_state(self, pr_id: int) -> ReviewState:
		"""Latest decisive review state of a PR."""

	async def list_open_prs(self) -> list[WorkItem]:
		return await self.list_items(None, ItemKind.PR)

	async def find_linked_pr(self, issue_id: int) -> WorkItem | None:
		"""First open PR (drafts included) that references ``issue_id``."""
		for pr in await self.list_open_prs():
			if references_issue(pr, issue_id):
				return pr
		return None

	async def close(self) -> None:
		"""Release any underlying connections."""
