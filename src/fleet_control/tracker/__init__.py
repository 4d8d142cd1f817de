"""Issue tracker adapters for fleet-control."""

from __future__ import annotations

from fleet_control.tracker.base import Comment, ReviewState, StateStore, TrackerError, references_issue
from fleet_control.tracker.github import GitHubStore

__all__ = [
	"Comment",
	"GitHubStore",
	"ReviewState",
	"StateStore",
	"TrackerError",
	"references_issue",
]
