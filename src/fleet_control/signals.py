"""Cooperative cancellation and pause signals.

Checking a signal is always side-effect free. Stop can be requested
in-process (SIGINT/SIGTERM, ``FleetDaemon.stop()``) or from outside by
touching the stop file (``fc stop``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path

logger = logging.getLogger(__name__)


class CancellationToken:
	"""In-process stop event combined with on-disk stop markers."""

	def __init__(self, stop_files: list[Path] | None = None, poll_interval: float = 1.0) -> None:
		self._event = asyncio.Event()
		self._stop_files = list(stop_files or [])
		self._poll_interval = poll_interval
		self._reason = ""

	def cancel(self, reason: str = "stop requested") -> None:
		if not self._event.is_set():
			logger.info("Stop requested: %s", reason)
			self._reason = reason
			self._event.set()

	@property
	def cancelled(self) -> bool:
		if self._event.is_set():
			return True
		return any(path.exists() for path in self._stop_files)

	@property
	def reason(self) -> str:
		if self._reason:
			return self._reason
		for path in self._stop_files:
			if path.exists():
				return f"stop file {path}"
		return ""

	async def wait(self, timeout: float) -> bool:
		"""Sleep up to ``timeout`` seconds, returning early (True) on stop."""
		deadline = time.monotonic() + timeout
		while not self.cancelled:
			remaining = deadline - time.monotonic()
			if remaining <= 0:
				return False
			try:
				await asyncio.wait_for(self._event.wait(), timeout=min(remaining, self._poll_interval))
			except asyncio.TimeoutError:
				continue
		return True


def request_stop(stop_file: Path) -> None:
	"""Ask a running daemon (possibly in another process) to shut down."""
	stop_file.parent.mkdir(parents=True, exist_ok=True)
	stop_file.write_text(f"{time.time():.0f}\n")


def clear_stop(stop_file: Path) -> None:
	stop_file.unlink(missing_ok=True)


def write_pause_signal(pause_dir: Path, session_name: str, work_item_id: int, reason: str) -> Path:
	"""Leave a marker asking an operator to look at a paused worker."""
	pause_dir.mkdir(parents=True, exist_ok=True)
	path = pause_dir / f"pause-{session_name}.json"
	path.write_text(json.dumps({
		"session": session_name,
		"work_item_id": work_item_id,
		"reason": reason,
		"paused_at": time.time(),
	}, indent=2) + "\n")
	logger.warning("Paused %s: %s (signal at %s)", session_name, reason, path)
	return path
