"""Rotation of daemon-state.json into numbered archive slots."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fleet_control.daemon_state import StateFile

logger = logging.getLogger(__name__)

_ARCHIVE_RE = re.compile(r"^(\d+)-daemon-state\.json$")
MIN_STATE_BYTES = 50


def _is_meaningful(data: dict[str, Any]) -> bool:
	return (
		int(data.get("iteration") or 0) > 0
		or bool(data.get("completed_items"))
		or bool(data.get("in_flight"))
	)


class SessionArchiver:
	"""Moves a finished session's state to ``NN-daemon-state.json``.

	Trivial states (never iterated, nothing completed or in flight) are not
	archived. At most ``max_archived`` slots are kept; the oldest go first.
	"""

	def __init__(self, state_file: StateFile, max_archived: int = 10) -> None:
		self._state_file = state_file
		self._max_archived = max_archived

	def list_archives(self) -> list[tuple[int, Path]]:
		if not self._state_file.state_dir.is_dir():
			return []
		archives: list[tuple[int, Path]] = []
		for path in self._state_file.state_dir.iterdir():
			match = _ARCHIVE_RE.match(path.name)
			if match:
				archives.append((int(match.group(1)), path))
		return sorted(archives)

	def rotate(self) -> Path | None:
		"""Archive the current state file if it holds history. Returns the archive path."""
		path = self._state_file.path
		try:
			size = path.stat().st_size
		except FileNotFoundError:
			return None
		if size < MIN_STATE_BYTES:
			logger.debug("State file %s too small to archive (%d bytes)", path, size)
			return None

		data = self._state_file.load_raw()
		if data is None or not _is_meaningful(data):
			logger.debug("State file %s holds no history; not archiving", path)
			return None

		archives = self.list_archives()
		number = archives[-1][0] + 1 if archives else 0
		counters = data.get("counters") or {}
		data["session_summary"] = {
			"session_id": number,
			"archived_at": datetime.now(timezone.utc).isoformat(),
			"started_at": data.get("started_at", ""),
			"items_completed": len(data.get("completed_items") or []),
			"failures": int(counters.get("failed") or 0),
			"retries": int(counters.get("retries") or 0),
			"total_iterations": int(data.get("iteration") or 0),
			"archived_ts": time.time(),
		}

		target = self._state_file.state_dir / f"{number:02d}-daemon-state.json"
		StateFile(self._state_file.state_dir, target.name).write_raw(data)
		path.unlink()
		logger.info("Archived daemon state to %s", target)
		self.prune()
		return target

	def prune(self) -> list[Path]:
		archives = self.list_archives()
		excess = len(archives) - self._max_archived
		removed: list[Path] = []
		for _, path in archives[:max(0, excess)]:
			path.unlink(missing_ok=True)
			removed.append(path)
			logger.info("Pruned old archive %s", path)
		return removed
