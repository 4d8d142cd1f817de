"""Tests for daemon state persistence and session archiving."""

from __future__ import annotations

import json
from pathlib import Path

from fleet_control.archive import SessionArchiver
from fleet_control.daemon_state import StateFile, state_from_dict, state_to_dict
from fleet_control.models import (
	DaemonState,
	FailureEvent,
	InFlightEntry,
	Phase,
	RetryRecord,
	SystematicFailureState,
)


def _state(**overrides: object) -> DaemonState:
	state = DaemonState(
		iteration=4,
		in_flight={7: InFlightEntry("fleet-builder-issue-7", Phase.BUILD, 100.0, probe=True)},
		recent_failures=[FailureEvent(3, "builder_stuck", Phase.BUILD, 50.0)],
		systematic_failure=SystematicFailureState(active=True, pattern="builder_stuck", cooldown_until=900.0),
		retries={3: RetryRecord(retry_count=1, last_retry_at=60.0, error_class="builder_stuck")},
		completed_items=[1, 2],
	)
	for key, value in overrides.items():
		setattr(state, key, value)
	return state


class TestStateFile:
	def test_save_and_load(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.save(_state())
		loaded = sf.load()
		assert loaded is not None
		assert loaded.iteration == 4
		assert loaded.in_flight[7].phase == Phase.BUILD
		assert loaded.in_flight[7].probe is True
		assert loaded.retries[3].retry_count == 1
		assert loaded.systematic_failure.pattern == "builder_stuck"
		assert loaded.recent_failures[0].error_class == "builder_stuck"

	def test_json_round_trip(self, tmp_path: Path) -> None:
		data = state_to_dict(_state())
		assert state_from_dict(json.loads(json.dumps(data))).in_flight[7].session_name == "fleet-builder-issue-7"

	def test_unknown_fields_ignored(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.write_raw({"iteration": 2, "some_future_field": True})
		loaded = sf.load()
		assert loaded is not None
		assert loaded.iteration == 2

	def test_invalid_state_discarded(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.write_raw({"iteration": "many"})
		assert sf.load() is None

	def test_corrupt_json_discarded(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.path.write_text("{not json")
		assert sf.load() is None

	def test_missing(self, tmp_path: Path) -> None:
		assert StateFile(tmp_path / "nope").load() is None

	def test_write_is_atomic(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.save(_state())
		assert not list(tmp_path.glob("*.tmp"))


class TestSessionArchiver:
	def test_rotate_numbers_slots(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		archiver = SessionArchiver(sf)
		sf.save(_state())
		first = archiver.rotate()
		sf.save(_state())
		second = archiver.rotate()
		assert first is not None and first.name == "00-daemon-state.json"
		assert second is not None and second.name == "01-daemon-state.json"
		assert not sf.exists()

	def test_summary_added(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.save(_state())
		path = SessionArchiver(sf).rotate()
		assert path is not None
		summary = json.loads(path.read_text())["session_summary"]
		assert summary["session_id"] == 0
		assert summary["items_completed"] == 2
		assert summary["total_iterations"] == 4

	def test_trivial_state_not_archived(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		sf.save(DaemonState())
		assert SessionArchiver(sf).rotate() is None
		assert sf.exists()

	def test_missing_state(self, tmp_path: Path) -> None:
		assert SessionArchiver(StateFile(tmp_path)).rotate() is None

	def test_prune_keeps_newest(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		archiver = SessionArchiver(sf, max_archived=2)
		for _ in range(4):
			sf.save(_state())
			archiver.rotate()
		assert [n for n, _ in archiver.list_archives()] == [2, 3]

	def test_numbering_continues_after_gap(self, tmp_path: Path) -> None:
		sf = StateFile(tmp_path)
		(tmp_path / "07-daemon-state.json").write_text("{}")
		sf.save(_state())
		path = SessionArchiver(sf).rotate()
		assert path is not None
		assert path.name == "08-daemon-state.json"
