"""Tests for stop and pause signals."""

from __future__ import annotations

import json
from pathlib import Path

from fleet_control.signals import CancellationToken, clear_stop, request_stop, write_pause_signal


class TestCancellationToken:
	def test_cancel(self) -> None:
		token = CancellationToken()
		assert not token.cancelled
		assert token.reason == ""
		token.cancel("signal SIGTERM")
		assert token.cancelled
		assert token.reason == "signal SIGTERM"

	def test_first_reason_wins(self) -> None:
		token = CancellationToken()
		token.cancel("first")
		token.cancel("second")
		assert token.reason == "first"

	def test_stop_file(self, tmp_path: Path) -> None:
		stop = tmp_path / "STOP"
		token = CancellationToken([stop])
		assert not token.cancelled
		request_stop(stop)
		assert token.cancelled
		assert token.reason.startswith("stop file")
		clear_stop(stop)
		assert not token.cancelled

	def test_clear_missing_stop_file(self, tmp_path: Path) -> None:
		clear_stop(tmp_path / "STOP")

	async def test_wait_times_out(self) -> None:
		token = CancellationToken(poll_interval=0.01)
		assert await token.wait(0.03) is False

	async def test_wait_returns_early(self) -> None:
		token = CancellationToken(poll_interval=0.01)
		token.cancel()
		assert await token.wait(60) is True

	async def test_wait_sees_stop_file(self, tmp_path: Path) -> None:
		stop = tmp_path / "nested" / "STOP"
		token = CancellationToken([stop], poll_interval=0.01)
		request_stop(stop)
		assert await token.wait(60) is True


class TestPauseSignal:
	def test_write(self, tmp_path: Path) -> None:
		path = write_pause_signal(tmp_path / "pause", "fleet-builder-issue-3", 3, "stalled 1800s")
		assert path.name == "pause-fleet-builder-issue-3.json"
		data = json.loads(path.read_text())
		assert data["work_item_id"] == 3
		assert data["reason"] == "stalled 1800s"
