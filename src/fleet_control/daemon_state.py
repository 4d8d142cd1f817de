"""Persistence of DaemonState as JSON, validated with pydantic on load."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from fleet_control.models import (
	DaemonCounters,
	DaemonState,
	FailureEvent,
	InFlightEntry,
	Phase,
	RetryRecord,
	SystematicFailureState,
)

logger = logging.getLogger(__name__)

STATE_FILENAME = "daemon-state.json"
STATE_VERSION = 1


class InFlightSchema(BaseModel, extra="ignore"):
	session_name: str
	phase: Phase
	started_at: float
	probe: bool = False


class FailureEventSchema(BaseModel, extra="ignore"):
	work_item_id: int
	error_class: str
	phase: Phase
	timestamp: float


class SystematicFailureSchema(BaseModel, extra="ignore"):
	active: bool = False
	pattern: str = ""
	detected_at: float | None = None
	cooldown_until: float | None = None
	probe_count: int = 0
	probe_item: int | None = None


class RetryRecordSchema(BaseModel, extra="ignore"):
	retry_count: int = 0
	last_retry_at: float | None = None
	error_class: str = ""
	exhausted: bool = False
	held: bool = False


class CountersSchema(BaseModel, extra="ignore"):
	dispatched: int = 0
	completed: int = 0
	failed: int = 0
	retries: int = 0
	recovered: int = 0
	stopped: int = 0


class DaemonStateSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for validating a persisted daemon-state.json."""

	version: int = STATE_VERSION
	iteration: int = 0
	started_at: str = ""
	in_flight: dict[int, InFlightSchema] = {}
	recent_failures: list[FailureEventSchema] = []
	systematic_failure: SystematicFailureSchema = SystematicFailureSchema()
	retries: dict[int, RetryRecordSchema] = {}
	completed_items: list[int] = []
	counters: CountersSchema = CountersSchema()
	session_summary: dict[str, Any] | None = None


def state_to_dict(state: DaemonState) -> dict[str, Any]:
	return DaemonStateSchema.model_validate(asdict(state)).model_dump(mode="json")


def state_from_dict(data: dict[str, Any]) -> DaemonState:
	"""Build a DaemonState from raw JSON. Raises pydantic.ValidationError."""
	schema = DaemonStateSchema.model_validate(data)
	return DaemonState(
		version=schema.version,
		iteration=schema.iteration,
		started_at=schema.started_at,
		in_flight={k: InFlightEntry(**v.model_dump()) for k, v in schema.in_flight.items()},
		recent_failures=[FailureEvent(**e.model_dump()) for e in schema.recent_failures],
		systematic_failure=SystematicFailureState(**schema.systematic_failure.model_dump()),
		retries={k: RetryRecord(**v.model_dump()) for k, v in schema.retries.items()},
		completed_items=list(schema.completed_items),
		counters=DaemonCounters(**schema.counters.model_dump()),
		session_summary=schema.session_summary,
	)


class StateFile:
	"""``<state_dir>/daemon-state.json`` with atomic writes."""

	def __init__(self, state_dir: str | Path, filename: str = STATE_FILENAME) -> None:
		self.state_dir = Path(state_dir)
		self.path = self.state_dir / filename

	def exists(self) -> bool:
		return self.path.exists()

	def load_raw(self) -> dict[str, Any] | None:
		"""Parsed JSON, or None when missing or unreadable."""
		try:
			data = json.loads(self.path.read_text())
		except FileNotFoundError:
			return None
		except (OSError, json.JSONDecodeError) as exc:
			logger.warning("Discarding unreadable state file %s: %s", self.path, exc)
			return None
		if not isinstance(data, dict):
			logger.warning("Discarding state file %s: not a JSON object", self.path)
			return None
		return data

	def load(self) -> DaemonState | None:
		data = self.load_raw()
		if data is None:
			return None
		try:
			return state_from_dict(data)
		except ValidationError as exc:
			logger.warning("Discarding invalid state file %s: %s", self.path, exc)
			return None

	def save(self, state: DaemonState) -> None:
		self.write_raw(state_to_dict(state))

	def write_raw(self, data: dict[str, Any]) -> None:
		self.state_dir.mkdir(parents=True, exist_ok=True)
		tmp = self.path.with_suffix(".json.tmp")
		tmp.write_text(json.dumps(data, indent=2) + "\n")
		os.replace(tmp, self.path)
