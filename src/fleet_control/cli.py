"""CLI interface for fleet-control."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import TypeVar

from fleet_control.archive import SessionArchiver
from fleet_control.backends import create_runtime
from fleet_control.config import FleetConfig, load_config, validate_config
from fleet_control.contracts import PhaseContractValidator, PhaseRefs, ValidationMode
from fleet_control.daemon import FleetDaemon
from fleet_control.daemon_state import StateFile
from fleet_control.failure_detector import SystematicFailureDetector
from fleet_control.models import Phase, SystematicFailureState
from fleet_control.notifier import TelegramNotifier
from fleet_control.orphan_recovery import OrphanRecovery
from fleet_control.retry import RetryManager, without_linked_pr
from fleet_control.signals import request_stop
from fleet_control.tracker import GitHubStore, StateStore, TrackerError
from fleet_control.workspace import WorkspaceProvisioner

DEFAULT_CONFIG = "fleet-control.toml"

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="fc",
		description="Fleet Control - supervise LLM workers against a label-driven tracker",
	)
	parser.add_argument("--debug", action="store_true", help="Verbose logging")
	sub = parser.add_subparsers(dest="command")

	daemon = sub.add_parser("daemon", help="Run the control loop until stopped")
	daemon.add_argument("--config", default=DEFAULT_CONFIG)
	daemon.add_argument("--max-concurrency", type=int, default=None)

	status = sub.add_parser("status", help="Show persisted daemon state")
	status.add_argument("--config", default=DEFAULT_CONFIG)

	vp = sub.add_parser("validate-phase", help="Check a phase contract for one item")
	vp.add_argument("phase", choices=[p.value for p in Phase])
	vp.add_argument("item", type=int, help="Issue number (intake/build) or PR number (review/fix)")
	vp.add_argument("--pr", type=int, default=None, help="Known PR for the build phase")
	vp.add_argument("--check-only", action="store_true", help="Never write to the tracker")
	vp.add_argument("--config", default=DEFAULT_CONFIG)

	ro = sub.add_parser("recover-orphans", help="Classify and recover building items without a worker")
	ro.add_argument("--dry-run", action="store_true")
	ro.add_argument("--config", default=DEFAULT_CONFIG)

	rb = sub.add_parser("retry-blocked", help="Return eligible blocked items to ready")
	rb.add_argument("--dry-run", action="store_true")
	rb.add_argument("--config", default=DEFAULT_CONFIG)

	fl = sub.add_parser("failures", help="Show or clear the systematic failure state")
	fl.add_argument("--clear", action="store_true", help="Reset the breaker in the persisted state")
	fl.add_argument("--config", default=DEFAULT_CONFIG)

	rs = sub.add_parser("rotate-state", help="Archive the current state file")
	rs.add_argument("--config", default=DEFAULT_CONFIG)

	stop = sub.add_parser("stop", help="Ask a running daemon to shut down gracefully")
	stop.add_argument("--config", default=DEFAULT_CONFIG)

	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG)
	return parser


def _make_store(config: FleetConfig) -> StateStore:
	if config.tracker.type != "github":
		raise ValueError(f"Unknown tracker type: {config.tracker.type}")
	return GitHubStore(config.tracker)


def _with_store(config: FleetConfig, fn: Callable[[StateStore], Awaitable[T]]) -> T:
	async def _run() -> T:
		store = _make_store(config)
		try:
			return await fn(store)
		finally:
			await store.close()
	return asyncio.run(_run())


def cmd_daemon(args: argparse.Namespace) -> int:
	"""Run the fleet daemon in the foreground."""
	config = load_config(args.config)
	if args.max_concurrency is not None:
		config.daemon.max_concurrency = args.max_concurrency
	errors = [msg for lvl, msg in validate_config(config) if lvl == "error"]
	if errors:
		for msg in errors:
			print(f"[ERROR] {msg}")
		return 1

	async def _run() -> int:
		store = _make_store(config)
		tg = config.notifications.telegram
		notifier = None
		if tg is not None and tg.bot_token and tg.chat_id:
			notifier = TelegramNotifier(tg.bot_token, tg.chat_id, repo=config.tracker.repo)
		daemon = FleetDaemon(
			config,
			store,
			create_runtime(config.runtime),
			WorkspaceProvisioner(config.workspace),
			notifier=notifier,
		)
		loop = asyncio.get_running_loop()
		for sig in (signal.SIGINT, signal.SIGTERM):
			loop.add_signal_handler(sig, daemon.stop, f"signal {sig.name}")
		try:
			result = await daemon.run()
		finally:
			await store.close()
		print(
			f"Stopped ({result.stopped_reason}) after {result.iterations} iterations: "
			f"{result.completed} completed, {result.failed} failed"
		)
		if result.archive_path:
			print(f"State archived to {result.archive_path}")
		return 0 if result.stopped_reason != "error" else 1

	return asyncio.run(_run())


def cmd_status(args: argparse.Namespace) -> int:
	"""Show the persisted state of the current (or last) daemon run."""
	config = load_config(args.config)
	state_file = StateFile(config.daemon.resolved_state_dir)
	state = state_file.load()
	if state is None:
		print(f"No daemon state at {state_file.path}")
		return 1

	print(f"Started: {state.started_at}")
	print(f"Iteration: {state.iteration}")
	c = state.counters
	print(
		f"Dispatched: {c.dispatched}, Completed: {c.completed}, Failed: {c.failed}, "
		f"Retries: {c.retries}, Recovered: {c.recovered}"
	)
	if state.in_flight:
		print(f"\nIn flight ({len(state.in_flight)}):")
		for item_id, entry in sorted(state.in_flight.items()):
			probe = " [probe]" if entry.probe else ""
			print(f"  #{item_id} {entry.phase.value} {entry.session_name}{probe}")

	sf = state.systematic_failure
	if sf.active:
		print(f"\nSystematic failure ACTIVE: {sf.pattern} (probes: {sf.probe_count})")
	else:
		print(f"\nSystematic failure: inactive ({len(state.recent_failures)} recent failures)")

	exhausted = sorted(i for i, r in state.retries.items() if r.exhausted)
	if exhausted:
		print("Retries exhausted: " + ", ".join(f"#{i}" for i in exhausted))
	archives = SessionArchiver(state_file).list_archives()
	print(f"Archived sessions: {len(archives)}")
	return 0


def cmd_validate_phase(args: argparse.Namespace) -> int:
	"""Run one contract check and print the outcome."""
	config = load_config(args.config)
	phase = Phase(args.phase)
	mode = ValidationMode.CHECK_ONLY if args.check_only else ValidationMode.NORMAL
	refs = PhaseRefs(pr_number=args.pr if phase == Phase.BUILD else args.item)

	async def _validate(store: StateStore) -> int:
		validator = PhaseContractValidator(store, config.labels)
		outcome = await validator.validate(phase, args.item, refs, mode)
		print(f"{phase.value} #{args.item}: {outcome.result.value} ({outcome.reason})")
		return 0 if outcome.ok else 1

	try:
		return _with_store(config, _validate)
	except TrackerError as exc:
		print(f"Tracker error: {exc}")
		return 2


def cmd_recover_orphans(args: argparse.Namespace) -> int:
	"""Classify building items and recover the abandoned ones."""
	config = load_config(args.config)

	async def _sweep(store: StateStore) -> int:
		recovery = OrphanRecovery(
			store,
			config.labels,
			config.orphan,
			WorkspaceProvisioner(config.workspace),
			create_runtime(config.runtime),
			session_prefix=config.runtime.session_prefix,
		)
		# A running daemon's sessions show up as runtime sessions, so they are
		# never treated as abandoned here
		report = await recovery.sweep(dry_run=args.dry_run)
		if not report.findings:
			print("No building items.")
			return 0
		for finding in report.findings:
			action = " -> recovered" if finding.action_taken else ""
			stale = " [STALE]" if finding.stale else ""
			print(f"  #{finding.work_item_id}: {finding.classification.value}{stale} ({finding.reason}){action}")
		if args.dry_run:
			print("\nDry run: no changes made.")
		return 0

	try:
		return _with_store(config, _sweep)
	except TrackerError as exc:
		print(f"Tracker error: {exc}")
		return 2


def cmd_retry_blocked(args: argparse.Namespace) -> int:
	"""Retry blocked items whose cooldown has elapsed."""
	config = load_config(args.config)

	async def _retry(store: StateStore) -> int:
		manager = RetryManager(store, config.labels, config.retry)
		blocked, linked = without_linked_pr(
			await store.list_items(config.labels.blocked), await store.list_open_prs(),
		)
		for item in linked:
			print(f"  #{item.id}: has an open PR, left to the fix phase")
		for item in blocked:
			await manager.reconstruct(item.id)
		sweep = manager.sweep([i.id for i in blocked])
		for item_id in sweep.cooling_down:
			print(f"  #{item_id}: cooling down ({manager.remaining_cooldown(item_id) / 60:.0f} min left)")
		for item_id in sweep.exhausted:
			print(f"  #{item_id}: retries exhausted, needs manual review")
		for item_id in sweep.eligible:
			if args.dry_run:
				print(f"  #{item_id}: eligible")
				continue
			record = await manager.dispatch_retry(item_id)
			print(f"  #{item_id}: retried ({record.retry_count}/{manager.max_retries(record.error_class)})")
		return 0

	try:
		return _with_store(config, _retry)
	except TrackerError as exc:
		print(f"Tracker error: {exc}")
		return 2


def cmd_failures(args: argparse.Namespace) -> int:
	"""Show (or clear) the breaker state from the state file."""
	config = load_config(args.config)
	state_file = StateFile(config.daemon.resolved_state_dir)
	state = state_file.load()
	if state is None:
		print(f"No daemon state at {state_file.path}")
		return 1

	detector = SystematicFailureDetector(
		config.systematic_failure, state.systematic_failure, state.recent_failures,
	)
	if args.clear:
		detector.clear()
		state.systematic_failure = SystematicFailureState()
		state.recent_failures = []
		state_file.save(state)
		print("Systematic failure state cleared.")
		return 0

	for key, value in detector.get_summary().items():
		print(f"{key}: {value}")
	if detector.events:
		print("\nRecent failures:")
		for event in detector.events:
			print(f"  #{event.work_item_id} {event.phase.value}: {event.error_class}")
	return 0


def cmd_rotate_state(args: argparse.Namespace) -> int:
	"""Archive daemon-state.json into the next numbered slot."""
	config = load_config(args.config)
	archiver = SessionArchiver(
		StateFile(config.daemon.resolved_state_dir), config.daemon.max_archived_sessions,
	)
	path = archiver.rotate()
	print(f"Archived to {path}" if path else "Nothing to archive.")
	return 0


def cmd_stop(args: argparse.Namespace) -> int:
	"""Write the stop file picked up by a running daemon."""
	config = load_config(args.config)
	stop_file = config.daemon.resolved_state_dir / config.daemon.stop_file
	request_stop(stop_file)
	print(f"Stop requested ({stop_file})")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"daemon": cmd_daemon,
	"status": cmd_status,
	"validate-phase": cmd_validate_phase,
	"recover-orphans": cmd_recover_orphans,
	"retry-blocked": cmd_retry_blocked,
	"failures": cmd_failures,
	"rotate-state": cmd_rotate_state,
	"stop": cmd_stop,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	# Force line-buffered stderr for nohup/redirect scenarios
	if hasattr(sys.stderr, "reconfigure"):
		sys.stderr.reconfigure(line_buffering=True)  # type: ignore[union-attr]
	parser = build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.debug else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except FileNotFoundError as exc:
		print(f"Error: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
