"""TOML configuration loader for fleet-control."""

from __future__ import annotations

import os
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fleet_control.models import LabelSet, Phase

STUCK_ACTIONS = ("warn", "pause", "restart", "retry")


@dataclass
class TrackerConfig:
	"""Remote issue tracker settings."""

	type: str = "github"
	repo: str = ""  # owner/name
	api_url: str = "https://api.github.com"
	token_env: str = "GITHUB_TOKEN"
	timeout: float = 30.0

	@property
	def token(self) -> str:
		return os.environ.get(self.token_env, "")


@dataclass
class RuntimeConfig:
	"""Worker runtime settings."""

	type: str = "tmux"  # tmux or local
	tmux_socket: str = "fleet"
	session_prefix: str = "fleet-"
	command: list[str] = field(default_factory=lambda: [
		"claude", "--dangerously-skip-permissions",
	])
	role_commands: dict[str, str] = field(default_factory=lambda: {
		"intake": "/curator {item}",
		"build": "/builder {item}",
		"review": "/judge {item}",
		"fix": "/doctor {item}",
	})
	command_timeout: float = 30.0  # bound on every tmux/subprocess call
	startup_delay: float = 5.0  # wait before typing the role command
	capture_lines: int = 200
	max_output_mb: int = 50
	extra_env_keys: list[str] = field(default_factory=list)

	def role_command(self, phase: Phase, work_item_id: int) -> str:
		template = self.role_commands.get(phase.value, "")
		return template.format(item=work_item_id)


@dataclass
class WorkspaceConfig:
	"""Per-item git worktree settings."""

	repo_path: str = "."
	root: str = ".fleet/worktrees"
	base_branch: str = "main"
	command_timeout: float = 120.0

	@property
	def resolved_repo(self) -> Path:
		return Path(os.path.expanduser(self.repo_path))

	@property
	def resolved_root(self) -> Path:
		root = Path(os.path.expanduser(self.root))
		return root if root.is_absolute() else self.resolved_repo / root


@dataclass
class SupervisorConfig:
	"""Worker supervision thresholds (seconds)."""

	poll_interval: float = 5.0
	stuck_warning: float = 3600.0
	stuck_critical: float = 7200.0
	stuck_action: str = "warn"
	prompt_stuck_check_interval: float = 10.0
	prompt_stuck_age_threshold: float = 30.0
	prompt_stuck_recovery_cooldown: float = 60.0
	nudge_wait: float = 3.0
	processing_indicator: str = "esc to interrupt"
	idle_timeout: float = 60.0
	proactive_checks: bool = True
	contract_interval_override: float = 0.0  # >0 forces a fixed interval
	# (elapsed_at_least, interval) pairs; no checks before the first entry
	contract_schedule: list[tuple[float, float]] = field(default_factory=lambda: [
		(180.0, 90.0),
		(270.0, 60.0),
		(330.0, 30.0),
		(360.0, 10.0),
	])
	abort_check_interval: float = 30.0
	phase_timeouts: dict[str, float] = field(default_factory=lambda: {
		"intake": 900.0,
		"build": 3600.0,
		"review": 1800.0,
		"fix": 1800.0,
	})

	def timeout_for(self, phase: Phase) -> float:
		return self.phase_timeouts.get(phase.value, 3600.0)


@dataclass
class RetryPolicyConfig:
	"""Per-error-class override of the default retry policy."""

	base_cooldown: float = 1800.0
	max_retries: int = 3


@dataclass
class RetryConfig:
	"""Blocked-item retry with exponential backoff."""

	base_cooldown: float = 1800.0  # 30 minutes
	multiplier: float = 2.0
	max_cooldown: float = 14400.0  # 4 hours
	max_retries: int = 3
	policies: dict[str, RetryPolicyConfig] = field(default_factory=dict)


@dataclass
class SystematicFailureConfig:
	"""Fleet-wide circuit breaker settings."""

	threshold: int = 3
	base_cooldown: float = 1800.0
	max_probes: int = 3  # advisory
	buffer_size: int = 20


@dataclass
class OrphanConfig:
	"""Crash/orphan recovery settings."""

	grace_period: float = 7200.0  # 2 hours
	stale_pr_threshold: float = 86400.0  # 24 hours
	workspace_stale_factor: float = 2.0
	sweep_interval: int = 10  # iterations between periodic sweeps


@dataclass
class DaemonConfig:
	"""Control loop settings."""

	max_concurrency: int = 3
	iteration_interval: float = 60.0
	state_dir: str = ".fleet"
	max_archived_sessions: int = 10
	stop_file: str = "stop-daemon"
	pause_dir: str = "signals"
	enable_intake: bool = False
	shutdown_timeout: float = 60.0

	@property
	def resolved_state_dir(self) -> Path:
		return Path(os.path.expanduser(self.state_dir))


@dataclass
class TelegramConfig:
	"""Telegram notification settings."""

	bot_token: str = ""
	chat_id: str = ""
	on_breaker: bool = True
	on_exhausted: bool = True
	on_daemon_lifecycle: bool = True


@dataclass
class NotificationConfig:
	"""Notification settings."""

	telegram: TelegramConfig | None = None


@dataclass
class FleetConfig:
	"""Top-level fleet-control configuration."""

	tracker: TrackerConfig = field(default_factory=TrackerConfig)
	labels: LabelSet = field(default_factory=LabelSet)
	runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
	workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
	supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
	retry: RetryConfig = field(default_factory=RetryConfig)
	systematic_failure: SystematicFailureConfig = field(default_factory=SystematicFailureConfig)
	orphan: OrphanConfig = field(default_factory=OrphanConfig)
	daemon: DaemonConfig = field(default_factory=DaemonConfig)
	notifications: NotificationConfig = field(default_factory=NotificationConfig)


def _build_tracker(data: dict[str, Any]) -> TrackerConfig:
	tc = TrackerConfig()
	for key in ("type", "repo", "api_url", "token_env"):
		if key in data:
			setattr(tc, key, str(data[key]))
	if "timeout" in data:
		tc.timeout = float(data["timeout"])
	return tc


def _build_labels(data: dict[str, Any]) -> LabelSet:
	ls = LabelSet()
	for key in (
		"curated", "ready", "building", "blocked",
		"review_requested", "changes_requested", "approved", "abort",
	):
		if key in data:
			setattr(ls, key, str(data[key]))
	return ls


def _build_runtime(data: dict[str, Any]) -> RuntimeConfig:
	rc = RuntimeConfig()
	for key in ("type", "tmux_socket", "session_prefix"):
		if key in data:
			setattr(rc, key, str(data[key]))
	if "command" in data:
		rc.command = [str(part) for part in data["command"]]
	if "role_commands" in data:
		rc.role_commands.update({str(k): str(v) for k, v in data["role_commands"].items()})
	for key in ("command_timeout", "startup_delay"):
		if key in data:
			setattr(rc, key, float(data[key]))
	for key in ("capture_lines", "max_output_mb"):
		if key in data:
			setattr(rc, key, int(data[key]))
	if "extra_env_keys" in data:
		rc.extra_env_keys = [str(k) for k in data["extra_env_keys"]]
	return rc


def _build_workspace(data: dict[str, Any]) -> WorkspaceConfig:
	wc = WorkspaceConfig()
	for key in ("repo_path", "root", "base_branch"):
		if key in data:
			setattr(wc, key, str(data[key]))
	if "command_timeout" in data:
		wc.command_timeout = float(data["command_timeout"])
	return wc


def _build_supervisor(data: dict[str, Any]) -> SupervisorConfig:
	sc = SupervisorConfig()
	for key in (
		"poll_interval", "stuck_warning", "stuck_critical",
		"prompt_stuck_check_interval", "prompt_stuck_age_threshold",
		"prompt_stuck_recovery_cooldown", "nudge_wait", "idle_timeout",
		"contract_interval_override", "abort_check_interval",
	):
		if key in data:
			setattr(sc, key, float(data[key]))
	if "stuck_action" in data:
		sc.stuck_action = str(data["stuck_action"])
	if "processing_indicator" in data:
		sc.processing_indicator = str(data["processing_indicator"])
	if "proactive_checks" in data:
		sc.proactive_checks = bool(data["proactive_checks"])
	if "contract_schedule" in data:
		sc.contract_schedule = [
			(float(entry[0]), float(entry[1])) for entry in data["contract_schedule"]
		]
	if "phase_timeouts" in data:
		sc.phase_timeouts.update({str(k): float(v) for k, v in data["phase_timeouts"].items()})
	return sc


def _build_retry(data: dict[str, Any]) -> RetryConfig:
	rc = RetryConfig()
	for key in ("base_cooldown", "multiplier", "max_cooldown"):
		if key in data:
			setattr(rc, key, float(data[key]))
	if "max_retries" in data:
		rc.max_retries = int(data["max_retries"])
	for error_class, policy_data in data.get("policies", {}).items():
		policy = RetryPolicyConfig(base_cooldown=rc.base_cooldown, max_retries=rc.max_retries)
		if "base_cooldown" in policy_data:
			policy.base_cooldown = float(policy_data["base_cooldown"])
		if "max_retries" in policy_data:
			policy.max_retries = int(policy_data["max_retries"])
		rc.policies[str(error_class)] = policy
	return rc


def _build_systematic_failure(data: dict[str, Any]) -> SystematicFailureConfig:
	sc = SystematicFailureConfig()
	for key in ("threshold", "max_probes", "buffer_size"):
		if key in data:
			setattr(sc, key, int(data[key]))
	if "base_cooldown" in data:
		sc.base_cooldown = float(data["base_cooldown"])
	return sc


def _build_orphan(data: dict[str, Any]) -> OrphanConfig:
	oc = OrphanConfig()
	for key in ("grace_period", "stale_pr_threshold", "workspace_stale_factor"):
		if key in data:
			setattr(oc, key, float(data[key]))
	if "sweep_interval" in data:
		oc.sweep_interval = int(data["sweep_interval"])
	return oc


def _build_daemon(data: dict[str, Any]) -> DaemonConfig:
	dc = DaemonConfig()
	for key in ("max_concurrency", "max_archived_sessions"):
		if key in data:
			setattr(dc, key, int(data[key]))
	for key in ("iteration_interval", "shutdown_timeout"):
		if key in data:
			setattr(dc, key, float(data[key]))
	for key in ("state_dir", "stop_file", "pause_dir"):
		if key in data:
			setattr(dc, key, str(data[key]))
	if "enable_intake" in data:
		dc.enable_intake = bool(data["enable_intake"])
	return dc


def _build_notifications(data: dict[str, Any]) -> NotificationConfig:
	nc = NotificationConfig()
	if "telegram" in data:
		tc = TelegramConfig()
		tg = data["telegram"]
		if "bot_token" in tg:
			tc.bot_token = str(tg["bot_token"])
		if "chat_id" in tg:
			tc.chat_id = str(tg["chat_id"])
		for key in ("on_breaker", "on_exhausted", "on_daemon_lifecycle"):
			if key in tg:
				setattr(tc, key, bool(tg[key]))
		nc.telegram = tc
	return nc


def load_config(path: str | Path) -> FleetConfig:
	"""Load a fleet-control.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed FleetConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	fc = FleetConfig()
	if "tracker" in data:
		fc.tracker = _build_tracker(data["tracker"])
	if "labels" in data:
		fc.labels = _build_labels(data["labels"])
	if "runtime" in data:
		fc.runtime = _build_runtime(data["runtime"])
	if "workspace" in data:
		fc.workspace = _build_workspace(data["workspace"])
	if "supervisor" in data:
		fc.supervisor = _build_supervisor(data["supervisor"])
	if "retry" in data:
		fc.retry = _build_retry(data["retry"])
	if "systematic_failure" in data:
		fc.systematic_failure = _build_systematic_failure(data["systematic_failure"])
	if "orphan" in data:
		fc.orphan = _build_orphan(data["orphan"])
	if "daemon" in data:
		fc.daemon = _build_daemon(data["daemon"])
	if "notifications" in data:
		fc.notifications = _build_notifications(data["notifications"])
	# Allow env vars as fallback for Telegram credentials
	tg = fc.notifications.telegram
	if tg is not None:
		if not tg.bot_token:
			tg.bot_token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
		if not tg.chat_id:
			tg.chat_id = os.environ.get("TELEGRAM_CHAT_ID", "")
	return fc


_ENV_ALLOWLIST = {
	# System essentials
	"HOME", "USER", "LOGNAME", "SHELL", "LANG", "LC_ALL", "LC_CTYPE",
	"TERM", "TMPDIR", "TMP", "TEMP", "XDG_RUNTIME_DIR", "XDG_CONFIG_HOME",
	"PATH", "PWD", "SHLVL",
	"CLAUDE_CONFIG_DIR",
	"GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL",
	"GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL",
}

# Keys that must never reach workers, even if listed in extra_env_keys
_ENV_DENYLIST = {
	"ANTHROPIC_API_KEY", "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN",
	"DATABASE_URL", "TELEGRAM_BOT_TOKEN",
}


def worker_env(config: RuntimeConfig) -> dict[str, str]:
	"""Build the restricted environment passed to worker processes.

	Workers that open PRs need a tracker token; list it in
	``runtime.extra_env_keys`` explicitly.
	"""
	allowed = _ENV_ALLOWLIST | set(config.extra_env_keys)
	return {
		k: v for k, v in os.environ.items()
		if k in allowed and k not in _ENV_DENYLIST
	}


_REPO_RE = re.compile(r"^[\w.-]+/[\w.-]+$")
_TELEGRAM_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


def validate_config(config: FleetConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded FleetConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	if config.tracker.type != "github":
		issues.append(("error", f"unsupported tracker.type: {config.tracker.type}"))
	if not _REPO_RE.match(config.tracker.repo):
		issues.append(("error", f"tracker.repo must look like owner/name, got {config.tracker.repo!r}"))
	if not config.tracker.token:
		issues.append(("warning", f"tracker token env var {config.tracker.token_env} is not set"))

	if config.runtime.type not in ("tmux", "local"):
		issues.append(("error", f"unsupported runtime.type: {config.runtime.type}"))
	elif config.runtime.type == "tmux" and shutil.which("tmux") is None:
		issues.append(("error", "tmux executable not found on PATH"))
	if not config.runtime.command:
		issues.append(("error", "runtime.command must not be empty"))

	repo = config.workspace.resolved_repo
	if not repo.exists():
		issues.append(("error", f"workspace.repo_path does not exist: {repo}"))
	elif not (repo / ".git").exists():
		issues.append(("error", f"workspace.repo_path is not a git repository: {repo}"))

	sv = config.supervisor
	if sv.stuck_action not in STUCK_ACTIONS:
		issues.append(("error", f"supervisor.stuck_action must be one of {STUCK_ACTIONS}"))
	if sv.stuck_warning >= sv.stuck_critical:
		issues.append(("warning", "supervisor.stuck_warning should be below stuck_critical"))
	if sv.poll_interval <= 0:
		issues.append(("error", "supervisor.poll_interval must be positive"))
	thresholds = [entry[0] for entry in sv.contract_schedule]
	intervals = [entry[1] for entry in sv.contract_schedule]
	if thresholds != sorted(thresholds):
		issues.append(("error", "supervisor.contract_schedule thresholds must be ascending"))
	if intervals != sorted(intervals, reverse=True):
		issues.append(("warning", "supervisor.contract_schedule intervals should shrink over time"))

	rc = config.retry
	if rc.multiplier < 1:
		issues.append(("error", "retry.multiplier must be >= 1 (cooldowns must not shrink)"))
	if rc.max_cooldown < rc.base_cooldown:
		issues.append(("warning", "retry.max_cooldown is below retry.base_cooldown"))

	sf = config.systematic_failure
	if sf.threshold < 1:
		issues.append(("error", "systematic_failure.threshold must be >= 1"))
	if sf.buffer_size < sf.threshold:
		issues.append(("error", "systematic_failure.buffer_size must be >= threshold"))

	if config.daemon.max_concurrency < 1:
		issues.append(("warning", "daemon.max_concurrency < 1: nothing will be dispatched"))
	elif config.daemon.max_concurrency > 10:
		issues.append(("warning", f"daemon.max_concurrency is high: {config.daemon.max_concurrency}"))

	tg = config.notifications.telegram
	if tg is not None and tg.bot_token and not _TELEGRAM_TOKEN_RE.match(tg.bot_token):
		issues.append(("error", "telegram bot_token format invalid (expected digits:alphanumeric)"))

	return issues
