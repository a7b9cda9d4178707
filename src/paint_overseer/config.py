from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: str
    events_file: str
    status_file: str
    settings_file: str
    recovery_intent_file: str
    recovery_history_file: str


@dataclass(frozen=True)
class RemoteConfig:
    status_url: str
    timeout_seconds: float
    min_poll_interval_seconds: float
    ban_status_code: int
    default_max_charges: int
    default_regen_interval_ms: int
    user_agent: str


@dataclass(frozen=True)
class ControllerConfig:
    confirm_wait_seconds: float
    confirm_poll_seconds: float
    resume_charges_min: int
    resume_charges_max: int
    resume_threshold: int
    wait_floor_seconds_per_charge: float
    wait_poll_seconds: float
    tick_min_interval_seconds: float
    squares_per_action: int
    max_fail_streak: int
    backoff_budget_actions: int
    flagged_failure_wait_seconds: float
    auto_recalibrate: bool
    recalibrate_interval_seconds: float
    action_jitter_ms: tuple[int, int]
    inter_action_pause_ms: tuple[int, int]
    post_burst_pause_ms: tuple[int, int]


@dataclass(frozen=True)
class ChallengeConfig:
    enabled: bool
    solve_timeout_seconds: float
    poll_seconds: float
    scroll_settle_seconds: float
    strategies: list[str]


@dataclass(frozen=True)
class SafetyConfig:
    recovery_cooldown_seconds: float
    recovery_intent_max_age_seconds: float


@dataclass(frozen=True)
class HostConfig:
    action_command: str
    local_count_command: str
    recalibrate_command: str
    challenge_detect_command: str
    challenge_activate_command: str
    reload_command: str
    command_timeout_seconds: float
    dry_run: bool


@dataclass(frozen=True)
class AppConfig:
    project_root: Path
    runtime: RuntimeConfig
    remote: RemoteConfig
    controller: ControllerConfig
    challenge: ChallengeConfig
    safety: SafetyConfig
    host: HostConfig

    def resolve(self, rel_or_abs: str) -> Path:
        expanded = os.path.expandvars(str(rel_or_abs))
        path = Path(expanded).expanduser()
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


DEFAULT_STRATEGIES = ["pointer_sequence", "click", "keyboard"]


def _ms_range(raw: object, *, default: tuple[int, int]) -> tuple[int, int]:
    if not isinstance(raw, list) or len(raw) != 2:
        return default
    try:
        low, high = int(raw[0]), int(raw[1])
    except Exception:  # noqa: BLE001
        return default
    low = max(0, low)
    high = max(low, high)
    return (low, high)


def _str_list(raw: object, *, default: list[str]) -> list[str]:
    if not isinstance(raw, list):
        return list(default)
    out: list[str] = []
    for item in raw:
        token = str(item).strip().lower()
        if token:
            out.append(token)
    return out or list(default)


def _detect_project_root(cfg_path: Path) -> Path:
    direct_parent = cfg_path.parent
    if direct_parent.name == "config":
        return direct_parent.parent.resolve()

    for candidate in [direct_parent, *direct_parent.parents]:
        if (candidate / "src" / "paint_overseer").exists():
            return candidate.resolve()
    return direct_parent.resolve()


def load_config(path: str | Path) -> AppConfig:
    cfg_path = Path(path).expanduser().resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("rb") as fh:
        payload = tomllib.load(fh)

    runtime = payload.get("runtime", {})
    remote = payload.get("remote", {})
    controller = payload.get("controller", {})
    challenge = payload.get("challenge", {})
    safety = payload.get("safety", {})
    host = payload.get("host", {})

    project_root = _detect_project_root(cfg_path)

    resume_min = max(1, int(controller.get("resume_charges_min", 15)))
    resume_max = max(resume_min, int(controller.get("resume_charges_max", 50)))

    return AppConfig(
        project_root=project_root,
        runtime=RuntimeConfig(
            state_dir=str(runtime.get("state_dir", "runtime")),
            events_file=str(runtime.get("events_file", "runtime/events/paint_events.jsonl")),
            status_file=str(runtime.get("status_file", "runtime/status/health.json")),
            settings_file=str(runtime.get("settings_file", "runtime/settings.json")),
            recovery_intent_file=str(runtime.get("recovery_intent_file", "runtime/recovery_intent.json")),
            recovery_history_file=str(runtime.get("recovery_history_file", "runtime/recovery_history.json")),
        ),
        remote=RemoteConfig(
            status_url=str(remote.get("status_url", "https://backend.wplace.live/me")),
            timeout_seconds=min(5.0, max(0.2, float(remote.get("timeout_seconds", 1.3)))),
            min_poll_interval_seconds=max(0.1, float(remote.get("min_poll_interval_seconds", 0.9))),
            ban_status_code=int(remote.get("ban_status_code", 429)),
            default_max_charges=max(1, int(remote.get("default_max_charges", 80))),
            default_regen_interval_ms=max(1, int(remote.get("default_regen_interval_ms", 30000))),
            user_agent=str(remote.get("user_agent", "PaintOverseer/1.0 (+local overseer)")),
        ),
        controller=ControllerConfig(
            confirm_wait_seconds=max(0.0, float(controller.get("confirm_wait_seconds", 10.0))),
            confirm_poll_seconds=max(0.1, float(controller.get("confirm_poll_seconds", 1.0))),
            resume_charges_min=resume_min,
            resume_charges_max=resume_max,
            resume_threshold=max(0, int(controller.get("resume_threshold", 0))),
            wait_floor_seconds_per_charge=max(0.0, float(controller.get("wait_floor_seconds_per_charge", 30.0))),
            wait_poll_seconds=min(1.0, max(0.1, float(controller.get("wait_poll_seconds", 1.0)))),
            tick_min_interval_seconds=max(0.0, float(controller.get("tick_min_interval_seconds", 0.5))),
            squares_per_action=max(1, int(controller.get("squares_per_action", 1))),
            max_fail_streak=max(1, int(controller.get("max_fail_streak", 5))),
            backoff_budget_actions=max(1, int(controller.get("backoff_budget_actions", 10))),
            flagged_failure_wait_seconds=max(0.0, float(controller.get("flagged_failure_wait_seconds", 120.0))),
            auto_recalibrate=bool(controller.get("auto_recalibrate", False)),
            recalibrate_interval_seconds=max(1.0, float(controller.get("recalibrate_interval_seconds", 60.0))),
            action_jitter_ms=_ms_range(controller.get("action_jitter_ms"), default=(120, 340)),
            inter_action_pause_ms=_ms_range(controller.get("inter_action_pause_ms"), default=(250, 650)),
            post_burst_pause_ms=_ms_range(controller.get("post_burst_pause_ms"), default=(500, 1100)),
        ),
        challenge=ChallengeConfig(
            enabled=bool(challenge.get("enabled", True)),
            solve_timeout_seconds=min(5.0, max(0.5, float(challenge.get("solve_timeout_seconds", 5.0)))),
            poll_seconds=min(1.0, max(0.1, float(challenge.get("poll_seconds", 1.0)))),
            scroll_settle_seconds=max(0.0, float(challenge.get("scroll_settle_seconds", 0.25))),
            strategies=_str_list(challenge.get("strategies"), default=DEFAULT_STRATEGIES),
        ),
        safety=SafetyConfig(
            recovery_cooldown_seconds=max(0.0, float(safety.get("recovery_cooldown_seconds", 120.0))),
            recovery_intent_max_age_seconds=max(1.0, float(safety.get("recovery_intent_max_age_seconds", 60.0))),
        ),
        host=HostConfig(
            action_command=str(host.get("action_command", "")),
            local_count_command=str(host.get("local_count_command", "")),
            recalibrate_command=str(host.get("recalibrate_command", "")),
            challenge_detect_command=str(host.get("challenge_detect_command", "")),
            challenge_activate_command=str(host.get("challenge_activate_command", "")),
            reload_command=str(host.get("reload_command", "")),
            command_timeout_seconds=max(0.5, float(host.get("command_timeout_seconds", 5.0))),
            dry_run=bool(host.get("dry_run", False)),
        ),
    )
