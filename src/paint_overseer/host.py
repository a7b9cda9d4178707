from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import sys
import time
from typing import Any

from .config import HostConfig
from .models import InterstitialElement


class SessionReloadRequested(Exception):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def raise_reload(reason: str) -> None:
    raise SessionReloadRequested(reason)


def _subprocess_error_detail(completed: subprocess.CompletedProcess[str]) -> str:
    stderr = str(completed.stderr).strip()
    stdout = str(completed.stdout).strip()
    return stderr or stdout or f"process_exit_{completed.returncode}"


def run_command(template: str, *, timeout_s: float, **fields: Any) -> tuple[bool, str]:
    """Run a configured command template; returns (ok, stdout or error detail). Never raises."""
    if not template.strip():
        return False, "not_configured"
    try:
        argv = shlex.split(template)
    except ValueError as exc:
        return False, f"bad_template:{exc}"
    for key, value in fields.items():
        argv = [part.replace("{" + key + "}", str(value)) for part in argv]
    try:
        completed = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_s, check=False)
    except subprocess.TimeoutExpired:
        return False, "timeout"
    except OSError as exc:
        return False, f"os_error:{exc}"
    if completed.returncode != 0:
        return False, _subprocess_error_detail(completed)
    return True, str(completed.stdout)


class CommandActionSink:
    """ActionSink that shells out to host-side commands ({batch} is substituted)."""

    def __init__(self, cfg: HostConfig) -> None:
        self.cfg = cfg
        self.last_error = ""
        self.dispatched = 0

    def perform_action(self, batch_size: int) -> bool:
        if self.cfg.dry_run:
            self.last_error = "dry_run"
            return False
        ok, detail = run_command(self.cfg.action_command, timeout_s=self.cfg.command_timeout_seconds, batch=int(batch_size))
        if not ok:
            self.last_error = detail
            return False
        self.dispatched += 1
        return True

    def read_local_count(self) -> int | None:
        if not self.cfg.local_count_command.strip():
            return None
        ok, out = run_command(self.cfg.local_count_command, timeout_s=self.cfg.command_timeout_seconds)
        if not ok:
            return None
        match = re.search(r"-?\d+", out)
        if match is None:
            return None
        return max(0, int(match.group(0)))

    def recalibrate(self) -> bool:
        if self.cfg.dry_run:
            return False
        ok, detail = run_command(self.cfg.recalibrate_command, timeout_s=self.cfg.command_timeout_seconds)
        if not ok:
            self.last_error = detail
        return ok


def _parse_element(raw: Any) -> InterstitialElement | None:
    if not isinstance(raw, dict):
        return None
    try:
        area = float(raw.get("area", 0.0))
    except Exception:  # noqa: BLE001
        area = 0.0
    return InterstitialElement(
        kind=str(raw.get("kind", "unknown")),
        visible=bool(raw.get("visible", True)),
        interactive=bool(raw.get("interactive", False)),
        specific=bool(raw.get("specific", False)),
        area=area,
        handle=str(raw.get("id", "")),
    )


class CommandChallengeProbe:
    """
    ChallengeProbe backed by a detection command printing JSON:
    {"network": bool, "text": bool, "elements": [{"id", "kind", "visible", "interactive", "specific", "area"}]}.
    One detection snapshot serves all three signal reads for a short interval.
    """

    def __init__(self, cfg: HostConfig, *, cache_seconds: float = 0.25) -> None:
        self.cfg = cfg
        self.cache_seconds = float(cache_seconds)
        self._cached: dict[str, Any] = {}
        self._cached_at: float | None = None

    def _snapshot(self) -> dict[str, Any]:
        now = time.monotonic()
        if self._cached_at is not None and now - self._cached_at < self.cache_seconds:
            return self._cached
        payload: dict[str, Any] = {}
        ok, out = run_command(self.cfg.challenge_detect_command, timeout_s=self.cfg.command_timeout_seconds)
        if ok:
            try:
                decoded = json.loads(out)
            except json.JSONDecodeError:
                decoded = {}
            if isinstance(decoded, dict):
                payload = decoded
        self._cached = payload
        self._cached_at = now
        return payload

    def network_signal(self) -> bool:
        return bool(self._snapshot().get("network", False))

    def text_signal(self) -> bool:
        return bool(self._snapshot().get("text", False))

    def visible_elements(self) -> list[InterstitialElement]:
        rows = self._snapshot().get("elements", [])
        if not isinstance(rows, list):
            return []
        out: list[InterstitialElement] = []
        for raw in rows:
            element = _parse_element(raw)
            if element is not None and element.visible:
                out.append(element)
        return out

    def find_interstitial_element(self) -> InterstitialElement | None:
        candidates = [el for el in self.visible_elements() if el.interactive]
        if not candidates:
            return None
        return max(candidates, key=lambda el: (el.specific, el.area))

    def scroll_into_view(self, element: InterstitialElement) -> None:
        _ = element

    def dispatch_activation(self, element: InterstitialElement, strategy: str) -> bool:
        if self.cfg.dry_run:
            return False
        ok, _ = run_command(
            self.cfg.challenge_activate_command,
            timeout_s=self.cfg.command_timeout_seconds,
            element=str(element.handle or ""),
            strategy=strategy,
        )
        self._cached_at = None
        return ok


def reload_process(cfg: HostConfig, argv: list[str]) -> None:
    """Run the host reload command (if any) and replace this process with a fresh one."""
    if cfg.reload_command.strip():
        run_command(cfg.reload_command, timeout_s=cfg.command_timeout_seconds)
    os.execv(sys.executable, [sys.executable, "-m", "paint_overseer.cli", *argv])
