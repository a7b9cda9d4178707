from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from .config import SafetyConfig
from .events import read_json, write_json
from .settings import PersistedSettings, SettingsStore
from .timing import parse_iso8601_utc, utc_now


ReloadHook = Callable[[str], None]


@dataclass(frozen=True)
class RecoveryIntent:
    auto_start: bool
    saved_at: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"auto_start": bool(self.auto_start), "saved_at": self.saved_at, "reason": self.reason}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "RecoveryIntent | None":
        saved_at = str(payload.get("saved_at", "")).strip()
        if parse_iso8601_utc(saved_at) is None:
            return None
        return RecoveryIntent(
            auto_start=bool(payload.get("auto_start", False)),
            saved_at=saved_at,
            reason=str(payload.get("reason", "")),
        )


@dataclass(frozen=True)
class IntentReadResult:
    intent: RecoveryIntent | None
    auto_start: bool
    reason: str
    age_seconds: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.to_dict() if self.intent is not None else None,
            "auto_start": bool(self.auto_start),
            "reason": self.reason,
            "age_seconds": self.age_seconds,
        }


class RecoveryIntentStore:
    def __init__(self, path: Path, *, max_age_seconds: float = 60.0, now: Callable[[], datetime] = utc_now) -> None:
        self.path = path
        self.max_age_seconds = float(max_age_seconds)
        self._now = now

    def write(self, *, reason: str, auto_start: bool = True) -> RecoveryIntent:
        intent = RecoveryIntent(auto_start=auto_start, saved_at=self._now().isoformat(), reason=reason)
        write_json(self.path, intent.to_dict())
        return intent

    def consume(self) -> IntentReadResult:
        """Read the intent once and delete it whether or not it is honored."""
        if not self.path.exists():
            return IntentReadResult(intent=None, auto_start=False, reason="missing", age_seconds=None)
        payload = read_json(self.path)
        self.path.unlink(missing_ok=True)

        intent = RecoveryIntent.from_dict(payload)
        if intent is None:
            return IntentReadResult(intent=None, auto_start=False, reason="malformed", age_seconds=None)
        saved = parse_iso8601_utc(intent.saved_at) or self._now()
        age = (self._now() - saved).total_seconds()
        if age < 0 or age > self.max_age_seconds:
            return IntentReadResult(intent=intent, auto_start=False, reason="expired", age_seconds=age)
        if not intent.auto_start:
            return IntentReadResult(intent=intent, auto_start=False, reason="auto_start_disabled", age_seconds=age)
        return IntentReadResult(intent=intent, auto_start=True, reason="fresh", age_seconds=age)


class SessionRecovery:
    """
    Full-session recovery: persist settings and an auto-resume intent, then reload.

    Recovery times are kept on disk so the cooldown survives the reload it causes.
    """

    def __init__(
        self,
        cfg: SafetyConfig,
        *,
        intents: RecoveryIntentStore,
        settings: SettingsStore,
        history_path: Path,
        reload_hook: ReloadHook | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cfg = cfg
        self.intents = intents
        self.settings = settings
        self.history_path = history_path
        self.reload_hook = reload_hook
        self._now = now
        self._recovery_times: deque[datetime] = deque(self._load_history())
        self.triggered_count = 0

    def _load_history(self) -> list[datetime]:
        rows = read_json(self.history_path).get("recoveries", [])
        out: list[datetime] = []
        if isinstance(rows, list):
            for raw in rows:
                parsed = parse_iso8601_utc(str(raw))
                if parsed is not None:
                    out.append(parsed)
        return sorted(out)

    def _save_history(self) -> None:
        write_json(self.history_path, {"recoveries": [ts.isoformat() for ts in self._recovery_times]})

    def _trim(self, now: datetime) -> None:
        window = timedelta(seconds=max(1.0, self.cfg.recovery_cooldown_seconds) * 10)
        cutoff = now - window
        while self._recovery_times and self._recovery_times[0] < cutoff:
            self._recovery_times.popleft()

    def last_recovery(self) -> datetime | None:
        return self._recovery_times[-1] if self._recovery_times else None

    def in_cooldown(self, at: datetime | None = None) -> bool:
        last = self.last_recovery()
        if last is None:
            return False
        now = at or self._now()
        return (now - last).total_seconds() < self.cfg.recovery_cooldown_seconds

    def cooldown_remaining_seconds(self) -> float:
        last = self.last_recovery()
        if last is None:
            return 0.0
        elapsed = (self._now() - last).total_seconds()
        return max(0.0, self.cfg.recovery_cooldown_seconds - elapsed)

    def trigger(self, *, reason: str, settings: PersistedSettings) -> bool:
        """Returns True if a reload was requested, False if suppressed by the cooldown."""
        now = self._now()
        if self.in_cooldown(now):
            return False
        self._recovery_times.append(now)
        self._trim(now)
        self._save_history()
        self.settings.save(settings)
        self.intents.write(reason=reason, auto_start=True)
        self.triggered_count += 1
        if self.reload_hook is not None:
            self.reload_hook(reason)
        return True

    def status_payload(self) -> dict[str, Any]:
        last = self.last_recovery()
        return {
            "recoveries_recorded": len(self._recovery_times),
            "last_recovery_at": last.isoformat() if last is not None else "",
            "cooldown_remaining_seconds": round(self.cooldown_remaining_seconds(), 1),
        }
