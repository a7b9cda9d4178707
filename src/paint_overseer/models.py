from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .timing import utc_now_iso


class Severity(str, Enum):
    DEFAULT = "default"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class EventKind(str, Enum):
    START = "start"
    PAUSE = "pause"
    STOPPED = "stopped"
    WAIT_PROGRESS = "wait_progress"
    CONFIRMING = "confirming"
    ACTION_SUCCESS = "action_success"
    ACTION_FAILURE = "action_failure"
    ACTION_ABANDONED = "action_abandoned"
    RATE_LIMITED = "rate_limited"
    BACKOFF_WAIT = "backoff_wait"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    RECALIBRATED = "recalibrated"
    CHALLENGE_DETECTED = "challenge_detected"
    CHALLENGE_ATTEMPTING = "challenge_attempting"
    CHALLENGE_SOLVED = "challenge_solved"
    CHALLENGE_MANUAL = "challenge_manual"
    RECOVERY_TRIGGERED = "recovery_triggered"
    RECOVERY_SUPPRESSED = "recovery_suppressed"
    STATS = "stats"


@dataclass(frozen=True)
class StatusEvent:
    kind: EventKind
    severity: Severity
    message: str
    payload: dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "payload": dict(self.payload),
        }


@dataclass
class ChargeState:
    count: int
    max: int
    regen_interval_ms: int
    next_regen_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChargePrediction:
    count: int
    eta_ms: int


@dataclass(frozen=True)
class UserInfo:
    name: str = ""
    user_id: int | None = None
    droplets: int | None = None
    level: float | None = None
    pixels_painted: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChargePayload:
    count: int
    max: int
    regen_interval_ms: int


@dataclass(frozen=True)
class StatusOk:
    charges: ChargePayload
    user: UserInfo


@dataclass(frozen=True)
class StatusTemporaryBan:
    status_code: int


@dataclass(frozen=True)
class StatusUnavailable:
    reason: str


StatusFetch = StatusOk | StatusTemporaryBan | StatusUnavailable


@dataclass(frozen=True)
class InterstitialElement:
    """A candidate challenge widget as reported by a probe."""

    kind: str
    visible: bool = True
    interactive: bool = False
    specific: bool = False
    area: float = 0.0
    handle: Any = None


@dataclass(frozen=True)
class ActionOutcome:
    committed: bool
    confirmed: bool
    consumed: int
    requested: int
    before: int
    observed_min: int | None
    stopped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BurstRunResult:
    stop_reason: str
    painted_count: int
    fail_streak: int
    cycles: int
    recovery_triggered: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
