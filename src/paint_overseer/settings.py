from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from .config import ControllerConfig
from .events import read_json, write_json


SETTING_KEYS = ("confirm_wait_seconds", "resume_threshold", "max_fail_streak", "squares_per_action", "auto_recalibrate")


def _optional_int(raw: Any, *, minimum: int) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(raw)
    except Exception:  # noqa: BLE001
        return None
    return value if value >= minimum else None


def _optional_float(raw: Any, *, minimum: float) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except Exception:  # noqa: BLE001
        return None
    return value if value >= minimum else None


def _parse_bool(raw: Any) -> bool | None:
    if isinstance(raw, bool):
        return raw
    token = str(raw).strip().lower()
    if token in {"1", "true", "yes", "on"}:
        return True
    if token in {"0", "false", "no", "off"}:
        return False
    return None


@dataclass(frozen=True)
class PersistedSettings:
    """User overrides layered on top of the controller config; None means use the config."""

    confirm_wait_seconds: float | None = None
    resume_threshold: int | None = None
    max_fail_streak: int | None = None
    squares_per_action: int | None = None
    auto_recalibrate: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "PersistedSettings":
        return PersistedSettings(
            confirm_wait_seconds=_optional_float(payload.get("confirm_wait_seconds"), minimum=0.0),
            resume_threshold=_optional_int(payload.get("resume_threshold"), minimum=1),
            max_fail_streak=_optional_int(payload.get("max_fail_streak"), minimum=1),
            squares_per_action=_optional_int(payload.get("squares_per_action"), minimum=1),
            auto_recalibrate=(
                _parse_bool(payload["auto_recalibrate"]) if payload.get("auto_recalibrate") is not None else None
            ),
        )

    def apply_to(self, cfg: ControllerConfig) -> ControllerConfig:
        return replace(
            cfg,
            confirm_wait_seconds=(
                cfg.confirm_wait_seconds if self.confirm_wait_seconds is None else float(self.confirm_wait_seconds)
            ),
            resume_threshold=cfg.resume_threshold if self.resume_threshold is None else int(self.resume_threshold),
            max_fail_streak=cfg.max_fail_streak if self.max_fail_streak is None else int(self.max_fail_streak),
            squares_per_action=(
                cfg.squares_per_action if self.squares_per_action is None else int(self.squares_per_action)
            ),
            auto_recalibrate=cfg.auto_recalibrate if self.auto_recalibrate is None else bool(self.auto_recalibrate),
        )


class SettingsStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> PersistedSettings:
        return PersistedSettings.from_dict(read_json(self.path))

    def save(self, settings: PersistedSettings) -> None:
        write_json(self.path, settings.to_dict())

    def update(self, key: str, raw_value: str) -> PersistedSettings:
        if key not in SETTING_KEYS:
            raise ValueError(f"unknown setting {key!r}; expected one of {', '.join(SETTING_KEYS)}")
        current = self.load().to_dict()
        value: Any = None if str(raw_value).strip().lower() in {"", "none", "null", "default"} else raw_value
        current[key] = value
        updated = PersistedSettings.from_dict(current)
        if value is not None and getattr(updated, key) is None:
            raise ValueError(f"invalid value for {key}: {raw_value!r}")
        self.save(updated)
        return updated
