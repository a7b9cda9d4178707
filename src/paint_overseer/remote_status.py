from __future__ import annotations

import json
import math
from typing import Any, Callable
import urllib.error
import urllib.request

from .config import RemoteConfig
from .models import ChargePayload, StatusFetch, StatusOk, StatusTemporaryBan, StatusUnavailable, UserInfo


FetchJson = Callable[[str, float], tuple[int, Any]]


def _default_fetch_json(url: str, timeout_s: float, *, user_agent: str = "PaintOverseer/1.0") -> tuple[int, Any]:
    request = urllib.request.Request(
        url=url,
        headers={"User-Agent": user_agent, "Accept": "application/json"},
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_s) as response:  # noqa: S310
            status = int(getattr(response, "status", 200))
            body = response.read().decode("utf-8", errors="ignore")
    except urllib.error.HTTPError as exc:
        return int(exc.code), None
    return status, json.loads(body)


def _to_int(raw: Any) -> int | None:
    try:
        value = float(raw)
    except Exception:  # noqa: BLE001
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return int(math.floor(value))


def _to_float(raw: Any) -> float | None:
    try:
        return float(raw)
    except Exception:  # noqa: BLE001
        return None


def parse_status_payload(payload: Any, *, default_max: int, default_regen_ms: int) -> StatusOk | None:
    if not isinstance(payload, dict):
        return None
    charges = payload.get("charges")
    if not isinstance(charges, dict):
        return None
    count = _to_int(charges.get("count"))
    if count is None:
        return None
    max_count = _to_int(charges.get("max"))
    regen_ms = _to_int(charges.get("cooldownMs"))
    max_count = max_count if max_count is not None and max_count > 0 else max(default_max, count, 1)
    regen_ms = regen_ms if regen_ms is not None and regen_ms > 0 else default_regen_ms
    user = UserInfo(
        name=str(payload.get("name") or ""),
        user_id=_to_int(payload.get("id")),
        droplets=_to_int(payload.get("droplets")),
        level=_to_float(payload.get("level")),
        pixels_painted=_to_int(payload.get("pixelsPainted")),
    )
    return StatusOk(
        charges=ChargePayload(count=max(0, min(count, max_count)), max=max_count, regen_interval_ms=regen_ms),
        user=user,
    )


class RemoteStatusGate:
    """
    Fallible accessor to the authoritative charge count.

    fetch_status() never raises: bans map to StatusTemporaryBan, anything else
    that is not a parseable success maps to StatusUnavailable. Call-rate policy
    (ban backoff, idle poll interval) belongs to the caller.
    """

    def __init__(self, cfg: RemoteConfig, *, fetch_json: FetchJson | None = None) -> None:
        self.cfg = cfg
        if fetch_json is None:
            user_agent = cfg.user_agent

            def fetch_json(url: str, timeout_s: float) -> tuple[int, Any]:
                return _default_fetch_json(url, timeout_s, user_agent=user_agent)

        self._fetch_json = fetch_json
        self.last_user: UserInfo | None = None
        self.calls = 0
        self._counters = {"ok": 0, "temporary_ban": 0, "unavailable": 0}

    def fetch_status(self) -> StatusFetch:
        self.calls += 1
        try:
            status, body = self._fetch_json(self.cfg.status_url, self.cfg.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            self._counters["unavailable"] += 1
            return StatusUnavailable(reason=f"transport_error:{type(exc).__name__}")

        if int(status) == int(self.cfg.ban_status_code):
            self._counters["temporary_ban"] += 1
            return StatusTemporaryBan(status_code=int(status))
        if not 200 <= int(status) < 300:
            self._counters["unavailable"] += 1
            return StatusUnavailable(reason=f"http_{int(status)}")

        parsed = parse_status_payload(
            body,
            default_max=self.cfg.default_max_charges,
            default_regen_ms=self.cfg.default_regen_interval_ms,
        )
        if parsed is None:
            self._counters["unavailable"] += 1
            return StatusUnavailable(reason="malformed_payload")
        self._counters["ok"] += 1
        self.last_user = parsed.user
        return parsed

    def stats(self) -> dict[str, int]:
        return {"calls": int(self.calls), **{k: int(v) for k, v in self._counters.items()}}
