from __future__ import annotations

from datetime import datetime, timezone
import math
import random
import time
from typing import Callable, Protocol


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def now_ms(self) -> int: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class ManualClock:
    """
    Deterministic clock for tests and the simulator.

    sleep() advances time instantly and runs registered hooks so a simulated
    remote service can regenerate charges in step with the controller.
    """

    def __init__(self, start_s: float = 1000.0) -> None:
        self._now = float(start_s)
        self.slept: list[float] = []
        self._hooks: list[Callable[[float], None]] = []

    def monotonic(self) -> float:
        return self._now

    def now_ms(self) -> int:
        return int(self._now * 1000)

    def sleep(self, seconds: float) -> None:
        step = max(0.0, float(seconds))
        self.slept.append(step)
        self._now += step
        for hook in list(self._hooks):
            hook(self._now)

    def advance(self, seconds: float) -> None:
        self.sleep(seconds)

    def on_advance(self, hook: Callable[[float], None]) -> None:
        self._hooks.append(hook)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso8601_utc(raw: str) -> datetime | None:
    text = str(raw or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_time_short(ms: float) -> str:
    total = int(math.ceil(max(0.0, float(ms)) / 1000.0))
    if total < 60:
        return f"{total}s"
    minutes, seconds = divmod(total, 60)
    return f"{minutes}m {seconds}s"


def jitter_seconds(bounds_ms: tuple[int, int], rng: random.Random | None = None) -> float:
    low, high = int(bounds_ms[0]), int(bounds_ms[1])
    if high < low:
        low, high = high, low
    source = rng or random
    return source.randint(low, high) / 1000.0


DEADLINE_EPSILON_S = 1e-6


def remaining_until(clock: Clock, deadline: float) -> float:
    """Seconds left before `deadline`; sub-microsecond leftovers count as expired."""
    remaining = float(deadline) - clock.monotonic()
    if remaining <= DEADLINE_EPSILON_S:
        return 0.0
    return remaining


def stoppable_sleep(
    clock: Clock,
    seconds: float,
    stop_requested: Callable[[], bool],
    *,
    slice_seconds: float = 1.0,
) -> bool:
    """Sleep in slices of at most `slice_seconds`; returns False if stopped early."""
    remaining = max(0.0, float(seconds))
    step = max(0.05, float(slice_seconds))
    while remaining > 0:
        if stop_requested():
            return False
        chunk = min(step, remaining)
        clock.sleep(chunk)
        remaining -= chunk
    return not stop_requested()
