from __future__ import annotations

from dataclasses import dataclass, field
import random
from typing import Any

from .models import InterstitialElement
from .timing import ManualClock


@dataclass
class SimulationProfile:
    count: int = 10
    max_count: int = 80
    regen_interval_ms: int = 30000
    commit_delay_ms: int = 1500
    reject_rate: float = 0.0
    expose_local_count: bool = True
    ban_on_calls: set[int] = field(default_factory=set)
    unavailable_on_calls: set[int] = field(default_factory=set)
    challenge_after_actions: int = 0
    challenge_solvable: bool = True
    challenge_solve_strategy: str = "click"
    seed: int = 7


class SimulatedPaintService:
    """
    In-process stand-in for the remote paint service.

    Charges regenerate on the shared ManualClock, accepted paints become visible
    after a commit delay, a share of paints is silently rejected, and a
    challenge widget can appear after a given number of actions.
    """

    def __init__(self, clock: ManualClock, profile: SimulationProfile | None = None) -> None:
        self.clock = clock
        self.profile = profile or SimulationProfile()
        self.rng = random.Random(self.profile.seed)
        self.count = min(self.profile.count, self.profile.max_count)
        self.max_count = self.profile.max_count
        self.regen_interval_ms = self.profile.regen_interval_ms
        self._next_regen_at: int | None = None
        self._pending: list[tuple[int, int]] = []
        self.status_calls = 0
        self.actions = 0
        self.accepted = 0
        self.rejected = 0
        self.painted = 0
        self.challenge_visible = False
        self.challenge_clicks: list[str] = []
        self.recalibrations = 0
        self._schedule_regen()

    def _schedule_regen(self) -> None:
        if self.count >= self.max_count:
            self._next_regen_at = None
        elif self._next_regen_at is None:
            self._next_regen_at = self.clock.now_ms() + self.regen_interval_ms

    def sync(self) -> None:
        now = self.clock.now_ms()
        still_pending: list[tuple[int, int]] = []
        for visible_at, units in self._pending:
            if visible_at <= now:
                spent = min(units, self.count)
                self.count -= spent
                self.painted += spent
            else:
                still_pending.append((visible_at, units))
        self._pending = still_pending
        self._schedule_regen()
        while self._next_regen_at is not None and now >= self._next_regen_at:
            self.count += 1
            if self.count >= self.max_count:
                self._next_regen_at = None
                break
            self._next_regen_at += self.regen_interval_ms

    # -- remote endpoint ---------------------------------------------------

    def fetch_json(self, url: str, timeout_s: float) -> tuple[int, Any]:
        _ = url
        _ = timeout_s
        self.status_calls += 1
        if self.status_calls in self.profile.unavailable_on_calls:
            raise TimeoutError("simulated timeout")
        if self.status_calls in self.profile.ban_on_calls:
            return 429, None
        self.sync()
        return 200, {
            "name": "simulated",
            "id": 1,
            "charges": {"count": float(self.count), "max": self.max_count, "cooldownMs": self.regen_interval_ms},
            "pixelsPainted": self.painted,
        }

    # -- action surface ----------------------------------------------------

    def paint(self, batch_size: int) -> bool:
        self.sync()
        self.actions += 1
        if self.profile.challenge_after_actions and self.actions >= self.profile.challenge_after_actions:
            if not self.challenge_clicks:
                self.challenge_visible = True
        if self.challenge_visible or self.count <= 0:
            self.rejected += 1
            return True
        if self.profile.reject_rate > 0 and self.rng.random() < self.profile.reject_rate:
            self.rejected += 1
            return True
        self.accepted += 1
        self._pending.append((self.clock.now_ms() + self.profile.commit_delay_ms, max(1, int(batch_size))))
        return True

    def local_count(self) -> int | None:
        if not self.profile.expose_local_count:
            return None
        self.sync()
        return int(self.count)

    def activate_challenge(self, strategy: str) -> bool:
        if not self.challenge_visible:
            return False
        self.challenge_clicks.append(strategy)
        if strategy != self.profile.challenge_solve_strategy:
            return False
        if self.profile.challenge_solvable:
            self.challenge_visible = False
        return True

    def summary(self) -> dict[str, Any]:
        self.sync()
        return {
            "count": int(self.count),
            "max_count": int(self.max_count),
            "status_calls": int(self.status_calls),
            "actions": int(self.actions),
            "accepted": int(self.accepted),
            "rejected": int(self.rejected),
            "painted": int(self.painted),
            "challenge_visible": bool(self.challenge_visible),
            "challenge_clicks": list(self.challenge_clicks),
            "recalibrations": int(self.recalibrations),
        }


class SimulatedActionSink:
    def __init__(self, service: SimulatedPaintService) -> None:
        self.service = service
        self.batches: list[int] = []

    def perform_action(self, batch_size: int) -> bool:
        self.batches.append(int(batch_size))
        return self.service.paint(batch_size)

    def read_local_count(self) -> int | None:
        return self.service.local_count()

    def recalibrate(self) -> bool:
        self.service.recalibrations += 1
        return True


class SimulatedChallengeProbe:
    def __init__(self, service: SimulatedPaintService) -> None:
        self.service = service
        self.scrolled = 0

    def network_signal(self) -> bool:
        return self.service.challenge_visible

    def visible_elements(self) -> list[InterstitialElement]:
        if not self.service.challenge_visible:
            return []
        return [
            InterstitialElement(kind="container", visible=True, interactive=False, specific=False, area=90000.0),
            InterstitialElement(kind="iframe", visible=True, interactive=True, specific=True, area=19500.0),
        ]

    def text_signal(self) -> bool:
        return self.service.challenge_visible

    def find_interstitial_element(self) -> InterstitialElement | None:
        elements = [el for el in self.visible_elements() if el.interactive]
        return elements[0] if elements else None

    def scroll_into_view(self, element: InterstitialElement) -> None:
        _ = element
        self.scrolled += 1

    def dispatch_activation(self, element: InterstitialElement, strategy: str) -> bool:
        _ = element
        return self.service.activate_challenge(strategy)
