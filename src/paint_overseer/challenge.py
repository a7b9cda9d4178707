from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Protocol

from .config import ChallengeConfig
from .events import EventChannel
from .models import EventKind, InterstitialElement, Severity
from .timing import Clock, remaining_until


class ChallengeState(str, Enum):
    ABSENT = "absent"
    DETECTED = "detected"
    ATTEMPTING = "attempting"
    SOLVED = "solved"
    MANUAL_REQUIRED = "manual_required"


class ChallengeProbe(Protocol):
    def network_signal(self) -> bool: ...

    def visible_elements(self) -> list[InterstitialElement]: ...

    def text_signal(self) -> bool: ...

    def find_interstitial_element(self) -> InterstitialElement | None: ...

    def scroll_into_view(self, element: InterstitialElement) -> None: ...

    def dispatch_activation(self, element: InterstitialElement, strategy: str) -> bool: ...


class NullChallengeProbe:
    """Probe for hosts that cannot observe interstitials; never detects one."""

    def network_signal(self) -> bool:
        return False

    def visible_elements(self) -> list[InterstitialElement]:
        return []

    def text_signal(self) -> bool:
        return False

    def find_interstitial_element(self) -> InterstitialElement | None:
        return None

    def scroll_into_view(self, element: InterstitialElement) -> None:
        _ = element

    def dispatch_activation(self, element: InterstitialElement, strategy: str) -> bool:
        _ = element
        _ = strategy
        return False


def _element_rank(element: InterstitialElement) -> tuple[int, int, float]:
    return (1 if element.specific else 0, 1 if element.interactive else 0, float(element.area))


def pick_target_element(elements: list[InterstitialElement]) -> InterstitialElement | None:
    visible = [el for el in elements if el.visible]
    if not visible:
        return None
    return max(visible, key=_element_rank)


def evaluate_detection(
    *,
    network_signal: bool,
    elements: list[InterstitialElement],
    text_signal: bool,
) -> tuple[bool, str]:
    visible = [el for el in elements if el.visible]
    if any(el.specific and el.interactive for el in visible):
        return True, "specific_interactive_element"
    signals = [
        name
        for name, hit in (
            ("network", bool(network_signal)),
            ("visible_element", bool(visible)),
            ("text", bool(text_signal)),
        )
        if hit
    ]
    if len(signals) >= 2:
        return True, "signals:" + "+".join(signals)
    if signals:
        return False, f"single_signal:{signals[0]}"
    return False, "no_signal"


class ChallengeMonitor:
    """
    Detects a blocking interstitial and makes one clearing attempt per occurrence.

    Detection only consults the probe, so it is cheap enough to run at the top of
    every loop and wait iteration.
    """

    def __init__(
        self,
        cfg: ChallengeConfig,
        probe: ChallengeProbe,
        clock: Clock,
        events: EventChannel,
    ) -> None:
        self.cfg = cfg
        self.probe = probe
        self.clock = clock
        self.events = events
        self.state = ChallengeState.ABSENT
        self.last_reason = "no_signal"
        self.attempts = 0

    def detect(self) -> bool:
        if not self.cfg.enabled:
            return False
        present, reason = evaluate_detection(
            network_signal=self.probe.network_signal(),
            elements=self.probe.visible_elements(),
            text_signal=self.probe.text_signal(),
        )
        self.last_reason = reason
        return present

    def reset(self) -> None:
        self.state = ChallengeState.ABSENT

    def check(self, stop_requested: Callable[[], bool] | None = None) -> ChallengeState:
        should_stop = stop_requested or (lambda: False)
        present = self.detect()

        if self.state is ChallengeState.MANUAL_REQUIRED:
            if present:
                return self.state
            self.state = ChallengeState.ABSENT
            return self.state

        if not present:
            self.state = ChallengeState.ABSENT
            return self.state

        self.state = ChallengeState.DETECTED
        self.events.emit(
            EventKind.CHALLENGE_DETECTED,
            "Possible security challenge detected",
            severity=Severity.WARNING,
            reason=self.last_reason,
            state="CHALLENGE",
        )
        return self._attempt(should_stop)

    def _activate(self, element: InterstitialElement) -> str:
        for strategy in self.cfg.strategies:
            try:
                acknowledged = self.probe.dispatch_activation(element, strategy)
            except Exception:  # noqa: BLE001
                acknowledged = False
            if acknowledged:
                return strategy
        return ""

    def _attempt(self, should_stop: Callable[[], bool]) -> ChallengeState:
        self.state = ChallengeState.ATTEMPTING
        self.attempts += 1
        element = self.probe.find_interstitial_element() or pick_target_element(self.probe.visible_elements())
        strategy = ""
        if element is not None:
            try:
                self.probe.scroll_into_view(element)
            except Exception:  # noqa: BLE001
                pass
            if self.cfg.scroll_settle_seconds > 0:
                self.clock.sleep(self.cfg.scroll_settle_seconds)
            strategy = self._activate(element)
        self.events.emit(
            EventKind.CHALLENGE_ATTEMPTING,
            "Attempting to clear the security challenge",
            element_kind=(element.kind if element is not None else ""),
            strategy=strategy,
            attempt=self.attempts,
        )

        deadline = self.clock.monotonic() + self.cfg.solve_timeout_seconds
        while remaining_until(self.clock, deadline) > 0:
            if not self.detect():
                break
            if should_stop():
                self.state = ChallengeState.DETECTED
                return self.state
            remaining = remaining_until(self.clock, deadline)
            if remaining <= 0:
                break
            self.events.emit(
                EventKind.CHALLENGE_ATTEMPTING,
                f"Waiting {int(round(remaining))}s for the challenge to clear",
                remaining_s=round(remaining, 1),
            )
            self.clock.sleep(min(self.cfg.poll_seconds, remaining))

        if not self.detect():
            self.state = ChallengeState.SOLVED
            self.events.emit(
                EventKind.CHALLENGE_SOLVED,
                "Validation completed, resuming",
                severity=Severity.SUCCESS,
                strategy=strategy,
            )
            return self.state

        self.state = ChallengeState.MANUAL_REQUIRED
        self.events.emit(
            EventKind.CHALLENGE_MANUAL,
            "Security challenge needs manual action; session stopped",
            severity=Severity.ERROR,
            reason=self.last_reason,
            state="MANUAL_REQUIRED",
        )
        return self.state

    def status_payload(self) -> dict[str, Any]:
        return {
            "enabled": bool(self.cfg.enabled),
            "state": self.state.value,
            "last_reason": self.last_reason,
            "attempts": int(self.attempts),
        }
