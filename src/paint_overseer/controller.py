from __future__ import annotations

from enum import Enum
import random
from typing import Any, Protocol

from .api import ControlBridge
from .challenge import ChallengeMonitor, ChallengeState
from .charge_model import ChargeModel
from .config import ControllerConfig
from .events import EventChannel
from .models import (
    ActionOutcome,
    BurstRunResult,
    EventKind,
    Severity,
    StatusOk,
    StatusTemporaryBan,
)
from .recovery import SessionRecovery
from .remote_status import RemoteStatusGate
from .settings import PersistedSettings
from .timing import Clock, format_time_short, jitter_seconds, remaining_until, stoppable_sleep


class ActionSink(Protocol):
    def perform_action(self, batch_size: int) -> bool: ...

    def read_local_count(self) -> int | None: ...

    def recalibrate(self) -> bool: ...


# Stop reasons raised by the loop itself rather than by the operator.
HALT_REASONS = {"challenge_manual", "recovery_reload", "fail_ceiling_cooldown"}


class ControllerPhase(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    BURSTING = "BURSTING"
    CONFIRMING = "CONFIRMING"
    BACKOFF = "BACKOFF"
    RECOVERING = "RECOVERING"
    MANUAL_REQUIRED = "MANUAL_REQUIRED"
    STOPPED = "STOPPED"


def classify_outcome(
    *,
    committed: bool,
    before: int,
    observed: list[int],
    requested: int,
    available: int | None = None,
) -> ActionOutcome:
    """
    Success iff the sink reported a commit and some observation fell strictly
    below the pre-action snapshot. Consumed units prefer the observed decrease
    and fall back to the requested batch clamped to what was available.
    """
    before = int(before)
    observed_min = min(int(v) for v in observed) if observed else None
    decrease = before - observed_min if observed_min is not None else 0
    confirmed = bool(committed) and decrease > 0
    consumed = 0
    if confirmed:
        if decrease <= int(requested):
            consumed = decrease
        else:
            cap = int(available) if available is not None else int(requested)
            consumed = max(1, min(int(requested), cap))
    return ActionOutcome(
        committed=bool(committed),
        confirmed=confirmed,
        consumed=consumed,
        requested=int(requested),
        before=before,
        observed_min=observed_min,
    )


class BurstController:
    """
    Single-actor paint loop.

    Owns the session state (resume target, fail streak, backoff budget, painted
    count) and drives the charge model, the remote gate, the challenge monitor
    and the action sink. All waits go through the injected clock and re-check
    the control bridge at least once per second.
    """

    def __init__(
        self,
        cfg: ControllerConfig,
        *,
        clock: Clock,
        model: ChargeModel,
        gate: RemoteStatusGate,
        monitor: ChallengeMonitor,
        sink: ActionSink,
        events: EventChannel,
        bridge: ControlBridge,
        recovery: SessionRecovery | None = None,
        settings: PersistedSettings | None = None,
        min_poll_interval_seconds: float = 0.9,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or PersistedSettings()
        self.cfg = self.settings.apply_to(cfg)
        self.clock = clock
        self.model = model
        self.gate = gate
        self.monitor = monitor
        self.sink = sink
        self.events = events
        self.bridge = bridge
        self.recovery = recovery
        self.min_poll_interval_seconds = max(0.0, float(min_poll_interval_seconds))
        self.rng = rng or random.Random()

        self.phase = ControllerPhase.IDLE
        self.resume_target: int | None = None
        self.fail_streak = 0
        self.backoff_budget = 0
        self.painted_count = 0
        self.cycles = 0
        self.recovery_triggered = False
        self._last_remote_poll: float | None = None
        self._last_tick: float | None = None
        self._last_recalibrate: float | None = None

    # -- helpers -----------------------------------------------------------

    def stop_requested(self) -> bool:
        return self.bridge.is_stop_requested()

    def _pause(self, bounds_ms: tuple[int, int]) -> None:
        self.clock.sleep(jitter_seconds(bounds_ms, self.rng))

    def _tick_model(self, *, force: bool = False) -> None:
        now = self.clock.monotonic()
        if not force and self._last_tick is not None and now - self._last_tick < self.cfg.tick_min_interval_seconds:
            return
        self._last_tick = now
        self.model.tick()

    def arm_backoff(self, status_code: int) -> None:
        self.backoff_budget = int(self.cfg.backoff_budget_actions)
        self.events.emit(
            EventKind.RATE_LIMITED,
            f"Temporarily restricted; skipping status checks for the next {self.backoff_budget} actions",
            status_code=int(status_code),
            backoff_budget=self.backoff_budget,
        )

    def refresh_remote(self) -> bool:
        """One authoritative read; never called while the backoff budget is active."""
        if self.backoff_budget > 0:
            return False
        self._last_remote_poll = self.clock.monotonic()
        result = self.gate.fetch_status()
        if isinstance(result, StatusOk):
            self.model.apply_authoritative(result.charges.count, result.charges.max, result.charges.regen_interval_ms)
            self._last_tick = self.clock.monotonic()
            return True
        if isinstance(result, StatusTemporaryBan):
            self.arm_backoff(result.status_code)
            return False
        self.events.emit(EventKind.REMOTE_UNAVAILABLE, "Status endpoint unavailable", reason=result.reason)
        return False

    def _poll_remote_if_due(self) -> bool:
        now = self.clock.monotonic()
        if self._last_remote_poll is not None and now - self._last_remote_poll < self.min_poll_interval_seconds:
            return False
        return self.refresh_remote()

    def compute_resume_target(self) -> int:
        override = int(self.cfg.resume_threshold)
        if override > 0:
            return override
        low = int(self.cfg.resume_charges_min)
        high = max(low, int(self.cfg.resume_charges_max))
        return self.rng.randint(low, high)

    def clear_resume_target(self) -> None:
        self.resume_target = None

    def stats_payload(self) -> dict[str, Any]:
        pred = self.model.predict()
        user = self.gate.last_user
        return {
            "phase": self.phase.value,
            "user": user.name if user is not None else "",
            "painted_count": int(self.painted_count),
            "charges": int(pred.count),
            "max_charges": int(self.model.state.max),
            "cooldown": format_time_short(pred.eta_ms),
            "fail_streak": int(self.fail_streak),
            "backoff_budget": int(self.backoff_budget),
            "resume_target": self.resume_target,
            "challenge": self.monitor.status_payload(),
            "remote": self.gate.stats(),
            "recovery": self.recovery.status_payload() if self.recovery is not None else {},
        }

    def _emit_stats(self) -> None:
        self.events.emit(EventKind.STATS, "stats", **self.stats_payload())

    def _halt(self, reason: str, phase: ControllerPhase = ControllerPhase.STOPPED) -> str:
        self.phase = phase
        self.bridge.request_stop(reason)
        return reason

    # -- waiting -----------------------------------------------------------

    def wait_for_charges(self) -> str:
        """Hold until the resume target is met, or the floor elapsed with charges available."""
        if self.resume_target is None:
            self.resume_target = self.compute_resume_target()
        target = int(self.resume_target)
        floor_seconds = target * self.cfg.wait_floor_seconds_per_charge
        started = self.clock.monotonic()
        self.phase = ControllerPhase.WAITING

        while True:
            if self.stop_requested():
                return "stopped"
            if self.monitor.check(self.stop_requested) is ChallengeState.MANUAL_REQUIRED:
                return "manual"
            self._poll_remote_if_due()
            self._tick_model(force=True)

            pred = self.model.predict()
            reachable = min(target, self.model.state.max)
            if pred.count >= reachable:
                return "ready"
            elapsed = self.clock.monotonic() - started
            if elapsed >= floor_seconds and pred.count >= 1:
                return "floor_elapsed"

            eta_ms = self.model.eta_to(reachable)
            self.events.emit(
                EventKind.WAIT_PROGRESS,
                f"Recharging {pred.count}/{target} · ETA {format_time_short(eta_ms or 1000)}",
                current=int(pred.count),
                target=target,
                eta_ms=int(eta_ms),
                eta_short=format_time_short(eta_ms or 1000),
                floor_remaining_s=round(max(0.0, floor_seconds - elapsed), 1),
                state=self.phase.value,
            )
            self.clock.sleep(self.cfg.wait_poll_seconds)

    # -- acting ------------------------------------------------------------

    def _batch_size(self, available: int) -> int:
        if self.backoff_budget > 0:
            return 1
        return max(1, min(int(self.cfg.squares_per_action), int(available)))

    def _sample(self, observed: dict[str, list[int]]) -> None:
        if "local" in observed:
            local = self.sink.read_local_count()
            if local is not None:
                observed["local"].append(int(local))
        self._poll_remote_if_due()
        self._tick_model(force=True)
        observed["model"].append(int(self.model.predict().count))

    @staticmethod
    def _decreased(baselines: dict[str, int], observed: dict[str, list[int]]) -> bool:
        return any(values and min(values) < baselines[name] for name, values in observed.items())

    def _confirm(self, baselines: dict[str, int], observed: dict[str, list[int]]) -> bool:
        """Sample until a decrease shows up or the window closes; returns True if stopped early."""
        deadline = self.clock.monotonic() + float(self.cfg.confirm_wait_seconds)
        self.phase = ControllerPhase.CONFIRMING
        while True:
            remaining = remaining_until(self.clock, deadline)
            self.events.emit(
                EventKind.CONFIRMING,
                f"Confirming paint… {format_time_short(remaining * 1000)}",
                remaining_s=round(remaining, 1),
                state=self.phase.value,
            )
            self._sample(observed)
            if self._decreased(baselines, observed):
                return False
            if remaining <= 0:
                return False
            if self.stop_requested():
                return True
            self.clock.sleep(min(self.cfg.confirm_poll_seconds, remaining))

    def perform_action(self, available: int) -> tuple[ActionOutcome, int | None]:
        """
        Dispatch one batch and confirm it against every count signal.

        Returns the outcome and the last local reading when the local counter
        was the signal that confirmed it (None otherwise).
        """
        batch = self._batch_size(available)
        baselines: dict[str, int] = {"model": int(self.model.predict().count)}
        local = self.sink.read_local_count()
        if local is not None:
            baselines["local"] = int(local)
        observed: dict[str, list[int]] = {name: [] for name in baselines}

        self.phase = ControllerPhase.BURSTING
        committed = bool(self.sink.perform_action(batch))
        if committed and self.backoff_budget > 0 and "local" not in baselines:
            # Status reads are suspended and no local counter exists: the
            # model takes the committed batch so it stays a decrease signal.
            self.model.consume(batch)
        self._pause(self.cfg.action_jitter_ms)
        stopped = self._confirm(baselines, observed)

        best = max(
            baselines,
            key=lambda name: (baselines[name] - min(observed[name])) if observed[name] else -1,
        )
        local_reading = observed["local"][-1] if best == "local" and observed["local"] else None
        outcome = classify_outcome(
            committed=committed,
            before=baselines[best],
            observed=observed[best],
            requested=batch,
            available=available,
        )
        if stopped and not outcome.confirmed:
            outcome = ActionOutcome(
                committed=outcome.committed,
                confirmed=False,
                consumed=0,
                requested=outcome.requested,
                before=outcome.before,
                observed_min=outcome.observed_min,
                stopped=True,
            )
        return outcome, local_reading

    def _on_success(self, outcome: ActionOutcome, local_reading: int | None = None) -> None:
        self.fail_streak = 0
        self.painted_count += outcome.consumed
        if local_reading is not None:
            self.model.observe_local(local_reading)
        elif self.model.predict().count >= outcome.before:
            self.model.consume(outcome.consumed)
        self.events.emit(
            EventKind.ACTION_SUCCESS,
            "Pixel painted!",
            severity=Severity.SUCCESS,
            consumed=outcome.consumed,
            painted_count=self.painted_count,
        )
        if self.backoff_budget > 0:
            self.backoff_budget -= 1
        else:
            self.refresh_remote()

    def _on_failure(self, outcome: ActionOutcome) -> str | None:
        self.fail_streak += 1
        self.events.emit(
            EventKind.ACTION_FAILURE,
            "Paint failed",
            severity=Severity.WARNING,
            committed=outcome.committed,
            fail_streak=self.fail_streak,
            max_fail_streak=self.cfg.max_fail_streak,
        )
        if self.fail_streak >= self.cfg.max_fail_streak:
            return self._fail_ceiling()

        if self.backoff_budget > 0 and self.cfg.flagged_failure_wait_seconds > 0:
            self.phase = ControllerPhase.BACKOFF
            self.events.emit(
                EventKind.BACKOFF_WAIT,
                f"Waiting {format_time_short(self.cfg.flagged_failure_wait_seconds * 1000)} before retrying...",
                severity=Severity.WARNING,
                wait_s=self.cfg.flagged_failure_wait_seconds,
                state=self.phase.value,
            )
            if not stoppable_sleep(self.clock, self.cfg.flagged_failure_wait_seconds, self.stop_requested):
                return None

        if self.cfg.auto_recalibrate:
            now = self.clock.monotonic()
            if self._last_recalibrate is None or now - self._last_recalibrate >= self.cfg.recalibrate_interval_seconds:
                self._last_recalibrate = now
                ok = bool(self.sink.recalibrate())
                self.events.emit(
                    EventKind.RECALIBRATED,
                    "View recalibrated" if ok else "View recalibration failed",
                    severity=Severity.DEFAULT if ok else Severity.WARNING,
                    ok=ok,
                )
        return None

    def _fail_ceiling(self) -> str:
        self.phase = ControllerPhase.RECOVERING
        reason = f"fail_streak_{self.fail_streak}"
        if self.recovery is None or self.recovery.in_cooldown():
            remaining = self.recovery.cooldown_remaining_seconds() if self.recovery is not None else 0.0
            self.events.emit(
                EventKind.RECOVERY_SUPPRESSED,
                "Too many failed paints; stopping without reload",
                severity=Severity.ERROR,
                reason=reason,
                cooldown_remaining_s=round(remaining, 1),
                state=ControllerPhase.STOPPED.value,
            )
            return self._halt("fail_ceiling_cooldown")

        self.events.emit(
            EventKind.RECOVERY_TRIGGERED,
            "Too many failed paints; saving state and reloading",
            severity=Severity.ERROR,
            reason=reason,
            state=self.phase.value,
        )
        self._halt("recovery_reload", ControllerPhase.RECOVERING)
        self.recovery_triggered = self.recovery.trigger(reason=reason, settings=self.settings)
        return "recovery_reload" if self.recovery_triggered else "fail_ceiling_cooldown"

    def run_burst(self) -> str | None:
        self.clear_resume_target()
        self.phase = ControllerPhase.BURSTING
        while not self.stop_requested():
            self._tick_model()
            available = self.model.predict().count
            if available <= 0:
                break

            outcome, local_reading = self.perform_action(available)
            if outcome.stopped:
                self.events.emit(
                    EventKind.ACTION_ABANDONED,
                    "Stopped before the paint could be confirmed",
                    committed=outcome.committed,
                )
                break
            if outcome.confirmed:
                self._on_success(outcome, local_reading)
            else:
                reason = self._on_failure(outcome)
                if reason is not None:
                    return reason
            self._emit_stats()

            if self.monitor.check(self.stop_requested) is ChallengeState.MANUAL_REQUIRED:
                return self._halt("challenge_manual", ControllerPhase.MANUAL_REQUIRED)
            if self.stop_requested():
                break
            self._pause(self.cfg.inter_action_pause_ms)

        if not self.stop_requested():
            self._pause(self.cfg.post_burst_pause_ms)
        self._emit_stats()
        return None

    # -- loop --------------------------------------------------------------

    def run_cycle(self) -> str | None:
        if self.monitor.check(self.stop_requested) is ChallengeState.MANUAL_REQUIRED:
            return self._halt("challenge_manual", ControllerPhase.MANUAL_REQUIRED)
        if self.stop_requested():
            return None
        self._poll_remote_if_due()
        self._tick_model()

        if self.model.predict().count <= 0:
            outcome = self.wait_for_charges()
            if outcome == "manual":
                return self._halt("challenge_manual", ControllerPhase.MANUAL_REQUIRED)
            self._emit_stats()
            return None
        return self.run_burst()

    def run(self, *, max_cycles: int = 0) -> BurstRunResult:
        self.bridge.request_start()
        self.monitor.reset()
        self.phase = ControllerPhase.RUNNING
        self.events.emit(EventKind.START, "Painting started!", severity=Severity.SUCCESS, state=self.phase.value)
        self.refresh_remote()

        stop_reason = "unknown"
        try:
            while True:
                if self.stop_requested():
                    stop_reason = self.bridge.snapshot()["stop_reason"] or "manual_stop"
                    break
                if max_cycles > 0 and self.cycles >= max_cycles:
                    stop_reason = "max_cycles_reached"
                    break
                self.cycles += 1
                reason = self.run_cycle()
                if reason is not None:
                    stop_reason = reason
                    break
        finally:
            if stop_reason == "unknown":
                stop_reason = self.bridge.snapshot()["stop_reason"] or stop_reason
            if self.phase not in {ControllerPhase.MANUAL_REQUIRED, ControllerPhase.RECOVERING}:
                self.phase = ControllerPhase.STOPPED
            if stop_reason not in HALT_REASONS:
                self.events.emit(EventKind.PAUSE, "Painting paused", reason=stop_reason, state=self.phase.value)
            self.events.emit(EventKind.STOPPED, f"Session stopped: {stop_reason}", reason=stop_reason, state=self.phase.value)
            self._emit_stats()

        return BurstRunResult(
            stop_reason=stop_reason,
            painted_count=self.painted_count,
            fail_streak=self.fail_streak,
            cycles=self.cycles,
            recovery_triggered=self.recovery_triggered,
        )
