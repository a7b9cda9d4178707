from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import random
import tempfile
import unittest

from paint_overseer.api import ControlBridge
from paint_overseer.challenge import ChallengeMonitor
from paint_overseer.charge_model import ChargeModel
from paint_overseer.config import AppConfig, load_config
from paint_overseer.controller import BurstController, ControllerPhase, classify_outcome
from paint_overseer.events import EventChannel, EventRecorder
from paint_overseer.models import EventKind, StatusEvent
from paint_overseer.recovery import RecoveryIntentStore, SessionRecovery
from paint_overseer.remote_status import RemoteStatusGate
from paint_overseer.settings import PersistedSettings, SettingsStore
from paint_overseer.simulator import SimulatedActionSink, SimulatedChallengeProbe, SimulatedPaintService, SimulationProfile
from paint_overseer.timing import ManualClock


def _load_app(root: Path) -> AppConfig:
    path = root / "config" / "settings.toml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("[runtime]\n", encoding="utf-8")
    return load_config(path)


class Rig:
    """Controller wired to the simulated service on a manual clock."""

    def __init__(
        self,
        root: Path,
        profile: SimulationProfile,
        *,
        with_recovery: bool = True,
        settings: PersistedSettings | None = None,
        **controller_overrides: object,
    ) -> None:
        self.app = _load_app(root)
        self.clock = ManualClock()
        self.service = SimulatedPaintService(self.clock, profile)
        self.sink = SimulatedActionSink(self.service)
        self.recorder = EventRecorder()
        self.events = EventChannel([self.recorder])
        self.bridge = ControlBridge()
        self.reloads: list[str] = []
        self.recovery = None
        if with_recovery:
            self.recovery = SessionRecovery(
                self.app.safety,
                intents=RecoveryIntentStore(root / "runtime" / "intent.json"),
                settings=SettingsStore(root / "runtime" / "settings.json"),
                history_path=root / "runtime" / "history.json",
                reload_hook=self.reloads.append,
            )
        self.gate = RemoteStatusGate(self.app.remote, fetch_json=self.service.fetch_json)
        self.monitor = ChallengeMonitor(self.app.challenge, SimulatedChallengeProbe(self.service), self.clock, self.events)
        self.controller = BurstController(
            replace(self.app.controller, **controller_overrides),
            clock=self.clock,
            model=ChargeModel.initial(
                self.clock,
                count=profile.count,
                max_count=profile.max_count,
                regen_interval_ms=profile.regen_interval_ms,
            ),
            gate=self.gate,
            monitor=self.monitor,
            sink=self.sink,
            events=self.events,
            bridge=self.bridge,
            recovery=self.recovery,
            settings=settings,
            rng=random.Random(3),
        )


class StoppingSink(SimulatedActionSink):
    def __init__(self, service: SimulatedPaintService, bridge: ControlBridge) -> None:
        super().__init__(service)
        self.bridge = bridge

    def perform_action(self, batch_size: int) -> bool:
        ok = super().perform_action(batch_size)
        self.bridge.request_stop("operator")
        return ok


class FrozenCounterSink(SimulatedActionSink):
    """Local counter stuck at one value, as when the page stops repainting it."""

    def __init__(self, service: SimulatedPaintService, frozen: int) -> None:
        super().__init__(service)
        self.frozen = frozen

    def read_local_count(self) -> int | None:
        return self.frozen


class ClassifyOutcomeTests(unittest.TestCase):
    def test_decrease_after_commit_is_success(self) -> None:
        outcome = classify_outcome(committed=True, before=12, observed=[12, 12, 11], requested=1)
        self.assertTrue(outcome.confirmed)
        self.assertEqual(outcome.consumed, 1)
        self.assertEqual(outcome.observed_min, 11)

    def test_flat_count_is_failure(self) -> None:
        outcome = classify_outcome(committed=True, before=12, observed=[12, 12, 12], requested=1)
        self.assertFalse(outcome.confirmed)
        self.assertEqual(outcome.consumed, 0)

    def test_decrease_without_commit_is_failure(self) -> None:
        self.assertFalse(classify_outcome(committed=False, before=12, observed=[11], requested=1).confirmed)

    def test_no_observations_is_failure(self) -> None:
        outcome = classify_outcome(committed=True, before=12, observed=[], requested=1)
        self.assertFalse(outcome.confirmed)
        self.assertIsNone(outcome.observed_min)

    def test_consumed_units_heuristic(self) -> None:
        self.assertEqual(classify_outcome(committed=True, before=12, observed=[10], requested=5).consumed, 2)
        # Larger drop than requested: fall back to the batch, clamped to what was available.
        self.assertEqual(classify_outcome(committed=True, before=12, observed=[9], requested=1, available=12).consumed, 1)
        self.assertEqual(classify_outcome(committed=True, before=12, observed=[5], requested=2, available=1).consumed, 1)


class BurstTests(unittest.TestCase):
    def test_burst_spends_available_charges(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3))
            result = rig.controller.run(max_cycles=1)

            self.assertEqual(result.stop_reason, "max_cycles_reached")
            self.assertEqual(result.painted_count, 3)
            self.assertEqual(rig.service.painted, 3)
            self.assertEqual(rig.sink.batches, [1, 1, 1])
            kinds = rig.recorder.kinds()
            self.assertEqual(kinds[0], EventKind.START)
            self.assertEqual(kinds.count(EventKind.ACTION_SUCCESS), 3)
            self.assertIn(EventKind.PAUSE, kinds)
            self.assertIn(EventKind.STOPPED, kinds)
            self.assertIsNone(rig.controller.resume_target)
            self.assertEqual(rig.controller.model.predict().count, 0)

    def test_backoff_budget_skips_remote_reads(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3))
            rig.controller.arm_backoff(429)
            self.assertEqual(rig.controller.backoff_budget, 10)

            rig.controller.run_burst()

            self.assertEqual(rig.service.status_calls, 0)
            self.assertEqual(rig.gate.calls, 0)
            self.assertEqual(rig.controller.backoff_budget, 7)
            self.assertEqual(rig.controller.painted_count, 3)
            self.assertEqual(len(rig.recorder.of_kind(EventKind.RATE_LIMITED)), 1)

    def test_remote_reads_resume_when_budget_runs_out(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3))
            rig.controller.backoff_budget = 1

            rig.controller.run_burst()

            self.assertEqual(rig.controller.backoff_budget, 0)
            self.assertGreater(rig.service.status_calls, 0)
            self.assertEqual(rig.controller.painted_count, 3)

    def test_ban_during_run_arms_budget(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3, ban_on_calls={1}))
            rig.controller.run(max_cycles=1)
            self.assertEqual(rig.service.status_calls, 1)
            self.assertEqual(rig.controller.painted_count, 3)
            self.assertEqual(rig.controller.backoff_budget, 7)

    def test_stop_during_confirmation_abandons_action(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3, reject_rate=1.0))
            rig.controller.sink = StoppingSink(rig.service, rig.bridge)

            result = rig.controller.run()

            self.assertEqual(result.stop_reason, "operator")
            self.assertEqual(result.fail_streak, 0)
            self.assertEqual(result.painted_count, 0)
            kinds = rig.recorder.kinds()
            self.assertIn(EventKind.ACTION_ABANDONED, kinds)
            self.assertNotIn(EventKind.ACTION_FAILURE, kinds)
            self.assertIn(EventKind.PAUSE, kinds)


    def test_confirmation_window_closes_at_deadline(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(
                Path(td),
                SimulationProfile(count=3, reject_rate=1.0, expose_local_count=False),
                with_recovery=False,
                max_fail_streak=1,
            )
            started = rig.clock.monotonic()

            self.assertEqual(rig.controller.run_burst(), "fail_ceiling_cooldown")

            confirming = rig.recorder.of_kind(EventKind.CONFIRMING)
            self.assertEqual(len(confirming), 11)
            self.assertEqual(confirming[0].payload["remaining_s"], 10.0)
            self.assertEqual(confirming[-1].payload["remaining_s"], 0.0)
            self.assertEqual(len(rig.recorder.of_kind(EventKind.ACTION_FAILURE)), 1)
            self.assertLess(rig.clock.monotonic() - started, 11.0)

    def test_backoff_without_local_count_trusts_committed_batches(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3, expose_local_count=False))
            rig.controller.arm_backoff(429)

            rig.controller.run_burst()

            self.assertEqual(rig.service.status_calls, 0)
            self.assertEqual(rig.sink.batches, [1, 1, 1])
            self.assertEqual(rig.controller.painted_count, 3)
            self.assertEqual(rig.controller.backoff_budget, 7)
            self.assertEqual(rig.controller.model.predict().count, 0)
            self.assertEqual(rig.recorder.of_kind(EventKind.ACTION_FAILURE), [])
            rig.clock.advance(2.0)
            self.assertEqual(rig.service.summary()["painted"], 3)

    def test_remote_confirmation_ignores_stale_local_reading(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=3))
            rig.controller.sink = FrozenCounterSink(rig.service, frozen=3)

            outcome, local_reading = rig.controller.perform_action(3)
            self.assertTrue(outcome.confirmed)
            self.assertIsNone(local_reading)

            # Status reads suspended: nothing refreshes the model after this success.
            rig.controller.backoff_budget = 1
            rig.controller._on_success(outcome, local_reading)

            self.assertEqual(rig.controller.model.predict().count, 2)
            self.assertEqual(rig.controller.backoff_budget, 0)

class BackoffWaitTests(unittest.TestCase):
    def test_flagged_failures_wait_in_short_slices(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=5, reject_rate=1.0), with_recovery=False, max_fail_streak=3)
            rig.controller.arm_backoff(429)
            started = rig.clock.monotonic()

            self.assertEqual(rig.controller.run_burst(), "fail_ceiling_cooldown")

            waits = rig.recorder.of_kind(EventKind.BACKOFF_WAIT)
            # The third failure hits the ceiling instead of waiting.
            self.assertEqual(len(waits), 2)
            self.assertEqual([event.payload["wait_s"] for event in waits], [120.0, 120.0])
            self.assertEqual(waits[0].payload["state"], ControllerPhase.BACKOFF.value)
            self.assertLessEqual(max(rig.clock.slept), 1.0)
            self.assertGreaterEqual(rig.clock.monotonic() - started, 240.0)
            self.assertEqual(rig.service.status_calls, 0)
            self.assertEqual(rig.controller.backoff_budget, 10)

    def test_stop_interrupts_flagged_failure_wait(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=5, reject_rate=1.0), with_recovery=False, max_fail_streak=3)
            rig.controller.arm_backoff(429)
            wait_started: list[float] = []

            def note_wait(event: StatusEvent) -> None:
                if event.kind is EventKind.BACKOFF_WAIT:
                    wait_started.append(rig.clock.monotonic())

            def stop_after_five_seconds(now: float) -> None:
                if wait_started and now - wait_started[0] >= 5.0:
                    rig.bridge.request_stop("operator")

            rig.events.subscribe(note_wait)
            rig.clock.on_advance(stop_after_five_seconds)

            self.assertIsNone(rig.controller.run_burst())

            self.assertEqual(len(rig.recorder.of_kind(EventKind.BACKOFF_WAIT)), 1)
            self.assertEqual(rig.sink.batches, [1])
            self.assertEqual(rig.controller.fail_streak, 1)
            self.assertLess(rig.clock.monotonic() - wait_started[0], 6.0)


class FailureCeilingTests(unittest.TestCase):
    def test_ceiling_triggers_one_recovery_then_cooldown_suppresses(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            root = Path(td)
            rig = Rig(root, SimulationProfile(count=5, reject_rate=1.0), max_fail_streak=3)
            result = rig.controller.run()

            self.assertEqual(result.stop_reason, "recovery_reload")
            self.assertTrue(result.recovery_triggered)
            self.assertEqual(result.fail_streak, 3)
            self.assertEqual(rig.reloads, ["fail_streak_3"])
            self.assertEqual(len(rig.recorder.of_kind(EventKind.RECOVERY_TRIGGERED)), 1)
            self.assertNotIn(EventKind.PAUSE, rig.recorder.kinds())
            self.assertEqual(rig.controller.phase, ControllerPhase.RECOVERING)
            self.assertTrue((root / "runtime" / "intent.json").exists())
            self.assertTrue((root / "runtime" / "settings.json").exists())

            # Same state directory, as after the reload: the cooldown is still running.
            again = Rig(root, SimulationProfile(count=5, reject_rate=1.0), max_fail_streak=3)
            second = again.controller.run()
            self.assertEqual(second.stop_reason, "fail_ceiling_cooldown")
            self.assertFalse(second.recovery_triggered)
            self.assertEqual(again.reloads, [])
            self.assertEqual(len(again.recorder.of_kind(EventKind.RECOVERY_SUPPRESSED)), 1)
            self.assertEqual(again.recorder.of_kind(EventKind.RECOVERY_TRIGGERED), [])

    def test_ceiling_without_recovery_stops(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=5, reject_rate=1.0), with_recovery=False, max_fail_streak=2)
            result = rig.controller.run()
            self.assertEqual(result.stop_reason, "fail_ceiling_cooldown")
            self.assertEqual(rig.bridge.snapshot()["stop_reason"], "fail_ceiling_cooldown")

    def test_recalibrates_after_failure_when_enabled(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(
                Path(td),
                SimulationProfile(count=5, reject_rate=1.0),
                with_recovery=False,
                settings=PersistedSettings(auto_recalibrate=True, max_fail_streak=3),
            )
            rig.controller.run()
            # Two failures below the ceiling, the second inside the recalibration interval.
            self.assertEqual(rig.service.recalibrations, 1)
            self.assertEqual(len(rig.recorder.of_kind(EventKind.RECALIBRATED)), 1)


class ChallengeFlowTests(unittest.TestCase):
    def test_unsolvable_challenge_halts_session(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=5, challenge_after_actions=1, challenge_solvable=False))
            result = rig.controller.run()

            self.assertEqual(result.stop_reason, "challenge_manual")
            self.assertEqual(rig.controller.phase, ControllerPhase.MANUAL_REQUIRED)
            self.assertEqual(rig.service.challenge_clicks, ["pointer_sequence", "click"])
            kinds = rig.recorder.kinds()
            self.assertEqual(kinds.count(EventKind.CHALLENGE_MANUAL), 1)
            self.assertNotIn(EventKind.PAUSE, kinds)
            self.assertEqual(rig.reloads, [])

    def test_solved_challenge_resumes_burst(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=2, challenge_after_actions=1))
            result = rig.controller.run(max_cycles=1)

            self.assertEqual(result.stop_reason, "max_cycles_reached")
            self.assertEqual(result.painted_count, 2)
            self.assertEqual(result.fail_streak, 0)
            self.assertIn(EventKind.CHALLENGE_SOLVED, rig.recorder.kinds())


class WaitTests(unittest.TestCase):
    def test_resume_target_is_stable_until_burst(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(
                Path(td),
                SimulationProfile(count=0, regen_interval_ms=1000),
                resume_charges_min=4,
                resume_charges_max=6,
            )
            self.assertEqual(rig.controller.wait_for_charges(), "ready")
            target = rig.controller.resume_target
            assert target is not None
            self.assertTrue(4 <= target <= 6)
            targets = {event.payload["target"] for event in rig.recorder.of_kind(EventKind.WAIT_PROGRESS)}
            self.assertEqual(targets, {target})
            self.assertGreaterEqual(rig.controller.model.predict().count, target)

            self.assertEqual(rig.controller.wait_for_charges(), "ready")
            self.assertEqual(rig.controller.resume_target, target)

            rig.bridge.request_stop("operator")
            rig.controller.run_burst()
            self.assertIsNone(rig.controller.resume_target)

    def test_floor_elapsed_with_partial_charges(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(
                Path(td),
                SimulationProfile(count=0),
                resume_threshold=3,
                wait_floor_seconds_per_charge=10.0,
            )
            self.assertEqual(rig.controller.wait_for_charges(), "floor_elapsed")
            self.assertEqual(rig.controller.model.predict().count, 1)

    def test_target_capped_at_max(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=0, max_count=2, regen_interval_ms=1000), resume_threshold=10)
            self.assertEqual(rig.controller.wait_for_charges(), "ready")
            self.assertEqual(rig.controller.model.predict().count, 2)

    def test_stop_interrupts_wait(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=0))
            rig.bridge.request_stop("operator")
            self.assertEqual(rig.controller.wait_for_charges(), "stopped")

    def test_persisted_threshold_overrides_random_target(self) -> None:
        with tempfile.TemporaryDirectory(prefix="paint-ctrl-") as td:
            rig = Rig(Path(td), SimulationProfile(count=0), settings=PersistedSettings(resume_threshold=4))
            self.assertEqual({rig.controller.compute_resume_target() for _ in range(5)}, {4})


if __name__ == "__main__":
    unittest.main()
