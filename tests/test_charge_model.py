from __future__ import annotations

import unittest

from paint_overseer.charge_model import ChargeModel
from paint_overseer.timing import ManualClock


class ChargeModelTests(unittest.TestCase):
    def test_tick_regenerates_monotonically_until_max(self) -> None:
        clock = ManualClock()
        model = ChargeModel.initial(clock, count=2, max_count=5, regen_interval_ms=1000)
        seen = [model.state.count]
        for _ in range(10):
            clock.advance(0.7)
            model.tick()
            seen.append(model.state.count)
        self.assertEqual(seen, sorted(seen))
        self.assertEqual(model.state.count, 5)
        self.assertIsNone(model.state.next_regen_at)

        clock.advance(60)
        self.assertEqual(model.tick(), 0)
        self.assertIsNone(model.state.next_regen_at)

    def test_tick_catches_up_several_intervals(self) -> None:
        clock = ManualClock()
        model = ChargeModel.initial(clock, count=0, max_count=80, regen_interval_ms=30000)
        clock.advance(95)
        self.assertEqual(model.tick(), 3)
        self.assertEqual(model.predict().count, 3)
        self.assertEqual(model.predict().eta_ms, 25000)

    def test_authoritative_update_overwrites_state(self) -> None:
        clock = ManualClock()
        model = ChargeModel.initial(clock, count=3, max_count=80, regen_interval_ms=30000)
        model.apply_authoritative(12, 20, 5000)
        self.assertEqual(model.state.count, 12)
        self.assertEqual(model.state.max, 20)
        self.assertEqual(model.state.regen_interval_ms, 5000)
        self.assertEqual(model.state.next_regen_at, clock.now_ms() + 5000)

        model.apply_authoritative(20, 20, 5000)
        self.assertIsNone(model.state.next_regen_at)

        model.apply_authoritative(30, 20, 5000)
        self.assertEqual(model.state.count, 20)

    def test_consume_from_full_restarts_regeneration(self) -> None:
        clock = ManualClock()
        model = ChargeModel.initial(clock, count=10, max_count=10, regen_interval_ms=2000)
        self.assertIsNone(model.state.next_regen_at)
        model.consume(3)
        self.assertEqual(model.state.count, 7)
        self.assertEqual(model.state.next_regen_at, clock.now_ms() + 2000)

    def test_local_observation_keeps_running_schedule(self) -> None:
        clock = ManualClock()
        model = ChargeModel.initial(clock, count=5, max_count=10, regen_interval_ms=2000)
        scheduled = model.state.next_regen_at
        clock.advance(1.5)
        model.observe_local(4)
        self.assertEqual(model.state.count, 4)
        self.assertEqual(model.state.next_regen_at, scheduled)

    def test_eta_to_target(self) -> None:
        clock = ManualClock()
        model = ChargeModel.initial(clock, count=0, max_count=5, regen_interval_ms=1000)
        self.assertEqual(model.eta_to(0), 0)
        self.assertEqual(model.eta_to(3), 3000)
        # Targets above max are capped.
        self.assertEqual(model.eta_to(99), 5000)


if __name__ == "__main__":
    unittest.main()
