from __future__ import annotations

from typing import Any

from .models import ChargePrediction, ChargeState
from .timing import Clock


class ChargeModel:
    """
    Local regeneration model for the remote charge pool.

    The remote count is only read occasionally; between reads the model
    extrapolates one charge per regen interval up to the maximum.
    Invariant: state.next_regen_at is None iff state.count == state.max.
    """

    def __init__(self, clock: Clock, state: ChargeState) -> None:
        self.clock = clock
        self.state = state
        self._normalize(reschedule=state.next_regen_at is None)

    @classmethod
    def initial(cls, clock: Clock, *, count: int, max_count: int, regen_interval_ms: int) -> "ChargeModel":
        model = cls(clock, ChargeState(count=0, max=max(1, int(max_count)), regen_interval_ms=max(1, int(regen_interval_ms))))
        model.apply_authoritative(count, max_count, regen_interval_ms)
        return model

    def _normalize(self, *, reschedule: bool) -> None:
        st = self.state
        st.max = max(1, int(st.max))
        st.regen_interval_ms = max(1, int(st.regen_interval_ms))
        st.count = min(st.max, max(0, int(st.count)))
        if st.count >= st.max:
            st.next_regen_at = None
        elif reschedule or st.next_regen_at is None:
            st.next_regen_at = self.clock.now_ms() + st.regen_interval_ms

    def tick(self) -> int:
        """Advance regeneration without I/O; returns the number of charges gained."""
        st = self.state
        now = self.clock.now_ms()
        gained = 0
        while st.next_regen_at is not None and now >= st.next_regen_at:
            st.count += 1
            gained += 1
            if st.count >= st.max:
                st.count = st.max
                st.next_regen_at = None
                break
            st.next_regen_at += st.regen_interval_ms
        return gained

    def predict(self) -> ChargePrediction:
        st = self.state
        if st.next_regen_at is None:
            return ChargePrediction(count=int(st.count), eta_ms=0)
        eta = max(0, int(st.next_regen_at - self.clock.now_ms()))
        return ChargePrediction(count=int(st.count), eta_ms=eta)

    def eta_to(self, target: int) -> int:
        pred = self.predict()
        goal = min(int(target), self.state.max)
        if pred.count >= goal:
            return 0
        missing = goal - pred.count
        return pred.eta_ms + (missing - 1) * self.state.regen_interval_ms

    def apply_authoritative(self, count: int, max_count: int, regen_interval_ms: int) -> None:
        st = self.state
        st.max = max(1, int(max_count))
        st.regen_interval_ms = max(1, int(regen_interval_ms))
        st.count = min(st.max, max(0, int(count)))
        st.next_regen_at = None
        self._normalize(reschedule=True)

    def observe_local(self, count: int) -> None:
        """Apply a lower-trust count reading; max and interval are kept."""
        st = self.state
        value = min(st.max, max(0, int(count)))
        if value == st.count:
            return
        was_full = st.count >= st.max
        st.count = value
        self._normalize(reschedule=was_full)

    def consume(self, units: int) -> None:
        if units <= 0:
            return
        self.observe_local(self.state.count - int(units))

    def snapshot(self) -> dict[str, Any]:
        pred = self.predict()
        payload = self.state.to_dict()
        payload["eta_ms"] = pred.eta_ms
        return payload
