from __future__ import annotations

from dataclasses import dataclass
import random
from typing import Any

from .api import ControlBridge
from .challenge import ChallengeMonitor, ChallengeProbe
from .charge_model import ChargeModel
from .config import AppConfig
from .controller import ActionSink, BurstController
from .events import EventChannel, EventRecorder, HealthFile, JsonlEventLog, StatusSink
from .recovery import RecoveryIntentStore, ReloadHook, SessionRecovery
from .remote_status import FetchJson, RemoteStatusGate
from .settings import SettingsStore
from .simulator import SimulatedActionSink, SimulatedChallengeProbe, SimulatedPaintService, SimulationProfile
from .timing import Clock, ManualClock, SystemClock


@dataclass
class Session:
    controller: BurstController
    bridge: ControlBridge
    events: EventChannel
    intents: RecoveryIntentStore
    settings_store: SettingsStore


def intent_store(cfg: AppConfig) -> RecoveryIntentStore:
    return RecoveryIntentStore(
        cfg.resolve(cfg.runtime.recovery_intent_file),
        max_age_seconds=cfg.safety.recovery_intent_max_age_seconds,
    )


def build_session(
    cfg: AppConfig,
    *,
    sink: ActionSink,
    probe: ChallengeProbe,
    clock: Clock | None = None,
    fetch_json: FetchJson | None = None,
    bridge: ControlBridge | None = None,
    reload_hook: ReloadHook | None = None,
    sinks: list[StatusSink] | None = None,
    rng: random.Random | None = None,
) -> Session:
    clock = clock or SystemClock()
    bridge = bridge or ControlBridge()
    events = EventChannel(
        [
            JsonlEventLog(cfg.resolve(cfg.runtime.events_file)),
            HealthFile(cfg.resolve(cfg.runtime.status_file), publish=bridge.update_health),
            *(sinks or []),
        ]
    )
    settings_store = SettingsStore(cfg.resolve(cfg.runtime.settings_file))
    intents = intent_store(cfg)
    recovery = SessionRecovery(
        cfg.safety,
        intents=intents,
        settings=settings_store,
        history_path=cfg.resolve(cfg.runtime.recovery_history_file),
        reload_hook=reload_hook,
    )
    model = ChargeModel.initial(
        clock,
        count=0,
        max_count=cfg.remote.default_max_charges,
        regen_interval_ms=cfg.remote.default_regen_interval_ms,
    )
    controller = BurstController(
        cfg.controller,
        clock=clock,
        model=model,
        gate=RemoteStatusGate(cfg.remote, fetch_json=fetch_json),
        monitor=ChallengeMonitor(cfg.challenge, probe, clock, events),
        sink=sink,
        events=events,
        bridge=bridge,
        recovery=recovery,
        settings=settings_store.load(),
        min_poll_interval_seconds=cfg.remote.min_poll_interval_seconds,
        rng=rng,
    )
    return Session(
        controller=controller,
        bridge=bridge,
        events=events,
        intents=intents,
        settings_store=settings_store,
    )


def run_simulation(
    cfg: AppConfig,
    *,
    profile: SimulationProfile | None = None,
    max_cycles: int = 20,
) -> dict[str, Any]:
    """Drive a full session against the in-process simulated service on a manual clock."""
    clock = ManualClock()
    profile = profile or SimulationProfile()
    service = SimulatedPaintService(clock, profile)
    recorder = EventRecorder()
    reloads: list[str] = []
    session = build_session(
        cfg,
        sink=SimulatedActionSink(service),
        probe=SimulatedChallengeProbe(service),
        clock=clock,
        fetch_json=service.fetch_json,
        reload_hook=reloads.append,
        sinks=[recorder],
        rng=random.Random(profile.seed),
    )
    result = session.controller.run(max_cycles=max_cycles)
    counts: dict[str, int] = {}
    for kind in recorder.kinds():
        counts[kind.value] = counts.get(kind.value, 0) + 1
    return {
        "result": result.to_dict(),
        "service": service.summary(),
        "simulated_seconds": round(sum(clock.slept), 1),
        "event_counts": counts,
        "reloads": reloads,
    }
