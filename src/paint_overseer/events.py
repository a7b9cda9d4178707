from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, TextIO

from .models import EventKind, Severity, StatusEvent
from .timing import utc_now_iso


StatusSink = Callable[[StatusEvent], None]

# Event kinds that only go to the event log, never to interactive surfaces.
QUIET_KINDS = {EventKind.REMOTE_UNAVAILABLE, EventKind.STATS}


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except Exception:  # noqa: BLE001
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


class EventChannel:
    """Fan-out of status events to subscribed sinks."""

    def __init__(self, sinks: list[StatusSink] | None = None) -> None:
        self._sinks: list[StatusSink] = list(sinks or [])

    def subscribe(self, sink: StatusSink) -> None:
        self._sinks.append(sink)

    def emit(
        self,
        kind: EventKind,
        message: str,
        *,
        severity: Severity = Severity.DEFAULT,
        **payload: Any,
    ) -> StatusEvent:
        event = StatusEvent(kind=kind, severity=severity, message=message, payload=payload)
        for sink in list(self._sinks):
            sink(event)
        return event


class JsonlEventLog:
    def __init__(self, path: Path, *, phase: str = "session") -> None:
        self.path = path
        self.phase = phase

    def __call__(self, event: StatusEvent) -> None:
        row = {
            "ts": event.ts,
            "phase": self.phase,
            "event_type": event.kind.value,
            "severity": event.severity.value,
            "message": event.message,
            "payload": event.payload,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(row, ensure_ascii=True, default=str) + "\n")


class HealthFile:
    """
    Keeps a health JSON document current with the latest status line and stats.

    The optional `publish` hook mirrors the document into the control bridge so
    the HTTP surface serves the same payload.
    """

    def __init__(self, path: Path, *, publish: Callable[[dict[str, Any]], None] | None = None) -> None:
        self.path = path
        self._publish = publish
        self.payload: dict[str, Any] = {"state": "IDLE", "status": "", "severity": "default", "stats": {}}

    def __call__(self, event: StatusEvent) -> None:
        if event.kind is EventKind.STATS:
            self.payload["stats"] = dict(event.payload)
        elif event.kind not in QUIET_KINDS:
            self.payload["status"] = event.message
            self.payload["severity"] = event.severity.value
            self.payload["last_event"] = event.kind.value
        state = event.payload.get("state")
        if state:
            self.payload["state"] = str(state)
        self.payload["generated_at"] = utc_now_iso()
        write_json(self.path, self.payload)
        if self._publish is not None:
            self._publish(dict(self.payload))


class ConsoleSink:
    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream

    def __call__(self, event: StatusEvent) -> None:
        if event.kind in QUIET_KINDS:
            return
        line = json.dumps(
            {"ts": event.ts, "severity": event.severity.value, "kind": event.kind.value, "message": event.message},
            ensure_ascii=True,
        )
        print(line, file=self.stream, flush=True)


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[StatusEvent] = []

    def __call__(self, event: StatusEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.events]

    def of_kind(self, kind: EventKind) -> list[StatusEvent]:
        return [event for event in self.events if event.kind is kind]
