from __future__ import annotations

from dataclasses import dataclass, field
import json
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import threading
from typing import Any


@dataclass
class ControlBridge:
    """Lock-protected control flags shared between the HTTP thread and the session loop."""

    _lock: threading.Lock = field(default_factory=threading.Lock)
    running: bool = False
    stop_requested: bool = False
    stop_reason: str = ""
    health_payload: dict[str, Any] = field(default_factory=dict)

    def request_start(self) -> None:
        with self._lock:
            self.running = True
            self.stop_requested = False
            self.stop_reason = ""

    def request_stop(self, reason: str = "manual_stop") -> None:
        with self._lock:
            self.running = False
            self.stop_requested = True
            self.stop_reason = reason.strip() or "manual_stop"

    def is_stop_requested(self) -> bool:
        with self._lock:
            return bool(self.stop_requested)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self.running) and not bool(self.stop_requested)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "running": bool(self.running),
                "stop_requested": bool(self.stop_requested),
                "stop_reason": self.stop_reason,
            }

    def update_health(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self.health_payload = dict(payload)

    def get_health(self) -> dict[str, Any]:
        with self._lock:
            return dict(self.health_payload)


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0:
        return {}
    raw = handler.rfile.read(length)
    try:
        data = json.loads(raw.decode("utf-8"))
    except Exception:  # noqa: BLE001
        return {}
    return data if isinstance(data, dict) else {}


def _handler_factory(bridge: ControlBridge):
    class Handler(BaseHTTPRequestHandler):
        def _send(self, code: int, payload: dict[str, Any]) -> None:
            body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:  # noqa: N802
            if self.path == "/health":
                self._send(200, {**bridge.get_health(), "control": bridge.snapshot()})
                return
            self._send(404, {"error": "not_found"})

        def do_POST(self) -> None:  # noqa: N802
            if self.path in {"/control/start", "/control/resume"}:
                bridge.request_start()
                self._send(200, {"ok": True, "action": "start"})
                return
            if self.path in {"/control/stop", "/control/pause"}:
                payload = _read_json_body(self)
                reason = str(payload.get("reason", "manual_stop"))
                bridge.request_stop(reason)
                self._send(200, {"ok": True, "action": "stop", "reason": reason})
                return
            self._send(404, {"error": "not_found"})

        def log_message(self, format: str, *args: Any) -> None:
            _ = format
            _ = args
            return

    return Handler


def start_api_server(bridge: ControlBridge, *, host: str = "127.0.0.1", port: int = 8797) -> tuple[ThreadingHTTPServer, threading.Thread]:
    server = ThreadingHTTPServer((host, port), _handler_factory(bridge))
    thread = threading.Thread(target=server.serve_forever, name="control-api", daemon=True)
    thread.start()
    return server, thread
