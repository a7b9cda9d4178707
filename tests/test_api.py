from __future__ import annotations

import json
import unittest
import urllib.request

from paint_overseer.api import ControlBridge, start_api_server


class ControlApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.bridge = ControlBridge()
        self.server, self.thread = start_api_server(self.bridge, host="127.0.0.1", port=0)
        self.base = f"http://127.0.0.1:{self.server.server_address[1]}"

    def tearDown(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)

    def _post(self, path: str, payload: dict[str, object]) -> dict[str, object]:
        req = urllib.request.Request(
            url=self.base + path,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with urllib.request.urlopen(req, timeout=5) as resp:
            return json.loads(resp.read().decode("utf-8"))

    def test_start_stop_and_health(self) -> None:
        self.bridge.update_health({"state": "WAITING"})

        self._post("/control/start", {})
        self.assertTrue(self.bridge.is_running())

        reply = self._post("/control/pause", {"reason": "operator"})
        self.assertEqual(reply["reason"], "operator")
        self.assertTrue(self.bridge.is_stop_requested())
        self.assertFalse(self.bridge.is_running())

        self._post("/control/resume", {})
        self.assertTrue(self.bridge.is_running())

        with urllib.request.urlopen(self.base + "/health", timeout=5) as resp:
            health = json.loads(resp.read().decode("utf-8"))
        self.assertEqual(health["state"], "WAITING")
        self.assertEqual(health["control"]["running"], True)


class ControlBridgeTests(unittest.TestCase):
    def test_blank_stop_reason_defaults(self) -> None:
        bridge = ControlBridge()
        bridge.request_stop("  ")
        self.assertEqual(bridge.snapshot()["stop_reason"], "manual_stop")
        bridge.request_start()
        self.assertEqual(bridge.snapshot(), {"running": True, "stop_requested": False, "stop_reason": ""})


if __name__ == "__main__":
    unittest.main()
