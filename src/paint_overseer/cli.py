from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
import time
import urllib.request

from .api import ControlBridge, start_api_server
from .challenge import ChallengeProbe, NullChallengeProbe
from .config import AppConfig, load_config
from .events import ConsoleSink, read_json
from .host import CommandActionSink, CommandChallengeProbe, SessionReloadRequested, raise_reload, reload_process
from .session import build_session, intent_store, run_simulation
from .settings import SETTING_KEYS, SettingsStore
from .simulator import SimulationProfile


def _default_config_path() -> Path:
    here = Path(__file__).resolve()
    return here.parents[2] / "config" / "settings.toml"


def _post_json(url: str, payload: dict[str, object]) -> dict[str, object]:
    data = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    req = urllib.request.Request(url=url, data=data, method="POST", headers={"Content-Type": "application/json"})
    with urllib.request.urlopen(req, timeout=5) as resp:  # noqa: S310
        return json.loads(resp.read().decode("utf-8"))


def _get_json(url: str) -> dict[str, object]:
    with urllib.request.urlopen(url, timeout=5) as resp:  # noqa: S310
        return json.loads(resp.read().decode("utf-8"))


def _host_probe(cfg: AppConfig) -> ChallengeProbe:
    if cfg.host.challenge_detect_command.strip():
        return CommandChallengeProbe(cfg.host)
    return NullChallengeProbe()


def _run_session(cfg: AppConfig, bridge: ControlBridge, *, max_cycles: int, quiet: bool) -> dict[str, object]:
    session = build_session(
        cfg,
        sink=CommandActionSink(cfg.host),
        probe=_host_probe(cfg),
        bridge=bridge,
        reload_hook=raise_reload,
        sinks=[] if quiet else [ConsoleSink(sys.stderr)],
    )
    result = session.controller.run(max_cycles=max_cycles)
    return result.to_dict()


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    intent = intent_store(cfg).consume()
    bridge = ControlBridge()
    server = None
    if not bool(args.no_api):
        server, _ = start_api_server(bridge, host=args.host, port=args.port)
    try:
        result = _run_session(cfg, bridge, max_cycles=int(args.max_cycles), quiet=bool(args.quiet))
    except SessionReloadRequested as exc:
        if server is not None:
            server.shutdown()
            server.server_close()
        print(json.dumps({"reload": True, "reason": exc.reason}, indent=2))
        reload_process(cfg.host, sys.argv[1:])
        return 3
    except KeyboardInterrupt:
        return 0
    finally:
        if server is not None:
            try:
                server.shutdown()
                server.server_close()
            except Exception:  # noqa: BLE001
                pass
    print(json.dumps({"recovery_intent": intent.to_dict(), **result}, indent=2))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    intent = intent_store(cfg).consume()
    bridge = ControlBridge()
    server, _ = start_api_server(bridge, host=args.host, port=args.port)
    print(json.dumps({"listening": f"http://{args.host}:{args.port}", "recovery_intent": intent.to_dict()}, indent=2))
    if intent.auto_start:
        bridge.request_start()
    try:
        while True:
            if not bridge.is_running():
                time.sleep(1.0)
                continue
            result = _run_session(cfg, bridge, max_cycles=0, quiet=bool(args.quiet))
            print(json.dumps(result, ensure_ascii=True))
    except SessionReloadRequested as exc:
        server.shutdown()
        server.server_close()
        print(json.dumps({"reload": True, "reason": exc.reason}, indent=2))
        reload_process(cfg.host, sys.argv[1:])
        return 3
    except KeyboardInterrupt:
        return 0
    finally:
        try:
            server.shutdown()
            server.server_close()
        except Exception:  # noqa: BLE001
            pass


def cmd_simulate(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    profile = SimulationProfile(
        count=int(args.count),
        max_count=int(args.max_count),
        reject_rate=float(args.reject_rate),
        expose_local_count=not bool(args.no_local_count),
        challenge_after_actions=int(args.challenge_after),
        challenge_solvable=not bool(args.unsolvable),
        seed=int(args.seed),
    )
    payload = run_simulation(cfg, profile=profile, max_cycles=int(args.max_cycles))
    print(json.dumps(payload, indent=2))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    path = cfg.resolve(cfg.runtime.status_file)
    if not path.exists():
        print(json.dumps({"status": "missing", "path": str(path)}, indent=2))
        return 1
    print(json.dumps(read_json(path), indent=2))
    return 0


def cmd_settings(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    store = SettingsStore(cfg.resolve(cfg.runtime.settings_file))
    if args.settings_action == "show":
        settings = store.load()
        effective = settings.apply_to(cfg.controller)
        print(json.dumps({
            "overrides": settings.to_dict(),
            "effective": {key: getattr(effective, key) for key in SETTING_KEYS},
        }, indent=2))
        return 0
    if args.settings_action == "set":
        try:
            updated = store.update(str(args.key), str(args.value))
        except ValueError as exc:
            print(json.dumps({"ok": False, "error": str(exc)}, indent=2))
            return 2
        print(json.dumps({"ok": True, "overrides": updated.to_dict()}, indent=2))
        return 0
    raise SystemExit(f"unknown settings action {args.settings_action}")


def cmd_intent(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    store = intent_store(cfg)
    if args.intent_action == "peek":
        print(json.dumps({"path": str(store.path), "intent": read_json(store.path) or None}, indent=2))
        return 0
    if args.intent_action == "consume":
        result = store.consume()
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.auto_start else 1
    raise SystemExit(f"unknown intent action {args.intent_action}")


def cmd_control(args: argparse.Namespace) -> int:
    base = f"http://{args.host}:{args.port}"
    if args.control_action == "start":
        payload = _post_json(f"{base}/control/start", {})
    elif args.control_action == "stop":
        payload = _post_json(f"{base}/control/stop", {"reason": args.reason})
    elif args.control_action == "health":
        payload = _get_json(f"{base}/health")
    else:
        raise SystemExit(f"unknown control action {args.control_action}")
    print(json.dumps(payload, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PaintOverseer CLI")
    parser.add_argument("--config", default=str(_default_config_path()))
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Start a painting session immediately")
    p_run.add_argument("--max-cycles", type=int, default=0, help="0 means run until stopped")
    p_run.add_argument("--host", default="127.0.0.1")
    p_run.add_argument("--port", type=int, default=8797)
    p_run.add_argument("--no-api", action="store_true", help="Disable local HTTP control server")
    p_run.add_argument("--quiet", action="store_true", help="Do not echo status events to stderr")
    p_run.set_defaults(func=cmd_run)

    p_serve = sub.add_parser("serve", help="Idle until started over the control API or by a fresh recovery intent")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8797)
    p_serve.add_argument("--quiet", action="store_true", help="Do not echo status events to stderr")
    p_serve.set_defaults(func=cmd_serve)

    p_sim = sub.add_parser("simulate", help="Run a session against the in-process simulated service")
    p_sim.add_argument("--max-cycles", type=int, default=20)
    p_sim.add_argument("--count", type=int, default=10, help="Initial charges")
    p_sim.add_argument("--max-count", type=int, default=80)
    p_sim.add_argument("--reject-rate", type=float, default=0.0, help="Share of silently rejected paints")
    p_sim.add_argument("--no-local-count", action="store_true", help="Hide the local charge counter")
    p_sim.add_argument("--challenge-after", type=int, default=0, help="Show a challenge after N actions")
    p_sim.add_argument("--unsolvable", action="store_true", help="Challenge never clears automatically")
    p_sim.add_argument("--seed", type=int, default=7)
    p_sim.set_defaults(func=cmd_simulate)

    p_status = sub.add_parser("status", help="Read latest health status file")
    p_status.set_defaults(func=cmd_status)

    p_settings = sub.add_parser("settings", help="Show or change persisted settings")
    p_settings.add_argument("settings_action", choices=["show", "set"])
    p_settings.add_argument("key", nargs="?", default="", choices=["", *SETTING_KEYS])
    p_settings.add_argument("value", nargs="?", default="")
    p_settings.set_defaults(func=cmd_settings)

    p_intent = sub.add_parser("intent", help="Inspect or consume the recovery intent record")
    p_intent.add_argument("intent_action", choices=["peek", "consume"])
    p_intent.set_defaults(func=cmd_intent)

    p_control = sub.add_parser("control", help="Send local control commands")
    p_control.add_argument("control_action", choices=["start", "stop", "health"])
    p_control.add_argument("--host", default="127.0.0.1")
    p_control.add_argument("--port", type=int, default=8797)
    p_control.add_argument("--reason", default="manual_stop")
    p_control.set_defaults(func=cmd_control)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
