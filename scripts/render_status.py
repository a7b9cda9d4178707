#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


def _tail_events(path: Path, limit: int) -> list[dict[str, Any]]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except Exception:
        return []
    rows: list[dict[str, Any]] = []
    for line in lines[-max(0, limit):]:
        try:
            row = json.loads(line)
        except Exception:
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows


def _num(value: Any) -> str:
    try:
        return str(int(float(value)))
    except Exception:
        return "-"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _age_seconds(raw: Any) -> str:
    value = str(raw or "").strip()
    if not value:
        return "-"
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        age = max(0.0, (datetime.now(timezone.utc) - dt).total_seconds())
        return f"{age:.1f}s"
    except Exception:
        return "-"


def main() -> int:
    parser = argparse.ArgumentParser(description="Render human-readable PaintOverseer session status")
    parser.add_argument("--root", default="", help="Project root (defaults to repo root)")
    parser.add_argument("--events", type=int, default=5, help="Number of recent events to show")
    args = parser.parse_args()

    root = Path(args.root).expanduser().resolve() if str(args.root).strip() else Path(__file__).resolve().parents[1]
    health = _read_json(root / "runtime/status/health.json")
    events = _tail_events(root / "runtime/events/paint_events.jsonl", int(args.events))

    stats = health.get("stats") or {}
    challenge = stats.get("challenge") or {}
    remote = stats.get("remote") or {}
    recovery = stats.get("recovery") or {}

    print(f"PaintOverseer Status  {_iso_now()}")
    print("-" * 96)
    print(
        "Session    "
        f"state={health.get('state', '-')} severity={health.get('severity', '-')} "
        f"user={stats.get('user') or '-'}"
    )
    print(f"Status     {health.get('status') or '-'}")
    print(
        "Charges    "
        f"{_num(stats.get('charges'))}/{_num(stats.get('max_charges'))} "
        f"next={stats.get('cooldown', '-')} resume_target={stats.get('resume_target') or '-'}"
    )
    print(
        "Painting   "
        f"painted={_num(stats.get('painted_count'))} "
        f"fail_streak={_num(stats.get('fail_streak'))} "
        f"backoff_budget={_num(stats.get('backoff_budget'))}"
    )
    print(
        "Remote     "
        f"calls={_num(remote.get('calls'))} ok={_num(remote.get('ok'))} "
        f"banned={_num(remote.get('temporary_ban'))} unavailable={_num(remote.get('unavailable'))}"
    )
    print(
        "Challenge  "
        f"state={challenge.get('state', '-')} reason={challenge.get('last_reason', '-')} "
        f"attempts={_num(challenge.get('attempts'))}"
    )
    print(
        "Recovery   "
        f"recorded={_num(recovery.get('recoveries_recorded'))} "
        f"last={recovery.get('last_recovery_at') or '-'} "
        f"cooldown_left={recovery.get('cooldown_remaining_seconds', '-')}s"
    )
    print(f"Freshness  health={_age_seconds(health.get('generated_at'))}")
    for row in events:
        print(f"Event      {row.get('ts', '-')} [{row.get('severity', '-')}] {row.get('event_type', '-')}: {row.get('message', '')}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
