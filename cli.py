from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _domains(raw: str) -> list[str]:
    return [d.strip() for d in raw.split(",") if d.strip()]


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Self-healing fleet controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default="admin", help="Admin user for mutating commands")
    p.add_argument("--password", default=None, help="Admin password for mutating commands")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show fleet status")

    s_inst = sub.add_parser("instance", help="Show one instance")
    s_inst.add_argument("instance_id")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--level", default=None, help="INFO|WARN|ERROR|ALERT")

    s_cfg = sub.add_parser("configure", help="Change fleet configuration")
    s_cfg.add_argument("--capacity", type=int)
    s_cfg.add_argument("--domains", type=_domains, help="Comma separated, e.g. zone-a,zone-b")
    s_cfg.add_argument("--probe-interval-s", type=float)
    s_cfg.add_argument("--probe-timeout-s", type=float)
    s_cfg.add_argument("--grace-period-s", type=float)
    s_cfg.add_argument("--fail-threshold", type=int)
    s_cfg.add_argument("--pass-threshold", type=int)
    s_cfg.add_argument("--backoff-base-s", type=float)
    s_cfg.add_argument("--backoff-factor", type=float)
    s_cfg.add_argument("--backoff-max-attempts", type=int)
    s_cfg.add_argument("--history-size", type=int)
    s_cfg.add_argument("--health-path")
    s_cfg.add_argument("--call-timeout-s", type=float)
    s_cfg.add_argument("--reconcile-interval-s", type=float)

    s_drain = sub.add_parser("drain", help="Remove an instance (it will be replaced)")
    s_drain.add_argument("instance_id")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.password else None

    if args.cmd == "status":
        r = requests.get(f"{base}/status", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "instance":
        r = requests.get(f"{base}/instances/{args.instance_id}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.level:
            params["level"] = args.level
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "configure":
        keys = [
            "capacity",
            "domains",
            "probe_interval_s",
            "probe_timeout_s",
            "grace_period_s",
            "fail_threshold",
            "pass_threshold",
            "backoff_base_s",
            "backoff_factor",
            "backoff_max_attempts",
            "history_size",
            "health_path",
            "call_timeout_s",
            "reconcile_interval_s",
        ]
        payload = {k: getattr(args, k) for k in keys if getattr(args, k) is not None}
        if not payload:
            p.error("configure needs at least one option")
        r = requests.put(f"{base}/config", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "drain":
        r = requests.post(f"{base}/instances/{args.instance_id}/drain", auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
