#!/usr/bin/env python3
"""Operator tool for the legacy -> relational progress migration.

RUN:
  python scripts/progress_migration.py status
  python scripts/progress_migration.py advance --until-done
  python scripts/progress_migration.py reconcile
  python scripts/progress_migration.py set-state done

Talks to the admin endpoints of a running service
(uvicorn app.main:app --port 8000), so it sees the same database and
takes the same migration lock as the worker.
"""

from __future__ import annotations

import argparse
import sys
import time

import httpx

DEFAULT_BASE_URL = "http://localhost:8000"
_PREFIX = "/admin/progress-migration"


def _print_status(status: dict) -> None:
    print(f"  state:        {status['state']}")
    print(f"  phase:        {status['phase']}")
    print(f"  cursor:       {status['cursor']}")
    print(f"  copied total: {status['copied_total']}")
    if status.get("reconciled_at"):
        print(f"  reconciled:   {status['reconciled_at']}")


def _print_report(report: dict) -> None:
    verdict = "ok" if report["ok"] else "MISMATCH"
    print(f"Reconciliation: {verdict} (tolerance {report['tolerance']})")
    for c in report["counts"]:
        print(f"  {c['kind']:<7} legacy={c['legacy']:>8} relational={c['relational']:>8}")


def cmd_status(client: httpx.Client, _args: argparse.Namespace) -> int:
    resp = client.get(_PREFIX)
    resp.raise_for_status()
    print("Migration status")
    _print_status(resp.json())
    return 0


def cmd_reconcile(client: httpx.Client, _args: argparse.Namespace) -> int:
    resp = client.get(f"{_PREFIX}/reconciliation")
    resp.raise_for_status()
    report = resp.json()
    _print_report(report)
    return 0 if report["ok"] else 1


def cmd_advance(client: httpx.Client, args: argparse.Namespace) -> int:
    while True:
        resp = client.post(f"{_PREFIX}/advance")
        resp.raise_for_status()
        run = resp.json()
        if not run["lock_acquired"]:
            print("Another runner holds the migration lock")
        else:
            print(
                f"Advanced {run['batches']} batches, copied {run['copied']} records"
                + (" (batch failed, will retry)" if run["failed"] else "")
            )
        if run["reconciliation"] is not None:
            _print_report(run["reconciliation"])

        status = run["status"]
        finished = status["state"] == "done" or status["phase"] == "reconciled"
        if not args.until_done or finished:
            _print_status(status)
            return 0
        time.sleep(args.pause)


def cmd_set_state(client: httpx.Client, args: argparse.Namespace) -> int:
    resp = client.put(f"{_PREFIX}/state", json={"state": args.state})
    if resp.status_code == 409:
        print(f"Refused: {resp.json()['detail']}")
        return 1
    resp.raise_for_status()
    print(f"Migration state set to {args.state}")
    _print_status(resp.json())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="show the persisted migration status").set_defaults(
        func=cmd_status
    )
    sub.add_parser("reconcile", help="compare per-kind record counts").set_defaults(
        func=cmd_reconcile
    )

    advance = sub.add_parser("advance", help="copy the next batches")
    advance.add_argument(
        "--until-done",
        action="store_true",
        help="keep advancing until reconciled or cut over",
    )
    advance.add_argument("--pause", type=float, default=1.0, help="seconds between runs")
    advance.set_defaults(func=cmd_advance)

    set_state = sub.add_parser("set-state", help="change the migration flag")
    set_state.add_argument("state", choices=["not_started", "in_progress", "done"])
    set_state.set_defaults(func=cmd_set_state)

    args = parser.parse_args(argv)
    try:
        with httpx.Client(base_url=args.base_url, timeout=60) as client:
            return args.func(client, args)
    except httpx.HTTPError as e:
        print(f"Request failed: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
