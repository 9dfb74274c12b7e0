#!/usr/bin/env python3
"""Command-line interface to the study-room reconciliation logic."""
from __future__ import annotations

import argparse
import json
import logging
import traceback
from typing import Any, Dict

import pandas as pd

from studyroom import logic


def _read_snapshot(path: str) -> tuple[list, list]:
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError("Snapshot file must hold a JSON object")
    return list(payload.get("reservations") or []), list(payload.get("attendance") or [])


def _now(args: argparse.Namespace) -> pd.Timestamp:
    if args.now:
        return pd.Timestamp(args.now)
    return pd.Timestamp.now(tz=args.tz).tz_localize(None)


def handle_reconcile(args: argparse.Namespace) -> Dict[str, Any]:
    reservations, events = _read_snapshot(args.snapshot)
    now = _now(args)
    records = logic.reconcile(reservations, events, now, logic.TIME_SLOTS, args.grace_minutes, args.tz)
    if args.query or args.slot != "all":
        records = logic.filter_records(records, args.query, args.slot, today=now)
    return {"ok": True, "records": records}


def handle_summary(args: argparse.Namespace) -> Dict[str, Any]:
    reservations, events = _read_snapshot(args.snapshot)
    records = logic.reconcile(reservations, events, _now(args), logic.TIME_SLOTS, args.grace_minutes, args.tz)
    summaries = logic.filter_summaries(logic.summarize(records, args.tz), args.query)
    return {"ok": True, "summaries": summaries}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Study-room attendance CLI adapter")
    parser.add_argument("--log-level", default="WARNING")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("reconcile", "Per-reservation study records"), ("summary", "Mileage leaderboard")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--snapshot", required=True, help="Path to JSON snapshot {reservations, attendance}")
        p.add_argument("--now", help="Evaluation time (default: current local time)")
        p.add_argument("--tz", default=logic.DEFAULT_TZ, help="Local timezone")
        p.add_argument("--grace-minutes", type=int, default=logic.GRACE_MINUTES_DEFAULT)
        p.add_argument("--query", default="", help="Name or student id substring")
        if name == "reconcile":
            p.add_argument("--slot", default="all", help="Slot id filter")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "reconcile":
            payload = handle_reconcile(args)
        elif args.command == "summary":
            payload = handle_summary(args)
        else:
            raise ValueError(f"Unsupported command: {args.command}")
        print(json.dumps(payload, ensure_ascii=False, default=str))
        return 0
    except Exception as exc:  # pragma: no cover - best effort error reporting
        err_payload = {
            "ok": False,
            "error": str(exc),
            "traceback": traceback.format_exc(),
        }
        print(json.dumps(err_payload, ensure_ascii=False))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
