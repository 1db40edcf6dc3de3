#!/usr/bin/env python
"""Recompute daily attendance records and live status entries from stored sessions."""
from __future__ import annotations

import argparse
import json
import sys
from datetime import date, datetime, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from timekeeper.audit import log_audit
from timekeeper.db import SessionLocal
from timekeeper.logging_utils import setup_json_logging
from timekeeper.services.daily_records import rebuild_daily_records
from timekeeper.services.live_status import rebuild_live_status


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--target", choices=("daily_records", "live_status", "all"), default="all")
    parser.add_argument("--user-id", type=int, default=None)
    parser.add_argument("--start-date", type=date.fromisoformat, default=None)
    parser.add_argument("--end-date", type=date.fromisoformat, default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    setup_json_logging(service="timekeeper-rebuild")
    args = _parse_args(argv)
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "target": args.target,
        "user_id": args.user_id,
        "daily_records": 0,
        "live_status_entries": 0,
    }

    db = SessionLocal()
    try:
        if args.target in ("daily_records", "all"):
            summary["daily_records"] = rebuild_daily_records(
                db,
                user_id=args.user_id,
                start_date=args.start_date,
                end_date=args.end_date,
            )
        if args.target in ("live_status", "all"):
            summary["live_status_entries"] = rebuild_live_status(db, user_id=args.user_id)
        log_audit(
            db,
            action="projection_rebuild",
            actor_id="cli",
            entity_type="projection",
            entity_id=args.target,
            affected_user_id=args.user_id,
            new_values={
                "start_date": args.start_date.isoformat() if args.start_date else None,
                "end_date": args.end_date.isoformat() if args.end_date else None,
                "daily_records": summary["daily_records"],
                "live_status_entries": summary["live_status_entries"],
            },
        )
    finally:
        db.close()

    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
