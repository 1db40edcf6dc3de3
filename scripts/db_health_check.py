#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import create_engine, inspect, text

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from timekeeper.settings import get_settings

EXPECTED_HEAD = "0002_manual_corrections"


def run() -> dict:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        if "clock_sessions" in tables:
            duplicate_active = conn.execute(
                text(
                    """
                    select user_id, work_date, count(*)
                    from clock_sessions
                    where status = 'ACTIVE'
                    group by user_id, work_date
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_active_sessions",
                "fail" if duplicate_active else "ok",
                {"rows": [[row[0], str(row[1]), row[2]] for row in duplicate_active]},
            )

            missing_records = conn.execute(
                text(
                    """
                    select s.user_id, s.work_date
                    from clock_sessions s
                    left join daily_attendance_records r
                      on r.user_id = s.user_id and r.work_date = s.work_date
                    where s.status = 'COMPLETED'
                      and s.retracted_at is null
                      and r.id is null
                    group by s.user_id, s.work_date
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "completed_session_without_daily_record",
                "warn" if missing_records else "ok",
                {"sample": [[row[0], str(row[1])] for row in missing_records], "fix": "rebuild_projections.py"},
            )

            orphan_placeholders = conn.execute(
                text(
                    """
                    select s.id
                    from clock_sessions s
                    join leave_requests l on l.id = s.leave_request_id
                    where s.source = 'LEAVE_PLACEHOLDER'
                      and s.retracted_at is null
                      and l.status <> 'APPROVED'
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "placeholder_for_unapproved_leave",
                "fail" if orphan_placeholders else "ok",
                {"sample_ids": [row[0] for row in orphan_placeholders]},
            )

        if "session_breaks" in tables:
            duplicate_open_breaks = conn.execute(
                text(
                    """
                    select session_id, count(*)
                    from session_breaks
                    where break_end_at is null
                    group by session_id
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "duplicate_open_breaks",
                "fail" if duplicate_open_breaks else "ok",
                {"rows": [list(row) for row in duplicate_open_breaks]},
            )

        if "leave_balances" in tables:
            overdrawn = conn.execute(
                text(
                    """
                    select id, user_id, year, used_minutes, total_allocated_minutes
                    from leave_balances
                    where used_minutes > total_allocated_minutes or used_minutes < 0
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "leave_balance_out_of_range",
                "fail" if overdrawn else "ok",
                {"rows": [list(row) for row in overdrawn]},
            )

    engine.dispose()
    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
