from __future__ import annotations

import unittest

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from timekeeper.audit import log_audit
from timekeeper.models import AuditLog

from _support import make_session_factory


class _FailingCommitDB:
    def __init__(self) -> None:
        self.rows: list[object] = []
        self.rolled_back = False

    def add(self, obj: object) -> None:
        self.rows.append(obj)

    def commit(self) -> None:
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk full"))

    def rollback(self) -> None:
        self.rolled_back = True


class AuditLogTests(unittest.TestCase):
    def test_write_failure_is_reported_not_raised(self) -> None:
        fake_db = _FailingCommitDB()

        with self.assertLogs("timekeeper.audit", level="ERROR") as captured:
            written = log_audit(
                fake_db,  # type: ignore[arg-type]
                action="clock_in",
                actor_id=3,
                entity_type="clock_session",
                entity_id=10,
                request_id="req-1",
            )

        self.assertFalse(written)
        self.assertTrue(fake_db.rolled_back)
        self.assertIn("audit_log_write_failed", captured.output[0])

    def test_entry_is_persisted_with_request_context(self) -> None:
        factory = make_session_factory()
        db = factory()
        self.addCleanup(db.close)

        written = log_audit(
            db,
            action="leave_approve",
            actor_id=1,
            entity_type="leave_request",
            entity_id=55,
            affected_user_id=2,
            old_values={"status": "PENDING"},
            new_values={"status": "APPROVED", "debited_minutes": 480},
            ip="10.0.0.5",
            user_agent="pytest",
            request_id="req-2",
        )

        self.assertTrue(written)
        entry = db.scalar(select(AuditLog))
        self.assertEqual(entry.action, "leave_approve")
        self.assertEqual(entry.actor_id, "1")
        self.assertEqual(entry.entity_id, "55")
        self.assertEqual(entry.affected_user_id, 2)
        self.assertEqual(entry.new_values["debited_minutes"], 480)
        self.assertEqual(entry.request_id, "req-2")


if __name__ == "__main__":
    unittest.main()
