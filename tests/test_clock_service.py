from __future__ import annotations

import unittest
from datetime import date

from sqlalchemy import func, select

from timekeeper.errors import (
    AlreadyActive,
    BreakAlreadyOpen,
    InvalidState,
    NoActiveSession,
    NoOpenBreak,
    NotAuthorized,
    NotFound,
    SessionExists,
    ValidationFailed,
)
from timekeeper.models import (
    ClockSession,
    DailyAttendanceRecord,
    DeviceType,
    LiveStatus,
    LiveStatusEntry,
    RecordSource,
    SessionBreak,
    SessionStatus,
    UserRole,
)
from timekeeper.services.clock import (
    clock_in,
    clock_out,
    create_manual_session,
    end_break,
    get_current_session,
    retract_manual_session,
    start_break,
    update_manual_session,
)
from timekeeper.services.leaves import apply_leave, approve_leave

from _support import UTC_POLICY, add_leave_type, add_user, make_session_factory, utc


class ClockServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.user = add_user(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def _count(self, model) -> int:  # type: ignore[no-untyped-def]
        return self.db.scalar(select(func.count()).select_from(model)) or 0

    def _live_entry(self) -> LiveStatusEntry:
        entry = self.db.scalar(
            select(LiveStatusEntry)
            .where(LiveStatusEntry.user_id == self.user.id)
            .execution_options(populate_existing=True)
        )
        assert entry is not None
        return entry

    def test_clock_in_creates_active_session_with_device_metadata(self) -> None:
        session = clock_in(
            self.db,
            user=self.user,
            device_type=DeviceType.KIOSK,
            location="HQ lobby",
            now_utc=utc(2026, 3, 2, 8, 55),
            policy=UTC_POLICY,
        )

        self.assertEqual(session.status, SessionStatus.ACTIVE)
        self.assertEqual(session.work_date, date(2026, 3, 2))
        self.assertEqual(session.device_type, DeviceType.KIOSK)
        self.assertEqual(session.location, "HQ lobby")
        self.assertEqual(self._live_entry().status, LiveStatus.IN)

    def test_second_clock_in_same_day_fails_without_new_row(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)

        with self.assertRaises(AlreadyActive):
            clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 5), policy=UTC_POLICY)

        self.assertEqual(self._count(ClockSession), 1)

    def test_clock_out_without_active_session_fails(self) -> None:
        with self.assertRaises(NoActiveSession):
            clock_out(self.db, user=self.user, now_utc=utc(2026, 3, 2, 17, 0), policy=UTC_POLICY)

    def test_break_then_clock_out_scenario(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        start_break(self.db, user=self.user, reason="Lunch", now_utc=utc(2026, 3, 2, 12, 0), policy=UTC_POLICY)
        self.assertEqual(self._live_entry().status, LiveStatus.BREAK)
        end_result = end_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 12, 30), policy=UTC_POLICY)
        self.assertEqual(end_result.session.break_minutes, 30)

        result = clock_out(self.db, user=self.user, now_utc=utc(2026, 3, 2, 19, 0), policy=UTC_POLICY)

        self.assertEqual(result.elapsed_minutes, 600)
        self.assertEqual(result.session.status, SessionStatus.COMPLETED)
        self.assertEqual(result.session.break_minutes, 30)
        self.assertEqual(result.session.work_minutes, 570)
        self.assertTrue(result.metrics.is_overtime)
        self.assertEqual(result.metrics.overtime_minutes, 30)
        self.assertIsNotNone(result.record)
        self.assertEqual(result.record.work_minutes, 570)
        self.assertEqual(result.record.overtime_minutes, 30)
        self.assertEqual(result.record.source, RecordSource.CLOCK)
        self.assertEqual(self._live_entry().status, LiveStatus.OUT)

    def test_only_one_open_break_per_session(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 0), policy=UTC_POLICY)

        with self.assertRaises(BreakAlreadyOpen):
            start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 5), policy=UTC_POLICY)

        self.assertEqual(self._count(SessionBreak), 1)

    def test_end_break_without_open_break_fails(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)

        with self.assertRaises(NoOpenBreak):
            end_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 0), policy=UTC_POLICY)

    def test_break_without_active_session_fails(self) -> None:
        with self.assertRaises(NoActiveSession):
            start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 0), policy=UTC_POLICY)

    def test_break_on_someone_elses_session_is_not_found(self) -> None:
        other = add_user(self.db, full_name="Bo Other")
        session = clock_in(self.db, user=other, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)

        with self.assertRaises(NotFound):
            start_break(
                self.db,
                user=self.user,
                session_id=session.id,
                now_utc=utc(2026, 3, 2, 10, 0),
                policy=UTC_POLICY,
            )

    def test_cumulative_break_minutes_sum_all_closed_breaks(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 0), policy=UTC_POLICY)
        end_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 15), policy=UTC_POLICY)
        start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 12, 0), policy=UTC_POLICY)
        result = end_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 12, 40), policy=UTC_POLICY)

        self.assertEqual(result.break_interval.duration_minutes, 40)
        self.assertEqual(result.session.break_minutes, 55)

    def test_open_break_is_force_closed_and_counted_at_clock_out(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 16, 30), policy=UTC_POLICY)

        result = clock_out(
            self.db,
            user=self.user,
            now_utc=utc(2026, 3, 2, 17, 0),
            policy=UTC_POLICY,
            force_close_open_break=True,
        )

        self.assertIsNotNone(result.forced_break)
        self.assertTrue(result.forced_break.closed_by_clock_out)
        self.assertEqual(result.forced_break.duration_minutes, 30)
        self.assertEqual(result.session.break_minutes, 30)
        self.assertEqual(result.session.work_minutes, 450)

    def test_open_break_left_open_when_force_close_disabled(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        start_break(self.db, user=self.user, now_utc=utc(2026, 3, 2, 16, 30), policy=UTC_POLICY)

        result = clock_out(
            self.db,
            user=self.user,
            now_utc=utc(2026, 3, 2, 17, 0),
            policy=UTC_POLICY,
            force_close_open_break=False,
        )

        self.assertIsNone(result.forced_break)
        self.assertEqual(result.session.break_minutes, 0)
        self.assertEqual(result.session.work_minutes, 480)

        late_end = end_break(
            self.db,
            user=self.user,
            session_id=result.session.id,
            now_utc=utc(2026, 3, 2, 16, 50),
            policy=UTC_POLICY,
        )
        self.assertEqual(late_end.session.break_minutes, 20)
        self.assertEqual(late_end.session.work_minutes, 460)
        record = self.db.scalar(
            select(DailyAttendanceRecord)
            .where(DailyAttendanceRecord.user_id == self.user.id)
            .execution_options(populate_existing=True)
        )
        self.assertEqual(record.work_minutes, 460)
        self.assertTrue(record.is_early_check_out)

    def test_multiple_sessions_in_one_day_are_aggregated(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 8, 0), policy=UTC_POLICY)
        clock_out(self.db, user=self.user, now_utc=utc(2026, 3, 2, 12, 0), policy=UTC_POLICY)
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 13, 0), policy=UTC_POLICY)
        result = clock_out(self.db, user=self.user, now_utc=utc(2026, 3, 2, 18, 0), policy=UTC_POLICY)

        record = result.record
        self.assertEqual(record.session_count, 2)
        self.assertEqual(record.work_minutes, 540)
        self.assertEqual(record.clock_in_at.replace(tzinfo=None), utc(2026, 3, 2, 8, 0).replace(tzinfo=None))
        self.assertEqual(record.clock_out_at.replace(tzinfo=None), utc(2026, 3, 2, 18, 0).replace(tzinfo=None))
        self.assertFalse(record.is_late_check_in)
        self.assertEqual(self._count(DailyAttendanceRecord), 1)

    def test_record_snapshots_user_role(self) -> None:
        manager = add_user(self.db, full_name="Mo Manager", role=UserRole.MANAGER)
        clock_in(self.db, user=manager, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        result = clock_out(self.db, user=manager, now_utc=utc(2026, 3, 2, 17, 0), policy=UTC_POLICY)

        self.assertEqual(result.record.user_role, UserRole.MANAGER)

    def test_get_current_session_returns_active_session_only(self) -> None:
        self.assertIsNone(get_current_session(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY))
        session = clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)

        current = get_current_session(self.db, user=self.user, now_utc=utc(2026, 3, 2, 10, 0), policy=UTC_POLICY)
        self.assertEqual(current.id, session.id)

        clock_out(self.db, user=self.user, now_utc=utc(2026, 3, 2, 17, 0), policy=UTC_POLICY)
        self.assertIsNone(get_current_session(self.db, user=self.user, now_utc=utc(2026, 3, 2, 17, 5), policy=UTC_POLICY))


class ManualCorrectionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.user = add_user(self.db)
        self.admin = add_user(self.db, full_name="Ann Admin", role=UserRole.ADMIN)
        self.manager = add_user(self.db, full_name="Mo Manager", role=UserRole.MANAGER)

    def tearDown(self) -> None:
        self.db.close()

    def _create(self, actor=None, **kwargs):  # type: ignore[no-untyped-def]
        return create_manual_session(
            self.db,
            actor=actor or self.manager,
            user_id=kwargs.pop("user_id", self.user.id),
            work_date=kwargs.pop("work_date", date(2026, 3, 2)),
            clock_in_at=kwargs.pop("clock_in_at", utc(2026, 3, 2, 9, 0)),
            clock_out_at=kwargs.pop("clock_out_at", utc(2026, 3, 2, 17, 0)),
            reason=kwargs.pop("reason", "Forgot to clock"),
            policy=UTC_POLICY,
        )

    def _records(self) -> list[DailyAttendanceRecord]:
        return list(
            self.db.scalars(
                select(DailyAttendanceRecord).execution_options(populate_existing=True)
            ).all()
        )

    def test_manager_creates_manual_entry_and_record_is_derived(self) -> None:
        result = self._create()

        self.assertTrue(result.session.is_manual)
        self.assertEqual(result.session.status, SessionStatus.COMPLETED)
        self.assertEqual(result.session.source, RecordSource.CLOCK)
        self.assertEqual(result.session.corrected_by_id, self.manager.id)
        self.assertEqual(result.session.correction_reason, "Forgot to clock")
        self.assertEqual(result.session.work_minutes, 480)
        self.assertEqual(result.record.source, RecordSource.CLOCK)
        self.assertEqual(result.record.work_minutes, 480)
        self.assertIsNone(result.replaced_source)

    def test_manual_entry_conflicts_with_existing_clock_session(self) -> None:
        clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)
        clock_out(self.db, user=self.user, now_utc=utc(2026, 3, 2, 12, 0), policy=UTC_POLICY)

        with self.assertRaises(SessionExists):
            self._create()

        self.assertEqual(self.db.scalar(select(func.count()).select_from(ClockSession)), 1)

    def test_manual_entry_rejects_bad_ordering_and_wrong_day(self) -> None:
        with self.assertRaises(ValidationFailed):
            self._create(clock_in_at=utc(2026, 3, 2, 17, 0), clock_out_at=utc(2026, 3, 2, 9, 0))
        with self.assertRaises(ValidationFailed):
            self._create(clock_in_at=utc(2026, 3, 2, 9, 0), clock_out_at=utc(2026, 3, 2, 9, 0))
        with self.assertRaises(ValidationFailed):
            self._create(work_date=date(2026, 3, 3))
        with self.assertRaises(ValidationFailed):
            self._create(reason="   ")

        self.assertEqual(self.db.scalar(select(func.count()).select_from(ClockSession)), 0)

    def test_role_checks_for_create_update_and_retract(self) -> None:
        with self.assertRaises(NotAuthorized):
            self._create(actor=self.user)

        session_id = self._create().session.id
        with self.assertRaises(NotAuthorized):
            update_manual_session(
                self.db,
                actor=self.manager,
                session_id=session_id,
                clock_out_at=utc(2026, 3, 2, 18, 0),
                reason="Stayed late",
                policy=UTC_POLICY,
            )
        with self.assertRaises(NotAuthorized):
            retract_manual_session(self.db, actor=self.manager, session_id=session_id, policy=UTC_POLICY)

    def test_unknown_user_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self._create(user_id=9999)

    def test_update_rederives_daily_record(self) -> None:
        created = self._create()

        result = update_manual_session(
            self.db,
            actor=self.admin,
            session_id=created.session.id,
            clock_out_at=utc(2026, 3, 2, 18, 0),
            reason="Stayed late",
            policy=UTC_POLICY,
        )

        self.assertEqual(result.previous["work_minutes"], 480)
        self.assertEqual(result.session.work_minutes, 540)
        self.assertEqual(result.session.corrected_by_id, self.admin.id)
        self.assertEqual(result.record.work_minutes, 540)
        self.assertEqual([record.work_minutes for record in self._records()], [540])

    def test_update_rejects_clock_out_before_clock_in(self) -> None:
        created = self._create()

        with self.assertRaises(ValidationFailed):
            update_manual_session(
                self.db,
                actor=self.admin,
                session_id=created.session.id,
                clock_out_at=utc(2026, 3, 2, 8, 0),
                reason="Typo",
                policy=UTC_POLICY,
            )

        self.assertEqual(self._records()[0].work_minutes, 480)

    def test_active_session_cannot_be_corrected(self) -> None:
        session = clock_in(self.db, user=self.user, now_utc=utc(2026, 3, 2, 9, 0), policy=UTC_POLICY)

        with self.assertRaises(InvalidState):
            update_manual_session(
                self.db,
                actor=self.admin,
                session_id=session.id,
                clock_in_at=utc(2026, 3, 2, 8, 0),
                reason="Early start",
                policy=UTC_POLICY,
            )

    def test_retract_removes_record_and_is_final(self) -> None:
        created = self._create()

        result = retract_manual_session(
            self.db,
            actor=self.admin,
            session_id=created.session.id,
            reason="Entered for wrong person",
            policy=UTC_POLICY,
        )

        self.assertIsNotNone(result.session.retracted_at)
        self.assertIsNone(result.record)
        self.assertEqual(result.replaced_source, RecordSource.CLOCK)
        self.assertEqual(self._records(), [])
        with self.assertRaises(NotFound):
            retract_manual_session(self.db, actor=self.admin, session_id=created.session.id, policy=UTC_POLICY)

        recreated = self._create()
        self.assertNotEqual(recreated.session.id, created.session.id)

    def test_manual_entry_on_leave_day_replaces_placeholder(self) -> None:
        annual = add_leave_type(self.db)
        leave_request = apply_leave(
            self.db,
            user=self.user,
            leave_type_id=annual.id,
            start_date=date(2026, 3, 2),
            end_date=date(2026, 3, 2),
            reason="Doctor",
            policy=UTC_POLICY,
        )
        approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        result = self._create()

        self.assertEqual(result.replaced_source, RecordSource.LEAVE_PLACEHOLDER)
        self.assertEqual(result.record.source, RecordSource.CLOCK)
        self.assertEqual(result.record.work_minutes, 480)


if __name__ == "__main__":
    unittest.main()
