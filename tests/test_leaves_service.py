from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from sqlalchemy import func, select

from timekeeper.errors import InsufficientBalance, InvalidState, NotAuthorized, ValidationFailed
from timekeeper.models import (
    ClockSession,
    DailyAttendanceRecord,
    LeaveBalance,
    LeaveDuration,
    LeaveRequest,
    LeaveStatus,
    RecordSource,
    SessionStatus,
    UserRole,
)
from timekeeper.services.clock import clock_in, clock_out
from timekeeper.services.daily_records import sync_daily_record
from timekeeper.services.leaves import (
    apply_leave,
    approve_leave,
    cancel_leave,
    list_leave_balances,
    reject_leave,
)

from _support import UTC_POLICY, add_leave_type, add_user, make_session_factory, utc

MONDAY = date(2026, 3, 2)
WEDNESDAY = date(2026, 3, 4)


class LeaveServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.employee = add_user(self.db, full_name="Eve Employee")
        self.admin = add_user(self.db, full_name="Ann Admin", role=UserRole.ADMIN)
        self.annual = add_leave_type(self.db, code="AL", name="Annual Leave", annual_quota_minutes=9600)

    def tearDown(self) -> None:
        self.db.close()

    def _apply(self, start: date = MONDAY, end: date = WEDNESDAY, **kwargs) -> LeaveRequest:  # type: ignore[no-untyped-def]
        return apply_leave(
            self.db,
            user=kwargs.pop("user", self.employee),
            leave_type_id=kwargs.pop("leave_type_id", self.annual.id),
            start_date=start,
            end_date=end,
            reason=kwargs.pop("reason", "Family trip"),
            policy=UTC_POLICY,
            **kwargs,
        )

    def _balance(self) -> LeaveBalance:
        balance = self.db.scalar(
            select(LeaveBalance)
            .where(LeaveBalance.user_id == self.employee.id, LeaveBalance.leave_type_id == self.annual.id)
            .execution_options(populate_existing=True)
        )
        assert balance is not None
        return balance

    def _sessions(self) -> list[ClockSession]:
        return list(
            self.db.scalars(
                select(ClockSession)
                .where(ClockSession.user_id == self.employee.id)
                .order_by(ClockSession.work_date.asc())
                .execution_options(populate_existing=True)
            ).all()
        )

    def test_apply_creates_pending_request_and_allocates_balance(self) -> None:
        leave_request = self._apply()

        self.assertEqual(leave_request.status, LeaveStatus.PENDING)
        balance = self._balance()
        self.assertEqual(balance.year, 2026)
        self.assertEqual(balance.total_allocated_minutes, 9600)
        self.assertEqual(balance.used_minutes, 0)

    def test_apply_rejects_weekends_and_multi_day_half_leave(self) -> None:
        with self.assertRaises(ValidationFailed):
            self._apply(start=date(2026, 3, 6), end=date(2026, 3, 9))
        with self.assertRaises(ValidationFailed):
            self._apply(start=MONDAY, end=WEDNESDAY, duration=LeaveDuration.HALF_FIRST)
        with self.assertRaises(ValidationFailed):
            self._apply(start=WEDNESDAY, end=MONDAY)

    def test_apply_rejects_overlap_with_open_request(self) -> None:
        self._apply()

        with self.assertRaises(InvalidState):
            self._apply(start=date(2026, 3, 3), end=date(2026, 3, 3))

    def test_apply_rejects_request_larger_than_remaining_balance(self) -> None:
        small = add_leave_type(self.db, code="SM", name="Small", annual_quota_minutes=480)

        with self.assertRaises(InsufficientBalance):
            self._apply(leave_type_id=small.id)

        self.assertEqual(self.db.scalar(select(func.count()).select_from(LeaveRequest)), 0)

    def test_three_day_approval_creates_placeholders_and_debits_balance(self) -> None:
        leave_request = self._apply()

        result = approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        self.assertEqual(result.leave_request.status, LeaveStatus.APPROVED)
        self.assertEqual(result.leave_request.approver_id, self.admin.id)
        self.assertEqual(result.debited_minutes, 1440)
        self.assertEqual(result.placeholder_dates, [MONDAY, date(2026, 3, 3), WEDNESDAY])
        self.assertEqual(self._balance().used_minutes, 1440)

        sessions = self._sessions()
        self.assertEqual(len(sessions), 3)
        for session in sessions:
            self.assertEqual(session.status, SessionStatus.COMPLETED)
            self.assertEqual(session.source, RecordSource.LEAVE_PLACEHOLDER)
            self.assertEqual(session.work_minutes, 0)
            self.assertEqual(session.leave_request_id, leave_request.id)
            self.assertEqual(session.notes, "Leave: Annual Leave")

        records = list(self.db.scalars(select(DailyAttendanceRecord)).all())
        self.assertEqual(len(records), 3)
        for record in records:
            self.assertEqual(record.source, RecordSource.LEAVE_PLACEHOLDER)
            self.assertEqual(record.work_minutes, 0)
            self.assertFalse(record.is_late_check_in)
            self.assertEqual(record.leave_request_id, leave_request.id)

    def test_approval_with_insufficient_balance_changes_nothing(self) -> None:
        leave_request = self._apply()
        balance = self._balance()
        balance.used_minutes = 9000
        self.db.commit()

        with self.assertRaises(InsufficientBalance):
            approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        self.assertEqual(self._balance().used_minutes, 9000)
        stored = self.db.scalar(
            select(LeaveRequest).where(LeaveRequest.id == leave_request.id).execution_options(populate_existing=True)
        )
        self.assertEqual(stored.status, LeaveStatus.PENDING)
        self.assertEqual(self._sessions(), [])
        self.assertEqual(self.db.scalar(select(func.count()).select_from(DailyAttendanceRecord)), 0)

    def test_failure_after_debit_rolls_back_whole_approval(self) -> None:
        leave_request = self._apply()
        synced_dates: list[date] = []

        def _fail_on_second_day(db, **kwargs):  # type: ignore[no-untyped-def]
            synced_dates.append(kwargs["work_date"])
            if len(synced_dates) == 2:
                raise RuntimeError("record store unavailable")
            return sync_daily_record(db, **kwargs)

        with patch("timekeeper.services.leaves.sync_daily_record", side_effect=_fail_on_second_day):
            with self.assertRaises(RuntimeError):
                approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        self.assertEqual(synced_dates, [MONDAY, date(2026, 3, 3)])
        self.assertEqual(self._balance().used_minutes, 0)
        stored = self.db.scalar(
            select(LeaveRequest).where(LeaveRequest.id == leave_request.id).execution_options(populate_existing=True)
        )
        self.assertEqual(stored.status, LeaveStatus.PENDING)
        self.assertEqual(stored.debited_minutes, 0)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(ClockSession)), 0)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(DailyAttendanceRecord)), 0)

    def test_only_admin_approves_and_only_pending_is_approvable(self) -> None:
        leave_request = self._apply()
        hr_user = add_user(self.db, full_name="Hal Hr", role=UserRole.HR)

        with self.assertRaises(NotAuthorized):
            approve_leave(self.db, leave_request_id=leave_request.id, approver=hr_user, policy=UTC_POLICY)

        approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)
        with self.assertRaises(InvalidState):
            approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)
        self.assertEqual(self._balance().used_minutes, 1440)

    def test_approve_then_cancel_restores_balance_and_retracts_placeholders(self) -> None:
        leave_request = self._apply()
        before = self._balance().used_minutes
        approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        result = cancel_leave(self.db, leave_request_id=leave_request.id, actor=self.admin, policy=UTC_POLICY)

        self.assertEqual(result.previous_status, LeaveStatus.APPROVED)
        self.assertEqual(result.credited_minutes, 1440)
        self.assertEqual(result.leave_request.status, LeaveStatus.CANCELLED)
        self.assertEqual(self._balance().used_minutes, before)
        self.assertTrue(all(item.retracted_at is not None for item in self._sessions()))
        self.assertEqual(self.db.scalar(select(func.count()).select_from(DailyAttendanceRecord)), 0)

    def test_employee_cannot_cancel_approved_leave(self) -> None:
        leave_request = self._apply()
        approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        with self.assertRaises(NotAuthorized):
            cancel_leave(self.db, leave_request_id=leave_request.id, actor=self.employee, policy=UTC_POLICY)

        self.assertEqual(self._balance().used_minutes, 1440)

    def test_owner_cancels_pending_leave(self) -> None:
        leave_request = self._apply()

        result = cancel_leave(self.db, leave_request_id=leave_request.id, actor=self.employee, policy=UTC_POLICY)

        self.assertEqual(result.previous_status, LeaveStatus.PENDING)
        self.assertEqual(result.credited_minutes, 0)
        with self.assertRaises(InvalidState):
            cancel_leave(self.db, leave_request_id=leave_request.id, actor=self.employee, policy=UTC_POLICY)

    def test_other_employee_cannot_cancel(self) -> None:
        leave_request = self._apply()
        stranger = add_user(self.db, full_name="Sam Stranger")

        with self.assertRaises(NotAuthorized):
            cancel_leave(self.db, leave_request_id=leave_request.id, actor=stranger, policy=UTC_POLICY)

    def test_reject_is_admin_only_and_final(self) -> None:
        leave_request = self._apply()

        with self.assertRaises(NotAuthorized):
            reject_leave(self.db, leave_request_id=leave_request.id, approver=self.employee)

        rejected = reject_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, comment="Busy week")
        self.assertEqual(rejected.status, LeaveStatus.REJECTED)
        self.assertEqual(rejected.manager_comment, "Busy week")
        with self.assertRaises(InvalidState):
            approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)
        self.assertEqual(self._balance().used_minutes, 0)

    def test_days_with_attendance_are_not_overwritten_by_placeholders(self) -> None:
        clock_in(self.db, user=self.employee, now_utc=utc(2026, 3, 3, 9, 0), policy=UTC_POLICY)
        clock_out(self.db, user=self.employee, now_utc=utc(2026, 3, 3, 12, 0), policy=UTC_POLICY)
        leave_request = self._apply()

        result = approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        self.assertEqual(result.placeholder_dates, [MONDAY, WEDNESDAY])
        self.assertEqual(result.skipped_dates, [date(2026, 3, 3)])
        worked = self.db.scalar(
            select(DailyAttendanceRecord).where(DailyAttendanceRecord.work_date == date(2026, 3, 3))
        )
        self.assertEqual(worked.source, RecordSource.CLOCK)
        self.assertEqual(worked.work_minutes, 180)

    def test_clock_out_on_leave_day_overrides_placeholder(self) -> None:
        leave_request = self._apply()
        approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        clock_in(self.db, user=self.employee, now_utc=utc(2026, 3, 3, 9, 0), policy=UTC_POLICY)
        result = clock_out(self.db, user=self.employee, now_utc=utc(2026, 3, 3, 13, 0), policy=UTC_POLICY)

        self.assertEqual(result.replaced_source, RecordSource.LEAVE_PLACEHOLDER)
        self.assertEqual(result.record.source, RecordSource.CLOCK)
        self.assertIsNone(result.record.leave_request_id)
        self.assertEqual(result.record.work_minutes, 240)

    def test_type_without_approval_is_approved_on_apply(self) -> None:
        unpaid = add_leave_type(
            self.db,
            code="UP",
            name="Unpaid Leave",
            annual_quota_minutes=0,
            requires_approval=False,
        )

        leave_request = self._apply(start=MONDAY, end=MONDAY, leave_type_id=unpaid.id)

        self.assertEqual(leave_request.status, LeaveStatus.APPROVED)
        self.assertIsNone(leave_request.approver_id)
        self.assertEqual(leave_request.debited_minutes, 0)
        self.assertEqual(len(self._sessions()), 1)

    def test_failed_auto_approval_leaves_no_request_behind(self) -> None:
        comp_off = add_leave_type(
            self.db,
            code="CO",
            name="Comp Off",
            annual_quota_minutes=4800,
            requires_approval=False,
        )

        with patch("timekeeper.services.leaves._debit_balance", return_value=False):
            with self.assertRaises(InsufficientBalance):
                self._apply(start=MONDAY, end=MONDAY, leave_type_id=comp_off.id)

        self.assertEqual(self.db.scalar(select(func.count()).select_from(LeaveRequest)), 0)
        self.assertEqual(self._sessions(), [])

    def test_auto_approval_debits_quota_in_same_unit(self) -> None:
        comp_off = add_leave_type(
            self.db,
            code="CO",
            name="Comp Off",
            annual_quota_minutes=4800,
            requires_approval=False,
        )

        leave_request = self._apply(start=MONDAY, end=MONDAY, leave_type_id=comp_off.id)

        self.assertEqual(leave_request.status, LeaveStatus.APPROVED)
        self.assertEqual(leave_request.debited_minutes, 480)
        balance = self.db.scalar(
            select(LeaveBalance)
            .where(LeaveBalance.user_id == self.employee.id, LeaveBalance.leave_type_id == comp_off.id)
            .execution_options(populate_existing=True)
        )
        self.assertEqual(balance.used_minutes, 480)
        self.assertEqual(len(self._sessions()), 1)

    def test_half_day_debits_half_day_minutes(self) -> None:
        leave_request = self._apply(start=MONDAY, end=MONDAY, duration=LeaveDuration.HALF_SECOND)

        result = approve_leave(self.db, leave_request_id=leave_request.id, approver=self.admin, policy=UTC_POLICY)

        self.assertEqual(result.debited_minutes, 240)
        self.assertEqual(self._balance().used_minutes, 240)

    def test_list_leave_balances_for_year(self) -> None:
        self._apply()

        balances = list_leave_balances(self.db, user_id=self.employee.id, year=2026)

        self.assertEqual([(item.leave_type_id, item.total_allocated_minutes) for item in balances], [(self.annual.id, 9600)])
        self.assertEqual(list_leave_balances(self.db, user_id=self.employee.id, year=2027), [])


if __name__ == "__main__":
    unittest.main()
