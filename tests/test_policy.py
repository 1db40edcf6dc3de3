from __future__ import annotations

import unittest
from datetime import date, time
from unittest.mock import patch
from zoneinfo import ZoneInfo

from timekeeper.models import LeaveDuration
from timekeeper.services.policy import (
    AttendancePolicy,
    calculate_day_metrics,
    elapsed_minutes,
    evaluate_day,
    get_attendance_policy,
    is_late_check_in,
    local_day,
    local_midnight_utc,
    parse_hhmm,
    requested_leave_minutes,
)
from timekeeper.settings import Settings

from _support import UTC_POLICY, utc


class MetricsCalculatorTests(unittest.TestCase):
    def test_check_in_at_nine_fifteen_is_late(self) -> None:
        metrics = calculate_day_metrics(
            clock_in=utc(2026, 3, 2, 9, 15),
            clock_out=utc(2026, 3, 2, 17, 15),
            break_minutes=0,
            policy=UTC_POLICY,
        )
        self.assertTrue(metrics.is_late_check_in)

    def test_lateness_uses_minute_resolution(self) -> None:
        self.assertFalse(is_late_check_in(utc(2026, 3, 2, 9, 0), UTC_POLICY))
        self.assertFalse(is_late_check_in(utc(2026, 3, 2, 9, 0, 59), UTC_POLICY))
        self.assertTrue(is_late_check_in(utc(2026, 3, 2, 9, 1), UTC_POLICY))
        self.assertTrue(is_late_check_in(utc(2026, 3, 2, 10, 0), UTC_POLICY))

    def test_short_day_is_early_with_rounded_percentage(self) -> None:
        metrics = evaluate_day(clock_in=utc(2026, 3, 2, 8, 30), worked_minutes=460, policy=UTC_POLICY)

        self.assertTrue(metrics.is_early_check_out)
        self.assertFalse(metrics.is_overtime)
        self.assertEqual(metrics.overtime_minutes, 0)
        self.assertEqual(metrics.attendance_percentage, 96)

    def test_break_and_overtime_scenario(self) -> None:
        metrics = calculate_day_metrics(
            clock_in=utc(2026, 3, 2, 9, 0),
            clock_out=utc(2026, 3, 2, 19, 0),
            break_minutes=30,
            policy=UTC_POLICY,
        )

        self.assertEqual(metrics.net_work_minutes, 570)
        self.assertTrue(metrics.is_overtime)
        self.assertEqual(metrics.overtime_minutes, 30)
        self.assertEqual(metrics.attendance_percentage, 100)
        self.assertFalse(metrics.is_late_check_in)
        self.assertFalse(metrics.is_early_check_out)

    def test_overtime_threshold_is_exclusive(self) -> None:
        metrics = evaluate_day(clock_in=utc(2026, 3, 2, 8, 0), worked_minutes=540, policy=UTC_POLICY)

        self.assertFalse(metrics.is_overtime)
        self.assertEqual(metrics.overtime_minutes, 0)

    def test_elapsed_minutes_round_half_up_and_never_negative(self) -> None:
        self.assertEqual(elapsed_minutes(utc(2026, 3, 2, 9, 0), utc(2026, 3, 2, 9, 0, 30)), 1)
        self.assertEqual(elapsed_minutes(utc(2026, 3, 2, 9, 0), utc(2026, 3, 2, 9, 0, 29)), 0)
        self.assertEqual(elapsed_minutes(utc(2026, 3, 2, 10, 0), utc(2026, 3, 2, 9, 0)), 0)

    def test_net_work_never_negative(self) -> None:
        metrics = calculate_day_metrics(
            clock_in=utc(2026, 3, 2, 9, 0),
            clock_out=utc(2026, 3, 2, 9, 10),
            break_minutes=30,
            policy=UTC_POLICY,
        )
        self.assertEqual(metrics.net_work_minutes, 0)
        self.assertEqual(metrics.attendance_percentage, 0)

    def test_requested_leave_minutes(self) -> None:
        self.assertEqual(
            requested_leave_minutes(
                duration=LeaveDuration.FULL_DAY,
                start_date=date(2026, 3, 2),
                end_date=date(2026, 3, 4),
                policy=UTC_POLICY,
            ),
            1440,
        )
        self.assertEqual(
            requested_leave_minutes(
                duration=LeaveDuration.HALF_FIRST,
                start_date=date(2026, 3, 2),
                end_date=date(2026, 3, 2),
                policy=UTC_POLICY,
            ),
            240,
        )


class LocalCalendarTests(unittest.TestCase):
    def setUp(self) -> None:
        self.policy = AttendancePolicy(tz=ZoneInfo("Europe/Istanbul"))

    def test_local_day_follows_configured_timezone(self) -> None:
        self.assertEqual(local_day(utc(2026, 3, 2, 22, 30), self.policy), date(2026, 3, 3))
        self.assertEqual(local_day(utc(2026, 3, 2, 22, 30), UTC_POLICY), date(2026, 3, 2))

    def test_lateness_uses_local_wall_clock(self) -> None:
        self.assertFalse(is_late_check_in(utc(2026, 3, 2, 6, 0), self.policy))
        self.assertTrue(is_late_check_in(utc(2026, 3, 2, 6, 30), self.policy))

    def test_local_midnight_in_utc(self) -> None:
        self.assertEqual(local_midnight_utc(date(2026, 3, 3), self.policy), utc(2026, 3, 2, 21, 0))


class PolicyConfigurationTests(unittest.TestCase):
    def tearDown(self) -> None:
        get_attendance_policy.cache_clear()

    def test_parse_hhmm_rejects_garbage(self) -> None:
        self.assertEqual(parse_hhmm("09:30"), time(9, 30))
        with self.assertRaises(ValueError):
            parse_hhmm("nine")

    def test_policy_is_built_from_settings(self) -> None:
        get_attendance_policy.cache_clear()
        settings = Settings(
            late_check_in_after="08:45",
            standard_day_minutes=450,
            overtime_threshold_minutes=500,
            attendance_timezone="Not/AZone",
        )
        with patch("timekeeper.services.policy.get_settings", return_value=settings):
            policy = get_attendance_policy()

        self.assertEqual(policy.late_check_in_after, time(8, 45))
        self.assertEqual(policy.standard_day_minutes, 450)
        self.assertEqual(policy.overtime_threshold_minutes, 500)
        self.assertEqual(policy.tz, ZoneInfo("UTC"))


if __name__ == "__main__":
    unittest.main()
