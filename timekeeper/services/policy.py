from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from functools import lru_cache
from math import floor
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from timekeeper.models import LeaveDuration
from timekeeper.settings import get_settings


@dataclass(frozen=True)
class AttendancePolicy:
    """Business thresholds shared by every path that derives attendance metrics."""

    late_check_in_after: time = time(9, 0)
    standard_day_minutes: int = 480
    overtime_threshold_minutes: int = 540
    full_day_leave_minutes: int = 480
    half_day_leave_minutes: int = 240
    tz: ZoneInfo = ZoneInfo("UTC")


@dataclass(frozen=True)
class DayMetrics:
    net_work_minutes: int
    is_late_check_in: bool
    is_early_check_out: bool
    is_overtime: bool
    overtime_minutes: int
    attendance_percentage: int


def parse_hhmm(value: str) -> time:
    raw = (value or "").strip()
    hour_text, _, minute_text = raw.partition(":")
    if not hour_text.isdigit() or not minute_text.isdigit():
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return time(int(hour_text), int(minute_text))


def _resolve_timezone(raw_name: str) -> ZoneInfo:
    name = (raw_name or "").strip() or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


@lru_cache
def get_attendance_policy() -> AttendancePolicy:
    settings = get_settings()
    return AttendancePolicy(
        late_check_in_after=parse_hhmm(settings.late_check_in_after),
        standard_day_minutes=settings.standard_day_minutes,
        overtime_threshold_minutes=settings.overtime_threshold_minutes,
        full_day_leave_minutes=settings.full_day_leave_minutes,
        half_day_leave_minutes=settings.half_day_leave_minutes,
        tz=_resolve_timezone(settings.attendance_timezone),
    )


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def local_day(ts_utc: datetime, policy: AttendancePolicy) -> date:
    return normalize_ts(ts_utc).astimezone(policy.tz).date()


def local_midnight_utc(day: date, policy: AttendancePolicy) -> datetime:
    return datetime.combine(day, time.min, tzinfo=policy.tz).astimezone(timezone.utc)


def _round_half_up(value: float) -> int:
    return int(floor(value + 0.5))


def elapsed_minutes(start: datetime, end: datetime) -> int:
    seconds = (normalize_ts(end) - normalize_ts(start)).total_seconds()
    return max(0, _round_half_up(seconds / 60))


def net_work_minutes(*, clock_in: datetime, clock_out: datetime, break_minutes: int) -> int:
    return max(0, elapsed_minutes(clock_in, clock_out) - max(0, break_minutes))


def is_late_check_in(clock_in: datetime, policy: AttendancePolicy) -> bool:
    local_time = normalize_ts(clock_in).astimezone(policy.tz).time()
    return local_time.replace(second=0, microsecond=0) > policy.late_check_in_after


def evaluate_day(*, clock_in: datetime, worked_minutes: int, policy: AttendancePolicy) -> DayMetrics:
    worked = max(0, worked_minutes)
    is_overtime = worked > policy.overtime_threshold_minutes
    if policy.standard_day_minutes > 0:
        percentage = min(100, _round_half_up(worked / policy.standard_day_minutes * 100))
    else:
        percentage = 100
    return DayMetrics(
        net_work_minutes=worked,
        is_late_check_in=is_late_check_in(clock_in, policy),
        is_early_check_out=worked < policy.standard_day_minutes,
        is_overtime=is_overtime,
        overtime_minutes=worked - policy.overtime_threshold_minutes if is_overtime else 0,
        attendance_percentage=percentage,
    )


def calculate_day_metrics(
    *,
    clock_in: datetime,
    clock_out: datetime,
    break_minutes: int,
    policy: AttendancePolicy,
) -> DayMetrics:
    worked = net_work_minutes(clock_in=clock_in, clock_out=clock_out, break_minutes=break_minutes)
    return evaluate_day(clock_in=clock_in, worked_minutes=worked, policy=policy)


def requested_leave_minutes(
    *,
    duration: LeaveDuration,
    start_date: date,
    end_date: date,
    policy: AttendancePolicy,
) -> int:
    if duration == LeaveDuration.FULL_DAY:
        total_days = (end_date - start_date).days + 1
        return max(0, total_days) * policy.full_day_leave_minutes
    return policy.half_day_leave_minutes
