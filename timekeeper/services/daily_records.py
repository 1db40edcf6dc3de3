from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from math import ceil
from typing import Literal, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from timekeeper.errors import NotFound
from timekeeper.models import (
    ClockSession,
    DailyAttendanceRecord,
    DeviceType,
    RecordSource,
    SessionStatus,
    User,
    UserRole,
)
from timekeeper.services.policy import (
    AttendancePolicy,
    DayMetrics,
    evaluate_day,
    get_attendance_policy,
    normalize_ts,
)

logger = logging.getLogger("timekeeper.daily_records")

SortField = Literal["date", "work_minutes", "overtime_minutes"]


@dataclass(frozen=True)
class DaySnapshot:
    user_id: int
    work_date: date
    source: RecordSource
    clock_in_at: datetime
    clock_out_at: datetime | None
    work_minutes: int
    break_minutes: int
    session_count: int
    device_type: DeviceType = DeviceType.WEB
    location: str | None = None
    notes: str | None = None
    leave_request_id: int | None = None


@dataclass(frozen=True)
class DailyRecordFilter:
    user_id: int | None = None
    role: UserRole | None = None
    start_date: date | None = None
    end_date: date | None = None
    source: RecordSource | None = None
    late_only: bool = False
    overtime_only: bool = False
    page: int = 1
    limit: int = 20
    sort_by: SortField = "date"
    sort_order: Literal["asc", "desc"] = "desc"


@dataclass(frozen=True)
class DailyRecordPage:
    items: list[DailyAttendanceRecord]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return ceil(self.total / self.limit)


_LEAVE_METRICS = DayMetrics(
    net_work_minutes=0,
    is_late_check_in=False,
    is_early_check_out=False,
    is_overtime=False,
    overtime_minutes=0,
    attendance_percentage=0,
)


def build_day_snapshot(sessions: Sequence[ClockSession]) -> DaySnapshot | None:
    """Derive the canonical day view from every session stored for one (user, date).

    Completed clock sessions always win over leave placeholders; a placeholder
    only backs the day when no real clock data exists. Retracted placeholders
    and still-active sessions are ignored.
    """
    live = [item for item in sessions if item.retracted_at is None]
    clock_sessions = sorted(
        (
            item
            for item in live
            if item.source == RecordSource.CLOCK and item.status == SessionStatus.COMPLETED
        ),
        key=lambda item: normalize_ts(item.clock_in_at),
    )
    if clock_sessions:
        first = clock_sessions[0]
        last = clock_sessions[-1]
        clock_outs = [normalize_ts(item.clock_out_at) for item in clock_sessions if item.clock_out_at is not None]
        return DaySnapshot(
            user_id=first.user_id,
            work_date=first.work_date,
            source=RecordSource.CLOCK,
            clock_in_at=normalize_ts(first.clock_in_at),
            clock_out_at=max(clock_outs) if clock_outs else None,
            work_minutes=sum(max(0, item.work_minutes or 0) for item in clock_sessions),
            break_minutes=sum(max(0, item.break_minutes or 0) for item in clock_sessions),
            session_count=len(clock_sessions),
            device_type=last.device_type or DeviceType.WEB,
            location=last.location,
            notes=last.clock_out_note or last.notes,
        )

    placeholders = [item for item in live if item.source == RecordSource.LEAVE_PLACEHOLDER]
    if not placeholders:
        return None
    placeholder = min(placeholders, key=lambda item: item.id or 0)
    return DaySnapshot(
        user_id=placeholder.user_id,
        work_date=placeholder.work_date,
        source=RecordSource.LEAVE_PLACEHOLDER,
        clock_in_at=normalize_ts(placeholder.clock_in_at),
        clock_out_at=normalize_ts(placeholder.clock_out_at) if placeholder.clock_out_at else None,
        work_minutes=0,
        break_minutes=0,
        session_count=0,
        notes=placeholder.notes,
        leave_request_id=placeholder.leave_request_id,
    )


def metrics_for_snapshot(snapshot: DaySnapshot, policy: AttendancePolicy) -> DayMetrics:
    if snapshot.source == RecordSource.LEAVE_PLACEHOLDER:
        return _LEAVE_METRICS
    return evaluate_day(
        clock_in=snapshot.clock_in_at,
        worked_minutes=snapshot.work_minutes,
        policy=policy,
    )


def _find_record(db: Session, *, user_id: int, work_date: date) -> DailyAttendanceRecord | None:
    return db.scalar(
        select(DailyAttendanceRecord).where(
            DailyAttendanceRecord.user_id == user_id,
            DailyAttendanceRecord.work_date == work_date,
        )
    )


def upsert_daily_record(
    db: Session,
    *,
    user: User,
    snapshot: DaySnapshot,
    policy: AttendancePolicy | None = None,
) -> tuple[DailyAttendanceRecord, RecordSource | None]:
    """Write absolute values for (user, date); returns the record and the source it replaced.

    Does not commit. A concurrent insert for the same key surfaces as an
    IntegrityError at flush time and the caller's unit of work is retried.
    """
    active_policy = policy or get_attendance_policy()
    metrics = metrics_for_snapshot(snapshot, active_policy)

    record = _find_record(db, user_id=snapshot.user_id, work_date=snapshot.work_date)
    previous_source = record.source if record is not None else None
    if record is None:
        record = DailyAttendanceRecord(user_id=snapshot.user_id, work_date=snapshot.work_date)
        db.add(record)

    record.user_role = user.role
    record.source = snapshot.source
    record.leave_request_id = snapshot.leave_request_id
    record.clock_in_at = snapshot.clock_in_at
    record.clock_out_at = snapshot.clock_out_at
    record.work_minutes = metrics.net_work_minutes
    record.break_minutes = snapshot.break_minutes
    record.overtime_minutes = metrics.overtime_minutes
    record.is_late_check_in = metrics.is_late_check_in
    record.is_early_check_out = metrics.is_early_check_out
    record.is_overtime = metrics.is_overtime
    record.attendance_percentage = metrics.attendance_percentage
    record.device_type = snapshot.device_type
    record.location = snapshot.location
    record.notes = snapshot.notes
    record.session_count = snapshot.session_count
    db.flush()

    if previous_source is not None and previous_source != snapshot.source:
        logger.info(
            "daily_record_source_changed",
            extra={
                "user_id": snapshot.user_id,
                "work_date": snapshot.work_date,
                "previous_source": previous_source,
                "source": snapshot.source,
            },
        )
    return record, previous_source


def _load_day_sessions(db: Session, *, user_id: int, work_date: date) -> list[ClockSession]:
    return list(
        db.scalars(
            select(ClockSession)
            .where(
                ClockSession.user_id == user_id,
                ClockSession.work_date == work_date,
            )
            .order_by(ClockSession.clock_in_at.asc(), ClockSession.id.asc())
        ).all()
    )


def sync_daily_record(
    db: Session,
    *,
    user: User,
    work_date: date,
    policy: AttendancePolicy | None = None,
) -> tuple[DailyAttendanceRecord | None, RecordSource | None]:
    """Re-derive the record for (user, date) from stored sessions. Does not commit."""
    snapshot = build_day_snapshot(_load_day_sessions(db, user_id=user.id, work_date=work_date))
    if snapshot is None:
        existing = _find_record(db, user_id=user.id, work_date=work_date)
        if existing is None:
            return None, None
        previous_source = existing.source
        db.delete(existing)
        db.flush()
        return None, previous_source
    return upsert_daily_record(db, user=user, snapshot=snapshot, policy=policy)


def get_daily_record(db: Session, *, user_id: int, work_date: date) -> DailyAttendanceRecord:
    record = _find_record(db, user_id=user_id, work_date=work_date)
    if record is None:
        raise NotFound("Daily attendance record not found.")
    return record


def list_daily_records(db: Session, filters: DailyRecordFilter) -> DailyRecordPage:
    conditions = []
    if filters.user_id is not None:
        conditions.append(DailyAttendanceRecord.user_id == filters.user_id)
    if filters.role is not None:
        conditions.append(DailyAttendanceRecord.user_role == filters.role)
    if filters.start_date is not None:
        conditions.append(DailyAttendanceRecord.work_date >= filters.start_date)
    if filters.end_date is not None:
        conditions.append(DailyAttendanceRecord.work_date <= filters.end_date)
    if filters.source is not None:
        conditions.append(DailyAttendanceRecord.source == filters.source)
    if filters.late_only:
        conditions.append(DailyAttendanceRecord.is_late_check_in.is_(True))
    if filters.overtime_only:
        conditions.append(DailyAttendanceRecord.is_overtime.is_(True))

    total = db.scalar(select(func.count()).select_from(DailyAttendanceRecord).where(*conditions)) or 0

    sort_columns = {
        "date": DailyAttendanceRecord.work_date,
        "work_minutes": DailyAttendanceRecord.work_minutes,
        "overtime_minutes": DailyAttendanceRecord.overtime_minutes,
    }
    sort_column = sort_columns.get(filters.sort_by, DailyAttendanceRecord.work_date)
    ordering = sort_column.asc() if filters.sort_order == "asc" else sort_column.desc()

    page = max(1, filters.page)
    limit = max(1, filters.limit)
    items = list(
        db.scalars(
            select(DailyAttendanceRecord)
            .where(*conditions)
            .order_by(ordering, DailyAttendanceRecord.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
    )
    return DailyRecordPage(items=items, page=page, limit=limit, total=int(total))


def rebuild_daily_records(
    db: Session,
    *,
    user_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    policy: AttendancePolicy | None = None,
) -> int:
    """Recompute every record in scope from sessions + breaks and commit. Returns days touched."""
    session_stmt = select(ClockSession.user_id, ClockSession.work_date).distinct()
    record_stmt = select(DailyAttendanceRecord.user_id, DailyAttendanceRecord.work_date)
    if user_id is not None:
        session_stmt = session_stmt.where(ClockSession.user_id == user_id)
        record_stmt = record_stmt.where(DailyAttendanceRecord.user_id == user_id)
    if start_date is not None:
        session_stmt = session_stmt.where(ClockSession.work_date >= start_date)
        record_stmt = record_stmt.where(DailyAttendanceRecord.work_date >= start_date)
    if end_date is not None:
        session_stmt = session_stmt.where(ClockSession.work_date <= end_date)
        record_stmt = record_stmt.where(DailyAttendanceRecord.work_date <= end_date)

    keys = {(row[0], row[1]) for row in db.execute(session_stmt).all()}
    keys.update((row[0], row[1]) for row in db.execute(record_stmt).all())

    users: dict[int, User | None] = {}
    touched = 0
    for key_user_id, work_date in sorted(keys):
        if key_user_id not in users:
            users[key_user_id] = db.get(User, key_user_id)
        user = users[key_user_id]
        if user is None:
            continue
        sync_daily_record(db, user=user, work_date=work_date, policy=policy)
        touched += 1

    db.commit()
    logger.info(
        "daily_records_rebuilt",
        extra={"user_id": user_id, "start_date": start_date, "end_date": end_date, "days": touched},
    )
    return touched
