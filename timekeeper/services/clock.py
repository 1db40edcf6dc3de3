from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

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
    RecordSource,
    SessionBreak,
    SessionStatus,
    User,
    UserRole,
)
from timekeeper.services.daily_records import sync_daily_record
from timekeeper.services.live_status import refresh_live_status
from timekeeper.services.policy import (
    AttendancePolicy,
    DayMetrics,
    calculate_day_metrics,
    elapsed_minutes,
    get_attendance_policy,
    local_day,
    net_work_minutes,
    normalize_ts,
)
from timekeeper.settings import get_settings

logger = logging.getLogger("timekeeper.clock")


@dataclass(frozen=True)
class ClockOutResult:
    session: ClockSession
    elapsed_minutes: int
    metrics: DayMetrics
    forced_break: SessionBreak | None
    record: DailyAttendanceRecord | None
    replaced_source: RecordSource | None


@dataclass(frozen=True)
class BreakEndResult:
    break_interval: SessionBreak
    session: ClockSession


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _find_active_session(db: Session, *, user_id: int, work_date: date) -> ClockSession | None:
    return db.scalar(
        select(ClockSession)
        .options(selectinload(ClockSession.breaks))
        .where(
            ClockSession.user_id == user_id,
            ClockSession.work_date == work_date,
            ClockSession.status == SessionStatus.ACTIVE,
        )
    )


def _find_open_break(db: Session, *, session_id: int) -> SessionBreak | None:
    return db.scalar(
        select(SessionBreak).where(
            SessionBreak.session_id == session_id,
            SessionBreak.break_end_at.is_(None),
        )
    )


def _sum_closed_breaks(db: Session, *, session_id: int) -> int:
    durations = db.scalars(
        select(SessionBreak.duration_minutes).where(
            SessionBreak.session_id == session_id,
            SessionBreak.break_end_at.is_not(None),
        )
    ).all()
    return sum(max(0, item or 0) for item in durations)


def _close_break(interval: SessionBreak, *, now: datetime, by_clock_out: bool = False) -> None:
    interval.break_end_at = now
    interval.duration_minutes = elapsed_minutes(interval.break_start_at, now)
    interval.closed_by_clock_out = by_clock_out


def sync_projections(
    db: Session,
    *,
    user: User,
    work_date: date,
    now_utc: datetime,
    policy: AttendancePolicy,
    include_daily_record: bool,
) -> tuple[DailyAttendanceRecord | None, RecordSource | None]:
    """Refresh the daily record and live status after a committed session change.

    Both projections are rebuilt from stored sessions, so a failure here leaves
    the source of truth intact and is healed by the next event or a rebuild.
    """
    for attempt in range(2):
        try:
            record, replaced_source = (None, None)
            if include_daily_record:
                record, replaced_source = sync_daily_record(db, user=user, work_date=work_date, policy=policy)
            refresh_live_status(db, user_id=user.id, now_utc=now_utc, policy=policy)
            db.commit()
            return record, replaced_source
        except IntegrityError:
            db.rollback()
            if attempt:
                logger.exception(
                    "projection_sync_conflict",
                    extra={"user_id": user.id, "work_date": work_date},
                )
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "projection_sync_failed",
                extra={"user_id": user.id, "work_date": work_date},
            )
            break
    return None, None


def clock_in(
    db: Session,
    *,
    user: User,
    device_type: DeviceType = DeviceType.WEB,
    location: str | None = None,
    note: str | None = None,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> ClockSession:
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc or _utcnow())
    work_date = local_day(now, active_policy)

    session = ClockSession(
        user_id=user.id,
        work_date=work_date,
        clock_in_at=now,
        status=SessionStatus.ACTIVE,
        source=RecordSource.CLOCK,
        break_minutes=0,
        work_minutes=0,
        device_type=device_type,
        location=location,
        notes=note,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info("clock_in_rejected_active_session", extra={"user_id": user.id, "work_date": work_date})
        raise AlreadyActive() from exc

    logger.info(
        "clock_in",
        extra={"user_id": user.id, "session_id": session.id, "work_date": work_date},
    )
    sync_projections(
        db,
        user=user,
        work_date=work_date,
        now_utc=now,
        policy=active_policy,
        include_daily_record=False,
    )
    return session


def clock_out(
    db: Session,
    *,
    user: User,
    work_date: date | None = None,
    note: str | None = None,
    device_type: DeviceType | None = None,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
    force_close_open_break: bool | None = None,
) -> ClockOutResult:
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc or _utcnow())
    target_date = work_date or local_day(now, active_policy)
    if force_close_open_break is None:
        force_close_open_break = get_settings().force_close_open_break_on_clock_out

    session = _find_active_session(db, user_id=user.id, work_date=target_date)
    if session is None:
        raise NoActiveSession("No active session to clock out.")

    forced_break: SessionBreak | None = None
    open_break = _find_open_break(db, session_id=session.id)
    if open_break is not None and force_close_open_break:
        _close_break(open_break, now=now, by_clock_out=True)
        forced_break = open_break
        db.flush()

    session.break_minutes = _sum_closed_breaks(db, session_id=session.id)
    session.clock_out_at = now
    session.status = SessionStatus.COMPLETED
    session.work_minutes = net_work_minutes(
        clock_in=session.clock_in_at,
        clock_out=now,
        break_minutes=session.break_minutes,
    )
    if note:
        session.clock_out_note = note
    if device_type is not None:
        session.device_type = device_type
    db.commit()

    metrics = calculate_day_metrics(
        clock_in=session.clock_in_at,
        clock_out=now,
        break_minutes=session.break_minutes,
        policy=active_policy,
    )
    logger.info(
        "clock_out",
        extra={
            "user_id": user.id,
            "session_id": session.id,
            "work_date": target_date,
            "work_minutes": session.work_minutes,
            "break_minutes": session.break_minutes,
            "forced_break_close": forced_break is not None,
        },
    )
    record, replaced_source = sync_projections(
        db,
        user=user,
        work_date=target_date,
        now_utc=now,
        policy=active_policy,
        include_daily_record=True,
    )
    return ClockOutResult(
        session=session,
        elapsed_minutes=elapsed_minutes(session.clock_in_at, now),
        metrics=metrics,
        forced_break=forced_break,
        record=record,
        replaced_source=replaced_source,
    )


def _resolve_session_for_user(
    db: Session,
    *,
    user: User,
    session_id: int | None,
    now: datetime,
    policy: AttendancePolicy,
) -> ClockSession | None:
    if session_id is None:
        return _find_active_session(db, user_id=user.id, work_date=local_day(now, policy))
    session = db.get(ClockSession, session_id)
    if session is None or session.user_id != user.id:
        raise NotFound("Session not found.")
    return session


def start_break(
    db: Session,
    *,
    user: User,
    session_id: int | None = None,
    reason: str | None = None,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> SessionBreak:
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc or _utcnow())
    session = _resolve_session_for_user(db, user=user, session_id=session_id, now=now, policy=active_policy)
    if session is None or session.status != SessionStatus.ACTIVE:
        raise NoActiveSession()

    interval = SessionBreak(
        session_id=session.id,
        break_start_at=now,
        reason=(reason or "").strip() or "Unspecified",
    )
    db.add(interval)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise BreakAlreadyOpen() from exc

    logger.info(
        "break_start",
        extra={"user_id": user.id, "session_id": session.id, "break_id": interval.id},
    )
    sync_projections(
        db,
        user=user,
        work_date=session.work_date,
        now_utc=now,
        policy=active_policy,
        include_daily_record=False,
    )
    return interval


def end_break(
    db: Session,
    *,
    user: User,
    session_id: int | None = None,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> BreakEndResult:
    """Close the open break and recompute the session total from every closed break.

    A session completed with its break still open (force-close disabled) can
    still have that break ended here; its work minutes are then recomputed too.
    """
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc or _utcnow())
    session = _resolve_session_for_user(db, user=user, session_id=session_id, now=now, policy=active_policy)
    if session is None:
        raise NoActiveSession("No active session.")

    interval = _find_open_break(db, session_id=session.id)
    if interval is None:
        raise NoOpenBreak()

    _close_break(interval, now=now)
    db.flush()
    session.break_minutes = _sum_closed_breaks(db, session_id=session.id)
    if session.status == SessionStatus.COMPLETED and session.clock_out_at is not None:
        session.work_minutes = net_work_minutes(
            clock_in=session.clock_in_at,
            clock_out=session.clock_out_at,
            break_minutes=session.break_minutes,
        )
    db.commit()

    logger.info(
        "break_end",
        extra={
            "user_id": user.id,
            "session_id": session.id,
            "break_id": interval.id,
            "duration_minutes": interval.duration_minutes,
            "break_minutes": session.break_minutes,
        },
    )
    sync_projections(
        db,
        user=user,
        work_date=session.work_date,
        now_utc=now,
        policy=active_policy,
        include_daily_record=session.status == SessionStatus.COMPLETED,
    )
    return BreakEndResult(break_interval=interval, session=session)


def get_current_session(
    db: Session,
    *,
    user: User,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> ClockSession | None:
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc or _utcnow())
    return _find_active_session(db, user_id=user.id, work_date=local_day(now, active_policy))


MANUAL_ENTRY_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER})


@dataclass(frozen=True)
class CorrectionResult:
    session: ClockSession
    previous: dict[str, Any]
    record: DailyAttendanceRecord | None
    replaced_source: RecordSource | None = None


def _session_snapshot(session: ClockSession) -> dict[str, Any]:
    return {
        "work_date": session.work_date.isoformat(),
        "clock_in_at": normalize_ts(session.clock_in_at).isoformat(),
        "clock_out_at": normalize_ts(session.clock_out_at).isoformat() if session.clock_out_at else None,
        "break_minutes": session.break_minutes,
        "work_minutes": session.work_minutes,
        "status": session.status.value,
    }


def _validate_correction_window(
    *,
    work_date: date,
    clock_in_at: datetime,
    clock_out_at: datetime,
    policy: AttendancePolicy,
) -> None:
    if clock_out_at <= clock_in_at:
        raise ValidationFailed("clock_out_at must be after clock_in_at")
    if local_day(clock_in_at, policy) != work_date:
        raise ValidationFailed("clock_in_at must fall on work_date")


def _get_correctable_session(db: Session, session_id: int) -> ClockSession:
    session = db.scalar(
        select(ClockSession)
        .where(ClockSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    if session is None or session.retracted_at is not None:
        raise NotFound("Session not found.")
    if session.source != RecordSource.CLOCK or session.status != SessionStatus.COMPLETED:
        raise InvalidState("Only completed clock sessions can be corrected.")
    return session


def _resync_after_correction(
    db: Session,
    *,
    session: ClockSession,
    policy: AttendancePolicy,
) -> tuple[DailyAttendanceRecord | None, RecordSource | None]:
    user = db.get(User, session.user_id)
    if user is None:
        return None, None
    return sync_projections(
        db,
        user=user,
        work_date=session.work_date,
        now_utc=_utcnow(),
        policy=policy,
        include_daily_record=True,
    )


def create_manual_session(
    db: Session,
    *,
    actor: User,
    user_id: int,
    work_date: date,
    clock_in_at: datetime,
    clock_out_at: datetime,
    reason: str,
    policy: AttendancePolicy | None = None,
) -> CorrectionResult:
    """Record a completed session for a day the user never clocked.

    Admins and managers only. A day that already holds clock data is
    corrected through ``update_manual_session`` instead.
    """
    active_policy = policy or get_attendance_policy()
    if actor.role not in MANUAL_ENTRY_ROLES:
        raise NotAuthorized("Only admins and managers can create manual entries.")
    reason_text = (reason or "").strip()
    if not reason_text:
        raise ValidationFailed("reason is required")

    start = normalize_ts(clock_in_at)
    end = normalize_ts(clock_out_at)
    _validate_correction_window(work_date=work_date, clock_in_at=start, clock_out_at=end, policy=active_policy)

    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found.")

    existing = db.scalar(
        select(ClockSession.id)
        .where(
            ClockSession.user_id == user_id,
            ClockSession.work_date == work_date,
            ClockSession.source == RecordSource.CLOCK,
            ClockSession.retracted_at.is_(None),
        )
        .limit(1)
    )
    if existing is not None:
        raise SessionExists()

    now = _utcnow()
    session = ClockSession(
        user_id=user_id,
        work_date=work_date,
        clock_in_at=start,
        clock_out_at=end,
        status=SessionStatus.COMPLETED,
        source=RecordSource.CLOCK,
        break_minutes=0,
        work_minutes=net_work_minutes(clock_in=start, clock_out=end, break_minutes=0),
        device_type=DeviceType.WEB,
        is_manual=True,
        corrected_by_id=actor.id,
        corrected_at=now,
        correction_reason=reason_text,
    )
    db.add(session)
    db.commit()
    logger.info(
        "manual_session_created",
        extra={"user_id": user_id, "session_id": session.id, "work_date": work_date, "actor_id": actor.id},
    )
    record, replaced_source = _resync_after_correction(db, session=session, policy=active_policy)
    return CorrectionResult(session=session, previous={}, record=record, replaced_source=replaced_source)


def update_manual_session(
    db: Session,
    *,
    actor: User,
    session_id: int,
    clock_in_at: datetime | None = None,
    clock_out_at: datetime | None = None,
    reason: str,
    policy: AttendancePolicy | None = None,
) -> CorrectionResult:
    active_policy = policy or get_attendance_policy()
    if actor.role != UserRole.ADMIN:
        raise NotAuthorized("Only admins can update time entries.")
    reason_text = (reason or "").strip()
    if not reason_text:
        raise ValidationFailed("reason is required")

    session = _get_correctable_session(db, session_id)
    previous = _session_snapshot(session)
    start = normalize_ts(clock_in_at) if clock_in_at is not None else normalize_ts(session.clock_in_at)
    end = normalize_ts(clock_out_at) if clock_out_at is not None else normalize_ts(session.clock_out_at)
    _validate_correction_window(work_date=session.work_date, clock_in_at=start, clock_out_at=end, policy=active_policy)

    session.clock_in_at = start
    session.clock_out_at = end
    session.work_minutes = net_work_minutes(clock_in=start, clock_out=end, break_minutes=session.break_minutes)
    session.corrected_by_id = actor.id
    session.corrected_at = _utcnow()
    session.correction_reason = reason_text
    db.commit()
    logger.info(
        "manual_session_updated",
        extra={"user_id": session.user_id, "session_id": session.id, "actor_id": actor.id},
    )
    record, replaced_source = _resync_after_correction(db, session=session, policy=active_policy)
    return CorrectionResult(session=session, previous=previous, record=record, replaced_source=replaced_source)


def retract_manual_session(
    db: Session,
    *,
    actor: User,
    session_id: int,
    reason: str | None = None,
    policy: AttendancePolicy | None = None,
) -> CorrectionResult:
    """Soft-delete a completed clock session; the day is re-derived without it."""
    active_policy = policy or get_attendance_policy()
    if actor.role != UserRole.ADMIN:
        raise NotAuthorized("Only admins can delete time entries.")

    session = _get_correctable_session(db, session_id)
    previous = _session_snapshot(session)
    now = _utcnow()
    session.retracted_at = now
    session.corrected_by_id = actor.id
    session.corrected_at = now
    session.correction_reason = (reason or "").strip() or "No reason provided"
    db.commit()
    logger.info(
        "manual_session_retracted",
        extra={"user_id": session.user_id, "session_id": session.id, "actor_id": actor.id},
    )
    record, replaced_source = _resync_after_correction(db, session=session, policy=active_policy)
    return CorrectionResult(session=session, previous=previous, record=record, replaced_source=replaced_source)
