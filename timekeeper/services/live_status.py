from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from timekeeper.models import (
    ClockSession,
    LiveStatus,
    LiveStatusEntry,
    RecordSource,
    SessionBreak,
    SessionStatus,
    User,
)
from timekeeper.services.policy import (
    AttendancePolicy,
    elapsed_minutes,
    evaluate_day,
    get_attendance_policy,
    local_day,
    normalize_ts,
)

logger = logging.getLogger("timekeeper.live_status")


@dataclass(frozen=True)
class LiveProjection:
    status: LiveStatus
    work_date: date
    last_activity_at: datetime
    session_id: int | None = None
    check_in_at: datetime | None = None
    check_out_at: datetime | None = None
    break_started_at: datetime | None = None
    work_minutes: int = 0
    break_minutes: int = 0
    overtime_minutes: int = 0


@dataclass
class LiveStatusBoard:
    total: int
    counts: dict[LiveStatus, int]
    members: list[tuple[User, LiveStatusEntry | None]] = field(default_factory=list)


def _session_events(session: ClockSession) -> list[datetime]:
    events = [normalize_ts(session.clock_in_at)]
    if session.clock_out_at is not None:
        events.append(normalize_ts(session.clock_out_at))
    for item in session.breaks:
        events.append(normalize_ts(item.break_start_at))
        if item.break_end_at is not None:
            events.append(normalize_ts(item.break_end_at))
    return events


def project_live_status(
    *,
    active_session: ClockSession | None,
    completed_sessions: Sequence[ClockSession],
    work_date: date,
    now_utc: datetime,
    policy: AttendancePolicy,
) -> LiveProjection:
    """Pure projection of {IN, BREAK, OUT} plus running totals for one user."""
    now = normalize_ts(now_utc)
    done = [item for item in completed_sessions if item.source == RecordSource.CLOCK and item.retracted_at is None]
    done_work = sum(max(0, item.work_minutes or 0) for item in done)
    done_break = sum(max(0, item.break_minutes or 0) for item in done)
    events = [event for item in done for event in _session_events(item)]

    if active_session is None:
        if not done:
            return LiveProjection(status=LiveStatus.OUT, work_date=work_date, last_activity_at=now)
        first = min(done, key=lambda item: normalize_ts(item.clock_in_at))
        last = max(done, key=lambda item: normalize_ts(item.clock_out_at or item.clock_in_at))
        metrics = evaluate_day(clock_in=first.clock_in_at, worked_minutes=done_work, policy=policy)
        return LiveProjection(
            status=LiveStatus.OUT,
            work_date=work_date,
            last_activity_at=max(events),
            session_id=last.id,
            check_in_at=normalize_ts(first.clock_in_at),
            check_out_at=normalize_ts(last.clock_out_at) if last.clock_out_at else None,
            work_minutes=done_work,
            break_minutes=done_break,
            overtime_minutes=metrics.overtime_minutes,
        )

    open_break: SessionBreak | None = next(
        (item for item in active_session.breaks if item.break_end_at is None),
        None,
    )
    running_break = active_session.break_minutes or 0
    if open_break is not None:
        running_break += elapsed_minutes(open_break.break_start_at, now)
    running_work = max(0, elapsed_minutes(active_session.clock_in_at, now) - running_break)
    total_work = done_work + running_work
    first_clock_in = min(
        [normalize_ts(active_session.clock_in_at)] + [normalize_ts(item.clock_in_at) for item in done]
    )
    metrics = evaluate_day(clock_in=first_clock_in, worked_minutes=total_work, policy=policy)
    events.extend(_session_events(active_session))
    return LiveProjection(
        status=LiveStatus.BREAK if open_break is not None else LiveStatus.IN,
        work_date=work_date,
        last_activity_at=max(events),
        session_id=active_session.id,
        check_in_at=first_clock_in,
        break_started_at=normalize_ts(open_break.break_start_at) if open_break is not None else None,
        work_minutes=total_work,
        break_minutes=done_break + running_break,
        overtime_minutes=metrics.overtime_minutes,
    )


def enforce_active_session_invariant(
    projection: LiveProjection,
    *,
    user_id: int,
    has_active_session: bool,
) -> LiveProjection:
    """A user with an active session is never reported OUT."""
    if has_active_session and projection.status == LiveStatus.OUT:
        logger.warning(
            "live_status_invariant_repaired",
            extra={"user_id": user_id, "work_date": projection.work_date},
        )
        return replace(projection, status=LiveStatus.IN)
    return projection


def _latest_active_session(db: Session, *, user_id: int) -> ClockSession | None:
    return db.scalar(
        select(ClockSession)
        .options(selectinload(ClockSession.breaks))
        .where(
            ClockSession.user_id == user_id,
            ClockSession.status == SessionStatus.ACTIVE,
        )
        .order_by(ClockSession.work_date.desc(), ClockSession.id.desc())
        .execution_options(populate_existing=True)
    )


def refresh_live_status(
    db: Session,
    *,
    user_id: int,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> LiveStatusEntry:
    """Recompute and store the entry for one user. Does not commit."""
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc)
    active_session = _latest_active_session(db, user_id=user_id)
    work_date = active_session.work_date if active_session is not None else local_day(now, active_policy)
    completed_sessions = list(
        db.scalars(
            select(ClockSession)
            .options(selectinload(ClockSession.breaks))
            .where(
                ClockSession.user_id == user_id,
                ClockSession.work_date == work_date,
                ClockSession.status == SessionStatus.COMPLETED,
            )
            .execution_options(populate_existing=True)
        ).all()
    )

    projection = project_live_status(
        active_session=active_session,
        completed_sessions=completed_sessions,
        work_date=work_date,
        now_utc=now,
        policy=active_policy,
    )
    projection = enforce_active_session_invariant(
        projection,
        user_id=user_id,
        has_active_session=active_session is not None,
    )

    entry = db.scalar(select(LiveStatusEntry).where(LiveStatusEntry.user_id == user_id))
    if entry is None:
        entry = LiveStatusEntry(user_id=user_id)
        db.add(entry)
    entry.work_date = projection.work_date
    entry.status = projection.status
    entry.session_id = projection.session_id
    entry.check_in_at = projection.check_in_at
    entry.check_out_at = projection.check_out_at
    entry.break_started_at = projection.break_started_at
    entry.last_activity_at = projection.last_activity_at
    entry.work_minutes = projection.work_minutes
    entry.break_minutes = projection.break_minutes
    entry.overtime_minutes = projection.overtime_minutes
    entry.refreshed_at = now
    db.flush()
    return entry


def get_live_status(
    db: Session,
    *,
    status_filter: LiveStatus | None = None,
    search: str | None = None,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> LiveStatusBoard:
    """Dashboard read model. Entries that contradict session state are re-projected before reading."""
    active_policy = policy or get_attendance_policy()
    now = normalize_ts(now_utc)
    today = local_day(now, active_policy)

    users = list(
        db.scalars(select(User).where(User.is_active.is_(True)).order_by(User.full_name.asc(), User.id.asc())).all()
    )
    entries = {entry.user_id: entry for entry in db.scalars(select(LiveStatusEntry)).all()}
    active_user_ids = set(
        db.scalars(select(ClockSession.user_id).where(ClockSession.status == SessionStatus.ACTIVE)).all()
    )

    repaired = False
    for user in users:
        entry = entries.get(user.id)
        has_active = user.id in active_user_ids
        stale_out = entry is not None and entry.status == LiveStatus.OUT and has_active
        stale_in = entry is not None and entry.status != LiveStatus.OUT and not has_active
        if (entry is None and has_active) or stale_out or stale_in:
            entries[user.id] = refresh_live_status(db, user_id=user.id, now_utc=now, policy=active_policy)
            repaired = True
    if repaired:
        db.commit()

    counts = {status: 0 for status in LiveStatus}
    members: list[tuple[User, LiveStatusEntry | None]] = []
    needle = (search or "").strip().lower()
    for user in users:
        entry = entries.get(user.id)
        if entry is not None and entry.status == LiveStatus.OUT and entry.work_date != today:
            entry = None
        status = entry.status if entry is not None else LiveStatus.OUT
        counts[status] += 1

        if needle and needle not in user.full_name.lower() and needle not in user.email.lower():
            continue
        if status_filter is not None and status != status_filter:
            continue
        members.append((user, entry))

    return LiveStatusBoard(total=len(users), counts=counts, members=members)


def rebuild_live_status(
    db: Session,
    *,
    user_id: int | None = None,
    now_utc: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> int:
    stmt = select(User.id).where(User.is_active.is_(True))
    if user_id is not None:
        stmt = select(User.id).where(User.id == user_id)
    user_ids = list(db.scalars(stmt).all())
    for item in user_ids:
        refresh_live_status(db, user_id=item, now_utc=now_utc, policy=policy)
    db.commit()
    logger.info("live_status_rebuilt", extra={"user_id": user_id, "users": len(user_ids)})
    return len(user_ids)
