from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timekeeper.errors import (
    InsufficientBalance,
    InvalidState,
    NotAuthorized,
    NotFound,
    ValidationFailed,
)
from timekeeper.models import (
    ClockSession,
    DailyAttendanceRecord,
    DeviceType,
    LeaveBalance,
    LeaveDuration,
    LeaveRequest,
    LeaveStatus,
    LeaveType,
    RecordSource,
    SessionStatus,
    User,
    UserRole,
)
from timekeeper.services.daily_records import sync_daily_record
from timekeeper.services.policy import (
    AttendancePolicy,
    get_attendance_policy,
    local_midnight_utc,
    requested_leave_minutes,
)

logger = logging.getLogger("timekeeper.leaves")

OPEN_STATUSES = (LeaveStatus.PENDING, LeaveStatus.APPROVED)


@dataclass(frozen=True)
class ApprovalResult:
    leave_request: LeaveRequest
    debited_minutes: int
    placeholder_dates: list[date]
    skipped_dates: list[date]


@dataclass(frozen=True)
class CancellationResult:
    leave_request: LeaveRequest
    previous_status: LeaveStatus
    credited_minutes: int
    retracted_dates: list[date]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iter_dates(start_date: date, end_date: date):
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def _get_leave_type(db: Session, leave_type_id: int) -> LeaveType:
    leave_type = db.get(LeaveType, leave_type_id)
    if leave_type is None or not leave_type.is_active:
        raise NotFound("Leave type not found.")
    return leave_type


def _get_leave_request(db: Session, leave_request_id: int, *, for_update: bool = False) -> LeaveRequest:
    stmt = select(LeaveRequest).where(LeaveRequest.id == leave_request_id)
    if for_update:
        stmt = stmt.with_for_update()
    leave_request = db.scalar(stmt.execution_options(populate_existing=True))
    if leave_request is None:
        raise NotFound("Leave request not found.")
    return leave_request


def _find_balance(db: Session, *, user_id: int, year: int, leave_type_id: int) -> LeaveBalance | None:
    return db.scalar(
        select(LeaveBalance)
        .where(
            LeaveBalance.user_id == user_id,
            LeaveBalance.year == year,
            LeaveBalance.leave_type_id == leave_type_id,
        )
        .execution_options(populate_existing=True)
    )


def ensure_leave_balance(db: Session, *, user_id: int, year: int, leave_type: LeaveType) -> LeaveBalance:
    """Return the (user, year, type) balance, allocating it from the type quota on first use."""
    balance = _find_balance(db, user_id=user_id, year=year, leave_type_id=leave_type.id)
    if balance is not None:
        return balance

    balance = LeaveBalance(
        user_id=user_id,
        year=year,
        leave_type_id=leave_type.id,
        total_allocated_minutes=leave_type.annual_quota_minutes,
        used_minutes=0,
    )
    db.add(balance)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        balance = _find_balance(db, user_id=user_id, year=year, leave_type_id=leave_type.id)
        if balance is None:
            raise
        return balance

    logger.info(
        "leave_balance_allocated",
        extra={
            "user_id": user_id,
            "year": year,
            "leave_type_id": leave_type.id,
            "total_allocated_minutes": balance.total_allocated_minutes,
        },
    )
    return balance


def _validate_range(*, start_date: date, end_date: date, duration: LeaveDuration) -> None:
    if end_date < start_date:
        raise ValidationFailed("end_date must be greater than or equal to start_date")
    if duration != LeaveDuration.FULL_DAY and start_date != end_date:
        raise ValidationFailed("Half-day leave must start and end on the same date")
    weekend_days = [item for item in _iter_dates(start_date, end_date) if item.weekday() >= 5]
    if weekend_days:
        raise ValidationFailed("Leave range must not include weekends")


def _has_overlap(db: Session, *, user_id: int, start_date: date, end_date: date) -> bool:
    existing = db.scalar(
        select(LeaveRequest.id)
        .where(
            LeaveRequest.user_id == user_id,
            LeaveRequest.status.in_(OPEN_STATUSES),
            LeaveRequest.start_date <= end_date,
            LeaveRequest.end_date >= start_date,
        )
        .limit(1)
    )
    return existing is not None


def apply_leave(
    db: Session,
    *,
    user: User,
    leave_type_id: int,
    start_date: date,
    end_date: date,
    duration: LeaveDuration = LeaveDuration.FULL_DAY,
    reason: str,
    policy: AttendancePolicy | None = None,
) -> LeaveRequest:
    active_policy = policy or get_attendance_policy()
    reason_text = (reason or "").strip()
    if not reason_text:
        raise ValidationFailed("reason is required")
    _validate_range(start_date=start_date, end_date=end_date, duration=duration)
    leave_type = _get_leave_type(db, leave_type_id)

    if _has_overlap(db, user_id=user.id, start_date=start_date, end_date=end_date):
        raise InvalidState("You already have a leave request for these dates.")

    minutes = requested_leave_minutes(
        duration=duration,
        start_date=start_date,
        end_date=end_date,
        policy=active_policy,
    )
    balance: LeaveBalance | None = None
    if leave_type.consumes_quota:
        balance = ensure_leave_balance(db, user_id=user.id, year=start_date.year, leave_type=leave_type)
        remaining = balance.total_allocated_minutes - balance.used_minutes
        if minutes > remaining:
            raise InsufficientBalance(
                f"Insufficient leave balance: {remaining} minutes remaining, {minutes} requested."
            )

    leave_request = LeaveRequest(
        user_id=user.id,
        leave_type_id=leave_type.id,
        start_date=start_date,
        end_date=end_date,
        duration=duration,
        reason=reason_text,
        status=LeaveStatus.PENDING,
    )
    approval: ApprovalResult | None = None
    try:
        db.add(leave_request)
        if not leave_type.requires_approval:
            db.flush()
            approval = _approve_pending(
                db,
                leave_request=leave_request,
                leave_type=leave_type,
                balance=balance,
                approver=None,
                comment=None,
                policy=active_policy,
            )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.exception("leave_apply_conflict", extra={"user_id": user.id, "leave_type_id": leave_type.id})
        raise InvalidState("Leave request conflicted with a concurrent change; retry.") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "leave_applied",
        extra={
            "leave_request_id": leave_request.id,
            "user_id": user.id,
            "leave_type_id": leave_type.id,
            "requested_minutes": minutes,
            "auto_approved": approval is not None,
        },
    )
    if approval is not None:
        _log_approval(approval)
    return leave_request


def _debit_balance(db: Session, *, balance: LeaveBalance, minutes: int) -> bool:
    result = db.execute(
        update(LeaveBalance)
        .where(
            LeaveBalance.id == balance.id,
            LeaveBalance.used_minutes + minutes <= LeaveBalance.total_allocated_minutes,
        )
        .values(used_minutes=LeaveBalance.used_minutes + minutes, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    db.expire(balance)
    return result.rowcount == 1


def _credit_balance(db: Session, *, user_id: int, year: int, leave_type_id: int, minutes: int) -> int:
    remaining = LeaveBalance.used_minutes - minutes
    result = db.execute(
        update(LeaveBalance)
        .where(
            LeaveBalance.user_id == user_id,
            LeaveBalance.year == year,
            LeaveBalance.leave_type_id == leave_type_id,
        )
        .values(used_minutes=case((remaining < 0, 0), else_=remaining), updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _day_is_accounted(db: Session, *, user_id: int, work_date: date) -> bool:
    session_id = db.scalar(
        select(ClockSession.id)
        .where(
            ClockSession.user_id == user_id,
            ClockSession.work_date == work_date,
            ClockSession.retracted_at.is_(None),
        )
        .limit(1)
    )
    if session_id is not None:
        return True
    record_id = db.scalar(
        select(DailyAttendanceRecord.id).where(
            DailyAttendanceRecord.user_id == user_id,
            DailyAttendanceRecord.work_date == work_date,
        )
    )
    return record_id is not None


def _placeholder_session(
    *,
    leave_request: LeaveRequest,
    leave_type: LeaveType,
    work_date: date,
    policy: AttendancePolicy,
) -> ClockSession:
    midnight = local_midnight_utc(work_date, policy)
    return ClockSession(
        user_id=leave_request.user_id,
        work_date=work_date,
        clock_in_at=midnight,
        clock_out_at=midnight,
        status=SessionStatus.COMPLETED,
        source=RecordSource.LEAVE_PLACEHOLDER,
        leave_request_id=leave_request.id,
        break_minutes=0,
        work_minutes=0,
        device_type=DeviceType.WEB,
        notes=f"Leave: {leave_type.name}",
    )


def _approve_pending(
    db: Session,
    *,
    leave_request: LeaveRequest,
    leave_type: LeaveType,
    balance: LeaveBalance | None,
    approver: User | None,
    comment: str | None,
    policy: AttendancePolicy,
) -> ApprovalResult:
    """Debit, flip to approved and lay placeholders without committing."""
    minutes = requested_leave_minutes(
        duration=leave_request.duration,
        start_date=leave_request.start_date,
        end_date=leave_request.end_date,
        policy=policy,
    )
    debited = 0
    if balance is not None:
        if not _debit_balance(db, balance=balance, minutes=minutes):
            raise InsufficientBalance()
        debited = minutes

    leave_request.status = LeaveStatus.APPROVED
    leave_request.approver_id = approver.id if approver is not None else None
    leave_request.manager_comment = (comment or "").strip() or None
    leave_request.debited_minutes = debited
    leave_request.debited_balance_year = leave_request.start_date.year if debited else None
    leave_request.decided_at = _utcnow()

    user = db.get(User, leave_request.user_id)
    if user is None:
        raise NotFound("User not found.")

    placeholder_dates: list[date] = []
    skipped_dates: list[date] = []
    for work_date in _iter_dates(leave_request.start_date, leave_request.end_date):
        if _day_is_accounted(db, user_id=user.id, work_date=work_date):
            skipped_dates.append(work_date)
            continue
        db.add(
            _placeholder_session(
                leave_request=leave_request,
                leave_type=leave_type,
                work_date=work_date,
                policy=policy,
            )
        )
        db.flush()
        sync_daily_record(db, user=user, work_date=work_date, policy=policy)
        placeholder_dates.append(work_date)

    return ApprovalResult(
        leave_request=leave_request,
        debited_minutes=debited,
        placeholder_dates=placeholder_dates,
        skipped_dates=skipped_dates,
    )


def _log_approval(result: ApprovalResult) -> None:
    leave_request = result.leave_request
    logger.info(
        "leave_approved",
        extra={
            "leave_request_id": leave_request.id,
            "user_id": leave_request.user_id,
            "approver_id": leave_request.approver_id,
            "debited_minutes": result.debited_minutes,
            "placeholders": len(result.placeholder_dates),
            "skipped_dates": len(result.skipped_dates),
        },
    )


def approve_leave(
    db: Session,
    *,
    leave_request_id: int,
    approver: User,
    comment: str | None = None,
    policy: AttendancePolicy | None = None,
) -> ApprovalResult:
    """Approve a pending request as one unit of work.

    Balance debit, status flip and every placeholder session either commit
    together or not at all.
    """
    active_policy = policy or get_attendance_policy()
    if approver.role != UserRole.ADMIN:
        raise NotAuthorized("Only admins can approve leave requests.")

    leave_request = _get_leave_request(db, leave_request_id)
    leave_type = _get_leave_type(db, leave_request.leave_type_id)
    balance: LeaveBalance | None = None
    if leave_type.consumes_quota:
        # Allocation commits on its own with used_minutes=0; only the debit belongs to the approval unit.
        balance = ensure_leave_balance(
            db,
            user_id=leave_request.user_id,
            year=leave_request.start_date.year,
            leave_type=leave_type,
        )

    try:
        leave_request = _get_leave_request(db, leave_request_id, for_update=True)
        if leave_request.status != LeaveStatus.PENDING:
            raise InvalidState(f"Leave request is {leave_request.status.value.lower()}, not pending.")
        result = _approve_pending(
            db,
            leave_request=leave_request,
            leave_type=leave_type,
            balance=balance,
            approver=approver,
            comment=comment,
            policy=active_policy,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.exception("leave_approval_conflict", extra={"leave_request_id": leave_request_id})
        raise InvalidState("Leave approval conflicted with a concurrent change; retry.") from exc
    except Exception:
        db.rollback()
        raise

    _log_approval(result)
    return result


def reject_leave(
    db: Session,
    *,
    leave_request_id: int,
    approver: User,
    comment: str | None = None,
) -> LeaveRequest:
    if approver.role != UserRole.ADMIN:
        raise NotAuthorized("Only admins can reject leave requests.")

    leave_request = _get_leave_request(db, leave_request_id, for_update=True)
    if leave_request.status != LeaveStatus.PENDING:
        db.rollback()
        raise InvalidState(f"Leave request is {leave_request.status.value.lower()}, not pending.")

    leave_request.status = LeaveStatus.REJECTED
    leave_request.approver_id = approver.id
    leave_request.manager_comment = (comment or "").strip() or None
    leave_request.decided_at = _utcnow()
    db.commit()
    logger.info(
        "leave_rejected",
        extra={"leave_request_id": leave_request.id, "user_id": leave_request.user_id, "approver_id": approver.id},
    )
    return leave_request


def cancel_leave(
    db: Session,
    *,
    leave_request_id: int,
    actor: User,
    policy: AttendancePolicy | None = None,
) -> CancellationResult:
    active_policy = policy or get_attendance_policy()
    leave_request = _get_leave_request(db, leave_request_id)
    is_admin = actor.role == UserRole.ADMIN
    if leave_request.user_id != actor.id and not is_admin:
        raise NotAuthorized("You can only cancel your own leave requests.")
    if leave_request.status == LeaveStatus.APPROVED and not is_admin:
        raise NotAuthorized("Only admins can cancel approved leave requests.")

    try:
        leave_request = _get_leave_request(db, leave_request_id, for_update=True)
        previous_status = leave_request.status
        if previous_status not in OPEN_STATUSES:
            raise InvalidState(f"Leave request is {previous_status.value.lower()} and cannot be cancelled.")

        credited = 0
        retracted_dates: list[date] = []
        if previous_status == LeaveStatus.APPROVED:
            if leave_request.debited_minutes > 0 and leave_request.debited_balance_year is not None:
                _credit_balance(
                    db,
                    user_id=leave_request.user_id,
                    year=leave_request.debited_balance_year,
                    leave_type_id=leave_request.leave_type_id,
                    minutes=leave_request.debited_minutes,
                )
                credited = leave_request.debited_minutes

            now = _utcnow()
            placeholders = db.scalars(
                select(ClockSession).where(
                    ClockSession.leave_request_id == leave_request.id,
                    ClockSession.source == RecordSource.LEAVE_PLACEHOLDER,
                    ClockSession.retracted_at.is_(None),
                )
            ).all()
            for placeholder in placeholders:
                placeholder.retracted_at = now
                retracted_dates.append(placeholder.work_date)
            db.flush()

            user = db.get(User, leave_request.user_id)
            if user is not None:
                for work_date in sorted(set(retracted_dates)):
                    sync_daily_record(db, user=user, work_date=work_date, policy=active_policy)

        leave_request.status = LeaveStatus.CANCELLED
        leave_request.debited_minutes = 0
        leave_request.decided_at = _utcnow()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.exception("leave_cancel_conflict", extra={"leave_request_id": leave_request_id})
        raise InvalidState("Leave cancellation conflicted with a concurrent change; retry.") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "leave_cancelled",
        extra={
            "leave_request_id": leave_request.id,
            "user_id": leave_request.user_id,
            "actor_id": actor.id,
            "previous_status": previous_status,
            "credited_minutes": credited,
            "retracted": len(retracted_dates),
        },
    )
    return CancellationResult(
        leave_request=leave_request,
        previous_status=previous_status,
        credited_minutes=credited,
        retracted_dates=retracted_dates,
    )


def get_leave_request(db: Session, *, leave_request_id: int, actor: User) -> LeaveRequest:
    leave_request = _get_leave_request(db, leave_request_id)
    if leave_request.user_id != actor.id and actor.role not in (UserRole.ADMIN, UserRole.HR, UserRole.MANAGER):
        raise NotFound("Leave request not found.")
    return leave_request


def list_leave_requests(
    db: Session,
    *,
    user_id: int | None = None,
    status: LeaveStatus | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[LeaveRequest]:
    stmt = select(LeaveRequest).order_by(LeaveRequest.start_date.desc(), LeaveRequest.id.desc())
    if user_id is not None:
        stmt = stmt.where(LeaveRequest.user_id == user_id)
    if status is not None:
        stmt = stmt.where(LeaveRequest.status == status)
    if start_date is not None:
        stmt = stmt.where(LeaveRequest.end_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(LeaveRequest.start_date <= end_date)
    return list(db.scalars(stmt).all())


def list_leave_balances(db: Session, *, user_id: int, year: int) -> list[LeaveBalance]:
    return list(
        db.scalars(
            select(LeaveBalance)
            .where(LeaveBalance.user_id == user_id, LeaveBalance.year == year)
            .order_by(LeaveBalance.leave_type_id.asc())
            .execution_options(populate_existing=True)
        ).all()
    )
