from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from timekeeper.db import get_db
from timekeeper.errors import NotAuthorized
from timekeeper.models import LeaveStatus, User
from timekeeper.routers.common import audit_request
from timekeeper.schemas import (
    LeaveApplyRequest,
    LeaveApprovalResponse,
    LeaveBalanceRead,
    LeaveCancelResponse,
    LeaveDecisionRequest,
    LeaveRequestRead,
)
from timekeeper.security import PRIVILEGED_ROLES, get_caller_user
from timekeeper.services.leaves import (
    apply_leave,
    approve_leave,
    cancel_leave,
    get_leave_request,
    list_leave_balances,
    list_leave_requests,
    reject_leave,
)

router = APIRouter(prefix="/api/leaves", tags=["leaves"])


def _leave_snapshot(leave_request) -> dict:
    return {
        "status": leave_request.status.value,
        "start_date": leave_request.start_date.isoformat(),
        "end_date": leave_request.end_date.isoformat(),
        "duration": leave_request.duration.value,
        "debited_minutes": leave_request.debited_minutes,
    }


@router.post("", response_model=LeaveRequestRead, status_code=status.HTTP_201_CREATED)
def apply_leave_endpoint(
    payload: LeaveApplyRequest,
    request: Request,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = apply_leave(
        db,
        user=caller,
        leave_type_id=payload.leave_type_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        duration=payload.duration,
        reason=payload.reason,
    )
    audit_request(
        db,
        request,
        actor=caller,
        action="leave_apply",
        entity_type="leave_request",
        entity_id=leave_request.id,
        affected_user_id=caller.id,
        new_values={**_leave_snapshot(leave_request), "leave_type_id": leave_request.leave_type_id},
    )
    return LeaveRequestRead.model_validate(leave_request)


@router.get("", response_model=list[LeaveRequestRead])
def list_leave_requests_endpoint(
    user_id: int | None = Query(default=None, ge=1),
    status_filter: LeaveStatus | None = Query(default=None, alias="status"),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    if caller.role not in PRIVILEGED_ROLES:
        user_id = caller.id
    rows = list_leave_requests(
        db,
        user_id=user_id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
    )
    return [LeaveRequestRead.model_validate(item) for item in rows]


@router.get("/balances", response_model=list[LeaveBalanceRead])
def list_leave_balances_endpoint(
    year: int | None = Query(default=None, ge=2000, le=2100),
    user_id: int | None = Query(default=None, ge=1),
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> list[LeaveBalanceRead]:
    target_user_id = user_id or caller.id
    if target_user_id != caller.id and caller.role not in PRIVILEGED_ROLES:
        raise NotAuthorized()
    target_year = year or datetime.now(timezone.utc).year
    return [
        LeaveBalanceRead(
            id=item.id,
            user_id=item.user_id,
            year=item.year,
            leave_type_id=item.leave_type_id,
            leave_type_code=item.leave_type.code,
            leave_type_name=item.leave_type.name,
            total_allocated_minutes=item.total_allocated_minutes,
            used_minutes=item.used_minutes,
            remaining_minutes=max(0, item.total_allocated_minutes - item.used_minutes),
        )
        for item in list_leave_balances(db, user_id=target_user_id, year=target_year)
    ]


@router.get("/{leave_request_id}", response_model=LeaveRequestRead)
def get_leave_request_endpoint(
    leave_request_id: int,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    return LeaveRequestRead.model_validate(get_leave_request(db, leave_request_id=leave_request_id, actor=caller))


@router.post("/{leave_request_id}/approve", response_model=LeaveApprovalResponse)
def approve_leave_endpoint(
    leave_request_id: int,
    payload: LeaveDecisionRequest,
    request: Request,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> LeaveApprovalResponse:
    result = approve_leave(db, leave_request_id=leave_request_id, approver=caller, comment=payload.comment)
    leave_request = result.leave_request
    audit_request(
        db,
        request,
        actor=caller,
        action="leave_approve",
        entity_type="leave_request",
        entity_id=leave_request.id,
        affected_user_id=leave_request.user_id,
        old_values={"status": LeaveStatus.PENDING.value},
        new_values={
            **_leave_snapshot(leave_request),
            "placeholder_dates": [item.isoformat() for item in result.placeholder_dates],
        },
        reason=leave_request.manager_comment,
    )
    return LeaveApprovalResponse(
        leave_request=LeaveRequestRead.model_validate(leave_request),
        debited_minutes=result.debited_minutes,
        placeholder_dates=result.placeholder_dates,
        skipped_dates=result.skipped_dates,
    )


@router.post("/{leave_request_id}/reject", response_model=LeaveRequestRead)
def reject_leave_endpoint(
    leave_request_id: int,
    payload: LeaveDecisionRequest,
    request: Request,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave_request = reject_leave(db, leave_request_id=leave_request_id, approver=caller, comment=payload.comment)
    audit_request(
        db,
        request,
        actor=caller,
        action="leave_reject",
        entity_type="leave_request",
        entity_id=leave_request.id,
        affected_user_id=leave_request.user_id,
        old_values={"status": LeaveStatus.PENDING.value},
        new_values=_leave_snapshot(leave_request),
        reason=leave_request.manager_comment,
    )
    return LeaveRequestRead.model_validate(leave_request)


@router.post("/{leave_request_id}/cancel", response_model=LeaveCancelResponse)
def cancel_leave_endpoint(
    leave_request_id: int,
    request: Request,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> LeaveCancelResponse:
    result = cancel_leave(db, leave_request_id=leave_request_id, actor=caller)
    leave_request = result.leave_request
    audit_request(
        db,
        request,
        actor=caller,
        action="leave_cancel",
        entity_type="leave_request",
        entity_id=leave_request.id,
        affected_user_id=leave_request.user_id,
        old_values={"status": result.previous_status.value},
        new_values={
            **_leave_snapshot(leave_request),
            "credited_minutes": result.credited_minutes,
            "retracted_dates": [item.isoformat() for item in result.retracted_dates],
        },
    )
    return LeaveCancelResponse(
        leave_request=LeaveRequestRead.model_validate(leave_request),
        previous_status=result.previous_status,
        credited_minutes=result.credited_minutes,
        retracted_dates=result.retracted_dates,
    )
