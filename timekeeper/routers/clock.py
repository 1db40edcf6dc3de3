from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from timekeeper.db import get_db
from timekeeper.models import DailyAttendanceRecord, RecordSource, User
from timekeeper.routers.common import audit_request
from timekeeper.schemas import (
    BreakEndRequest,
    BreakEndResponse,
    BreakRead,
    BreakStartRequest,
    ClockInRequest,
    ClockOutRequest,
    ClockOutResponse,
    ClockSessionRead,
    CurrentSessionResponse,
    DailyRecordRead,
    DayMetricsRead,
    ManualSessionCreateRequest,
    ManualSessionResponse,
    ManualSessionUpdateRequest,
)
from timekeeper.security import get_caller_user
from timekeeper.services.clock import (
    CorrectionResult,
    clock_in,
    clock_out,
    create_manual_session,
    end_break,
    get_current_session,
    retract_manual_session,
    start_break,
    update_manual_session,
)
from timekeeper.services.policy import elapsed_minutes

router = APIRouter(prefix="/api/time-entries", tags=["time-entries"])


def _audit_placeholder_override(
    db: Session,
    request: Request,
    *,
    actor: User,
    record: DailyAttendanceRecord | None,
    replaced_source: RecordSource | None,
) -> None:
    if replaced_source != RecordSource.LEAVE_PLACEHOLDER or record is None or record.source != RecordSource.CLOCK:
        return
    audit_request(
        db,
        request,
        actor=actor,
        action="daily_record_source_override",
        entity_type="daily_attendance_record",
        entity_id=record.id,
        affected_user_id=record.user_id,
        old_values={"source": RecordSource.LEAVE_PLACEHOLDER.value},
        new_values={"source": record.source.value, "work_minutes": record.work_minutes},
        reason="Clock data takes precedence over leave placeholder",
    )


@router.post("/clock-in", response_model=ClockSessionRead, status_code=status.HTTP_201_CREATED)
def clock_in_endpoint(
    payload: ClockInRequest,
    request: Request,
    user: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> ClockSessionRead:
    session = clock_in(
        db,
        user=user,
        device_type=payload.device_type,
        location=payload.location,
        note=payload.note,
    )
    audit_request(
        db,
        request,
        actor=user,
        action="clock_in",
        entity_type="clock_session",
        entity_id=session.id,
        affected_user_id=user.id,
        new_values={
            "work_date": session.work_date.isoformat(),
            "clock_in_at": session.clock_in_at.isoformat(),
            "device_type": session.device_type.value,
            "location": session.location,
        },
    )
    return ClockSessionRead.model_validate(session)


@router.post("/clock-out", response_model=ClockOutResponse)
def clock_out_endpoint(
    payload: ClockOutRequest,
    request: Request,
    user: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> ClockOutResponse:
    result = clock_out(
        db,
        user=user,
        work_date=payload.work_date,
        note=payload.note,
        device_type=payload.device_type,
    )
    session = result.session
    audit_request(
        db,
        request,
        actor=user,
        action="clock_out",
        entity_type="clock_session",
        entity_id=session.id,
        affected_user_id=user.id,
        old_values={"status": "ACTIVE"},
        new_values={
            "status": session.status.value,
            "clock_out_at": session.clock_out_at.isoformat() if session.clock_out_at else None,
            "break_minutes": session.break_minutes,
            "work_minutes": session.work_minutes,
            "forced_break_close": result.forced_break is not None,
        },
    )
    _audit_placeholder_override(
        db,
        request,
        actor=user,
        record=result.record,
        replaced_source=result.replaced_source,
    )

    return ClockOutResponse(
        session=ClockSessionRead.model_validate(session),
        elapsed_minutes=result.elapsed_minutes,
        metrics=DayMetricsRead.model_validate(result.metrics),
        forced_break_closed=result.forced_break is not None,
        record=DailyRecordRead.model_validate(result.record) if result.record is not None else None,
        replaced_source=result.replaced_source,
    )


@router.post("/break-start", response_model=BreakRead, status_code=status.HTTP_201_CREATED)
def break_start_endpoint(
    payload: BreakStartRequest,
    request: Request,
    user: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> BreakRead:
    interval = start_break(db, user=user, session_id=payload.session_id, reason=payload.reason)
    audit_request(
        db,
        request,
        actor=user,
        action="break_start",
        entity_type="session_break",
        entity_id=interval.id,
        affected_user_id=user.id,
        new_values={
            "session_id": interval.session_id,
            "break_start_at": interval.break_start_at.isoformat(),
            "reason": interval.reason,
        },
    )
    return BreakRead.model_validate(interval)


@router.post("/break-end", response_model=BreakEndResponse)
def break_end_endpoint(
    payload: BreakEndRequest,
    request: Request,
    user: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> BreakEndResponse:
    result = end_break(db, user=user, session_id=payload.session_id)
    interval = result.break_interval
    audit_request(
        db,
        request,
        actor=user,
        action="break_end",
        entity_type="session_break",
        entity_id=interval.id,
        affected_user_id=user.id,
        new_values={
            "session_id": interval.session_id,
            "break_end_at": interval.break_end_at.isoformat() if interval.break_end_at else None,
            "duration_minutes": interval.duration_minutes,
            "cumulative_break_minutes": result.session.break_minutes,
        },
    )
    return BreakEndResponse(
        break_interval=BreakRead.model_validate(interval),
        cumulative_break_minutes=result.session.break_minutes,
    )


@router.get("/current", response_model=CurrentSessionResponse)
def current_session_endpoint(
    user: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> CurrentSessionResponse:
    now = datetime.now(timezone.utc)
    session = get_current_session(db, user=user, now_utc=now)
    if session is None:
        return CurrentSessionResponse(session=None)

    open_break = next((item for item in session.breaks if item.break_end_at is None), None)
    running_break = session.break_minutes
    if open_break is not None:
        running_break += elapsed_minutes(open_break.break_start_at, now)
    return CurrentSessionResponse(
        session=ClockSessionRead.model_validate(session),
        on_break=open_break is not None,
        elapsed_minutes=elapsed_minutes(session.clock_in_at, now),
        running_break_minutes=running_break,
    )


def _manual_response(result: CorrectionResult) -> ManualSessionResponse:
    return ManualSessionResponse(
        session=ClockSessionRead.model_validate(result.session),
        record=DailyRecordRead.model_validate(result.record) if result.record is not None else None,
    )


@router.post("/manual", response_model=ManualSessionResponse, status_code=status.HTTP_201_CREATED)
def create_manual_entry_endpoint(
    payload: ManualSessionCreateRequest,
    request: Request,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> ManualSessionResponse:
    result = create_manual_session(
        db,
        actor=caller,
        user_id=payload.user_id,
        work_date=payload.work_date,
        clock_in_at=payload.clock_in_at,
        clock_out_at=payload.clock_out_at,
        reason=payload.reason,
    )
    session = result.session
    audit_request(
        db,
        request,
        actor=caller,
        action="manual_entry_create",
        entity_type="clock_session",
        entity_id=session.id,
        affected_user_id=session.user_id,
        new_values={
            "work_date": session.work_date.isoformat(),
            "clock_in_at": session.clock_in_at.isoformat(),
            "clock_out_at": session.clock_out_at.isoformat() if session.clock_out_at else None,
            "work_minutes": session.work_minutes,
        },
        reason=session.correction_reason,
    )
    _audit_placeholder_override(
        db,
        request,
        actor=caller,
        record=result.record,
        replaced_source=result.replaced_source,
    )
    return _manual_response(result)


@router.put("/manual/{session_id}", response_model=ManualSessionResponse)
def update_manual_entry_endpoint(
    session_id: int,
    payload: ManualSessionUpdateRequest,
    request: Request,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> ManualSessionResponse:
    result = update_manual_session(
        db,
        actor=caller,
        session_id=session_id,
        clock_in_at=payload.clock_in_at,
        clock_out_at=payload.clock_out_at,
        reason=payload.reason,
    )
    session = result.session
    audit_request(
        db,
        request,
        actor=caller,
        action="manual_entry_update",
        entity_type="clock_session",
        entity_id=session.id,
        affected_user_id=session.user_id,
        old_values=result.previous,
        new_values={
            "clock_in_at": session.clock_in_at.isoformat(),
            "clock_out_at": session.clock_out_at.isoformat() if session.clock_out_at else None,
            "work_minutes": session.work_minutes,
        },
        reason=session.correction_reason,
    )
    return _manual_response(result)


@router.delete("/manual/{session_id}", response_model=ManualSessionResponse)
def delete_manual_entry_endpoint(
    session_id: int,
    request: Request,
    reason: str | None = Query(default=None, max_length=1000),
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> ManualSessionResponse:
    result = retract_manual_session(db, actor=caller, session_id=session_id, reason=reason)
    session = result.session
    audit_request(
        db,
        request,
        actor=caller,
        action="manual_entry_delete",
        entity_type="clock_session",
        entity_id=session.id,
        affected_user_id=session.user_id,
        old_values=result.previous,
        new_values={"retracted_at": session.retracted_at.isoformat() if session.retracted_at else None},
        reason=session.correction_reason,
    )
    return _manual_response(result)
