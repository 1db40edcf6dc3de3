from datetime import date, datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from timekeeper.db import get_db
from timekeeper.errors import NotAuthorized, ValidationFailed
from timekeeper.models import LiveStatus, RecordSource, User, UserRole
from timekeeper.routers.common import audit_request
from timekeeper.schemas import (
    DailyRecordListResponse,
    DailyRecordRead,
    LiveStatusItemRead,
    LiveStatusResponse,
    LiveStatusSummaryRead,
    PaginationRead,
    RebuildRequest,
    RebuildResponse,
)
from timekeeper.security import PRIVILEGED_ROLES, get_caller_user, require_roles
from timekeeper.services.daily_records import (
    DailyRecordFilter,
    get_daily_record,
    list_daily_records,
    rebuild_daily_records,
)
from timekeeper.services.live_status import get_live_status, rebuild_live_status
from timekeeper.settings import get_settings

router = APIRouter(tags=["attendance"])

require_dashboard_role = require_roles(UserRole.ADMIN, UserRole.HR)


@router.get("/api/attendance/daily-records", response_model=DailyRecordListResponse)
def list_daily_records_endpoint(
    user_id: int | None = Query(default=None, ge=1),
    role: UserRole | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    source: RecordSource | None = Query(default=None),
    late_only: bool = Query(default=False),
    overtime_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    sort_by: Literal["date", "work_minutes", "overtime_minutes"] = Query(default="date"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> DailyRecordListResponse:
    if start_date is not None and end_date is not None and end_date < start_date:
        raise ValidationFailed("end_date must be greater than or equal to start_date")

    if caller.role not in PRIVILEGED_ROLES:
        # employees only ever see their own rows
        user_id = caller.id
        role = None

    result = list_daily_records(
        db,
        DailyRecordFilter(
            user_id=user_id,
            role=role,
            start_date=start_date,
            end_date=end_date,
            source=source,
            late_only=late_only,
            overtime_only=overtime_only,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        ),
    )
    return DailyRecordListResponse(
        items=[DailyRecordRead.model_validate(item) for item in result.items],
        pagination=PaginationRead(
            page=result.page,
            limit=result.limit,
            total=result.total,
            pages=result.pages,
        ),
    )


@router.get("/api/attendance/daily-records/{user_id}/{work_date}", response_model=DailyRecordRead)
def get_daily_record_endpoint(
    user_id: int,
    work_date: date,
    caller: User = Depends(get_caller_user),
    db: Session = Depends(get_db),
) -> DailyRecordRead:
    if caller.role not in PRIVILEGED_ROLES and caller.id != user_id:
        raise NotAuthorized()
    return DailyRecordRead.model_validate(get_daily_record(db, user_id=user_id, work_date=work_date))


@router.get(
    "/api/live-attendance",
    response_model=LiveStatusResponse,
    dependencies=[Depends(require_dashboard_role)],
)
def live_attendance_endpoint(
    status: Literal["ALL", "IN", "BREAK", "OUT"] = Query(default="ALL"),
    search: str | None = Query(default=None, max_length=255),
    db: Session = Depends(get_db),
) -> LiveStatusResponse:
    now = datetime.now(timezone.utc)
    board = get_live_status(
        db,
        status_filter=None if status == "ALL" else LiveStatus(status),
        search=search,
        now_utc=now,
    )

    items: list[LiveStatusItemRead] = []
    for member, entry in board.members:
        if entry is None:
            items.append(
                LiveStatusItemRead(
                    user_id=member.id,
                    full_name=member.full_name,
                    email=member.email,
                    role=member.role,
                    status=LiveStatus.OUT,
                )
            )
            continue
        items.append(
            LiveStatusItemRead(
                user_id=member.id,
                full_name=member.full_name,
                email=member.email,
                role=member.role,
                status=entry.status,
                work_date=entry.work_date,
                session_id=entry.session_id,
                check_in_at=entry.check_in_at,
                check_out_at=entry.check_out_at,
                break_started_at=entry.break_started_at,
                last_activity_at=entry.last_activity_at,
                work_minutes=entry.work_minutes,
                break_minutes=entry.break_minutes,
                overtime_minutes=entry.overtime_minutes,
            )
        )

    return LiveStatusResponse(
        summary=LiveStatusSummaryRead(
            total=board.total,
            in_=board.counts[LiveStatus.IN],
            break_=board.counts[LiveStatus.BREAK],
            out=board.counts[LiveStatus.OUT],
        ),
        items=items,
        poll_interval_seconds=get_settings().live_status_poll_interval_seconds,
        generated_at_utc=now,
    )


@router.post("/api/admin/projections/rebuild", response_model=RebuildResponse)
def rebuild_projections_endpoint(
    payload: RebuildRequest,
    request: Request,
    caller: User = Depends(require_dashboard_role),
    db: Session = Depends(get_db),
) -> RebuildResponse:
    if payload.start_date is not None and payload.end_date is not None and payload.end_date < payload.start_date:
        raise ValidationFailed("end_date must be greater than or equal to start_date")

    response = RebuildResponse()
    if payload.target in ("daily_records", "all"):
        response.daily_records = rebuild_daily_records(
            db,
            user_id=payload.user_id,
            start_date=payload.start_date,
            end_date=payload.end_date,
        )
    if payload.target in ("live_status", "all"):
        response.live_status_entries = rebuild_live_status(db, user_id=payload.user_id)

    audit_request(
        db,
        request,
        actor=caller,
        action="projection_rebuild",
        entity_type="projection",
        entity_id=payload.target,
        affected_user_id=payload.user_id,
        new_values={
            "start_date": payload.start_date.isoformat() if payload.start_date else None,
            "end_date": payload.end_date.isoformat() if payload.end_date else None,
            "daily_records": response.daily_records,
            "live_status_entries": response.live_status_entries,
        },
    )
    return response
