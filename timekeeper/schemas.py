from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from timekeeper.models import (
    DeviceType,
    LeaveDuration,
    LeaveStatus,
    LiveStatus,
    RecordSource,
    SessionStatus,
    UserRole,
)


class ClockInRequest(BaseModel):
    device_type: DeviceType = DeviceType.WEB
    location: str | None = Field(default=None, max_length=255)
    note: str | None = Field(default=None, max_length=1000)


class ClockOutRequest(BaseModel):
    work_date: date | None = None
    note: str | None = Field(default=None, max_length=1000)
    device_type: DeviceType | None = None


class BreakStartRequest(BaseModel):
    session_id: int | None = Field(default=None, ge=1)
    reason: str | None = Field(default=None, max_length=500)


class BreakEndRequest(BaseModel):
    session_id: int | None = Field(default=None, ge=1)


class BreakRead(BaseModel):
    id: int
    session_id: int
    break_start_at: datetime
    break_end_at: datetime | None
    duration_minutes: int
    reason: str
    closed_by_clock_out: bool

    model_config = ConfigDict(from_attributes=True)


class ClockSessionRead(BaseModel):
    id: int
    user_id: int
    work_date: date
    clock_in_at: datetime
    clock_out_at: datetime | None
    status: SessionStatus
    source: RecordSource
    leave_request_id: int | None
    break_minutes: int
    work_minutes: int
    device_type: DeviceType
    location: str | None
    notes: str | None
    clock_out_note: str | None = None
    is_manual: bool = False
    corrected_by_id: int | None = None
    correction_reason: str | None = None
    breaks: list[BreakRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class CurrentSessionResponse(BaseModel):
    session: ClockSessionRead | None
    on_break: bool = False
    elapsed_minutes: int = 0
    running_break_minutes: int = 0


class DayMetricsRead(BaseModel):
    net_work_minutes: int
    is_late_check_in: bool
    is_early_check_out: bool
    is_overtime: bool
    overtime_minutes: int
    attendance_percentage: int

    model_config = ConfigDict(from_attributes=True)


class DailyRecordRead(BaseModel):
    id: int
    user_id: int
    user_role: UserRole
    work_date: date
    clock_in_at: datetime
    clock_out_at: datetime | None
    work_minutes: int
    break_minutes: int
    overtime_minutes: int
    is_late_check_in: bool
    is_early_check_out: bool
    is_overtime: bool
    attendance_percentage: int
    device_type: DeviceType
    location: str | None
    notes: str | None
    source: RecordSource
    leave_request_id: int | None
    session_count: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ClockOutResponse(BaseModel):
    session: ClockSessionRead
    elapsed_minutes: int
    metrics: DayMetricsRead
    forced_break_closed: bool
    record: DailyRecordRead | None
    replaced_source: RecordSource | None = None


class BreakEndResponse(BaseModel):
    break_interval: BreakRead
    cumulative_break_minutes: int


class ManualSessionCreateRequest(BaseModel):
    user_id: int = Field(ge=1)
    work_date: date
    clock_in_at: datetime
    clock_out_at: datetime
    reason: str = Field(min_length=1, max_length=1000)


class ManualSessionUpdateRequest(BaseModel):
    clock_in_at: datetime | None = None
    clock_out_at: datetime | None = None
    reason: str = Field(min_length=1, max_length=1000)


class ManualSessionResponse(BaseModel):
    session: ClockSessionRead
    record: DailyRecordRead | None


class PaginationRead(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class DailyRecordListResponse(BaseModel):
    items: list[DailyRecordRead]
    pagination: PaginationRead


class LiveStatusItemRead(BaseModel):
    user_id: int
    full_name: str
    email: str
    role: UserRole
    status: LiveStatus
    work_date: date | None = None
    session_id: int | None = None
    check_in_at: datetime | None = None
    check_out_at: datetime | None = None
    break_started_at: datetime | None = None
    last_activity_at: datetime | None = None
    work_minutes: int = 0
    break_minutes: int = 0
    overtime_minutes: int = 0


class LiveStatusSummaryRead(BaseModel):
    total: int
    in_: int = Field(serialization_alias="in")
    break_: int = Field(serialization_alias="break")
    out: int


class LiveStatusResponse(BaseModel):
    summary: LiveStatusSummaryRead
    items: list[LiveStatusItemRead]
    poll_interval_seconds: int
    generated_at_utc: datetime


class LeaveApplyRequest(BaseModel):
    leave_type_id: int = Field(ge=1)
    start_date: date
    end_date: date
    duration: LeaveDuration = LeaveDuration.FULL_DAY
    reason: str = Field(min_length=1, max_length=2000)


class LeaveDecisionRequest(BaseModel):
    comment: str | None = Field(default=None, max_length=2000)


class LeaveRequestRead(BaseModel):
    id: int
    user_id: int
    leave_type_id: int
    start_date: date
    end_date: date
    duration: LeaveDuration
    reason: str
    status: LeaveStatus
    approver_id: int | None
    manager_comment: str | None
    debited_minutes: int
    applied_at: datetime
    decided_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class LeaveApprovalResponse(BaseModel):
    leave_request: LeaveRequestRead
    debited_minutes: int
    placeholder_dates: list[date]
    skipped_dates: list[date]


class LeaveCancelResponse(BaseModel):
    leave_request: LeaveRequestRead
    previous_status: LeaveStatus
    credited_minutes: int
    retracted_dates: list[date]


class LeaveBalanceRead(BaseModel):
    id: int
    user_id: int
    year: int
    leave_type_id: int
    leave_type_code: str
    leave_type_name: str
    total_allocated_minutes: int
    used_minutes: int
    remaining_minutes: int


class RebuildRequest(BaseModel):
    target: Literal["daily_records", "live_status", "all"] = "all"
    user_id: int | None = Field(default=None, ge=1)
    start_date: date | None = None
    end_date: date | None = None


class RebuildResponse(BaseModel):
    ok: bool = True
    daily_records: int = 0
    live_status_entries: int = 0
