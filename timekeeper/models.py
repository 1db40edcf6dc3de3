from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timekeeper.db import Base

JsonDict = JSON().with_variant(JSONB(), "postgresql")


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    HR = "hr"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class RecordSource(str, enum.Enum):
    CLOCK = "CLOCK"
    LEAVE_PLACEHOLDER = "LEAVE_PLACEHOLDER"


class DeviceType(str, enum.Enum):
    WEB = "web"
    MOBILE = "mobile"
    KIOSK = "kiosk"


class LiveStatus(str, enum.Enum):
    IN = "IN"
    BREAK = "BREAK"
    OUT = "OUT"


class LeaveDuration(str, enum.Enum):
    FULL_DAY = "full-day"
    HALF_FIRST = "half-first"
    HALF_SECOND = "half-second"


class LeaveStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        nullable=False,
        default=UserRole.EMPLOYEE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    sessions: Mapped[list[ClockSession]] = relationship(
        back_populates="user",
        foreign_keys="ClockSession.user_id",
    )
    leave_requests: Mapped[list[LeaveRequest]] = relationship(
        back_populates="user",
        foreign_keys="LeaveRequest.user_id",
    )
    live_status: Mapped[LiveStatusEntry | None] = relationship(back_populates="user", uselist=False)


class LeaveType(Base):
    __tablename__ = "leave_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    annual_quota_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    carry_forward: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    requires_approval: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))

    @property
    def consumes_quota(self) -> bool:
        return (self.annual_quota_minutes or 0) > 0


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "leave_type_id", name="uq_leave_balances_user_year_type"),
        CheckConstraint("used_minutes >= 0", name="ck_leave_balances_used_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    leave_type_id: Mapped[int] = mapped_column(
        ForeignKey("leave_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    total_allocated_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    used_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    leave_type: Mapped[LeaveType] = relationship()


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (CheckConstraint("end_date >= start_date", name="ck_leave_requests_date_range"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    leave_type_id: Mapped[int] = mapped_column(
        ForeignKey("leave_types.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    duration: Mapped[LeaveDuration] = mapped_column(
        Enum(LeaveDuration, name="leave_duration"),
        nullable=False,
        default=LeaveDuration.FULL_DAY,
    )
    reason: Mapped[str] = mapped_column(String(2000), nullable=False)
    status: Mapped[LeaveStatus] = mapped_column(
        Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.PENDING,
        index=True,
    )
    approver_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    manager_comment: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    debited_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    debited_balance_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[User] = relationship(back_populates="leave_requests", foreign_keys=[user_id])
    leave_type: Mapped[LeaveType] = relationship()
    placeholder_sessions: Mapped[list[ClockSession]] = relationship(back_populates="leave_request")


class ClockSession(Base):
    __tablename__ = "clock_sessions"
    __table_args__ = (
        Index(
            "uq_clock_sessions_user_date_active",
            "user_id",
            "work_date",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_clock_sessions_user_date", "user_id", "work_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    clock_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="clock_session_status"),
        nullable=False,
        default=SessionStatus.ACTIVE,
        index=True,
    )
    source: Mapped[RecordSource] = mapped_column(
        Enum(RecordSource, name="record_source"),
        nullable=False,
        default=RecordSource.CLOCK,
    )
    leave_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("leave_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    work_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    device_type: Mapped[DeviceType] = mapped_column(
        Enum(DeviceType, name="device_type"),
        nullable=False,
        default=DeviceType.WEB,
    )
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    clock_out_note: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    retracted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    corrected_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    corrected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    correction_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    user: Mapped[User] = relationship(back_populates="sessions", foreign_keys=[user_id])
    leave_request: Mapped[LeaveRequest | None] = relationship(back_populates="placeholder_sessions")
    breaks: Mapped[list[SessionBreak]] = relationship(
        back_populates="session",
        order_by="SessionBreak.break_start_at",
    )


class SessionBreak(Base):
    __tablename__ = "session_breaks"
    __table_args__ = (
        Index(
            "uq_session_breaks_open",
            "session_id",
            unique=True,
            postgresql_where=text("break_end_at IS NULL"),
            sqlite_where=text("break_end_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("clock_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    break_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    break_end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    reason: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        default="Unspecified",
        server_default=text("'Unspecified'"),
    )
    closed_by_clock_out: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )

    session: Mapped[ClockSession] = relationship(back_populates="breaks")


class DailyAttendanceRecord(Base):
    __tablename__ = "daily_attendance_records"
    __table_args__ = (
        UniqueConstraint("user_id", "work_date", name="uq_daily_attendance_records_user_date"),
        Index("ix_daily_attendance_records_role_date", "user_role", "work_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_role: Mapped[UserRole] = mapped_column(Enum(UserRole, name="user_role"), nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    clock_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    work_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    overtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    is_late_check_in: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    is_early_check_out: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    is_overtime: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        index=True,
    )
    attendance_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    device_type: Mapped[DeviceType] = mapped_column(
        Enum(DeviceType, name="device_type"),
        nullable=False,
        default=DeviceType.WEB,
    )
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    source: Mapped[RecordSource] = mapped_column(
        Enum(RecordSource, name="record_source"),
        nullable=False,
        default=RecordSource.CLOCK,
    )
    leave_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("leave_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    session_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    user: Mapped[User] = relationship()


class LiveStatusEntry(Base):
    __tablename__ = "live_status_entries"
    __table_args__ = (UniqueConstraint("user_id", name="uq_live_status_entries_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[LiveStatus] = mapped_column(
        Enum(LiveStatus, name="live_status"),
        nullable=False,
        default=LiveStatus.OUT,
        index=True,
    )
    session_id: Mapped[int | None] = mapped_column(
        ForeignKey("clock_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    check_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    break_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    work_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    overtime_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    refreshed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship(back_populates="live_status")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    affected_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JsonDict, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JsonDict, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
