"""Initial time and attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-12 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM("ADMIN", "HR", "MANAGER", "EMPLOYEE", name="user_role", create_type=False)
clock_session_status = postgresql.ENUM("ACTIVE", "COMPLETED", name="clock_session_status", create_type=False)
record_source = postgresql.ENUM("CLOCK", "LEAVE_PLACEHOLDER", name="record_source", create_type=False)
device_type = postgresql.ENUM("WEB", "MOBILE", "KIOSK", name="device_type", create_type=False)
live_status = postgresql.ENUM("IN", "BREAK", "OUT", name="live_status", create_type=False)
leave_duration = postgresql.ENUM("FULL_DAY", "HALF_FIRST", "HALF_SECOND", name="leave_duration", create_type=False)
leave_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    "CANCELLED",
    name="leave_status",
    create_type=False,
)

ENUMS = (
    user_role,
    clock_session_status,
    record_source,
    device_type,
    live_status,
    leave_duration,
    leave_status,
)


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.text("now()"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for item in ENUMS:
        item.create(bind, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", user_role, nullable=False, server_default=sa.text("'EMPLOYEE'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "leave_types",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("annual_quota_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("carry_forward", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("code", name="uq_leave_types_code"),
    )

    op.create_table(
        "leave_balances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("leave_type_id", sa.Integer(), nullable=False),
        sa.Column("total_allocated_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("used_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["leave_type_id"], ["leave_types.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "year", "leave_type_id", name="uq_leave_balances_user_year_type"),
        sa.CheckConstraint("used_minutes >= 0", name="ck_leave_balances_used_non_negative"),
    )
    op.create_index("ix_leave_balances_user_id", "leave_balances", ["user_id"], unique=False)
    op.create_index("ix_leave_balances_year", "leave_balances", ["year"], unique=False)
    op.create_index("ix_leave_balances_leave_type_id", "leave_balances", ["leave_type_id"], unique=False)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("leave_type_id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("duration", leave_duration, nullable=False, server_default=sa.text("'FULL_DAY'")),
        sa.Column("reason", sa.String(length=2000), nullable=False),
        sa.Column("status", leave_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("approver_id", sa.Integer(), nullable=True),
        sa.Column("manager_comment", sa.String(length=2000), nullable=True),
        sa.Column("debited_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("debited_balance_year", sa.Integer(), nullable=True),
        _timestamp("applied_at"),
        _timestamp("decided_at", nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["leave_type_id"], ["leave_types.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_requests_date_range"),
    )
    op.create_index("ix_leave_requests_user_id", "leave_requests", ["user_id"], unique=False)
    op.create_index("ix_leave_requests_leave_type_id", "leave_requests", ["leave_type_id"], unique=False)
    op.create_index("ix_leave_requests_start_date", "leave_requests", ["start_date"], unique=False)
    op.create_index("ix_leave_requests_end_date", "leave_requests", ["end_date"], unique=False)
    op.create_index("ix_leave_requests_status", "leave_requests", ["status"], unique=False)

    op.create_table(
        "clock_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("clock_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clock_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", clock_session_status, nullable=False, server_default=sa.text("'ACTIVE'")),
        sa.Column("source", record_source, nullable=False, server_default=sa.text("'CLOCK'")),
        sa.Column("leave_request_id", sa.Integer(), nullable=True),
        sa.Column("break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("work_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("device_type", device_type, nullable=False, server_default=sa.text("'WEB'")),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("clock_out_note", sa.String(length=1000), nullable=True),
        _timestamp("retracted_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["leave_request_id"], ["leave_requests.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_clock_sessions_user_date", "clock_sessions", ["user_id", "work_date"], unique=False)
    op.create_index("ix_clock_sessions_work_date", "clock_sessions", ["work_date"], unique=False)
    op.create_index("ix_clock_sessions_status", "clock_sessions", ["status"], unique=False)
    op.create_index("ix_clock_sessions_leave_request_id", "clock_sessions", ["leave_request_id"], unique=False)
    op.create_index(
        "uq_clock_sessions_user_date_active",
        "clock_sessions",
        ["user_id", "work_date"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
        sqlite_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "session_breaks",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("break_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("break_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reason", sa.String(length=500), nullable=False, server_default=sa.text("'Unspecified'")),
        sa.Column("closed_by_clock_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["session_id"], ["clock_sessions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_session_breaks_session_id", "session_breaks", ["session_id"], unique=False)
    op.create_index(
        "uq_session_breaks_open",
        "session_breaks",
        ["session_id"],
        unique=True,
        postgresql_where=sa.text("break_end_at IS NULL"),
        sqlite_where=sa.text("break_end_at IS NULL"),
    )

    op.create_table(
        "daily_attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("user_role", user_role, nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("clock_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("clock_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("work_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_late_check_in", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_early_check_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_overtime", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("attendance_percentage", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("device_type", device_type, nullable=False, server_default=sa.text("'WEB'")),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("source", record_source, nullable=False, server_default=sa.text("'CLOCK'")),
        sa.Column("leave_request_id", sa.Integer(), nullable=True),
        sa.Column("session_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["leave_request_id"], ["leave_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("user_id", "work_date", name="uq_daily_attendance_records_user_date"),
    )
    op.create_index("ix_daily_attendance_records_user_id", "daily_attendance_records", ["user_id"], unique=False)
    op.create_index("ix_daily_attendance_records_work_date", "daily_attendance_records", ["work_date"], unique=False)
    op.create_index(
        "ix_daily_attendance_records_role_date",
        "daily_attendance_records",
        ["user_role", "work_date"],
        unique=False,
    )
    op.create_index(
        "ix_daily_attendance_records_is_overtime",
        "daily_attendance_records",
        ["is_overtime"],
        unique=False,
    )
    op.create_index(
        "ix_daily_attendance_records_leave_request_id",
        "daily_attendance_records",
        ["leave_request_id"],
        unique=False,
    )

    op.create_table(
        "live_status_entries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("status", live_status, nullable=False, server_default=sa.text("'OUT'")),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("check_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("break_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("work_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("refreshed_at"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["session_id"], ["clock_sessions.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("user_id", name="uq_live_status_entries_user"),
    )
    op.create_index("ix_live_status_entries_status", "live_status_entries", ["status"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("ts_utc"),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("affected_user_id", sa.Integer(), nullable=True),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("old_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("new_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
    op.create_index("ix_audit_logs_affected_user_id", "audit_logs", ["affected_user_id"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("live_status_entries")
    op.drop_table("daily_attendance_records")
    op.drop_index("uq_session_breaks_open", table_name="session_breaks")
    op.drop_table("session_breaks")
    op.drop_index("uq_clock_sessions_user_date_active", table_name="clock_sessions")
    op.drop_table("clock_sessions")
    op.drop_table("leave_requests")
    op.drop_table("leave_balances")
    op.drop_table("leave_types")
    op.drop_table("users")

    bind = op.get_bind()
    for item in reversed(ENUMS):
        item.drop(bind, checkfirst=True)
