"""Manual session corrections

Revision ID: 0002_manual_corrections
Revises: 0001_initial
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0002_manual_corrections"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "clock_sessions",
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.add_column("clock_sessions", sa.Column("corrected_by_id", sa.Integer(), nullable=True))
    op.add_column("clock_sessions", sa.Column("corrected_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("clock_sessions", sa.Column("correction_reason", sa.String(length=1000), nullable=True))
    op.create_foreign_key(
        "fk_clock_sessions_corrected_by_id_users",
        "clock_sessions",
        "users",
        ["corrected_by_id"],
        ["id"],
        ondelete="SET NULL",
    )


def downgrade() -> None:
    op.drop_constraint("fk_clock_sessions_corrected_by_id_users", "clock_sessions", type_="foreignkey")
    op.drop_column("clock_sessions", "correction_reason")
    op.drop_column("clock_sessions", "corrected_at")
    op.drop_column("clock_sessions", "corrected_by_id")
    op.drop_column("clock_sessions", "is_manual")
