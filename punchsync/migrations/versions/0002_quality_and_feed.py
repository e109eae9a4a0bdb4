"""Session feed, data quality reports and location signals

Revision ID: 0002_quality_and_feed
Revises: 0001_initial
Create Date: 2026-07-09 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002_quality_and_feed"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_session_status = postgresql.ENUM(
    "OPEN",
    "COMPLETE",
    "AUTO_CLOSED",
    "ORPHANED",
    name="attendance_session_status",
    create_type=False,
)


def upgrade() -> None:
    op.create_table(
        "session_transitions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("employee_code", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("status", attendance_session_status, nullable=False),
        sa.Column("check_in_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("penalty_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_session_transitions_session_id", "session_transitions", ["session_id"])
    op.create_index("ix_session_transitions_employee_code", "session_transitions", ["employee_code"])

    op.create_table(
        "daily_quality_reports",
        sa.Column("day", sa.Date(), primary_key=True, nullable=False),
        sa.Column("observed_events", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("expected_events", sa.Float(), nullable=True),
        sa.Column("density_ratio", sa.Float(), nullable=False, server_default=sa.text("1")),
        sa.Column("contiguity_pct", sa.Float(), nullable=False, server_default=sa.text("100")),
        sa.Column("duplicate_ratio", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("sessions_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("orphaned_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("auto_closed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("anomaly_ratio", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("flagged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "computed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "work_sites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Integer(), nullable=False, server_default=sa.text("200")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("name", name="uq_work_sites_name"),
    )

    op.create_table(
        "location_pings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=64), nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("activity_type", sa.String(length=32), nullable=True),
    )
    op.create_index("ix_location_pings_employee_ts", "location_pings", ["employee_code", "ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_location_pings_employee_ts", table_name="location_pings")
    op.drop_table("location_pings")
    op.drop_table("work_sites")
    op.drop_table("daily_quality_reports")
    op.drop_index("ix_session_transitions_employee_code", table_name="session_transitions")
    op.drop_index("ix_session_transitions_session_id", table_name="session_transitions")
    op.drop_table("session_transitions")
