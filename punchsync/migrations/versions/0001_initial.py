"""Initial reconciliation schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-07-01 00:00:00
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

punch_direction = postgresql.ENUM("IN", "OUT", name="punch_direction", create_type=False)
ingest_source = postgresql.ENUM(
    "POLL",
    "EXTENDED_POLL",
    "BACKFILL",
    "MANUAL",
    name="ingest_source",
    create_type=False,
)
attendance_session_status = postgresql.ENUM(
    "OPEN",
    "COMPLETE",
    "AUTO_CLOSED",
    "ORPHANED",
    name="attendance_session_status",
    create_type=False,
)
session_event_role = postgresql.ENUM(
    "CHECK_IN",
    "CHECK_OUT",
    "CORRECTION",
    "REPEAT_TAP",
    "ORPHAN",
    name="session_event_role",
    create_type=False,
)
review_priority = postgresql.ENUM("LOW", "NORMAL", "HIGH", name="review_priority", create_type=False)
gap_status = postgresql.ENUM("OPEN", "RESOLVED", "STALE", name="gap_status", create_type=False)
audit_actor_type = postgresql.ENUM("SYSTEM", "OPERATOR", name="audit_actor_type", create_type=False)

ALL_ENUMS = (
    punch_direction,
    ingest_source,
    attendance_session_status,
    session_event_role,
    review_priority,
    gap_status,
    audit_actor_type,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_biometric_exempt", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_employees_employee_code", "employees", ["employee_code"], unique=True)

    op.create_table(
        "raw_punch_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("source_id", sa.BigInteger(), nullable=False),
        sa.Column("employee_code", sa.String(length=64), nullable=False),
        sa.Column("punch_ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("direction", punch_direction, nullable=False),
        sa.Column("punch_state", sa.String(length=16), nullable=True),
        sa.Column("terminal_id", sa.String(length=255), nullable=True),
        sa.Column("is_access_control", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "raw_payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("ingest_source", ingest_source, nullable=False),
        sa.Column(
            "ingested_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_raw_punch_events_source_id", "raw_punch_events", ["source_id"], unique=True)
    op.create_index("ix_raw_punch_events_employee_code", "raw_punch_events", ["employee_code"])
    op.create_index("ix_raw_punch_events_punch_ts_utc", "raw_punch_events", ["punch_ts_utc"])
    op.create_index("ix_raw_punch_events_pending", "raw_punch_events", ["consumed_at", "source_id"])

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("check_in_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", attendance_session_status, nullable=False),
        sa.Column("total_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("penalty_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("review_priority", review_priority, nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_attendance_sessions_work_date", "attendance_sessions", ["work_date"])
    op.create_index("ix_attendance_sessions_status", "attendance_sessions", ["status"])
    op.create_index("ix_attendance_sessions_employee_day", "attendance_sessions", ["employee_code", "work_date"])
    op.create_index(
        "uq_attendance_sessions_open_key",
        "attendance_sessions",
        ["employee_code", "work_date"],
        unique=True,
        postgresql_where=sa.text("status = 'OPEN'"),
    )

    op.create_table(
        "attendance_session_events",
        sa.Column("source_id", sa.BigInteger(), primary_key=True, autoincrement=False, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("role", session_event_role, nullable=False),
        sa.Column("punch_ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "linked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_attendance_session_events_session_id", "attendance_session_events", ["session_id"])

    op.create_table(
        "gap_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("start_id", sa.BigInteger(), nullable=False),
        sa.Column("end_id", sa.BigInteger(), nullable=False),
        sa.Column("gap_size", sa.Integer(), nullable=False),
        sa.Column("time_range_start_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_range_end_utc", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", gap_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("records_recovered", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "detected_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("start_id", "end_id", name="uq_gap_records_range"),
    )
    op.create_index("ix_gap_records_status", "gap_records", ["status"])

    op.create_table(
        "ingest_counters",
        sa.Column("day", sa.Date(), primary_key=True, nullable=False),
        sa.Column("inserted_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duplicate_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "task_states",
        sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("task_states")
    op.drop_table("ingest_counters")
    op.drop_index("ix_gap_records_status", table_name="gap_records")
    op.drop_table("gap_records")
    op.drop_index("ix_attendance_session_events_session_id", table_name="attendance_session_events")
    op.drop_table("attendance_session_events")
    op.drop_index("uq_attendance_sessions_open_key", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_employee_day", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_status", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_work_date", table_name="attendance_sessions")
    op.drop_table("attendance_sessions")
    op.drop_index("ix_raw_punch_events_pending", table_name="raw_punch_events")
    op.drop_index("ix_raw_punch_events_punch_ts_utc", table_name="raw_punch_events")
    op.drop_index("ix_raw_punch_events_employee_code", table_name="raw_punch_events")
    op.drop_index("ix_raw_punch_events_source_id", table_name="raw_punch_events")
    op.drop_table("raw_punch_events")
    op.drop_index("ix_employees_employee_code", table_name="employees")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
