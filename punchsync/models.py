from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    Enum,
    Float,
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

from punchsync.db import Base, UtcDateTime

JSONPayload = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PunchDirection(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


class SessionStatus(str, enum.Enum):
    OPEN = "OPEN"
    COMPLETE = "COMPLETE"
    AUTO_CLOSED = "AUTO_CLOSED"
    ORPHANED = "ORPHANED"


class GapStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    STALE = "STALE"


class IngestSource(str, enum.Enum):
    POLL = "POLL"
    EXTENDED_POLL = "EXTENDED_POLL"
    BACKFILL = "BACKFILL"
    MANUAL = "MANUAL"


class SessionEventRole(str, enum.Enum):
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"
    CORRECTION = "CORRECTION"
    REPEAT_TAP = "REPEAT_TAP"
    ORPHAN = "ORPHAN"


class ReviewPriority(str, enum.Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class AuditActorType(str, enum.Enum):
    SYSTEM = "SYSTEM"
    OPERATOR = "OPERATOR"


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    is_biometric_exempt: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )


class RawPunchEvent(Base):
    __tablename__ = "raw_punch_events"
    __table_args__ = (
        Index("ix_raw_punch_events_pending", "consumed_at", "source_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True, index=True)
    employee_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    punch_ts_utc: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
    direction: Mapped[PunchDirection] = mapped_column(
        Enum(PunchDirection, name="punch_direction"),
        nullable=False,
    )
    punch_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    terminal_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_access_control: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)
    ingest_source: Mapped[IngestSource] = mapped_column(
        Enum(IngestSource, name="ingest_source"),
        nullable=False,
        default=IngestSource.POLL,
    )
    ingested_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    consumed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"
    __table_args__ = (
        Index("ix_attendance_sessions_employee_day", "employee_code", "work_date"),
        # One OPEN session per employee and day.
        Index(
            "uq_attendance_sessions_open_key",
            "employee_code",
            "work_date",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(64), nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in_utc: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    check_out_utc: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="attendance_session_status"),
        nullable=False,
        index=True,
    )
    total_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    penalty_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default=text("0"))
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    review_priority: Mapped[ReviewPriority | None] = mapped_column(
        Enum(ReviewPriority, name="review_priority"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    events: Mapped[list[AttendanceSessionEvent]] = relationship(
        back_populates="session",
        order_by="AttendanceSessionEvent.source_id",
        cascade="all, delete-orphan",
    )

    @property
    def source_event_ids(self) -> list[int]:
        return [item.source_id for item in self.events]


class AttendanceSessionEvent(Base):
    __tablename__ = "attendance_session_events"

    # A raw event contributes to at most one session.
    source_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[SessionEventRole] = mapped_column(
        Enum(SessionEventRole, name="session_event_role"),
        nullable=False,
    )
    punch_ts_utc: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    linked_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    session: Mapped[AttendanceSession] = relationship(back_populates="events")


class SessionTransition(Base):
    __tablename__ = "session_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="attendance_session_status"),
        nullable=False,
    )
    check_in_utc: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    check_out_utc: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    total_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    penalty_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class GapRecord(Base):
    __tablename__ = "gap_records"
    __table_args__ = (
        UniqueConstraint("start_id", "end_id", name="uq_gap_records_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    start_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gap_size: Mapped[int] = mapped_column(Integer, nullable=False)
    time_range_start_utc: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    time_range_end_utc: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    status: Mapped[GapStatus] = mapped_column(
        Enum(GapStatus, name="gap_status"),
        nullable=False,
        default=GapStatus.OPEN,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    records_recovered: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)

    @property
    def resolved(self) -> bool:
        return self.status == GapStatus.RESOLVED


class IngestCounter(Base):
    __tablename__ = "ingest_counters"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    inserted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    updated_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )


class TaskState(Base):
    __tablename__ = "task_states"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_finished_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)


class DailyQualityReport(Base):
    __tablename__ = "daily_quality_reports"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    observed_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expected_events: Mapped[float | None] = mapped_column(Float, nullable=True)
    density_ratio: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    contiguity_pct: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    duplicate_ratio: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sessions_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    orphaned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_closed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    anomaly_ratio: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    computed_at: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class WorkSite(Base):
    __tablename__ = "work_sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=200, server_default=text("200"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))


class LocationPing(Base):
    __tablename__ = "location_pings"
    __table_args__ = (
        Index("ix_location_pings_employee_ts", "employee_code", "ts_utc"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(64), nullable=False)
    ts_utc: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        UtcDateTime,
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)
