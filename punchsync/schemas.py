from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from punchsync.models import GapStatus, ReviewPriority, SessionStatus


class SessionRead(BaseModel):
    id: int
    employee_code: str
    work_date: date
    check_in_utc: datetime | None = None
    check_out_utc: datetime | None = None
    status: SessionStatus
    total_hours: float
    penalty_hours: float
    needs_review: bool
    review_priority: ReviewPriority | None = None
    source_event_ids: list[int] = Field(default_factory=list)
    notes: str | None = None
    closed_at: datetime | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FeedItemRead(BaseModel):
    id: int
    session_id: int
    employee_code: str
    work_date: date
    status: SessionStatus
    check_in_utc: datetime | None = None
    check_out_utc: datetime | None = None
    total_hours: float
    penalty_hours: float
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FeedPage(BaseModel):
    items: list[FeedItemRead]
    next_after_id: int


class GapRead(BaseModel):
    id: int
    start_id: int
    end_id: int
    gap_size: int
    time_range_start_utc: datetime | None = None
    time_range_end_utc: datetime | None = None
    status: GapStatus
    resolved: bool
    attempts: int
    records_recovered: int
    last_error: str | None = None
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    detected_at: datetime
    resolved_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class QualityReportRead(BaseModel):
    day: date
    observed_events: int
    expected_events: float | None = None
    density_ratio: float
    contiguity_pct: float
    duplicate_ratio: float
    sessions_total: int
    orphaned_count: int
    auto_closed_count: int
    anomaly_ratio: float
    score: float
    flagged: bool
    computed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskStateRead(BaseModel):
    name: str
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_success_at: datetime | None = None
    consecutive_failures: int = 0
    last_error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class StatusResponse(BaseModel):
    upstream_host: str
    workers_running: bool
    tasks: list[TaskStateRead]
    pending_events: int
    last_consumed_source_id: int | None = None
    extended_poll_requested: bool = False
    open_gaps: int
    stale_gaps: int
    open_sessions: int
    sessions_needing_review: int
    latest_quality: QualityReportRead | None = None


class TriggerResponse(BaseModel):
    task: str
    ok: bool
    result: dict[str, Any] = Field(default_factory=dict)
