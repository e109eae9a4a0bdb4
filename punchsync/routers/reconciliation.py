from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from punchsync.audit import log_audit
from punchsync.db import get_db
from punchsync.errors import ApiError
from punchsync.models import (
    AttendanceSession,
    AuditActorType,
    GapRecord,
    GapStatus,
    RawPunchEvent,
    SessionStatus,
    TaskState,
)
from punchsync.schemas import (
    FeedItemRead,
    FeedPage,
    GapRead,
    QualityReportRead,
    SessionRead,
    StatusResponse,
    TaskStateRead,
    TriggerResponse,
)
from punchsync.security import require_operator
from punchsync.services.consistency import list_quality_reports, run_validation
from punchsync.services.event_store import last_consumed_source_id
from punchsync.services.folding import run_fold_cycle
from punchsync.services.gaps import run_gap_cycle
from punchsync.services.polling import run_poll_cycle
from punchsync.services.session_feed import list_feed, list_sessions
from punchsync.services.stale_sessions import run_stale_sweep
from punchsync.services.task_state import (
    ALL_TASKS,
    FLAG_EXTENDED_POLL_REQUESTED,
    TASK_FOLD,
    TASK_GAP_SCAN,
    TASK_POLL,
    TASK_STALE_SWEEP,
    TASK_VALIDATE,
    get_flag,
)
from punchsync.services.upstream import BiometricApiClient, PunchSource
from punchsync.services.workers import summarize_result
from punchsync.settings import get_upstream_host

router = APIRouter(tags=["reconciliation"])


def get_upstream_client() -> PunchSource:
    return BiometricApiClient.from_settings()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _audit_trigger(
    db: Session,
    request: Request,
    *,
    task: str,
    ok: bool,
    details: dict[str, Any],
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.OPERATOR,
        actor_id=str(getattr(request.state, "actor_id", "operator")),
        action=f"OPS_TRIGGER_{task.upper()}",
        success=ok,
        entity_type="task",
        entity_id=task,
        ip=_client_ip(request),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


@router.get("/api/sessions", response_model=list[SessionRead])
def get_sessions(
    employee_code: str | None = Query(default=None, max_length=64),
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    status: SessionStatus | None = Query(default=None),
    limit: int = Query(default=500, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[SessionRead]:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ApiError(status_code=422, code="INVALID_DATE_RANGE", message="date_from must not be after date_to.")

    sessions = list_sessions(
        db,
        employee_code=(employee_code or "").strip() or None,
        date_from=date_from,
        date_to=date_to,
        status=status,
        limit=limit,
    )
    return [SessionRead.model_validate(item) for item in sessions]


@router.get("/api/sessions/feed", response_model=FeedPage)
def get_session_feed(
    after_id: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> FeedPage:
    items = list_feed(db, after_id=after_id, limit=limit)
    return FeedPage(
        items=[FeedItemRead.model_validate(item) for item in items],
        next_after_id=items[-1].id if items else after_id,
    )


@router.post("/api/ops/poll", response_model=TriggerResponse)
def trigger_poll(
    request: Request,
    extended: bool = Query(default=False),
    _: str = Depends(require_operator),
    client: PunchSource = Depends(get_upstream_client),
    db: Session = Depends(get_db),
) -> TriggerResponse:
    result = run_poll_cycle(client=client, force_extended=extended, db=db)
    payload = summarize_result(result)
    payload["window_start_utc"] = result.window_start_utc.isoformat()
    payload["window_end_utc"] = result.window_end_utc.isoformat()
    _audit_trigger(db, request, task=TASK_POLL, ok=result.ok, details=payload)
    return TriggerResponse(task=TASK_POLL, ok=result.ok, result=payload)


@router.post("/api/ops/gap-scan", response_model=TriggerResponse)
def trigger_gap_scan(
    request: Request,
    _: str = Depends(require_operator),
    client: PunchSource = Depends(get_upstream_client),
    db: Session = Depends(get_db),
) -> TriggerResponse:
    result = run_gap_cycle(client=client, db=db)
    payload = summarize_result(result)
    ok = result.error is None
    _audit_trigger(db, request, task=TASK_GAP_SCAN, ok=ok, details=payload)
    return TriggerResponse(task=TASK_GAP_SCAN, ok=ok, result=payload)


@router.post("/api/ops/fold", response_model=TriggerResponse)
def trigger_fold(
    request: Request,
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> TriggerResponse:
    result = run_fold_cycle(db=db)
    payload = summarize_result(result)
    ok = result.error is None
    _audit_trigger(db, request, task=TASK_FOLD, ok=ok, details=payload)
    return TriggerResponse(task=TASK_FOLD, ok=ok, result=payload)


@router.post("/api/ops/stale-sweep", response_model=TriggerResponse)
def trigger_stale_sweep(
    request: Request,
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> TriggerResponse:
    result = run_stale_sweep(db=db)
    payload = summarize_result(result)
    payload["closed_session_ids"] = list(result.closed_session_ids)
    ok = result.error is None
    _audit_trigger(db, request, task=TASK_STALE_SWEEP, ok=ok, details=payload)
    return TriggerResponse(task=TASK_STALE_SWEEP, ok=ok, result=payload)


@router.post("/api/ops/validate", response_model=TriggerResponse)
def trigger_validate(
    request: Request,
    days: int = Query(default=2, ge=1, le=31),
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> TriggerResponse:
    result = run_validation(days=days, db=db)
    payload: dict[str, Any] = {
        "days": [report.day.isoformat() for report in result.reports],
        "scores": {report.day.isoformat(): report.score for report in result.reports},
        "flagged_days": [day.isoformat() for day in result.flagged_days],
        "extended_poll_requested": result.extended_poll_requested,
    }
    _audit_trigger(db, request, task=TASK_VALIDATE, ok=True, details=payload)
    return TriggerResponse(task=TASK_VALIDATE, ok=True, result=payload)


@router.get("/api/ops/status", response_model=StatusResponse)
def get_status(
    request: Request,
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> StatusResponse:
    states = {item.name: item for item in db.scalars(select(TaskState)).all()}
    tasks = [
        TaskStateRead.model_validate(states[name]) if name in states else TaskStateRead(name=name)
        for name in ALL_TASKS
    ]

    gap_counts = {
        status: int(count)
        for status, count in db.execute(
            select(GapRecord.status, func.count(GapRecord.id)).group_by(GapRecord.status)
        ).all()
    }
    pending_events = db.scalar(select(func.count(RawPunchEvent.id)).where(RawPunchEvent.consumed_at.is_(None))) or 0
    open_sessions = (
        db.scalar(select(func.count(AttendanceSession.id)).where(AttendanceSession.status == SessionStatus.OPEN)) or 0
    )
    needs_review = (
        db.scalar(select(func.count(AttendanceSession.id)).where(AttendanceSession.needs_review.is_(True))) or 0
    )
    latest_reports = list_quality_reports(db, days=1)
    worker_pool = getattr(request.app.state, "worker_pool", None)

    return StatusResponse(
        upstream_host=get_upstream_host(),
        workers_running=bool(worker_pool is not None and worker_pool.running),
        tasks=tasks,
        pending_events=int(pending_events),
        last_consumed_source_id=last_consumed_source_id(db),
        extended_poll_requested=get_flag(db, TASK_POLL, FLAG_EXTENDED_POLL_REQUESTED),
        open_gaps=gap_counts.get(GapStatus.OPEN, 0),
        stale_gaps=gap_counts.get(GapStatus.STALE, 0),
        open_sessions=int(open_sessions),
        sessions_needing_review=int(needs_review),
        latest_quality=QualityReportRead.model_validate(latest_reports[0]) if latest_reports else None,
    )


@router.get("/api/ops/gaps", response_model=list[GapRead])
def get_gaps(
    status: GapStatus | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> list[GapRead]:
    stmt = select(GapRecord)
    if status is not None:
        stmt = stmt.where(GapRecord.status == status)
    stmt = stmt.order_by(GapRecord.start_id.desc()).limit(limit)
    return [GapRead.model_validate(item) for item in db.scalars(stmt).all()]


@router.get("/api/ops/quality", response_model=list[QualityReportRead])
def get_quality_reports(
    days: int = Query(default=14, ge=1, le=366),
    _: str = Depends(require_operator),
    db: Session = Depends(get_db),
) -> list[QualityReportRead]:
    return [QualityReportRead.model_validate(item) for item in list_quality_reports(db, days=days)]
