from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from punchsync.audit import add_audit
from punchsync.db import SessionLocal
from punchsync.models import (
    AttendanceSession,
    AttendanceSessionEvent,
    PunchDirection,
    RawPunchEvent,
    ReviewPriority,
    SessionEventRole,
    SessionStatus,
)
from punchsync.services.clock import hours_between, local_work_date, normalize_ts
from punchsync.services.event_store import fetch_ordered_since, mark_consumed, purge_consumed
from punchsync.services.registry import DbEmployeeRegistry, EmployeeRegistry, skip_reason
from punchsync.services.session_feed import claim_open_session, record_transition
from punchsync.services.task_state import TASK_FOLD, mark_failed, mark_started, mark_succeeded
from punchsync.settings import get_settings

logger = logging.getLogger("punchsync.folding")


class FoldOutcome(str, enum.Enum):
    CREATED = "CREATED"
    COMPLETED = "COMPLETED"
    CORRECTION = "CORRECTION"
    REPEAT_TAP = "REPEAT_TAP"
    ORPHANED = "ORPHANED"
    SKIPPED = "SKIPPED"
    ACCESS_CONTROL = "ACCESS_CONTROL"
    ALREADY_FOLDED = "ALREADY_FOLDED"


@dataclass(slots=True)
class FoldResult:
    processed: int = 0
    created: int = 0
    completed: int = 0
    orphaned: int = 0
    corrections: int = 0
    repeat_taps: int = 0
    skipped: int = 0
    already_folded: int = 0
    failed: int = 0
    purged: int = 0
    error: str | None = None
    failed_source_id: int | None = None
    outcomes: dict[int, FoldOutcome] = field(default_factory=dict)

    def count(self, source_id: int, outcome: FoldOutcome) -> None:
        self.processed += 1
        self.outcomes[source_id] = outcome
        if outcome == FoldOutcome.CREATED:
            self.created += 1
        elif outcome == FoldOutcome.COMPLETED:
            self.completed += 1
        elif outcome == FoldOutcome.ORPHANED:
            self.orphaned += 1
        elif outcome == FoldOutcome.CORRECTION:
            self.corrections += 1
        elif outcome == FoldOutcome.REPEAT_TAP:
            self.repeat_taps += 1
        elif outcome == FoldOutcome.ALREADY_FOLDED:
            self.already_folded += 1
        else:
            self.skipped += 1


def compute_total_hours(check_in_utc: datetime, check_out_utc: datetime, *, max_hours: float) -> float:
    worked = hours_between(check_in_utc, check_out_utc)
    return round(max(0.0, min(worked, max_hours)), 2)


def _append_note(session: AttendanceSession, note: str) -> None:
    session.notes = f"{session.notes}\n{note}" if session.notes else note


def _find_open_session(db: Session, employee_code: str, work_date: date) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession).where(
            AttendanceSession.employee_code == employee_code,
            AttendanceSession.work_date == work_date,
            AttendanceSession.status == SessionStatus.OPEN,
        )
    )


def _find_latest_complete_session(db: Session, employee_code: str, work_date: date) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession)
        .where(
            AttendanceSession.employee_code == employee_code,
            AttendanceSession.work_date == work_date,
            AttendanceSession.status == SessionStatus.COMPLETE,
        )
        .order_by(AttendanceSession.check_out_utc.desc(), AttendanceSession.id.desc())
    )


def _link_event(
    session: AttendanceSession,
    event: RawPunchEvent,
    role: SessionEventRole,
) -> None:
    session.events.append(
        AttendanceSessionEvent(
            source_id=event.source_id,
            role=role,
            punch_ts_utc=event.punch_ts_utc,
        )
    )


def apply_event(
    db: Session,
    event: RawPunchEvent,
    *,
    registry: EmployeeRegistry,
    now_utc: datetime,
) -> FoldOutcome:
    """Fold one staged punch into the session table.

    Changes are staged on ``db``; committing (together with the staging
    tombstone) is left to the caller.
    """
    settings = get_settings()

    if db.get(AttendanceSessionEvent, event.source_id) is not None:
        return FoldOutcome.ALREADY_FOLDED

    if event.is_access_control:
        return FoldOutcome.ACCESS_CONTROL

    punch_ts = normalize_ts(event.punch_ts_utc)
    work_date = local_work_date(punch_ts)
    open_session = _find_open_session(db, event.employee_code, work_date)

    if event.direction == PunchDirection.IN:
        if open_session is None:
            session = AttendanceSession(
                employee_code=event.employee_code,
                work_date=work_date,
                check_in_utc=punch_ts,
                status=SessionStatus.OPEN,
                total_hours=0.0,
                penalty_hours=0.0,
                needs_review=False,
            )
            db.add(session)
            db.flush()
            _link_event(session, event, SessionEventRole.CHECK_IN)
            return FoldOutcome.CREATED

        previous_check_in = open_session.check_in_utc
        open_session.check_in_utc = min(previous_check_in, punch_ts) if previous_check_in else punch_ts
        _link_event(open_session, event, SessionEventRole.CORRECTION)
        add_audit(
            db,
            action="SESSION_EXTRA_CHECKIN",
            entity_type="attendance_session",
            entity_id=str(open_session.id),
            details={
                "source_id": event.source_id,
                "employee_code": event.employee_code,
                "work_date": work_date.isoformat(),
                "previous_check_in_utc": previous_check_in.isoformat() if previous_check_in else None,
                "punch_ts_utc": punch_ts.isoformat(),
                "kept_check_in_utc": open_session.check_in_utc.isoformat(),
            },
        )
        return FoldOutcome.CORRECTION

    if open_session is not None and not claim_open_session(db, open_session, SessionStatus.COMPLETE):
        logger.info(
            "open_session_closed_concurrently",
            extra={"session_id": open_session.id, "source_id": event.source_id, "status": open_session.status.value},
        )
        open_session = None

    if open_session is not None:
        check_in = open_session.check_in_utc or punch_ts
        open_session.check_out_utc = punch_ts
        open_session.total_hours = compute_total_hours(check_in, punch_ts, max_hours=settings.max_session_hours)
        open_session.closed_at = now_utc
        if punch_ts < check_in:
            open_session.needs_review = True
            open_session.review_priority = ReviewPriority.NORMAL
            _append_note(open_session, "Check-out precedes check-in.")
        elif hours_between(check_in, punch_ts) > settings.max_session_hours:
            _append_note(open_session, f"Worked time capped at {settings.max_session_hours:g}h.")
        _link_event(open_session, event, SessionEventRole.CHECK_OUT)
        record_transition(db, open_session)
        return FoldOutcome.COMPLETED

    latest_complete = _find_latest_complete_session(db, event.employee_code, work_date)
    if latest_complete is not None and latest_complete.check_out_utc is not None:
        window = timedelta(seconds=settings.double_punch_window_seconds)
        if abs(punch_ts - latest_complete.check_out_utc) <= window:
            _link_event(latest_complete, event, SessionEventRole.REPEAT_TAP)
            add_audit(
                db,
                action="SESSION_REPEAT_TAP",
                entity_type="attendance_session",
                entity_id=str(latest_complete.id),
                details={"source_id": event.source_id, "employee_code": event.employee_code},
            )
            return FoldOutcome.REPEAT_TAP

    reason = skip_reason(registry, event.employee_code)
    if reason is not None:
        add_audit(
            db,
            action="ORPHAN_PUNCH_SKIPPED",
            entity_type="raw_punch_event",
            entity_id=str(event.source_id),
            details={"employee_code": event.employee_code, "reason": reason},
        )
        return FoldOutcome.SKIPPED

    orphan = AttendanceSession(
        employee_code=event.employee_code,
        work_date=work_date,
        check_in_utc=punch_ts,
        check_out_utc=punch_ts,
        status=SessionStatus.ORPHANED,
        total_hours=0.0,
        penalty_hours=0.0,
        needs_review=True,
        review_priority=ReviewPriority.NORMAL,
        notes="Punch-out without an open session.",
        closed_at=now_utc,
    )
    db.add(orphan)
    db.flush()
    _link_event(orphan, event, SessionEventRole.ORPHAN)
    return FoldOutcome.ORPHANED


def fold_pending(
    *,
    registry: EmployeeRegistry | None = None,
    now_utc: datetime | None = None,
    batch_size: int | None = None,
    db: Session | None = None,
) -> FoldResult:
    if db is None:
        with SessionLocal() as managed_db:
            return fold_pending(registry=registry, now_utc=now_utc, batch_size=batch_size, db=managed_db)

    settings = get_settings()
    now_value = normalize_ts(now_utc)
    active_registry = registry or DbEmployeeRegistry(db)
    limit = max(1, batch_size or settings.fold_batch_size)
    result = FoldResult()

    while True:
        events = fetch_ordered_since(db, None, limit=limit)
        if not events:
            break

        for event in events:
            source_id = event.source_id
            try:
                outcome = apply_event(db, event, registry=active_registry, now_utc=now_value)
                event.consumed_at = now_value
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                if db.get(AttendanceSessionEvent, source_id) is not None:
                    mark_consumed(db, [source_id], consumed_at=now_value)
                    result.count(source_id, FoldOutcome.ALREADY_FOLDED)
                    continue
                result.failed += 1
                result.failed_source_id = source_id
                result.error = f"INTEGRITY_ERROR: {exc.orig}"[:2000]
                logger.error("fold_event_failed", extra={"source_id": source_id, "error": result.error})
                return result
            except SQLAlchemyError as exc:
                db.rollback()
                result.failed += 1
                result.failed_source_id = source_id
                result.error = f"PERSISTENCE_ERROR: {exc}"[:2000]
                logger.exception("fold_event_failed", extra={"source_id": source_id})
                return result

            result.count(source_id, outcome)
            if outcome in (FoldOutcome.CORRECTION, FoldOutcome.ORPHANED, FoldOutcome.SKIPPED, FoldOutcome.REPEAT_TAP):
                logger.info(
                    "fold_anomaly",
                    extra={
                        "source_id": source_id,
                        "employee_code": event.employee_code,
                        "outcome": outcome.value,
                    },
                )

        if len(events) < limit:
            break

    return result


def run_fold_cycle(
    *,
    registry: EmployeeRegistry | None = None,
    now_utc: datetime | None = None,
    db: Session | None = None,
) -> FoldResult:
    if db is None:
        with SessionLocal() as managed_db:
            return run_fold_cycle(registry=registry, now_utc=now_utc, db=managed_db)

    settings = get_settings()
    now_value = normalize_ts(now_utc)
    mark_started(db, TASK_FOLD, now_utc=now_value)

    result = fold_pending(registry=registry, now_utc=now_value, db=db)
    if result.error is None:
        result.purged = purge_consumed(db, older_than=now_value - timedelta(days=settings.staging_retention_days))

    details = {
        "last_processed": result.processed,
        "last_created": result.created,
        "last_completed": result.completed,
        "last_orphaned": result.orphaned,
    }
    if result.error:
        mark_failed(db, TASK_FOLD, error=result.error, now_utc=now_value, details=details)
    else:
        mark_succeeded(db, TASK_FOLD, now_utc=now_value, details=details)

    logger.info(
        "fold_cycle_complete",
        extra={
            "processed": result.processed,
            "sessions_created": result.created,
            "completed": result.completed,
            "orphaned": result.orphaned,
            "corrections": result.corrections,
            "repeat_taps": result.repeat_taps,
            "skipped": result.skipped,
            "already_folded": result.already_folded,
            "failed": result.failed,
            "purged": result.purged,
        },
    )
    return result
