from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from punchsync.audit import add_audit
from punchsync.db import SessionLocal
from punchsync.models import AttendanceSession, ReviewPriority, SessionStatus, WorkSite
from punchsync.services.clock import normalize_ts
from punchsync.services.location import (
    HeuristicConfidenceScorer,
    LocationConfidenceScorer,
    active_work_sites,
    is_away_from_work,
    pings_between,
)
from punchsync.services.registry import DbEmployeeRegistry, EmployeeRegistry, skip_reason
from punchsync.services.session_feed import claim_open_session, record_transition
from punchsync.services.task_state import TASK_STALE_SWEEP, mark_failed, mark_started, mark_succeeded
from punchsync.settings import get_settings

logger = logging.getLogger("punchsync.stale_sessions")


@dataclass(slots=True)
class PenaltyBreakdown:
    missed_punch_hours: float = 0.0
    away_from_work_hours: float = 0.0
    low_confidence_hours: float = 0.0
    confidence: int = 0
    location_flags: dict[str, float | int | str] = field(default_factory=dict)

    @property
    def total_hours(self) -> float:
        return round(self.missed_punch_hours + self.away_from_work_hours + self.low_confidence_hours, 2)

    @property
    def count(self) -> int:
        return sum(
            1
            for value in (self.missed_punch_hours, self.away_from_work_hours, self.low_confidence_hours)
            if value > 0
        )

    def describe(self) -> str:
        parts = []
        if self.missed_punch_hours > 0:
            parts.append(f"missed punch-out -{self.missed_punch_hours:g}h")
        if self.away_from_work_hours > 0:
            parts.append(f"away from work site -{self.away_from_work_hours:g}h")
        if self.low_confidence_hours > 0:
            parts.append(f"low location confidence ({self.confidence}) -{self.low_confidence_hours:g}h")
        if not parts:
            return "Auto-closed without penalties."
        return "Auto-closed: " + ", ".join(parts) + "."


@dataclass(slots=True)
class StaleSweepResult:
    examined: int = 0
    closed: int = 0
    skipped: int = 0
    failed: int = 0
    closed_session_ids: list[int] = field(default_factory=list)
    error: str | None = None


def review_priority_for(penalty_count: int, confidence: int) -> ReviewPriority:
    if penalty_count >= 2 or (penalty_count >= 1 and confidence < 30):
        return ReviewPriority.HIGH
    if penalty_count >= 1 or confidence < 50:
        return ReviewPriority.NORMAL
    return ReviewPriority.LOW


def assess_penalties(
    db: Session,
    session: AttendanceSession,
    *,
    auto_close_utc: datetime,
    sites: list[WorkSite],
    scorer: LocationConfidenceScorer,
) -> PenaltyBreakdown:
    settings = get_settings()
    pings = pings_between(
        db,
        employee_code=session.employee_code,
        start_utc=session.check_in_utc,
        end_utc=auto_close_utc,
    )
    breakdown = PenaltyBreakdown(missed_punch_hours=settings.missed_punch_penalty_hours)

    away, flags = is_away_from_work(pings[-1] if pings else None, sites)
    breakdown.location_flags = flags
    if away:
        breakdown.away_from_work_hours = settings.away_from_work_penalty_hours

    breakdown.confidence = scorer.score_location_confidence(pings)
    if breakdown.confidence < settings.low_confidence_threshold:
        breakdown.low_confidence_hours = settings.low_confidence_penalty_hours
    return breakdown


def close_stale_sessions(
    *,
    now_utc: datetime | None = None,
    registry: EmployeeRegistry | None = None,
    scorer: LocationConfidenceScorer | None = None,
    db: Session | None = None,
) -> StaleSweepResult:
    if db is None:
        with SessionLocal() as managed_db:
            return close_stale_sessions(now_utc=now_utc, registry=registry, scorer=scorer, db=managed_db)

    settings = get_settings()
    now_value = normalize_ts(now_utc)
    threshold = timedelta(hours=settings.stale_session_threshold_hours)
    available_hours = min(settings.stale_session_threshold_hours, settings.max_session_hours)
    active_registry = registry or DbEmployeeRegistry(db)
    active_scorer = scorer or HeuristicConfidenceScorer()
    sites = active_work_sites(db)
    result = StaleSweepResult()

    stale_sessions = list(
        db.scalars(
            select(AttendanceSession)
            .where(
                AttendanceSession.status == SessionStatus.OPEN,
                AttendanceSession.check_in_utc.is_not(None),
                AttendanceSession.check_in_utc <= now_value - threshold,
            )
            .order_by(AttendanceSession.check_in_utc.asc(), AttendanceSession.id.asc())
        ).all()
    )

    for session in stale_sessions:
        result.examined += 1
        session_id = session.id
        reason = skip_reason(active_registry, session.employee_code)
        if reason is not None:
            result.skipped += 1
            logger.info(
                "stale_session_skipped",
                extra={"session_id": session_id, "employee_code": session.employee_code, "reason": reason},
            )
            continue

        auto_close_utc = session.check_in_utc + threshold
        try:
            breakdown = assess_penalties(
                db,
                session,
                auto_close_utc=auto_close_utc,
                sites=sites,
                scorer=active_scorer,
            )
            if not claim_open_session(db, session, SessionStatus.AUTO_CLOSED):
                result.skipped += 1
                logger.info(
                    "stale_session_already_closed",
                    extra={"session_id": session_id, "status": session.status.value},
                )
                continue
            session.check_out_utc = auto_close_utc
            session.penalty_hours = breakdown.total_hours
            session.total_hours = round(max(0.0, available_hours - breakdown.total_hours), 2)
            session.needs_review = (
                breakdown.total_hours > 0 or breakdown.confidence < settings.review_confidence_threshold
            )
            session.review_priority = review_priority_for(breakdown.count, breakdown.confidence)
            session.notes = f"{session.notes}\n{breakdown.describe()}" if session.notes else breakdown.describe()
            session.closed_at = now_value
            record_transition(db, session)
            add_audit(
                db,
                action="SESSION_AUTO_CLOSED",
                entity_type="attendance_session",
                entity_id=str(session_id),
                details={
                    "employee_code": session.employee_code,
                    "work_date": session.work_date.isoformat(),
                    "penalty_hours": breakdown.total_hours,
                    "confidence": breakdown.confidence,
                    "location": breakdown.location_flags,
                },
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            result.failed += 1
            result.error = f"PERSISTENCE_ERROR: {exc}"[:2000]
            logger.exception("stale_session_close_failed", extra={"session_id": session_id})
            continue

        result.closed += 1
        result.closed_session_ids.append(session_id)
        logger.info(
            "stale_session_closed",
            extra={
                "session_id": session_id,
                "employee_code": session.employee_code,
                "total_hours": session.total_hours,
                "penalty_hours": session.penalty_hours,
                "review_priority": session.review_priority,
            },
        )

    return result


def run_stale_sweep(
    *,
    now_utc: datetime | None = None,
    registry: EmployeeRegistry | None = None,
    scorer: LocationConfidenceScorer | None = None,
    db: Session | None = None,
) -> StaleSweepResult:
    if db is None:
        with SessionLocal() as managed_db:
            return run_stale_sweep(now_utc=now_utc, registry=registry, scorer=scorer, db=managed_db)

    now_value = normalize_ts(now_utc)
    mark_started(db, TASK_STALE_SWEEP, now_utc=now_value)
    result = close_stale_sessions(now_utc=now_value, registry=registry, scorer=scorer, db=db)

    details = {"last_examined": result.examined, "last_closed": result.closed, "last_skipped": result.skipped}
    if result.error:
        mark_failed(db, TASK_STALE_SWEEP, error=result.error, now_utc=now_value, details=details)
    else:
        mark_succeeded(db, TASK_STALE_SWEEP, now_utc=now_value, details=details)
    return result
