from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import func, select, union
from sqlalchemy.orm import Session

from punchsync.db import SessionLocal
from punchsync.models import (
    AttendanceSession,
    AttendanceSessionEvent,
    DailyQualityReport,
    RawPunchEvent,
    SessionStatus,
)
from punchsync.services.clock import local_day_bounds_utc, local_work_date, normalize_ts
from punchsync.services.event_store import duplicate_stats
from punchsync.services.gaps import contiguity_percentage
from punchsync.services.task_state import (
    FLAG_EXTENDED_POLL_REQUESTED,
    TASK_POLL,
    TASK_VALIDATE,
    mark_failed,
    mark_started,
    mark_succeeded,
    set_flag,
)
from punchsync.settings import get_settings

logger = logging.getLogger("punchsync.consistency")

DENSITY_WEIGHT = 45.0
CONTIGUITY_WEIGHT = 20.0
DUPLICATE_WEIGHT = 10.0
ANOMALY_WEIGHT = 25.0


@dataclass(slots=True)
class ValidationResult:
    reports: list[DailyQualityReport] = field(default_factory=list)
    flagged_days: list[date] = field(default_factory=list)
    extended_poll_requested: bool = False


def quality_score(
    *,
    density_ratio: float,
    contiguity_pct: float,
    duplicate_ratio: float,
    anomaly_ratio: float,
) -> float:
    score = (
        DENSITY_WEIGHT * min(1.0, max(0.0, density_ratio))
        + CONTIGUITY_WEIGHT * min(100.0, max(0.0, contiguity_pct)) / 100.0
        + DUPLICATE_WEIGHT * (1.0 - min(1.0, max(0.0, duplicate_ratio)))
        + ANOMALY_WEIGHT * (1.0 - min(1.0, max(0.0, anomaly_ratio)))
    )
    return round(score, 1)


def _count_attendance_events(db: Session, start_utc: datetime, end_utc: datetime) -> int:
    return int(
        db.scalar(
            select(func.count(RawPunchEvent.id)).where(
                RawPunchEvent.is_access_control.is_(False),
                RawPunchEvent.punch_ts_utc >= start_utc,
                RawPunchEvent.punch_ts_utc < end_utc,
            )
        )
        or 0
    )


def _day_source_ids(db: Session, start_utc: datetime, end_utc: datetime) -> list[int]:
    staged = select(RawPunchEvent.source_id.label("source_id")).where(
        RawPunchEvent.punch_ts_utc >= start_utc,
        RawPunchEvent.punch_ts_utc < end_utc,
    )
    folded = select(AttendanceSessionEvent.source_id.label("source_id")).where(
        AttendanceSessionEvent.punch_ts_utc >= start_utc,
        AttendanceSessionEvent.punch_ts_utc < end_utc,
    )
    timeline = union(staged, folded).subquery()
    return [int(value) for value in db.scalars(select(timeline.c.source_id)).all()]


def weekday_baseline(
    db: Session,
    day: date,
    *,
    weeks: int,
    elapsed: timedelta | None = None,
) -> float | None:
    """Mean event count of the same weekday over previous weeks that had data.

    ``elapsed`` limits every sample to the same part of the day, which keeps
    a partial current day comparable.
    """
    samples: list[int] = []
    for week in range(1, max(1, weeks) + 1):
        sample_day = day - timedelta(days=7 * week)
        start_utc, end_utc = local_day_bounds_utc(sample_day)
        if elapsed is not None:
            end_utc = min(end_utc, start_utc + elapsed)
        count = _count_attendance_events(db, start_utc, end_utc)
        if count > 0:
            samples.append(count)
    if not samples:
        return None
    return sum(samples) / len(samples)


def compute_day_quality(db: Session, day: date, *, now_utc: datetime | None = None) -> DailyQualityReport:
    settings = get_settings()
    now_value = normalize_ts(now_utc)
    start_utc, end_utc = local_day_bounds_utc(day)

    elapsed: timedelta | None = None
    if start_utc <= now_value < end_utc:
        elapsed = now_value - start_utc
        end_utc = now_value

    observed = _count_attendance_events(db, start_utc, end_utc)
    expected = weekday_baseline(db, day, weeks=settings.quality_baseline_weeks, elapsed=elapsed)
    density_ratio = round(observed / expected, 4) if expected else 1.0

    contiguity = contiguity_percentage(_day_source_ids(db, start_utc, end_utc))
    duplicates = duplicate_stats(db, day)

    session_rows = db.execute(
        select(AttendanceSession.status, func.count(AttendanceSession.id))
        .where(AttendanceSession.work_date == day)
        .group_by(AttendanceSession.status)
    ).all()
    by_status = {status: int(count) for status, count in session_rows}
    sessions_total = sum(by_status.values())
    orphaned = by_status.get(SessionStatus.ORPHANED, 0)
    auto_closed = by_status.get(SessionStatus.AUTO_CLOSED, 0)
    anomaly_ratio = round((orphaned + auto_closed) / sessions_total, 4) if sessions_total else 0.0

    score = quality_score(
        density_ratio=density_ratio,
        contiguity_pct=contiguity,
        duplicate_ratio=float(duplicates["duplicate_ratio"]),
        anomaly_ratio=anomaly_ratio,
    )

    report = db.get(DailyQualityReport, day)
    if report is None:
        report = DailyQualityReport(day=day, score=score)
        db.add(report)
    report.observed_events = observed
    report.expected_events = round(expected, 2) if expected is not None else None
    report.density_ratio = density_ratio
    report.contiguity_pct = contiguity
    report.duplicate_ratio = float(duplicates["duplicate_ratio"])
    report.sessions_total = sessions_total
    report.orphaned_count = orphaned
    report.auto_closed_count = auto_closed
    report.anomaly_ratio = anomaly_ratio
    report.score = score
    report.flagged = score < settings.quality_score_floor
    report.computed_at = now_value
    db.commit()

    log_extra = {
        "day": day,
        "score": score,
        "observed": observed,
        "expected": report.expected_events,
        "density_ratio": density_ratio,
        "contiguity_pct": contiguity,
        "duplicate_ratio": report.duplicate_ratio,
        "anomaly_ratio": anomaly_ratio,
    }
    if report.flagged:
        logger.warning("data_quality_below_floor", extra=log_extra)
    else:
        logger.info("data_quality_computed", extra=log_extra)
    return report


def run_validation(
    *,
    now_utc: datetime | None = None,
    days: int = 2,
    db: Session | None = None,
) -> ValidationResult:
    if db is None:
        with SessionLocal() as managed_db:
            return run_validation(now_utc=now_utc, days=days, db=managed_db)

    settings = get_settings()
    now_value = normalize_ts(now_utc)
    today = local_work_date(now_value)
    mark_started(db, TASK_VALIDATE, now_utc=now_value)

    result = ValidationResult()
    try:
        for offset in range(max(1, days)):
            day = today - timedelta(days=offset)
            report = compute_day_quality(db, day, now_utc=now_value)
            result.reports.append(report)
            if report.flagged:
                result.flagged_days.append(day)
            # Only today and yesterday can still be recovered by an extended poll.
            if (
                offset <= 1
                and report.expected_events is not None
                and report.density_ratio < settings.extended_poll_density_ratio
            ):
                result.extended_poll_requested = True
    except Exception as exc:
        db.rollback()
        mark_failed(db, TASK_VALIDATE, error=str(exc)[:2000], now_utc=now_value)
        raise

    if result.extended_poll_requested:
        set_flag(db, TASK_POLL, FLAG_EXTENDED_POLL_REQUESTED, True)
        logger.warning("extended_poll_requested", extra={"days": [day.isoformat() for day in result.flagged_days]})

    latest = result.reports[0] if result.reports else None
    mark_succeeded(
        db,
        TASK_VALIDATE,
        now_utc=now_value,
        details={
            "latest_day": latest.day.isoformat() if latest else None,
            "latest_score": latest.score if latest else None,
            "flagged_days": [day.isoformat() for day in result.flagged_days],
        },
    )
    return result


def list_quality_reports(db: Session, *, days: int = 14) -> list[DailyQualityReport]:
    stmt = (
        select(DailyQualityReport)
        .order_by(DailyQualityReport.day.desc())
        .limit(max(1, min(days, 366)))
    )
    return list(db.scalars(stmt).all())
