from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from punchsync.audit import add_audit
from punchsync.db import SessionLocal
from punchsync.errors import UpstreamError
from punchsync.models import AttendanceSessionEvent, GapRecord, GapStatus, IngestSource, RawPunchEvent
from punchsync.services.clock import normalize_ts
from punchsync.services.event_store import insert_events, known_source_ids
from punchsync.services.retry import RetryPolicy
from punchsync.services.task_state import TASK_GAP_SCAN, mark_failed, mark_started, mark_succeeded
from punchsync.services.upstream import BiometricApiClient, PunchSource, call_with_reauth
from punchsync.settings import get_settings

logger = logging.getLogger("punchsync.gaps")


@dataclass(frozen=True, slots=True)
class SequenceGap:
    start_id: int
    end_id: int

    @property
    def size(self) -> int:
        return self.end_id - self.start_id + 1


@dataclass(slots=True)
class GapCycleResult:
    detected: int = 0
    reopened: int = 0
    attempted: int = 0
    resolved: int = 0
    recovered: int = 0
    stale: int = 0
    retry_scheduled: int = 0
    error: str | None = None


def find_sequence_gaps(ids: Iterable[int]) -> list[SequenceGap]:
    """Inclusive missing ranges between consecutive known ids."""
    ordered = sorted(set(ids))
    gaps: list[SequenceGap] = []
    for previous_id, next_id in zip(ordered, ordered[1:]):
        if next_id - previous_id > 1:
            gaps.append(SequenceGap(start_id=previous_id + 1, end_id=next_id - 1))
    return gaps


def contiguity_percentage(ids: Iterable[int]) -> float:
    """Share of known ids not followed by a hole, regardless of hole size."""
    unique_ids = set(ids)
    if len(unique_ids) < 2:
        return 100.0
    gap_count = len(find_sequence_gaps(unique_ids))
    return round((len(unique_ids) - gap_count) / len(unique_ids) * 100.0, 2)


def next_backfill_attempt_at(now_utc: datetime, *, attempts: int, base_minutes: int) -> datetime:
    return normalize_ts(now_utc) + timedelta(minutes=base_minutes * (2 ** max(0, attempts - 1)))


def _timestamp_for(db: Session, source_id: int) -> datetime | None:
    staged = db.scalar(select(RawPunchEvent.punch_ts_utc).where(RawPunchEvent.source_id == source_id))
    if staged is not None:
        return staged
    return db.scalar(select(AttendanceSessionEvent.punch_ts_utc).where(AttendanceSessionEvent.source_id == source_id))


def detect_gaps(db: Session, *, now_utc: datetime | None = None) -> tuple[int, int]:
    """Record every hole in the known-id timeline; returns (created, reopened)."""
    settings = get_settings()
    now_value = normalize_ts(now_utc)
    horizon = now_value - timedelta(days=settings.staging_retention_days)

    created = 0
    reopened = 0
    for gap in find_sequence_gaps(known_source_ids(db, since_utc=horizon)):
        existing = db.scalar(
            select(GapRecord).where(GapRecord.start_id == gap.start_id, GapRecord.end_id == gap.end_id)
        )
        if existing is not None:
            if existing.status == GapStatus.RESOLVED:
                existing.status = GapStatus.OPEN
                existing.attempts = 0
                existing.next_attempt_at = now_value
                existing.resolved_at = None
                add_audit(
                    db,
                    action="GAP_REOPENED",
                    entity_type="gap_record",
                    entity_id=str(existing.id),
                    details={"start_id": gap.start_id, "end_id": gap.end_id},
                )
                db.commit()
                reopened += 1
            continue

        db.add(
            GapRecord(
                start_id=gap.start_id,
                end_id=gap.end_id,
                gap_size=gap.size,
                time_range_start_utc=_timestamp_for(db, gap.start_id - 1),
                time_range_end_utc=_timestamp_for(db, gap.end_id + 1),
                status=GapStatus.OPEN,
                attempts=0,
                next_attempt_at=now_value,
                detected_at=now_value,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # Recorded concurrently by another scan.
            db.rollback()
            continue
        created += 1
        logger.info(
            "gap_detected",
            extra={"start_id": gap.start_id, "end_id": gap.end_id, "gap_size": gap.size},
        )

    return created, reopened


def _due_gaps(db: Session, *, now_utc: datetime, limit: int) -> list[GapRecord]:
    stmt = (
        select(GapRecord)
        .where(
            GapRecord.status == GapStatus.OPEN,
            or_(GapRecord.next_attempt_at.is_(None), GapRecord.next_attempt_at <= now_utc),
        )
        .order_by(GapRecord.start_id.asc())
        .limit(max(1, limit))
    )
    return list(db.scalars(stmt).all())


def backfill_gaps(
    db: Session,
    client: PunchSource,
    *,
    now_utc: datetime | None = None,
    retry_policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    result: GapCycleResult | None = None,
) -> GapCycleResult:
    settings = get_settings()
    now_value = normalize_ts(now_utc)
    cycle = result or GapCycleResult()

    for gap in _due_gaps(db, now_utc=now_value, limit=settings.gap_backfill_batch_limit):
        gap_id = gap.id
        start_id, end_id = gap.start_id, gap.end_id
        cycle.attempted += 1
        try:
            punches = call_with_reauth(
                client,
                lambda source: source.fetch_events_by_id_range(start_id, end_id),
                policy=retry_policy,
                sleep=sleep,
                label="gap_backfill",
            )
        except UpstreamError as exc:
            # Transport failures do not use up an attempt.
            gap.last_attempt_at = now_value
            gap.last_error = f"{exc.code}: {exc.message}"[:2000]
            db.commit()
            cycle.error = gap.last_error
            logger.warning(
                "gap_backfill_deferred",
                extra={"gap_id": gap_id, "start_id": start_id, "end_id": end_id, "error": exc.message},
            )
            break

        if punches:
            summary = insert_events(punches, source=IngestSource.BACKFILL, db=db)
            gap.status = GapStatus.RESOLVED
            gap.records_recovered = int(gap.records_recovered or 0) + summary.inserted
            gap.resolved_at = now_value
            gap.last_attempt_at = now_value
            gap.next_attempt_at = None
            gap.last_error = None
            add_audit(
                db,
                action="GAP_RESOLVED",
                entity_type="gap_record",
                entity_id=str(gap_id),
                details={
                    "start_id": start_id,
                    "end_id": end_id,
                    "returned": len(punches),
                    "inserted": summary.inserted,
                },
            )
            db.commit()
            cycle.resolved += 1
            cycle.recovered += summary.inserted
            logger.info(
                "gap_resolved",
                extra={
                    "gap_id": gap_id,
                    "start_id": start_id,
                    "end_id": end_id,
                    "recovered": summary.inserted,
                },
            )
            continue

        gap.attempts = int(gap.attempts or 0) + 1
        gap.last_attempt_at = now_value
        gap.last_error = None
        if gap.attempts >= settings.gap_backfill_max_attempts:
            gap.status = GapStatus.STALE
            gap.next_attempt_at = None
            add_audit(
                db,
                action="GAP_STALE",
                entity_type="gap_record",
                entity_id=str(gap_id),
                details={"start_id": start_id, "end_id": end_id, "attempts": gap.attempts},
            )
            cycle.stale += 1
            logger.warning(
                "gap_marked_stale",
                extra={"gap_id": gap_id, "start_id": start_id, "end_id": end_id, "attempts": gap.attempts},
            )
        else:
            gap.next_attempt_at = next_backfill_attempt_at(
                now_value,
                attempts=gap.attempts,
                base_minutes=settings.gap_backfill_base_backoff_minutes,
            )
            cycle.retry_scheduled += 1
        db.commit()

    return cycle


def run_gap_cycle(
    *,
    client: PunchSource | None = None,
    now_utc: datetime | None = None,
    retry_policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    db: Session | None = None,
) -> GapCycleResult:
    if db is None:
        with SessionLocal() as managed_db:
            return run_gap_cycle(
                client=client,
                now_utc=now_utc,
                retry_policy=retry_policy,
                sleep=sleep,
                db=managed_db,
            )

    now_value = normalize_ts(now_utc)
    mark_started(db, TASK_GAP_SCAN, now_utc=now_value)

    cycle = GapCycleResult()
    cycle.detected, cycle.reopened = detect_gaps(db, now_utc=now_value)
    backfill_gaps(
        db,
        client or BiometricApiClient.from_settings(),
        now_utc=now_value,
        retry_policy=retry_policy,
        sleep=sleep,
        result=cycle,
    )

    details = {
        "last_detected": cycle.detected,
        "last_attempted": cycle.attempted,
        "last_resolved": cycle.resolved,
        "last_stale": cycle.stale,
    }
    if cycle.error:
        mark_failed(db, TASK_GAP_SCAN, error=cycle.error, now_utc=now_value, details=details)
    else:
        mark_succeeded(db, TASK_GAP_SCAN, now_utc=now_value, details=details)

    logger.info(
        "gap_cycle_complete",
        extra={
            "detected": cycle.detected,
            "reopened": cycle.reopened,
            "attempted": cycle.attempted,
            "resolved": cycle.resolved,
            "recovered": cycle.recovered,
            "stale": cycle.stale,
            "retry_scheduled": cycle.retry_scheduled,
            "error": cycle.error,
        },
    )
    return cycle
