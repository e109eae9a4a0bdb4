from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import delete, func, select, union, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from punchsync.db import SessionLocal
from punchsync.models import AttendanceSessionEvent, IngestCounter, IngestSource, RawPunchEvent
from punchsync.services.clock import local_work_date, normalize_ts
from punchsync.services.upstream import UpstreamPunch

logger = logging.getLogger("punchsync.event_store")


class InsertOutcome(str, enum.Enum):
    INSERTED = "INSERTED"
    DUPLICATE = "DUPLICATE"


@dataclass(slots=True)
class IngestSummary:
    inserted: int = 0
    duplicates: int = 0
    inserted_ids: list[int] = field(default_factory=list)
    duplicate_ids: list[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.duplicates


def _bump_counter(db: Session, day: date, *, inserted: int = 0, duplicates: int = 0) -> None:
    if inserted == 0 and duplicates == 0:
        return

    for _ in range(2):
        result = db.execute(
            update(IngestCounter)
            .where(IngestCounter.day == day)
            .values(
                inserted_count=IngestCounter.inserted_count + inserted,
                duplicate_count=IngestCounter.duplicate_count + duplicates,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount:
            db.commit()
            return

        db.add(IngestCounter(day=day, inserted_count=inserted, duplicate_count=duplicates))
        try:
            db.commit()
            return
        except IntegrityError:
            # Another writer created the row first; update it instead.
            db.rollback()

    logger.error("ingest_counter_update_failed", extra={"day": day, "inserted": inserted, "duplicates": duplicates})


def insert_event(
    db: Session,
    punch: UpstreamPunch,
    *,
    source: IngestSource = IngestSource.POLL,
) -> InsertOutcome:
    """Stage one upstream punch unless its ``source_id`` is already known.

    The unique constraint on ``source_id`` decides the outcome; the pre-check
    only saves a failed insert in the common overlap case.
    """
    day = local_work_date(punch.punch_ts_utc)
    existing_id = db.scalar(select(RawPunchEvent.id).where(RawPunchEvent.source_id == punch.source_id))
    if existing_id is not None:
        _bump_counter(db, day, duplicates=1)
        return InsertOutcome.DUPLICATE

    db.add(
        RawPunchEvent(
            source_id=punch.source_id,
            employee_code=punch.employee_code,
            punch_ts_utc=normalize_ts(punch.punch_ts_utc),
            direction=punch.direction,
            punch_state=punch.punch_state,
            terminal_id=punch.terminal_id,
            is_access_control=punch.is_access_control,
            raw_payload=punch.raw_payload,
            ingest_source=source,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        _bump_counter(db, day, duplicates=1)
        return InsertOutcome.DUPLICATE

    _bump_counter(db, day, inserted=1)
    return InsertOutcome.INSERTED


def insert_events(
    punches: Iterable[UpstreamPunch],
    *,
    source: IngestSource = IngestSource.POLL,
    db: Session | None = None,
) -> IngestSummary:
    if db is None:
        with SessionLocal() as managed_db:
            return insert_events(punches, source=source, db=managed_db)

    summary = IngestSummary()
    for punch in punches:
        outcome = insert_event(db, punch, source=source)
        if outcome == InsertOutcome.INSERTED:
            summary.inserted += 1
            summary.inserted_ids.append(punch.source_id)
        else:
            summary.duplicates += 1
            summary.duplicate_ids.append(punch.source_id)

    if summary.total:
        logger.info(
            "events_staged",
            extra={
                "source": source.value,
                "inserted": summary.inserted,
                "duplicates": summary.duplicates,
            },
        )
    return summary


def fetch_ordered_since(
    db: Session,
    last_consumed_id: int | None = None,
    *,
    limit: int = 1000,
) -> list[RawPunchEvent]:
    """Unconsumed staged events in ascending ``source_id`` order.

    With ``last_consumed_id=None`` every unconsumed row is eligible, which
    also picks up late backfilled ids below the consumed watermark.
    """
    stmt = select(RawPunchEvent).where(RawPunchEvent.consumed_at.is_(None))
    if last_consumed_id is not None:
        stmt = stmt.where(RawPunchEvent.source_id > last_consumed_id)
    stmt = stmt.order_by(RawPunchEvent.source_id.asc()).limit(max(1, limit))
    return list(db.scalars(stmt).all())


def mark_consumed(
    db: Session,
    source_ids: Iterable[int],
    *,
    consumed_at: datetime | None = None,
    commit: bool = True,
) -> int:
    ids = sorted(set(source_ids))
    if not ids:
        return 0
    result = db.execute(
        update(RawPunchEvent)
        .where(RawPunchEvent.source_id.in_(ids), RawPunchEvent.consumed_at.is_(None))
        .values(consumed_at=normalize_ts(consumed_at))
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.commit()
    return int(result.rowcount or 0)


def last_consumed_source_id(db: Session) -> int | None:
    folded_max = db.scalar(select(func.max(AttendanceSessionEvent.source_id)))
    consumed_max = db.scalar(
        select(func.max(RawPunchEvent.source_id)).where(RawPunchEvent.consumed_at.is_not(None))
    )
    candidates = [value for value in (folded_max, consumed_max) if value is not None]
    return max(candidates) if candidates else None


def known_source_ids(db: Session, *, since_utc: datetime | None = None) -> list[int]:
    """Sorted id timeline: staged rows (tombstones included) plus folded ids."""
    staged = select(RawPunchEvent.source_id.label("source_id"))
    folded = select(AttendanceSessionEvent.source_id.label("source_id"))
    if since_utc is not None:
        cutoff = normalize_ts(since_utc)
        staged = staged.where(RawPunchEvent.punch_ts_utc >= cutoff)
        folded = folded.where(AttendanceSessionEvent.punch_ts_utc >= cutoff)

    timeline = union(staged, folded).subquery()
    rows = db.scalars(select(timeline.c.source_id).order_by(timeline.c.source_id.asc())).all()
    return [int(value) for value in rows]


def purge_consumed(db: Session, *, older_than: datetime) -> int:
    cutoff = normalize_ts(older_than)
    result = db.execute(
        delete(RawPunchEvent)
        .where(RawPunchEvent.consumed_at.is_not(None), RawPunchEvent.punch_ts_utc < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    deleted = int(result.rowcount or 0)
    if deleted:
        logger.info("staging_tombstones_purged", extra={"deleted": deleted, "cutoff": cutoff})
    return deleted


def duplicate_stats(db: Session, day: date) -> dict[str, float | int]:
    counter = db.get(IngestCounter, day)
    inserted = int(counter.inserted_count) if counter is not None else 0
    duplicates = int(counter.duplicate_count) if counter is not None else 0
    attempts = inserted + duplicates
    return {
        "inserted": inserted,
        "duplicates": duplicates,
        "duplicate_ratio": round(duplicates / attempts, 4) if attempts else 0.0,
    }
