from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from punchsync.db import SessionLocal
from punchsync.errors import UpstreamError
from punchsync.models import IngestSource
from punchsync.services.clock import normalize_ts
from punchsync.services.event_store import insert_events
from punchsync.services.retry import RetryPolicy
from punchsync.services.task_state import (
    FLAG_EXTENDED_POLL_REQUESTED,
    TASK_POLL,
    get_flag,
    get_or_create_task_state,
    mark_failed,
    mark_started,
    mark_succeeded,
)
from punchsync.services.upstream import BiometricApiClient, PunchSource, call_with_reauth
from punchsync.settings import get_settings

logger = logging.getLogger("punchsync.poller")


@dataclass(slots=True)
class PollResult:
    window_start_utc: datetime
    window_end_utc: datetime
    extended: bool
    pulled: int = 0
    inserted: int = 0
    duplicates: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def compute_poll_window(
    now_utc: datetime,
    *,
    interval_seconds: int,
    overlap_seconds: int,
) -> tuple[datetime, datetime]:
    now_value = normalize_ts(now_utc)
    window_end = now_value - timedelta(seconds=overlap_seconds)
    window_start = window_end - timedelta(seconds=interval_seconds)
    return window_start, window_end


def compute_extended_window(
    now_utc: datetime,
    *,
    hours: int,
    overlap_seconds: int,
) -> tuple[datetime, datetime]:
    now_value = normalize_ts(now_utc)
    return now_value - timedelta(hours=hours), now_value - timedelta(seconds=overlap_seconds)


def should_run_extended_poll(db: Session, *, failure_threshold: int) -> tuple[bool, str | None]:
    state = get_or_create_task_state(db, TASK_POLL)
    if int(state.consecutive_failures or 0) >= max(1, failure_threshold):
        return True, "consecutive_failures"
    if get_flag(db, TASK_POLL, FLAG_EXTENDED_POLL_REQUESTED):
        return True, "validator_request"
    return False, None


def run_poll_cycle(
    *,
    client: PunchSource | None = None,
    now_utc: datetime | None = None,
    force_extended: bool = False,
    retry_policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    db: Session | None = None,
) -> PollResult:
    if db is None:
        with SessionLocal() as managed_db:
            return run_poll_cycle(
                client=client,
                now_utc=now_utc,
                force_extended=force_extended,
                retry_policy=retry_policy,
                sleep=sleep,
                db=managed_db,
            )

    settings = get_settings()
    now_value = normalize_ts(now_utc)
    active_client = client or BiometricApiClient.from_settings()

    extended, reason = should_run_extended_poll(db, failure_threshold=settings.poll_failure_threshold)
    if force_extended:
        extended, reason = True, "operator_request"

    if extended:
        window_start, window_end = compute_extended_window(
            now_value,
            hours=settings.extended_poll_hours,
            overlap_seconds=settings.poll_overlap_seconds,
        )
    else:
        window_start, window_end = compute_poll_window(
            now_value,
            interval_seconds=settings.poll_interval_seconds,
            overlap_seconds=settings.poll_overlap_seconds,
        )

    result = PollResult(window_start_utc=window_start, window_end_utc=window_end, extended=extended)
    mark_started(db, TASK_POLL, now_utc=now_value)

    try:
        punches = call_with_reauth(
            active_client,
            lambda source: source.fetch_events_between(window_start, window_end),
            policy=retry_policy,
            sleep=sleep,
            label="poll",
        )
    except UpstreamError as exc:
        result.error = f"{exc.code}: {exc.message}"
        state = mark_failed(db, TASK_POLL, error=result.error, now_utc=now_value)
        logger.warning(
            "poll_cycle_skipped",
            extra={
                "window_start": window_start,
                "window_end": window_end,
                "extended": extended,
                "error_code": exc.code,
                "error": exc.message,
                "consecutive_failures": state.consecutive_failures,
            },
        )
        return result

    source = IngestSource.EXTENDED_POLL if extended else IngestSource.POLL
    try:
        summary = insert_events(punches, source=source, db=db)
    except SQLAlchemyError as exc:
        db.rollback()
        result.error = f"PERSISTENCE_ERROR: {exc}"[:2000]
        mark_failed(db, TASK_POLL, error=result.error, now_utc=now_value)
        raise

    result.pulled = len(punches)
    result.inserted = summary.inserted
    result.duplicates = summary.duplicates

    details: dict[str, object] = {
        "last_window_start": window_start.isoformat(),
        "last_window_end": window_end.isoformat(),
        "last_pulled": result.pulled,
        "last_inserted": result.inserted,
        "last_duplicates": result.duplicates,
        "last_extended": extended,
    }
    if extended:
        details[FLAG_EXTENDED_POLL_REQUESTED] = False
    mark_succeeded(db, TASK_POLL, now_utc=now_value, details=details)

    logger.info(
        "poll_cycle_complete",
        extra={
            "window_start": window_start,
            "window_end": window_end,
            "extended": extended,
            "extended_reason": reason,
            "pulled": result.pulled,
            "inserted": result.inserted,
            "duplicates": result.duplicates,
        },
    )
    return result
