from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from punchsync.models import TaskState
from punchsync.services.clock import normalize_ts

TASK_POLL = "poll"
TASK_GAP_SCAN = "gap_scan"
TASK_FOLD = "fold"
TASK_STALE_SWEEP = "stale_sweep"
TASK_VALIDATE = "validate"
ALL_TASKS = (TASK_POLL, TASK_GAP_SCAN, TASK_FOLD, TASK_STALE_SWEEP, TASK_VALIDATE)

FLAG_EXTENDED_POLL_REQUESTED = "extended_poll_requested"


def get_or_create_task_state(db: Session, name: str) -> TaskState:
    state = db.get(TaskState, name)
    if state is not None:
        return state

    state = TaskState(name=name, consecutive_failures=0, details={})
    db.add(state)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        state = db.get(TaskState, name)
        if state is None:
            raise
    return state


def mark_started(db: Session, name: str, *, now_utc: datetime | None = None) -> TaskState:
    state = get_or_create_task_state(db, name)
    state.last_started_at = normalize_ts(now_utc)
    db.commit()
    return state


def mark_succeeded(
    db: Session,
    name: str,
    *,
    now_utc: datetime | None = None,
    details: dict[str, Any] | None = None,
) -> TaskState:
    state = get_or_create_task_state(db, name)
    finished_at = normalize_ts(now_utc)
    state.last_finished_at = finished_at
    state.last_success_at = finished_at
    state.consecutive_failures = 0
    state.last_error = None
    if details:
        state.details = {**(state.details or {}), **details}
    db.commit()
    return state


def mark_failed(
    db: Session,
    name: str,
    *,
    error: str,
    now_utc: datetime | None = None,
    details: dict[str, Any] | None = None,
) -> TaskState:
    # last_success_at keeps pointing at the last good run.
    state = get_or_create_task_state(db, name)
    state.last_finished_at = normalize_ts(now_utc)
    state.consecutive_failures = int(state.consecutive_failures or 0) + 1
    state.last_error = error[:2000]
    if details:
        state.details = {**(state.details or {}), **details}
    db.commit()
    return state


def get_flag(db: Session, name: str, flag: str) -> bool:
    state = db.get(TaskState, name)
    if state is None:
        return False
    return bool((state.details or {}).get(flag))


def set_flag(db: Session, name: str, flag: str, value: bool) -> None:
    state = get_or_create_task_state(db, name)
    details = dict(state.details or {})
    details[flag] = bool(value)
    state.details = details
    db.commit()
