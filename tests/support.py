from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from punchsync.db import Base
from punchsync import models  # noqa: F401
from punchsync.errors import UpstreamError
from punchsync.models import PunchDirection
from punchsync.services.retry import RetryPolicy
from punchsync.services.upstream import UpstreamPunch

LOCAL_TZ = ZoneInfo("Asia/Karachi")
NO_WAIT_RETRY = RetryPolicy(max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0)


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_get_db(factory: sessionmaker[Session]):
    def _override() -> Generator[Session, None, None]:
        db = factory()
        try:
            yield db
        finally:
            db.close()

    return _override


def local_ts(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=LOCAL_TZ).astimezone(timezone.utc)


def punch(
    source_id: int,
    ts_utc: datetime,
    direction: PunchDirection = PunchDirection.IN,
    *,
    employee_code: str = "E1",
    terminal_id: str = "CGF-01",
    access_control: bool = False,
) -> UpstreamPunch:
    return UpstreamPunch(
        source_id=source_id,
        employee_code=employee_code,
        punch_ts_utc=ts_utc,
        direction=direction,
        punch_state="0" if direction == PunchDirection.IN else "1",
        terminal_id=terminal_id,
        is_access_control=access_control,
        raw_payload={"id": source_id, "emp_code": employee_code},
    )


class FakePunchSource:
    """In-memory stand-in for the biometric API.

    ``errors`` are raised (in order) before any records are returned.
    """

    def __init__(self, records: list[UpstreamPunch] | None = None, errors: list[UpstreamError] | None = None):
        self.records = list(records or [])
        self.errors = list(errors or [])
        self.window_calls: list[tuple[datetime, datetime]] = []
        self.range_calls: list[tuple[int, int]] = []
        self.invalidations = 0

    def invalidate_token(self) -> None:
        self.invalidations += 1

    def _maybe_fail(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    def fetch_events_between(self, start_utc: datetime, end_utc: datetime) -> list[UpstreamPunch]:
        self.window_calls.append((start_utc, end_utc))
        self._maybe_fail()
        return [item for item in self.records if start_utc <= item.punch_ts_utc <= end_utc]

    def fetch_events_by_id_range(self, start_id: int, end_id: int) -> list[UpstreamPunch]:
        self.range_calls.append((start_id, end_id))
        self._maybe_fail()
        return [item for item in self.records if start_id <= item.source_id <= end_id]
