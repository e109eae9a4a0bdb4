from __future__ import annotations

import unittest
from datetime import date, timedelta

from sqlalchemy import select, update

from punchsync.models import (
    AttendanceSession,
    AuditLog,
    LocationPing,
    ReviewPriority,
    SessionStatus,
    SessionTransition,
    TaskState,
    WorkSite,
)
from punchsync.services.stale_sessions import close_stale_sessions, review_priority_for, run_stale_sweep
from tests.support import local_ts, make_session_factory

SITE_LAT = 31.5204
SITE_LON = 74.3587


class _Registry:
    def __init__(self, exempt: set[str] | None = None) -> None:
        self.exempt = exempt or set()

    def is_active_employee(self, employee_code: str) -> bool:
        return True

    def is_biometric_exempt(self, employee_code: str) -> bool:
        return employee_code in self.exempt


class _CompletingScorer:
    """Completes the session from a second DB session while the sweep scores it."""

    def __init__(self, factory, session_id: int, check_out) -> None:  # type: ignore[no-untyped-def]
        self.factory = factory
        self.session_id = session_id
        self.check_out = check_out

    def score_location_confidence(self, pings) -> int:  # type: ignore[no-untyped-def]
        with self.factory() as other:
            other.execute(
                update(AttendanceSession)
                .where(AttendanceSession.id == self.session_id)
                .values(status=SessionStatus.COMPLETE, check_out_utc=self.check_out, total_hours=7.0)
            )
            other.commit()
        return 100


class ReviewPriorityTests(unittest.TestCase):
    def test_priority_table(self) -> None:
        cases = [
            (2, 90, ReviewPriority.HIGH),
            (1, 20, ReviewPriority.HIGH),
            (1, 80, ReviewPriority.NORMAL),
            (0, 40, ReviewPriority.NORMAL),
            (0, 20, ReviewPriority.NORMAL),
            (0, 60, ReviewPriority.LOW),
        ]
        for count, confidence, expected in cases:
            with self.subTest(count=count, confidence=confidence):
                self.assertEqual(review_priority_for(count, confidence), expected)


class StaleSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.check_in = local_ts(2025, 7, 1, 8, 0)
        self.db.add(WorkSite(name="Head Office", lat=SITE_LAT, lon=SITE_LON, radius_m=200, is_active=True))
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def _open_session(self, employee_code: str = "E1", status: SessionStatus = SessionStatus.OPEN) -> AttendanceSession:
        session = AttendanceSession(
            employee_code=employee_code,
            work_date=date(2025, 7, 1),
            check_in_utc=self.check_in,
            check_out_utc=self.check_in + timedelta(hours=1) if status != SessionStatus.OPEN else None,
            status=status,
            total_hours=0.0,
        )
        self.db.add(session)
        self.db.commit()
        return session

    def _add_pings(
        self,
        count: int,
        *,
        first: int = 0,
        lat: float = SITE_LAT,
        lon: float = SITE_LON,
        accuracy_m: float = 20.0,
    ) -> None:
        for index in range(count):
            self.db.add(
                LocationPing(
                    employee_code="E1",
                    ts_utc=self.check_in + timedelta(minutes=30 * (first + index + 1)),
                    lat=lat,
                    lon=lon,
                    accuracy_m=accuracy_m,
                )
            )
        self.db.commit()

    def _sweep(self, hours_after_check_in: float, registry: _Registry | None = None):
        return close_stale_sessions(
            now_utc=self.check_in + timedelta(hours=hours_after_check_in),
            registry=registry or _Registry(),
            db=self.db,
        )

    def test_session_younger_than_threshold_stays_open(self) -> None:
        session = self._open_session()

        result = self._sweep(11)

        self.assertEqual(result.closed, 0)
        self.assertEqual(self.db.get(AttendanceSession, session.id).status, SessionStatus.OPEN)

    def test_no_location_data_closes_with_missed_punch_and_low_confidence(self) -> None:
        session = self._open_session()

        result = self._sweep(13)

        self.assertEqual(result.closed_session_ids, [session.id])
        closed = self.db.get(AttendanceSession, session.id)
        self.assertEqual(closed.status, SessionStatus.AUTO_CLOSED)
        self.assertEqual(closed.check_out_utc, self.check_in + timedelta(hours=12))
        self.assertEqual(closed.penalty_hours, 1.5)
        self.assertEqual(closed.total_hours, 10.5)
        self.assertTrue(closed.needs_review)
        self.assertEqual(closed.review_priority, ReviewPriority.HIGH)
        self.assertIn("missed punch-out", closed.notes)

    def test_good_location_data_only_costs_missed_punch(self) -> None:
        session = self._open_session()
        self._add_pings(10)

        self._sweep(13)

        closed = self.db.get(AttendanceSession, session.id)
        self.assertEqual(closed.penalty_hours, 1.0)
        self.assertEqual(closed.total_hours, 11.0)
        self.assertTrue(closed.needs_review)
        self.assertEqual(closed.review_priority, ReviewPriority.NORMAL)

    def test_last_ping_away_from_site_adds_penalty(self) -> None:
        session = self._open_session()
        self._add_pings(9)
        self._add_pings(1, first=9, lat=31.6000, lon=74.5000)

        self._sweep(13)

        closed = self.db.get(AttendanceSession, session.id)
        self.assertEqual(closed.penalty_hours, 2.0)
        self.assertEqual(closed.total_hours, 10.0)
        self.assertEqual(closed.review_priority, ReviewPriority.HIGH)
        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "SESSION_AUTO_CLOSED"))
        self.assertEqual(audit.details["location"]["nearest_site"], "Head Office")

    def test_terminal_sessions_are_not_touched(self) -> None:
        complete = self._open_session(status=SessionStatus.COMPLETE)
        orphaned = self._open_session(employee_code="E2", status=SessionStatus.ORPHANED)

        result = self._sweep(20)

        self.assertEqual(result.examined, 0)
        self.assertEqual(self.db.get(AttendanceSession, complete.id).status, SessionStatus.COMPLETE)
        self.assertEqual(self.db.get(AttendanceSession, orphaned.id).status, SessionStatus.ORPHANED)

    def test_exempt_employee_is_skipped(self) -> None:
        session = self._open_session(employee_code="X1")

        result = self._sweep(13, registry=_Registry(exempt={"X1"}))

        self.assertEqual((result.examined, result.skipped, result.closed), (1, 1, 0))
        self.assertEqual(self.db.get(AttendanceSession, session.id).status, SessionStatus.OPEN)

    def test_auto_close_is_published_to_feed(self) -> None:
        session = self._open_session()

        result = run_stale_sweep(
            now_utc=self.check_in + timedelta(hours=13),
            registry=_Registry(),
            db=self.db,
        )

        self.assertEqual(result.closed, 1)
        feed = self.db.scalars(select(SessionTransition)).all()
        self.assertEqual([(row.session_id, row.status) for row in feed], [(session.id, SessionStatus.AUTO_CLOSED)])
        self.assertEqual(feed[0].total_hours, 10.5)
        self.assertEqual(self.db.get(TaskState, "stale_sweep").details["last_closed"], 1)

        again = self._sweep(14)
        self.assertEqual(again.examined, 0)


    def test_session_completed_during_sweep_is_not_overwritten(self) -> None:
        session = self._open_session()
        scorer = _CompletingScorer(self.factory, session.id, self.check_in + timedelta(hours=7))

        with self.assertLogs("punchsync.stale_sessions", level="INFO") as captured:
            result = close_stale_sessions(
                now_utc=self.check_in + timedelta(hours=13),
                registry=_Registry(),
                scorer=scorer,
                db=self.db,
            )

        self.assertEqual((result.examined, result.closed, result.skipped), (1, 0, 1))
        kept = self.db.get(AttendanceSession, session.id)
        self.assertEqual(kept.status, SessionStatus.COMPLETE)
        self.assertEqual(kept.check_out_utc, self.check_in + timedelta(hours=7))
        self.assertEqual(kept.total_hours, 7.0)
        self.assertEqual(self.db.scalars(select(SessionTransition)).all(), [])
        self.assertTrue(any("stale_session_already_closed" in line for line in captured.output))

if __name__ == "__main__":
    unittest.main()
