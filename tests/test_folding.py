from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from punchsync.models import (
    AttendanceSession,
    AttendanceSessionEvent,
    AuditLog,
    PunchDirection,
    RawPunchEvent,
    ReviewPriority,
    SessionEventRole,
    SessionStatus,
    SessionTransition,
    TaskState,
)
from punchsync.services.event_store import insert_events, purge_consumed
from punchsync.services import folding
from punchsync.services.folding import FoldOutcome, compute_total_hours, fold_pending, run_fold_cycle
from tests.support import local_ts, make_session_factory, punch

IN = PunchDirection.IN
OUT = PunchDirection.OUT


class _Registry:
    def __init__(self, *, inactive: set[str] | None = None, exempt: set[str] | None = None) -> None:
        self.inactive = inactive or set()
        self.exempt = exempt or set()

    def is_active_employee(self, employee_code: str) -> bool:
        return employee_code not in self.inactive

    def is_biometric_exempt(self, employee_code: str) -> bool:
        return employee_code in self.exempt


class FoldingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db = self.factory()
        self.registry = _Registry()
        self.now = local_ts(2025, 7, 2, 1, 0)

    def tearDown(self) -> None:
        self.db.close()

    def _stage(self, *punches) -> None:
        insert_events(list(punches), db=self.db)

    def _fold(self, registry: _Registry | None = None):
        return fold_pending(registry=registry or self.registry, now_utc=self.now, db=self.db)

    def _sessions(self, employee_code: str = "E1") -> list[AttendanceSession]:
        return list(
            self.db.scalars(
                select(AttendanceSession)
                .where(AttendanceSession.employee_code == employee_code)
                .order_by(AttendanceSession.work_date, AttendanceSession.id)
            ).all()
        )

    def test_in_then_out_completes_session(self) -> None:
        self._stage(
            punch(100, local_ts(2025, 7, 1, 8, 58), IN),
            punch(101, local_ts(2025, 7, 1, 17, 5), OUT),
        )

        result = self._fold()

        self.assertIsNone(result.error)
        self.assertEqual(result.outcomes, {100: FoldOutcome.CREATED, 101: FoldOutcome.COMPLETED})
        sessions = self._sessions()
        self.assertEqual(len(sessions), 1)
        session = sessions[0]
        self.assertEqual(session.status, SessionStatus.COMPLETE)
        self.assertEqual(session.work_date, date(2025, 7, 1))
        self.assertEqual(session.check_in_utc, local_ts(2025, 7, 1, 8, 58))
        self.assertEqual(session.check_out_utc, local_ts(2025, 7, 1, 17, 5))
        self.assertAlmostEqual(session.total_hours, 8.12)
        self.assertFalse(session.needs_review)
        self.assertEqual(session.source_event_ids, [100, 101])

        pending = self.db.scalars(select(RawPunchEvent).where(RawPunchEvent.consumed_at.is_(None))).all()
        self.assertEqual(pending, [])
        feed = self.db.scalars(select(SessionTransition)).all()
        self.assertEqual(len(feed), 1)
        self.assertEqual(feed[0].status, SessionStatus.COMPLETE)

    def test_replayed_event_does_not_change_sessions(self) -> None:
        first_in = punch(100, local_ts(2025, 7, 1, 8, 58), IN)
        self._stage(first_in, punch(101, local_ts(2025, 7, 1, 17, 5), OUT))
        self._fold()

        self._stage(first_in)
        second = self._fold()

        self.assertEqual(second.processed, 0)
        sessions = self._sessions()
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].status, SessionStatus.COMPLETE)

    def test_refetched_event_after_purge_is_recognised_as_folded(self) -> None:
        first_in = punch(100, local_ts(2025, 7, 1, 8, 58), IN)
        self._stage(first_in, punch(101, local_ts(2025, 7, 1, 17, 5), OUT))
        self._fold()
        purge_consumed(self.db, older_than=self.now + timedelta(days=1))

        self._stage(first_in)
        result = self._fold()

        self.assertEqual(result.outcomes, {100: FoldOutcome.ALREADY_FOLDED})
        self.assertEqual(len(self._sessions()), 1)
        self.assertEqual(self.db.scalar(select(RawPunchEvent.consumed_at)), self.now)

    def test_out_without_open_session_is_orphaned_and_other_days_untouched(self) -> None:
        self._stage(
            punch(10, local_ts(2025, 7, 1, 9, 0), IN),
            punch(11, local_ts(2025, 7, 2, 18, 0), OUT),
        )

        result = self._fold()

        self.assertEqual(result.orphaned, 1)
        first_day, second_day = self._sessions()
        self.assertEqual(first_day.work_date, date(2025, 7, 1))
        self.assertEqual(first_day.status, SessionStatus.OPEN)
        self.assertIsNone(first_day.check_out_utc)
        self.assertEqual(second_day.work_date, date(2025, 7, 2))
        self.assertEqual(second_day.status, SessionStatus.ORPHANED)
        self.assertEqual(second_day.check_in_utc, second_day.check_out_utc)
        self.assertEqual(second_day.total_hours, 0.0)
        self.assertTrue(second_day.needs_review)
        self.assertEqual(second_day.review_priority, ReviewPriority.NORMAL)
        self.assertEqual(self.db.scalars(select(SessionTransition)).all(), [])

    def test_second_check_in_keeps_earliest_and_is_audited(self) -> None:
        self._stage(
            punch(20, local_ts(2025, 7, 1, 9, 10), IN),
            punch(21, local_ts(2025, 7, 1, 9, 0), IN),
            punch(22, local_ts(2025, 7, 1, 17, 0), OUT),
        )

        result = self._fold()

        self.assertEqual(result.corrections, 1)
        sessions = self._sessions()
        self.assertEqual(len(sessions), 1)
        session = sessions[0]
        self.assertEqual(session.check_in_utc, local_ts(2025, 7, 1, 9, 0))
        self.assertAlmostEqual(session.total_hours, 8.0)
        roles = {item.source_id: item.role for item in session.events}
        self.assertEqual(roles[21], SessionEventRole.CORRECTION)
        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "SESSION_EXTRA_CHECKIN"))
        self.assertIsNotNone(audit)
        self.assertEqual(audit.details["source_id"], 21)

    def test_repeat_tap_after_check_out_is_absorbed(self) -> None:
        self._stage(
            punch(30, local_ts(2025, 7, 1, 9, 0), IN),
            punch(31, local_ts(2025, 7, 1, 17, 0), OUT),
            punch(32, local_ts(2025, 7, 1, 17, 0) + timedelta(seconds=40), OUT),
        )

        result = self._fold()

        self.assertEqual(result.repeat_taps, 1)
        self.assertEqual(result.orphaned, 0)
        sessions = self._sessions()
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].check_out_utc, local_ts(2025, 7, 1, 17, 0))
        self.assertEqual(sessions[0].source_event_ids, [30, 31, 32])

    def test_late_out_outside_repeat_window_is_orphaned(self) -> None:
        self._stage(
            punch(40, local_ts(2025, 7, 1, 9, 0), IN),
            punch(41, local_ts(2025, 7, 1, 17, 0), OUT),
            punch(42, local_ts(2025, 7, 1, 17, 5), OUT),
        )

        result = self._fold()

        self.assertEqual(result.orphaned, 1)
        self.assertEqual([item.status for item in self._sessions()], [SessionStatus.COMPLETE, SessionStatus.ORPHANED])

    def test_orphan_for_exempt_or_inactive_employee_is_skipped(self) -> None:
        self._stage(
            punch(50, local_ts(2025, 7, 1, 18, 0), OUT, employee_code="X1"),
            punch(51, local_ts(2025, 7, 1, 18, 0), OUT, employee_code="X2"),
        )

        result = self._fold(_Registry(inactive={"X1"}, exempt={"X2"}))

        self.assertEqual(result.skipped, 2)
        self.assertEqual(self._sessions("X1"), [])
        self.assertEqual(self._sessions("X2"), [])
        reasons = sorted(
            audit.details["reason"]
            for audit in self.db.scalars(select(AuditLog).where(AuditLog.action == "ORPHAN_PUNCH_SKIPPED")).all()
        )
        self.assertEqual(reasons, ["biometric_exempt", "inactive_employee"])

    def test_access_control_punches_are_consumed_without_sessions(self) -> None:
        self._stage(punch(60, local_ts(2025, 7, 1, 9, 0), IN, terminal_id="Door Lock 2", access_control=True))

        result = self._fold()

        self.assertEqual(result.outcomes, {60: FoldOutcome.ACCESS_CONTROL})
        self.assertEqual(self._sessions(), [])
        self.assertIsNotNone(self.db.scalar(select(RawPunchEvent.consumed_at).where(RawPunchEvent.source_id == 60)))

    def test_total_hours_are_capped(self) -> None:
        self._stage(
            punch(70, local_ts(2025, 7, 1, 6, 0), IN),
            punch(71, local_ts(2025, 7, 1, 20, 30), OUT),
        )

        self._fold()

        session = self._sessions()[0]
        self.assertEqual(session.status, SessionStatus.COMPLETE)
        self.assertEqual(session.total_hours, 12.0)
        self.assertIn("capped", session.notes or "")

    def test_compute_total_hours_rounds_and_clamps(self) -> None:
        start = datetime(2025, 7, 1, 4, 0, tzinfo=timezone.utc)
        self.assertEqual(compute_total_hours(start, start + timedelta(minutes=487), max_hours=12), 8.12)
        self.assertEqual(compute_total_hours(start, start - timedelta(hours=1), max_hours=12), 0.0)
        self.assertEqual(compute_total_hours(start, start + timedelta(hours=15), max_hours=12), 12.0)

    def test_staging_order_does_not_change_result(self) -> None:
        punches = [
            punch(80, local_ts(2025, 7, 1, 9, 0), IN),
            punch(81, local_ts(2025, 7, 1, 12, 0), OUT),
            punch(82, local_ts(2025, 7, 1, 13, 0), IN),
            punch(83, local_ts(2025, 7, 1, 18, 0), OUT),
        ]

        snapshots = []
        for ordering in (punches, list(reversed(punches)), [punches[2], punches[0], punches[3], punches[1]]):
            db = make_session_factory()()
            try:
                insert_events(ordering, db=db)
                fold_pending(registry=self.registry, now_utc=self.now, db=db)
                rows = db.scalars(select(AttendanceSession).order_by(AttendanceSession.check_in_utc)).all()
                snapshots.append(
                    [(row.status, row.check_in_utc, row.check_out_utc, row.total_hours, row.source_event_ids) for row in rows]
                )
            finally:
                db.close()

        self.assertEqual(snapshots[0], snapshots[1])
        self.assertEqual(snapshots[0], snapshots[2])
        self.assertEqual([item[3] for item in snapshots[0]], [3.0, 5.0])

    def test_persistence_failure_leaves_event_pending_for_next_cycle(self) -> None:
        self._stage(
            punch(90, local_ts(2025, 7, 1, 9, 0), IN),
            punch(91, local_ts(2025, 7, 1, 17, 0), OUT),
            punch(92, local_ts(2025, 7, 1, 9, 30), IN, employee_code="E2"),
        )

        with patch("punchsync.services.folding.record_transition", side_effect=SQLAlchemyError("boom")):
            failed = self._fold()

        self.assertEqual(failed.failed_source_id, 91)
        self.assertIn("boom", failed.error or "")
        self.assertEqual(failed.outcomes, {90: FoldOutcome.CREATED})
        pending = self.db.scalars(
            select(RawPunchEvent.source_id).where(RawPunchEvent.consumed_at.is_(None)).order_by(RawPunchEvent.source_id)
        ).all()
        self.assertEqual(pending, [91, 92])
        self.assertEqual(self._sessions()[0].status, SessionStatus.OPEN)

        retried = self._fold()

        self.assertIsNone(retried.error)
        self.assertEqual(retried.outcomes, {91: FoldOutcome.COMPLETED, 92: FoldOutcome.CREATED})
        self.assertEqual(self._sessions()[0].status, SessionStatus.COMPLETE)
        self.assertIsNotNone(self.db.get(AttendanceSessionEvent, 91))

    def test_session_auto_closed_during_fold_is_not_completed(self) -> None:
        self._stage(punch(96, local_ts(2025, 7, 1, 8, 0), IN))
        self._fold()
        self._stage(punch(97, local_ts(2025, 7, 1, 21, 0), OUT))
        find_open_session = folding._find_open_session

        def find_then_auto_close(db, employee_code, work_date):  # type: ignore[no-untyped-def]
            found = find_open_session(db, employee_code, work_date)
            if found is not None:
                with self.factory() as other:
                    other.execute(
                        update(AttendanceSession)
                        .where(AttendanceSession.id == found.id)
                        .values(
                            status=SessionStatus.AUTO_CLOSED,
                            check_out_utc=local_ts(2025, 7, 1, 20, 0),
                            total_hours=10.5,
                        )
                    )
                    other.commit()
            return found

        with patch("punchsync.services.folding._find_open_session", side_effect=find_then_auto_close):
            result = self._fold()

        self.assertIsNone(result.error)
        self.assertEqual(result.outcomes, {97: FoldOutcome.ORPHANED})
        sessions = self._sessions()
        self.assertEqual([item.status for item in sessions], [SessionStatus.AUTO_CLOSED, SessionStatus.ORPHANED])
        self.assertEqual(sessions[0].check_out_utc, local_ts(2025, 7, 1, 20, 0))
        self.assertEqual(sessions[0].total_hours, 10.5)
        self.assertEqual(sessions[0].source_event_ids, [96])
        self.assertEqual(self.db.scalars(select(SessionTransition)).all(), [])

    def test_run_fold_cycle_records_task_state(self) -> None:
        self._stage(punch(95, local_ts(2025, 7, 1, 9, 0), IN))

        with self.assertLogs("punchsync.folding", level="INFO") as captured:
            result = run_fold_cycle(registry=self.registry, now_utc=self.now, db=self.db)

        self.assertEqual(result.created, 1)
        self.assertTrue(any("fold_cycle_complete" in line for line in captured.output))
        state = self.db.get(TaskState, "fold")
        self.assertEqual(state.consecutive_failures, 0)
        self.assertEqual(state.last_success_at, self.now)
        self.assertEqual(state.details["last_created"], 1)


if __name__ == "__main__":
    unittest.main()
