from __future__ import annotations

from datetime import date

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from punchsync.models import AttendanceSession, SessionStatus, SessionTransition

FEED_STATUSES = {SessionStatus.COMPLETE, SessionStatus.AUTO_CLOSED}
MAX_PAGE_SIZE = 1000


def claim_open_session(db: Session, session: AttendanceSession, new_status: SessionStatus) -> bool:
    """Move ``session`` out of OPEN only if it is still OPEN in the database.

    Returns False (and reloads the row) when another worker closed it first.
    """
    claimed = db.execute(
        update(AttendanceSession)
        .where(AttendanceSession.id == session.id, AttendanceSession.status == SessionStatus.OPEN)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.refresh(session)
        return False
    session.status = new_status
    return True


def record_transition(db: Session, session: AttendanceSession) -> SessionTransition | None:
    """Stage a feed row for a terminal transition in the caller's transaction."""
    if session.status not in FEED_STATUSES:
        return None
    if session.id is None:
        db.flush()

    transition = SessionTransition(
        session_id=session.id,
        employee_code=session.employee_code,
        work_date=session.work_date,
        status=session.status,
        check_in_utc=session.check_in_utc,
        check_out_utc=session.check_out_utc,
        total_hours=session.total_hours,
        penalty_hours=session.penalty_hours,
    )
    db.add(transition)
    return transition


def list_sessions(
    db: Session,
    *,
    employee_code: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    status: SessionStatus | None = None,
    limit: int = 500,
) -> list[AttendanceSession]:
    stmt = select(AttendanceSession).options(selectinload(AttendanceSession.events))
    if employee_code:
        stmt = stmt.where(AttendanceSession.employee_code == employee_code)
    if date_from is not None:
        stmt = stmt.where(AttendanceSession.work_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(AttendanceSession.work_date <= date_to)
    if status is not None:
        stmt = stmt.where(AttendanceSession.status == status)

    stmt = stmt.order_by(
        AttendanceSession.work_date.asc(),
        AttendanceSession.employee_code.asc(),
        AttendanceSession.id.asc(),
    ).limit(max(1, min(limit, MAX_PAGE_SIZE)))
    return list(db.scalars(stmt).all())


def list_feed(db: Session, *, after_id: int = 0, limit: int = 100) -> list[SessionTransition]:
    stmt = (
        select(SessionTransition)
        .where(SessionTransition.id > max(0, after_id))
        .order_by(SessionTransition.id.asc())
        .limit(max(1, min(limit, MAX_PAGE_SIZE)))
    )
    return list(db.scalars(stmt).all())
