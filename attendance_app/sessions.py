"""
Attendance session lifecycle.

A class has at most one active session. Sessions close either explicitly or
when they outlive ``settings.session_max_hours``; expiry is applied lazily
whenever sessions are looked up or created.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import settings
from .crud import class_roster, get_class
from .errors import NotFoundError, SessionClosedError, SessionConflictError
from .models import Attendance, AttendanceSession, AttendanceStatus, SessionStatus, utcnow

logger = logging.getLogger(__name__)


def expire_stale_sessions(db: Session, now: Optional[datetime] = None) -> List[AttendanceSession]:
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.session_max_hours)
    stale = db.exec(
        select(AttendanceSession).where(
            AttendanceSession.status == SessionStatus.active,
            AttendanceSession.created_at < cutoff,
        )
    ).all()
    for sess in stale:
        sess.status = SessionStatus.closed
        sess.closed_at = now
        db.add(sess)
        logger.info("Session %s expired after %.1fh", sess.id, settings.session_max_hours)
    if stale:
        db.commit()
    return list(stale)


def get_session(db: Session, session_id: int) -> AttendanceSession:
    expire_stale_sessions(db)
    sess = db.get(AttendanceSession, session_id)
    if sess is None:
        raise NotFoundError(f"Session {session_id} not found")
    return sess


def get_active_session(db: Session, class_id: int, now: Optional[datetime] = None) -> Optional[AttendanceSession]:
    expire_stale_sessions(db, now)
    return db.exec(
        select(AttendanceSession).where(
            AttendanceSession.class_id == class_id,
            AttendanceSession.status == SessionStatus.active,
        )
    ).first()


def create_session(
    db: Session,
    class_id: int,
    now: Optional[datetime] = None,
    session_type: str = "lecture",
    location: str = "Classroom",
) -> AttendanceSession:
    now = now or utcnow()
    cl = get_class(db, class_id)
    open_session = get_active_session(db, class_id, now)
    if open_session is not None:
        raise SessionConflictError(f"Class {cl.class_code} already has an active session ({open_session.id})")

    sess = AttendanceSession(
        class_id=cl.id,
        session_date=now.date(),
        session_time=now.time().replace(microsecond=0),
        session_type=session_type,
        location=location,
        created_by=cl.instructor_name,
        status=SessionStatus.active,
        created_at=now,
    )
    db.add(sess)
    try:
        db.commit()
    except IntegrityError:
        # another request opened one between the check and the insert
        db.rollback()
        raise SessionConflictError(f"Class {cl.class_code} already has an active session")
    db.refresh(sess)
    logger.info("Attendance session %s started for %s", sess.id, cl.class_name)
    return sess


def close_session(db: Session, session_id: int, mark_absent: bool = False) -> AttendanceSession:
    sess = get_session(db, session_id)
    if sess.status == SessionStatus.closed:
        return sess
    sess.status = SessionStatus.closed
    sess.closed_at = utcnow()
    db.add(sess)
    db.commit()
    logger.info("Attendance session %s closed", session_id)
    if mark_absent:
        _mark_absentees(db, sess)
    db.refresh(sess)
    return sess


def _mark_absentees(db: Session, sess: AttendanceSession) -> int:
    """Insert absent rows for roster students without a record, one commit each.

    A mark that was already in flight when the session closed may land between
    the snapshot and the insert; that row wins and the absent row is skipped.
    """
    session_id, class_id = sess.id, sess.class_id
    marked = marked_student_ids(db, session_id)
    added = 0
    for student_pk in [st.id for st in class_roster(db, class_id) if st.id not in marked]:
        db.add(Attendance(session_id=session_id, student_id=student_pk, status=AttendanceStatus.absent))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("Student %s was marked while session %s closed", student_pk, session_id)
            continue
        added += 1
    logger.info("Marked %d student(s) absent in session %s", added, session_id)
    return added


def require_open(sess: AttendanceSession) -> None:
    if sess.status != SessionStatus.active:
        raise SessionClosedError(f"Session {sess.id} is closed")


def list_sessions(db: Session, class_id: Optional[int] = None, since: Optional[datetime] = None) -> List[AttendanceSession]:
    expire_stale_sessions(db)
    q = select(AttendanceSession).order_by(AttendanceSession.created_at.desc())
    if class_id:
        q = q.where(AttendanceSession.class_id == class_id)
    if since:
        q = q.where(AttendanceSession.created_at >= since)
    return list(db.exec(q).all())


def marked_student_ids(db: Session, session_id: int) -> Set[int]:
    return set(db.exec(select(Attendance.student_id).where(Attendance.session_id == session_id)).all())


def present_count(db: Session, session_id: int) -> int:
    return db.exec(
        select(func.count(Attendance.id)).where(
            Attendance.session_id == session_id,
            Attendance.status == AttendanceStatus.present,
        )
    ).one()
