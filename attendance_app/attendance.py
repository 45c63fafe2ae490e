import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .crud import get_student
from .errors import NotFoundError
from .models import Attendance, AttendanceChange, AttendanceStatus
from .sessions import get_session, present_count, require_open

logger = logging.getLogger(__name__)


@dataclass
class MarkResult:
    record: Attendance
    created: bool
    present_count: int

    @property
    def outcome(self) -> str:
        return "marked" if self.created else "already_marked"


def _existing_record(db: Session, session_id: int, student_pk: int) -> Optional[Attendance]:
    return db.exec(
        select(Attendance).where(Attendance.session_id == session_id, Attendance.student_id == student_pk)
    ).first()


def mark_present(db: Session, session_id: int, student_pk: int, confidence: Optional[float] = None) -> MarkResult:
    """Record a recognition hit. A second call for the same pair returns the stored row."""
    sess = get_session(db, session_id)
    require_open(sess)
    st = get_student(db, student_pk)

    record = Attendance(
        session_id=sess.id,
        student_id=st.id,
        status=AttendanceStatus.present,
        recognition_confidence=confidence,
        manual_override=False,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing_record(db, sess.id, st.id)
        if existing is None:
            raise
        logger.debug("Student %s already marked in session %s", st.student_id, sess.id)
        return MarkResult(record=existing, created=False, present_count=present_count(db, sess.id))

    db.refresh(record)
    if confidence is None:
        logger.info("Attendance marked: %s (%s) in session %s", st.name, st.student_id, sess.id)
    else:
        logger.info(
            "Attendance marked: %s (%s) in session %s, confidence %.3f", st.name, st.student_id, sess.id, confidence
        )
    return MarkResult(record=record, created=True, present_count=present_count(db, sess.id))


def record_status(db: Session, session_id: int, student_pk: int, status: AttendanceStatus, changed_by: Optional[str] = None) -> Attendance:
    """Operator entry for a student the camera never saw; updates the row if one exists."""
    status = AttendanceStatus(status)
    sess = get_session(db, session_id)
    st = get_student(db, student_pk)
    existing = _existing_record(db, sess.id, st.id)
    if existing is not None:
        return set_status(db, existing.id, status, changed_by=changed_by)

    record = Attendance(session_id=sess.id, student_id=st.id, status=status, manual_override=True)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing_record(db, sess.id, st.id)
        if existing is None:
            raise
        return set_status(db, existing.id, status, changed_by=changed_by)
    db.refresh(record)
    logger.info("Manual %s entry for %s in session %s", status.value, st.student_id, sess.id)
    return record


def get_record(db: Session, record_id: int) -> Attendance:
    record = db.get(Attendance, record_id)
    if record is None:
        raise NotFoundError(f"Attendance record {record_id} not found")
    return record


def set_status(
    db: Session,
    record_id: int,
    new_status: AttendanceStatus,
    changed_by: Optional[str] = None,
    note: Optional[str] = None,
) -> Attendance:
    record = get_record(db, record_id)
    new_status = AttendanceStatus(new_status)
    old_status = AttendanceStatus(record.status)

    db.add(
        AttendanceChange(
            attendance_id=record.id,
            old_status=old_status,
            new_status=new_status,
            changed_by=changed_by,
            note=note,
        )
    )
    record.status = new_status
    record.manual_override = True
    if note:
        record.notes = note
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Attendance %s overridden: %s -> %s", record.id, old_status.value, new_status.value)
    return record


def status_history(db: Session, record_id: int) -> List[AttendanceChange]:
    get_record(db, record_id)
    return list(
        db.exec(
            select(AttendanceChange)
            .where(AttendanceChange.attendance_id == record_id)
            .order_by(AttendanceChange.changed_at, AttendanceChange.id)
        ).all()
    )


def session_records(db: Session, session_id: int) -> List[Attendance]:
    get_session(db, session_id)
    return list(db.exec(select(Attendance).where(Attendance.session_id == session_id).order_by(Attendance.marked_at)).all())
