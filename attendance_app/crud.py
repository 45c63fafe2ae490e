"""Students, classes, enrolment and stored face descriptors."""
import logging
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import NotFoundError, ValidationError
from .face import encode_descriptor, group_descriptors
from .models import (
    Attendance,
    AttendanceChange,
    Class,
    ClassCreate,
    FaceDescriptor,
    Student,
    StudentClass,
    StudentCreate,
    StudentUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)


def get_student(db: Session, student_pk: int) -> Student:
    st = db.get(Student, student_pk)
    if st is None:
        raise NotFoundError(f"Student {student_pk} not found")
    return st


def get_class(db: Session, class_id: int) -> Class:
    cl = db.get(Class, class_id)
    if cl is None:
        raise NotFoundError(f"Class {class_id} not found")
    return cl


def create_student(db: Session, data: StudentCreate) -> Student:
    st = Student.model_validate(data)
    db.add(st)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"Student ID {data.student_id} already exists")
    db.refresh(st)
    logger.info("Student %s (%s) created", st.student_id, st.name)
    return st


def update_student(db: Session, student_pk: int, data: StudentUpdate) -> Student:
    st = get_student(db, student_pk)
    changes = data.model_dump(exclude_unset=True)
    for field in ("first_name", "last_name", "email"):
        if field in changes and not (changes[field] or "").strip():
            raise ValidationError(f"{field} must not be blank")
    for key, value in changes.items():
        setattr(st, key, value)
    st.updated_at = utcnow()
    db.add(st)
    db.commit()
    db.refresh(st)
    return st


def delete_student(db: Session, student_pk: int) -> None:
    st = get_student(db, student_pk)
    records = db.exec(select(Attendance).where(Attendance.student_id == st.id)).all()
    record_ids = [r.id for r in records]
    dependants = list(records)
    if record_ids:
        dependants += db.exec(select(AttendanceChange).where(AttendanceChange.attendance_id.in_(record_ids))).all()
    dependants += db.exec(select(FaceDescriptor).where(FaceDescriptor.student_id == st.id)).all()
    dependants += db.exec(select(StudentClass).where(StudentClass.student_id == st.id)).all()
    for row in dependants:
        db.delete(row)
    db.delete(st)
    db.commit()
    logger.info("Student %s deleted", st.student_id)


def list_students(db: Session, search: Optional[str] = None) -> List[Student]:
    q = select(Student).order_by(Student.created_at.desc(), Student.id.desc())
    if search:
        term = f"%{search.lower()}%"
        q = q.where(
            or_(
                func.lower(Student.first_name).like(term),
                func.lower(Student.last_name).like(term),
                func.lower(Student.student_id).like(term),
                func.lower(Student.email).like(term),
            )
        )
    return list(db.exec(q).all())


def student_stats(db: Session) -> Dict[str, int]:
    students = db.exec(select(Student)).all()
    classes = db.exec(select(func.count(Class.id))).one()
    departments = {s.department for s in students if s.department}
    return {
        "total_students": len(students),
        "total_classes": classes,
        "active_students": sum(1 for s in students if s.photo_url),
        "departments": len(departments),
    }


def create_class(db: Session, data: ClassCreate) -> Class:
    cl = Class.model_validate(data)
    if not cl.academic_year:
        cl.academic_year = str(datetime.now().year)
    db.add(cl)
    db.commit()
    db.refresh(cl)
    logger.info("Class %s created", cl.class_code)
    return cl


def list_classes(db: Session) -> List[Class]:
    return list(db.exec(select(Class).order_by(Class.class_name)).all())


def enroll_student(db: Session, class_id: int, student_pk: int) -> StudentClass:
    get_class(db, class_id)
    get_student(db, student_pk)
    existing = db.exec(
        select(StudentClass).where(StudentClass.class_id == class_id, StudentClass.student_id == student_pk)
    ).first()
    if existing:
        return existing
    link = StudentClass(class_id=class_id, student_id=student_pk)
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


def class_roster(db: Session, class_id: int) -> List[Student]:
    """Students enrolled in the class, or every student when nobody is enrolled."""
    enrolled = db.exec(
        select(Student).join(StudentClass, StudentClass.student_id == Student.id).where(StudentClass.class_id == class_id)
    ).all()
    if enrolled:
        return list(enrolled)
    return list(db.exec(select(Student)).all())


def add_descriptor(
    db: Session,
    student_pk: int,
    vector: np.ndarray,
    det_score: Optional[float] = None,
    face_thumb_path: Optional[str] = None,
) -> FaceDescriptor:
    st = get_student(db, student_pk)
    row = FaceDescriptor(
        student_id=st.id,
        descriptor=encode_descriptor(vector),
        dim=int(vector.shape[0]),
        det_score=det_score,
        face_thumb_path=face_thumb_path,
    )
    db.add(row)
    if face_thumb_path and not st.photo_url:
        st.photo_url = face_thumb_path
        db.add(st)
    db.commit()
    db.refresh(row)
    logger.info("Stored %d-dim descriptor for student %s", row.dim, st.student_id)
    return row


def load_descriptors(db: Session, student_pks) -> Dict[int, List[np.ndarray]]:
    student_pks = list(student_pks)
    if not student_pks:
        return {}
    rows = db.exec(select(FaceDescriptor).where(FaceDescriptor.student_id.in_(student_pks))).all()
    return group_descriptors(rows)


def trained_student_ids(db: Session) -> List[int]:
    return list(db.exec(select(FaceDescriptor.student_id).distinct()).all())
