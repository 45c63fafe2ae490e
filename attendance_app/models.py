from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional

from pydantic import field_validator
from sqlalchemy import DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC, matching the plain DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AttendanceStatus(str, Enum):
    present = "present"
    absent = "absent"
    late = "late"


class SessionStatus(str, Enum):
    active = "active"
    closed = "closed"


class Class(SQLModel, table=True):
    __tablename__ = "classes"

    id: Optional[int] = Field(default=None, primary_key=True)
    class_code: str = Field(index=True)
    class_name: str
    instructor_name: Optional[str] = None
    department: Optional[str] = None
    semester: Optional[str] = None
    academic_year: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Student(SQLModel, table=True):
    __tablename__ = "students"

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: str = Field(index=True, unique=True)
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = None
    photo_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class StudentClass(SQLModel, table=True):
    __tablename__ = "student_classes"
    __table_args__ = (UniqueConstraint("student_id", "class_id", name="uq_student_class"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="students.id", index=True)
    class_id: int = Field(foreign_key="classes.id", index=True)
    enrolled_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class AttendanceSession(SQLModel, table=True):
    __tablename__ = "attendance_sessions"
    # at most one active session per class
    __table_args__ = (
        Index(
            "uq_active_session_per_class",
            "class_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    class_id: int = Field(foreign_key="classes.id", index=True)
    session_date: date
    session_time: time
    session_type: str = "lecture"
    location: Optional[str] = "Classroom"
    created_by: Optional[str] = None
    status: SessionStatus = SessionStatus.active
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    closed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class Attendance(SQLModel, table=True):
    __tablename__ = "attendance"
    # one row per student per session, duplicates are rejected by the database
    __table_args__ = (UniqueConstraint("session_id", "student_id", name="uq_attendance_session_student"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: int = Field(foreign_key="attendance_sessions.id", index=True)
    student_id: int = Field(foreign_key="students.id", index=True)
    status: AttendanceStatus = AttendanceStatus.present
    marked_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    recognition_confidence: Optional[float] = None
    manual_override: bool = False
    notes: Optional[str] = None


class AttendanceChange(SQLModel, table=True):
    """Append-only history of manual status edits."""

    __tablename__ = "attendance_changes"

    id: Optional[int] = Field(default=None, primary_key=True)
    attendance_id: int = Field(foreign_key="attendance.id", index=True)
    old_status: AttendanceStatus
    new_status: AttendanceStatus
    changed_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    changed_by: Optional[str] = None
    note: Optional[str] = None


class FaceDescriptor(SQLModel, table=True):
    __tablename__ = "face_descriptors"

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="students.id", index=True)
    descriptor: bytes  # orjson-encoded list of floats
    dim: int
    det_score: Optional[float] = None
    face_thumb_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# Request payloads


def _required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class StudentCreate(SQLModel):
    student_id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = None
    photo_url: Optional[str] = None

    @field_validator("student_id", "first_name", "last_name", "email")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _required(value)


class StudentUpdate(SQLModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    department: Optional[str] = None
    year_of_study: Optional[int] = None
    photo_url: Optional[str] = None


class ClassCreate(SQLModel):
    class_code: str
    class_name: str
    instructor_name: str
    department: Optional[str] = None
    semester: Optional[str] = None
    academic_year: Optional[str] = None

    @field_validator("class_code", "class_name", "instructor_name")
    @classmethod
    def check_required(cls, value: str) -> str:
        return _required(value)


class SessionCreate(SQLModel):
    class_id: int
    session_type: str = "lecture"
    location: str = "Classroom"


class StatusUpdate(SQLModel):
    status: AttendanceStatus
    changed_by: Optional[str] = None
    note: Optional[str] = None


class ManualRecord(SQLModel):
    student_id: int
    status: AttendanceStatus
