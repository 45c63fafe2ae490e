"""
Read-only analytics over attendance records.

Every function here takes a list of ``ReportRow`` and never touches the
database, except ``load_rows`` which builds that list for a filtered window.
Rates are percentages; an empty input yields zeros rather than NaN.
"""
import csv
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy import func, or_
from sqlmodel import Session, select

from .errors import ValidationError
from .models import Attendance, AttendanceSession, AttendanceStatus, Class, Student, utcnow

EXPORT_COLUMNS = ["Date", "Time", "Class", "Student ID", "Student Name", "Status", "Confidence", "Manual Override"]
PERIODS = ("today", "week", "month", "semester", "year", "all")
TREND_DAYS = 14


@dataclass
class ReportRow:
    record_id: int
    session_id: int
    marked_at: datetime
    status: str
    confidence: Optional[float]
    manual_override: bool
    class_id: int
    class_code: str
    class_name: str
    student_pk: int
    student_id: str
    student_name: str
    department: Optional[str] = None


@dataclass
class AttendanceMetrics:
    total_records: int
    present_count: int
    absent_count: int
    late_count: int
    attendance_rate: float
    punctuality_rate: float
    avg_confidence: float
    manual_overrides: int
    override_ratio: float

    def to_dict(self) -> dict:
        return asdict(self)


def _pct(part: float, total: int) -> float:
    return (part / total) * 100 if total > 0 else 0.0


def compute_metrics(rows: Sequence[ReportRow]) -> AttendanceMetrics:
    total = len(rows)
    present = sum(1 for r in rows if r.status == AttendanceStatus.present.value)
    absent = sum(1 for r in rows if r.status == AttendanceStatus.absent.value)
    late = sum(1 for r in rows if r.status == AttendanceStatus.late.value)
    overrides = sum(1 for r in rows if r.manual_override)
    confidences = [r.confidence for r in rows if r.confidence is not None]
    avg_confidence = (sum(confidences) / len(confidences)) * 100 if confidences else 0.0
    return AttendanceMetrics(
        total_records=total,
        present_count=present,
        absent_count=absent,
        late_count=late,
        attendance_rate=_pct(present, total),
        punctuality_rate=_pct(present - late, total),
        avg_confidence=avg_confidence,
        manual_overrides=overrides,
        override_ratio=_pct(overrides, total),
    )


def _frame(rows: Sequence[ReportRow]) -> pd.DataFrame:
    df = pd.DataFrame([asdict(r) for r in rows])
    df["day"] = df["marked_at"].map(lambda ts: ts.date())
    df["department"] = df["department"].fillna("Unknown").replace("", "Unknown")
    return df


def _summarize(name, group: pd.DataFrame) -> dict:
    total = len(group)
    present = int((group["status"] == AttendanceStatus.present.value).sum())
    return {"name": name, "value": total, "present": present, "percentage": _pct(present, total)}


def trend_by_day(rows: Sequence[ReportRow], limit: int = TREND_DAYS) -> List[dict]:
    """Per-day counts, oldest first, keeping only the last ``limit`` days."""
    if not rows:
        return []
    df = _frame(rows)
    out = []
    for day, group in df.groupby("day", sort=True):
        counts = group["status"].value_counts()
        total = len(group)
        out.append(
            {
                "name": day.isoformat(),
                "present": int(counts.get(AttendanceStatus.present.value, 0)),
                "absent": int(counts.get(AttendanceStatus.absent.value, 0)),
                "late": int(counts.get(AttendanceStatus.late.value, 0)),
                "total": total,
                "percentage": _pct(int(counts.get(AttendanceStatus.present.value, 0)), total),
            }
        )
    return out[-limit:]


def by_class(rows: Sequence[ReportRow]) -> List[dict]:
    if not rows:
        return []
    df = _frame(rows)
    return [_summarize(code, group) for code, group in df.groupby("class_code", sort=False)]


def by_department(rows: Sequence[ReportRow]) -> List[dict]:
    if not rows:
        return []
    df = _frame(rows)
    return [_summarize(dept, group) for dept, group in df.groupby("department", sort=False)]


def status_distribution(rows: Sequence[ReportRow]) -> List[dict]:
    m = compute_metrics(rows)
    return [
        {"name": "Present", "value": m.present_count},
        {"name": "Absent", "value": m.absent_count},
        {"name": "Late", "value": m.late_count},
    ]


def top_classes(class_data: List[dict], n: int = 3) -> List[dict]:
    return sorted(class_data, key=lambda c: c["percentage"], reverse=True)[:n]


def bottom_classes(class_data: List[dict], n: int = 3) -> List[dict]:
    return sorted(class_data, key=lambda c: c["percentage"])[:n]


def build_report(rows: Sequence[ReportRow]) -> Dict[str, object]:
    classes = by_class(rows)
    return {
        "metrics": compute_metrics(rows).to_dict(),
        "trend": trend_by_day(rows),
        "classes": classes,
        "departments": by_department(rows),
        "status": status_distribution(rows),
        "top_classes": top_classes(classes),
        "bottom_classes": bottom_classes(classes),
    }


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the reporting window; ``None`` means no lower bound."""
    now = now or utcnow()
    if period == "today":
        return datetime(now.year, now.month, now.day)
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return datetime(now.year, now.month, 1)
    if period == "semester":
        month = now.month - 3
        year = now.year
        if month < 1:
            month += 12
            year -= 1
        return datetime(year, month, 1)
    if period == "year":
        return datetime(now.year, 1, 1)
    if period == "all":
        return None
    raise ValidationError(f"Unknown period {period!r}, expected one of {', '.join(PERIODS)}")


def load_rows(
    db: Session,
    since: Optional[datetime] = None,
    class_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
) -> List[ReportRow]:
    q = (
        select(Attendance, Student, AttendanceSession, Class)
        .where(
            Attendance.student_id == Student.id,
            Attendance.session_id == AttendanceSession.id,
            AttendanceSession.class_id == Class.id,
        )
        .order_by(Attendance.marked_at.desc())
    )
    if since:
        q = q.where(Attendance.marked_at >= since)
    if class_id:
        q = q.where(AttendanceSession.class_id == class_id)
    if status and status != "all":
        try:
            wanted = AttendanceStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status {status!r}")
        q = q.where(Attendance.status == wanted)
    if search:
        term = f"%{search.lower()}%"
        q = q.where(
            or_(
                func.lower(Student.first_name).like(term),
                func.lower(Student.last_name).like(term),
                func.lower(Student.student_id).like(term),
                func.lower(Class.class_code).like(term),
            )
        )
    rows = []
    for att, stu, ses, cl in db.exec(q).all():
        rows.append(
            ReportRow(
                record_id=att.id,
                session_id=ses.id,
                marked_at=att.marked_at,
                status=AttendanceStatus(att.status).value,
                confidence=att.recognition_confidence,
                manual_override=att.manual_override,
                class_id=cl.id,
                class_code=cl.class_code,
                class_name=cl.class_name,
                student_pk=stu.id,
                student_id=stu.student_id,
                student_name=stu.name,
                department=stu.department,
            )
        )
    return rows


def export_csv(rows: Sequence[ReportRow]) -> str:
    """CSV with one line per record; names are quoted, missing confidence is N/A."""
    data = [
        {
            "Date": r.marked_at.date().isoformat(),
            "Time": r.marked_at.strftime("%H:%M:%S"),
            "Class": r.class_code,
            "Student ID": r.student_id,
            "Student Name": r.student_name,
            "Status": r.status,
            "Confidence": "N/A" if r.confidence is None else r.confidence,
            "Manual Override": "Yes" if r.manual_override else "No",
        }
        for r in rows
    ]
    header = ",".join(EXPORT_COLUMNS) + "\n"
    if not data:
        return header
    df = pd.DataFrame(data, columns=EXPORT_COLUMNS)
    return header + df.to_csv(index=False, header=False, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")


def export_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"attendance-report-{today.isoformat()}.csv"
