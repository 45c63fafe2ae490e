import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import attendance, crud, reporting, sessions
from .capture import CameraSource, CaptureLoop, CaptureRegistry, FrameSource, process_frame
from .config import settings
from .database import get_db, get_session_factory, init_db
from .errors import AttendanceError, NoFaceDetectedError, NotFoundError, ValidationError
from .face import (
    DescriptorRecognizer,
    FaceLocator,
    InsightFaceLocator,
    Recognizer,
    embed_image_bgr,
    image_bytes_to_bgr,
    mediapipe_liveness_heuristic,
    save_face_thumb,
)
from .logging_config import setup_logging
from .models import ClassCreate, ManualRecord, SessionCreate, StatusUpdate, StudentCreate, StudentUpdate

logger = logging.getLogger(__name__)

registry = CaptureRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings)
    init_db()
    logger.info("Attendance service started, database at %s", settings.db_path)
    yield
    registry.stop_all()


app = FastAPI(title="Face Attendance", lifespan=lifespan)
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"ok": False, "error": exc.message}, status_code=exc.status_code)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"ok": False, "error": "Database error"}, status_code=500)


# Capabilities, overridable in tests


@lru_cache(maxsize=1)
def get_locator() -> FaceLocator:
    return InsightFaceLocator()


def get_recognizer() -> Recognizer:
    return DescriptorRecognizer()


def get_frame_source_factory() -> Callable[[], FrameSource]:
    return lambda: CameraSource(settings.camera_index)


def get_registry() -> CaptureRegistry:
    return registry


# Pages


@app.get("/", response_class=HTMLResponse)
def home(request: Request, search: Optional[str] = None, db: Session = Depends(get_db)):
    return templates.TemplateResponse(
        request,
        "home.html",
        {
            "classes": crud.list_classes(db),
            "students": crud.list_students(db, search),
            "stats": crud.student_stats(db),
            "trained": set(crud.trained_student_ids(db)),
            "search": search or "",
        },
    )


@app.get("/recognize", response_class=HTMLResponse)
def recognize_page(request: Request, class_id: Optional[int] = None, db: Session = Depends(get_db)):
    active = sessions.get_active_session(db, class_id) if class_id else None
    return templates.TemplateResponse(
        request,
        "recognize.html",
        {
            "classes": crud.list_classes(db),
            "class_id": class_id,
            "session": active,
            "interval_ms": int(settings.capture_interval * 1000),
        },
    )


@app.get("/admin/logs", response_class=HTMLResponse)
def admin_logs(
    request: Request,
    period: str = "week",
    class_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows = reporting.load_rows(db, reporting.period_start(period), class_id, status, search)
    return templates.TemplateResponse(
        request,
        "admin_logs.html",
        {
            "classes": crud.list_classes(db),
            "rows": rows,
            "metrics": reporting.compute_metrics(rows),
            "sessions": sessions.list_sessions(db, class_id, reporting.period_start(period)),
            "period": period,
            "class_id": class_id,
            "status": status or "all",
            "search": search or "",
        },
    )


@app.get("/analytics", response_class=HTMLResponse)
def analytics_page(request: Request, period: str = "month", class_id: Optional[int] = None, db: Session = Depends(get_db)):
    rows = reporting.load_rows(db, reporting.period_start(period), class_id)
    return templates.TemplateResponse(
        request,
        "analytics.html",
        {
            "classes": crud.list_classes(db),
            "report": reporting.build_report(rows),
            "period": period,
            "class_id": class_id,
        },
    )


# Students and classes


@app.post("/api/students")
def api_create_student(payload: StudentCreate, db: Session = Depends(get_db)):
    return {"ok": True, "student": crud.create_student(db, payload)}


@app.get("/api/students")
def api_list_students(search: Optional[str] = None, db: Session = Depends(get_db)):
    return {"ok": True, "students": crud.list_students(db, search), "stats": crud.student_stats(db)}


@app.get("/api/students/{student_pk}")
def api_get_student(student_pk: int, db: Session = Depends(get_db)):
    return {"ok": True, "student": crud.get_student(db, student_pk)}


@app.patch("/api/students/{student_pk}")
def api_update_student(student_pk: int, payload: StudentUpdate, db: Session = Depends(get_db)):
    return {"ok": True, "student": crud.update_student(db, student_pk, payload)}


@app.delete("/api/students/{student_pk}")
def api_delete_student(student_pk: int, db: Session = Depends(get_db)):
    crud.delete_student(db, student_pk)
    return {"ok": True}


@app.post("/api/students/{student_pk}/descriptors")
def api_train_student(
    student_pk: int,
    files: List[UploadFile] = File(...),
    db: Session = Depends(get_db),
    locator: FaceLocator = Depends(get_locator),
):
    st = crud.get_student(db, student_pk)
    # decode everything first so a bad upload leaves nothing behind
    images = []
    for upload in files:
        img = image_bytes_to_bgr(upload.file.read())
        if img is None:
            raise ValidationError(f"Could not decode {upload.filename}")
        images.append((upload.filename, img))

    accepted, skipped = [], []
    for filename, img in images:
        emb_res = embed_image_bgr(img, locator)
        if not emb_res:
            skipped.append(filename)
            continue
        if settings.liveness_required and not mediapipe_liveness_heuristic(img):
            logger.warning("Liveness check failed for %s in %s", st.student_id, filename)
            skipped.append(filename)
            continue
        accepted.append((img, *emb_res))
    if not accepted:
        raise NoFaceDetectedError("No usable face found in the uploaded images")

    stamp = int(datetime.now().timestamp())
    for i, (img, emb, det_score) in enumerate(accepted):
        thumb_path = os.path.join(settings.face_thumb_dir, f"{st.student_id}_{stamp}_{i}.jpg")
        save_face_thumb(img, thumb_path)
        crud.add_descriptor(db, st.id, emb, det_score, thumb_path)
    return {"ok": True, "student_id": st.id, "descriptors": len(accepted), "skipped": skipped}


@app.post("/api/classes")
def api_create_class(payload: ClassCreate, db: Session = Depends(get_db)):
    return {"ok": True, "class": crud.create_class(db, payload)}


@app.get("/api/classes")
def api_list_classes(db: Session = Depends(get_db)):
    return {"ok": True, "classes": crud.list_classes(db)}


@app.post("/api/classes/{class_id}/students/{student_pk}")
def api_enroll(class_id: int, student_pk: int, db: Session = Depends(get_db)):
    return {"ok": True, "enrollment": crud.enroll_student(db, class_id, student_pk)}


# Sessions and capture


def _session_payload(db: Session, sess) -> dict:
    return {
        "ok": True,
        "session": sess,
        "present_count": sessions.present_count(db, sess.id),
        "marked": sorted(sessions.marked_student_ids(db, sess.id)),
    }


@app.post("/api/sessions")
def api_create_session(payload: SessionCreate, db: Session = Depends(get_db)):
    sess = sessions.create_session(db, payload.class_id, session_type=payload.session_type, location=payload.location)
    return _session_payload(db, sess)


@app.get("/api/sessions")
def api_list_sessions(class_id: Optional[int] = None, period: str = "all", db: Session = Depends(get_db)):
    return {"ok": True, "sessions": sessions.list_sessions(db, class_id, reporting.period_start(period))}


@app.get("/api/sessions/{session_id}")
def api_get_session(session_id: int, db: Session = Depends(get_db)):
    return _session_payload(db, sessions.get_session(db, session_id))


@app.post("/api/sessions/{session_id}/close")
def api_close_session(
    session_id: int,
    mark_absent: bool = False,
    db: Session = Depends(get_db),
    capture: CaptureRegistry = Depends(get_registry),
):
    capture.stop(session_id)
    sess = sessions.close_session(db, session_id, mark_absent=mark_absent)
    return _session_payload(db, sess)


@app.post("/api/sessions/{session_id}/capture/start")
def api_capture_start(
    session_id: int,
    db: Session = Depends(get_db),
    capture: CaptureRegistry = Depends(get_registry),
    source_factory: Callable[[], FrameSource] = Depends(get_frame_source_factory),
    locator: FaceLocator = Depends(get_locator),
    recognizer: Recognizer = Depends(get_recognizer),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    sessions.require_open(sessions.get_session(db, session_id))
    loop = capture.start(CaptureLoop(session_id, source_factory(), locator, recognizer, session_factory))
    return {"ok": True, "capture": loop.status()}


@app.post("/api/sessions/{session_id}/capture/stop")
def api_capture_stop(session_id: int, capture: CaptureRegistry = Depends(get_registry)):
    return {"ok": True, "stopped": capture.stop(session_id)}


@app.get("/api/sessions/{session_id}/capture")
def api_capture_status(session_id: int, capture: CaptureRegistry = Depends(get_registry)):
    loop = capture.get(session_id)
    if loop is None:
        raise NotFoundError(f"No capture running for session {session_id}")
    return {"ok": True, "capture": loop.status()}


@app.post("/api/recognize_frame")
def api_recognize_frame(
    session_id: int = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    locator: FaceLocator = Depends(get_locator),
    recognizer: Recognizer = Depends(get_recognizer),
):
    img = image_bytes_to_bgr(file.file.read())
    if img is None:
        raise ValidationError("Could not decode frame")
    results = process_frame(db, session_id, img, locator, recognizer)
    return {
        "ok": True,
        "recognized": [r.to_dict() for r in results],
        "present_count": sessions.present_count(db, session_id),
    }


# Attendance records


@app.get("/api/sessions/{session_id}/attendance")
def api_session_attendance(session_id: int, db: Session = Depends(get_db)):
    return {"ok": True, "records": attendance.session_records(db, session_id)}


@app.post("/api/sessions/{session_id}/attendance")
def api_record_status(session_id: int, payload: ManualRecord, db: Session = Depends(get_db)):
    record = attendance.record_status(db, session_id, payload.student_id, payload.status)
    return {"ok": True, "record": record}


@app.patch("/api/attendance/{record_id}")
def api_set_status(record_id: int, payload: StatusUpdate, db: Session = Depends(get_db)):
    record = attendance.set_status(db, record_id, payload.status, payload.changed_by, payload.note)
    return {"ok": True, "record": record}


@app.get("/api/attendance/{record_id}/history")
def api_status_history(record_id: int, db: Session = Depends(get_db)):
    return {"ok": True, "history": attendance.status_history(db, record_id)}


@app.get("/api/attendance")
def api_attendance(
    period: str = "week",
    class_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows = reporting.load_rows(db, reporting.period_start(period), class_id, status, search)
    return {"ok": True, "records": rows, "metrics": reporting.compute_metrics(rows).to_dict()}


@app.get("/api/analytics")
def api_analytics(period: str = "month", class_id: Optional[int] = None, db: Session = Depends(get_db)):
    rows = reporting.load_rows(db, reporting.period_start(period), class_id)
    return {"ok": True, **reporting.build_report(rows)}


@app.get("/admin/export")
def admin_export(
    period: str = "week",
    class_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows = reporting.load_rows(db, reporting.period_start(period), class_id, status, search)
    content = reporting.export_csv(rows)
    logger.info("Exported %d attendance records", len(rows))
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={reporting.export_filename()}"},
    )
