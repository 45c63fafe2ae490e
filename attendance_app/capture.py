"""
Capture loop: sample a frame, locate faces, recognize, mark present.

One worker thread per running loop. Stopping is checked at the top of each
tick, so a tick that already started always finishes; the frame source is
released on every way out of the loop.
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol

import cv2
import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .attendance import mark_present
from .config import settings
from .crud import class_roster, load_descriptors
from .errors import CameraUnavailableError, SessionClosedError
from .face import Candidate, FaceLocator, FaceRegion, Recognizer
from .models import AttendanceSession
from .sessions import get_session, marked_student_ids, require_open

logger = logging.getLogger(__name__)

# detections below this are not worth a recognition attempt
MIN_FACE_CONFIDENCE = 0.3


class FrameSource(Protocol):
    def open(self) -> None:
        ...

    def read(self) -> Optional[np.ndarray]:
        ...

    def release(self) -> None:
        ...

    @property
    def active_tracks(self) -> int:
        ...


class CameraSource:
    """OpenCV camera. Open and release are idempotent."""

    def __init__(self, index: int = 0, width: int = 640, height: int = 480):
        self.index = index
        self.width = width
        self.height = height
        self._capture = None
        self._lock = threading.Lock()

    def open(self) -> None:
        with self._lock:
            if self._capture is not None and self._capture.isOpened():
                return
            capture = cv2.VideoCapture(self.index)
            if not capture.isOpened():
                capture.release()
                raise CameraUnavailableError(f"Unable to open camera {self.index}")
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            self._capture = capture
            logger.info("Camera %s opened", self.index)

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._capture is None:
                return None
            ret, frame = self._capture.read()
        if not ret or frame is None:
            return None
        return frame

    def release(self) -> None:
        with self._lock:
            capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()
            logger.info("Camera %s released", self.index)

    @property
    def active_tracks(self) -> int:
        return 1 if self._capture is not None else 0


@dataclass
class RecognitionResult:
    student_id: int
    name: str
    confidence: float
    created: bool
    present_count: int
    face: FaceRegion

    def to_dict(self) -> dict:
        return {
            "student_id": self.student_id,
            "name": self.name,
            "confidence": self.confidence,
            "outcome": "marked" if self.created else "already_marked",
            "present_count": self.present_count,
            "box": [self.face.x, self.face.y, self.face.width, self.face.height],
        }


def recognition_candidates(db: Session, sess: AttendanceSession) -> List[Candidate]:
    """Unmarked students of the session's class that have stored descriptors."""
    marked = marked_student_ids(db, sess.id)
    roster = [s for s in class_roster(db, sess.class_id) if s.id not in marked]
    descriptors = load_descriptors(db, [s.id for s in roster])
    return [Candidate(student_id=s.id, name=s.name, descriptors=descriptors[s.id]) for s in roster if s.id in descriptors]


def process_frame(
    db: Session,
    session_id: int,
    frame: np.ndarray,
    locator: FaceLocator,
    recognizer: Recognizer,
) -> List[RecognitionResult]:
    sess = get_session(db, session_id)
    require_open(sess)

    faces = locator.locate(frame)
    if not faces:
        return []
    logger.debug("Detected %d face(s) for session %s", len(faces), session_id)

    candidates = recognition_candidates(db, sess)
    results = []
    for face in faces:
        if not candidates:
            break
        if face.confidence < MIN_FACE_CONFIDENCE:
            continue
        match = recognizer.recognize(face, candidates)
        if match is None:
            continue
        marked = mark_present(db, sess.id, match.student_id, match.confidence)
        candidates = [c for c in candidates if c.student_id != match.student_id]
        results.append(
            RecognitionResult(
                student_id=match.student_id,
                name=match.name,
                confidence=match.confidence,
                created=marked.created,
                present_count=marked.present_count,
                face=face,
            )
        )
    return results


class CaptureLoop:
    def __init__(
        self,
        session_id: int,
        source: FrameSource,
        locator: FaceLocator,
        recognizer: Recognizer,
        session_factory: Callable[[], Session],
        interval: Optional[float] = None,
    ):
        self.session_id = session_id
        self.source = source
        self.locator = locator
        self.recognizer = recognizer
        self.session_factory = session_factory
        self.interval = settings.capture_interval if interval is None else interval
        self.recent: Deque[RecognitionResult] = deque(maxlen=5)
        self.ticks = 0
        self.last_error: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_scanning(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self.is_scanning:
            return
        # raises CameraUnavailableError before any thread exists
        self.source.open()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"capture-{self.session_id}", daemon=True)
        self._thread.start()
        logger.info("Capture started for session %s", self.session_id)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self.source.release()
        logger.info("Capture stopped for session %s after %d ticks", self.session_id, self.ticks)

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                self.tick()
                self._stop.wait(self.interval)
        except SessionClosedError:
            logger.info("Session %s closed, capture ending", self.session_id)
        except Exception as exc:
            logger.exception("Capture loop for session %s failed", self.session_id)
            self.last_error = str(exc)
        finally:
            self._stop.set()
            self.source.release()

    def tick(self) -> List[RecognitionResult]:
        frame = self.source.read()
        self.ticks += 1
        try:
            with self.session_factory() as db:
                if frame is None:
                    # still notice a closed or expired session on a silent camera
                    require_open(get_session(db, self.session_id))
                    return []
                results = process_frame(db, self.session_id, frame, self.locator, self.recognizer)
        except SQLAlchemyError as exc:
            logger.error("Database error during capture for session %s: %s", self.session_id, exc)
            self.last_error = "Database error"
            return []
        for result in results:
            self.recent.appendleft(result)
        return results

    def status(self) -> dict:
        return {
            "session_id": self.session_id,
            "scanning": self.is_scanning,
            "ticks": self.ticks,
            "active_tracks": self.source.active_tracks,
            "last_error": self.last_error,
            "recent": [r.to_dict() for r in self.recent],
        }


class CaptureRegistry:
    """At most one running loop per session."""

    def __init__(self):
        self._loops: Dict[int, CaptureLoop] = {}
        self._lock = threading.Lock()

    def start(self, loop: CaptureLoop) -> CaptureLoop:
        with self._lock:
            current = self._loops.get(loop.session_id)
            if current is not None and current.is_scanning:
                return current
            loop.start()
            self._loops[loop.session_id] = loop
            return loop

    def get(self, session_id: int) -> Optional[CaptureLoop]:
        return self._loops.get(session_id)

    def stop(self, session_id: int) -> bool:
        with self._lock:
            loop = self._loops.pop(session_id, None)
        if loop is None:
            return False
        loop.stop()
        return True

    def stop_all(self) -> None:
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
        for loop in loops:
            loop.stop()
