import os
import tempfile

_DATA_DIR = tempfile.mkdtemp(prefix="attendance-test-")
os.environ.setdefault("ATTENDANCE_DATA_DIR", _DATA_DIR)
os.environ.setdefault("ATTENDANCE_DB_PATH", os.path.join(_DATA_DIR, "attendance.db"))
os.environ.setdefault("ATTENDANCE_LOG_PATH", os.path.join(_DATA_DIR, "app.log"))
os.environ.setdefault("ATTENDANCE_FACE_THUMB_DIR", os.path.join(_DATA_DIR, "faces"))

import threading  # noqa: E402

import numpy as np  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, create_engine  # noqa: E402

from attendance_app import crud  # noqa: E402
from attendance_app.database import get_db, get_session_factory, init_db  # noqa: E402
from attendance_app.errors import CameraUnavailableError  # noqa: E402
from attendance_app.face import FaceRegion  # noqa: E402
from attendance_app.main import app, get_frame_source_factory, get_locator, registry  # noqa: E402
from attendance_app.models import ClassCreate, StudentCreate  # noqa: E402


def vec(i, dim=8):
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v


def face(descriptor, confidence=0.9):
    return FaceRegion(x=10, y=10, width=100, height=120, confidence=confidence, descriptor=descriptor)


class FakeLocator:
    def __init__(self, faces=None):
        self.faces = list(faces or [])
        self.calls = 0

    def locate(self, frame):
        self.calls += 1
        return list(self.faces)


class FakeSource:
    def __init__(self, fail=False):
        self.fail = fail
        self.opened = 0
        self.released = 0
        self._open = False
        self._lock = threading.Lock()

    def open(self):
        if self.fail:
            raise CameraUnavailableError("Permission denied")
        with self._lock:
            self._open = True
            self.opened += 1

    def read(self):
        with self._lock:
            if not self._open:
                return None
        return np.zeros((48, 64, 3), dtype=np.uint8)

    def release(self):
        with self._lock:
            self._open = False
            self.released += 1

    @property
    def active_tracks(self):
        return 1 if self._open else 0


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return lambda: Session(engine)


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def locator():
    return FakeLocator()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def client(engine, session_factory, locator, source):
    def override_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_locator] = lambda: locator
    app.dependency_overrides[get_frame_source_factory] = lambda: (lambda: source)
    yield TestClient(app)
    registry.stop_all()
    app.dependency_overrides.clear()


@pytest.fixture
def make_class(db):
    def _make(code="CS101", name="Intro to Computing", instructor="Dr. Smith", department="Computer Science"):
        return crud.create_class(
            db, ClassCreate(class_code=code, class_name=name, instructor_name=instructor, department=department)
        )

    return _make


@pytest.fixture
def make_student(db):
    counter = {"n": 0}

    def _make(first="Jane", last="Doe", department="Computer Science", descriptor=None):
        counter["n"] += 1
        st = crud.create_student(
            db,
            StudentCreate(
                student_id=f"S{counter['n']:03d}",
                first_name=first,
                last_name=last,
                email=f"s{counter['n']}@example.edu",
                department=department,
            ),
        )
        if descriptor is not None:
            crud.add_descriptor(db, st.id, descriptor, 0.99)
        return st

    return _make
