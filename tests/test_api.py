import csv
import io

import cv2
import numpy as np
import pytest
from sqlalchemy.exc import OperationalError

from attendance_app import crud
from attendance_app.config import settings
from attendance_app.database import get_db
from attendance_app.main import app

from conftest import face, vec


def _png():
    ok, buf = cv2.imencode(".png", np.zeros((32, 32, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


def _class(client, code="CS101"):
    res = client.post(
        "/api/classes",
        json={"class_code": code, "class_name": "Intro to Computing", "instructor_name": "Dr. Smith", "department": "CS"},
    )
    assert res.status_code == 200
    return res.json()["class"]


def _student(client, student_id="S001", first="Jane", last="Doe"):
    res = client.post(
        "/api/students",
        json={"student_id": student_id, "first_name": first, "last_name": last, "email": f"{student_id}@example.edu"},
    )
    assert res.status_code == 200
    return res.json()["student"]


def _train(client, locator, student, descriptor, monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "liveness_required", False)
    monkeypatch.setattr(settings, "face_thumb_dir", str(tmp_path / "faces"))
    locator.faces = [face(descriptor)]
    res = client.post(f"/api/students/{student['id']}/descriptors", files=[("files", ("a.png", _png(), "image/png"))])
    locator.faces = []
    return res


def test_create_class_defaults_academic_year(client):
    cl = _class(client)
    assert cl["class_code"] == "CS101"
    assert cl["academic_year"]


def test_blank_required_fields_are_rejected(client):
    res = client.post(
        "/api/students",
        json={"student_id": "S001", "first_name": "  ", "last_name": "Doe", "email": "jane@example.edu"},
    )
    assert res.status_code == 422
    assert client.get("/api/students").json()["students"] == []


def test_duplicate_student_id(client):
    _student(client)
    res = client.post(
        "/api/students",
        json={"student_id": "S001", "first_name": "Other", "last_name": "Person", "email": "o@example.edu"},
    )
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "Student ID S001 already exists"}


def test_student_update_search_and_delete(client):
    st = _student(client)
    _student(client, "S002", "John", "Roe")

    res = client.patch(f"/api/students/{st['id']}", json={"department": "Physics"})
    assert res.json()["student"]["department"] == "Physics"

    found = client.get("/api/students", params={"search": "roe"}).json()
    assert [s["student_id"] for s in found["students"]] == ["S002"]
    assert found["stats"]["total_students"] == 2

    assert client.delete(f"/api/students/{st['id']}").json() == {"ok": True}
    assert client.get(f"/api/students/{st['id']}").status_code == 404


def test_session_conflict_is_reported(client):
    cl = _class(client)
    first = client.post("/api/sessions", json={"class_id": cl["id"]})
    assert first.status_code == 200
    assert first.json()["session"]["status"] == "active"

    second = client.post("/api/sessions", json={"class_id": cl["id"]})
    assert second.status_code == 409
    assert second.json()["ok"] is False


def test_recognize_frame_flow(client, locator, monkeypatch, tmp_path):
    cl = _class(client)
    jane = _student(client)
    assert _train(client, locator, jane, vec(0), monkeypatch, tmp_path).json() == {
        "ok": True,
        "student_id": jane["id"],
        "descriptors": 1,
        "skipped": [],
    }
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]

    locator.faces = [face(vec(0))]
    first = client.post("/api/recognize_frame", data={"session_id": sess["id"]}, files={"file": ("f.png", _png(), "image/png")})
    second = client.post("/api/recognize_frame", data={"session_id": sess["id"]}, files={"file": ("f.png", _png(), "image/png")})

    body = first.json()
    assert body["recognized"][0]["student_id"] == jane["id"]
    assert body["recognized"][0]["outcome"] == "marked"
    assert body["present_count"] == 1
    # already marked students are no longer candidates
    assert second.json()["recognized"] == []

    detail = client.get(f"/api/sessions/{sess['id']}").json()
    assert detail["marked"] == [jane["id"]]
    assert len(client.get(f"/api/sessions/{sess['id']}/attendance").json()["records"]) == 1


def test_training_without_a_face(client, locator, monkeypatch, tmp_path):
    jane = _student(client)
    monkeypatch.setattr(settings, "liveness_required", False)
    res = client.post(f"/api/students/{jane['id']}/descriptors", files=[("files", ("a.png", _png(), "image/png"))])
    assert res.status_code == 400
    assert res.json()["ok"] is False


def test_undecodable_frame(client):
    cl = _class(client)
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]
    res = client.post("/api/recognize_frame", data={"session_id": sess["id"]}, files={"file": ("f.png", b"not an image", "image/png")})
    assert res.status_code == 400


def test_override_and_history(client):
    cl = _class(client)
    jane = _student(client)
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]
    record = client.post(f"/api/sessions/{sess['id']}/attendance", json={"student_id": jane["id"], "status": "late"}).json()["record"]

    res = client.patch(f"/api/attendance/{record['id']}", json={"status": "late", "changed_by": "registrar"})
    assert res.json()["record"]["manual_override"] is True

    history = client.get(f"/api/attendance/{record['id']}/history").json()["history"]
    assert [(h["old_status"], h["new_status"]) for h in history] == [("late", "late")]

    assert client.patch(f"/api/attendance/{record['id']}", json={"status": "excused"}).status_code == 422


def test_close_session_marks_absent(client):
    cl = _class(client)
    jane = _student(client)
    client.post(f"/api/classes/{cl['id']}/students/{jane['id']}")
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]

    closed = client.post(f"/api/sessions/{sess['id']}/close", params={"mark_absent": True}).json()
    assert closed["session"]["status"] == "closed"
    records = client.get(f"/api/sessions/{sess['id']}/attendance").json()["records"]
    assert [r["status"] for r in records] == ["absent"]

    res = client.post("/api/recognize_frame", data={"session_id": sess["id"]}, files={"file": ("f.png", _png(), "image/png")})
    assert res.status_code == 409


def test_capture_start_status_stop(client, source):
    cl = _class(client)
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]

    started = client.post(f"/api/sessions/{sess['id']}/capture/start").json()
    assert started["capture"]["session_id"] == sess["id"]
    assert source.active_tracks == 1
    assert client.get(f"/api/sessions/{sess['id']}/capture").json()["capture"]["scanning"] is True

    assert client.post(f"/api/sessions/{sess['id']}/capture/stop").json() == {"ok": True, "stopped": True}
    assert source.active_tracks == 0
    assert client.get(f"/api/sessions/{sess['id']}/capture").status_code == 404


def test_camera_unavailable(client, source):
    cl = _class(client)
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]
    source.fail = True
    res = client.post(f"/api/sessions/{sess['id']}/capture/start")
    assert res.status_code == 503
    assert res.json() == {"ok": False, "error": "Permission denied"}


def test_reports_and_export(client):
    cl = _class(client)
    jane = _student(client)
    john = _student(client, "S002", "John", "Roe")
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]
    client.post(f"/api/sessions/{sess['id']}/attendance", json={"student_id": jane["id"], "status": "present"})
    client.post(f"/api/sessions/{sess['id']}/attendance", json={"student_id": john["id"], "status": "absent"})

    listing = client.get("/api/attendance", params={"period": "today"}).json()
    assert listing["metrics"]["total_records"] == 2
    assert listing["metrics"]["attendance_rate"] == pytest.approx(50.0)

    analytics = client.get("/api/analytics", params={"period": "week"}).json()
    assert analytics["classes"][0]["name"] == "CS101"
    assert analytics["status"][1] == {"name": "Absent", "value": 1}

    res = client.get("/admin/export", params={"period": "all"})
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert "attendance-report-" in res.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(res.text)))
    assert len(rows) == 3
    assert {r[4] for r in rows[1:]} == {"Jane Doe", "John Roe"}
    assert {r[6] for r in rows[1:]} == {"N/A"}
    assert {r[7] for r in rows[1:]} == {"Yes"}

    assert client.get("/api/attendance", params={"period": "decade"}).status_code == 400


@pytest.mark.parametrize("path", ["/", "/recognize", "/admin/logs", "/analytics"])
def test_pages_render(client, path):
    cl = _class(client)
    _student(client)
    client.post("/api/sessions", json={"class_id": cl["id"]})
    res = client.get(path, params={"class_id": cl["id"]} if path == "/recognize" else None)
    assert res.status_code == 200
    assert "Face Attendance" in res.text


def test_training_with_an_undecodable_file_stores_nothing(client, db, locator, monkeypatch, tmp_path):
    jane = _student(client)
    monkeypatch.setattr(settings, "liveness_required", False)
    monkeypatch.setattr(settings, "face_thumb_dir", str(tmp_path / "faces"))
    locator.faces = [face(vec(0))]

    res = client.post(
        f"/api/students/{jane['id']}/descriptors",
        files=[("files", ("a.png", _png(), "image/png")), ("files", ("b.png", b"garbage", "image/png"))],
    )

    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "Could not decode b.png"}
    assert crud.load_descriptors(db, [jane["id"]]) == {}
    assert client.get(f"/api/students/{jane['id']}").json()["student"]["photo_url"] is None
    assert not (tmp_path / "faces").exists()


def test_faceless_uploads_are_reported_as_skipped(client, locator, monkeypatch, tmp_path):
    jane = _student(client)
    monkeypatch.setattr(settings, "liveness_required", False)
    monkeypatch.setattr(settings, "face_thumb_dir", str(tmp_path / "faces"))
    seen = []

    def locate(frame):
        seen.append(frame)
        return [face(vec(0))] if len(seen) == 1 else []

    monkeypatch.setattr(locator, "locate", locate)
    res = client.post(
        f"/api/students/{jane['id']}/descriptors",
        files=[("files", ("a.png", _png(), "image/png")), ("files", ("b.png", _png(), "image/png"))],
    )

    assert res.json() == {"ok": True, "student_id": jane["id"], "descriptors": 1, "skipped": ["b.png"]}


def test_database_errors_use_the_error_envelope(client):
    def broken_db():
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    app.dependency_overrides[get_db] = broken_db
    res = client.get("/api/students")

    assert res.status_code == 500
    assert res.json() == {"ok": False, "error": "Database error"}


def test_home_page_has_operator_forms(client):
    _class(client)
    _student(client)
    html = client.get("/").text
    for marker in ('id="student-form"', 'id="class-form"', 'id="enroll-form"', 'class="train"', 'class="save"'):
        assert marker in html


def test_records_page_offers_status_override_and_encodes_export_link(client):
    cl = _class(client)
    jane = _student(client)
    sess = client.post("/api/sessions", json={"class_id": cl["id"]}).json()["session"]
    record = client.post(f"/api/sessions/{sess['id']}/attendance", json={"student_id": jane["id"], "status": "late"}).json()["record"]

    html = client.get("/admin/logs", params={"period": "all", "search": "a&b #1"}).text
    assert "search=a%26b%20%231" in html

    html = client.get("/admin/logs", params={"period": "all"}).text
    assert f'data-record="{record["id"]}"' in html
    assert "/api/attendance/" in html


def test_analytics_offers_every_period(client):
    html = client.get("/analytics", params={"period": "all"}).text
    for period in ("today", "week", "month", "semester", "year", "all"):
        assert f'<option value="{period}"' in html
