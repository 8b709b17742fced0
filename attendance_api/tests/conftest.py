import pytest
from fastapi.testclient import TestClient

import attendance_api.config as config
import attendance_db.db as db


@pytest.fixture()
def isolated_db(tmp_path, monkeypatch):
    test_db = tmp_path / "attendance_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(isolated_db):
    import attendance_api.main as main

    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def roster(isolated_db):
    """One enrolled student, one active exam on 2026-03-10 09:00 for 2 hours."""
    student_id = db.add_student("Ada Lovelace", "ada@example.edu", "RFID-001")
    course_id = db.add_course("CS101", "Intro to Computing", "Dr. Babbage")
    db.enroll_student(course_id, student_id)
    exam_id = db.add_exam(
        course_id=course_id,
        exam_type="midterm",
        exam_name="CS101 Midterm",
        exam_date="2026-03-10",
        start_time="09:00",
        duration=2,
        end_time="11:00",
        room="Hall A",
        status="active",
    )
    device_id = db.add_device("Reader 1", "Hall A")
    return {
        "student_id": student_id,
        "course_id": course_id,
        "exam_id": exam_id,
        "device_id": device_id,
        "rfid_tag": "RFID-001",
    }
