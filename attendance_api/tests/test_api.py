from datetime import datetime, timedelta, timezone

import pytest

import attendance_api.config as config
import attendance_api.security as security
from attendance_api.services import notifications
import attendance_db.db as db


class RecordingTransport:
    sent: list = []

    def send(self, message):
        RecordingTransport.sent.append(message)


@pytest.fixture()
def outbox(monkeypatch):
    RecordingTransport.sent = []
    monkeypatch.setattr(notifications, "SmtpTransport", RecordingTransport)
    return RecordingTransport.sent


def _future_date(days: int = 7) -> str:
    return (datetime.now(timezone.utc).date() + timedelta(days=days)).isoformat()


def _running_exam(course_id: int, **overrides) -> int:
    start = datetime.now(timezone.utc) - timedelta(hours=1)
    fields = {
        "course_id": course_id,
        "exam_type": "final",
        "exam_name": "Running Final",
        "exam_date": start.date().isoformat(),
        "start_time": start.strftime("%H:%M"),
        "duration": 4,
        "end_time": None,
        "room": "Hall B",
        "status": "active",
    }
    fields.update(overrides)
    return db.add_exam(**fields)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_attendance_config_exposes_rule_set(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    body = res.json()
    assert body["rfid_timezone_offset_hours"] == 2.0
    assert body["grace_period_minutes"] == 30
    assert body["early_checkin_minutes"] == 10


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."


def test_auth_me_reports_role(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["role"] == "admin"


def test_endpoints_require_session(client):
    assert client.get("/students").status_code == 401
    assert client.get("/exams", headers={"Authorization": "Token abc"}).status_code == 401


def test_lecturer_cannot_write(client):
    db.create_user("lecturer1", "secret-pass", "lecturer")
    res = client.post("/auth/login", json={"username": "lecturer1", "password": "secret-pass"})
    assert res.status_code == 200
    headers = {"Authorization": f"Bearer {res.json()['access_token']}"}

    assert client.get("/students", headers=headers).status_code == 200
    res = client.post("/students", json={"name": "X", "rfid_tag": "T"}, headers=headers)
    assert res.status_code == 403
    assert res.json()["detail"] == "Admin privileges required."


def test_create_and_list_students_and_courses(client, auth_headers):
    res = client.post(
        "/courses",
        json={"course_code": "MA201", "course_name": "Linear Algebra"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    course_id = res.json()["id"]

    res = client.post(
        "/students",
        json={"name": "Grace Hopper", "email": "grace@example.edu", "rfid_tag": "TAG-G", "course_ids": [course_id]},
        headers=auth_headers,
    )
    assert res.status_code == 200
    student_id = res.json()["id"]

    res = client.post("/students", json={"name": "Dup", "rfid_tag": "TAG-G"}, headers=auth_headers)
    assert res.status_code == 409

    rows = client.get("/students", headers=auth_headers).json()
    assert any(r["id"] == student_id and r["course_ids"] == [course_id] for r in rows)

    courses = client.get("/courses", headers=auth_headers).json()
    assert courses[0]["student_ids"] == [student_id]


def test_create_exam_computes_end_time(client, auth_headers, roster):
    res = client.post(
        "/exams",
        json={
            "course_id": roster["course_id"],
            "exam_type": "quiz",
            "exam_date": _future_date(),
            "start_time": "13:30",
            "duration": 1.5,
        },
        headers=auth_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["end_time"] == "15:00"
    assert body["derived_status"] == "Awaiting"


@pytest.mark.parametrize(
    "overrides, detail",
    [
        ({"exam_date": "2020-01-01"}, "Exam date cannot be in the past."),
        ({"duration": 0.25}, "Duration must be between 0.5 and 8 hours."),
        ({"duration": 9}, "Duration must be between 0.5 and 8 hours."),
        ({"end_time": "12:00"}, "End time must equal start time plus duration (11:00)."),
        ({"start_time": "9am"}, "Start time must be HH:MM."),
    ],
)
def test_create_exam_rejections(client, auth_headers, roster, overrides, detail):
    payload = {
        "course_id": roster["course_id"],
        "exam_type": "final",
        "exam_date": _future_date(),
        "start_time": "09:00",
        "duration": 2,
    }
    payload.update(overrides)
    res = client.post("/exams", json=payload, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == detail


def test_exam_status_endpoints(client, auth_headers, roster):
    exam_id = _running_exam(roster["course_id"])
    res = client.get(f"/exams/{exam_id}/status", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "active"

    res = client.put(f"/exams/{exam_id}/status", json={"status": None}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "In Progress"

    res = client.put(f"/exams/{exam_id}/status", json={"status": "postponed"}, headers=auth_headers)
    assert res.json()["status"] == "postponed"

    assert client.get("/exams/999/status", headers=auth_headers).status_code == 404


def test_ongoing_exams_lists_running_exam_with_counts(client, auth_headers, roster):
    running_id = _running_exam(roster["course_id"])
    _running_exam(roster["course_id"], status="cancelled", exam_name="Cancelled Final")
    res = client.post(
        "/attendance/scan",
        json={"exam_id": running_id, "device_id": str(roster["device_id"]), "rfid_tag": "RFID-001"},
        headers=auth_headers,
    )
    assert res.status_code == 200

    res = client.get("/exams/ongoing", headers=auth_headers)
    assert res.status_code == 200
    rows = res.json()
    assert [r["id"] for r in rows] == [running_id]
    assert rows[0]["course_name"] == "Intro to Computing"
    assert rows[0]["summary"]["total"] == 1


def test_exam_attendance_view_and_summary(client, auth_headers, roster):
    check_in = datetime(2026, 3, 10, 11, 5, tzinfo=timezone.utc).timestamp()
    db.insert_attendance(roster["exam_id"], student_rfid="RFID-001", check_in_epoch=check_in, device_id=str(roster["device_id"]))
    db.insert_attendance(roster["exam_id"], student_rfid="RFID-GHOST", check_in_time="2026-03-10T09:50:00")

    res = client.get(f"/exams/{roster['exam_id']}/attendance", headers=auth_headers)
    assert res.status_code == 200
    rows = {r["student_rfid"]: r for r in res.json()}
    assert rows["RFID-001"]["student_name"] == "Ada Lovelace"
    assert rows["RFID-001"]["device_name"] == "Reader 1"
    assert rows["RFID-001"]["check_in"] == "2026-03-10T09:05:00+00:00"
    assert rows["RFID-001"]["attendance_status"] == "Present"
    assert rows["RFID-GHOST"]["student_name"] == "N/A"
    assert rows["RFID-GHOST"]["device_name"] == "N/A"
    assert rows["RFID-GHOST"]["attendance_status"] == "Late"

    res = client.get(f"/exams/{roster['exam_id']}/attendance/summary", headers=auth_headers)
    assert res.json() == {
        "exam_id": roster["exam_id"],
        "total": 2,
        "present": 1,
        "late": 1,
        "absent": 0,
        "invalid": 0,
        "other": 0,
    }


def test_manual_attendance_lifecycle_sends_checkout_email(client, auth_headers, roster, outbox):
    res = client.post(
        "/attendance/manual",
        json={
            "exam_id": roster["exam_id"],
            "student_id": roster["student_id"],
            "check_in_time": "2026-03-10T09:10",
        },
        headers=auth_headers,
    )
    assert res.status_code == 200
    record = res.json()
    assert record["device_id"] == "Manual"
    assert record["device_name"] == "-- Manual --"
    assert record["rfid_tag"] == "RFID-001"
    assert outbox == []

    res = client.put(
        f"/attendance/{record['id']}",
        json={"check_out_time": "2026-03-10T09:00"},
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Check-out time cannot be before check-in time."

    res = client.put(
        f"/attendance/{record['id']}",
        json={"check_out_time": "2026-03-10T10:45"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert len(outbox) == 1
    assert outbox[0]["email"] == "ada@example.edu"
    assert db.get_attendance_by_id(record["id"])["notification_state"] == "EMAIL_SENT"

    res = client.put(f"/attendance/{record['id']}", json={"status": "Excused"}, headers=auth_headers)
    assert res.status_code == 200
    assert len(outbox) == 1

    res = client.delete(f"/attendance/{record['id']}", headers=auth_headers)
    assert res.status_code == 200
    assert db.get_attendance_by_id(record["id"]) is None


def test_manual_attendance_rejects_wrong_date(client, auth_headers, roster):
    res = client.post(
        "/attendance/manual",
        json={
            "exam_id": roster["exam_id"],
            "student_id": roster["student_id"],
            "check_in_time": "2026-03-11T09:10",
        },
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Check-in date must match exam date (2026-03-10)."
    assert db.get_attendance_for_exam(roster["exam_id"]) == []


def test_device_rows_are_read_only_for_manual_path(client, auth_headers, roster):
    row = db.insert_attendance(roster["exam_id"], student_rfid="RFID-001", check_in_epoch=1773140000)["after"]

    res = client.put(f"/attendance/{row['id']}", json={"status": "Present"}, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Cannot edit RFID recorded attendance."

    res = client.delete(f"/attendance/{row['id']}", headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Cannot delete RFID recorded attendance."


def test_manual_create_conflicts_with_device_row(client, auth_headers, roster):
    db.insert_attendance(roster["exam_id"], student_rfid="RFID-001", check_in_epoch=1773140000)

    res = client.post(
        "/attendance/manual",
        json={
            "exam_id": roster["exam_id"],
            "student_id": roster["student_id"],
            "check_in_time": "2026-03-10T09:10",
        },
        headers=auth_headers,
    )
    assert res.status_code == 409
    assert len(db.get_attendance_for_exam(roster["exam_id"])) == 1


def test_manual_create_applies_late_entry_setting(client, auth_headers, roster):
    db.save_exam_settings({"allow_late_entry": True, "late_entry_grace_period": 15})

    res = client.post(
        "/attendance/manual",
        json={
            "exam_id": roster["exam_id"],
            "student_id": roster["student_id"],
            "check_in_time": "2026-03-10T09:20",
        },
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "Late"


def test_scan_rejection_maps_to_400(client, auth_headers, roster):
    res = client.post(
        "/attendance/scan",
        json={"exam_id": roster["exam_id"], "device_id": "1", "rfid_tag": "NOPE"},
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "No student found with this RFID tag"


def test_device_events_require_secret_and_notify_on_checkout(client, roster, outbox, monkeypatch):
    monkeypatch.setattr(security, "DEVICE_SECRET", "reader-secret")
    event = {
        "currentExam": roster["exam_id"],
        "studentId": "RFID-001",
        "deviceId": "ESP-01",
        "checkInEpochTime": datetime(2026, 3, 10, 11, 5, tzinfo=timezone.utc).timestamp(),
    }

    assert client.post("/devices/events", json=event).status_code == 401

    headers = {"X-Device-Secret": "reader-secret"}
    res = client.post("/devices/events", json=event, headers=headers)
    assert res.status_code == 200
    assert res.json()["action"] == "check_in"

    checkout = {
        "examId": roster["exam_id"],
        "studentId": "RFID-001",
        "deviceId": "ESP-01",
        "checkOutEpochTime": datetime(2026, 3, 10, 12, 40, tzinfo=timezone.utc).timestamp(),
    }
    res = client.post("/devices/events", json=checkout, headers=headers)
    assert res.status_code == 200
    assert res.json()["action"] == "check_out"
    assert len(outbox) == 1
    assert outbox[0]["check_out_time"] == "10 Mar 2026, 10:40:00"


def test_admin_settings_and_notification_log(client, auth_headers, roster, outbox):
    res = client.get("/admin/settings", headers=auth_headers)
    assert res.json() == {"allow_late_entry": False, "late_entry_grace_period": 0, "enable_checkout_email": True}

    res = client.put(
        "/admin/settings",
        json={"allow_late_entry": True, "late_entry_grace_period": 10},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["late_entry_grace_period"] == 10
    assert res.json()["enable_checkout_email"] is True

    row = db.insert_attendance(
        roster["exam_id"],
        student_id=roster["student_id"],
        rfid_tag="RFID-001",
        check_in_time="2026-03-10T09:05:00",
    )["after"]
    res = client.put(f"/attendance/{row['id']}", json={"check_out_time": "2026-03-10T10:30"}, headers=auth_headers)
    assert res.status_code == 200

    res = client.get("/admin/notifications", params={"state": "email_sent"}, headers=auth_headers)
    assert res.status_code == 200
    items = res.json()["items"]
    assert [i["id"] for i in items] == [row["id"]]
    assert items[0]["student_name"] == "Ada Lovelace"

    res = client.get("/admin/notifications", params={"state": "bogus"}, headers=auth_headers)
    assert res.status_code == 400
