import logging
from datetime import datetime, timedelta
from typing import Any, Literal, TypedDict

from attendance_api.attendance_rules import LATE, PRESENT
from attendance_api.timekeeping import (
    AttendancePolicy,
    default_policy,
    device_instant,
    exam_window,
    format_local_iso,
    has_check_out,
    local_now,
    normalize_check_in,
    parse_exam_date,
)
from attendance_db.db import (
    AttendanceChange,
    find_attendance,
    get_course_by_id,
    get_device_by_id,
    get_exam_by_id,
    get_exam_settings,
    get_student_by_rfid,
    insert_attendance,
    update_attendance,
)

logger = logging.getLogger(__name__)

ScanAction = Literal["check_in", "check_out"]


class ScanRejected(ValueError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ScanResult(TypedDict):
    action: ScanAction
    record: dict[str, Any]
    change: AttendanceChange


def _device_name(device_id: Any) -> str | None:
    text = str(device_id or "").strip()
    if not text.isdigit():
        return None
    device = get_device_by_id(int(text))
    return device["device_name"] if device else None


def record_scan(
    *,
    exam_id: int,
    device_id: Any,
    rfid_tag: str,
    is_checkout: bool = False,
    now: datetime | None = None,
    policy: AttendancePolicy | None = None,
) -> ScanResult:
    """
    Record a scanner check-in or check-out for an enrolled student.

    Check-ins may carry a stored Present/Late status when late entry is
    enabled in the exam settings; otherwise the status is left to the
    classifier.
    """
    active_policy = policy or default_policy()
    tag = (rfid_tag or "").strip()

    student = get_student_by_rfid(tag) if tag else None
    if not student:
        raise ScanRejected("No student found with this RFID tag")

    exam = get_exam_by_id(exam_id)
    if not exam:
        raise ScanRejected("Exam not found")

    settings = get_exam_settings()

    course = get_course_by_id(int(exam["course_id"]))
    if not course:
        raise ScanRejected("Course not found")
    if int(student["id"]) not in course["student_ids"]:
        raise ScanRejected("Student not enrolled in course")

    if str(exam.get("status") or "").strip().lower() != "active":
        raise ScanRejected("Exam is not active")

    current = now or local_now(active_policy)
    stamp = format_local_iso(current, active_policy)
    existing = find_attendance(exam_id, student_id=int(student["id"]), student_rfid=tag)

    if is_checkout:
        if existing is None:
            raise ScanRejected("No check-in record found")
        if has_check_out(existing):
            raise ScanRejected("Student already checked out")
        change = update_attendance(
            int(existing["id"]),
            {"check_out_time": stamp, "email_sent": False},
        )
        logger.info("Check-out recorded for student %s on exam %s", student["id"], exam_id)
        return {"action": "check_out", "record": change["after"], "change": change}

    if existing is not None:
        raise ScanRejected("Student already checked in")

    fields: dict[str, Any] = {
        "student_id": int(student["id"]),
        "rfid_tag": tag,
        "check_in_time": stamp,
        "device_id": str(device_id),
        "device_name": _device_name(device_id),
        "exam_room": exam.get("room"),
        "email_sent": False,
    }
    window = exam_window(exam, active_policy)
    if settings.get("allow_late_entry") and window is not None:
        grace = int(settings.get("late_entry_grace_period") or 0)
        late_threshold = window.start + timedelta(minutes=grace)
        fields["status"] = PRESENT if current.astimezone(active_policy.timezone) <= late_threshold else LATE

    change = insert_attendance(exam_id, **fields)
    logger.info("Check-in recorded for student %s on exam %s", student["id"], exam_id)
    return {"action": "check_in", "record": change["after"], "change": change}


def record_device_event(
    *,
    exam_id: int,
    student_tag: str,
    device_id: Any,
    device_name: str | None = None,
    exam_room: str | None = None,
    check_in_epoch: float | None = None,
    check_out_epoch: float | None = None,
    policy: AttendancePolicy | None = None,
) -> ScanResult:
    """
    Store a raw device row keyed by the RFID tag.

    These rows carry device epoch seconds and no ``rfid_tag``, which marks them
    read-only for the manual entry path. A check-out earlier than the check-in
    it closes is rejected once both are corrected for the device clock.
    """
    active_policy = policy or default_policy()
    tag = (student_tag or "").strip()
    if not tag:
        raise ScanRejected("studentId is required")
    if check_in_epoch is None and check_out_epoch is None:
        raise ScanRejected("checkInEpochTime or checkOutEpochTime is required")

    exam = get_exam_by_id(exam_id)
    if not exam:
        raise ScanRejected("Exam not found")

    student = get_student_by_rfid(tag)
    existing = find_attendance(
        exam_id,
        student_id=int(student["id"]) if student else None,
        student_rfid=tag,
    )
    check_out = device_instant(check_out_epoch, active_policy) if check_out_epoch is not None else None

    if check_out_epoch is not None and existing is not None:
        if has_check_out(existing):
            raise ScanRejected("Student already checked out")
        check_in = normalize_check_in(existing, active_policy, exam_date=parse_exam_date(exam.get("exam_date")))
        if check_in is not None and check_out is not None and check_out < check_in:
            raise ScanRejected("Check-out time cannot be before check-in time")
        change = update_attendance(
            int(existing["id"]),
            {"check_out_epoch": check_out_epoch, "email_sent": False},
        )
        logger.info("Device check-out recorded for tag %s on exam %s", tag, exam_id)
        return {"action": "check_out", "record": change["after"], "change": change}

    if check_in_epoch is None:
        raise ScanRejected("No check-in record found")
    if existing is not None:
        raise ScanRejected("Student already checked in")
    check_in = device_instant(check_in_epoch, active_policy)
    if check_out is not None and check_in is not None and check_out < check_in:
        raise ScanRejected("Check-out time cannot be before check-in time")

    change = insert_attendance(
        exam_id,
        student_rfid=tag,
        check_in_epoch=check_in_epoch,
        check_out_epoch=check_out_epoch,
        device_id=str(device_id),
        device_name=device_name or _device_name(device_id),
        exam_room=exam_room or exam.get("room"),
        email_sent=False,
    )
    logger.info("Device check-in recorded for tag %s on exam %s", tag, exam_id)
    return {"action": "check_in", "record": change["after"], "change": change}
