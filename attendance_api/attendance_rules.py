from datetime import datetime
from typing import Any, Iterable, Literal, Mapping, NamedTuple, TypedDict

from attendance_api.timekeeping import (
    AttendancePolicy,
    exam_window,
    has_check_in,
    normalize_check_in,
    parse_exam_date,
)

AttendanceStatus = Literal["Present", "Late", "Absent", "Invalid", "Unknown"]
ExamStatus = Literal["Awaiting", "In Progress", "Ended", "Unknown"]

PRESENT: AttendanceStatus = "Present"
LATE: AttendanceStatus = "Late"
ABSENT: AttendanceStatus = "Absent"
INVALID: AttendanceStatus = "Invalid"
UNKNOWN: AttendanceStatus = "Unknown"

CLOSED_EXAM_STATUSES = {"completed", "cancelled", "postponed"}


class StudentById(NamedTuple):
    student_id: int


class StudentByRfid(NamedTuple):
    rfid_tag: str


StudentRef = StudentById | StudentByRfid


class AttendanceSummary(TypedDict):
    total: int
    present: int
    late: int
    absent: int
    invalid: int
    other: int


def classify_attendance(
    exam: Mapping[str, Any] | None,
    record: Mapping[str, Any],
    policy: AttendancePolicy,
) -> str:
    """
    Derive the attendance status of one row against its exam.

    An explicit ``status`` stored on the row is returned verbatim; that is how
    administrators correct a derived status.
    """
    if not exam:
        return UNKNOWN

    override = record.get("status")
    if override:
        return str(override)

    if not has_check_in(record):
        return ABSENT

    check_in = normalize_check_in(record, policy, exam_date=parse_exam_date(exam.get("exam_date")))
    if check_in is None:
        return INVALID

    window = exam_window(exam, policy)
    if window is None:
        return UNKNOWN

    if not window.accepts(check_in):
        return INVALID
    if check_in <= window.grace_end:
        return PRESENT
    return LATE


def derive_exam_status(
    exam: Mapping[str, Any] | None,
    now: datetime,
    policy: AttendancePolicy,
) -> str:
    if not exam:
        return UNKNOWN

    explicit = exam.get("status")
    if explicit:
        return str(explicit)

    window = exam_window(exam, policy)
    if window is None:
        return UNKNOWN
    if now < window.start:
        return "Awaiting"
    if now <= window.end:
        return "In Progress"
    return "Ended"


def is_exam_ongoing(exam: Mapping[str, Any], now: datetime, policy: AttendancePolicy) -> bool:
    explicit = str(exam.get("status") or "").strip().lower()
    if explicit in CLOSED_EXAM_STATUSES:
        return False
    window = exam_window(exam, policy)
    return window is not None and window.in_progress(now)


def summarize_attendance(
    exam: Mapping[str, Any] | None,
    records: Iterable[Mapping[str, Any]],
    policy: AttendancePolicy,
) -> AttendanceSummary:
    summary: AttendanceSummary = {
        "total": 0,
        "present": 0,
        "late": 0,
        "absent": 0,
        "invalid": 0,
        "other": 0,
    }
    for record in records:
        summary["total"] += 1
        # Overrides are stored in whatever case the writer used.
        status = classify_attendance(exam, record, policy).strip().lower()
        if status == "present":
            summary["present"] += 1
        elif status == "late":
            summary["late"] += 1
        elif status == "absent":
            summary["absent"] += 1
        elif status == "invalid":
            summary["invalid"] += 1
        else:
            summary["other"] += 1
    return summary


def student_ref(record: Mapping[str, Any]) -> StudentRef | None:
    student_id = record.get("student_id")
    if student_id is not None:
        return StudentById(int(student_id))
    tag = record.get("student_rfid") or record.get("rfid_tag")
    if tag:
        return StudentByRfid(str(tag))
    return None


def resolve_student(
    record: Mapping[str, Any],
    students: Iterable[Mapping[str, Any]],
) -> Mapping[str, Any] | None:
    ref = student_ref(record)
    if ref is None:
        return None
    for student in students:
        if isinstance(ref, StudentById) and student.get("id") == ref.student_id:
            return student
        if isinstance(ref, StudentByRfid) and student.get("rfid_tag") == ref.rfid_tag:
            return student
    return None
