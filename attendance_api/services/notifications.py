"""
Checkout notification workflow.

Per attendance row::

    NO_CHECKOUT -> CHECKOUT_PENDING_EMAIL -> EMAIL_SENT | EMAIL_FAILED

The workflow consumes the before/after pair returned by the store on every
attendance update. It only reacts to the edge where a row gains its first
checkout, and it claims the row through a conditional update of the persisted
``notification_state`` before sending, so a replayed change never sends twice.
Both terminal outcomes are written back to the row; nothing is retried.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Any, Mapping

from attendance_api.config import EMAIL_DISPLAY_TIMEZONE
from attendance_api.services.mailer import (
    CheckoutEmail,
    EmailDeliveryError,
    EmailTransport,
    SmtpTransport,
)
from attendance_api.timekeeping import (
    AttendancePolicy,
    default_policy,
    has_check_out,
    normalize_check_in,
    normalize_check_out,
    parse_exam_date,
)
from attendance_db.db import (
    AttendanceChange,
    NotificationState,
    claim_checkout_notification,
    get_course_by_id,
    get_exam_by_id,
    get_exam_settings,
    get_student_by_id,
    get_student_by_rfid,
    mark_email_failed,
    mark_email_sent,
)

logger = logging.getLogger(__name__)

UNKNOWN_EXAM = "Unknown Exam"
UNKNOWN_COURSE = "Unknown Course"
NOT_AVAILABLE = "N/A"


def is_checkout_transition(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> bool:
    # Only updates count: a row created with a checkout has no "before".
    if before is None or after is None:
        return False
    return not has_check_out(before) and has_check_out(after)


def format_display_time(instant: datetime | None) -> str:
    if instant is None:
        return NOT_AVAILABLE
    return instant.astimezone(EMAIL_DISPLAY_TIMEZONE).strftime("%d %b %Y, %H:%M:%S")


def resolve_notification_student(record: Mapping[str, Any]) -> dict[str, Any] | None:
    student = None
    if record.get("student_id") is not None:
        student = get_student_by_id(int(record["student_id"]))
    if student is None:
        # Device rows carry the tag where the student id would be.
        tag = record.get("student_rfid") or record.get("rfid_tag")
        if tag:
            student = get_student_by_rfid(str(tag))
    return student


def build_checkout_email(record: Mapping[str, Any], policy: AttendancePolicy) -> CheckoutEmail:
    student = resolve_notification_student(record)
    if student is None:
        raise EmailDeliveryError("Student not found for attendance record.")
    email = (student.get("email") or "").strip()
    if not email:
        raise EmailDeliveryError("Student email not found.")

    exam = get_exam_by_id(int(record["exam_id"])) if record.get("exam_id") is not None else None
    exam_name = UNKNOWN_EXAM
    course_name = UNKNOWN_COURSE
    exam_room = record.get("exam_room")
    exam_date = None
    if exam:
        exam_name = exam.get("exam_name") or exam.get("exam_type") or UNKNOWN_EXAM
        exam_room = exam_room or exam.get("room")
        exam_date = parse_exam_date(exam.get("exam_date"))
        course = get_course_by_id(int(exam["course_id"])) if exam.get("course_id") is not None else None
        if course:
            course_name = course.get("course_name") or UNKNOWN_COURSE

    return {
        "email": email,
        "student_name": student.get("name") or NOT_AVAILABLE,
        "exam_name": exam_name,
        "course_name": course_name,
        "check_in_time": format_display_time(normalize_check_in(record, policy, exam_date=exam_date)),
        "check_out_time": format_display_time(normalize_check_out(record, policy, exam_date=exam_date)),
        "exam_room": exam_room or NOT_AVAILABLE,
        "device_name": record.get("device_name") or record.get("device_id") or NOT_AVAILABLE,
    }


def handle_attendance_change(
    change: AttendanceChange,
    *,
    transport: EmailTransport | None = None,
    policy: AttendancePolicy | None = None,
) -> NotificationState | None:
    """
    Run the workflow for one observed change.

    Returns the terminal state reached, or None when the change did not
    trigger a notification. ``CHECKOUT_PENDING_EMAIL`` means the outcome
    could not be written back to the row.
    """
    before, after = change["before"], change["after"]
    if not is_checkout_transition(before, after):
        return None

    record_id = int(after["id"])
    if not get_exam_settings().get("enable_checkout_email", True):
        logger.info("Checkout email disabled; skipping attendance %s", record_id)
        return None

    if not claim_checkout_notification(record_id):
        logger.info("Checkout notification for attendance %s already claimed", record_id)
        return None

    active_policy = policy or default_policy()
    active_transport = transport or SmtpTransport()
    try:
        message = build_checkout_email(after, active_policy)
        active_transport.send(message)
    except EmailDeliveryError as exc:
        logger.error("Checkout email for attendance %s failed: %s", record_id, exc)
        return _record_outcome(record_id, "EMAIL_FAILED", error=str(exc))
    except Exception as exc:
        logger.exception("Unexpected error sending checkout email for attendance %s", record_id)
        return _record_outcome(record_id, "EMAIL_FAILED", error=str(exc) or exc.__class__.__name__)

    return _record_outcome(record_id, "EMAIL_SENT")


def _record_outcome(record_id: int, state: NotificationState, *, error: str = "") -> NotificationState:
    try:
        if state == "EMAIL_SENT":
            mark_email_sent(record_id)
        else:
            mark_email_failed(record_id, error)
    except sqlite3.Error:
        # The row keeps its claim, so the notification is not attempted again.
        logger.exception("Could not record %s for attendance %s", state, record_id)
        return "CHECKOUT_PENDING_EMAIL"
    logger.info("Checkout notification for attendance %s recorded as %s", record_id, state)
    return state
