import re
from datetime import datetime, timedelta
from typing import Any, Mapping

from attendance_api.attendance_rules import LATE
from attendance_api.timekeeping import (
    AttendancePolicy,
    exam_window,
    format_local_iso,
    has_check_in,
    has_check_out,
    local_now,
    normalize_check_in,
    normalize_check_out,
    parse_exam_date,
    parse_local_datetime,
)

MANUAL_DEVICE_ID = "Manual"
MANUAL_DEVICE_NAME = "-- Manual --"


class AttendanceValidationError(ValueError):
    """A manual attendance write was rejected; ``reason`` is shown to the user as-is."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _date_part(stamp: str) -> str:
    return re.split(r"[T ]", stamp, maxsplit=1)[0]


def ensure_manual_editable(existing: Mapping[str, Any] | None) -> None:
    if existing is not None and not existing.get("rfid_tag"):
        raise AttendanceValidationError("Cannot edit RFID recorded attendance.")


def check_manual_delete(existing: Mapping[str, Any]) -> None:
    if not existing.get("rfid_tag"):
        raise AttendanceValidationError("Cannot delete RFID recorded attendance.")


def validate_manual_attendance(
    values: Mapping[str, Any],
    exam: Mapping[str, Any] | None,
    student: Mapping[str, Any] | None,
    *,
    policy: AttendancePolicy,
    existing: Mapping[str, Any] | None = None,
    now: datetime | None = None,
    settings: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Gate a manual create (``existing is None``) or edit before it is written.

    ``values`` holds only the fields the caller supplied. Returns the payload
    to persist, which may carry an auto-filled ``check_in_time`` and always
    carries the manual device sentinels. With late entry enabled in
    ``settings``, a check-in written past the late-entry grace period is
    stamped Late unless the caller chose a status. The first violated rule
    raises :class:`AttendanceValidationError`.
    """
    payload = dict(values)
    ensure_manual_editable(existing)

    if "rfid_tag" in payload:
        rfid_tag = _text(payload.get("rfid_tag"))
    else:
        rfid_tag = _text((existing or {}).get("rfid_tag"))
    if student is not None and rfid_tag != _text(student.get("rfid_tag")):
        raise AttendanceValidationError("RFID tag does not match selected student.")

    if not exam:
        raise AttendanceValidationError("Selected exam not found.")

    window = exam_window(exam, policy)
    if window is None:
        raise AttendanceValidationError("Selected exam has no valid schedule.")
    exam_date = str(exam.get("exam_date"))

    check_in: datetime | None = None
    check_in_text = _text(payload.get("check_in_time"))
    if check_in_text:
        check_in = parse_local_datetime(check_in_text, policy)
        if check_in is None:
            raise AttendanceValidationError("Invalid check-in date and time format.")
        if _date_part(check_in_text) != exam_date:
            raise AttendanceValidationError(f"Check-in date must match exam date ({exam_date}).")
        if check_in < window.start:
            raise AttendanceValidationError(f"Cannot check in before exam starts ({exam.get('start_time')}).")
        if check_in > window.end:
            raise AttendanceValidationError("Cannot check in after exam ends.")
    elif existing is not None and has_check_in(existing):
        check_in = normalize_check_in(existing, policy, exam_date=parse_exam_date(exam_date))
    else:
        current = now or local_now(policy)
        if window.in_progress(current):
            check_in = current
            payload["check_in_time"] = format_local_iso(current, policy)

    check_out_text = _text(payload.get("check_out_time"))
    if check_out_text:
        check_out = parse_local_datetime(check_out_text, policy)
        if check_out is None:
            raise AttendanceValidationError("Invalid check-out date and time format.")
        if _date_part(check_out_text) != exam_date:
            raise AttendanceValidationError(f"Check-out date must match exam date ({exam_date}).")
        if check_in is not None and check_out < check_in:
            raise AttendanceValidationError("Check-out time cannot be before check-in time.")
    elif "check_out_time" not in payload and existing is not None and has_check_out(existing):
        # A moved check-in must still precede the stored check-out.
        stored_out = normalize_check_out(existing, policy, exam_date=parse_exam_date(exam_date))
        if check_in is not None and stored_out is not None and stored_out < check_in:
            raise AttendanceValidationError("Check-out time cannot be before check-in time.")

    if settings and settings.get("allow_late_entry") and not _text(payload.get("status")):
        late_after = window.start + timedelta(minutes=int(settings.get("late_entry_grace_period") or 0))
        if _text(payload.get("check_in_time")) and check_in is not None and check_in > late_after:
            payload["status"] = LATE

    payload["exam_id"] = exam.get("id")
    payload["device_id"] = MANUAL_DEVICE_ID
    payload["device_name"] = MANUAL_DEVICE_NAME
    return payload
