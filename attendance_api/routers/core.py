from fastapi import APIRouter

from attendance_api.config import (
    EARLY_CHECKIN_MINUTES,
    EMAIL_DISPLAY_TIMEZONE,
    EXAM_MAX_DURATION_HOURS,
    EXAM_MIN_DURATION_HOURS,
    GRACE_PERIOD_MINUTES,
    RFID_TIMEZONE_OFFSET_HOURS,
)
from attendance_api.timekeeping import default_policy

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    policy = default_policy()
    return {
        "rfid_timezone_offset_hours": RFID_TIMEZONE_OFFSET_HOURS,
        "grace_period_minutes": GRACE_PERIOD_MINUTES,
        "early_checkin_minutes": EARLY_CHECKIN_MINUTES,
        "attendance_timezone": str(policy.timezone),
        "email_display_timezone": str(EMAIL_DISPLAY_TIMEZONE),
        "exam_min_duration_hours": EXAM_MIN_DURATION_HOURS,
        "exam_max_duration_hours": EXAM_MAX_DURATION_HOURS,
    }
