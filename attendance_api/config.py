import os
import secrets
from datetime import timezone, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("EXAM_ATTENDANCE_DB_PATH", BASE_DIR / "attendance_db" / "attendance.db"))
DEVICE_SECRET = os.getenv("EXAM_ATTENDANCE_DEVICE_SECRET", "exam-device-secret-change-me").strip()
ADMIN_USERNAME = os.getenv("EXAM_ATTENDANCE_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("EXAM_ATTENDANCE_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = (
    os.getenv("EXAM_ATTENDANCE_SIGNING_KEY", "").strip()
    or DEVICE_SECRET
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("EXAM_ATTENDANCE_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("EXAM_ATTENDANCE_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_timezone(value: str | None, fallback: tzinfo) -> tzinfo:
    name = (value or "").strip()
    if not name:
        return fallback
    if name.upper() in {"UTC", "Z"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except Exception:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("EXAM_ATTENDANCE_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("EXAM_ATTENDANCE_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("EXAM_ATTENDANCE_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Device-Secret"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("EXAM_ATTENDANCE_CORS_ALLOW_CREDENTIALS"), True)

# Attendance rules
RFID_TIMEZONE_OFFSET_HOURS = float(os.getenv("EXAM_ATTENDANCE_RFID_TIMEZONE_OFFSET_HOURS", "2"))
GRACE_PERIOD_MINUTES = max(0, int(os.getenv("EXAM_ATTENDANCE_GRACE_PERIOD_MINUTES", "30")))
EARLY_CHECKIN_MINUTES = max(0, int(os.getenv("EXAM_ATTENDANCE_EARLY_CHECKIN_MINUTES", "10")))
ATTENDANCE_TIMEZONE = _parse_timezone(os.getenv("EXAM_ATTENDANCE_TIMEZONE"), timezone.utc)
EXAM_MIN_DURATION_HOURS = 0.5
EXAM_MAX_DURATION_HOURS = 8.0

# Checkout email (SMTP)
SMTP_HOST = os.getenv("EXAM_ATTENDANCE_SMTP_HOST", "").strip()
SMTP_PORT = int(os.getenv("EXAM_ATTENDANCE_SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("EXAM_ATTENDANCE_SMTP_USERNAME", "").strip()
SMTP_PASSWORD = os.getenv("EXAM_ATTENDANCE_SMTP_PASSWORD", "")
SMTP_SENDER = os.getenv("EXAM_ATTENDANCE_SMTP_SENDER", "").strip() or SMTP_USERNAME
SMTP_USE_TLS = _parse_bool(os.getenv("EXAM_ATTENDANCE_SMTP_USE_TLS"), True)
SMTP_TIMEOUT_SECONDS = float(os.getenv("EXAM_ATTENDANCE_SMTP_TIMEOUT_SECONDS", "30"))
EMAIL_SUBJECT = os.getenv("EXAM_ATTENDANCE_EMAIL_SUBJECT", "Exam checkout confirmation").strip()
EMAIL_DISPLAY_TIMEZONE = _parse_timezone(
    os.getenv("EXAM_ATTENDANCE_EMAIL_DISPLAY_TIMEZONE"),
    ATTENDANCE_TIMEZONE,
)
