"""
Time normalization and exam window arithmetic.

Attendance rows carry their event times in one of two shapes:

- ``check_in_epoch`` / ``check_out_epoch``: epoch seconds reported by an RFID
  device whose clock runs ahead of local time by a fixed number of hours.
- ``check_in_time`` / ``check_out_time``: local wall-clock strings written by
  the scanner UI or by an administrator, either a full ``YYYY-MM-DDTHH:MM[:SS]``
  stamp or a bare ``HH:MM[:SS]`` clock time that belongs to the exam date.

Everything here is pure: the same inputs always produce the same instants.
"""
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Mapping

from attendance_api.config import (
    ATTENDANCE_TIMEZONE,
    EARLY_CHECKIN_MINUTES,
    GRACE_PERIOD_MINUTES,
    RFID_TIMEZONE_OFFSET_HOURS,
)

_CLOCK_ONLY = re.compile(r"^\d{1,2}:\d{2}(:\d{2}(\.\d+)?)?$")


@dataclass(frozen=True)
class AttendancePolicy:
    rfid_timezone_offset_hours: float = 2.0
    grace_period_minutes: int = 30
    early_checkin_minutes: int = 10
    timezone: tzinfo = timezone.utc


@dataclass(frozen=True)
class ExamWindow:
    start: datetime
    end: datetime
    grace_end: datetime
    early_check_in: datetime

    def accepts(self, instant: datetime) -> bool:
        return self.early_check_in <= instant <= self.end

    def in_progress(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


def default_policy() -> AttendancePolicy:
    return AttendancePolicy(
        rfid_timezone_offset_hours=RFID_TIMEZONE_OFFSET_HOURS,
        grace_period_minutes=GRACE_PERIOD_MINUTES,
        early_checkin_minutes=EARLY_CHECKIN_MINUTES,
        timezone=ATTENDANCE_TIMEZONE,
    )


def parse_exam_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_clock_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value
    if not value:
        return None
    text = str(value).strip()
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    return None


def parse_local_datetime(
    value: Any,
    policy: AttendancePolicy,
    *,
    exam_date: date | None = None,
) -> datetime | None:
    """
    Parse a wall-clock stamp as local time in ``policy.timezone``.

    Bare clock times need ``exam_date`` to become an instant. Stamps that
    already carry ``Z`` or an offset are honored and converted.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    if _CLOCK_ONLY.match(text):
        if exam_date is None:
            return None
        clock = parse_clock_time(text.split(".", 1)[0])
        if clock is None:
            return None
        return datetime.combine(exam_date, clock, tzinfo=policy.timezone)

    if "T" not in text and " " not in text:
        return None

    candidate = text[:-1] + "+00:00" if text[-1] in "Zz" else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=policy.timezone)
    return parsed.astimezone(policy.timezone)


def device_instant(epoch: Any, policy: AttendancePolicy) -> datetime | None:
    try:
        seconds = float(epoch)
    except (TypeError, ValueError):
        return None
    corrected = seconds - policy.rfid_timezone_offset_hours * 3600
    try:
        return datetime.fromtimestamp(corrected, tz=policy.timezone)
    except (OverflowError, OSError, ValueError):
        return None


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def event_instant(
    epoch: Any,
    text: Any,
    policy: AttendancePolicy,
    *,
    exam_date: date | None = None,
) -> datetime | None:
    # Device epoch wins over any string stamp on the same row.
    if _present(epoch):
        return device_instant(epoch, policy)
    if _present(text):
        return parse_local_datetime(text, policy, exam_date=exam_date)
    return None


def has_check_in(record: Mapping[str, Any]) -> bool:
    return _present(record.get("check_in_epoch")) or _present(record.get("check_in_time"))


def has_check_out(record: Mapping[str, Any] | None) -> bool:
    if not record:
        return False
    return _present(record.get("check_out_epoch")) or _present(record.get("check_out_time"))


def normalize_check_in(
    record: Mapping[str, Any],
    policy: AttendancePolicy,
    *,
    exam_date: date | None = None,
) -> datetime | None:
    return event_instant(
        record.get("check_in_epoch"),
        record.get("check_in_time"),
        policy,
        exam_date=exam_date,
    )


def normalize_check_out(
    record: Mapping[str, Any],
    policy: AttendancePolicy,
    *,
    exam_date: date | None = None,
) -> datetime | None:
    return event_instant(
        record.get("check_out_epoch"),
        record.get("check_out_time"),
        policy,
        exam_date=exam_date,
    )


def _duration_hours(value: Any) -> float | None:
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return None
    if hours <= 0:
        return None
    return hours


def exam_window(exam: Mapping[str, Any] | None, policy: AttendancePolicy) -> ExamWindow | None:
    if not exam:
        return None
    exam_date = parse_exam_date(exam.get("exam_date"))
    start_clock = parse_clock_time(exam.get("start_time"))
    hours = _duration_hours(exam.get("duration"))
    if exam_date is None or start_clock is None or hours is None:
        return None

    start = datetime.combine(exam_date, start_clock, tzinfo=policy.timezone)
    return ExamWindow(
        start=start,
        end=start + timedelta(hours=hours),
        grace_end=start + timedelta(minutes=policy.grace_period_minutes),
        early_check_in=start - timedelta(minutes=policy.early_checkin_minutes),
    )


def compute_end_time(start_time: Any, duration: Any) -> str | None:
    clock = parse_clock_time(start_time)
    hours = _duration_hours(duration)
    if clock is None or hours is None:
        return None
    anchor = datetime.combine(date(2000, 1, 1), clock)
    return (anchor + timedelta(hours=hours)).strftime("%H:%M")


def local_now(policy: AttendancePolicy) -> datetime:
    return datetime.now(tz=policy.timezone)


def format_local_iso(instant: datetime, policy: AttendancePolicy) -> str:
    return instant.astimezone(policy.timezone).strftime("%Y-%m-%dT%H:%M:%S")
