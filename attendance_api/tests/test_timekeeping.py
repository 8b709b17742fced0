from datetime import date, datetime, timedelta, timezone

from attendance_api.timekeeping import (
    AttendancePolicy,
    compute_end_time,
    device_instant,
    event_instant,
    exam_window,
    format_local_iso,
    has_check_out,
    normalize_check_in,
    parse_local_datetime,
)

POLICY = AttendancePolicy()
EXAM = {"exam_date": "2026-03-10", "start_time": "09:00", "duration": 2}


def _utc(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2026, 3, 10, hour, minute, second, tzinfo=timezone.utc)


def test_exam_window_boundaries():
    window = exam_window(EXAM, POLICY)
    assert window is not None
    assert window.start == _utc(9)
    assert window.early_check_in == _utc(8, 50)
    assert window.grace_end == _utc(9, 30)
    assert window.end == _utc(11)


def test_exam_window_accepts_fractional_duration_and_seconds():
    window = exam_window({"exam_date": "2026-03-10", "start_time": "09:15:00", "duration": "1.5"}, POLICY)
    assert window.end == _utc(10, 45)


def test_exam_window_undefined_for_malformed_exam():
    assert exam_window(None, POLICY) is None
    assert exam_window({**EXAM, "exam_date": "10/03/2026"}, POLICY) is None
    assert exam_window({**EXAM, "start_time": "nine"}, POLICY) is None
    assert exam_window({**EXAM, "duration": None}, POLICY) is None
    assert exam_window({**EXAM, "duration": 0}, POLICY) is None


def test_exam_window_respects_policy_overrides():
    policy = AttendancePolicy(grace_period_minutes=15, early_checkin_minutes=5)
    window = exam_window(EXAM, policy)
    assert window.grace_end == _utc(9, 15)
    assert window.early_check_in == _utc(8, 55)


def test_device_epoch_is_shifted_back_by_offset():
    # The reader reports 11:05 for a 09:05 scan.
    epoch = _utc(11, 5).timestamp()
    assert device_instant(epoch, POLICY) == _utc(9, 5)
    assert device_instant("not-a-number", POLICY) is None


def test_identical_epochs_normalize_identically():
    epoch = _utc(11, 5).timestamp()
    a = normalize_check_in({"check_in_epoch": epoch}, POLICY)
    b = normalize_check_in({"check_in_epoch": epoch, "check_in_time": "2026-03-10T10:00"}, POLICY)
    assert a == b == _utc(9, 5)


def test_parse_local_datetime_variants():
    assert parse_local_datetime("2026-03-10T09:05", POLICY) == _utc(9, 5)
    assert parse_local_datetime("2026-03-10 09:05:30", POLICY) == _utc(9, 5, 30)
    assert parse_local_datetime("2026-03-10T09:05:00Z", POLICY) == _utc(9, 5)
    assert parse_local_datetime("2026-03-10T09:05:00+02:00", POLICY) == _utc(7, 5)
    assert parse_local_datetime("09:05", POLICY, exam_date=date(2026, 3, 10)) == _utc(9, 5)


def test_parse_local_datetime_rejects_garbage():
    assert parse_local_datetime("09:05", POLICY) is None
    assert parse_local_datetime("yesterday", POLICY) is None
    assert parse_local_datetime("2026-03-10", POLICY) is None
    assert parse_local_datetime("2026-13-40T09:00", POLICY) is None
    assert parse_local_datetime("", POLICY) is None


def test_event_instant_prefers_epoch_and_handles_missing():
    epoch = _utc(11).timestamp()
    assert event_instant(epoch, "2026-03-10T10:30", POLICY) == _utc(9)
    assert event_instant(None, "2026-03-10T10:30", POLICY) == _utc(10, 30)
    assert event_instant(None, "  ", POLICY) is None


def test_has_check_out_ignores_blank_strings():
    assert not has_check_out(None)
    assert not has_check_out({"check_out_time": "   "})
    assert has_check_out({"check_out_time": "2026-03-10T10:30"})
    assert has_check_out({"check_out_epoch": 1773140000})


def test_compute_end_time():
    assert compute_end_time("09:00", 2) == "11:00"
    assert compute_end_time("09:30", 1.5) == "11:00"
    assert compute_end_time("09:00", 0) is None
    assert compute_end_time("bad", 2) is None


def test_format_local_iso_uses_policy_timezone():
    instant = _utc(9, 5) + timedelta(microseconds=5)
    assert format_local_iso(instant, POLICY) == "2026-03-10T09:05:00"
