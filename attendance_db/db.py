import hashlib
import hmac
import json
import secrets
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, TypedDict

from attendance_api.config import ADMIN_PASSWORD, ADMIN_USERNAME, DB_PATH


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
INITIAL_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_initial.sql"
EXAM_SETTINGS_KEY = "exam_policy"

NotificationState = Literal["NO_CHECKOUT", "CHECKOUT_PENDING_EMAIL", "EMAIL_SENT", "EMAIL_FAILED"]

ATTENDANCE_WRITABLE_FIELDS = (
    "student_id",
    "student_rfid",
    "rfid_tag",
    "check_in_time",
    "check_in_epoch",
    "check_out_time",
    "check_out_epoch",
    "status",
    "device_id",
    "device_name",
    "exam_room",
    "email_sent",
)

DEFAULT_EXAM_SETTINGS: dict[str, Any] = {
    "allow_late_entry": False,
    "late_entry_grace_period": 0,
    "enable_checkout_email": True,
}


class AttendanceChange(TypedDict):
    before: dict[str, Any] | None
    after: dict[str, Any]


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _rows_to_dicts(cur: sqlite3.Cursor, rows: list[tuple]) -> list[dict[str, Any]]:
    columns = [col[0] for col in cur.description]
    return [dict(zip(columns, row)) for row in rows]


def _fetch_one(cur: sqlite3.Cursor) -> dict[str, Any] | None:
    row = cur.fetchone()
    if not row:
        return None
    return _rows_to_dicts(cur, [row])[0]


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (username, password_hash, role)
        VALUES (?, ?, 'admin')
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    conn.executescript(INITIAL_MIGRATION_FILE.read_text(encoding="utf-8"))
    cursor = conn.cursor()
    _ensure_default_admin(cursor)
    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def create_user(username: str, password: str, role: str = "admin") -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO users (username, password_hash, role)
        VALUES (?, ?, ?)
        """,
        (username.strip(), _hash_password(password), role),
    )
    conn.commit()
    user_id = int(cur.lastrowid)
    conn.close()
    return user_id


def verify_user_credentials(username: str, password: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash, role
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username.strip(),),
    )
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    if not _verify_password(password, str(row[2])):
        return None
    return {"id": int(row[0]), "username": str(row[1]), "role": str(row[3])}


# -----------------------------
# Students
# -----------------------------
def add_student(name: str, email: str | None, rfid_tag: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO students (name, email, rfid_tag)
        VALUES (?, ?, ?)
        """,
        (name, email, rfid_tag),
    )
    conn.commit()
    student_id = int(cur.lastrowid)
    conn.close()
    return student_id


def get_all_students() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT
            s.id,
            s.name,
            s.email,
            s.rfid_tag,
            s.created_at,
            GROUP_CONCAT(cs.course_id) AS course_ids
        FROM students s
        LEFT JOIN course_students cs ON cs.student_id = s.id
        GROUP BY s.id
        ORDER BY s.name ASC
        """
    )
    rows = _rows_to_dicts(cur, cur.fetchall())
    conn.close()
    for row in rows:
        raw = row.pop("course_ids")
        row["course_ids"] = sorted(int(x) for x in str(raw).split(",")) if raw else []
    return rows


def get_student_by_id(student_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, email, rfid_tag
        FROM students
        WHERE id = ?
        """,
        (student_id,),
    )
    row = _fetch_one(cur)
    conn.close()
    return row


def get_student_by_rfid(rfid_tag: str) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, email, rfid_tag
        FROM students
        WHERE rfid_tag = ?
        """,
        (rfid_tag,),
    )
    row = _fetch_one(cur)
    conn.close()
    return row


# -----------------------------
# Courses
# -----------------------------
def add_course(course_code: str, course_name: str, lecturer: str | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO courses (course_code, course_name, lecturer)
        VALUES (?, ?, ?)
        """,
        (course_code, course_name, lecturer),
    )
    conn.commit()
    course_id = int(cur.lastrowid)
    conn.close()
    return course_id


def enroll_student(course_id: int, student_id: int) -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT OR IGNORE INTO course_students (course_id, student_id)
        VALUES (?, ?)
        """,
        (course_id, student_id),
    )
    conn.commit()
    conn.close()


def _course_student_ids(cur: sqlite3.Cursor, course_id: int) -> list[int]:
    cur.execute(
        """
        SELECT student_id
        FROM course_students
        WHERE course_id = ?
        ORDER BY student_id ASC
        """,
        (course_id,),
    )
    return [int(r[0]) for r in cur.fetchall()]


def get_all_courses() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, course_code, course_name, lecturer, created_at
        FROM courses
        ORDER BY course_code ASC
        """
    )
    rows = _rows_to_dicts(cur, cur.fetchall())
    for row in rows:
        row["student_ids"] = _course_student_ids(cur, int(row["id"]))
    conn.close()
    return rows


def get_course_by_id(course_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, course_code, course_name, lecturer
        FROM courses
        WHERE id = ?
        """,
        (course_id,),
    )
    row = _fetch_one(cur)
    if row:
        row["student_ids"] = _course_student_ids(cur, course_id)
    conn.close()
    return row


# -----------------------------
# Exams
# -----------------------------
def add_exam(
    *,
    course_id: int,
    exam_type: str,
    exam_date: str,
    start_time: str,
    duration: float,
    end_time: str | None,
    room: str | None = None,
    exam_name: str | None = None,
    status: str | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO exams (
            course_id,
            exam_name,
            exam_type,
            exam_date,
            start_time,
            duration,
            end_time,
            room,
            status
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (course_id, exam_name, exam_type, exam_date, start_time, duration, end_time, room, status),
    )
    conn.commit()
    exam_id = int(cur.lastrowid)
    conn.close()
    return exam_id


_EXAM_COLUMNS = """
    id,
    course_id,
    exam_name,
    exam_type,
    exam_date,
    start_time,
    duration,
    end_time,
    room,
    status
"""


def get_all_exams() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_EXAM_COLUMNS}
        FROM exams
        ORDER BY exam_date DESC, start_time ASC
        """
    )
    rows = _rows_to_dicts(cur, cur.fetchall())
    conn.close()
    return rows


def get_exam_by_id(exam_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_EXAM_COLUMNS}
        FROM exams
        WHERE id = ?
        """,
        (exam_id,),
    )
    row = _fetch_one(cur)
    conn.close()
    return row


def set_exam_status(exam_id: int, status: str | None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("UPDATE exams SET status = ? WHERE id = ?", (status, exam_id))
    conn.commit()
    updated = cur.rowcount > 0
    conn.close()
    return updated


# -----------------------------
# Devices
# -----------------------------
def add_device(device_name: str, room: str | None = None, status: str = "active") -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO devices (device_name, room, status)
        VALUES (?, ?, ?)
        """,
        (device_name, room, status),
    )
    conn.commit()
    device_id = int(cur.lastrowid)
    conn.close()
    return device_id


def get_all_devices() -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, device_name, room, status
        FROM devices
        ORDER BY device_name ASC
        """
    )
    rows = _rows_to_dicts(cur, cur.fetchall())
    conn.close()
    return rows


def get_device_by_id(device_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, device_name, room, status
        FROM devices
        WHERE id = ?
        """,
        (device_id,),
    )
    row = _fetch_one(cur)
    conn.close()
    return row


# -----------------------------
# Attendance
# -----------------------------
def _select_attendance(cur: sqlite3.Cursor, record_id: int) -> dict[str, Any] | None:
    cur.execute("SELECT * FROM attendance WHERE id = ?", (record_id,))
    row = _fetch_one(cur)
    if row:
        row["email_sent"] = bool(row["email_sent"])
    return row


def _writable(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - set(ATTENDANCE_WRITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unexpected attendance fields: {sorted(unknown)}")
    out = dict(fields)
    if "email_sent" in out:
        out["email_sent"] = 1 if out["email_sent"] else 0
    return out


def insert_attendance(exam_id: int, **fields: Any) -> AttendanceChange:
    values = _writable(fields)
    columns = ["exam_id", *values.keys()]
    placeholders = ", ".join("?" for _ in columns)

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            f"INSERT INTO attendance ({', '.join(columns)}) VALUES ({placeholders})",
            (exam_id, *values.values()),
        )
        after = _select_attendance(cur, int(cur.lastrowid))
        conn.commit()
    finally:
        conn.close()
    return {"before": None, "after": after}


def update_attendance(record_id: int, fields: dict[str, Any]) -> AttendanceChange | None:
    """
    Apply a business-field update and return the observed before/after pair.

    This pair is the change feed the checkout workflow consumes. A write that
    leaves the row without any checkout re-arms ``notification_state``.
    """
    values = _writable(fields)

    conn = connect_db()
    cur = conn.cursor()
    try:
        before = _select_attendance(cur, record_id)
        if before is None:
            return None
        if values:
            assignments = ", ".join(f"{col} = ?" for col in values)
            cur.execute(
                f"""
                UPDATE attendance
                SET {assignments},
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (*values.values(), record_id),
            )
        cur.execute(
            """
            UPDATE attendance
            SET notification_state = 'NO_CHECKOUT'
            WHERE id = ?
              AND COALESCE(TRIM(check_out_time), '') = ''
              AND check_out_epoch IS NULL
            """,
            (record_id,),
        )
        after = _select_attendance(cur, record_id)
        conn.commit()
    finally:
        conn.close()
    return {"before": before, "after": after}


def get_attendance_by_id(record_id: int) -> dict[str, Any] | None:
    conn = connect_db()
    cur = conn.cursor()
    row = _select_attendance(cur, record_id)
    conn.close()
    return row


def get_attendance_for_exam(exam_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT *
        FROM attendance
        WHERE exam_id = ?
        ORDER BY COALESCE(check_in_epoch, 0) ASC, check_in_time ASC, id ASC
        """,
        (exam_id,),
    )
    rows = _rows_to_dicts(cur, cur.fetchall())
    conn.close()
    for row in rows:
        row["email_sent"] = bool(row["email_sent"])
    return rows


def find_attendance(
    exam_id: int,
    *,
    student_id: int | None = None,
    student_rfid: str | None = None,
) -> dict[str, Any] | None:
    if student_id is None and student_rfid is None:
        raise ValueError("student_id or student_rfid is required")

    # A student may have rows keyed by id (scanner, manual) or by tag (device).
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id
        FROM attendance
        WHERE exam_id = ?
          AND (student_id = ? OR student_rfid = ? OR rfid_tag = ?)
        ORDER BY id ASC
        LIMIT 1
        """,
        (exam_id, student_id, student_rfid, student_rfid),
    )
    row = cur.fetchone()
    record = _select_attendance(cur, int(row[0])) if row else None
    conn.close()
    return record


def delete_attendance(record_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance WHERE id = ?", (record_id,))
    conn.commit()
    deleted = cur.rowcount > 0
    conn.close()
    return deleted


# -----------------------------
# Checkout notification bookkeeping
# -----------------------------
def claim_checkout_notification(record_id: int) -> bool:
    """Move NO_CHECKOUT -> CHECKOUT_PENDING_EMAIL; False when someone already did."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE attendance
        SET notification_state = 'CHECKOUT_PENDING_EMAIL'
        WHERE id = ?
          AND notification_state = 'NO_CHECKOUT'
        """,
        (record_id,),
    )
    conn.commit()
    claimed = cur.rowcount == 1
    conn.close()
    return claimed


def mark_email_sent(record_id: int, sent_at: str | None = None) -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE attendance
        SET email_sent = 1,
            email_sent_at = ?,
            email_error = NULL,
            email_error_at = NULL,
            notification_state = 'EMAIL_SENT'
        WHERE id = ?
        """,
        (sent_at or _utc_stamp(), record_id),
    )
    conn.commit()
    conn.close()


def mark_email_failed(record_id: int, error: str, failed_at: str | None = None) -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE attendance
        SET email_sent = 0,
            email_error = ?,
            email_error_at = ?,
            notification_state = 'EMAIL_FAILED'
        WHERE id = ?
        """,
        (error, failed_at or _utc_stamp(), record_id),
    )
    conn.commit()
    conn.close()


def get_notification_log(
    *,
    state: NotificationState | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    where = ["(a.check_out_time IS NOT NULL OR a.check_out_epoch IS NOT NULL)"]
    params: list[Any] = []
    if state is not None:
        where.append("a.notification_state = ?")
        params.append(state)

    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))
    params.extend([safe_limit, safe_offset])

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT
            a.id,
            a.exam_id,
            a.student_id,
            a.student_rfid,
            s.name AS student_name,
            a.notification_state,
            a.email_sent,
            a.email_sent_at,
            a.email_error,
            a.email_error_at
        FROM attendance a
        LEFT JOIN students s ON s.id = a.student_id
        WHERE {" AND ".join(where)}
        ORDER BY a.updated_at DESC, a.id DESC
        LIMIT ?
        OFFSET ?
        """,
        params,
    )
    rows = _rows_to_dicts(cur, cur.fetchall())
    conn.close()
    for row in rows:
        row["email_sent"] = bool(row["email_sent"])
    return rows


# -----------------------------
# Settings
# -----------------------------
def get_exam_settings() -> dict[str, Any]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT value_json FROM settings WHERE key = ?", (EXAM_SETTINGS_KEY,))
    row = cur.fetchone()
    conn.close()

    settings = dict(DEFAULT_EXAM_SETTINGS)
    if row:
        try:
            stored = json.loads(row[0])
        except (TypeError, ValueError):
            stored = {}
        if isinstance(stored, dict):
            settings.update({k: v for k, v in stored.items() if k in DEFAULT_EXAM_SETTINGS})
    return settings


def save_exam_settings(values: dict[str, Any]) -> dict[str, Any]:
    settings = get_exam_settings()
    settings.update({k: v for k, v in values.items() if k in DEFAULT_EXAM_SETTINGS})

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO settings (key, value_json, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(key) DO UPDATE SET
            value_json = excluded.value_json,
            updated_at = CURRENT_TIMESTAMP
        """,
        (EXAM_SETTINGS_KEY, json.dumps(settings, sort_keys=True)),
    )
    conn.commit()
    conn.close()
    return settings
