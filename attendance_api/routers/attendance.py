import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from attendance_api.attendance_rules import (
    classify_attendance,
    resolve_student,
    summarize_attendance,
)
from attendance_api.manual_entry import (
    AttendanceValidationError,
    check_manual_delete,
    validate_manual_attendance,
)
from attendance_api.security import require_admin, require_session
from attendance_api.services.notifications import handle_attendance_change
from attendance_api.services.scanning import ScanRejected, record_scan
from attendance_api.timekeeping import (
    default_policy,
    normalize_check_in,
    normalize_check_out,
    parse_exam_date,
)
from attendance_db.db import (
    delete_attendance,
    find_attendance,
    get_all_devices,
    get_all_students,
    get_attendance_by_id,
    get_attendance_for_exam,
    get_exam_by_id,
    get_exam_settings,
    get_student_by_id,
    insert_attendance,
    update_attendance,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])

# Columns a manual write may clear by sending an empty value. A blank
# check-in leaves the stored one in place.
_CLEARABLE_FIELDS = ("check_out_time", "status")


class ManualAttendanceCreate(BaseModel):
    exam_id: int
    student_id: int
    rfid_tag: str | None = None
    check_in_time: str | None = None
    check_out_time: str | None = None
    status: str | None = None


class ManualAttendanceUpdate(BaseModel):
    student_id: int | None = None
    rfid_tag: str | None = None
    check_in_time: str | None = None
    check_out_time: str | None = None
    status: str | None = None


class ScanRequest(BaseModel):
    exam_id: int
    device_id: str
    rfid_tag: str
    is_checkout: bool = False


def _storable(validated: dict) -> dict:
    fields = {k: v for k, v in validated.items() if k != "exam_id"}
    if not (fields.get("check_in_time") or "").strip():
        fields.pop("check_in_time", None)
    for key in _CLEARABLE_FIELDS:
        if key in fields and isinstance(fields[key], str):
            fields[key] = fields[key].strip() or None
    return fields


def _iso(value) -> str | None:
    return value.isoformat() if value else None


# -----------------------------
# Exam attendance views
# -----------------------------
@router.get("/exams/{exam_id}/attendance")
def exam_attendance(exam_id: int):
    exam = get_exam_by_id(exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found.")

    policy = default_policy()
    exam_date = parse_exam_date(exam.get("exam_date"))
    students = get_all_students()
    device_names = {str(d["id"]): d["device_name"] for d in get_all_devices()}

    rows = []
    for record in get_attendance_for_exam(exam_id):
        student = resolve_student(record, students)
        rows.append(
            {
                **record,
                "student_name": student["name"] if student else "N/A",
                "student_email": student["email"] if student else None,
                "device_name": record.get("device_name")
                or device_names.get(str(record.get("device_id")))
                or "N/A",
                "check_in": _iso(normalize_check_in(record, policy, exam_date=exam_date)),
                "check_out": _iso(normalize_check_out(record, policy, exam_date=exam_date)),
                "attendance_status": classify_attendance(exam, record, policy),
            }
        )
    return rows


@router.get("/exams/{exam_id}/attendance/summary")
def exam_attendance_summary(exam_id: int):
    exam = get_exam_by_id(exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found.")
    summary = summarize_attendance(exam, get_attendance_for_exam(exam_id), default_policy())
    return {"exam_id": exam_id, **summary}


# -----------------------------
# Manual entry
# -----------------------------
@router.post("/attendance/manual")
def create_manual_attendance(
    payload: ManualAttendanceCreate,
    background_tasks: BackgroundTasks,
    _admin: dict = Depends(require_admin),
):
    student = get_student_by_id(payload.student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")

    values = payload.model_dump(exclude_unset=True, exclude={"exam_id", "student_id"})
    values.setdefault("rfid_tag", student["rfid_tag"])
    exam = get_exam_by_id(payload.exam_id)

    try:
        validated = validate_manual_attendance(
            values,
            exam,
            student,
            policy=default_policy(),
            settings=get_exam_settings(),
        )
    except AttendanceValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.reason)

    if find_attendance(payload.exam_id, student_id=payload.student_id, student_rfid=student["rfid_tag"]):
        raise HTTPException(status_code=409, detail="Attendance already recorded for this student.")

    change = insert_attendance(payload.exam_id, student_id=payload.student_id, **_storable(validated))
    background_tasks.add_task(handle_attendance_change, change)
    logger.info("Manual attendance %s created for exam %s", change["after"]["id"], payload.exam_id)
    return change["after"]


@router.put("/attendance/{record_id}")
def update_manual_attendance(
    record_id: int,
    payload: ManualAttendanceUpdate,
    background_tasks: BackgroundTasks,
    _admin: dict = Depends(require_admin),
):
    existing = get_attendance_by_id(record_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Attendance record not found.")

    values = payload.model_dump(exclude_unset=True)
    student_id = values.pop("student_id", None) or existing.get("student_id")
    student = get_student_by_id(int(student_id)) if student_id is not None else None
    if student_id is not None and student is None:
        raise HTTPException(status_code=404, detail="Student not found.")
    exam = get_exam_by_id(int(existing["exam_id"]))

    try:
        validated = validate_manual_attendance(
            values,
            exam,
            student,
            policy=default_policy(),
            existing=existing,
            settings=get_exam_settings(),
        )
    except AttendanceValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.reason)

    fields = _storable(validated)
    if student is not None:
        fields["student_id"] = int(student["id"])

    change = update_attendance(record_id, fields)
    if change is None:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    background_tasks.add_task(handle_attendance_change, change)
    logger.info("Manual attendance %s updated", record_id)
    return change["after"]


@router.delete("/attendance/{record_id}")
def delete_manual_attendance(record_id: int, _admin: dict = Depends(require_admin)):
    existing = get_attendance_by_id(record_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Attendance record not found.")

    try:
        check_manual_delete(existing)
    except AttendanceValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.reason)

    delete_attendance(record_id)
    logger.info("Manual attendance %s deleted", record_id)
    return {"ok": True, "id": record_id}


# -----------------------------
# Scanner ingestion
# -----------------------------
@router.post("/attendance/scan")
def scan(payload: ScanRequest, background_tasks: BackgroundTasks):
    try:
        result = record_scan(
            exam_id=payload.exam_id,
            device_id=payload.device_id,
            rfid_tag=payload.rfid_tag,
            is_checkout=payload.is_checkout,
        )
    except ScanRejected as exc:
        raise HTTPException(status_code=400, detail=exc.reason)

    background_tasks.add_task(handle_attendance_change, result["change"])
    return {"action": result["action"], "record": result["record"]}
