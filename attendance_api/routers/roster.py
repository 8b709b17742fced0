import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from attendance_api.security import require_admin, require_session
from attendance_db.db import (
    add_course,
    add_device,
    add_student,
    enroll_student,
    get_all_courses,
    get_all_devices,
    get_all_students,
    get_course_by_id,
    get_device_by_id,
    get_student_by_id,
)

router = APIRouter(dependencies=[Depends(require_session)])


class StudentCreate(BaseModel):
    name: str
    email: str | None = None
    rfid_tag: str
    course_ids: list[int] = []


class CourseCreate(BaseModel):
    course_code: str
    course_name: str
    lecturer: str | None = None


class DeviceCreate(BaseModel):
    device_name: str
    room: str | None = None
    status: str = "active"


# -----------------------------
# Students
# -----------------------------
@router.get("/students")
def students():
    return get_all_students()


@router.get("/students/{student_id}")
def student_detail(student_id: int):
    row = get_student_by_id(student_id)
    if not row:
        raise HTTPException(status_code=404, detail="Student not found.")
    return row


@router.post("/students")
def create_student(payload: StudentCreate, _admin: dict = Depends(require_admin)):
    name = payload.name.strip()
    rfid_tag = payload.rfid_tag.strip()
    email = (payload.email or "").strip() or None

    if not name or not rfid_tag:
        raise HTTPException(status_code=400, detail="Name and RFID tag are required.")

    for course_id in payload.course_ids:
        if not get_course_by_id(course_id):
            raise HTTPException(status_code=404, detail=f"Course {course_id} not found.")

    try:
        new_id = add_student(name, email, rfid_tag)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="RFID tag already assigned to another student.")

    for course_id in payload.course_ids:
        enroll_student(course_id, new_id)

    return {
        "id": new_id,
        "name": name,
        "email": email,
        "rfid_tag": rfid_tag,
        "course_ids": sorted(set(payload.course_ids)),
    }


# -----------------------------
# Courses
# -----------------------------
@router.get("/courses")
def courses():
    return get_all_courses()


@router.get("/courses/{course_id}")
def course_detail(course_id: int):
    row = get_course_by_id(course_id)
    if not row:
        raise HTTPException(status_code=404, detail="Course not found.")
    return row


@router.post("/courses")
def create_course(payload: CourseCreate, _admin: dict = Depends(require_admin)):
    course_code = payload.course_code.strip()
    course_name = payload.course_name.strip()
    if not course_code or not course_name:
        raise HTTPException(status_code=400, detail="Course code and name are required.")

    try:
        new_id = add_course(course_code, course_name, (payload.lecturer or "").strip() or None)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Course code already exists.")
    return {"id": new_id, "course_code": course_code, "course_name": course_name}


@router.post("/courses/{course_id}/students/{student_id}")
def enroll(course_id: int, student_id: int, _admin: dict = Depends(require_admin)):
    if not get_course_by_id(course_id):
        raise HTTPException(status_code=404, detail="Course not found.")
    if not get_student_by_id(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    enroll_student(course_id, student_id)
    return {"ok": True, "course_id": course_id, "student_id": student_id}


# -----------------------------
# Devices
# -----------------------------
@router.get("/devices")
def devices():
    return get_all_devices()


@router.get("/devices/{device_id}")
def device_detail(device_id: int):
    row = get_device_by_id(device_id)
    if not row:
        raise HTTPException(status_code=404, detail="Device not found.")
    return row


@router.post("/devices")
def create_device(payload: DeviceCreate, _admin: dict = Depends(require_admin)):
    device_name = payload.device_name.strip()
    if not device_name:
        raise HTTPException(status_code=400, detail="Device name is required.")
    new_id = add_device(device_name, (payload.room or "").strip() or None, payload.status)
    return {"id": new_id, "device_name": device_name, "room": payload.room, "status": payload.status}
