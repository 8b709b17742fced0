import logging
import sqlite3
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from attendance_api.attendance_rules import (
    derive_exam_status,
    is_exam_ongoing,
    summarize_attendance,
)
from attendance_api.config import EXAM_MAX_DURATION_HOURS, EXAM_MIN_DURATION_HOURS
from attendance_api.security import require_admin, require_session
from attendance_api.timekeeping import (
    compute_end_time,
    default_policy,
    exam_window,
    local_now,
    parse_clock_time,
    parse_exam_date,
)
from attendance_db.db import (
    add_exam,
    get_all_exams,
    get_attendance_for_exam,
    get_course_by_id,
    get_exam_by_id,
    set_exam_status,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])

ExplicitExamStatus = Literal["active", "completed", "cancelled", "postponed"]


class ExamCreate(BaseModel):
    course_id: int
    exam_type: str
    exam_date: str
    start_time: str
    duration: float = Field(..., description="Exam length in hours.")
    end_time: str | None = None
    room: str | None = None
    exam_name: str | None = None
    status: ExplicitExamStatus | None = None


class ExamStatusUpdate(BaseModel):
    status: ExplicitExamStatus | None = None


def _exam_view(exam: dict, policy) -> dict:
    now = local_now(policy)
    window = exam_window(exam, policy)
    return {
        **exam,
        "derived_status": derive_exam_status(exam, now, policy),
        "start": window.start.isoformat() if window else None,
        "end": window.end.isoformat() if window else None,
    }


def _normalize_clock(value: str) -> str:
    parsed = parse_clock_time(value)
    return parsed.strftime("%H:%M") if parsed else ""


@router.get("/exams")
def exams():
    policy = default_policy()
    return [_exam_view(exam, policy) for exam in get_all_exams()]


@router.post("/exams")
def create_exam(payload: ExamCreate, _admin: dict = Depends(require_admin)):
    policy = default_policy()
    exam_type = payload.exam_type.strip()
    if not exam_type:
        raise HTTPException(status_code=400, detail="Exam type is required.")

    exam_date = parse_exam_date(payload.exam_date)
    if exam_date is None:
        raise HTTPException(status_code=400, detail="Exam date must be YYYY-MM-DD.")
    if exam_date < local_now(policy).date():
        raise HTTPException(status_code=400, detail="Exam date cannot be in the past.")

    start_time = _normalize_clock(payload.start_time)
    if not start_time:
        raise HTTPException(status_code=400, detail="Start time must be HH:MM.")

    if not EXAM_MIN_DURATION_HOURS <= payload.duration <= EXAM_MAX_DURATION_HOURS:
        raise HTTPException(
            status_code=400,
            detail=f"Duration must be between {EXAM_MIN_DURATION_HOURS:g} and {EXAM_MAX_DURATION_HOURS:g} hours.",
        )

    end_time = compute_end_time(start_time, payload.duration)
    if end_time is None:
        raise HTTPException(status_code=400, detail="Start time and duration do not form a valid schedule.")
    if payload.end_time and _normalize_clock(payload.end_time) != end_time:
        raise HTTPException(
            status_code=400,
            detail=f"End time must equal start time plus duration ({end_time}).",
        )

    if not get_course_by_id(payload.course_id):
        raise HTTPException(status_code=404, detail="Course not found.")

    try:
        new_id = add_exam(
            course_id=payload.course_id,
            exam_type=exam_type,
            exam_date=exam_date.isoformat(),
            start_time=start_time,
            duration=payload.duration,
            end_time=end_time,
            room=(payload.room or "").strip() or None,
            exam_name=(payload.exam_name or "").strip() or None,
            status=payload.status,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Exam could not be created.")

    logger.info("Exam %s created for course %s on %s", new_id, payload.course_id, exam_date)
    return _exam_view(get_exam_by_id(new_id), policy)


# Declared before /exams/{exam_id} so "ongoing" is not read as an id.
@router.get("/exams/ongoing")
def ongoing_exams():
    policy = default_policy()
    now = local_now(policy)
    rows = []
    for exam in get_all_exams():
        if not is_exam_ongoing(exam, now, policy):
            continue
        summary = summarize_attendance(exam, get_attendance_for_exam(int(exam["id"])), policy)
        course = get_course_by_id(int(exam["course_id"]))
        rows.append(
            {
                **_exam_view(exam, policy),
                "course_name": course["course_name"] if course else None,
                "checked_in": summary["present"] + summary["late"],
                "summary": summary,
            }
        )
    return rows


@router.get("/exams/{exam_id}")
def exam_detail(exam_id: int):
    exam = get_exam_by_id(exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found.")
    return _exam_view(exam, default_policy())


@router.get("/exams/{exam_id}/status")
def exam_status(exam_id: int):
    exam = get_exam_by_id(exam_id)
    if not exam:
        raise HTTPException(status_code=404, detail="Exam not found.")
    policy = default_policy()
    return {"exam_id": exam_id, "status": derive_exam_status(exam, local_now(policy), policy)}


@router.put("/exams/{exam_id}/status")
def update_exam_status(
    exam_id: int,
    payload: ExamStatusUpdate,
    _admin: dict = Depends(require_admin),
):
    if not set_exam_status(exam_id, payload.status):
        raise HTTPException(status_code=404, detail="Exam not found.")
    logger.info("Exam %s status set to %s", exam_id, payload.status)
    return exam_status(exam_id)
