import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from attendance_api.security import require_admin
from attendance_db.db import get_exam_settings, get_notification_log, save_exam_settings

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])
ALLOWED_NOTIFICATION_STATES: set[str] = {
    "NO_CHECKOUT",
    "CHECKOUT_PENDING_EMAIL",
    "EMAIL_SENT",
    "EMAIL_FAILED",
}


class ExamSettingsUpdate(BaseModel):
    allow_late_entry: bool | None = None
    late_entry_grace_period: int | None = Field(default=None, ge=0, le=240)
    enable_checkout_email: bool | None = None


@router.get("/admin/settings")
def read_settings():
    return get_exam_settings()


@router.put("/admin/settings")
def update_settings(payload: ExamSettingsUpdate):
    values = payload.model_dump(exclude_none=True)
    settings = save_exam_settings(values)
    logger.info("Exam settings updated: %s", sorted(values))
    return settings


@router.get("/admin/notifications")
def list_notifications(
    state: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_state = state.strip().upper() if state else None
    if clean_state and clean_state not in ALLOWED_NOTIFICATION_STATES:
        raise HTTPException(status_code=400, detail="Invalid state filter.")
    return {
        "items": get_notification_log(state=clean_state, limit=limit, offset=offset),
        "limit": limit,
        "offset": offset,
    }
