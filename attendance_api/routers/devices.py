from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from attendance_api.security import require_device
from attendance_api.services.notifications import handle_attendance_change
from attendance_api.services.scanning import ScanRejected, record_device_event

router = APIRouter()


class DeviceEvent(BaseModel):
    """Payload posted by RFID readers; field names follow the firmware."""

    model_config = ConfigDict(populate_by_name=True)

    exam_id: int | None = Field(default=None, alias="examId")
    current_exam: int | None = Field(default=None, alias="currentExam")
    student_id: str = Field(default="", alias="studentId")
    check_in_epoch: float | None = Field(default=None, alias="checkInEpochTime")
    check_out_epoch: float | None = Field(default=None, alias="checkOutEpochTime")
    device_id: str = Field(default="", alias="deviceId")
    device_name: str | None = Field(default=None, alias="deviceName")
    exam_room: str | None = Field(default=None, alias="examRoom")


@router.post("/devices/events")
def device_event(
    payload: DeviceEvent,
    background_tasks: BackgroundTasks,
    _device: str = Depends(require_device),
):
    exam_id = payload.exam_id if payload.exam_id is not None else payload.current_exam
    if exam_id is None:
        raise HTTPException(status_code=400, detail="examId or currentExam is required")

    try:
        result = record_device_event(
            exam_id=exam_id,
            student_tag=payload.student_id,
            device_id=payload.device_id,
            device_name=payload.device_name,
            exam_room=payload.exam_room,
            check_in_epoch=payload.check_in_epoch,
            check_out_epoch=payload.check_out_epoch,
        )
    except ScanRejected as exc:
        raise HTTPException(status_code=400, detail=exc.reason)

    background_tasks.add_task(handle_attendance_change, result["change"])
    return {"action": result["action"], "id": result["record"]["id"]}
