import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from attendance_api.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from attendance_api.routers import admin, attendance, auth, core, devices, exams, roster
from attendance_db.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s:%(lineno)d] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Exam Attendance API")


# -----------------------------
# CORS (admin dashboard)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Startup
# -----------------------------
@app.on_event("startup")
def _startup():
    create_tables()
    logger.info("Attendance database ready")


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(roster.router)
app.include_router(exams.router)
app.include_router(attendance.router)
app.include_router(devices.router)
app.include_router(admin.router)
