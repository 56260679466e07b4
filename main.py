import logging
import math
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import cv2
import numpy as np
from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, confloat

from faceattend.attendance import AttendanceReconciler, InvalidArgument, ReportWindow
from faceattend.camera import CameraManager
from faceattend.config import ATTENDANCE_LOG_LIMIT, CORS_ORIGINS, HOST, PORT
from faceattend.database import (
    add_attendance_record,
    delete_registered_face,
    get_attendance_log,
    get_attendance_records_between,
    get_registered_faces,
    get_registered_names,
    register_face,
    save_record,
    setup_database,
)
from faceattend.face_recognition import RosterMatcher, extract_descriptor, process_frame, recognize_descriptor
from faceattend.logging_config import configure_logging

logger = logging.getLogger("faceattend.api")


FiniteFloat = confloat(allow_inf_nan=False)


class RegisterFaceRequest(BaseModel):
    name: Optional[str] = None
    descriptor: Optional[List[FiniteFloat]] = None


class MarkAttendanceRequest(BaseModel):
    name: Optional[str] = None
    distance: Optional[FiniteFloat] = None


class RecognizeRequest(BaseModel):
    descriptor: Optional[List[FiniteFloat]] = None


class CooldownRequest(BaseModel):
    seconds: Optional[int] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the tables and the attendance state on startup, release the camera on shutdown"""
    configure_logging()
    setup_database()
    app.state.reconciler = AttendanceReconciler()
    app.state.roster = RosterMatcher(get_registered_faces)
    logger.info("Loaded %d registered faces", len(app.state.roster.get()))

    yield

    CameraManager.get_instance().release_camera()
    logger.info("Shutting down: camera released")


app = FastAPI(
    title="Face Recognition Attendance System",
    lifespan=lifespan,
    description="Stores registered face descriptors, gates recognitions by a per-person cooldown "
                "and reports attendance percentages over a class period.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code, message):
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("Invalid request to %s: %s", request.url.path, exc.errors())
    return error_response(400, "Invalid request body or parameters.")


@app.exception_handler(InvalidArgument)
async def invalid_argument_handler(request: Request, exc: InvalidArgument):
    return error_response(400, str(exc))


@app.exception_handler(sqlite3.Error)
async def database_error_handler(request: Request, exc: sqlite3.Error):
    logger.error("Database operation failed on %s", request.url.path, exc_info=exc)
    return error_response(500, "Database operation failed")


def _finite(value):
    return value if value is not None and math.isfinite(value) else None


@app.post("/api/register-face", status_code=201,
    summary="Register or replace a face descriptor",
    description="Stores the descriptor under the given name. Registering an existing name overwrites its descriptor.",
)
async def register_face_endpoint(body: RegisterFaceRequest):
    if not body.name or not body.descriptor:
        logger.warning("Register face: missing name or descriptor")
        return error_response(400, "Name and valid descriptor (array) are required.")

    register_face(body.name, body.descriptor)
    app.state.roster.invalidate()
    return JSONResponse(status_code=201, content={"message": "Face registered successfully!", "name": body.name})


@app.post("/api/register-face-image", status_code=201,
    summary="Register a face from an uploaded photo",
    description="Extracts the embedding of the single face in the photo with the server-side model and registers it.",
)
async def register_face_image(
    name: str = Form(..., description="Name of the person"),
    image: UploadFile = File(..., description="Photo containing exactly one face"),
):
    contents = await image.read()
    img = cv2.imdecode(np.frombuffer(contents, np.uint8), cv2.IMREAD_COLOR)
    if img is None:
        return error_response(400, "The uploaded file is not an image.")

    descriptor = extract_descriptor(img)
    if descriptor is None:
        return error_response(400, "The photo must contain exactly one face.")

    register_face(name, descriptor)
    app.state.roster.invalidate()
    return JSONResponse(status_code=201, content={"message": "Face registered successfully!", "name": name})


@app.get("/api/registered-faces", summary="List registered faces")
async def registered_faces():
    return get_registered_faces()


@app.delete("/api/registered-faces/{name}", summary="Delete a registered face")
async def delete_face(name: str):
    if not delete_registered_face(name):
        logger.warning("Delete face: %r not found", name)
        return error_response(404, "Face not found.")
    app.state.roster.invalidate()
    return {"message": f"Face for {name} deleted successfully."}


@app.post("/api/mark-attendance", status_code=201,
    summary="Record attendance directly",
    description="Appends an attendance record without cooldown gating.",
)
async def mark_attendance(body: MarkAttendanceRequest):
    if not body.name or body.distance is None:
        logger.warning("Mark attendance: missing name or distance")
        return error_response(400, "Name and distance are required.")

    record = add_attendance_record(body.name, body.distance)
    logger.info("Attendance marked for %r with distance %s", body.name, body.distance)
    return JSONResponse(status_code=201, content={"message": "Attendance marked successfully!", **record})


@app.get("/api/attendance-log", summary="Most recent attendance records, newest first")
async def attendance_log(limit: int = Query(ATTENDANCE_LOG_LIMIT, ge=1, le=ATTENDANCE_LOG_LIMIT)):
    return get_attendance_log(limit)


@app.post("/api/recognize",
    summary="Match a descriptor and mark attendance if the person is off cooldown",
)
async def recognize(body: RecognizeRequest):
    if not body.descriptor:
        return error_response(400, "A valid descriptor (array) is required.")

    event, decision, saved = recognize_descriptor(
        body.descriptor, app.state.roster, app.state.reconciler, save_record
    )
    return {
        "name": event.subject,
        "distance": _finite(event.confidence),
        "outcome": decision.outcome.value,
        "reason": decision.reason.value if decision.reason else None,
        "remaining_ms": decision.remaining_ms,
        "record_id": saved["id"] if saved else None,
    }


@app.get("/api/cooldown", summary="Current automatic marking cooldown")
async def get_cooldown():
    return {"seconds": app.state.reconciler.cooldown_seconds}


@app.put("/api/cooldown", summary="Change the automatic marking cooldown")
async def set_cooldown(body: CooldownRequest):
    if body.seconds is None:
        return error_response(400, "seconds is required.")
    app.state.reconciler.set_cooldown(body.seconds)
    return {"seconds": app.state.reconciler.cooldown_seconds}


@app.get("/api/attendance-report",
    summary="Attendance percentage per registered person for a class period",
    description="The period is split into slots of interval_minutes; a person's percentage is the share "
                "of slots in which they were marked at least once.",
)
async def attendance_report(
    date: str = Query(..., description="Class date, YYYY-MM-DD"),
    start: str = Query(..., description="Start time, HH:MM"),
    end: str = Query(..., description="End time, HH:MM (exclusive)"),
    interval_minutes: int = Query(..., description="Check interval in minutes"),
):
    try:
        start_at = datetime.strptime(f"{date} {start}", "%Y-%m-%d %H:%M")
        end_at = datetime.strptime(f"{date} {end}", "%Y-%m-%d %H:%M")
    except ValueError:
        return error_response(400, "Invalid class date/time. Use YYYY-MM-DD and HH:MM.")
    if start_at >= end_at:
        return error_response(400, "Invalid class date/time range. Start time must be before end time.")
    if interval_minutes <= 0:
        return error_response(400, "Check interval must be a positive number of minutes.")

    window = ReportWindow(start_at, end_at, interval_minutes * 60)
    records = get_attendance_records_between(start_at, end_at)
    rows = app.state.reconciler.report(window, records, get_registered_names())
    return {
        "date": date,
        "start": start,
        "end": end,
        "interval_minutes": interval_minutes,
        "total_slots": window.total_slots,
        "rows": [row.to_dict() for row in rows],
    }


def generate_frames():
    """MJPEG frames from the server camera with recognition boxes drawn on them"""
    camera_manager = CameraManager.get_instance()
    reconciler = app.state.reconciler
    roster = app.state.roster

    while True:
        frame = camera_manager.read_frame()
        if frame is None:
            logger.warning("Camera returned no frame, stopping stream")
            break

        processed_frame, _ = process_frame(frame, roster, reconciler, save_record)

        _, buffer = cv2.imencode('.jpg', processed_frame)
        yield (b'--frame\r\n'
               b'Content-Type: image/jpeg\r\n\r\n' + buffer.tobytes() + b'\r\n')


@app.get("/api/video_feed",
    summary="Camera stream with automatic attendance marking",
    responses={200: {"content": {"multipart/x-mixed-replace": {}}, "description": "MJPEG stream"}},
)
async def video_feed():
    return StreamingResponse(generate_frames(), media_type="multipart/x-mixed-replace; boundary=frame")


@app.get("/", summary="Health check")
async def root():
    return {
        "message": "Face Recognition Attendance System",
        "threshold": app.state.reconciler.threshold,
        "cooldown_seconds": app.state.reconciler.cooldown_seconds,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT)
