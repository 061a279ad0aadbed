"""FastAPI application for the room inspection pipeline."""
import asyncio
import logging
import threading
from datetime import date, time
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from room_inspection.config.settings import PipelineSettings
from room_inspection.extractors.image_extractor import is_readable_image
from room_inspection.orchestration.runner import InspectionPipeline, build_pipeline
from room_inspection.types import (
    AdmissionWindowConfig,
    AttendanceEntryNotFoundError,
    AttendanceStatus,
    GateResult,
    LedgerExistsError,
    LedgerNotFoundError,
    PersistenceError,
    RejectionCode,
    RosterMember,
    SubmissionCancelledError,
    SubmissionNotFoundError,
    VerdictStatus,
    format_weekdays,
    normalize_room_type,
    parse_weekdays,
)
from room_inspection.validators.admission_gate import describe_next_window

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Room Inspection API",
    description="Dormitory room inspection submissions with photo forensics and AI scoring",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure as needed for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_UPLOAD_BYTES = 15 * 1024 * 1024

# Seconds before the first client-disconnect poll during a submission
DISCONNECT_POLL_SECONDS = 0.5

REJECTION_STATUS_CODES = {
    RejectionCode.DUPLICATE: 409,
    RejectionCode.ADMISSION: 403,
    RejectionCode.CONTENT: 422,
}

EXPORT_MEDIA_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

# Lazily built singletons
_settings: Optional[PipelineSettings] = None
_pipeline: Optional[InspectionPipeline] = None
_pipeline_lock = threading.Lock()


def get_settings() -> PipelineSettings:
    """Get or create settings from the environment."""
    global _settings
    if _settings is None:
        _settings = PipelineSettings.from_env()
    return _settings


def get_pipeline() -> InspectionPipeline:
    """Get or create the inspection pipeline."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = build_pipeline(get_settings())
        return _pipeline


@app.on_event("startup")
async def startup_event():
    logger.info("Application startup: initializing pipeline...")
    pipeline = get_pipeline()
    logger.info(f"Database: {pipeline.store.db_path.absolute()}")
    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Application shutdown: stopping scoring workers...")
    if _pipeline is not None:
        _pipeline.scoring_client.close()
    logger.info("Application shutdown complete")


class AdmissionConfigIn(BaseModel):
    name: str
    start_time: str = Field(..., description="HH:MM")
    end_time: str = Field(..., description="HH:MM")
    id: Optional[int] = None
    specific_date: Optional[date] = None
    recurring_weekdays: str = "ALL"
    enabled: bool = True
    is_default: bool = False
    forensics_enabled: bool = True
    time_tolerance_minutes: int = Field(10, ge=0)
    geofence_enabled: bool = False
    reference_latitude: Optional[float] = Field(None, ge=-90, le=90)
    reference_longitude: Optional[float] = Field(None, ge=-180, le=180)
    geofence_radius_meters: int = Field(100, ge=1)
    photo_content_check_enabled: bool = True


class RosterMemberIn(BaseModel):
    occupant_id: str
    room_identifier: str
    occupant_name: Optional[str] = None


class CommentIn(BaseModel):
    comment: str = Field(..., min_length=1)


class OverrideIn(BaseModel):
    numeric_score: Optional[int] = Field(None, ge=0, le=10)
    status: Optional[VerdictStatus] = None
    admin_comment: Optional[str] = None


class RejectIn(BaseModel):
    reason: str = Field(..., min_length=1)


class EntryUpdateIn(BaseModel):
    is_submitted: Optional[bool] = None
    score: Optional[int] = Field(None, ge=0, le=10)
    status: Optional[AttendanceStatus] = None
    notes: Optional[str] = None


def _parse_clock_time(value: str) -> time:
    return time.fromisoformat(value.strip())


def require_occupant(x_occupant_id: Optional[str]) -> str:
    if not x_occupant_id or not x_occupant_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Occupant-Id header")
    return x_occupant_id.strip()


def require_admin(x_admin: Optional[str]):
    if (x_admin or "").strip().lower() != "true":
        raise HTTPException(status_code=403, detail="Administrator access required")


def gate_to_dict(result: GateResult) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "allowed": result.allowed,
        "status": result.status.value,
        "reason": result.reason,
        "active_config": None,
        "next_window": None,
    }
    if result.active_config is not None:
        body["active_config"] = config_to_dict(result.active_config)
    if result.next_window is not None:
        body["next_window"] = {
            "date": result.next_window.date.isoformat(),
            "days_until": result.next_window.days_until,
            "time_range": result.next_window.config.time_range_label(),
            "message": describe_next_window(result.next_window),
        }
    return body


def config_to_dict(config: AdmissionWindowConfig) -> Dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "start_time": config.start_time.strftime("%H:%M"),
        "end_time": config.end_time.strftime("%H:%M"),
        "specific_date": config.specific_date.isoformat() if config.specific_date else None,
        "recurring_weekdays": format_weekdays(config.recurring_weekdays),
        "enabled": config.enabled,
        "is_default": config.is_default,
        "forensics_enabled": config.forensics_enabled,
        "time_tolerance_minutes": config.time_tolerance_minutes,
        "geofence_enabled": config.geofence_enabled,
        "reference_latitude": config.reference_latitude,
        "reference_longitude": config.reference_longitude,
        "geofence_radius_meters": config.geofence_radius_meters,
        "photo_content_check_enabled": config.photo_content_check_enabled,
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Room Inspection API",
        "version": "1.0.0",
        "endpoints": {
            "GET /admission": "Can an inspection be submitted right now",
            "POST /inspections": "Submit today's room photo (multipart: image, room[, room_type, building])",
            "GET /inspections/today": "Today's verdict for the calling occupant",
            "GET /attendance/{date}": "Attendance ledger and statistics for a day",
            "GET /attendance/{date}/export": "Download a day's ledger (csv, json or xlsx)",
            "GET /health": "Health check endpoint"
        },
        "note": "Use CLI tool (python -m room_inspection.main) for ledger administration from the terminal"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    settings = get_settings()
    pipeline = get_pipeline()
    return {
        "status": "healthy",
        "timezone": settings.timezone,
        "pass_threshold": pipeline.pass_threshold,
        "strict_metadata": settings.strict_metadata,
        "admission": pipeline.check_admission().status.value,
        "scoring": pipeline.scoring_client.diagnostics(),
    }


@app.get("/admission")
def check_admission():
    """Report whether a submission would pass the admission window right now."""
    return gate_to_dict(get_pipeline().check_admission())


@app.post("/inspections")
async def submit_inspection(
    request: Request,
    image: UploadFile = File(...),
    room: str = Form(...),
    room_type: Optional[str] = Form(None),
    building: Optional[str] = Form(None),
    x_occupant_id: Optional[str] = Header(None),
):
    """
    Submit a room photo for today's inspection.

    - **image**: photo of the room
    - **room**: room identifier
    - **room_type** / **building**: optional, selects a reference template to compare against
    - **X-Occupant-Id**: verified occupant id from the session layer
    """
    occupant_id = require_occupant(x_occupant_id)
    data = await image.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded image is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Uploaded image is too large")
    if not is_readable_image(data):
        raise HTTPException(status_code=400, detail="Uploaded file is not a readable image")
    if room_type:
        try:
            room_type = normalize_room_type(room_type)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    pipeline = get_pipeline()
    cancel_event = threading.Event()

    async def watch_disconnect():
        while True:
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)
            if await request.is_disconnected():
                logger.info(f"Client disconnected during submission from {occupant_id}")
                cancel_event.set()
                return

    watcher = asyncio.create_task(watch_disconnect())
    try:
        verdict = await run_in_threadpool(
            pipeline.submit,
            occupant_id,
            room.strip(),
            data,
            None,
            cancel_event,
            room_type or None,
            building or None,
        )
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except SubmissionCancelledError as e:
        # 499: client closed request
        raise HTTPException(status_code=499, detail=str(e))
    finally:
        watcher.cancel()

    status_code = 201 if verdict.accepted else REJECTION_STATUS_CODES[verdict.rejection_code]
    return JSONResponse(status_code=status_code, content=verdict.to_dict())


@app.get("/inspections/today")
def today_inspection(x_occupant_id: Optional[str] = Header(None)):
    occupant_id = require_occupant(x_occupant_id)
    verdict = get_pipeline().get_today_submission(occupant_id)
    if verdict is None:
        raise HTTPException(status_code=404, detail="No inspection submitted today")
    return verdict.to_dict()


@app.get("/attendance/{inspection_date}")
def attendance_ledger(inspection_date: date):
    store = get_pipeline().store
    entries = store.get_ledger(inspection_date)
    if not entries:
        raise HTTPException(status_code=404, detail=f"No attendance ledger for {inspection_date.isoformat()}")
    return {
        "date": inspection_date.isoformat(),
        "statistics": store.ledger_statistics(inspection_date).to_dict(),
        "entries": [entry.to_dict() for entry in entries],
    }


@app.get("/attendance/{inspection_date}/export")
def export_attendance(
    inspection_date: date,
    return_format: str = Query("csv", pattern="^(json|csv|xlsx)$"),
):
    try:
        payload = get_pipeline().store.export_ledger(inspection_date, return_format)
    except LedgerNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    filename = f"attendance_{inspection_date.isoformat()}.{return_format}"

    def generate():
        yield payload

    return StreamingResponse(
        generate(),
        media_type=EXPORT_MEDIA_TYPES[return_format],
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
        }
    )


@app.post("/admin/attendance/{inspection_date}", status_code=201)
def open_attendance(
    inspection_date: date,
    roster: List[RosterMemberIn],
    x_admin: Optional[str] = Header(None),
):
    """Create the day's ledger with one PENDING entry per roster member."""
    require_admin(x_admin)
    if not roster:
        raise HTTPException(status_code=400, detail="Roster is empty")
    store = get_pipeline().store
    try:
        created = store.open_ledger(
            inspection_date,
            [RosterMember(m.occupant_id, m.room_identifier, m.occupant_name) for m in roster],
        )
    except LedgerExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {
        "date": inspection_date.isoformat(),
        "created": created,
        "statistics": store.ledger_statistics(inspection_date).to_dict(),
    }


@app.delete("/admin/attendance/{inspection_date}")
def delete_attendance(inspection_date: date, x_admin: Optional[str] = Header(None)):
    require_admin(x_admin)
    try:
        deleted = get_pipeline().store.delete_ledger(inspection_date)
    except LedgerNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"date": inspection_date.isoformat(), "deleted": deleted}


@app.post("/admin/inspections/{submission_id}/comment")
def comment_inspection(submission_id: int, body: CommentIn, x_admin: Optional[str] = Header(None)):
    require_admin(x_admin)
    try:
        verdict = get_pipeline().add_admin_comment(submission_id, body.comment)
    except SubmissionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return verdict.to_dict()


@app.patch("/admin/inspections/{submission_id}")
def override_inspection(submission_id: int, body: OverrideIn, x_admin: Optional[str] = Header(None)):
    require_admin(x_admin)
    if body.numeric_score is None and body.status is None and body.admin_comment is None:
        raise HTTPException(status_code=400, detail="Nothing to update")
    try:
        verdict = get_pipeline().override_verdict(
            submission_id,
            numeric_score=body.numeric_score,
            status=body.status,
            admin_comment=body.admin_comment,
        )
    except SubmissionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return verdict.to_dict()


@app.get("/admin/inspections")
def list_inspections(
    inspection_date: Optional[date] = Query(None, description="YYYY-MM-DD, defaults to today"),
    x_admin: Optional[str] = Header(None),
):
    require_admin(x_admin)
    pipeline = get_pipeline()
    day = inspection_date or pipeline.clock.today()
    verdicts = pipeline.list_inspections(day)
    return {
        "date": day.isoformat(),
        "count": len(verdicts),
        "inspections": [verdict.to_dict() for verdict in verdicts],
    }


@app.get("/admin/inspections/statistics")
def inspection_statistics(
    inspection_date: Optional[date] = Query(None, description="YYYY-MM-DD, defaults to today"),
    x_admin: Optional[str] = Header(None),
):
    require_admin(x_admin)
    pipeline = get_pipeline()
    return pipeline.inspection_statistics(inspection_date or pipeline.clock.today()).to_dict()


@app.post("/admin/inspections/{submission_id}/reject")
def reject_inspection(submission_id: int, body: RejectIn, x_admin: Optional[str] = Header(None)):
    """Delete a stored verdict; the occupant may submit again the same day."""
    require_admin(x_admin)
    try:
        verdict = get_pipeline().reject_inspection(submission_id, body.reason)
    except SubmissionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"rejected": True, "reason": body.reason, "inspection": verdict.to_dict()}


@app.patch("/admin/attendance/entries/{entry_id}")
def update_attendance_entry(entry_id: int, body: EntryUpdateIn, x_admin: Optional[str] = Header(None)):
    require_admin(x_admin)
    try:
        entry = get_pipeline().update_attendance_entry(
            entry_id,
            is_submitted=body.is_submitted,
            score=body.score,
            status=body.status,
            notes=body.notes,
        )
    except AttendanceEntryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return entry.to_dict()


@app.get("/admin/templates")
def list_templates(active_only: bool = Query(False), x_admin: Optional[str] = Header(None)):
    require_admin(x_admin)
    templates = get_pipeline().store.list_templates(active_only=active_only)
    return {"templates": [template.to_dict() for template in templates]}


@app.post("/admin/templates", status_code=201)
async def create_template(
    image: UploadFile = File(...),
    name: str = Form(...),
    room_type: str = Form(...),
    building: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    is_default: bool = Form(False),
    x_admin: Optional[str] = Header(None),
):
    """Register a reference room photo for template comparison scoring."""
    require_admin(x_admin)
    data = await image.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Uploaded image is too large")
    try:
        template = await run_in_threadpool(
            get_pipeline().add_room_template,
            name,
            room_type,
            data,
            building,
            description,
            is_default,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return template.to_dict()


@app.post("/admin/configs", status_code=201)
def save_admission_config(body: AdmissionConfigIn, x_admin: Optional[str] = Header(None)):
    """Create or update an admission window."""
    require_admin(x_admin)
    try:
        config = AdmissionWindowConfig(
            id=body.id,
            name=body.name,
            start_time=_parse_clock_time(body.start_time),
            end_time=_parse_clock_time(body.end_time),
            specific_date=body.specific_date,
            recurring_weekdays=parse_weekdays(body.recurring_weekdays),
            enabled=body.enabled,
            is_default=body.is_default,
            forensics_enabled=body.forensics_enabled,
            time_tolerance_minutes=body.time_tolerance_minutes,
            geofence_enabled=body.geofence_enabled,
            reference_latitude=body.reference_latitude,
            reference_longitude=body.reference_longitude,
            geofence_radius_meters=body.geofence_radius_meters,
            photo_content_check_enabled=body.photo_content_check_enabled,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if config.geofence_enabled and (config.reference_latitude is None or config.reference_longitude is None):
        raise HTTPException(status_code=400, detail="Geofence requires reference_latitude and reference_longitude")
    try:
        saved = get_pipeline().store.save_config(config)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return config_to_dict(saved)
