# api_server.py
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.engine import Engine

from config import ALLOWED_ORIGINS, API_KEY, validate_config
from domain.errors import TicketingError
from domain.models import AlreadyMarked, BoxPosition, TextPosition, TicketTemplate
from services import (
    attendance_service,
    delivery_service,
    email_service,
    event_service,
    registration_service,
    sync_service,
    ticket_service,
    token_service,
    upload_service,
)
from utils.db import get_engine, init_schema
from utils.json_utils import sse_frame
from utils.logging_setup import setup_logging

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _default_engine() -> Engine:
    return get_engine()


def get_db_engine() -> Engine:
    return _default_engine()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    setup_logging()
    validate_config()
    init_schema(_default_engine())
    logger.info("Ticketing API ready")
    yield


app = FastAPI(title="Event Ticketing API", lifespan=lifespan)

# ──────────────────────────────────────────────
# CORS (origins come from ALLOWED_ORIGINS)
# ──────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "Content-Disposition"],
    max_age=600,
)


# ──────────────────────────────────────────────
# Simple API-key auth (env driven)
#   - Set API_KEY in .env to enable
#   - Clients send X-API-Key: <key>  OR  Authorization: Bearer <key>
# ──────────────────────────────────────────────
def require_api_key(
    x_api_key: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
):
    if not API_KEY:
        # auth disabled (e.g., local dev)
        return
    token = None
    if x_api_key:
        token = x_api_key.strip()
    elif authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    if not token or not secrets.compare_digest(token, API_KEY):
        raise HTTPException(status_code=401, detail="Unauthorized")


admin = [Depends(require_api_key)]


# ──────────────────────────────────────────────
# Errors → {"error": message}
# ──────────────────────────────────────────────
@app.exception_handler(TicketingError)
async def ticketing_error_handler(_request, exc: TicketingError):
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(max(1, int(round(retry_after))))}
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message}, headers=headers)


@app.exception_handler(HTTPException)
async def http_error_handler(_request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


# ──────────────────────────────────────────────
# Models
# ──────────────────────────────────────────────
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventCreateReq(ApiModel):
    title: str = Field(..., min_length=1)
    date: datetime
    description: str = ""
    is_public_download: bool = False


class BoxReq(ApiModel):
    x: int
    y: int
    width: int = 200
    height: int = 200


class TextReq(ApiModel):
    x: int
    y: int
    font_size: int = 24
    color: str = "#000000"


class TemplateReq(ApiModel):
    image_path: Optional[str] = None
    qr_position: Optional[BoxReq] = None
    name_position: Optional[TextReq] = None
    reg_no_position: Optional[TextReq] = None
    rotate: bool = False

    def to_template(self) -> TicketTemplate:
        return TicketTemplate(
            image_path=self.image_path,
            qr_position=BoxPosition(**self.qr_position.model_dump()) if self.qr_position else None,
            name_position=TextPosition(**self.name_position.model_dump()) if self.name_position else None,
            reg_no_position=TextPosition(**self.reg_no_position.model_dump()) if self.reg_no_position else None,
            rotate=self.rotate,
        )


class SettingsReq(ApiModel):
    is_public_download: bool


class EmailTemplateReq(ApiModel):
    event_id: int
    subject: Optional[str] = None
    body: Optional[str] = None


class TestEmailReq(ApiModel):
    event_id: int
    to: str = Field(..., min_length=3)
    subject: Optional[str] = None
    body: Optional[str] = None


class BulkCreateReq(ApiModel):
    event_id: int
    registrations: List[Dict[str, Any]]


class ManualReq(ApiModel):
    event_id: int
    name: str
    reg_no: str
    email: str
    phone: str = ""


class DeleteReq(ApiModel):
    event_id: int
    registration_ids: List[int]


class AssignTokenReq(ApiModel):
    registration_id: int


class SyncPushReq(ApiModel):
    token: str
    registrations: List[Dict[str, Any]]


class SendReq(ApiModel):
    event_id: int
    registration_ids: Optional[List[int]] = None
    count: Optional[int] = Field(default=None, ge=1)
    batch_size: Optional[int] = None
    delay_ms: Optional[int] = None
    subject: Optional[str] = None
    body: Optional[str] = None


class QrReq(ApiModel):
    qr_payload: str
    event_id: Optional[int] = None


class MarkReq(ApiModel):
    event_id: int
    email: str
    source: Optional[str] = None


class PublicTicketReq(ApiModel):
    event_id: int
    email: str
    phone: str


def _event_dict(event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "date": event.date,
        "isPublicDownload": event.is_public_download,
        "ticketTemplate": event.ticket_template.to_dict(),
    }


def _already_marked(outcome: AlreadyMarked) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "error": "Attendance already marked",
            "alreadyMarked": True,
            "markedAt": outcome.marked_at.isoformat(),
        },
    )


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────
@app.get("/api/health")
def health():
    return {"ok": True}


# ──────────────────────────────────────────────
# Events and templates
# ──────────────────────────────────────────────
@app.post("/api/events", status_code=201, dependencies=admin)
def create_event(payload: EventCreateReq, engine: Engine = Depends(get_db_engine)):
    event = event_service.create_event(
        engine,
        title=payload.title,
        date=payload.date,
        description=payload.description,
        is_public_download=payload.is_public_download,
    )
    return _event_dict(event)


@app.get("/api/events", dependencies=admin)
def list_events(engine: Engine = Depends(get_db_engine)):
    return {"events": [_event_dict(e) for e in event_service.list_events(engine)]}


@app.get("/api/events/{event_id}", dependencies=admin)
def read_event(event_id: int, engine: Engine = Depends(get_db_engine)):
    return _event_dict(event_service.get_event(engine, event_id))


@app.delete("/api/events/{event_id}", dependencies=admin)
def delete_event(event_id: int, engine: Engine = Depends(get_db_engine)):
    event_service.delete_event(engine, event_id)
    return {"message": "Event deleted"}


@app.put("/api/events/{event_id}/template", dependencies=admin)
def put_template(event_id: int, payload: TemplateReq, engine: Engine = Depends(get_db_engine)):
    return _event_dict(event_service.set_ticket_template(engine, event_id, payload.to_template()))


@app.patch("/api/events/{event_id}/settings", dependencies=admin)
def patch_settings(event_id: int, payload: SettingsReq, engine: Engine = Depends(get_db_engine)):
    return _event_dict(event_service.set_public_download(engine, event_id, payload.is_public_download))


@app.get("/api/emails/template", dependencies=admin)
def read_email_template(eventId: int, engine: Engine = Depends(get_db_engine)):
    return event_service.get_email_template(engine, eventId)


@app.patch("/api/emails/template", dependencies=admin)
def update_email_template(payload: EmailTemplateReq, engine: Engine = Depends(get_db_engine)):
    saved = event_service.save_email_template(engine, payload.event_id, payload.subject, payload.body)
    return {"message": "Email template saved", "template": saved}


@app.post("/api/emails/test", dependencies=admin)
def test_email(payload: TestEmailReq, engine: Engine = Depends(get_db_engine)):
    email_service.send_test_email(engine, payload.event_id, payload.to, payload.subject, payload.body)
    return {"message": f"Test email sent to {payload.to}"}


# ──────────────────────────────────────────────
# Registrations
# ──────────────────────────────────────────────
@app.post("/api/registrations/preview", dependencies=admin)
async def preview_registrations(
    file: UploadFile = File(...),
    eventId: int = Form(...),
    engine: Engine = Depends(get_db_engine),
):
    data = await file.read()
    return upload_service.preview_upload(engine, eventId, data, file.filename).to_dict()


@app.post("/api/registrations/upload", status_code=201, dependencies=admin)
async def upload_registrations(
    file: UploadFile = File(...),
    eventId: int = Form(...),
    engine: Engine = Depends(get_db_engine),
):
    # Preview and insert in one step; rejected rows come back with the counts
    event_service.get_event(engine, eventId)
    data = await file.read()
    return upload_service.ingest_upload(engine, eventId, data, file.filename)


@app.post("/api/registrations/bulk-create", status_code=201, dependencies=admin)
def bulk_create(payload: BulkCreateReq, engine: Engine = Depends(get_db_engine)):
    result = upload_service.preview_records(engine, payload.event_id, payload.registrations)
    inserted = registration_service.insert_registrations(engine, payload.event_id, result.valid)
    return {
        "insertedCount": inserted,
        "rejected": [r.to_dict() for r in result.rejected],
        "stats": result.stats,
    }


@app.post("/api/registrations/manual", status_code=201, dependencies=admin)
def manual_registration(payload: ManualReq, engine: Engine = Depends(get_db_engine)):
    reg = registration_service.add_registration(
        engine, payload.event_id,
        name=payload.name, reg_no=payload.reg_no, email=payload.email, phone=payload.phone,
    )
    return {"message": "Registration added", "registration": reg.summary()}


@app.delete("/api/registrations", dependencies=admin)
def delete_registrations(payload: DeleteReq, engine: Engine = Depends(get_db_engine)):
    deleted = registration_service.delete_registrations(engine, payload.event_id, payload.registration_ids)
    return {"deletedCount": deleted}


# extension-sync must be declared before /api/registrations/{event_id}
@app.get("/api/registrations/extension-sync", dependencies=admin)
def extension_sync_poll(
    token: Optional[str] = None,
    action: Optional[str] = None,
    engine: Engine = Depends(get_db_engine),
):
    if action == "register":
        registered = sync_service.register_sync_token(engine, token)
        return {"status": "registered", "token": registered["syncToken"], "expiresAt": registered["expiresAt"]}
    if not token:
        raise HTTPException(status_code=400, detail="Token is required")
    return sync_service.poll_sync_data(engine, token)


@app.post("/api/registrations/extension-sync")
def extension_sync_push(payload: SyncPushReq, engine: Engine = Depends(get_db_engine)):
    # The sync token itself is the credential here
    sync_service.push_sync_data(engine, payload.token, payload.registrations)
    count = len(payload.registrations)
    return {"success": True, "message": f"{count} registrations received", "count": count}


@app.get("/api/registrations/{event_id}", dependencies=admin)
def list_registrations(event_id: int, engine: Engine = Depends(get_db_engine)):
    event_service.get_event(engine, event_id)
    return {"registrations": registration_service.list_registrations(engine, event_id)}


@app.post("/api/registrations/{event_id}/assign-token", dependencies=admin)
def assign_token(event_id: int, payload: AssignTokenReq, engine: Engine = Depends(get_db_engine)):
    reg = registration_service.get_registration(engine, payload.registration_id, event_id)
    token = token_service.assign_token_if_absent(engine, reg)
    return {"registrationId": reg.id, "token": token}


# ──────────────────────────────────────────────
# Delivery (server-sent events)
# ──────────────────────────────────────────────
@app.post("/api/emails/send", dependencies=admin)
def send_emails(payload: SendReq, engine: Engine = Depends(get_db_engine)):
    # Selection and template errors surface as plain JSON before the stream opens
    event = event_service.get_event(engine, payload.event_id)
    saved = event_service.get_email_template(engine, payload.event_id)
    recipients = delivery_service.select_recipients(
        engine, payload.event_id, payload.registration_ids, payload.count
    )
    pipeline = delivery_service.DeliveryPipeline(
        engine,
        event,
        subject_template=payload.subject or saved["subject"],
        body_template=payload.body or saved["body"],
        batch_size=payload.batch_size,
        delay_ms=payload.delay_ms,
    )

    def frames():
        for ev in delivery_service.stream_delivery(pipeline, recipients):
            yield sse_frame(ev.to_dict())

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ──────────────────────────────────────────────
# Verification and attendance
# ──────────────────────────────────────────────
@app.post("/api/tickets/verify", dependencies=admin)
def verify_ticket(payload: QrReq, engine: Engine = Depends(get_db_engine)):
    return {"ticket": attendance_service.ticket_status(engine, payload.qr_payload, payload.event_id)}


@app.post("/api/attendance/verify-qr", dependencies=admin)
def verify_qr(payload: QrReq, engine: Engine = Depends(get_db_engine)):
    result = attendance_service.verify_and_mark(engine, payload.qr_payload, payload.event_id)
    outcome = result["outcome"]
    if isinstance(outcome, AlreadyMarked):
        return _already_marked(outcome)
    reg = result["registration"]
    return {
        "message": "Attendance marked successfully",
        "attendance": {
            "id": outcome.id,
            "email": outcome.email,
            "name": reg.name,
            "regNo": reg.reg_no,
            "markedAt": outcome.marked_at,
            "source": outcome.source.value,
            "eventId": outcome.event_id,
            "eventTitle": result["event_title"],
        },
    }


@app.post("/api/attendance/mark", dependencies=admin)
def mark_attendance(payload: MarkReq, engine: Engine = Depends(get_db_engine)):
    outcome = attendance_service.mark_attendance(engine, payload.event_id, payload.email, payload.source)
    if isinstance(outcome, AlreadyMarked):
        return _already_marked(outcome)
    return {"message": "Attendance marked successfully", "attendance": outcome.to_dict()}


@app.get("/api/attendance/{event_id}", dependencies=admin)
def list_attendance(event_id: int, engine: Engine = Depends(get_db_engine)):
    event_service.get_event(engine, event_id)
    records = attendance_service.list_attendance(engine, event_id)
    return {"attendance": [a.to_dict() for a in records], "count": len(records)}


# ──────────────────────────────────────────────
# Public self-service download
# ──────────────────────────────────────────────
@app.post("/api/public/ticket")
def public_ticket(payload: PublicTicketReq, engine: Engine = Depends(get_db_engine)):
    artifact = ticket_service.retrieve_ticket(engine, payload.event_id, payload.email, payload.phone)
    headers = {"Content-Disposition": f'attachment; filename="{artifact.filename}"'}
    if artifact.url:
        headers["X-Ticket-Url"] = artifact.url
    return Response(content=artifact.data, media_type=artifact.content_type, headers=headers)


@app.get("/api/public/events")
def public_events(eventId: Optional[int] = None, engine: Engine = Depends(get_db_engine)):
    listed = event_service.list_events(engine, public_only=True)
    if eventId is not None:
        listed = [e for e in listed if e.id == eventId]
    return {
        "events": [
            {"id": e.id, "title": e.title, "description": e.description, "date": e.date, "isPublicDownload": True}
            for e in listed
        ]
    }
