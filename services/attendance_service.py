# services/attendance_service.py
import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.engine import Engine

from domain.errors import ConflictError, EventMismatchError, NotFoundError, ValidationError
from domain.models import AlreadyMarked, Attendance, AttendanceSource, Registration
from services import registration_service
from utils.db import attendance, events, insert_ignore, utcnow
from utils.qr_scan_utils import parse_scanned_text_to_token
from utils.upload_utils import normalize_email

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _coerce_source(source: Union[str, AttendanceSource, None]) -> AttendanceSource:
    if source is None or source == "":
        return AttendanceSource.COUNTER
    try:
        return AttendanceSource(source)
    except ValueError:
        raise ValidationError(f"Unknown attendance source: {source!r}")


def _fetch_attendance(conn, event_id: int, email: str) -> Optional[Attendance]:
    row = conn.execute(
        select(attendance).where(attendance.c.event_id == event_id, attendance.c.email == email)
    ).mappings().first()
    return Attendance.from_row(dict(row)) if row else None


def _event_title(engine: Engine, event_id: int) -> str:
    with engine.connect() as conn:
        title = conn.execute(select(events.c.title).where(events.c.id == event_id)).scalar_one_or_none()
    if title is None:
        raise NotFoundError("Event not found")
    return title

# ─────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────

def verify(engine: Engine, token: str, expected_event_id: Optional[int] = None) -> Registration:
    """
    Resolve a presented token to its registration.

    Unknown token → NotFoundError. A real ticket for another event → EventMismatchError,
    so callers can tell "wrong event" from "unknown ticket".
    """
    parsed = parse_scanned_text_to_token(token or "")
    if not parsed:
        raise ValidationError("A ticket token is required")

    reg = registration_service.find_by_token(engine, parsed)
    if not reg:
        raise NotFoundError("Invalid ticket - no registration found for this QR code")
    if expected_event_id is not None and reg.event_id != expected_event_id:
        raise EventMismatchError("This ticket belongs to a different event")
    return reg


def mark_attendance(
    engine: Engine,
    event_id: int,
    email: str,
    source: Union[str, AttendanceSource, None] = AttendanceSource.COUNTER,
) -> Union[Attendance, AlreadyMarked]:
    """
    unmarked → marked, at most once per (event, email).

    A repeat or concurrent mark returns AlreadyMarked carrying the first mark's time.
    """
    src = _coerce_source(source)
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("email is required")

    if not registration_service.find_by_email(engine, event_id, normalized):
        _event_title(engine, event_id)  # unknown event reports as such
        raise NotFoundError("Not registered for this event")

    now = utcnow()
    with engine.begin() as conn:
        res = conn.execute(insert_ignore(conn, attendance), {
            "event_id": event_id,
            "email": normalized,
            "marked_at": now,
            "source": src.value,
        })
        existing = _fetch_attendance(conn, event_id, normalized)

    if existing is None:
        raise ConflictError("Attendance could not be recorded")

    if res.rowcount == 1:
        logger.info("Attendance marked event=%s email=%s source=%s", event_id, normalized, src.value)
        return existing

    logger.info("Attendance already marked event=%s email=%s at %s", event_id, normalized, existing.marked_at)
    return AlreadyMarked(event_id=event_id, email=normalized, marked_at=existing.marked_at)


def verify_and_mark(
    engine: Engine, token: str, expected_event_id: Optional[int] = None,
) -> Dict[str, Any]:
    """Scanner flow: verify the token, then mark attendance with source=scanner."""
    reg = verify(engine, token, expected_event_id)
    title = _event_title(engine, reg.event_id)
    outcome = mark_attendance(engine, reg.event_id, reg.email, AttendanceSource.SCANNER)
    return {
        "registration": reg,
        "event_title": title,
        "outcome": outcome,
    }


def ticket_status(engine: Engine, token: str, expected_event_id: Optional[int] = None) -> Dict[str, Any]:
    """Read-only check: who the ticket belongs to and whether they are already in."""
    reg = verify(engine, token, expected_event_id)
    title = _event_title(engine, reg.event_id)
    with engine.connect() as conn:
        existing = _fetch_attendance(conn, reg.event_id, reg.email)
    return {
        "name": reg.name,
        "reg_no": reg.reg_no,
        "email": reg.email,
        "phone": reg.phone,
        "event_id": reg.event_id,
        "event_title": title,
        "has_attended": existing is not None,
        "attended_at": existing.marked_at if existing else None,
    }


def list_attendance(engine: Engine, event_id: int) -> List[Attendance]:
    with engine.connect() as conn:
        rows = conn.execute(
            select(attendance)
            .where(attendance.c.event_id == event_id)
            .order_by(attendance.c.marked_at.desc(), attendance.c.id.desc())
        ).mappings().all()
    return [Attendance.from_row(dict(r)) for r in rows]
