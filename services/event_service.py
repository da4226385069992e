# services/event_service.py
import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine

from config import DEFAULT_EMAIL_BODY, DEFAULT_EMAIL_SUBJECT
from domain.errors import NotFoundError, ValidationError
from domain.models import Event, TicketTemplate
from utils.db import attendance, events, registrations, utcnow

logger = logging.getLogger(__name__)


def create_event(
    engine: Engine,
    *,
    title: str,
    date: datetime.datetime,
    description: str = "",
    is_public_download: bool = False,
    ticket_template: Optional[TicketTemplate] = None,
) -> Event:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    with engine.begin() as conn:
        res = conn.execute(insert(events).values(
            title=title,
            description=(description or "").strip(),
            date=date,
            is_public_download=bool(is_public_download),
            ticket_template=ticket_template.to_dict() if ticket_template else None,
            created_at=utcnow(),
        ))
        event_id = res.inserted_primary_key[0]
    logger.info("Created event %s (%s)", event_id, title)
    return get_event(engine, event_id)


def get_event(engine: Engine, event_id: int) -> Event:
    with engine.connect() as conn:
        row = conn.execute(select(events).where(events.c.id == event_id)).mappings().first()
    if not row:
        raise NotFoundError("Event not found")
    return Event.from_row(dict(row))


def list_events(engine: Engine, public_only: bool = False) -> List[Event]:
    """Newest event date first. `public_only` keeps events that allow self-service download."""
    stmt = select(events).order_by(events.c.date.desc(), events.c.id.desc())
    if public_only:
        stmt = stmt.where(events.c.is_public_download.is_(True))
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [Event.from_row(dict(r)) for r in rows]


def delete_event(engine: Engine, event_id: int) -> None:
    """Delete the event with its registrations and attendance."""
    with engine.begin() as conn:
        conn.execute(delete(attendance).where(attendance.c.event_id == event_id))
        conn.execute(delete(registrations).where(registrations.c.event_id == event_id))
        res = conn.execute(delete(events).where(events.c.id == event_id))
        if res.rowcount == 0:
            raise NotFoundError("Event not found")
    logger.info("Deleted event %s", event_id)


def _update(engine: Engine, event_id: int, **values) -> Event:
    with engine.begin() as conn:
        res = conn.execute(update(events).where(events.c.id == event_id).values(**values))
    if res.rowcount == 0:
        raise NotFoundError("Event not found")
    return get_event(engine, event_id)


def set_ticket_template(engine: Engine, event_id: int, template: TicketTemplate) -> Event:
    return _update(engine, event_id, ticket_template=template.to_dict())


def set_public_download(engine: Engine, event_id: int, enabled: bool) -> Event:
    return _update(engine, event_id, is_public_download=bool(enabled))


def get_email_template(engine: Engine, event_id: int) -> Dict[str, Any]:
    event = get_event(engine, event_id)
    return {
        "subject": event.email_subject or DEFAULT_EMAIL_SUBJECT,
        "body": event.email_body or DEFAULT_EMAIL_BODY,
    }


def save_email_template(engine: Engine, event_id: int, subject: Optional[str], body: Optional[str]) -> Dict[str, Any]:
    event = _update(
        engine, event_id,
        email_subject=(subject or "").strip() or DEFAULT_EMAIL_SUBJECT,
        email_body=body or "",
    )
    return {"subject": event.email_subject, "body": event.email_body}
