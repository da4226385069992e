# services/registration_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_, delete, select, update
from sqlalchemy.engine import Engine

from domain.errors import ConflictError, NotFoundError, ValidationError
from domain.models import DeliveryState, ImportRow, Registration
from utils.db import attendance, events, insert_ignore, registrations, utcnow
from utils.upload_utils import (
    R_DUP_EMAIL_STORE, R_DUP_REG_STORE, R_EMAIL, R_NAME, R_REG_NO,
    clean_field, is_valid_email, normalize_email, normalize_phone,
)

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _require_event(conn, event_id: int) -> None:
    found = conn.execute(select(events.c.id).where(events.c.id == event_id)).first()
    if not found:
        raise NotFoundError("Event not found")


def _to_row(r: Any) -> ImportRow:
    """Accept ImportRow or a loose dict (regNo / reg_no spellings from JSON clients)."""
    if isinstance(r, ImportRow):
        return ImportRow(
            name=clean_field(r.name), reg_no=clean_field(r.reg_no),
            email=normalize_email(r.email), phone=normalize_phone(r.phone),
        )
    return ImportRow(
        name=clean_field(r.get("name")),
        reg_no=clean_field(r.get("reg_no", r.get("regNo"))),
        email=normalize_email(r.get("email")),
        phone=normalize_phone(r.get("phone")),
    )


def _fetch_one(conn, *where) -> Optional[Registration]:
    row = conn.execute(select(registrations).where(*where)).mappings().first()
    return Registration.from_row(dict(row)) if row else None

# ─────────────────────────────────────────────────────────────
# Import support
# ─────────────────────────────────────────────────────────────

def load_existing_keys(engine: Engine, event_id: int) -> Tuple[Set[str], Set[str]]:
    """Snapshot of (emails, reg_nos) already stored for the event. Read once per import."""
    with engine.connect() as conn:
        rows = conn.execute(
            select(registrations.c.email, registrations.c.reg_no).where(registrations.c.event_id == event_id)
        ).all()
    return {r.email.lower() for r in rows}, {r.reg_no for r in rows}


def insert_registrations(engine: Engine, event_id: int, rows: Iterable[Any]) -> int:
    """
    Unordered, best-effort bulk insert.

    Rows that hit either unique key (a concurrent import won the race) are skipped and
    not counted. Any other database error aborts the whole call.
    Tokens stay NULL; they are assigned on first ticket request or delivery.
    """
    prepared = [_to_row(r) for r in rows]
    if not prepared:
        return 0

    now = utcnow()
    inserted = 0
    with engine.begin() as conn:
        _require_event(conn, event_id)
        stmt = insert_ignore(conn, registrations)
        for row in prepared:
            res = conn.execute(stmt, {
                "event_id": event_id,
                "name": row.name,
                "reg_no": row.reg_no,
                "email": row.email,
                "phone": row.phone,
                "token": None,
                "download_count": 0,
                "rate_limit_count": 0,
                "delivery_state": DeliveryState.PENDING.value,
                "created_at": now,
            })
            if res.rowcount == 1:
                inserted += 1
            else:
                logger.info("Skipped conflicting registration event=%s email=%s reg_no=%s",
                            event_id, row.email, row.reg_no)

    logger.info("Bulk insert event=%s: %d of %d inserted", event_id, inserted, len(prepared))
    return inserted


def add_registration(
    engine: Engine, event_id: int, *, name: str, reg_no: str, email: str, phone: str = "",
) -> Registration:
    """Manual single entry with the importer's validation rules."""
    row = _to_row({"name": name, "reg_no": reg_no, "email": email, "phone": phone})
    if len(row.name) < 2:
        raise ValidationError(R_NAME)
    if not row.reg_no:
        raise ValidationError(R_REG_NO)
    if not is_valid_email(row.email):
        raise ValidationError(R_EMAIL)

    with engine.begin() as conn:
        _require_event(conn, event_id)
        if _fetch_one(conn, registrations.c.event_id == event_id, registrations.c.email == row.email):
            raise ConflictError(R_DUP_EMAIL_STORE)
        if _fetch_one(conn, registrations.c.event_id == event_id, registrations.c.reg_no == row.reg_no):
            raise ConflictError(R_DUP_REG_STORE)

        res = conn.execute(insert_ignore(conn, registrations), {
            "event_id": event_id,
            "name": row.name,
            "reg_no": row.reg_no,
            "email": row.email,
            "phone": row.phone,
            "token": None,
            "download_count": 0,
            "rate_limit_count": 0,
            "delivery_state": DeliveryState.PENDING.value,
            "created_at": utcnow(),
        })
        if res.rowcount != 1:
            # Lost a race with a concurrent insert between the checks and here
            raise ConflictError("Registration already exists for this event")

        created = _fetch_one(conn, registrations.c.event_id == event_id, registrations.c.email == row.email)
    logger.info("Added registration %s to event %s", created.id, event_id)
    return created

# ─────────────────────────────────────────────────────────────
# Lookups
# ─────────────────────────────────────────────────────────────

def get_registration(engine: Engine, registration_id: int, event_id: Optional[int] = None) -> Registration:
    where = [registrations.c.id == registration_id]
    if event_id is not None:
        where.append(registrations.c.event_id == event_id)
    with engine.connect() as conn:
        reg = _fetch_one(conn, *where)
    if not reg:
        raise NotFoundError("Registration not found")
    return reg


def find_by_token(engine: Engine, token: str) -> Optional[Registration]:
    with engine.connect() as conn:
        return _fetch_one(conn, registrations.c.token == token)


def find_by_email(engine: Engine, event_id: int, email: str) -> Optional[Registration]:
    with engine.connect() as conn:
        return _fetch_one(
            conn, registrations.c.event_id == event_id, registrations.c.email == normalize_email(email)
        )


def find_for_retrieval(engine: Engine, event_id: int, email: str, phone: str) -> Optional[Registration]:
    with engine.connect() as conn:
        return _fetch_one(
            conn,
            registrations.c.event_id == event_id,
            registrations.c.email == normalize_email(email),
            registrations.c.phone == normalize_phone(phone),
        )


def list_registrations(engine: Engine, event_id: int) -> List[Dict[str, Any]]:
    """Registrations newest first, each with its attendance (if any)."""
    j = registrations.outerjoin(
        attendance,
        and_(attendance.c.event_id == registrations.c.event_id, attendance.c.email == registrations.c.email),
    )
    stmt = (
        select(registrations, attendance.c.marked_at, attendance.c.source)
        .select_from(j)
        .where(registrations.c.event_id == event_id)
        .order_by(registrations.c.created_at.desc(), registrations.c.id.desc())
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()

    out = []
    for r in rows:
        r = dict(r)
        item = Registration.from_row(r).summary()
        item["attended"] = r.get("marked_at") is not None
        item["attendance"] = (
            {"marked_at": r["marked_at"], "source": r["source"]} if item["attended"] else None
        )
        out.append(item)
    return out


def delete_registrations(engine: Engine, event_id: int, registration_ids: List[int]) -> int:
    """Delete registrations and the attendance rows keyed by their emails."""
    if not registration_ids:
        raise ValidationError("registrationIds must be a non-empty array")
    with engine.begin() as conn:
        emails = conn.execute(
            select(registrations.c.email).where(
                registrations.c.event_id == event_id, registrations.c.id.in_(registration_ids)
            )
        ).scalars().all()
        if not emails:
            raise NotFoundError("No matching registrations found")
        conn.execute(delete(attendance).where(attendance.c.event_id == event_id, attendance.c.email.in_(emails)))
        res = conn.execute(
            delete(registrations).where(
                registrations.c.event_id == event_id, registrations.c.id.in_(registration_ids)
            )
        )
    logger.info("Deleted %d registration(s) from event %s", res.rowcount, event_id)
    return res.rowcount

# ─────────────────────────────────────────────────────────────
# Delivery state
# ─────────────────────────────────────────────────────────────

def select_unsent(engine: Engine, event_id: int, limit: Optional[int] = None) -> List[Registration]:
    stmt = (
        select(registrations)
        .where(registrations.c.event_id == event_id, registrations.c.delivery_state != DeliveryState.SENT.value)
        .order_by(registrations.c.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    with engine.connect() as conn:
        return [Registration.from_row(dict(r)) for r in conn.execute(stmt).mappings().all()]


def select_by_ids(engine: Engine, event_id: int, registration_ids: List[int]) -> List[Registration]:
    stmt = (
        select(registrations)
        .where(registrations.c.event_id == event_id, registrations.c.id.in_(registration_ids))
        .order_by(registrations.c.id)
    )
    with engine.connect() as conn:
        return [Registration.from_row(dict(r)) for r in conn.execute(stmt).mappings().all()]


def reset_delivery(engine: Engine, event_id: int, registration_ids: List[int]) -> int:
    """Explicit re-send: the only path back to pending."""
    with engine.begin() as conn:
        res = conn.execute(
            update(registrations)
            .where(registrations.c.event_id == event_id, registrations.c.id.in_(registration_ids))
            .values(delivery_state=DeliveryState.PENDING.value, delivery_error=None)
        )
    return res.rowcount


def mark_sent(engine: Engine, registration_id: int, when=None) -> None:
    """pending → sent. A row that is no longer pending is left alone."""
    with engine.begin() as conn:
        conn.execute(
            update(registrations)
            .where(registrations.c.id == registration_id, registrations.c.delivery_state == DeliveryState.PENDING.value)
            .values(delivery_state=DeliveryState.SENT.value, delivery_sent_at=when or utcnow(), delivery_error=None)
        )


def mark_failed(engine: Engine, registration_id: int, reason: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(registrations)
            .where(registrations.c.id == registration_id, registrations.c.delivery_state == DeliveryState.PENDING.value)
            .values(delivery_state=DeliveryState.FAILED.value, delivery_error=(reason or "")[:2000])
        )
