# services/sync_service.py
"""
Short-lived handoff between the admin UI and the browser extension.

The UI registers a token, the extension pushes a payload under it, the UI polls.
Entries carry an explicit expiry that is checked on every access; expired rows
are purged on every call so nothing depends on process lifetime.
"""
import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.engine import Engine

from config import SYNC_TOKEN_TTL_SECONDS
from domain.errors import NotFoundError, ValidationError
from services.token_service import generate_token
from utils.db import insert_ignore, sync_handoffs, utcnow

logger = logging.getLogger(__name__)

STATUS_EXPIRED = "expired"
STATUS_WAITING = "waiting"
STATUS_READY = "ready"


def _purge(conn, now: datetime.datetime) -> None:
    conn.execute(delete(sync_handoffs).where(sync_handoffs.c.expires_at <= now))


def register_sync_token(
    engine: Engine,
    token: Optional[str] = None,
    *,
    now: Optional[datetime.datetime] = None,
    ttl_seconds: int = SYNC_TOKEN_TTL_SECONDS,
) -> Dict[str, Any]:
    now = now or utcnow()
    token = (token or "").strip() or generate_token(16)
    expires_at = now + datetime.timedelta(seconds=ttl_seconds)
    with engine.begin() as conn:
        _purge(conn, now)
        res = conn.execute(insert_ignore(conn, sync_handoffs), {
            "token": token, "payload": None, "created_at": now, "expires_at": expires_at,
        })
        if res.rowcount == 0:
            raise ValidationError("Sync token already registered")
    logger.info("Registered sync token (expires %s)", expires_at.isoformat())
    return {"syncToken": token, "expiresAt": expires_at}


def push_sync_data(engine: Engine, token: str, data: Any, *, now: Optional[datetime.datetime] = None) -> None:
    if not token:
        raise ValidationError("syncToken is required")
    if data is None:
        raise ValidationError("data is required")
    now = now or utcnow()
    with engine.begin() as conn:
        _purge(conn, now)
        res = conn.execute(
            update(sync_handoffs)
            .where(sync_handoffs.c.token == token, sync_handoffs.c.expires_at > now)
            .values(payload=data)
        )
    if res.rowcount == 0:
        raise NotFoundError("Invalid or expired sync token. Please generate a new one from the dashboard.")
    logger.info("Sync data received for a registered token")


def poll_sync_data(engine: Engine, token: str, *, now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    """expired | waiting | ready(data). A ready entry is consumed by the read."""
    if not token:
        raise ValidationError("syncToken is required")
    now = now or utcnow()
    with engine.begin() as conn:
        _purge(conn, now)
        row = conn.execute(
            select(sync_handoffs).where(sync_handoffs.c.token == token, sync_handoffs.c.expires_at > now)
        ).mappings().first()
        if not row:
            return {"status": STATUS_EXPIRED}
        if row["payload"] is None:
            return {"status": STATUS_WAITING}
        conn.execute(delete(sync_handoffs).where(sync_handoffs.c.token == token))
    return {"status": STATUS_READY, "data": row["payload"]}
