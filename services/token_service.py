# services/token_service.py
import logging
import secrets

from sqlalchemy import select, update
from sqlalchemy.engine import Engine

from config import TOKEN_BYTES
from domain.errors import NotFoundError
from domain.models import Registration
from utils.db import registrations

logger = logging.getLogger(__name__)

__all__ = ["generate_token", "assign_token_if_absent"]


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """Random URL-safe token. Carries nothing about the attendee."""
    return secrets.token_urlsafe(nbytes)


def assign_token_if_absent(engine: Engine, registration: Registration) -> str:
    """
    Return the registration's token, assigning one on first use.

    The write only lands while the column is still NULL, so concurrent callers all
    end up with the single stored token. Existing tokens are never rotated.
    """
    if registration.token:
        return registration.token

    candidate = generate_token()
    with engine.begin() as conn:
        res = conn.execute(
            update(registrations)
            .where(registrations.c.id == registration.id, registrations.c.token.is_(None))
            .values(token=candidate)
        )
        if res.rowcount == 1:
            stored = candidate
        else:
            stored = conn.execute(
                select(registrations.c.token).where(registrations.c.id == registration.id)
            ).scalar_one_or_none()

    if not stored:
        raise NotFoundError("Registration not found")

    if stored != candidate:
        logger.debug("Token for registration %s already assigned by another caller", registration.id)
    registration.token = stored
    return stored
