# services/ticket_service.py
import datetime
import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.engine import Engine

from config import TICKET_RATE_LIMIT, TICKET_RATE_WINDOW_MS
from domain.errors import (
    DependencyError,
    ForbiddenError,
    NotFoundError,
    RateLimitExceeded,
    TicketingError,
    ValidationError,
)
from domain.models import Event, Registration, TicketArtifact
from services import event_service, rate_limit_service, registration_service, s3_service, token_service
from utils.db import utcnow
from utils.ticket_utils import render_ticket_png, resolve_template_path, safe_name

logger = logging.getLogger(__name__)

__all__ = ["generate_ticket", "retrieve_ticket"]


def generate_ticket(event: Event, registration: Registration, token: str) -> TicketArtifact:
    """Render the PNG ticket for one attendee. The token must already be assigned."""
    data = render_ticket_png(
        event.ticket_template,
        token=token,
        name=registration.name,
        reg_no=registration.reg_no,
        event_title=event.title,
    )
    filename = f"{safe_name(registration.name)}_{safe_name(event.title)}.png"
    return TicketArtifact(filename=filename, data=data)


def retrieve_ticket(
    engine: Engine,
    event_id: int,
    email: str,
    phone: str,
    *,
    now: Optional[datetime.datetime] = None,
    window_ms: int = TICKET_RATE_WINDOW_MS,
    limit: int = TICKET_RATE_LIMIT,
) -> TicketArtifact:
    """
    Public self-service download, keyed by email + phone.
    Rate-limited per registration; the token is backfilled on first download.
    """
    if not (email or "").strip() or not (phone or "").strip():
        raise ValidationError("eventId, email, and phone are required")

    event = event_service.get_event(engine, event_id)
    if not event.is_public_download:
        raise ForbiddenError("Ticket download is not available for this event")

    reg = registration_service.find_for_retrieval(engine, event_id, email, phone)
    if not reg:
        raise NotFoundError("No registration found with the provided email and phone")

    # A broken template must not use up the attendee's download quota
    if event.ticket_template.image_path:
        resolve_template_path(event.ticket_template.image_path)

    decision = rate_limit_service.check_and_increment(engine, reg, now or utcnow(), window_ms, limit)
    if not decision.allowed:
        raise RateLimitExceeded("Download limit reached. Please try again shortly", decision.retry_after)

    token = token_service.assign_token_if_absent(engine, reg)
    try:
        artifact = generate_ticket(event, reg, token)
    except TicketingError:
        raise
    except Exception as e:
        logger.exception("Ticket render failed for registration %s", reg.id)
        raise DependencyError("Failed to generate ticket", stage="artifact") from e

    if s3_service.archive_enabled():
        key = s3_service.ticket_key(event.id, f"{reg.id}_{artifact.filename}")
        try:
            artifact.url = s3_service.upload_png(artifact.data, key)
        except (BotoCoreError, ClientError) as e:
            logger.warning("Ticket archive failed for registration %s: %s", reg.id, e)

    logger.info("Ticket downloaded registration=%s event=%s", reg.id, event_id)
    return artifact
