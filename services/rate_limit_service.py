# services/rate_limit_service.py
"""
Fixed-window counter on the registration row.

    now - window_start > window  → new window (start=now, count=1), allow
    count >= limit               → deny, nothing written
    otherwise                    → count += 1, allow

Each branch is a single guarded UPDATE, so concurrent requests for the same
registration cannot both slip through the last slot. A burst straddling a window
boundary can still see up to 2x the limit; that is accepted.
"""
import datetime
import logging

from sqlalchemy import or_, select, update
from sqlalchemy.engine import Engine

from domain.errors import NotFoundError
from domain.models import RateDecision, Registration
from utils.db import registrations

logger = logging.getLogger(__name__)


def check_and_increment(
    engine: Engine,
    registration: Registration,
    now: datetime.datetime,
    window_ms: int,
    limit: int,
) -> RateDecision:
    window = datetime.timedelta(milliseconds=window_ms)
    cutoff = now - window
    reg = registrations.c

    with engine.begin() as conn:
        reset = conn.execute(
            update(registrations)
            .where(reg.id == registration.id)
            .where(or_(reg.rate_limit_window_start.is_(None), reg.rate_limit_window_start < cutoff))
            .values(
                rate_limit_window_start=now,
                rate_limit_count=1,
                download_count=reg.download_count + 1,
            )
        )
        if reset.rowcount == 1:
            return RateDecision(allowed=True)

        bumped = conn.execute(
            update(registrations)
            .where(reg.id == registration.id, reg.rate_limit_count < limit)
            .values(
                rate_limit_count=reg.rate_limit_count + 1,
                download_count=reg.download_count + 1,
            )
        )
        if bumped.rowcount == 1:
            return RateDecision(allowed=True)

        window_start = conn.execute(
            select(reg.rate_limit_window_start).where(reg.id == registration.id)
        ).scalar_one_or_none()

    if window_start is None:
        raise NotFoundError("Registration not found")

    retry_after = max(0.0, (window_start + window - now).total_seconds())
    logger.info("Rate limit hit for registration %s (retry in %.1fs)", registration.id, retry_after)
    return RateDecision(allowed=False, retry_after=retry_after)
