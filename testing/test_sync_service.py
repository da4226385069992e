import datetime

import pytest

from domain.errors import NotFoundError, ValidationError
from services import sync_service

T0 = datetime.datetime(2026, 9, 5, 12, 0, 0)


def test_register_push_poll(engine):
    token = sync_service.register_sync_token(engine, "abc123", now=T0)["syncToken"]
    assert sync_service.poll_sync_data(engine, token, now=T0) == {"status": "waiting"}

    rows = [{"name": "Meera", "id": "P1", "email": "meera@x.com"}]
    sync_service.push_sync_data(engine, token, rows, now=T0 + datetime.timedelta(seconds=30))

    ready = sync_service.poll_sync_data(engine, token, now=T0 + datetime.timedelta(seconds=31))
    assert ready == {"status": "ready", "data": rows}
    # consumed by the first successful poll
    assert sync_service.poll_sync_data(engine, token, now=T0 + datetime.timedelta(seconds=32)) == {"status": "expired"}


def test_generated_token_when_none_given(engine):
    registered = sync_service.register_sync_token(engine, now=T0)
    assert registered["syncToken"]
    assert registered["expiresAt"] == T0 + datetime.timedelta(seconds=300)


def test_entries_expire(engine):
    sync_service.register_sync_token(engine, "abc123", now=T0, ttl_seconds=60)
    later = T0 + datetime.timedelta(seconds=61)
    with pytest.raises(NotFoundError):
        sync_service.push_sync_data(engine, "abc123", [{"name": "Late"}], now=later)
    assert sync_service.poll_sync_data(engine, "abc123", now=later) == {"status": "expired"}


def test_push_to_unknown_token(engine):
    with pytest.raises(NotFoundError):
        sync_service.push_sync_data(engine, "never-registered", [], now=T0)


def test_duplicate_registration_rejected(engine):
    sync_service.register_sync_token(engine, "abc123", now=T0)
    with pytest.raises(ValidationError):
        sync_service.register_sync_token(engine, "abc123", now=T0)


def test_token_reusable_after_expiry(engine):
    sync_service.register_sync_token(engine, "abc123", now=T0, ttl_seconds=10)
    again = sync_service.register_sync_token(engine, "abc123", now=T0 + datetime.timedelta(seconds=11))
    assert again["syncToken"] == "abc123"
