import datetime

import pytest

from domain.models import ImportRow
from services import event_service, registration_service
from utils.db import get_engine, init_schema


@pytest.fixture
def engine(tmp_path):
    eng = get_engine(f"sqlite:///{tmp_path / 'tickets.db'}")
    init_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def event(engine):
    return event_service.create_event(
        engine,
        title="Onam Fest",
        date=datetime.datetime(2026, 9, 5, 18, 0),
        is_public_download=True,
    )


@pytest.fixture
def other_event(engine):
    return event_service.create_event(engine, title="Diwali Night", date=datetime.datetime(2026, 11, 1, 19, 0))


@pytest.fixture
def make_registrations(engine):
    """Insert n registrations for an event and return them, oldest first."""
    def _make(event_id, n, phone="9876543210"):
        rows = [
            ImportRow(name=f"Guest {i}", reg_no=f"R{i:03d}", email=f"guest{i}@example.com", phone=phone)
            for i in range(1, n + 1)
        ]
        registration_service.insert_registrations(engine, event_id, rows)
        return registration_service.select_unsent(engine, event_id)
    return _make
