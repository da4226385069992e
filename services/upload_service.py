# services/upload_service.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine

from domain.models import ImportResult
from services import event_service, registration_service
from utils.upload_utils import classify_rows, read_tabular

logger = logging.getLogger(__name__)


def preview_records(engine: Engine, event_id: int, records: List[Dict[str, Any]]) -> ImportResult:
    """Classify already-parsed rows against the event's current registrations. Read-only."""
    event_service.get_event(engine, event_id)
    existing_emails, existing_reg_nos = registration_service.load_existing_keys(engine, event_id)
    result = classify_rows(records, existing_emails, existing_reg_nos)
    logger.info("Import preview event=%s: %s", event_id, result.stats)
    return result


def preview_upload(engine: Engine, event_id: int, data: bytes, filename: Optional[str] = None) -> ImportResult:
    """
    Orchestrates: read → canonicalize headers → validate → dedup (file, then store).
    Nothing is written; `ingest_upload` does the same and inserts the valid rows.
    """
    return preview_records(engine, event_id, read_tabular(data, filename))


def ingest_upload(engine: Engine, event_id: int, data: bytes, filename: Optional[str] = None) -> Dict[str, Any]:
    """Preview then insert the valid rows in one call."""
    result = preview_upload(engine, event_id, data, filename)
    inserted = registration_service.insert_registrations(engine, event_id, result.valid)
    summary = result.to_dict()
    summary["insertedCount"] = inserted
    return summary
