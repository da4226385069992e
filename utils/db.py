# utils/db.py
import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, MetaData, String, Table, Text,
    UniqueConstraint, create_engine,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from config import SQLALCHEMY_URL

metadata = MetaData()

events = Table(
    "events", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("date", DateTime, nullable=False),
    Column("is_public_download", Boolean, nullable=False, default=False),
    Column("ticket_template", JSON, nullable=True),
    Column("email_subject", Text, nullable=True),
    Column("email_body", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
)

registrations = Table(
    "registrations", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("reg_no", String(128), nullable=False),
    Column("email", String(320), nullable=False),  # always stored lowercase
    Column("phone", String(32), nullable=False, default=""),
    Column("token", String(128), nullable=True, unique=True),
    Column("download_count", Integer, nullable=False, default=0),
    Column("rate_limit_window_start", DateTime, nullable=True),
    Column("rate_limit_count", Integer, nullable=False, default=0),
    Column("delivery_state", String(16), nullable=False, default="pending"),
    Column("delivery_sent_at", DateTime, nullable=True),
    Column("delivery_error", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    UniqueConstraint("event_id", "email", name="uq_registration_event_email"),
    UniqueConstraint("event_id", "reg_no", name="uq_registration_event_reg_no"),
)

attendance = Table(
    "attendance", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_id", Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("email", String(320), nullable=False),
    Column("marked_at", DateTime, nullable=False),
    Column("source", String(16), nullable=False),
    UniqueConstraint("event_id", "email", name="uq_attendance_event_email"),
)

sync_handoffs = Table(
    "sync_handoffs", metadata,
    Column("token", String(128), primary_key=True),
    Column("payload", JSON, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False, index=True),
)


def get_engine(url: str = SQLALCHEMY_URL) -> Engine:
    return create_engine(url, pool_pre_ping=True)


def init_schema(engine: Engine) -> None:
    metadata.create_all(engine)


def utcnow() -> datetime.datetime:
    """Naive UTC; every DateTime column stores naive UTC."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def insert_ignore(conn, table: Table):
    """INSERT ... ON CONFLICT DO NOTHING for the connection's dialect.

    A conflicting row reports rowcount 0; any other failure still raises.
    """
    name = conn.dialect.name
    if name == "postgresql":
        return postgresql.insert(table).on_conflict_do_nothing()
    if name == "sqlite":
        return sqlite.insert(table).on_conflict_do_nothing()
    raise RuntimeError(f"insert_ignore not supported for dialect {name!r}")
