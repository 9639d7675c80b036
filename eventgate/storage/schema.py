"""SQLAlchemy table definitions for stored events."""
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
)

metadata = MetaData()

events = Table(
    "events",
    metadata,
    # Keyed by the caller-supplied event id, not an autoincrement id
    Column("event_id", String(255), primary_key=True),
    Column("payload", JSON, nullable=False),
    Column("metadata", JSON, nullable=True),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("stored_at", DateTime(timezone=True), nullable=True),
    Column("retry_count", Integer, nullable=False, default=0),
    CheckConstraint("status IN ('pending', 'success', 'failure')", name="ck_events_status"),
)

Index("idx_events_status", events.c.status)
Index("idx_events_created_at", events.c.created_at)
Index("idx_events_status_created", events.c.status, events.c.created_at)
