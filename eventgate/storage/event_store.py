"""Relational event store with idempotent upsert by event id."""
import asyncio
import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

import orjson
import structlog
from sqlalchemy import and_, delete, desc, func, or_, select, text, update
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from ..config import get_settings
from ..errors import InvalidCursor, StoreError, StoreUnavailable
from ..event_models import RecordStatus, StoredEventRecord, ValidatedEvent, utcnow
from .schema import events, metadata

log = structlog.get_logger()

ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}

MAX_PAGE_SIZE = 500


def async_database_url(database_url: str) -> str:
    """Swap a plain ``sqlite://`` or ``postgresql://`` URL for its asyncio driver."""
    scheme, sep, rest = database_url.partition("://")
    if not sep or "+" in scheme or scheme not in ASYNC_DRIVERS:
        return database_url
    return f"{ASYNC_DRIVERS[scheme]}://{rest}"


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url or "mode=memory" in url)


def create_store_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, sharing one connection for in-memory SQLite."""
    url = async_database_url(database_url)
    if _is_memory_sqlite(url):
        # Coroutines share the single connection; no rollback on checkin
        return create_async_engine(url, poolclass=StaticPool, pool_reset_on_return=None)
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(url, pool_pre_ping=True)


def encode_cursor(record: StoredEventRecord) -> str:
    """Opaque position after ``record`` in newest-first order."""
    raw = orjson.dumps({"event_id": record.event_id, "created_at": record.created_at.isoformat()})
    return base64.urlsafe_b64encode(raw).decode()


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    """
    Raises:
        InvalidCursor: If ``cursor`` was not produced by ``encode_cursor``
    """
    try:
        data = orjson.loads(base64.urlsafe_b64decode(cursor.encode()))
        created_at = datetime.fromisoformat(data["created_at"])
        event_id = data["event_id"]
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidCursor(cursor=cursor) from e
    if not isinstance(event_id, str):
        raise InvalidCursor(cursor=cursor)
    return _aware(created_at), event_id


@dataclass
class EventFilter:
    """Inbox filters. Every field narrows the result; empty means no filter."""

    statuses: Sequence[RecordStatus] = ()
    created_from: datetime | None = None
    created_to: datetime | None = None
    min_retries: int | None = None
    max_retries: int | None = None
    # Top-level metadata key -> expected string value
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def active(self) -> int:
        return (
            len(self.statuses)
            + sum(v is not None for v in (self.created_from, self.created_to, self.min_retries, self.max_retries))
            + len(self.metadata)
        )

    def clauses(self) -> list:
        where = []
        if self.statuses:
            where.append(events.c.status.in_([s.value for s in self.statuses]))
        if self.created_from is not None:
            where.append(events.c.created_at >= _utc(self.created_from))
        if self.created_to is not None:
            where.append(events.c.created_at <= _utc(self.created_to))
        if self.min_retries is not None:
            where.append(events.c.retry_count >= self.min_retries)
        if self.max_retries is not None:
            where.append(events.c.retry_count <= self.max_retries)
        for key, value in self.metadata.items():
            where.append(events.c["metadata"][key].as_string() == value)
        return where


class EventStore:
    """
    Durable projection of events, keyed by ``event_id``.

    Re-storing an id replaces the row in place; the table never holds more
    than one row per identity.
    """

    def __init__(self, engine: AsyncEngine | None = None, database_url: str | None = None):
        if engine is None:
            engine = create_store_engine(database_url or get_settings().DATABASE_URL)
        self._engine = engine
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
            self._schema_ready = True

    def _guard(self, operation: str, exc: SQLAlchemyError, **context: Any) -> StoreError:
        log.error("store.operation_failed", operation=operation, error=str(exc), **context)
        if isinstance(exc, (OperationalError, InterfaceError)):
            return StoreUnavailable(f"Event store unavailable during {operation}: {exc.__class__.__name__}")
        return StoreError(f"Event store error during {operation}: {exc.__class__.__name__}")

    def _upsert_statement(self, values: Mapping[str, Any], changes: Mapping[str, Any]):
        """Native INSERT .. ON CONFLICT for dialects that support it, else None."""
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            return None
        stmt = insert(events).values(**values)
        return stmt.on_conflict_do_update(index_elements=[events.c.event_id], set_=dict(changes))

    async def store(self, event: ValidatedEvent) -> StoredEventRecord:
        """
        Insert or replace the row for ``event.event_id``.

        New rows start as ``pending`` with ``created_at == updated_at``.
        Existing rows keep ``created_at`` and have payload, metadata,
        retry count, status and ``updated_at`` overwritten.

        Raises:
            StoreUnavailable: If the database cannot be reached (retryable)
            StoreError: For any other database failure
        """
        now = utcnow()
        changes = {
            "payload": event.payload,
            "metadata": event.metadata,
            "status": RecordStatus.PENDING.value,
            "updated_at": now,
            "retry_count": event.retry_attempt,
        }
        values = {"event_id": event.event_id, "created_at": now, **changes}

        try:
            await self._ensure_schema()
            async with self._engine.begin() as conn:
                stmt = self._upsert_statement(values, changes)
                if stmt is not None:
                    await conn.execute(stmt)
                else:
                    existing = (
                        await conn.execute(select(events.c.event_id).where(events.c.event_id == event.event_id))
                    ).first()
                    if existing is None:
                        await conn.execute(events.insert().values(**values))
                    else:
                        await conn.execute(
                            update(events).where(events.c.event_id == event.event_id).values(**changes)
                        )
                result = await conn.execute(select(events).where(events.c.event_id == event.event_id))
                row = result.mappings().one()
        except SQLAlchemyError as e:
            raise self._guard("store", e, event_id=event.event_id) from e

        record = _to_record(row)
        log.info(
            "store.upserted",
            event_id=record.event_id,
            status=record.status.value,
            retry_count=record.retry_count,
        )
        return record

    async def mark_status(self, event_id: str, status: RecordStatus) -> StoredEventRecord | None:
        """
        Set the status of an existing row. ``stored_at`` is stamped on success.

        Returns:
            The updated record, or None if no row exists for ``event_id``
        """
        now = utcnow()
        changes: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status is RecordStatus.SUCCESS:
            changes["stored_at"] = now
        try:
            await self._ensure_schema()
            async with self._engine.begin() as conn:
                await conn.execute(update(events).where(events.c.event_id == event_id).values(**changes))
                result = await conn.execute(select(events).where(events.c.event_id == event_id))
                row = result.mappings().one_or_none()
        except SQLAlchemyError as e:
            raise self._guard("mark_status", e, event_id=event_id) from e
        return _to_record(row) if row is not None else None

    async def get(self, event_id: str) -> StoredEventRecord | None:
        try:
            await self._ensure_schema()
            async with self._engine.connect() as conn:
                result = await conn.execute(select(events).where(events.c.event_id == event_id))
                row = result.mappings().one_or_none()
        except SQLAlchemyError as e:
            raise self._guard("get", e, event_id=event_id) from e
        return _to_record(row) if row is not None else None

    async def list_recent(
        self,
        limit: int = 50,
        status: RecordStatus | None = None,
        filters: EventFilter | None = None,
        cursor: str | None = None,
    ) -> Iterable[StoredEventRecord]:
        """
        List records newest first.

        Args:
            limit: Page size, clamped to 1..500
            status: Single status shorthand, combined with ``filters``
            filters: Inbox filters
            cursor: Value of ``encode_cursor`` for the last record of the
                previous page; the page starts strictly after it

        Raises:
            InvalidCursor: If ``cursor`` cannot be decoded
        """
        stmt = select(events).order_by(desc(events.c.created_at), desc(events.c.event_id))
        where = _where(status, filters)
        if cursor is not None:
            created_at, event_id = decode_cursor(cursor)
            where.append(
                or_(
                    events.c.created_at < created_at,
                    and_(events.c.created_at == created_at, events.c.event_id < event_id),
                )
            )
        if where:
            stmt = stmt.where(*where)
        stmt = stmt.limit(max(1, min(limit, MAX_PAGE_SIZE)))
        try:
            await self._ensure_schema()
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except SQLAlchemyError as e:
            raise self._guard("list_recent", e) from e
        return [_to_record(row) for row in rows]

    async def count(self, status: RecordStatus | None = None, filters: EventFilter | None = None) -> int:
        stmt = select(func.count()).select_from(events)
        where = _where(status, filters)
        if where:
            stmt = stmt.where(*where)
        try:
            await self._ensure_schema()
            async with self._engine.connect() as conn:
                return (await conn.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            raise self._guard("count", e) from e

    async def purge_finalized(self, older_than: datetime) -> int:
        """
        Delete finalized (success/failure) rows created before ``older_than``.

        Operator retention hook; the processing pipeline never deletes rows.

        Returns:
            Number of rows deleted
        """
        try:
            await self._ensure_schema()
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    delete(events).where(
                        events.c.created_at < older_than,
                        events.c.status.in_([RecordStatus.SUCCESS.value, RecordStatus.FAILURE.value]),
                    )
                )
        except SQLAlchemyError as e:
            raise self._guard("purge_finalized", e) from e
        log.info("store.purged", deleted=result.rowcount, older_than=older_than.isoformat())
        return result.rowcount

    async def health_check(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            log.warning("store.health_check_failed", error=str(e))
            return False

    async def close(self):
        await self._engine.dispose()


def _where(status: RecordStatus | None, filters: EventFilter | None) -> list:
    where = filters.clauses() if filters is not None else []
    if status is not None:
        where.append(events.c.status == status.value)
    return where


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_record(row: Mapping[str, Any]) -> StoredEventRecord:
    return StoredEventRecord(
        event_id=row["event_id"],
        status=RecordStatus(row["status"]),
        payload=row["payload"],
        metadata=row["metadata"],
        created_at=_aware(row["created_at"]),
        updated_at=_aware(row["updated_at"]),
        stored_at=_aware(row["stored_at"]),
        retry_count=row["retry_count"] or 0,
    )
