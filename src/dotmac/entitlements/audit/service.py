"""
Append-only audit log for permission-affecting mutations.
"""

from collections.abc import AsyncIterator
from datetime import datetime

import structlog
from sqlalchemy import and_, desc, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dotmac.entitlements.exceptions import StorageError
from dotmac.entitlements.logging import log_audit_event
from dotmac.entitlements.settings import settings

from .models import (
    AuditFilter,
    AuditRecord,
    AuditRecordCreate,
    AuditRecordEntry,
    build_audit_entry,
)

logger = structlog.get_logger(__name__)


def emit_audit_event(record: AuditRecordCreate, record_id: str | None) -> None:
    """Mirror a committed audit record into the structured audit log stream."""
    log_audit_event(
        f"{record.entity_type.value}.{record.operation.value}",
        entity_type=record.entity_type.value,
        entity_id=record.entity_id,
        performed_by=record.performed_by,
        audit_record_id=record_id,
        reason=record.reason,
    )


class AuditLog:
    """Audit log over an async SQLAlchemy session factory.

    ``append`` only fails when storage is unavailable and that failure is
    raised as ``StorageError``. ``query`` returns a fresh lazy sequence on
    every call, newest first.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._batch_size = batch_size or settings.audit.query_batch_size

    async def append(self, record: AuditRecordCreate) -> str:
        """Persist ``record`` and return its id."""
        entry = build_audit_entry(record)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(entry)
                    await session.flush()
                    record_id = entry.id
        except SQLAlchemyError as e:
            logger.error(
                "Audit append failed",
                entity_type=record.entity_type.value,
                entity_id=record.entity_id,
                error=str(e),
            )
            raise StorageError(f"Audit log unavailable: {e}") from e

        emit_audit_event(record, record_id)
        return record_id

    async def get(self, record_id: str) -> AuditRecord | None:
        try:
            async with self._session_factory() as session:
                entry = await session.get(AuditRecordEntry, record_id)
                return AuditRecord.model_validate(entry) if entry else None
        except SQLAlchemyError as e:
            raise StorageError(f"Audit log unavailable: {e}") from e

    def _build_conditions(self, filters: AuditFilter) -> list:
        """Build filter conditions."""
        conditions = []

        if filters.entity_type:
            conditions.append(AuditRecordEntry.entity_type == filters.entity_type.value)

        if filters.entity_id:
            conditions.append(AuditRecordEntry.entity_id == filters.entity_id)

        if filters.performed_by:
            conditions.append(AuditRecordEntry.performed_by == filters.performed_by)

        if filters.start_date:
            conditions.append(AuditRecordEntry.timestamp >= filters.start_date)

        if filters.end_date:
            conditions.append(AuditRecordEntry.timestamp <= filters.end_date)

        return conditions

    async def query(self, filters: AuditFilter | None = None) -> AsyncIterator[AuditRecord]:
        """Stream matching records ordered by timestamp descending.

        Pages are fetched with a (timestamp, id) keyset so records appended
        while the caller iterates cannot shift or repeat earlier results.
        """
        conditions = self._build_conditions(filters or AuditFilter())
        cursor: tuple[datetime, str] | None = None

        while True:
            page_conditions = list(conditions)
            if cursor is not None:
                last_timestamp, last_id = cursor
                page_conditions.append(
                    or_(
                        AuditRecordEntry.timestamp < last_timestamp,
                        and_(
                            AuditRecordEntry.timestamp == last_timestamp,
                            AuditRecordEntry.id < last_id,
                        ),
                    )
                )

            query = (
                select(AuditRecordEntry)
                .where(*page_conditions)
                .order_by(desc(AuditRecordEntry.timestamp), desc(AuditRecordEntry.id))
                .limit(self._batch_size)
            )

            try:
                async with self._session_factory() as session:
                    result = await session.execute(query)
                    rows = list(result.scalars().all())
            except SQLAlchemyError as e:
                logger.error("Audit query failed", error=str(e))
                raise StorageError(f"Audit log unavailable: {e}") from e

            for row in rows:
                yield AuditRecord.model_validate(row)

            if len(rows) < self._batch_size:
                return
            cursor = (rows[-1].timestamp, rows[-1].id)
