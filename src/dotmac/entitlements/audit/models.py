"""
Audit records for permission-affecting mutations.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dotmac.entitlements.db import Base


class EntityType(str, Enum):
    """Kinds of records an audit entry can describe."""

    MODULE = "module"
    ROLE = "role"
    SUBSCRIPTION = "subscription"
    ORGANIZATION = "organization"
    USER = "user"


class AuditOperation(str, Enum):
    """Mutation kinds."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    REVOKE = "revoke"


class AuditRecordEntry(Base):
    """Append-only audit table. Rows are never updated or deleted by the engine."""

    __tablename__ = "entitlement_audit_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    changes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False, index=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_entitlement_audit_entity", "entity_type", "entity_id"),
        Index("ix_entitlement_audit_timestamp_id", "timestamp", "id"),
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AuditRecordCreate(BaseModel):
    """Input for appending an audit record."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    entity_type: EntityType
    entity_id: str = Field(min_length=1, max_length=100)
    operation: AuditOperation
    changes: dict[str, Any] = Field(default_factory=dict)
    performed_by: str = Field(min_length=1, max_length=255)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)


class AuditRecord(BaseModel):
    """Immutable audit record as read back from the log."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    entity_type: EntityType
    entity_id: str
    operation: AuditOperation
    changes: dict[str, Any]
    performed_by: str
    timestamp: datetime
    reason: str | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)


class AuditFilter(BaseModel):
    """Audit log query filter; every field is optional."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    entity_type: EntityType | None = None
    entity_id: str | None = None
    performed_by: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_range(self) -> "AuditFilter":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


def build_audit_entry(record: AuditRecordCreate) -> AuditRecordEntry:
    """ORM row for ``record`` with its id assigned before insert."""
    return AuditRecordEntry(
        id=str(uuid4()),
        entity_type=record.entity_type.value,
        entity_id=record.entity_id,
        operation=record.operation.value,
        changes=record.changes,
        performed_by=record.performed_by,
        timestamp=record.timestamp,
        reason=record.reason,
    )
