"""
Audit log for permission-affecting mutations.

Usage Examples:

    from dotmac.entitlements.audit import AuditFilter, AuditLog, EntityType

    audit_log = AuditLog(session_factory)
    async for record in audit_log.query(AuditFilter(entity_type=EntityType.ROLE)):
        print(record.entity_id, record.changes)
"""

from .models import (
    AuditFilter,
    AuditOperation,
    AuditRecord,
    AuditRecordCreate,
    AuditRecordEntry,
    EntityType,
    build_audit_entry,
)
from .service import AuditLog, emit_audit_event

__all__ = [
    "AuditFilter",
    "AuditLog",
    "AuditOperation",
    "AuditRecord",
    "AuditRecordCreate",
    "AuditRecordEntry",
    "EntityType",
    "build_audit_entry",
    "emit_audit_event",
]
