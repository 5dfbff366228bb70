"""Bulk, audited mutation of role grants and plan ceilings."""

from .models import (
    BulkPermissionUpdate,
    BulkUpdateResult,
    ModuleUpdate,
    TargetType,
    UpdateOperation,
)

__all__ = [
    "BulkPermissionUpdate",
    "BulkUpdateResult",
    "ModuleUpdate",
    "TargetType",
    "UpdateOperation",
]
