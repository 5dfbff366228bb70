"""
Permission records and derived types.

The resolver lives in ``dotmac.entitlements.permissions.resolver`` and the
effective-permission cache in ``dotmac.entitlements.permissions.cache``.
"""

from .models import (
    ConflictType,
    EffectivePermission,
    ModulePermissionSummary,
    Organization,
    PermissionCheck,
    PermissionConflict,
    ResolutionResult,
    RestrictedBy,
    Role,
    SubscriptionPlan,
    User,
    UserPermissionSummary,
)

__all__ = [
    "ConflictType",
    "EffectivePermission",
    "ModulePermissionSummary",
    "Organization",
    "PermissionCheck",
    "PermissionConflict",
    "ResolutionResult",
    "RestrictedBy",
    "Role",
    "SubscriptionPlan",
    "User",
    "UserPermissionSummary",
]
