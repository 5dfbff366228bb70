"""
DotMac Entitlements - multi-tenant permission resolution.

Answers "may user U perform action A on module M?" from three layers:
- Subscription plans set a tenant-wide ceiling per module
- Roles grant actions to users inside an organization
- A user holds exactly one role in one organization

Effective permissions are the intersection of plan and role. Bulk updates
to roles and plans are validated against the module dependency graph and
recorded in an append-only audit log.
"""

from .exceptions import (
    ConcurrentUpdateError,
    ConfigurationError,
    EntitlementsError,
    EntityNotFoundError,
    StorageError,
    ValidationError,
)
from .modules import Action, ModuleDefinition, ModuleGraph
from .permissions import (
    ConflictType,
    EffectivePermission,
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
from .service import EntitlementsService

__version__ = "1.0.0"


def get_version() -> str:
    return __version__


__all__ = [
    "Action",
    "ConcurrentUpdateError",
    "ConfigurationError",
    "ConflictType",
    "EffectivePermission",
    "EntitlementsError",
    "EntitlementsService",
    "EntityNotFoundError",
    "ModuleDefinition",
    "ModuleGraph",
    "Organization",
    "PermissionCheck",
    "PermissionConflict",
    "ResolutionResult",
    "RestrictedBy",
    "Role",
    "StorageError",
    "SubscriptionPlan",
    "User",
    "UserPermissionSummary",
    "ValidationError",
    "get_version",
]
