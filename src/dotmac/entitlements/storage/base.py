"""
Storage interface consumed by the entitlement engine.

The engine never assumes a backing technology; it reads and writes only
through this protocol. Implementations must:

- make each ``update_*`` call atomic for its target, applying it only when
  the stored version still equals ``expected_version`` (``ConcurrentUpdateError``
  otherwise) and incrementing the version on success
- persist the ``audit`` record passed to a write in the same transaction
  as the write, returning its id
- write ``unrecognized`` action strings back next to the recognized ones
- raise ``StorageError`` when the store is unreachable or rejects a write
"""

from typing import Protocol, runtime_checkable

from dotmac.entitlements.audit.models import AuditRecordCreate
from dotmac.entitlements.modules.models import ActionMap, ModuleDefinition
from dotmac.entitlements.permissions.models import (
    Organization,
    Role,
    SubscriptionPlan,
    User,
)


@runtime_checkable
class PermissionStore(Protocol):
    """Read/write access to modules, plans, organizations, roles and users."""

    # Modules
    async def list_modules(self) -> list[ModuleDefinition]: ...  # pragma: no cover
    async def save_module(
        self, module: ModuleDefinition, *, audit: AuditRecordCreate | None = None
    ) -> str | None: ...  # pragma: no cover
    async def delete_module(
        self, module_id: str, *, audit: AuditRecordCreate | None = None
    ) -> bool: ...  # pragma: no cover

    # Lookups by id
    async def get_user(self, user_id: str) -> User | None: ...  # pragma: no cover
    async def get_organization(self, organization_id: str) -> Organization | None: ...  # pragma: no cover
    async def get_role(self, role_id: str) -> Role | None: ...  # pragma: no cover
    async def get_plan(self, plan_id: str) -> SubscriptionPlan | None: ...  # pragma: no cover

    # Relationship queries
    async def list_roles_for_plan(self, plan_id: str) -> list[Role]: ...  # pragma: no cover
    async def list_organization_ids_for_plan(self, plan_id: str) -> list[str]: ...  # pragma: no cover

    # Administrative upserts
    async def save_plan(self, plan: SubscriptionPlan) -> None: ...  # pragma: no cover
    async def save_organization(self, organization: Organization) -> None: ...  # pragma: no cover
    async def save_role(self, role: Role) -> None: ...  # pragma: no cover
    async def save_user(self, user: User) -> None: ...  # pragma: no cover

    # Versioned per-target action map writes
    async def update_role_permissions(
        self,
        role_id: str,
        permissions: ActionMap,
        *,
        expected_version: int | None = None,
        audit: AuditRecordCreate | None = None,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> str | None: ...  # pragma: no cover
    async def update_plan_modules(
        self,
        plan_id: str,
        modules: ActionMap,
        *,
        expected_version: int | None = None,
        audit: AuditRecordCreate | None = None,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> str | None: ...  # pragma: no cover
