"""
SQLAlchemy implementation of the permission store.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dotmac.entitlements.audit.models import AuditRecordCreate, build_audit_entry
from dotmac.entitlements.exceptions import (
    ConcurrentUpdateError,
    EntityNotFoundError,
    StorageError,
)
from dotmac.entitlements.logging import get_logger
from dotmac.entitlements.modules.models import (
    ActionMap,
    ModuleDefinition,
    normalize_action_map,
    serialize_action_map,
    sort_actions,
)
from dotmac.entitlements.permissions.models import (
    Organization,
    Role,
    SubscriptionPlan,
    User,
)
from dotmac.entitlements.storage.orm import (
    ModuleRecord,
    OrganizationRecord,
    RoleRecord,
    SubscriptionPlanRecord,
    UserRecord,
)

logger = get_logger(__name__)


def _to_module(row: ModuleRecord) -> ModuleDefinition:
    return ModuleDefinition(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        category=row.category,
        available_actions=normalize_action_map({row.id: row.available_actions})[row.id],
        dependencies=frozenset(row.dependencies or ()),
        is_core=row.is_core,
        is_active=row.is_active,
        order=row.sort_order,
    )


def _to_plan(row: SubscriptionPlanRecord) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row.id,
        name=row.name,
        modules=row.modules or {},
        max_users=row.max_users,
        is_active=row.is_active,
        version=row.version,
    )


def _to_role(row: RoleRecord) -> Role:
    return Role(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        description=row.description,
        permissions=row.permissions or {},
        is_active=row.is_active,
        version=row.version,
    )


def _to_organization(row: OrganizationRecord) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        subscription_plan_id=row.subscription_plan_id,
        is_active=row.is_active,
    )


def _to_user(row: UserRecord) -> User:
    return User(
        id=row.id,
        organization_id=row.organization_id,
        role_id=row.role_id,
        is_active=row.is_active,
    )


class SQLAlchemyPermissionStore:
    """Permission store backed by an async SQLAlchemy session factory.

    Every call runs in its own session and transaction. Audit records passed
    to a write are inserted in that same transaction, so a mutation and its
    audit record commit or roll back together.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Session inside a transaction; SQLAlchemy failures become StorageError."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Storage operation failed", operation=operation, error=str(e))
            raise StorageError(f"Storage operation '{operation}' failed: {e}") from e

    @staticmethod
    async def _add_audit(session: AsyncSession, audit: AuditRecordCreate | None) -> str | None:
        if audit is None:
            return None
        entry = build_audit_entry(audit)
        session.add(entry)
        await session.flush()
        return entry.id

    # ==================== Modules ====================

    async def list_modules(self) -> list[ModuleDefinition]:
        async with self._transaction("list_modules") as session:
            result = await session.execute(select(ModuleRecord))
            rows = result.scalars().all()
        return sorted((_to_module(row) for row in rows), key=lambda m: (m.order, m.id))

    async def save_module(
        self, module: ModuleDefinition, *, audit: AuditRecordCreate | None = None
    ) -> str | None:
        async with self._transaction("save_module") as session:
            row = await session.get(ModuleRecord, module.id)
            if row is None:
                row = ModuleRecord(id=module.id)
                session.add(row)
            row.name = module.name
            row.display_name = module.display_name
            row.description = module.description
            row.category = module.category
            row.available_actions = [a.value for a in sort_actions(module.available_actions)]
            row.dependencies = sorted(module.dependencies)
            row.is_core = module.is_core
            row.is_active = module.is_active
            row.sort_order = module.order
            return await self._add_audit(session, audit)

    async def delete_module(self, module_id: str, *, audit: AuditRecordCreate | None = None) -> bool:
        """Delete a module; ``audit`` is recorded only when a row was removed."""
        async with self._transaction("delete_module") as session:
            result = await session.execute(delete(ModuleRecord).where(ModuleRecord.id == module_id))
            deleted = bool(result.rowcount)
            if deleted:
                await self._add_audit(session, audit)
        return deleted

    # ==================== Lookups ====================

    async def get_user(self, user_id: str) -> User | None:
        async with self._transaction("get_user") as session:
            row = await session.get(UserRecord, user_id)
            return _to_user(row) if row else None

    async def get_organization(self, organization_id: str) -> Organization | None:
        async with self._transaction("get_organization") as session:
            row = await session.get(OrganizationRecord, organization_id)
            return _to_organization(row) if row else None

    async def get_role(self, role_id: str) -> Role | None:
        async with self._transaction("get_role") as session:
            row = await session.get(RoleRecord, role_id)
            return _to_role(row) if row else None

    async def get_plan(self, plan_id: str) -> SubscriptionPlan | None:
        async with self._transaction("get_plan") as session:
            row = await session.get(SubscriptionPlanRecord, plan_id)
            return _to_plan(row) if row else None

    async def list_roles_for_plan(self, plan_id: str) -> list[Role]:
        """Roles of every active organization subscribed to ``plan_id``."""
        query = (
            select(RoleRecord)
            .join(OrganizationRecord, OrganizationRecord.id == RoleRecord.organization_id)
            .where(OrganizationRecord.subscription_plan_id == plan_id)
            .where(OrganizationRecord.is_active == True)  # noqa: E712
            .order_by(RoleRecord.id)
        )
        async with self._transaction("list_roles_for_plan") as session:
            result = await session.execute(query)
            return [_to_role(row) for row in result.scalars().all()]

    async def list_organization_ids_for_plan(self, plan_id: str) -> list[str]:
        query = (
            select(OrganizationRecord.id)
            .where(OrganizationRecord.subscription_plan_id == plan_id)
            .order_by(OrganizationRecord.id)
        )
        async with self._transaction("list_organization_ids_for_plan") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # ==================== Administrative upserts ====================

    async def save_plan(self, plan: SubscriptionPlan) -> None:
        async with self._transaction("save_plan") as session:
            row = await session.get(SubscriptionPlanRecord, plan.id)
            if row is None:
                row = SubscriptionPlanRecord(id=plan.id, version=0)
                session.add(row)
            else:
                row.version += 1
            row.name = plan.name
            row.modules = serialize_action_map(plan.modules, plan.unrecognized_actions)
            row.max_users = plan.max_users
            row.is_active = plan.is_active

    async def save_organization(self, organization: Organization) -> None:
        async with self._transaction("save_organization") as session:
            row = await session.get(OrganizationRecord, organization.id)
            if row is None:
                row = OrganizationRecord(id=organization.id)
                session.add(row)
            row.name = organization.name
            row.subscription_plan_id = organization.subscription_plan_id
            row.is_active = organization.is_active

    async def save_role(self, role: Role) -> None:
        async with self._transaction("save_role") as session:
            row = await session.get(RoleRecord, role.id)
            if row is None:
                row = RoleRecord(id=role.id, version=0)
                session.add(row)
            else:
                row.version += 1
            row.organization_id = role.organization_id
            row.name = role.name
            row.description = role.description
            row.permissions = serialize_action_map(role.permissions, role.unrecognized_actions)
            row.is_active = role.is_active

    async def save_user(self, user: User) -> None:
        async with self._transaction("save_user") as session:
            row = await session.get(UserRecord, user.id)
            if row is None:
                row = UserRecord(id=user.id)
                session.add(row)
            row.organization_id = user.organization_id
            row.role_id = user.role_id
            row.is_active = user.is_active

    # ==================== Action map writes ====================

    async def _write_action_map(
        self,
        operation: str,
        entity_type: str,
        model: type[RoleRecord] | type[SubscriptionPlanRecord],
        target_id: str,
        values: dict[str, Any],
        expected_version: int | None,
        audit: AuditRecordCreate | None,
    ) -> str | None:
        """Replace a target's action map, optionally only at ``expected_version``.

        The UPDATE, the version bump and the audit insert share one
        transaction.
        """
        conditions = [model.id == target_id]
        if expected_version is not None:
            conditions.append(model.version == expected_version)
        statement = (
            update(model)
            .where(*conditions)
            .values(**values, version=model.version + 1, updated_at=datetime.now(UTC))
        )
        async with self._transaction(operation) as session:
            result = await session.execute(statement)
            if not result.rowcount:
                current = await session.scalar(select(model.version).where(model.id == target_id))
                if current is None:
                    raise EntityNotFoundError(entity_type, target_id)
                raise ConcurrentUpdateError(entity_type, target_id, expected_version)
            return await self._add_audit(session, audit)

    async def update_role_permissions(
        self,
        role_id: str,
        permissions: ActionMap,
        *,
        expected_version: int | None = None,
        audit: AuditRecordCreate | None = None,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> str | None:
        return await self._write_action_map(
            "update_role_permissions",
            "role",
            RoleRecord,
            role_id,
            {"permissions": serialize_action_map(permissions, unrecognized)},
            expected_version,
            audit,
        )

    async def update_plan_modules(
        self,
        plan_id: str,
        modules: ActionMap,
        *,
        expected_version: int | None = None,
        audit: AuditRecordCreate | None = None,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> str | None:
        return await self._write_action_map(
            "update_plan_modules",
            "subscription",
            SubscriptionPlanRecord,
            plan_id,
            {"modules": serialize_action_map(modules, unrecognized)},
            expected_version,
            audit,
        )
