"""
Entitlement service: the operations exposed to API and UI collaborators.
"""

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dotmac.entitlements.audit.models import (
    AuditFilter,
    AuditOperation,
    AuditRecord,
    AuditRecordCreate,
    EntityType,
)
from dotmac.entitlements.audit.service import AuditLog, emit_audit_event
from dotmac.entitlements.bulk.coordinator import BulkUpdateCoordinator, Clock, utc_now
from dotmac.entitlements.bulk.models import BulkPermissionUpdate, BulkUpdateResult
from dotmac.entitlements.db import create_session_factory
from dotmac.entitlements.exceptions import ValidationError
from dotmac.entitlements.logging import get_logger
from dotmac.entitlements.modules.graph import ModuleGraph
from dotmac.entitlements.modules.models import Action, ModuleDefinition
from dotmac.entitlements.permissions.cache import EffectivePermissionCache
from dotmac.entitlements.permissions.models import (
    ConflictType,
    PermissionCheck,
    PermissionConflict,
    ResolutionResult,
    UserPermissionSummary,
)
from dotmac.entitlements.permissions.resolver import PermissionResolver, PermissionSnapshot
from dotmac.entitlements.permissions.templates import PermissionTemplate
from dotmac.entitlements.settings import settings
from dotmac.entitlements.storage.base import PermissionStore
from dotmac.entitlements.storage.sqlalchemy_store import SQLAlchemyPermissionStore

logger = get_logger(__name__)


class EntitlementsService:
    """Facade over the store, resolver, coordinator, cache and audit log."""

    def __init__(
        self,
        store: PermissionStore,
        audit_log: AuditLog | None = None,
        *,
        cache: EffectivePermissionCache | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.audit_log = audit_log
        self.cache = cache
        self._clock = clock
        self._resolver = PermissionResolver()
        self._coordinator = BulkUpdateCoordinator(store, audit_log, cache=cache, clock=clock)

    # ==================== Snapshots ====================

    async def load_module_graph(self) -> ModuleGraph:
        return ModuleGraph(await self.store.list_modules())

    async def load_snapshot(self, user_id: str, graph: ModuleGraph | None = None) -> PermissionSnapshot:
        """Load every record needed to resolve ``user_id``; missing ones stay None."""
        if graph is None:
            graph = await self.load_module_graph()
        user = await self.store.get_user(user_id)
        if user is None:
            return PermissionSnapshot(user_id=user_id, graph=graph)

        organization = await self.store.get_organization(user.organization_id)
        role = await self.store.get_role(user.role_id)
        plan = (
            await self.store.get_plan(organization.subscription_plan_id) if organization else None
        )
        return PermissionSnapshot(
            user_id=user_id,
            graph=graph,
            user=user,
            organization=organization,
            role=role,
            plan=plan,
        )

    # ==================== Resolution ====================

    async def resolve_effective_permissions(self, user_id: str) -> ResolutionResult:
        """Effective permission set and conflicts for every module of a user."""
        if self.cache is not None:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached
            generation = self.cache.generation

        snapshot = await self.load_snapshot(user_id)
        result = self._resolver.resolve(snapshot)

        if self.cache is not None and snapshot.user is not None:
            self.cache.put(
                user_id,
                snapshot.user.organization_id,
                snapshot.user.role_id,
                result,
                generation=generation,
            )
        return result

    async def check_permission(self, user_id: str, module_id: str, action: Action | str) -> PermissionCheck:
        """Answer whether ``user_id`` may perform ``action`` on ``module_id``."""
        try:
            parsed = Action(action)
        except ValueError as e:
            raise ValidationError(f"Unknown action '{action}'") from e
        snapshot = await self.load_snapshot(user_id)
        return self._resolver.check(snapshot, module_id, parsed)

    async def get_permission_summary(self, user_id: str) -> UserPermissionSummary:
        """Role, plan and effective actions per module for one user."""
        return self._resolver.summarize(await self.load_snapshot(user_id))

    # ==================== Module graph ====================

    async def validate_module_graph(self) -> list[PermissionConflict]:
        return (await self.load_module_graph()).validate()

    async def register_module(self, module: ModuleDefinition, *, performed_by: str) -> list[PermissionConflict]:
        """Add or replace a module; rejected without writing when it creates a cycle."""
        graph = await self.load_module_graph()
        existing = graph.get(module.id)
        prospective = graph.with_module(module)
        conflicts = prospective.validate()
        if any(c.type is ConflictType.CIRCULAR_DEPENDENCY for c in conflicts):
            logger.warning("Module registration rejected", module_id=module.id)
            return conflicts

        audit = self._module_audit(
            module.id,
            AuditOperation.UPDATE if existing else AuditOperation.CREATE,
            {
                "before": existing.model_dump(mode="json") if existing else None,
                "after": module.model_dump(mode="json"),
            },
            performed_by,
        )
        record_id = await self.store.save_module(module, audit=audit)
        if self.cache is not None:
            self.cache.clear()
        if audit is not None:
            emit_audit_event(audit, record_id)
        return conflicts

    async def set_module_active(
        self, module_id: str, is_active: bool, *, performed_by: str
    ) -> list[PermissionConflict]:
        """Activate or deactivate a module; inactive modules grant nothing."""
        graph = await self.load_module_graph()
        existing = graph.get(module_id)
        if existing is None:
            raise ValidationError(f"Module '{module_id}' is not defined")
        if existing.is_core and not is_active:
            raise ValidationError(f"Core module '{module_id}' cannot be deactivated")
        if existing.is_active == is_active:
            return graph.validate()
        logger.info("Changing module activation", module_id=module_id, is_active=is_active)
        return await self.register_module(
            existing.model_copy(update={"is_active": is_active}), performed_by=performed_by
        )

    async def remove_module(self, module_id: str, *, performed_by: str) -> list[PermissionConflict]:
        """Remove a module; dependents are reported as missing_dependency conflicts."""
        graph = await self.load_module_graph()
        existing = graph.get(module_id)
        if existing is None:
            raise ValidationError(f"Module '{module_id}' is not defined")

        audit = self._module_audit(
            module_id,
            AuditOperation.DELETE,
            {"before": existing.model_dump(mode="json"), "after": None},
            performed_by,
        )
        await self.store.delete_module(module_id, audit=audit)
        if self.cache is not None:
            self.cache.clear()
        if audit is not None:
            emit_audit_event(audit, None)
        return graph.without_module(module_id).validate()

    def _module_audit(
        self, module_id: str, operation: AuditOperation, changes: dict, performed_by: str
    ) -> AuditRecordCreate | None:
        if self.audit_log is None:
            return None
        return AuditRecordCreate(
            entity_type=EntityType.MODULE,
            entity_id=module_id,
            operation=operation,
            changes=changes,
            performed_by=performed_by,
            timestamp=self._clock(),
        )

    # ==================== Mutation ====================

    async def apply_bulk_update(
        self, update: BulkPermissionUpdate, *, performed_by: str
    ) -> list[BulkUpdateResult]:
        return await self._coordinator.apply(update, performed_by=performed_by)

    async def apply_template(
        self,
        template: PermissionTemplate,
        target_ids: list[str],
        *,
        performed_by: str,
        reason: str | None = None,
    ) -> list[BulkUpdateResult]:
        """Stamp a template onto targets as replace updates."""
        if not template.permissions:
            raise ValidationError(f"Template '{template.id}' has no module permissions")
        return await self._coordinator.apply(
            template.to_bulk_update(target_ids, reason), performed_by=performed_by
        )

    # ==================== Audit ====================

    def query_audit_log(self, filters: AuditFilter | None = None) -> AsyncIterator[AuditRecord]:
        if self.audit_log is None:
            raise ValidationError("Audit logging is disabled")
        return self.audit_log.query(filters)



def create_entitlements_service(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> EntitlementsService:
    """Build a service wired from settings: SQL store, audit log and optional cache."""
    session_factory = session_factory or create_session_factory()
    store = SQLAlchemyPermissionStore(session_factory)
    audit_log = AuditLog(session_factory) if settings.audit.enabled else None
    cache = (
        EffectivePermissionCache(
            max_entries=settings.cache.max_entries,
            ttl_seconds=settings.cache.ttl_seconds,
        )
        if settings.cache.enabled
        else None
    )
    return EntitlementsService(store, audit_log, cache=cache)
