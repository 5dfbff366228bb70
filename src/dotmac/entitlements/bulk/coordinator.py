"""
Bulk Update Coordinator.

Applies add/remove/replace module updates to many roles or subscription
plans. Each target is validated against its prospective action map and
committed on its own: a rejected target leaves its stored map untouched and
does not roll back or block its siblings.

Writes are versioned. A target is read, validated and written with the
version it was read at; when another writer got there first the store
refuses the write and the target is read and validated again, up to
``settings.bulk.max_attempts`` passes. Within one process writes to the same
target are additionally serialized with a per-target lock.
"""

import asyncio
import weakref
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from dotmac.entitlements.audit.models import AuditOperation, AuditRecordCreate, EntityType
from dotmac.entitlements.audit.service import AuditLog, emit_audit_event
from dotmac.entitlements.exceptions import (
    ConcurrentUpdateError,
    EntityNotFoundError,
    StorageError,
    ValidationError,
)
from dotmac.entitlements.logging import get_logger
from dotmac.entitlements.modules.graph import ModuleGraph
from dotmac.entitlements.modules.models import Action, ActionMap, ModuleDefinition, sort_actions
from dotmac.entitlements.permissions.cache import EffectivePermissionCache
from dotmac.entitlements.permissions.models import (
    ConflictType,
    PermissionConflict,
    Role,
    SubscriptionPlan,
)
from dotmac.entitlements.settings import settings
from dotmac.entitlements.storage.base import PermissionStore

from .models import (
    BulkPermissionUpdate,
    BulkUpdateResult,
    TargetType,
    UpdateOperation,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]

INVALID_REFERENCE_ERROR = "Update references unknown modules or unavailable actions"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _undefined_module(module_id: str) -> PermissionConflict:
    return PermissionConflict(
        type=ConflictType.INVALID_ACTION,
        module_id=module_id,
        description=f"Module '{module_id}' is not defined",
        suggestions=("Register the module before granting actions on it",),
    )


def _unoffered_action(
    module_id: str, action: Action, module: ModuleDefinition | None
) -> PermissionConflict:
    if module is None:
        return PermissionConflict(
            type=ConflictType.INVALID_ACTION,
            module_id=module_id,
            action=action,
            description=f"Module '{module_id}' is not defined and the target holds no '{action.value}' on it",
            suggestions=("Remove only actions the target currently holds",),
        )
    return PermissionConflict(
        type=ConflictType.INVALID_ACTION,
        module_id=module_id,
        action=action,
        description=f"Module '{module_id}' does not offer action '{action.value}'",
        suggestions=("Choose from: " + ", ".join(a.value for a in module.sorted_actions),),
    )


def validate_module_updates(update: BulkPermissionUpdate, graph: ModuleGraph) -> list[PermissionConflict]:
    """Reject unknown modules and actions a module does not offer.

    A ``remove`` naming an undefined module or an action the module does not
    offer may still be valid for a target that holds exactly that stale
    reference; those entries are checked per target by
    ``stale_reference_conflicts``.
    """
    conflicts: list[PermissionConflict] = []
    for module_update in update.module_updates:
        if module_update.operation is UpdateOperation.REMOVE:
            continue
        module = graph.get(module_update.module_id)
        if module is None:
            conflicts.append(_undefined_module(module_update.module_id))
            continue
        for action in sort_actions(module_update.actions - module.available_actions):
            conflicts.append(_unoffered_action(module.id, action, module))
    return conflicts


def stale_reference_conflicts(
    update: BulkPermissionUpdate, graph: ModuleGraph, current: ActionMap
) -> list[PermissionConflict]:
    """``remove`` entries referencing neither the module graph nor the target's stored map."""
    conflicts: list[PermissionConflict] = []
    for module_update in update.module_updates:
        if module_update.operation is not UpdateOperation.REMOVE:
            continue
        module = graph.get(module_update.module_id)
        stored = current.get(module_update.module_id)
        if module is None and stored is None:
            conflicts.append(_undefined_module(module_update.module_id))
            continue
        offered = module.available_actions if module is not None else frozenset()
        for action in sort_actions(module_update.actions - offered):
            if action not in (stored or set()):
                conflicts.append(_unoffered_action(module_update.module_id, action, module))
    return conflicts


class BulkUpdateCoordinator:
    """Validates and commits bulk permission updates target by target."""

    def __init__(
        self,
        store: PermissionStore,
        audit_log: AuditLog | None = None,
        *,
        cache: EffectivePermissionCache | None = None,
        clock: Clock = utc_now,
        max_attempts: int | None = None,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._cache = cache
        self._clock = clock
        self._max_attempts = max_attempts or settings.bulk.max_attempts
        # Entries disappear once no task holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[tuple[TargetType, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, target_type: TargetType, target_id: str) -> asyncio.Lock:
        key = (target_type, target_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def apply(
        self,
        update: BulkPermissionUpdate,
        *,
        performed_by: str,
        graph: ModuleGraph | None = None,
    ) -> list[BulkUpdateResult]:
        """Apply ``update`` to every target; one result per target, in request order.

        A storage failure on one target is reported in that target's result
        and the remaining targets are still processed.
        """
        if not performed_by or not performed_by.strip():
            raise ValidationError("performed_by is required for audited updates")

        if graph is None:
            graph = ModuleGraph(await self._store.list_modules())

        input_conflicts = validate_module_updates(update, graph)
        results: list[BulkUpdateResult] = []

        for target_id in update.target_ids:
            if input_conflicts:
                results.append(
                    BulkUpdateResult(
                        target_id=target_id,
                        success=False,
                        conflicts=input_conflicts,
                        error=INVALID_REFERENCE_ERROR,
                    )
                )
                continue
            lock = self._lock_for(update.target_type, target_id)
            async with lock:
                try:
                    result = await self._apply_to_target(update, target_id, graph, performed_by.strip())
                except StorageError as e:
                    logger.error(
                        "Bulk update target failed in storage",
                        target_type=update.target_type.value,
                        target_id=target_id,
                        error=str(e),
                    )
                    result = BulkUpdateResult(
                        target_id=target_id, success=False, error=f"Storage unavailable: {e}"
                    )
            results.append(result)

        logger.info(
            "Bulk permission update applied",
            target_type=update.target_type.value,
            targets=len(results),
            succeeded=sum(1 for r in results if r.success),
            performed_by=performed_by,
        )
        return results

    # ------------------------------------------------------------------
    # Per-target processing
    # ------------------------------------------------------------------

    async def _load_target(self, target_type: TargetType, target_id: str) -> Role | SubscriptionPlan | None:
        if target_type is TargetType.ROLE:
            return await self._store.get_role(target_id)
        return await self._store.get_plan(target_id)

    async def _apply_to_target(
        self,
        update: BulkPermissionUpdate,
        target_id: str,
        graph: ModuleGraph,
        performed_by: str,
    ) -> BulkUpdateResult:
        target_type = update.target_type
        for attempt in range(1, self._max_attempts + 1):
            target = await self._load_target(target_type, target_id)
            if target is None:
                return self._not_found(target_type, target_id)
            current = target.permissions if isinstance(target, Role) else target.modules

            stale = stale_reference_conflicts(update, graph, current)
            if stale:
                return BulkUpdateResult(
                    target_id=target_id, success=False, conflicts=stale, error=INVALID_REFERENCE_ERROR
                )

            before: ActionMap = {module_id: set(actions) for module_id, actions in current.items()}
            after: ActionMap = {module_id: set(actions) for module_id, actions in current.items()}
            touched: list[str] = []
            for module_update in update.module_updates:
                after[module_update.module_id] = module_update.apply(
                    after.get(module_update.module_id, set())
                )
                if module_update.module_id not in touched:
                    touched.append(module_update.module_id)
            after = {module_id: actions for module_id, actions in after.items() if actions}

            # A replace states the module's complete action set, unknown strings included.
            replaced = {u.module_id for u in update.module_updates if u.operation is UpdateOperation.REPLACE}
            kept = {m: v for m, v in target.unrecognized_actions.items() if m not in replaced}
            discarded = {m: v for m, v in target.unrecognized_actions.items() if m in replaced}

            conflicts = graph.missing_dependencies(after)
            conflicts.extend(self._core_floor_conflicts(target_type, graph, touched, before, after))
            if target_type is TargetType.SUBSCRIPTION:
                conflicts.extend(await self._ceiling_shrink_conflicts(target_id, touched, before, after))

            if any(conflict.blocking for conflict in conflicts):
                logger.warning(
                    "Bulk update rejected for target",
                    target_type=target_type.value,
                    target_id=target_id,
                    conflict_types=sorted({c.type.value for c in conflicts if c.blocking}),
                )
                return BulkUpdateResult(target_id=target_id, success=False, conflicts=conflicts)

            audit = None
            if self._audit_log is not None:
                audit = AuditRecordCreate(
                    entity_type=(
                        EntityType.ROLE if target_type is TargetType.ROLE else EntityType.SUBSCRIPTION
                    ),
                    entity_id=target_id,
                    operation=AuditOperation.UPDATE,
                    changes=self._describe_changes(update, touched, before, after, discarded),
                    performed_by=performed_by,
                    timestamp=self._clock(),
                    reason=update.reason,
                )

            try:
                if target_type is TargetType.ROLE:
                    record_id = await self._store.update_role_permissions(
                        target_id, after, expected_version=target.version, audit=audit, unrecognized=kept
                    )
                else:
                    record_id = await self._store.update_plan_modules(
                        target_id, after, expected_version=target.version, audit=audit, unrecognized=kept
                    )
            except EntityNotFoundError:
                return self._not_found(target_type, target_id)
            except ConcurrentUpdateError:
                logger.info(
                    "Target changed during bulk update, validating again",
                    target_type=target_type.value,
                    target_id=target_id,
                    attempt=attempt,
                )
                continue

            await self._invalidate(target_type, target_id)
            if audit is not None:
                emit_audit_event(audit, record_id)

            logger.info(
                "Bulk update committed for target",
                target_type=target_type.value,
                target_id=target_id,
                modules=touched,
                audit_record_id=record_id,
            )
            return BulkUpdateResult(
                target_id=target_id, success=True, conflicts=conflicts, audit_record_id=record_id
            )

        logger.warning(
            "Bulk update gave up on contended target",
            target_type=target_type.value,
            target_id=target_id,
            attempts=self._max_attempts,
        )
        return BulkUpdateResult(
            target_id=target_id,
            success=False,
            error=(
                f"{self._label(target_type)} '{target_id}' was modified concurrently "
                f"{self._max_attempts} time(s); retry the update"
            ),
        )

    @staticmethod
    def _label(target_type: TargetType) -> str:
        return "Role" if target_type is TargetType.ROLE else "Subscription plan"

    @classmethod
    def _not_found(cls, target_type: TargetType, target_id: str) -> BulkUpdateResult:
        label = cls._label(target_type)
        return BulkUpdateResult(
            target_id=target_id,
            success=False,
            error=f"{label} '{target_id}' not found",
            conflicts=[
                PermissionConflict(
                    type=ConflictType.INVALID_ACTION,
                    description=f"{label} '{target_id}' does not exist",
                )
            ],
        )

    @staticmethod
    def _core_floor_conflicts(
        target_type: TargetType,
        graph: ModuleGraph,
        touched: list[str],
        before: ActionMap,
        after: ActionMap,
    ) -> list[PermissionConflict]:
        """Core modules that lose ``view`` through this update.

        Blocking for roles; informational for plans, whose ceilings may shrink.
        """
        conflicts = []
        for module_id in touched:
            module = graph.get(module_id)
            if module is None or not module.is_core:
                continue
            if Action.VIEW in before.get(module_id, set()) and Action.VIEW not in after.get(module_id, set()):
                is_role = target_type is TargetType.ROLE
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.INVALID_ACTION,
                        module_id=module_id,
                        action=Action.VIEW,
                        blocking=is_role,
                        description=(
                            f"Core module '{module_id}' must remain viewable"
                            if is_role
                            else f"Plan no longer includes 'view' on core module '{module_id}'"
                        ),
                        suggestions=(f"Keep 'view' on '{module_id}'",),
                    )
                )
        return conflicts

    async def _ceiling_shrink_conflicts(
        self,
        plan_id: str,
        touched: list[str],
        before: ActionMap,
        after: ActionMap,
    ) -> list[PermissionConflict]:
        """Informational conflicts for actions removed from a plan that active roles grant."""
        removed = {
            module_id: before.get(module_id, set()) - after.get(module_id, set())
            for module_id in touched
        }
        if not any(removed.values()):
            return []

        roles: list[Role] = [r for r in await self._store.list_roles_for_plan(plan_id) if r.is_active]
        conflicts = []
        for module_id in touched:
            for action in sort_actions(removed[module_id]):
                affected = tuple(sorted(r.id for r in roles if r.requests(module_id, action)))
                if not affected:
                    continue
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.INVALID_ACTION,
                        module_id=module_id,
                        action=action,
                        blocking=False,
                        affected_roles=affected,
                        description=(
                            f"{len(affected)} active role(s) grant '{action.value}' on "
                            f"'{module_id}', which plan '{plan_id}' no longer allows"
                        ),
                        suggestions=(
                            "Affected users lose this action until the plan is upgraded",
                        ),
                    )
                )
        return conflicts

    async def _invalidate(self, target_type: TargetType, target_id: str) -> None:
        if self._cache is None:
            return
        if target_type is TargetType.ROLE:
            self._cache.invalidate_role(target_id)
            return
        for organization_id in await self._store.list_organization_ids_for_plan(target_id):
            self._cache.invalidate_organization(organization_id)

    @staticmethod
    def _describe_changes(
        update: BulkPermissionUpdate,
        touched: list[str],
        before: ActionMap,
        after: ActionMap,
        discarded: dict[str, list[str]],
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "target_type": update.target_type.value,
            "operations": [
                {
                    "module_id": u.module_id,
                    "operation": u.operation.value,
                    "actions": [a.value for a in sort_actions(u.actions)],
                }
                for u in update.module_updates
            ],
            "modules": {
                module_id: {
                    "before": [a.value for a in sort_actions(before.get(module_id, set()))],
                    "after": [a.value for a in sort_actions(after.get(module_id, set()))],
                }
                for module_id in touched
            },
        }
        if discarded:
            changes["discarded_actions"] = {m: list(discarded[m]) for m in sorted(discarded)}
        return changes
