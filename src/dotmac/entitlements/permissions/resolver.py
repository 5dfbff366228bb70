"""
Permission resolution.

Combines the module graph, the subscription plan ceiling and the role grant
into an effective permission set. Resolution is a pure computation over a
snapshot supplied by the caller: it never touches storage, never raises for
missing data, and always returns a (possibly empty) permission list together
with the conflicts it found.

For every module ``m`` and action ``a`` in ``m.available_actions``:

- granted when both the plan and the role include ``a`` for ``m``
- restricted by ``subscription`` when only the role requests it
- restricted by ``role`` when only the plan would allow it
- absent (no entry) when neither layer mentions it
"""

from dataclasses import dataclass

from dotmac.entitlements.logging import get_logger
from dotmac.entitlements.modules.graph import ModuleGraph
from dotmac.entitlements.modules.models import Action, ActionMap, sort_actions
from dotmac.entitlements.permissions.models import (
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

logger = get_logger(__name__)


@dataclass(frozen=True)
class PermissionSnapshot:
    """Consistent view of everything needed to resolve one user."""

    user_id: str
    graph: ModuleGraph
    user: User | None = None
    organization: Organization | None = None
    role: Role | None = None
    plan: SubscriptionPlan | None = None


def _dangling(entity_id: str, description: str) -> PermissionConflict:
    return PermissionConflict(
        type=ConflictType.INVALID_ACTION,
        description=description,
        suggestions=(f"Repair or remove the reference to '{entity_id}'",),
    )


class PermissionResolver:
    """Stateless resolver; safe to share across threads and tasks."""

    # ------------------------------------------------------------------
    # Reference checks
    # ------------------------------------------------------------------

    def _reference_conflicts(self, snapshot: PermissionSnapshot) -> list[PermissionConflict]:
        """Conflicts for records the snapshot could not load or that disagree."""
        user = snapshot.user
        if user is None:
            return [_dangling(snapshot.user_id, f"User '{snapshot.user_id}' does not exist")]

        conflicts: list[PermissionConflict] = []
        org = snapshot.organization
        if org is None:
            conflicts.append(
                _dangling(
                    user.organization_id,
                    f"User '{user.id}' references missing organization '{user.organization_id}'",
                )
            )
        elif snapshot.plan is None:
            conflicts.append(
                _dangling(
                    org.subscription_plan_id,
                    f"Organization '{org.id}' references missing subscription plan "
                    f"'{org.subscription_plan_id}'",
                )
            )

        role = snapshot.role
        if role is None:
            conflicts.append(
                _dangling(user.role_id, f"User '{user.id}' references missing role '{user.role_id}'")
            )
        elif role.organization_id != user.organization_id:
            conflicts.append(
                _dangling(
                    role.id,
                    f"Role '{role.id}' belongs to organization '{role.organization_id}', "
                    f"not to the user's organization '{user.organization_id}'",
                )
            )
        return conflicts

    def _map_conflicts(
        self,
        graph: ModuleGraph,
        action_map: ActionMap,
        owner: str,
        unrecognized: dict[str, list[str]] | None = None,
    ) -> list[PermissionConflict]:
        """Conflicts for modules or actions an action map references but the graph lacks."""
        conflicts: list[PermissionConflict] = []
        unrecognized = unrecognized or {}
        for module_id in sorted(unrecognized):
            for raw_action in unrecognized[module_id]:
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.INVALID_ACTION,
                        module_id=module_id,
                        description=f"{owner} references unknown action '{raw_action}' on '{module_id}'",
                        suggestions=(f"Remove '{raw_action}' from '{module_id}' in {owner}",),
                    )
                )
        for module_id in sorted(action_map):
            module = graph.get(module_id)
            if module is None:
                if action_map[module_id]:
                    conflicts.append(
                        PermissionConflict(
                            type=ConflictType.INVALID_ACTION,
                            module_id=module_id,
                            description=f"{owner} references undefined module '{module_id}'",
                            suggestions=(f"Remove '{module_id}' from {owner}",),
                        )
                    )
                continue
            for action in sort_actions(action_map[module_id] - module.available_actions):
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.INVALID_ACTION,
                        module_id=module_id,
                        action=action,
                        description=(
                            f"{owner} references action '{action.value}' which module "
                            f"'{module_id}' does not offer"
                        ),
                        suggestions=(f"Remove '{action.value}' from '{module_id}' in {owner}",),
                    )
                )
        return conflicts

    @staticmethod
    def _usable(snapshot: PermissionSnapshot) -> bool:
        """True when every layer exists, is consistent and is active."""
        user, org, role, plan = snapshot.user, snapshot.organization, snapshot.role, snapshot.plan
        if user is None or org is None or role is None or plan is None:
            return False
        if role.organization_id != user.organization_id:
            return False
        return user.is_active and org.is_active and role.is_active and plan.is_active

    # ------------------------------------------------------------------
    # Core evaluation
    # ------------------------------------------------------------------

    @staticmethod
    def evaluate(
        plan: SubscriptionPlan, role: Role, module_id: str, action: Action
    ) -> tuple[bool, RestrictedBy | None]:
        """Grant decision for one module/action; restriction is None when absent."""
        subscription_allows = plan.allows(module_id, action)
        role_allows = role.requests(module_id, action)
        if subscription_allows and role_allows:
            return True, RestrictedBy.NONE
        if role_allows:
            return False, RestrictedBy.SUBSCRIPTION
        if subscription_allows:
            return False, RestrictedBy.ROLE
        return False, None

    def resolve(self, snapshot: PermissionSnapshot) -> ResolutionResult:
        """Effective permissions for every module and action, plus conflicts."""
        conflicts = self._reference_conflicts(snapshot)

        if not self._usable(snapshot):
            logger.debug(
                "Resolution failed closed",
                user_id=snapshot.user_id,
                conflict_count=len(conflicts),
            )
            return ResolutionResult(user_id=snapshot.user_id, conflicts=conflicts)

        graph = snapshot.graph
        plan: SubscriptionPlan = snapshot.plan  # type: ignore[assignment]
        role: Role = snapshot.role  # type: ignore[assignment]

        conflicts.extend(
            self._map_conflicts(
                graph, plan.modules, f"subscription plan '{plan.id}'", plan.unrecognized_actions
            )
        )
        conflicts.extend(
            self._map_conflicts(graph, role.permissions, f"role '{role.id}'", role.unrecognized_actions)
        )

        permissions: list[EffectivePermission] = []
        granted: dict[str, set[Action]] = {}
        for module in graph.ordered():
            # Deactivated modules grant nothing and are not reported.
            if not module.is_active:
                continue
            for action in module.sorted_actions:
                is_granted, restricted_by = self.evaluate(plan, role, module.id, action)
                if restricted_by is None:
                    continue
                permissions.append(
                    EffectivePermission(
                        module_id=module.id,
                        action=action,
                        granted=is_granted,
                        restricted_by=restricted_by,
                    )
                )
                if is_granted:
                    granted.setdefault(module.id, set()).add(action)

            if module.is_core and not granted.get(module.id):
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.INVALID_ACTION,
                        module_id=module.id,
                        action=Action.VIEW,
                        description=(
                            f"Core module '{module.id}' must remain viewable but grants no "
                            f"actions to user '{snapshot.user_id}'"
                        ),
                        suggestions=(
                            f"Grant 'view' on '{module.id}' to role '{role.id}'",
                            f"Include 'view' on '{module.id}' in plan '{plan.id}'",
                        ),
                    )
                )

        conflicts.extend(graph.missing_dependencies(granted))

        logger.debug(
            "Resolved effective permissions",
            user_id=snapshot.user_id,
            granted_count=sum(1 for p in permissions if p.granted),
            restricted_count=sum(1 for p in permissions if not p.granted),
            conflict_count=len(conflicts),
        )
        return ResolutionResult(
            user_id=snapshot.user_id, permissions=permissions, conflicts=conflicts
        )

    def check(self, snapshot: PermissionSnapshot, module_id: str, action: Action) -> PermissionCheck:
        """Answer a single (user, module, action) question."""
        check = PermissionCheck(
            user_id=snapshot.user_id, module_id=module_id, action=action, granted=False
        )
        module = snapshot.graph.get(module_id)
        if module is None:
            check.reason = f"Module '{module_id}' is not defined"
            return check
        if action not in module.available_actions:
            check.reason = f"Module '{module_id}' does not offer action '{action.value}'"
            return check
        if not module.is_active:
            check.reason = f"Module '{module_id}' is inactive"
            return check

        if not self._usable(snapshot):
            user, org, role = snapshot.user, snapshot.organization, snapshot.role
            if user is None or not user.is_active:
                check.reason = f"User '{snapshot.user_id}' is missing or inactive"
            elif role is None or not role.is_active or role.organization_id != user.organization_id:
                check.restricted_by = RestrictedBy.ROLE
                check.reason = f"Role '{user.role_id}' is missing, inactive or foreign"
            elif org is None or not org.is_active:
                check.reason = f"Organization '{user.organization_id}' is missing or inactive"
            else:
                check.restricted_by = RestrictedBy.SUBSCRIPTION
                check.reason = f"Subscription plan '{org.subscription_plan_id}' is missing or inactive"
            return check

        granted, restricted_by = self.evaluate(snapshot.plan, snapshot.role, module_id, action)  # type: ignore[arg-type]
        check.granted = granted
        check.restricted_by = restricted_by
        if restricted_by is RestrictedBy.SUBSCRIPTION:
            check.reason = f"Subscription plan does not include '{action.value}' on '{module_id}'"
        elif restricted_by is RestrictedBy.ROLE:
            check.reason = f"Role does not grant '{action.value}' on '{module_id}'"
        elif restricted_by is None:
            check.reason = f"Neither plan nor role includes '{action.value}' on '{module_id}'"
        return check

    def summarize(self, snapshot: PermissionSnapshot) -> UserPermissionSummary:
        """Permission matrix row per module for administrators."""
        result = self.resolve(snapshot)
        role_map = snapshot.role.permissions if snapshot.role else {}
        plan_map = snapshot.plan.modules if snapshot.plan else {}

        modules: list[ModulePermissionSummary] = []
        for module in snapshot.graph.ordered():
            effective = sort_actions(result.granted_actions(module.id))
            modules.append(
                ModulePermissionSummary(
                    module_id=module.id,
                    module_name=module.label,
                    module_active=module.is_active,
                    role_actions=sort_actions(role_map.get(module.id, set()) & module.available_actions),
                    subscription_actions=sort_actions(
                        plan_map.get(module.id, set()) & module.available_actions
                    ),
                    effective_actions=effective,
                    has_access=bool(effective),
                )
            )

        user = snapshot.user
        return UserPermissionSummary(
            user_id=snapshot.user_id,
            organization_id=user.organization_id if user else None,
            role_id=user.role_id if user else None,
            subscription_plan_id=(
                snapshot.organization.subscription_plan_id if snapshot.organization else None
            ),
            modules=modules,
            conflicts=result.conflicts,
        )
