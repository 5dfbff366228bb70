"""
Plan, role, organization and user records plus the derived permission types.
"""

from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dotmac.entitlements.modules.models import Action, ActionMap, split_action_map


class RestrictedBy(str, Enum):
    """Layer blocking a requested action."""

    SUBSCRIPTION = "subscription"
    ROLE = "role"
    NONE = "none"


class ConflictType(str, Enum):
    """Structural problems detected during validation or resolution."""

    MISSING_DEPENDENCY = "missing_dependency"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    INVALID_ACTION = "invalid_action"


class _ActionMapModel(BaseModel):
    """Record carrying an action map.

    Action strings outside the closed enumeration are kept aside in
    ``unrecognized_actions`` instead of being dropped, so the resolver can
    report them and the store can write them back unchanged.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    action_map_field: ClassVar[str]

    unrecognized_actions: dict[str, list[str]] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def split_unrecognized_actions(cls, data: Any) -> Any:
        if not isinstance(data, dict) or cls.action_map_field not in data:
            return data
        raw = data[cls.action_map_field]
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError("expected a mapping of module id to actions")
        known, unknown = split_action_map(raw)
        merged = {**(data.get("unrecognized_actions") or {}), **unknown}
        return {**data, cls.action_map_field: known, "unrecognized_actions": merged}


class SubscriptionPlan(_ActionMapModel):
    """Tenant-wide ceiling: for each module the most a plan permits."""

    action_map_field: ClassVar[str] = "modules"

    id: str = Field(min_length=1)
    name: str = ""
    modules: ActionMap = Field(default_factory=dict)
    max_users: int | None = Field(default=None, ge=0)
    is_active: bool = True

    def allows(self, module_id: str, action: Action) -> bool:
        return action in self.modules.get(module_id, set())


class Role(_ActionMapModel):
    """Organization-defined grant; not bounded by the plan at write time."""

    action_map_field: ClassVar[str] = "permissions"

    id: str = Field(min_length=1)
    organization_id: str
    name: str = ""
    description: str = ""
    permissions: ActionMap = Field(default_factory=dict)
    is_active: bool = True

    def requests(self, module_id: str, action: Action) -> bool:
        return action in self.permissions.get(module_id, set())


class Organization(BaseModel):
    """Tenant owning exactly one plan reference."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1)
    name: str = ""
    subscription_plan_id: str
    is_active: bool = True


class User(BaseModel):
    """Assignee of exactly one role inside one organization."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1)
    organization_id: str
    role_id: str
    is_active: bool = True


class PermissionConflict(BaseModel):
    """A structural problem reported as data, never raised."""

    model_config = ConfigDict(frozen=True)

    type: ConflictType
    module_id: str | None = None
    action: Action | None = None
    description: str
    required_by: str | None = None
    blocking: bool = True
    affected_roles: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


class EffectivePermission(BaseModel):
    """Derived grant for one (user, module, action); never persisted."""

    model_config = ConfigDict(frozen=True)

    module_id: str
    action: Action
    granted: bool
    restricted_by: RestrictedBy


class PermissionCheck(BaseModel):
    """Answer for a single (user, module, action) triple.

    ``restricted_by`` is None when nobody requests the action.
    """

    user_id: str
    module_id: str
    action: Action
    granted: bool
    restricted_by: RestrictedBy | None = None
    reason: str = ""


class ResolutionResult(BaseModel):
    """Effective permission set for a user plus the conflicts found."""

    user_id: str
    permissions: list[EffectivePermission] = Field(default_factory=list)
    conflicts: list[PermissionConflict] = Field(default_factory=list)

    def granted_actions(self, module_id: str) -> set[Action]:
        return {
            p.action for p in self.permissions if p.module_id == module_id and p.granted
        }

    def find(self, module_id: str, action: Action) -> EffectivePermission | None:
        for permission in self.permissions:
            if permission.module_id == module_id and permission.action == action:
                return permission
        return None


class ModulePermissionSummary(BaseModel):
    """Per-module row of the permission matrix."""

    module_id: str
    module_name: str
    module_active: bool = True
    role_actions: list[Action] = Field(default_factory=list)
    subscription_actions: list[Action] = Field(default_factory=list)
    effective_actions: list[Action] = Field(default_factory=list)
    has_access: bool = False


class UserPermissionSummary(BaseModel):
    """Role, plan and effective actions for every module, for one user."""

    user_id: str
    organization_id: str | None = None
    role_id: str | None = None
    subscription_plan_id: str | None = None
    modules: list[ModulePermissionSummary] = Field(default_factory=list)
    conflicts: list[PermissionConflict] = Field(default_factory=list)
