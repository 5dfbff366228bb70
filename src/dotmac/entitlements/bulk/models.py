"""
Bulk permission update requests and per-target results.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dotmac.entitlements.modules.models import Action
from dotmac.entitlements.permissions.models import PermissionConflict


class TargetType(str, Enum):
    """Kind of record a bulk update mutates."""

    ROLE = "role"
    SUBSCRIPTION = "subscription"


class UpdateOperation(str, Enum):
    """How a module update combines with the existing action set."""

    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


class ModuleUpdate(BaseModel):
    """Change to one module's action set."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    module_id: str = Field(min_length=1)
    actions: set[Action] = Field(default_factory=set)
    operation: UpdateOperation

    def apply(self, existing: set[Action]) -> set[Action]:
        """Resulting action set for this operation."""
        if self.operation is UpdateOperation.ADD:
            return existing | self.actions
        if self.operation is UpdateOperation.REMOVE:
            return existing - self.actions
        return set(self.actions)


class BulkPermissionUpdate(BaseModel):
    """Add/remove/replace module actions across many roles or plans."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    target_type: TargetType
    target_ids: list[str] = Field(min_length=1)
    module_updates: list[ModuleUpdate] = Field(min_length=1)
    reason: str | None = None

    @field_validator("target_ids")
    @classmethod
    def dedupe_target_ids(cls, v: list[str]) -> list[str]:
        """Drop blanks and repeated ids, keeping first-seen order."""
        seen: dict[str, None] = {}
        for target_id in v:
            target_id = target_id.strip()
            if target_id:
                seen.setdefault(target_id, None)
        if not seen:
            raise ValueError("target_ids must contain at least one id")
        return list(seen)


class BulkUpdateResult(BaseModel):
    """Outcome for one target of a bulk update."""

    target_id: str
    success: bool
    conflicts: list[PermissionConflict] = Field(default_factory=list)
    error: str | None = None
    audit_record_id: str | None = None
