"""Reusable permission templates applied to roles or plans as replace updates."""

from pydantic import BaseModel, ConfigDict, Field

from dotmac.entitlements.bulk.models import (
    BulkPermissionUpdate,
    ModuleUpdate,
    TargetType,
    UpdateOperation,
)
from dotmac.entitlements.modules.models import Action, sort_actions


class PermissionTemplate(BaseModel):
    """Named action map that can be stamped onto many targets at once.

    Actions are validated strictly: an unknown action string is rejected.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = ""
    target_type: TargetType
    permissions: dict[str, set[Action]] = Field(default_factory=dict)

    def to_bulk_update(self, target_ids: list[str], reason: str | None = None) -> BulkPermissionUpdate:
        """One replace operation per template module, in module id order."""
        return BulkPermissionUpdate(
            target_type=self.target_type,
            target_ids=target_ids,
            module_updates=[
                ModuleUpdate(
                    module_id=module_id,
                    actions=sort_actions(self.permissions[module_id]),
                    operation=UpdateOperation.REPLACE,
                )
                for module_id in sorted(self.permissions)
            ],
            reason=reason or f"Applied permission template '{self.name}'",
        )
