"""
Module definitions and the closed action enumeration.
"""

from collections.abc import Iterable
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Action(str, Enum):
    """Capabilities grantable per module.

    Each action is independent: no action implies another.
    """

    VIEW = "view"
    EDIT = "edit"
    MANAGE = "manage"
    DISABLE = "disable"


ACTION_ORDER: tuple[Action, ...] = (Action.VIEW, Action.EDIT, Action.MANAGE, Action.DISABLE)

ActionMap = dict[str, set[Action]]


def sort_actions(actions: Iterable[Action]) -> list[Action]:
    """Return actions in canonical order (view, edit, manage, disable)."""
    return sorted(set(actions), key=ACTION_ORDER.index)


def parse_action(value: str | Action) -> Action | None:
    """Coerce a raw value into an Action, or None when unknown."""
    if isinstance(value, Action):
        return value
    try:
        return Action(str(value).lower())
    except ValueError:
        return None


def split_action_map(
    raw: dict[str, Iterable[str | Action]] | None,
) -> tuple[ActionMap, dict[str, list[str]]]:
    """Split a raw action map into recognized actions and unknown action strings."""
    known: ActionMap = {}
    unknown: dict[str, list[str]] = {}
    for module_id, actions in (raw or {}).items():
        known[module_id] = set()
        for action in actions:
            parsed = parse_action(action)
            if parsed is None:
                unknown.setdefault(module_id, []).append(str(action))
            else:
                known[module_id].add(parsed)
    return known, {module_id: sorted(set(values)) for module_id, values in unknown.items()}


def normalize_action_map(raw: dict[str, Iterable[str | Action]] | None) -> ActionMap:
    """Copy an action map, coercing values to Action and dropping unknown strings."""
    return split_action_map(raw)[0]


def serialize_action_map(
    action_map: ActionMap, unrecognized: dict[str, list[str]] | None = None
) -> dict[str, list[str]]:
    """JSON-friendly form of an action map with canonical action order.

    ``unrecognized`` strings are written back after the known actions so a
    stored map keeps whatever it held when it was loaded.
    """
    extra = unrecognized or {}
    return {
        module_id: [action.value for action in sort_actions(action_map.get(module_id, set()))]
        + list(extra.get(module_id, []))
        for module_id in sorted(set(action_map) | set(extra))
    }


class ModuleDefinition(BaseModel):
    """A feature unit gating a set of possible actions."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: str = Field(min_length=1, max_length=100)
    name: str = ""
    display_name: str = ""
    description: str = ""
    category: str = "General"
    available_actions: frozenset[Action] = frozenset({Action.VIEW})
    dependencies: frozenset[str] = frozenset()
    is_core: bool = False
    is_active: bool = True
    order: int = 0

    @field_validator("available_actions")
    @classmethod
    def validate_available_actions(cls, v: frozenset[Action]) -> frozenset[Action]:
        """A module must offer at least one action."""
        if not v:
            raise ValueError("available_actions must not be empty")
        return v

    @model_validator(mode="after")
    def validate_core_viewable(self) -> "ModuleDefinition":
        """Core modules must remain at least viewable."""
        if self.is_core and Action.VIEW not in self.available_actions:
            raise ValueError(f"core module '{self.id}' must offer the view action")
        if self.is_core and not self.is_active:
            raise ValueError(f"core module '{self.id}' cannot be deactivated")
        return self

    @property
    def sorted_actions(self) -> list[Action]:
        return sort_actions(self.available_actions)

    @property
    def label(self) -> str:
        return self.display_name or self.name or self.id
