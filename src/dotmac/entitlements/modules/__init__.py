"""Module definitions and the dependency graph."""

from .graph import ModuleGraph
from .models import (
    ACTION_ORDER,
    Action,
    ActionMap,
    ModuleDefinition,
    normalize_action_map,
    serialize_action_map,
    sort_actions,
    split_action_map,
)

__all__ = [
    "ACTION_ORDER",
    "Action",
    "ActionMap",
    "ModuleDefinition",
    "ModuleGraph",
    "normalize_action_map",
    "serialize_action_map",
    "sort_actions",
    "split_action_map",
]
