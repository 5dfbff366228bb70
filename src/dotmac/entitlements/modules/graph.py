"""
Module dependency graph.

Holds module definitions and validates the dependency relation:
cycles, references to undefined modules, and whether an action map
grants ``view`` on every transitive dependency of the modules it uses.
"""

from collections.abc import Iterable, Iterator, Mapping

from dotmac.entitlements.logging import get_logger
from dotmac.entitlements.modules.models import Action, ModuleDefinition
from dotmac.entitlements.permissions.models import ConflictType, PermissionConflict

logger = get_logger(__name__)


class ModuleGraph:
    """Immutable view over a set of module definitions."""

    def __init__(self, modules: Iterable[ModuleDefinition] = ()) -> None:
        self._modules: dict[str, ModuleDefinition] = {}
        for module in modules:
            self._modules[module.id] = module

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._modules

    def __iter__(self) -> Iterator[ModuleDefinition]:
        return iter(self.ordered())

    def __len__(self) -> int:
        return len(self._modules)

    def get(self, module_id: str) -> ModuleDefinition | None:
        return self._modules.get(module_id)

    @property
    def module_ids(self) -> set[str]:
        return set(self._modules)

    def ordered(self) -> list[ModuleDefinition]:
        """Modules sorted by display order, then id."""
        return sorted(self._modules.values(), key=lambda m: (m.order, m.id))

    def with_module(self, module: ModuleDefinition) -> "ModuleGraph":
        """Prospective graph with ``module`` added or replaced."""
        return ModuleGraph([*(m for m in self._modules.values() if m.id != module.id), module])

    def without_module(self, module_id: str) -> "ModuleGraph":
        """Prospective graph with ``module_id`` removed."""
        return ModuleGraph(m for m in self._modules.values() if m.id != module_id)

    def dependents_of(self, module_id: str) -> list[str]:
        """Modules that declare a direct dependency on ``module_id``."""
        return sorted(m.id for m in self._modules.values() if module_id in m.dependencies)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def transitive_dependencies(self, module_id: str) -> set[str]:
        """All modules reachable through dependency edges, excluding ``module_id``.

        Undefined dependency ids are included so callers can report them.
        """
        seen: set[str] = set()
        module = self._modules.get(module_id)
        stack = sorted(module.dependencies) if module else []
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            dependency = self._modules.get(current)
            if dependency is not None:
                stack.extend(sorted(dependency.dependencies - seen))
        seen.discard(module_id)
        return seen

    def dependencies_satisfied(self, module_id: str, granted_modules: Iterable[str]) -> bool:
        """True iff every transitive dependency of ``module_id`` is in ``granted_modules``."""
        return self.transitive_dependencies(module_id) <= set(granted_modules)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def find_cycles(self) -> list[tuple[str, ...]]:
        """Distinct dependency cycles, each rotated to start at its smallest id."""
        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self._modules, white)
        path: list[str] = []
        found: dict[tuple[str, ...], None] = {}

        def visit(node: str) -> None:
            color[node] = grey
            path.append(node)
            for dep in sorted(self._modules[node].dependencies):
                if dep not in self._modules:
                    continue
                if color[dep] == grey:
                    cycle = path[path.index(dep) :]
                    start = cycle.index(min(cycle))
                    found.setdefault(tuple(cycle[start:] + cycle[:start]), None)
                elif color[dep] == white:
                    visit(dep)
            path.pop()
            color[node] = black

        for module_id in sorted(self._modules):
            if color[module_id] == white:
                visit(module_id)

        return sorted(found)

    def validate(self) -> list[PermissionConflict]:
        """Report cycles and references to undefined modules."""
        conflicts: list[PermissionConflict] = []

        for cycle in self.find_cycles():
            chain = " -> ".join([*cycle, cycle[0]])
            conflicts.append(
                PermissionConflict(
                    type=ConflictType.CIRCULAR_DEPENDENCY,
                    module_id=cycle[0],
                    description=f"Circular module dependency: {chain}",
                    suggestions=(f"Remove one dependency edge from the cycle {chain}",),
                )
            )

        for module in self.ordered():
            for dep in sorted(module.dependencies - self._modules.keys()):
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.MISSING_DEPENDENCY,
                        module_id=dep,
                        action=Action.VIEW,
                        required_by=module.id,
                        description=f"Module '{module.id}' depends on undefined module '{dep}'",
                        suggestions=(f"Register module '{dep}' or drop it from '{module.id}'",),
                    )
                )

        if conflicts:
            logger.info("Module graph validation found conflicts", conflict_count=len(conflicts))
        return conflicts

    def missing_dependencies(self, action_map: Mapping[str, Iterable[Action]]) -> list[PermissionConflict]:
        """Dependencies lacking ``view`` for modules that ``action_map`` grants anything on."""
        conflicts: list[PermissionConflict] = []
        for module_id in sorted(action_map):
            if not set(action_map[module_id]):
                continue
            for dep in sorted(self.transitive_dependencies(module_id)):
                if Action.VIEW in set(action_map.get(dep, ())):
                    continue
                conflicts.append(
                    PermissionConflict(
                        type=ConflictType.MISSING_DEPENDENCY,
                        module_id=dep,
                        action=Action.VIEW,
                        required_by=module_id,
                        description=(
                            f"Module '{module_id}' requires 'view' on dependency '{dep}'"
                        ),
                        suggestions=(
                            f"Grant 'view' on '{dep}'",
                            f"Remove all actions on '{module_id}'",
                        ),
                    )
                )
        return conflicts
