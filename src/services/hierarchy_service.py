"""Meter forest construction and traversal order."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from src.models.meter import Meter, MeterType

logger = logging.getLogger(__name__)

# Default listing order when the request carries no explicit ordering
TYPE_PRIORITY = {
    MeterType.COUNCIL: 0,
    MeterType.BULK: 1,
    MeterType.CHECK: 2,
    MeterType.TENANT: 3,
    MeterType.SOLAR: 4,
    MeterType.OTHER: 4,
}


def order_meters(meters: Iterable[Meter], explicit_order: Sequence[int] | None = None) -> list[Meter]:
    """Order meters explicitly when an ordering is given, else by type then number.

    Meters missing from an explicit ordering follow it in default order.
    """
    default = sorted(
        meters,
        key=lambda m: (TYPE_PRIORITY.get(m.meter_type, len(TYPE_PRIORITY)), m.meter_number),
    )
    if not explicit_order:
        return default

    position = {meter_id: index for index, meter_id in enumerate(explicit_order)}
    listed = sorted((m for m in default if m.id in position), key=lambda m: position[m.id])
    unlisted = [m for m in default if m.id not in position]
    return listed + unlisted


def derive_connections_from_indents(
    meter_ids: Sequence[int], indent_levels: dict[int, int]
) -> list[tuple[int, int]]:
    """Build (parent, child) edges from per-meter indent levels.

    Each meter attaches to the nearest preceding meter whose indent level is
    exactly one less than its own; level 0 meters are roots.
    """
    edges: list[tuple[int, int]] = []
    for index, meter_id in enumerate(meter_ids):
        level = indent_levels.get(meter_id, 0)
        if level <= 0:
            continue
        for candidate in reversed(meter_ids[:index]):
            if indent_levels.get(candidate, 0) == level - 1:
                edges.append((candidate, meter_id))
                break
    return edges


@dataclass
class MeterHierarchy:
    """A validated meter forest with a strict bottom-up processing order."""

    meter_ids: list[int]
    children: dict[int, list[int]] = field(default_factory=dict)
    parent: dict[int, int] = field(default_factory=dict)
    depth: dict[int, int] = field(default_factory=dict)
    bottom_up: list[int] = field(default_factory=list)

    def is_parent(self, meter_id: int) -> bool:
        return bool(self.children.get(meter_id))

    @property
    def roots(self) -> list[int]:
        return [m for m in self.meter_ids if m not in self.parent]

    @property
    def parents_bottom_up(self) -> list[int]:
        return [m for m in self.bottom_up if self.is_parent(m)]

    @property
    def leaves(self) -> list[int]:
        return [m for m in self.meter_ids if not self.is_parent(m)]

    @property
    def edges(self) -> list[tuple[int, int]]:
        return [(p, c) for p in self.meter_ids for c in self.children.get(p, [])]

    def descendants(self, meter_id: int) -> list[int]:
        found: list[int] = []
        visited = {meter_id}
        stack = list(reversed(self.children.get(meter_id, [])))
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            found.append(current)
            stack.extend(reversed(self.children.get(current, [])))
        return found

    def leaf_descendants(self, meter_id: int) -> list[int]:
        return [m for m in self.descendants(meter_id) if not self.is_parent(m)]


class HierarchyResolver:
    """Builds the meter forest from explicit or indent-derived edges.

    Edges naming unknown meters, self-loops, second parents and edges that
    would close a cycle are dropped with a warning; none of them is fatal.
    """

    def build(self, meter_ids: Sequence[int], edges: Iterable[tuple[int, int]]) -> MeterHierarchy:
        known = set(meter_ids)
        hierarchy = MeterHierarchy(meter_ids=list(meter_ids))

        for parent_id, child_id in edges:
            if parent_id not in known or child_id not in known:
                logger.debug("Ignoring edge %s -> %s with unknown meter", parent_id, child_id)
                continue
            if parent_id == child_id:
                logger.warning("Ignoring self-referencing edge on meter %s", parent_id)
                continue
            existing = hierarchy.parent.get(child_id)
            if existing is not None:
                if existing != parent_id:
                    logger.warning(
                        "Meter %s already has parent %s; ignoring parent %s",
                        child_id,
                        existing,
                        parent_id,
                    )
                continue
            if self._is_ancestor(hierarchy.parent, child_id, parent_id):
                logger.warning("Ignoring edge %s -> %s that would close a cycle", parent_id, child_id)
                continue

            hierarchy.parent[child_id] = parent_id
            hierarchy.children.setdefault(parent_id, []).append(child_id)

        # Keep children in meter order so traversal is deterministic
        position = {meter_id: index for index, meter_id in enumerate(meter_ids)}
        for child_list in hierarchy.children.values():
            child_list.sort(key=position.__getitem__)

        self._walk(hierarchy)
        return hierarchy

    @staticmethod
    def _is_ancestor(parents: dict[int, int], candidate: int, meter_id: int) -> bool:
        """True when ``candidate`` is ``meter_id`` or one of its ancestors."""
        visited: set[int] = set()
        current: int | None = meter_id
        while current is not None and current not in visited:
            if current == candidate:
                return True
            visited.add(current)
            current = parents.get(current)
        return False

    @staticmethod
    def _walk(hierarchy: MeterHierarchy) -> None:
        """Single post-order pass computing depth and bottom-up order."""
        visited: set[int] = set()
        for root in hierarchy.roots:
            stack: list[tuple[int, int, bool]] = [(root, 0, False)]
            while stack:
                meter_id, depth, expanded = stack.pop()
                if expanded:
                    hierarchy.bottom_up.append(meter_id)
                    continue
                if meter_id in visited:
                    continue
                visited.add(meter_id)
                hierarchy.depth[meter_id] = depth
                stack.append((meter_id, depth, True))
                for child_id in reversed(hierarchy.children.get(meter_id, [])):
                    stack.append((child_id, depth + 1, False))


__all__ = [
    "HierarchyResolver",
    "MeterHierarchy",
    "TYPE_PRIORITY",
    "derive_connections_from_indents",
    "order_meters",
]
