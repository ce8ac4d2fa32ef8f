"""Unit tests for meter hierarchy resolution."""

import pytest

from fakes import make_meter
from src.models.meter import MeterType
from src.services.hierarchy_service import (
    HierarchyResolver,
    derive_connections_from_indents,
    order_meters,
)


@pytest.fixture
def resolver():
    return HierarchyResolver()


class TestBuild:
    def test_depth_and_bottom_up_order(self, resolver):
        # 1 -> 2 -> (3, 4); 1 -> 5
        hierarchy = resolver.build([1, 2, 3, 4, 5], [(1, 2), (2, 3), (2, 4), (1, 5)])

        assert hierarchy.depth == {1: 0, 2: 1, 3: 2, 4: 2, 5: 1}
        assert hierarchy.bottom_up == [3, 4, 2, 5, 1]
        assert hierarchy.parents_bottom_up == [2, 1]
        assert hierarchy.roots == [1]

    def test_every_meter_follows_its_descendants(self, resolver):
        edges = [(10, 11), (11, 12), (12, 13), (10, 14), (14, 15)]
        hierarchy = resolver.build([10, 11, 12, 13, 14, 15], edges)

        position = {m: i for i, m in enumerate(hierarchy.bottom_up)}
        for meter_id in hierarchy.meter_ids:
            for descendant in hierarchy.descendants(meter_id):
                assert position[descendant] < position[meter_id]

    def test_cycle_edge_is_dropped(self, resolver):
        hierarchy = resolver.build([1, 2, 3], [(1, 2), (2, 3), (3, 1)])

        assert hierarchy.parent == {2: 1, 3: 2}
        assert sorted(hierarchy.bottom_up) == [1, 2, 3]

    def test_two_node_cycle_keeps_first_edge(self, resolver):
        hierarchy = resolver.build([1, 2], [(1, 2), (2, 1)])

        assert hierarchy.edges == [(1, 2)]

    def test_second_parent_and_self_loop_are_ignored(self, resolver):
        hierarchy = resolver.build([1, 2, 3], [(1, 3), (2, 3), (2, 2)])

        assert hierarchy.parent == {3: 1}
        assert not hierarchy.is_parent(2)

    def test_unknown_meters_are_ignored(self, resolver):
        hierarchy = resolver.build([1, 2], [(1, 99), (1, 2)])

        assert hierarchy.edges == [(1, 2)]

    def test_leaf_descendants(self, resolver):
        hierarchy = resolver.build([1, 2, 3, 4, 5], [(1, 2), (2, 3), (2, 4), (1, 5)])

        assert hierarchy.leaf_descendants(1) == [3, 4, 5]
        assert hierarchy.leaves == [3, 4, 5]

    def test_flat_site_has_no_parents(self, resolver):
        hierarchy = resolver.build([1, 2], [])

        assert hierarchy.parents_bottom_up == []
        assert hierarchy.depth == {1: 0, 2: 0}


class TestDeriveConnectionsFromIndents:
    def test_attaches_to_nearest_preceding_shallower_meter(self):
        ids = [1, 2, 3, 4, 5]
        levels = {1: 0, 2: 1, 3: 2, 4: 1, 5: 2}

        assert derive_connections_from_indents(ids, levels) == [(1, 2), (2, 3), (1, 4), (4, 5)]

    def test_orphaned_indent_has_no_parent(self):
        assert derive_connections_from_indents([1, 2], {1: 0, 2: 2}) == []


class TestOrderMeters:
    def test_default_order_is_type_priority_then_number(self):
        meters = [
            make_meter(1, MeterType.TENANT, "T2"),
            make_meter(2, MeterType.BULK, "B1"),
            make_meter(3, MeterType.TENANT, "T1"),
            make_meter(4, MeterType.COUNCIL, "C1"),
            make_meter(5, MeterType.CHECK, "K1"),
        ]

        assert [m.id for m in order_meters(meters)] == [4, 2, 5, 3, 1]

    def test_explicit_order_wins(self):
        meters = [make_meter(1, MeterType.TENANT), make_meter(2, MeterType.BULK), make_meter(3, MeterType.SOLAR)]

        assert [m.id for m in order_meters(meters, [3, 1])] == [3, 1, 2]
