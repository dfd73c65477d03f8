"""
Tests for the domain class dependency graph.
These tests focus on cycle detection between classes.
"""
from typing import Dict, List

from sqldomain.dependency.graph import CycleStatus, DomainClassGraph


class Top:
    pass


class Left:
    pass


class Right:
    pass


class Bottom:
    pass


class First:
    pass


class Second:
    pass


class Third:
    pass


def build(edges: Dict[type, List[type]]) -> DomainClassGraph:
    graph = DomainClassGraph()
    graph.build_graph(edges.keys(), lambda c: edges[c])
    return graph


def test_diamond_has_no_cycle():
    graph = build({Top: [Left, Right], Left: [Bottom], Right: [Bottom], Bottom: []})
    assert graph.get_cycles() == []
    assert graph.get_node(Top).dependencies == {Left, Right}


def test_three_class_cycle():
    graph = DomainClassGraph()
    status = graph.build_graph([First, Second, Third], lambda c: {First: [Second], Second: [Third], Third: [First]}[c])
    assert status == CycleStatus.CYCLE_DETECTED
    assert len(graph.get_cycles()) == 1
    cycle = graph.get_cycles()[0]
    assert cycle[0] is cycle[-1]
    assert set(cycle) == {First, Second, Third}


def test_self_reference_is_a_cycle():
    graph = build({First: [First], Second: [First]})
    assert graph.get_cycles() == [[First, First]]
    assert graph.get_node(Second).dependencies == {First}


def test_add_class_creates_missing_nodes():
    graph = DomainClassGraph()
    graph.add_class(Top, [Bottom])
    assert graph.get_node(Bottom) is not None
    assert graph.get_node(Top).dependencies == {Bottom}
    assert graph.get_node(Left) is None
