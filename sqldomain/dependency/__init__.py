"""
Domain class dependency graph.

Computes the reference graph between registered domain classes and detects the
cycles which need special handling when inserting and deleting objects.
"""
from .graph import DomainClassGraph, CycleStatus, GraphNode

__all__ = ["DomainClassGraph", "CycleStatus", "GraphNode"]
