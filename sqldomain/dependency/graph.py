"""
Dependency graph of domain classes.

Nodes are domain classes, edges point from a class to the classes its reference
fields point to. The graph is used to detect circular references between classes
(which need deferred foreign keys).
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("domain_dependencies")


class CycleStatus(Enum):
    """Status of cycle detection."""
    NO_CYCLE = 0
    CYCLE_DETECTED = 1


class GraphNode(BaseModel):
    """Represents a domain class in the dependency graph."""
    domain_class: Any
    dependencies: Set[Any] = Field(default_factory=set)  # classes this class references

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_dependency(self, domain_class: Any) -> None:
        self.dependencies.add(domain_class)

    def __str__(self) -> str:
        return f"Node({self.domain_class.__name__}, deps={len(self.dependencies)})"

    def __repr__(self) -> str:
        return self.__str__()


class DomainClassGraph(BaseModel):
    """
    Computes the reference graph of a set of domain classes.

    This class provides methods to:
    1. Build the graph from a dependency function
    2. Detect cycles in the graph
    """
    nodes: Dict[Any, GraphNode] = Field(default_factory=dict)
    cycles: List[List[Any]] = Field(default_factory=list)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def build_graph(self, domain_classes: Iterable[Any],
                    get_dependencies: Callable[[Any], Iterable[Any]]) -> CycleStatus:
        """
        Build the graph for the given classes.

        Args:
            domain_classes: Classes to add as nodes
            get_dependencies: Function returning the classes a class references

        Returns:
            CycleStatus indicating if any cycles were detected
        """
        self.nodes.clear()
        self.cycles.clear()

        for domain_class in domain_classes:
            self.add_class(domain_class, get_dependencies(domain_class))

        # Detect cycles using DFS with an explicit path
        visited: Set[Any] = set()
        path: List[Any] = []

        def find_cycles(domain_class: Any) -> None:
            if domain_class in path:
                cycle = path[path.index(domain_class):] + [domain_class]
                logger.debug(f"Detected cycle: {[c.__name__ for c in cycle]}")
                self.cycles.append(cycle)
                return
            if domain_class in visited:
                return

            path.append(domain_class)
            for dependency in sorted(self.nodes[domain_class].dependencies, key=lambda c: c.__name__):
                find_cycles(dependency)
            path.pop()
            visited.add(domain_class)

        for domain_class in list(self.nodes):
            find_cycles(domain_class)

        logger.debug(f"Built class dependency graph with {len(self.nodes)} nodes and {len(self.cycles)} cycles")
        return CycleStatus.CYCLE_DETECTED if self.cycles else CycleStatus.NO_CYCLE

    def add_class(self, domain_class: Any, dependencies: Optional[Iterable[Any]] = None) -> None:
        """
        Add a class to the graph with optional dependencies.

        Args:
            domain_class: The class to add
            dependencies: Classes this class references
        """
        if domain_class not in self.nodes:
            self.nodes[domain_class] = GraphNode(domain_class=domain_class)

        for dependency in dependencies or []:
            if dependency not in self.nodes:
                self.nodes[dependency] = GraphNode(domain_class=dependency)
            self.nodes[domain_class].add_dependency(dependency)

    def get_node(self, domain_class: Any) -> Optional[GraphNode]:
        return self.nodes.get(domain_class)

    def get_cycles(self) -> List[List[Any]]:
        """Get all detected cycles (each starts and ends with the same class)."""
        return self.cycles

