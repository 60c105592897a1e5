"""Graph module for manifest-based provisioning.

Builds a dependency graph from rendered resources and computes traversal
orderings for create (dependencies first) and destroy (dependents first).
Edges come from explicit depends_on lists and from interpolated references.
"""

import heapq
import logging
from collections import deque
from dataclasses import dataclass, field

from config import ConfigError
from provisioner.render import Resource

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class GraphNode:
    """A node in the resource graph with dependency edges.

    Attributes:
        resource: The underlying Resource
        requires: Nodes this one depends on
        required_by: Nodes depending on this one
        depth: Length of the longest dependency chain below this node
    """
    resource: Resource
    requires: list['GraphNode'] = field(default_factory=list)
    required_by: list['GraphNode'] = field(default_factory=list)
    depth: int = 0

    @property
    def address(self) -> str:
        return self.resource.address

    @property
    def type(self) -> str:
        return self.resource.type

    @property
    def is_root(self) -> bool:
        return not self.requires

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, depth={self.depth})"


class ResourceGraph:
    """Dependency graph over a manifest's rendered resources.

    Provides ordered traversal for lifecycle previews and validation:
    - create_order(): prerequisites before dependents
    - destroy_order(): dependents before prerequisites
    """

    def __init__(self, resources: list[Resource]):
        """Build the graph.

        Raises:
            ConfigError: On duplicate addresses, dangling references or cycles
        """
        self._nodes: dict[str, GraphNode] = {}
        self._order: list[str] = []
        self._build_graph(resources)
        self._create_order = self._topological_order()
        self._compute_depths()

    def _build_graph(self, resources: list[Resource]) -> None:
        for r in resources:
            if r.address in self._nodes:
                raise ConfigError(f"Duplicate resource address: '{r.address}'")
            self._nodes[r.address] = GraphNode(resource=r)
            self._order.append(r.address)

        for r in resources:
            node = self._nodes[r.address]
            for addr in list(r.depends_on) + r.references():
                if addr not in self._nodes:
                    raise ConfigError(f"Resource '{r.address}' references unknown resource '{addr}'")
                if addr == r.address:
                    raise ConfigError(f"Resource '{r.address}' depends on itself")
                dep = self._nodes[addr]
                if any(d.address == addr for d in node.requires):
                    continue
                node.requires.append(dep)
                dep.required_by.append(node)

    def _topological_order(self) -> list[GraphNode]:
        """Kahn's algorithm, stable by declaration order."""
        position = {addr: i for i, addr in enumerate(self._order)}
        remaining = {addr: len(node.requires) for addr, node in self._nodes.items()}
        ready = [position[addr] for addr in self._order if remaining[addr] == 0]
        heapq.heapify(ready)
        ordered: list[GraphNode] = []

        while ready:
            node = self._nodes[self._order[heapq.heappop(ready)]]
            ordered.append(node)
            for dependent in node.required_by:
                remaining[dependent.address] -= 1
                if remaining[dependent.address] == 0:
                    heapq.heappush(ready, position[dependent.address])

        if len(ordered) != len(self._nodes):
            stuck = [a for a in self._order if remaining[a] > 0]
            raise ConfigError(f"Cycle detected in resource graph involving '{stuck[0]}'")
        return ordered

    def _compute_depths(self) -> None:
        for node in self._create_order:
            node.depth = max((dep.depth + 1 for dep in node.requires), default=0)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    @property
    def roots(self) -> list[GraphNode]:
        """Nodes without prerequisites."""
        return [self._nodes[a] for a in self._order if self._nodes[a].is_root]

    @property
    def max_depth(self) -> int:
        if not self._nodes:
            return 0
        return max(n.depth for n in self._nodes.values())

    def get_node(self, address: str) -> GraphNode:
        """Get a GraphNode by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def create_order(self) -> list[GraphNode]:
        """Return nodes in creation order (prerequisites first)."""
        return list(self._create_order)

    def destroy_order(self) -> list[GraphNode]:
        """Return nodes in destruction order (reverse of create_order)."""
        return list(reversed(self._create_order))

    def dependencies(self, address: str, transitive: bool = False) -> list[str]:
        """Addresses the given resource depends on.

        Raises:
            KeyError: If address not found
        """
        node = self._nodes[address]
        if not transitive:
            return [dep.address for dep in node.requires]

        found: list[str] = []
        queue: deque[GraphNode] = deque(node.requires)
        while queue:
            dep = queue.popleft()
            if dep.address in found:
                continue
            found.append(dep.address)
            queue.extend(dep.requires)
        return found

    def explicit_dependencies(self, address: str) -> list[str]:
        """Addresses listed in the resource's depends_on."""
        return list(self._nodes[address].resource.depends_on)

    def dependents(self, address: str) -> list[str]:
        """Addresses that directly depend on the given resource."""
        return [d.address for d in self._nodes[address].required_by]

    def by_type(self, resource_type: str) -> list[GraphNode]:
        return [self._nodes[a] for a in self._order if self._nodes[a].type == resource_type]
