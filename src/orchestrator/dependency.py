"""Dependency ordering for a finalized resource graph.

Resources are layered into waves with Kahn's algorithm: wave 0 holds the
nodes without references, and every later wave holds nodes whose
references all live in strictly earlier waves. For the gateway graph this
yields:

```
wave 0: public IPs, gateway NSG, local network gateways
wave 1: gateway IP configurations (reference a public IP)
wave 2: VPN gateway (references IP configurations and the NSG)
wave 3: VPN connections (reference the gateway and a local network gateway)
```

Within a wave nodes are ordered by (kind, key) so repeated runs log and
report in the same order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from .errors import CyclicDependencyError
from .graph import ResourceGraph, ResourceNode, ResourceRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """Ordered waves of nodes. Computed per run and never persisted."""

    waves: tuple[tuple[ResourceNode, ...], ...]

    def __iter__(self) -> Iterator[tuple[ResourceNode, ...]]:
        return iter(self.waves)

    def __len__(self) -> int:
        return len(self.waves)

    def wave_of(self, ref: ResourceRef) -> int:
        """Index of the wave containing a node.

        Raises:
            KeyError: If the node is not part of the plan.
        """
        for index, wave in enumerate(self.waves):
            if any(node.ref == ref for node in wave):
                return index
        raise KeyError(str(ref))

    def describe(self) -> list[list[str]]:
        """Waves as lists of "Kind/key" strings, for logs and reports."""
        return [[str(node.ref) for node in wave] for wave in self.waves]


def resolve_plan(graph: ResourceGraph) -> ExecutionPlan:
    """Layer a graph into execution waves.

    The graph is finalized first if the caller has not done so.

    Raises:
        InvalidReferenceError: If a reference targets a missing node.
        CyclicDependencyError: If layering cannot consume every node.
    """
    graph.finalize()

    # Build adjacency list (reversed - edges point to dependents)
    dependents: dict[ResourceRef, list[ResourceRef]] = {ref: [] for ref in graph.nodes}
    in_degree: dict[ResourceRef, int] = {ref: 0 for ref in graph.nodes}
    for node in graph:
        for target in set(node.references.values()):
            dependents[target].append(node.ref)
            in_degree[node.ref] += 1

    waves: list[tuple[ResourceNode, ...]] = []
    current = [graph.get(ref) for ref, degree in in_degree.items() if degree == 0]
    placed = 0

    while current:
        current.sort(key=lambda n: n.sort_key)
        waves.append(tuple(current))
        placed += len(current)

        following: list[ResourceNode] = []
        for node in current:
            for dependent in dependents[node.ref]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(graph.get(dependent))
        current = following

    if placed != len(graph):
        remaining = sorted(str(ref) for ref, degree in in_degree.items() if degree > 0)
        raise CyclicDependencyError(f"Circular dependency detected involving: {remaining}")

    plan = ExecutionPlan(waves=tuple(waves))
    logger.info(
        "Execution plan resolved",
        extra={"wave_count": len(plan), "node_count": placed, "waves": plan.describe()},
    )
    return plan
