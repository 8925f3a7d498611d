"""Resource graph model.

Nodes reference each other by logical key, never by pointer. A reference
is only resolved into a provider identifier after the referent reaches
the Created state, which lets the gateway declare its IP configurations
(and connections declare their gateway) before any of them exist.

Topology is frozen by finalize(); afterwards only node state, handles and
errors change, and each node is mutated by the single task that owns it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import (
    CyclicDependencyError,
    DuplicateKeyError,
    GraphFrozenError,
    InvalidReferenceError,
    UnresolvedReferenceError,
)

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Resource kinds managed by the orchestrator."""

    PUBLIC_IP = "PublicIP"
    NSG = "NSG"
    GATEWAY_IP_CONFIG = "GatewayIPConfig"
    VPN_GATEWAY = "VPNGateway"
    LOCAL_NETWORK_GATEWAY = "LocalNetworkGateway"
    VPN_CONNECTION = "VPNConnection"


class NodeState(str, Enum):
    """Runtime state of a node."""

    PENDING = "Pending"
    CREATING = "Creating"
    CREATED = "Created"
    FAILED = "Failed"


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Logical reference to a node: (kind, key)."""

    kind: ResourceKind
    key: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.key}"


@dataclass(frozen=True)
class ProviderHandle:
    """Provider-assigned identity and live attributes of a created resource."""

    resource_id: str
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class ResourceNode:
    """One declared resource and its runtime state."""

    kind: ResourceKind
    key: str
    properties: dict[str, Any] = field(default_factory=dict)
    # role -> referenced node, e.g. {"public_ip": ResourceRef(PUBLIC_IP, "pip1")}
    references: dict[str, ResourceRef] = field(default_factory=dict)
    state: NodeState = NodeState.PENDING
    handle: ProviderHandle | None = None
    error: Exception | None = None
    attempts: int = 0
    declaration_index: int = 0

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.key)

    @property
    def name(self) -> str:
        """Provider-side resource name (falls back to the logical key).

        Child resources use the ARM "parent/child" form.
        """
        name = str(self.properties.get("name") or self.key)
        parent = self.properties.get("parent_name")
        return f"{parent}/{name}" if parent else name

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.kind.value, self.key)

    def mark_created(self, handle: ProviderHandle) -> None:
        self.state = NodeState.CREATED
        self.handle = handle
        self.error = None

    def mark_failed(self, error: Exception) -> None:
        self.state = NodeState.FAILED
        self.error = error

    def reset(self) -> None:
        """Return the node to Pending, dropping handle and error."""
        self.state = NodeState.PENDING
        self.handle = None
        self.error = None
        self.attempts = 0


@dataclass
class ResourceGraph:
    """Owns every declared node, keyed by (kind, key).

    Resource group and location are carried for output pass-through.
    """

    resource_group_name: str = ""
    location: str = ""
    nodes: dict[ResourceRef, ResourceNode] = field(default_factory=dict)
    _finalized: bool = field(default=False, init=False, repr=False)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, ref: object) -> bool:
        return ref in self.nodes

    @property
    def finalized(self) -> bool:
        return self._finalized

    def add_node(
        self,
        kind: ResourceKind,
        key: str,
        properties: Mapping[str, Any] | None = None,
        references: Mapping[str, ResourceRef] | None = None,
    ) -> ResourceNode:
        """Add a node to the graph.

        References may point at nodes that are added later; they are checked
        by finalize().

        Raises:
            DuplicateKeyError: If (kind, key) already exists.
            GraphFrozenError: If the graph has been finalized.
        """
        if self._finalized:
            raise GraphFrozenError(f"Cannot add {kind.value}/{key}: graph is finalized")

        ref = ResourceRef(kind, key)
        if ref in self.nodes:
            raise DuplicateKeyError(f"Duplicate resource key: {ref}")

        node = ResourceNode(
            kind=kind,
            key=key,
            properties=dict(properties or {}),
            references=dict(references or {}),
            declaration_index=len(self.nodes),
        )
        self.nodes[ref] = node
        return node

    def get(self, ref: ResourceRef) -> ResourceNode:
        return self.nodes[ref]

    def nodes_of_kind(self, kind: ResourceKind) -> list[ResourceNode]:
        """Nodes of one kind in declaration order."""
        matching = [n for n in self.nodes.values() if n.kind == kind]
        return sorted(matching, key=lambda n: n.declaration_index)

    def dependencies_of(self, node: ResourceNode) -> list[ResourceNode]:
        return [self.nodes[ref] for ref in node.references.values()]

    def finalize(self) -> None:
        """Validate references and acyclicity, then freeze topology.

        Raises:
            InvalidReferenceError: If any reference targets a missing node.
            CyclicDependencyError: If the references contain a cycle.
        """
        if self._finalized:
            return

        missing = [
            f"{node.ref} -> {target} ({role})"
            for node in self.nodes.values()
            for role, target in node.references.items()
            if target not in self.nodes
        ]
        if missing:
            raise InvalidReferenceError(f"Unresolved references: {missing}")

        # Kahn's algorithm for cycle detection
        in_degree: dict[ResourceRef, int] = {ref: 0 for ref in self.nodes}
        dependents: dict[ResourceRef, list[ResourceRef]] = {ref: [] for ref in self.nodes}
        for node in self.nodes.values():
            for target in set(node.references.values()):
                in_degree[node.ref] += 1
                dependents[target].append(node.ref)

        queue = [ref for ref, degree in in_degree.items() if degree == 0]
        processed = 0
        while queue:
            current = queue.pop()
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            cycle_nodes = sorted(str(ref) for ref, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

        self._finalized = True
        logger.debug("Resource graph finalized", extra={"node_count": len(self.nodes)})

    def resolve(self, ref: ResourceRef) -> ProviderHandle:
        """Return the handle of a Created node.

        Raises:
            UnresolvedReferenceError: If the node is missing or not Created.
        """
        node = self.nodes.get(ref)
        if node is None or node.state != NodeState.CREATED or node.handle is None:
            state = node.state.value if node is not None else "missing"
            raise UnresolvedReferenceError(f"Reference {ref} is not resolvable (state: {state})")
        return node.handle

    def resolve_references(self, node: ResourceNode) -> dict[str, ProviderHandle]:
        """Resolve every outgoing reference of a node, keyed by role."""
        return {role: self.resolve(ref) for role, ref in node.references.items()}

    def unconverged(self) -> list[ResourceNode]:
        return [n for n in self.nodes.values() if n.state != NodeState.CREATED]
