"""Output projection for a converged resource graph.

The projected map is what downstream consumers (and the validator) read:
gateway identity, resource names and the pass-through resource group and
location.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import IncompleteGraphError
from .graph import ProviderHandle, ResourceGraph, ResourceKind, ResourceNode

logger = logging.getLogger(__name__)

REQUIRED_OUTPUTS = (
    "vpn_gateway_id",
    "vpn_gateway_name",
    "resource_group_name",
    "location",
)


def _handle(node: ResourceNode) -> ProviderHandle:
    # project() has already checked that every node is Created
    assert node.handle is not None
    return node.handle


def project(graph: ResourceGraph) -> dict[str, Any]:
    """Flatten a converged graph into the output map.

    List outputs follow declaration order, not wave order.

    Raises:
        IncompleteGraphError: If any node is not Created.
    """
    unconverged = graph.unconverged()
    if unconverged:
        raise IncompleteGraphError(
            [f"{node.ref} ({node.state.value})" for node in unconverged]
        )

    gateways = graph.nodes_of_kind(ResourceKind.VPN_GATEWAY)
    gateway = _handle(gateways[0]) if gateways else None
    public_ips = [_handle(n) for n in graph.nodes_of_kind(ResourceKind.PUBLIC_IP)]
    nsgs = graph.nodes_of_kind(ResourceKind.NSG)
    local_gateways = [_handle(n) for n in graph.nodes_of_kind(ResourceKind.LOCAL_NETWORK_GATEWAY)]
    connections = [_handle(n) for n in graph.nodes_of_kind(ResourceKind.VPN_CONNECTION)]

    outputs: dict[str, Any] = {
        "vpn_gateway_id": gateway.resource_id if gateway else "",
        "vpn_gateway_name": gateway.name if gateway else "",
        "resource_group_name": graph.resource_group_name,
        "location": graph.location,
        "public_ip_names": [h.name for h in public_ips],
        "gateway_nsg_name": _handle(nsgs[0]).name if nsgs else "",
        "vpn_connection_names": [h.name for h in connections],
        "public_ip_addresses": [h.attributes.get("ip_address", "") for h in public_ips],
        "vpn_gateway_bgp_peering_address": (
            gateway.attributes.get("bgp_peering_address", "") if gateway else ""
        ),
        "local_network_gateway_ids": [h.resource_id for h in local_gateways],
        "vpn_connection_ids": [h.resource_id for h in connections],
    }

    logger.info(
        "Outputs projected",
        extra={
            "vpn_gateway_name": outputs["vpn_gateway_name"],
            "public_ip_count": len(public_ips),
            "connection_count": len(connections),
        },
    )
    return outputs
