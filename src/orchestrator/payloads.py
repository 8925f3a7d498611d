"""Desired-state rendering and drift comparison per resource kind.

A node's payload is its declared properties plus the provider identifiers
of the nodes it references, resolved at dispatch time. Drift comparison
only looks at the fields each kind declares as relevant, and normalizes
the usual ARM quirks:

- empty equivalence: [], {}, "" and None compare equal
- case-insensitive enums: "Static" == "static"
- numeric strings: "65001" == 65001
- order independence for unordered collections (zones, address spaces,
  gateway IP configurations matched by name)

Tags are the exception: they belong to the user, so they compare exactly.

Write-only values such as the connection shared key are never compared:
the provider does not return them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .graph import ProviderHandle, ResourceKind, ResourceNode

logger = logging.getLogger(__name__)

DRIFT_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.PUBLIC_IP: ("allocation_method", "sku", "zones", "tags"),
    ResourceKind.NSG: ("tags",),
    ResourceKind.GATEWAY_IP_CONFIG: (
        "private_ip_address_allocation",
        "public_ip_address_id",
        "subnet_id",
    ),
    ResourceKind.VPN_GATEWAY: (
        "gateway_type",
        "vpn_type",
        "sku",
        "generation",
        "active_active",
        "enable_bgp",
        "bgp_asn",
        "ip_configurations",
        "tags",
    ),
    ResourceKind.LOCAL_NETWORK_GATEWAY: (
        "gateway_address",
        "address_space",
        "bgp_asn",
        "bgp_peering_address",
        "tags",
    ),
    ResourceKind.VPN_CONNECTION: (
        "connection_type",
        "connection_protocol",
        "enable_bgp",
        "ipsec_policy",
        "virtual_network_gateway_id",
        "local_network_gateway_id",
        "tags",
    ),
}

UNORDERED_FIELDS = frozenset({"zones", "address_space", "ip_configurations"})

# User-owned mappings: the provider adds no defaults, so keys and values must match exactly.
EXACT_FIELDS = frozenset({"tags"})


# =============================================================================
# Rendering
# =============================================================================


def _render_plain(node: ResourceNode, resolved: Mapping[str, ProviderHandle]) -> dict[str, Any]:
    return dict(node.properties)


def _render_gateway_ip_config(
    node: ResourceNode, resolved: Mapping[str, ProviderHandle]
) -> dict[str, Any]:
    payload = dict(node.properties)
    payload["public_ip_address_id"] = resolved["public_ip"].resource_id
    return payload


def _render_gateway(node: ResourceNode, resolved: Mapping[str, ProviderHandle]) -> dict[str, Any]:
    payload = dict(node.properties)
    # References keep declaration order, so IP configurations render in declared order.
    # The NSG reference only orders creation; the gateway resource has no NSG field.
    payload["ip_configurations"] = [
        {
            "name": handle.name,
            "private_ip_address_allocation": handle.attributes.get(
                "private_ip_address_allocation", "Dynamic"
            ),
            "public_ip_address_id": handle.attributes.get("public_ip_address_id", ""),
            "subnet_id": handle.attributes.get("subnet_id", ""),
        }
        for role, handle in resolved.items()
        if role.startswith("ip_configuration:")
    ]
    return payload


def _render_connection(
    node: ResourceNode, resolved: Mapping[str, ProviderHandle]
) -> dict[str, Any]:
    payload = dict(node.properties)
    payload["virtual_network_gateway_id"] = resolved["virtual_network_gateway"].resource_id
    payload["local_network_gateway_id"] = resolved["local_network_gateway"].resource_id
    return payload


_RENDERERS: dict[ResourceKind, Callable[[ResourceNode, Mapping[str, ProviderHandle]], dict]] = {
    ResourceKind.PUBLIC_IP: _render_plain,
    ResourceKind.NSG: _render_plain,
    ResourceKind.GATEWAY_IP_CONFIG: _render_gateway_ip_config,
    ResourceKind.VPN_GATEWAY: _render_gateway,
    ResourceKind.LOCAL_NETWORK_GATEWAY: _render_plain,
    ResourceKind.VPN_CONNECTION: _render_connection,
}


def render_payload(node: ResourceNode, resolved: Mapping[str, ProviderHandle]) -> dict[str, Any]:
    """Build the provider payload for a node from its resolved references."""
    return _RENDERERS[node.kind](node, resolved)


# =============================================================================
# Drift comparison
# =============================================================================


def _normalize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        if stripped.isdigit():
            return int(stripped)
        lowered = stripped.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        return lowered
    if isinstance(value, (list, tuple, set, dict)) and not value:
        return None
    return value


def _sort_key(value: Any) -> str:
    if isinstance(value, Mapping):
        return str(_normalize(value.get("name")))
    return str(_normalize(value))


def values_equal(desired: Any, live: Any, unordered: bool = False) -> bool:
    """Compare a desired value with a live one after normalization.

    Mappings match when every desired key matches; extra live keys (defaults
    the provider fills in) are ignored.
    """
    desired = _normalize(desired)
    live = _normalize(live)

    if isinstance(desired, Mapping):
        if not isinstance(live, Mapping):
            return False
        return all(values_equal(value, live.get(key)) for key, value in desired.items())

    if isinstance(desired, (list, tuple)):
        if not isinstance(live, (list, tuple)) or len(desired) != len(live):
            return False
        if unordered:
            desired = sorted(desired, key=_sort_key)
            live = sorted(live, key=_sort_key)
        return all(values_equal(d, lv) for d, lv in zip(desired, live, strict=True))

    if isinstance(desired, bool) or isinstance(live, bool):
        return bool(desired) == bool(live)

    return desired == live


def mappings_identical(
    desired: Mapping[str, Any] | None, live: Mapping[str, Any] | None
) -> bool:
    """Compare two mappings exactly: same keys, case-sensitive values."""
    return dict(desired or {}) == dict(live or {})


def _field_equal(name: str, desired: Any, live: Any) -> bool:
    if name in EXACT_FIELDS:
        return mappings_identical(desired, live)
    return values_equal(desired, live, unordered=name in UNORDERED_FIELDS)


def diff_properties(
    kind: ResourceKind, desired: Mapping[str, Any], live: Mapping[str, Any]
) -> list[str]:
    """Names of drift-relevant fields whose live value differs from the payload."""
    drifted = [
        name
        for name in DRIFT_FIELDS[kind]
        if name in desired and not _field_equal(name, desired[name], live.get(name))
    ]
    if drifted:
        logger.debug("Drift detected", extra={"kind": kind.value, "fields": drifted})
    return drifted
