"""Post-deployment validation against live provider state.

Re-reads every managed resource and compares it with the declaration and
the projected outputs. Validation never mutates anything; a failed check
is reported as a finding, not raised.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .graph import ResourceKind
from .models import NSG_NAME_PREFIX, VpnGatewaySpec
from .outputs import REQUIRED_OUTPUTS
from .provider import LiveResource, Provider

logger = logging.getLogger(__name__)

GATEWAY_RESOURCE_TYPE = "Microsoft.Network/virtualNetworkGateways"


@dataclass(frozen=True)
class ValidationFinding:
    """Outcome of one check."""

    check: str
    passed: bool
    expected: Any = None
    actual: Any = None

    def __str__(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"[{status}] {self.check}: expected={self.expected!r} actual={self.actual!r}"


@dataclass
class ValidationReport:
    findings: list[ValidationFinding] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(f.passed for f in self.findings)

    @property
    def failures(self) -> list[ValidationFinding]:
        return [f for f in self.findings if not f.passed]

    def check(self, name: str, expected: Any, actual: Any) -> None:
        self.findings.append(ValidationFinding(name, expected == actual, expected, actual))

    def require(self, name: str, condition: bool, expected: Any = None, actual: Any = None) -> None:
        self.findings.append(ValidationFinding(name, condition, expected, actual))


async def validate_deployment(
    spec: VpnGatewaySpec, outputs: Mapping[str, Any], provider: Provider
) -> ValidationReport:
    """Compare live resources with the declaration and the output map."""
    report = ValidationReport()

    for key in REQUIRED_OUTPUTS:
        report.require(f"output {key} is set", bool(outputs.get(key)), "non-empty", outputs.get(key))

    gateway_id = str(outputs.get("vpn_gateway_id", ""))
    report.require(
        "vpn_gateway_id resource type",
        GATEWAY_RESOURCE_TYPE in gateway_id,
        GATEWAY_RESOURCE_TYPE,
        gateway_id,
    )

    await _validate_gateway(spec, provider, report)
    await _validate_public_ips(spec, outputs, provider, report)
    await _validate_nsg(outputs, provider, report)
    await _validate_local_network_gateways(spec, provider, report)
    await _validate_connections(outputs, provider, report)

    level = logging.INFO if report.passed else logging.ERROR
    logger.log(
        level,
        "Validation finished",
        extra={
            "checks": len(report.findings),
            "failures": [str(f) for f in report.failures],
        },
    )
    return report


async def _exists(
    report: ValidationReport, provider: Provider, kind: ResourceKind, name: str
) -> LiveResource | None:
    live = await provider.get(kind, name)
    report.require(f"{kind.value} {name} exists", live is not None, True, live is not None)
    return live


async def _validate_gateway(
    spec: VpnGatewaySpec, provider: Provider, report: ValidationReport
) -> None:
    live = await _exists(report, provider, ResourceKind.VPN_GATEWAY, spec.vpn_gateway_name)
    if live is None:
        return

    props = live.properties
    report.check("gateway name", spec.vpn_gateway_name, live.handle.name)
    report.check("gateway sku", spec.sku, props.get("sku"))
    report.check("gateway vpn_type", "RouteBased", props.get("vpn_type"))
    report.check("gateway enable_bgp", spec.enable_bgp, props.get("enable_bgp"))
    report.check("gateway active_active", spec.active_active, props.get("active_active"))
    if spec.enable_bgp:
        report.check("gateway bgp_asn", spec.effective_bgp_asn, props.get("bgp_asn"))


async def _validate_public_ips(
    spec: VpnGatewaySpec, outputs: Mapping[str, Any], provider: Provider, report: ValidationReport
) -> None:
    declared = {pip.name: pip for pip in spec.public_ip_configurations.values()}
    names = [name for name in outputs.get("public_ip_names", []) if name]
    report.require("public_ip_names is set", bool(names), "non-empty", names)

    for name in names:
        live = await _exists(report, provider, ResourceKind.PUBLIC_IP, name)
        if live is None:
            continue
        pip = declared.get(name)
        report.check(f"public IP {name} sku", pip.sku if pip else "Standard", live.properties.get("sku"))
        report.check(
            f"public IP {name} allocation_method",
            pip.allocation_method if pip else "Static",
            live.properties.get("allocation_method"),
        )


async def _validate_nsg(
    outputs: Mapping[str, Any], provider: Provider, report: ValidationReport
) -> None:
    nsg_name = outputs.get("gateway_nsg_name") or ""
    if not nsg_name:
        return
    live = await _exists(report, provider, ResourceKind.NSG, nsg_name)
    if live is not None:
        report.require(
            "gateway NSG name", NSG_NAME_PREFIX in live.handle.name, NSG_NAME_PREFIX, live.handle.name
        )


async def _validate_local_network_gateways(
    spec: VpnGatewaySpec, provider: Provider, report: ValidationReport
) -> None:
    for lng in spec.local_network_gateways.values():
        live = await _exists(report, provider, ResourceKind.LOCAL_NETWORK_GATEWAY, lng.name)
        if live is None:
            continue
        report.check(f"local network gateway {lng.name} name", lng.name, live.handle.name)
        report.check(
            f"local network gateway {lng.name} gateway_address",
            lng.gateway_address,
            live.properties.get("gateway_address"),
        )


async def _validate_connections(
    outputs: Mapping[str, Any], provider: Provider, report: ValidationReport
) -> None:
    for name in outputs.get("vpn_connection_names", []):
        await _exists(report, provider, ResourceKind.VPN_CONNECTION, name)
