"""Tests for dependency resolution into execution waves."""

from __future__ import annotations

from typing import Any

import pytest

from orchestrator.dependency import ExecutionPlan, resolve_plan
from orchestrator.errors import CyclicDependencyError, InvalidReferenceError
from orchestrator.graph import ResourceGraph, ResourceKind, ResourceRef
from orchestrator.models import VpnGatewaySpec


def _wave_refs(plan: ExecutionPlan) -> list[list[str]]:
    return plan.describe()


class TestResolvePlan:
    """Tests for resolve_plan layering."""

    def test_empty_graph(self) -> None:
        """Test an empty graph yields an empty plan."""
        plan = resolve_plan(ResourceGraph())
        assert len(plan) == 0

    def test_independent_nodes_share_wave_zero(self) -> None:
        """Test nodes without references all land in wave 0."""
        graph = ResourceGraph()
        graph.add_node(ResourceKind.PUBLIC_IP, "pip1")
        graph.add_node(ResourceKind.NSG, "nsg")
        graph.add_node(ResourceKind.LOCAL_NETWORK_GATEWAY, "lng")

        plan = resolve_plan(graph)
        assert len(plan) == 1
        assert len(plan.waves[0]) == 3

    def test_wave_is_longest_path(self) -> None:
        """Test a node lands one wave after its deepest dependency."""
        a = ResourceRef(ResourceKind.PUBLIC_IP, "a")
        b = ResourceRef(ResourceKind.GATEWAY_IP_CONFIG, "b")
        graph = ResourceGraph()
        graph.add_node(ResourceKind.PUBLIC_IP, "a")
        graph.add_node(ResourceKind.GATEWAY_IP_CONFIG, "b", references={"public_ip": a})
        # c depends on both a (wave 0) and b (wave 1): must be wave 2
        graph.add_node(ResourceKind.VPN_GATEWAY, "c", references={"x": a, "y": b})

        plan = resolve_plan(graph)
        assert plan.wave_of(a) == 0
        assert plan.wave_of(b) == 1
        assert plan.wave_of(ResourceRef(ResourceKind.VPN_GATEWAY, "c")) == 2

    def test_every_dependency_in_earlier_wave(
        self, connection_spec_data: dict[str, Any]
    ) -> None:
        """Test every reference targets a strictly earlier wave."""
        graph = VpnGatewaySpec(**connection_spec_data).to_resource_graph()
        plan = resolve_plan(graph)

        for node in graph:
            for target in node.references.values():
                assert plan.wave_of(target) < plan.wave_of(node.ref)

    def test_every_node_in_exactly_one_wave(self, bgp_spec_data: dict[str, Any]) -> None:
        """Test the plan covers each node exactly once."""
        graph = VpnGatewaySpec(**bgp_spec_data).to_resource_graph()
        plan = resolve_plan(graph)

        placed = [node.ref for wave in plan for node in wave]
        assert sorted(placed) == sorted(graph.nodes)

    def test_tie_break_is_kind_then_key(self) -> None:
        """Test order within a wave is deterministic by (kind, key)."""
        graph = ResourceGraph()
        graph.add_node(ResourceKind.PUBLIC_IP, "pip2")
        graph.add_node(ResourceKind.NSG, "nsg")
        graph.add_node(ResourceKind.PUBLIC_IP, "pip1")
        graph.add_node(ResourceKind.LOCAL_NETWORK_GATEWAY, "lng")

        plan = resolve_plan(graph)
        assert _wave_refs(plan) == [
            ["LocalNetworkGateway/lng", "NSG/nsg", "PublicIP/pip1", "PublicIP/pip2"]
        ]

    def test_deterministic_across_runs(self, connection_spec_data: dict[str, Any]) -> None:
        """Test the same declaration always yields the same plan."""
        first = resolve_plan(VpnGatewaySpec(**connection_spec_data).to_resource_graph())
        second = resolve_plan(VpnGatewaySpec(**connection_spec_data).to_resource_graph())
        assert first.describe() == second.describe()

    def test_cycle_detected(self) -> None:
        """Test cycles are reported before any wave is produced."""
        a = ResourceRef(ResourceKind.NSG, "a")
        b = ResourceRef(ResourceKind.NSG, "b")
        c = ResourceRef(ResourceKind.NSG, "c")
        graph = ResourceGraph()
        graph.add_node(ResourceKind.NSG, "a", references={"next": b})
        graph.add_node(ResourceKind.NSG, "b", references={"next": c})
        graph.add_node(ResourceKind.NSG, "c", references={"next": a})

        with pytest.raises(CyclicDependencyError, match="Circular dependency"):
            resolve_plan(graph)

    def test_missing_reference(self) -> None:
        """Test references to undeclared nodes are rejected."""
        graph = ResourceGraph()
        graph.add_node(
            ResourceKind.VPN_CONNECTION,
            "conn",
            references={"local_network_gateway": ResourceRef(ResourceKind.LOCAL_NETWORK_GATEWAY, "x")},
        )
        with pytest.raises(InvalidReferenceError):
            resolve_plan(graph)

    def test_wave_of_unknown_ref(self) -> None:
        """Test wave_of raises KeyError for refs outside the plan."""
        plan = resolve_plan(ResourceGraph())
        with pytest.raises(KeyError):
            plan.wave_of(ResourceRef(ResourceKind.NSG, "nope"))


class TestGatewayLayering:
    """Tests for the layering of a full gateway declaration."""

    def test_basic_gateway(self, basic_spec_data: dict[str, Any]) -> None:
        """Test public IP and NSG precede the IP configuration and gateway."""
        plan = resolve_plan(VpnGatewaySpec(**basic_spec_data).to_resource_graph())

        assert _wave_refs(plan) == [
            ["NSG/nsg-gateway-vpn-gw-test", "PublicIP/pip1"],
            ["GatewayIPConfig/vnetGatewayConfig"],
            ["VPNGateway/vpn-gw-test"],
        ]

    def test_connections_last(self, connection_spec_data: dict[str, Any]) -> None:
        """Test connections follow the gateway and local network gateways."""
        plan = resolve_plan(VpnGatewaySpec(**connection_spec_data).to_resource_graph())

        assert _wave_refs(plan) == [
            ["LocalNetworkGateway/lng-test", "NSG/nsg-gateway-vpn-gw-conn-test", "PublicIP/pip1"],
            ["GatewayIPConfig/vnetGatewayConfig"],
            ["VPNGateway/vpn-gw-conn-test"],
            ["VPNConnection/connection1"],
        ]

    def test_active_active_ip_configs_share_wave(self, bgp_spec_data: dict[str, Any]) -> None:
        """Test both IP configurations are provisioned concurrently."""
        plan = resolve_plan(VpnGatewaySpec(**bgp_spec_data).to_resource_graph())

        assert _wave_refs(plan)[1] == [
            "GatewayIPConfig/vnetGatewayConfig1",
            "GatewayIPConfig/vnetGatewayConfig2",
        ]
