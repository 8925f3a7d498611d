"""Tests for the gateway declaration models and graph construction."""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError

from orchestrator.graph import ResourceKind, ResourceRef
from orchestrator.models import (
    DEFAULT_BGP_ASN,
    IpsecPolicyConfig,
    LocalNetworkGatewayConfig,
    PublicIpConfig,
    VpnGatewaySpec,
    gateway_nsg_name,
)


class TestPublicIpConfig:
    """Tests for PublicIpConfig."""

    def test_defaults(self) -> None:
        """Test Standard/Static defaults."""
        pip = PublicIpConfig(name="pip")
        assert pip.sku == "Standard"
        assert pip.allocation_method == "Static"
        assert pip.zones == []

    def test_invalid_sku(self) -> None:
        """Test unknown SKUs are rejected."""
        with pytest.raises(ValidationError, match="sku must be one of"):
            PublicIpConfig(name="pip", sku="Premium")

    def test_invalid_allocation(self) -> None:
        """Test unknown allocation methods are rejected."""
        with pytest.raises(ValidationError, match="allocation_method"):
            PublicIpConfig(name="pip", allocation_method="Sometimes")


class TestLocalNetworkGatewayConfig:
    """Tests for LocalNetworkGatewayConfig."""

    def test_cidr_required(self) -> None:
        """Test address space entries must be CIDR."""
        with pytest.raises(ValidationError, match="CIDR"):
            LocalNetworkGatewayConfig(
                name="lng", gateway_address="203.0.113.1", address_space=["10.0.0.0"]
            )

    def test_bgp_asn_bounds(self) -> None:
        """Test BGP ASN must be positive."""
        with pytest.raises(ValidationError):
            LocalNetworkGatewayConfig(name="lng", gateway_address="203.0.113.1", bgp_asn=0)


class TestIpsecPolicyConfig:
    """Tests for IpsecPolicyConfig."""

    def test_defaults_in_properties(self) -> None:
        """Test SA lifetimes default to the Azure defaults."""
        props = IpsecPolicyConfig().to_properties()
        assert props["sa_lifetime_seconds"] == 27000
        assert props["sa_datasize_kb"] == 102400000
        assert props["dh_group"] == "DHGroup14"


class TestVpnGatewaySpec:
    """Tests for VpnGatewaySpec validation."""

    def test_valid_basic(self, basic_spec_data: dict[str, Any]) -> None:
        """Test the basic declaration validates."""
        spec = VpnGatewaySpec(**basic_spec_data)
        assert spec.vpn_type == "RouteBased"
        assert spec.generation == "Generation1"
        assert spec.nsg_name == "nsg-gateway-vpn-gw-test"

    def test_invalid_gateway_sku(self, basic_spec_data: dict[str, Any]) -> None:
        """Test unknown gateway SKUs are rejected."""
        basic_spec_data["sku"] = "VpnGw9"
        with pytest.raises(ValidationError, match="sku must be one of"):
            VpnGatewaySpec(**basic_spec_data)

    def test_requires_ip_configuration(self, basic_spec_data: dict[str, Any]) -> None:
        """Test at least one IP configuration is required."""
        basic_spec_data["ip_configurations"] = []
        with pytest.raises(ValidationError, match="at least one ip_configurations"):
            VpnGatewaySpec(**basic_spec_data)

    def test_active_active_requires_two(self, basic_spec_data: dict[str, Any]) -> None:
        """Test active-active needs two IP configurations."""
        basic_spec_data["active_active"] = True
        with pytest.raises(ValidationError, match="active_active requires two"):
            VpnGatewaySpec(**basic_spec_data)

    def test_ip_configuration_needs_public_ip(self, basic_spec_data: dict[str, Any]) -> None:
        """Test an IP configuration without a matching public IP is rejected."""
        basic_spec_data["ip_configurations"].append({"name": "second"})
        with pytest.raises(ValidationError, match="has no public IP"):
            VpnGatewaySpec(**basic_spec_data)

    def test_ip_configuration_needs_subnet(self, basic_spec_data: dict[str, Any]) -> None:
        """Test an IP configuration without any subnet is rejected before provisioning."""
        del basic_spec_data["gateway_subnet_id"]
        with pytest.raises(ValidationError, match="has no subnet"):
            VpnGatewaySpec(**basic_spec_data)

    def test_explicit_subnet_without_gateway_subnet(
        self, basic_spec_data: dict[str, Any]
    ) -> None:
        """Test a per-configuration subnet_id is enough on its own."""
        del basic_spec_data["gateway_subnet_id"]
        basic_spec_data["ip_configurations"] = [
            {"name": "vnetGatewayConfig", "subnet_id": "/subnets/GatewaySubnet"},
        ]
        spec = VpnGatewaySpec(**basic_spec_data)
        assert spec.ip_configurations[0].subnet_id == "/subnets/GatewaySubnet"

    def test_connection_needs_lng_when_ambiguous(
        self, connection_spec_data: dict[str, Any]
    ) -> None:
        """Test connections must name their LNG when several exist."""
        connection_spec_data["local_network_gateways"] = {
            **connection_spec_data["local_network_gateways"],
            "lng-other": {"name": "lng-other", "gateway_address": "198.51.100.1"},
        }
        with pytest.raises(ValidationError, match="must name its local_network_gateway"):
            VpnGatewaySpec(**connection_spec_data)

    def test_ipsec_requires_shared_key(self, connection_spec_data: dict[str, Any]) -> None:
        """Test IPsec connections require a shared key."""
        connection = dict(connection_spec_data["vpn_connections"]["connection1"])
        del connection["shared_key"]
        connection_spec_data["vpn_connections"] = {"connection1": connection}
        with pytest.raises(ValidationError, match="requires shared_key"):
            VpnGatewaySpec(**connection_spec_data)

    def test_shared_key_is_secret(self, connection_spec_data: dict[str, Any]) -> None:
        """Test the shared key is not exposed in repr."""
        spec = VpnGatewaySpec(**connection_spec_data)
        assert "SuperSecretKey123!" not in repr(spec)

    def test_effective_bgp_asn(self, basic_spec_data: dict[str, Any]) -> None:
        """Test the ASN defaults when BGP is enabled without one."""
        assert VpnGatewaySpec(**basic_spec_data).effective_bgp_asn is None

        basic_spec_data["enable_bgp"] = True
        assert VpnGatewaySpec(**basic_spec_data).effective_bgp_asn == DEFAULT_BGP_ASN

        basic_spec_data["bgp_asn"] = 65001
        assert VpnGatewaySpec(**basic_spec_data).effective_bgp_asn == 65001

    def test_environment_tag(self, basic_spec_data: dict[str, Any]) -> None:
        """Test the environment becomes a tag unless already set."""
        basic_spec_data["tags"] = {"Module": "vpn-gateway"}
        assert VpnGatewaySpec(**basic_spec_data).effective_tags == {
            "Module": "vpn-gateway",
            "Environment": "test",
        }

    def test_extra_fields_ignored(self, basic_spec_data: dict[str, Any]) -> None:
        """Test unknown fields are ignored."""
        basic_spec_data["unknown_field"] = "value"
        VpnGatewaySpec(**basic_spec_data)


class TestToResourceGraph:
    """Tests for VpnGatewaySpec.to_resource_graph()."""

    def test_basic_nodes(self, basic_spec_data: dict[str, Any]) -> None:
        """Test the basic declaration yields four nodes."""
        graph = VpnGatewaySpec(**basic_spec_data).to_resource_graph()

        assert sorted(str(ref) for ref in graph.nodes) == [
            "GatewayIPConfig/vnetGatewayConfig",
            "NSG/nsg-gateway-vpn-gw-test",
            "PublicIP/pip1",
            "VPNGateway/vpn-gw-test",
        ]
        assert graph.resource_group_name == "rg-vpn-gateway-test"
        assert graph.location == "East US"

    def test_ip_config_references_public_ip_by_position(
        self, bgp_spec_data: dict[str, Any]
    ) -> None:
        """Test IP configurations pair with public IPs by position by default."""
        graph = VpnGatewaySpec(**bgp_spec_data).to_resource_graph()

        second = graph.get(ResourceRef(ResourceKind.GATEWAY_IP_CONFIG, "vnetGatewayConfig2"))
        assert second.references == {"public_ip": ResourceRef(ResourceKind.PUBLIC_IP, "pip2")}
        assert second.name == "vpn-gw-bgp-test/vnetGatewayConfig2"

    def test_explicit_public_ip_key(self, bgp_spec_data: dict[str, Any]) -> None:
        """Test an explicit public_ip key overrides positional pairing."""
        bgp_spec_data["ip_configurations"] = [
            {"name": "vnetGatewayConfig1", "public_ip": "pip2"},
            {"name": "vnetGatewayConfig2", "public_ip": "pip1"},
        ]
        graph = VpnGatewaySpec(**bgp_spec_data).to_resource_graph()

        first = graph.get(ResourceRef(ResourceKind.GATEWAY_IP_CONFIG, "vnetGatewayConfig1"))
        assert first.references["public_ip"] == ResourceRef(ResourceKind.PUBLIC_IP, "pip2")

    def test_gateway_references(self, bgp_spec_data: dict[str, Any]) -> None:
        """Test the gateway references every IP configuration and the NSG."""
        graph = VpnGatewaySpec(**bgp_spec_data).to_resource_graph()
        gateway = graph.get(ResourceRef(ResourceKind.VPN_GATEWAY, "vpn-gw-bgp-test"))

        assert set(gateway.references) == {
            "ip_configuration:vnetGatewayConfig1",
            "ip_configuration:vnetGatewayConfig2",
            "nsg",
        }
        assert gateway.properties["bgp_asn"] == 65001
        assert gateway.properties["active_active"] is True

    def test_bgp_asn_omitted_without_bgp(self, basic_spec_data: dict[str, Any]) -> None:
        """Test no ASN is sent when BGP is off."""
        graph = VpnGatewaySpec(**basic_spec_data).to_resource_graph()
        gateway = graph.get(ResourceRef(ResourceKind.VPN_GATEWAY, "vpn-gw-test"))
        assert "bgp_asn" not in gateway.properties

    def test_no_nsg_when_disabled(self, basic_spec_data: dict[str, Any]) -> None:
        """Test no NSG node or reference when create_gateway_nsg is off."""
        basic_spec_data["create_gateway_nsg"] = False
        graph = VpnGatewaySpec(**basic_spec_data).to_resource_graph()

        assert graph.nodes_of_kind(ResourceKind.NSG) == []
        gateway = graph.get(ResourceRef(ResourceKind.VPN_GATEWAY, "vpn-gw-test"))
        assert "nsg" not in gateway.references

    def test_connection_defaults_to_only_lng(self, connection_spec_data: dict[str, Any]) -> None:
        """Test a connection without an LNG key uses the only declared one."""
        graph = VpnGatewaySpec(**connection_spec_data).to_resource_graph()
        connection = graph.get(ResourceRef(ResourceKind.VPN_CONNECTION, "connection1"))

        assert connection.references == {
            "virtual_network_gateway": ResourceRef(ResourceKind.VPN_GATEWAY, "vpn-gw-conn-test"),
            "local_network_gateway": ResourceRef(ResourceKind.LOCAL_NETWORK_GATEWAY, "lng-test"),
        }
        assert connection.properties["shared_key"] == "SuperSecretKey123!"
        assert connection.properties["ipsec_policy"]["pfs_group"] == "PFS14"

    def test_subnet_defaults_to_gateway_subnet(self, basic_spec_data: dict[str, Any]) -> None:
        """Test IP configurations inherit gateway_subnet_id."""
        basic_spec_data["gateway_subnet_id"] = "/subnets/GatewaySubnet"
        graph = VpnGatewaySpec(**basic_spec_data).to_resource_graph()
        config = graph.get(ResourceRef(ResourceKind.GATEWAY_IP_CONFIG, "vnetGatewayConfig"))
        assert config.properties["subnet_id"] == "/subnets/GatewaySubnet"

    def test_nsg_name_helper(self) -> None:
        """Test the gateway NSG naming convention."""
        assert gateway_nsg_name("gw") == "nsg-gateway-gw"
