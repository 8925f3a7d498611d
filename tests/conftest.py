"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from orchestrator.config import ConvergenceConfig  # noqa: E402

GATEWAY_SUBNET_ID = (
    "/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/rg-vpn-gateway-test"
    "/providers/Microsoft.Network/virtualNetworks/vnet-test/subnets/GatewaySubnet"
)


@pytest.fixture(autouse=True)
def restore_root_logging() -> Iterator[None]:
    """Drop handlers added by setup_logging() during a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def fast_convergence() -> ConvergenceConfig:
    """Retry and polling policy without real waiting."""
    return ConvergenceConfig(
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        poll_interval_seconds=0.0,
        max_poll_interval_seconds=0.0,
        max_poll_wait_seconds=5.0,
    )


@pytest.fixture
def basic_spec_data() -> dict[str, Any]:
    """Single public IP, single IP configuration, gateway NSG, no BGP."""
    return {
        "resource_group_name": "rg-vpn-gateway-test",
        "location": "East US",
        "environment": "test",
        "vpn_gateway_name": "vpn-gw-test",
        "sku": "VpnGw1",
        "active_active": False,
        "enable_bgp": False,
        "create_gateway_nsg": True,
        "gateway_subnet_id": GATEWAY_SUBNET_ID,
        "tags": {"Environment": "test", "Module": "vpn-gateway"},
        "public_ip_configurations": {
            "pip1": {
                "name": "pip-vpn-gw-1",
                "allocation_method": "Static",
                "sku": "Standard",
                "zones": ["1", "2", "3"],
            },
        },
        "ip_configurations": [
            {"name": "vnetGatewayConfig", "private_ip_address_allocation": "Dynamic"},
        ],
    }


@pytest.fixture
def bgp_spec_data(basic_spec_data: dict[str, Any]) -> dict[str, Any]:
    """Active-active gateway with BGP and two public IPs."""
    data = dict(basic_spec_data)
    data.update(
        {
            "vpn_gateway_name": "vpn-gw-bgp-test",
            "active_active": True,
            "enable_bgp": True,
            "bgp_asn": 65001,
            "public_ip_configurations": {
                "pip1": {"name": "pip-vpn-gw-1", "zones": ["1", "2", "3"]},
                "pip2": {"name": "pip-vpn-gw-2", "zones": ["1", "2", "3"]},
            },
            "ip_configurations": [
                {"name": "vnetGatewayConfig1"},
                {"name": "vnetGatewayConfig2"},
            ],
        }
    )
    return data


@pytest.fixture
def connection_spec_data(basic_spec_data: dict[str, Any]) -> dict[str, Any]:
    """Gateway with one local network gateway and one IPsec connection."""
    data = dict(basic_spec_data)
    data.update(
        {
            "vpn_gateway_name": "vpn-gw-conn-test",
            "local_network_gateways": {
                "lng-test": {
                    "name": "lng-test",
                    "gateway_address": "203.0.113.1",
                    "address_space": ["10.0.0.0/16"],
                },
            },
            "vpn_connections": {
                "connection1": {
                    "name": "vpn-conn-1",
                    "type": "IPsec",
                    "shared_key": "SuperSecretKey123!",
                    "connection_protocol": "IKEv2",
                    "ipsec_policy": {
                        "dh_group": "DHGroup14",
                        "ike_encryption": "AES256",
                        "ike_integrity": "SHA256",
                        "ipsec_encryption": "AES256",
                        "ipsec_integrity": "SHA256",
                        "pfs_group": "PFS14",
                    },
                },
            },
        }
    )
    return data
