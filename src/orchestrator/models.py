"""Pydantic models for the VPN gateway declaration with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to a resource graph
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from .graph import ResourceGraph, ResourceKind, ResourceRef

VALID_GATEWAY_SKUS = {
    "Basic",
    "VpnGw1",
    "VpnGw2",
    "VpnGw3",
    "VpnGw4",
    "VpnGw5",
    "VpnGw1AZ",
    "VpnGw2AZ",
    "VpnGw3AZ",
    "VpnGw4AZ",
    "VpnGw5AZ",
}
VALID_VPN_TYPES = {"RouteBased", "PolicyBased"}
VALID_GENERATIONS = {"Generation1", "Generation2"}
VALID_ALLOCATION_METHODS = {"Static", "Dynamic"}
VALID_PUBLIC_IP_SKUS = {"Basic", "Standard"}
VALID_CONNECTION_TYPES = {"IPsec", "Vnet2Vnet", "ExpressRoute"}
VALID_CONNECTION_PROTOCOLS = {"IKEv1", "IKEv2"}

DEFAULT_BGP_ASN = 65515
MAX_BGP_ASN = 4294967295

NSG_NAME_PREFIX = "nsg-gateway"


def gateway_nsg_name(vpn_gateway_name: str) -> str:
    """Name of the gateway NSG created when create_gateway_nsg is set."""
    return f"{NSG_NAME_PREFIX}-{vpn_gateway_name}"


# =============================================================================
# Public IPs and IP configurations
# =============================================================================


class PublicIpConfig(BaseModel):
    """Public IP address used by the gateway frontend."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    allocation_method: str = "Static"
    sku: str = "Standard"
    zones: list[str] = Field(default_factory=list)

    @field_validator("allocation_method")
    @classmethod
    def validate_allocation_method(cls, v: str) -> str:
        if v not in VALID_ALLOCATION_METHODS:
            raise ValueError(f"allocation_method must be one of {VALID_ALLOCATION_METHODS}")
        return v

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        if v not in VALID_PUBLIC_IP_SKUS:
            raise ValueError(f"sku must be one of {VALID_PUBLIC_IP_SKUS}")
        return v


class IpConfiguration(BaseModel):
    """Gateway IP configuration: binds a public IP and the gateway subnet."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    private_ip_address_allocation: str = "Dynamic"
    # Logical key into public_ip_configurations; defaults to the entry at the same position
    public_ip: str | None = None
    subnet_id: str | None = None

    @field_validator("private_ip_address_allocation")
    @classmethod
    def validate_allocation(cls, v: str) -> str:
        if v not in VALID_ALLOCATION_METHODS:
            raise ValueError(
                f"private_ip_address_allocation must be one of {VALID_ALLOCATION_METHODS}"
            )
        return v


# =============================================================================
# Site-to-site
# =============================================================================


class LocalNetworkGatewayConfig(BaseModel):
    """Remote (on-premises) VPN endpoint and its address space."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    gateway_address: str
    address_space: list[str] = Field(default_factory=list)
    bgp_asn: int | None = Field(None, ge=1, le=MAX_BGP_ASN)
    bgp_peering_address: str | None = None

    @field_validator("address_space")
    @classmethod
    def validate_address_space(cls, v: list[str]) -> list[str]:
        for prefix in v:
            # Basic CIDR validation
            if "/" not in prefix:
                raise ValueError(f"address_space entries must be CIDR notation: {prefix}")
        return v


class IpsecPolicyConfig(BaseModel):
    """Cryptographic parameters negotiated for a site-to-site connection."""

    model_config = {"extra": "ignore"}

    dh_group: str = "DHGroup14"
    ike_encryption: str = "AES256"
    ike_integrity: str = "SHA256"
    ipsec_encryption: str = "AES256"
    ipsec_integrity: str = "SHA256"
    pfs_group: str = "PFS14"
    sa_lifetime_seconds: int = Field(27000, ge=300, le=172799)
    sa_datasize_kb: int = Field(102400000, ge=1024)

    def to_properties(self) -> dict[str, Any]:
        return self.model_dump()


class VpnConnectionConfig(BaseModel):
    """Site-to-site connection between the gateway and a local network gateway."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    type: str = "IPsec"
    # Logical key into local_network_gateways; defaults to the only declared one
    local_network_gateway: str | None = None
    shared_key: SecretStr | None = None
    connection_protocol: str = "IKEv2"
    enable_bgp: bool = False
    ipsec_policy: IpsecPolicyConfig | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_CONNECTION_TYPES:
            raise ValueError(f"type must be one of {VALID_CONNECTION_TYPES}")
        return v

    @field_validator("connection_protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        if v not in VALID_CONNECTION_PROTOCOLS:
            raise ValueError(f"connection_protocol must be one of {VALID_CONNECTION_PROTOCOLS}")
        return v


# =============================================================================
# Gateway declaration
# =============================================================================


class VpnGatewaySpec(BaseModel):
    """Declarative description of a VPN gateway and its dependent resources."""

    model_config = {"extra": "ignore"}

    resource_group_name: Annotated[str, Field(min_length=1, max_length=90)]
    location: Annotated[str, Field(min_length=1)]
    environment: str = ""
    vpn_gateway_name: Annotated[str, Field(min_length=1, max_length=80)]
    sku: str = "VpnGw1"
    vpn_type: str = "RouteBased"
    generation: str = "Generation1"
    active_active: bool = False
    enable_bgp: bool = False
    bgp_asn: int | None = Field(None, ge=1, le=MAX_BGP_ASN)
    create_gateway_nsg: bool = False
    gateway_subnet_id: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    public_ip_configurations: dict[str, PublicIpConfig] = Field(default_factory=dict)
    ip_configurations: list[IpConfiguration] = Field(default_factory=list)
    local_network_gateways: dict[str, LocalNetworkGatewayConfig] = Field(default_factory=dict)
    vpn_connections: dict[str, VpnConnectionConfig] = Field(default_factory=dict)

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        if v not in VALID_GATEWAY_SKUS:
            raise ValueError(f"sku must be one of {sorted(VALID_GATEWAY_SKUS)}")
        return v

    @field_validator("vpn_type")
    @classmethod
    def validate_vpn_type(cls, v: str) -> str:
        if v not in VALID_VPN_TYPES:
            raise ValueError(f"vpn_type must be one of {VALID_VPN_TYPES}")
        return v

    @field_validator("generation")
    @classmethod
    def validate_generation(cls, v: str) -> str:
        if v not in VALID_GENERATIONS:
            raise ValueError(f"generation must be one of {VALID_GENERATIONS}")
        return v

    @model_validator(mode="after")
    def validate_topology(self) -> VpnGatewaySpec:
        if not self.ip_configurations:
            raise ValueError("at least one ip_configurations entry is required")

        if self.active_active and len(self.ip_configurations) < 2:
            raise ValueError("active_active requires two ip_configurations")

        pip_keys = list(self.public_ip_configurations)
        for index, ip_config in enumerate(self.ip_configurations):
            if ip_config.public_ip is None and index >= len(pip_keys):
                raise ValueError(
                    f"ip configuration '{ip_config.name}' has no public IP: declare "
                    f"public_ip or add a public_ip_configurations entry"
                )
            if not (ip_config.subnet_id or self.gateway_subnet_id):
                raise ValueError(
                    f"ip configuration '{ip_config.name}' has no subnet: declare "
                    f"subnet_id or gateway_subnet_id"
                )

        for key, connection in self.vpn_connections.items():
            if connection.local_network_gateway is None and len(self.local_network_gateways) != 1:
                raise ValueError(
                    f"vpn connection '{key}' must name its local_network_gateway "
                    f"when {len(self.local_network_gateways)} are declared"
                )
            if connection.type == "IPsec" and connection.shared_key is None:
                raise ValueError(f"vpn connection '{key}' of type IPsec requires shared_key")

        return self

    @property
    def effective_bgp_asn(self) -> int | None:
        if not self.enable_bgp:
            return None
        return self.bgp_asn if self.bgp_asn is not None else DEFAULT_BGP_ASN

    @property
    def effective_tags(self) -> dict[str, str]:
        tags = dict(self.tags)
        if self.environment:
            tags.setdefault("Environment", self.environment)
        return tags

    @property
    def nsg_name(self) -> str | None:
        return gateway_nsg_name(self.vpn_gateway_name) if self.create_gateway_nsg else None

    def to_resource_graph(self) -> ResourceGraph:
        """Convert the declaration to an unfinalized resource graph."""
        graph = ResourceGraph(
            resource_group_name=self.resource_group_name,
            location=self.location,
        )
        tags = self.effective_tags
        common = {"location": self.location, "tags": tags}

        pip_keys = list(self.public_ip_configurations)
        for key, pip in self.public_ip_configurations.items():
            graph.add_node(
                ResourceKind.PUBLIC_IP,
                key,
                {
                    **common,
                    "name": pip.name,
                    "allocation_method": pip.allocation_method,
                    "sku": pip.sku,
                    "zones": list(pip.zones),
                },
            )

        gateway_refs: dict[str, ResourceRef] = {}
        for index, ip_config in enumerate(self.ip_configurations):
            pip_key = ip_config.public_ip if ip_config.public_ip is not None else pip_keys[index]
            graph.add_node(
                ResourceKind.GATEWAY_IP_CONFIG,
                ip_config.name,
                {
                    "name": ip_config.name,
                    "parent_name": self.vpn_gateway_name,
                    "private_ip_address_allocation": ip_config.private_ip_address_allocation,
                    "subnet_id": ip_config.subnet_id or self.gateway_subnet_id,
                },
                {"public_ip": ResourceRef(ResourceKind.PUBLIC_IP, pip_key)},
            )
            gateway_refs[f"ip_configuration:{ip_config.name}"] = ResourceRef(
                ResourceKind.GATEWAY_IP_CONFIG, ip_config.name
            )

        if self.nsg_name:
            graph.add_node(ResourceKind.NSG, self.nsg_name, {**common, "name": self.nsg_name})
            gateway_refs["nsg"] = ResourceRef(ResourceKind.NSG, self.nsg_name)

        gateway_properties: dict[str, Any] = {
            **common,
            "name": self.vpn_gateway_name,
            "gateway_type": "Vpn",
            "vpn_type": self.vpn_type,
            "sku": self.sku,
            "generation": self.generation,
            "active_active": self.active_active,
            "enable_bgp": self.enable_bgp,
        }
        if self.enable_bgp:
            gateway_properties["bgp_asn"] = self.effective_bgp_asn
        graph.add_node(
            ResourceKind.VPN_GATEWAY, self.vpn_gateway_name, gateway_properties, gateway_refs
        )

        only_lng = next(iter(self.local_network_gateways), None)
        for key, lng in self.local_network_gateways.items():
            properties: dict[str, Any] = {
                **common,
                "name": lng.name,
                "gateway_address": lng.gateway_address,
                "address_space": list(lng.address_space),
            }
            if lng.bgp_asn is not None:
                properties["bgp_asn"] = lng.bgp_asn
                properties["bgp_peering_address"] = lng.bgp_peering_address or ""
            graph.add_node(ResourceKind.LOCAL_NETWORK_GATEWAY, key, properties)

        for key, connection in self.vpn_connections.items():
            lng_key = connection.local_network_gateway or only_lng or ""
            properties = {
                **common,
                "name": connection.name,
                "connection_type": connection.type,
                "connection_protocol": connection.connection_protocol,
                "enable_bgp": connection.enable_bgp,
                "shared_key": (
                    connection.shared_key.get_secret_value() if connection.shared_key else None
                ),
                "ipsec_policy": (
                    connection.ipsec_policy.to_properties() if connection.ipsec_policy else None
                ),
            }
            graph.add_node(
                ResourceKind.VPN_CONNECTION,
                key,
                properties,
                {
                    "virtual_network_gateway": ResourceRef(
                        ResourceKind.VPN_GATEWAY, self.vpn_gateway_name
                    ),
                    "local_network_gateway": ResourceRef(
                        ResourceKind.LOCAL_NETWORK_GATEWAY, lng_key
                    ),
                },
            )

        return graph
