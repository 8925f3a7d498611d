"""Provider implementation backed by the Azure network management SDK.

Every SDK call is synchronous, so it runs in the default executor and the
event loop stays free for the other nodes of the wave. Long-running
operations are started with begin_*(polling=False), so no SDK poller thread
runs: while the initial response is not in a terminal provisioning state
the provider answers ACCEPTED and the engine polls get() on its own schedule.

Gateway IP configurations are not standalone ARM resources. They are
materialized locally (no API call) and read back from the gateway's
ipConfigurations, addressed by the ARM child name "gateway/config".

Error classification:
- 408, 409, 429 and 5xx responses, and connection failures: transient
- everything else (400 invalid property, quota, name collision): permanent
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.network.models import (
    AddressSpace,
    BgpSettings,
    IpsecPolicy,
    LocalNetworkGateway,
    NetworkSecurityGroup,
    PublicIPAddress,
    PublicIPAddressSku,
    SubResource,
    VirtualNetworkGateway,
    VirtualNetworkGatewayConnection,
    VirtualNetworkGatewayIPConfiguration,
    VirtualNetworkGatewaySku,
)
from azure.mgmt.resource import ResourceManagementClient

from .errors import PermanentProviderError, ProviderError, TransientProviderError
from .graph import ProviderHandle, ResourceKind
from .provider import (
    LiveResource,
    OperationStatus,
    Provider,
    ProviderResponse,
    ProvisioningState,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

# Error codes that are permanent even when reported with a transient status
PERMANENT_ERROR_CODES = frozenset(
    {
        "QuotaExceeded",
        "PublicIPCountLimitReached",
        "InvalidResourceName",
        "ResourceNameInvalid",
        "InvalidParameter",
        "InvalidRequestFormat",
    }
)


def classify_error(error: AzureError) -> ProviderError:
    """Map an Azure SDK error onto the transient/permanent taxonomy."""
    if isinstance(error, HttpResponseError):
        code = error.error.code if error.error is not None else None
        if code in PERMANENT_ERROR_CODES:
            return PermanentProviderError(str(error.message or error), code=code)
        if error.status_code in TRANSIENT_STATUS_CODES:
            return TransientProviderError(str(error.message or error), code=code)
        return PermanentProviderError(str(error.message or error), code=code)

    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(str(error))

    return PermanentProviderError(str(error))


def _provisioning_state(value: str | None) -> ProvisioningState:
    try:
        return ProvisioningState(value or ProvisioningState.SUCCEEDED.value)
    except ValueError:
        return ProvisioningState.UPDATING


def _sub_id(resource: Any) -> str:
    return resource.id if resource is not None and resource.id else ""


class AzureNetworkProvider(Provider):
    """Provider for one resource group of one subscription."""

    def __init__(
        self,
        subscription_id: str,
        resource_group_name: str,
        credential: TokenCredential | None = None,
        network_client: Any | None = None,
        resource_client: Any | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            subscription_id: Target subscription.
            resource_group_name: Resource group holding every managed resource.
            credential: Credential used to build SDK clients that are not injected.
            network_client: Pre-built NetworkManagementClient (tests inject a fake).
            resource_client: Pre-built ResourceManagementClient.
        """
        if network_client is None or resource_client is None:
            if credential is None:
                raise ValueError("credential is required when SDK clients are not injected")
        self._subscription_id = subscription_id
        self._resource_group = resource_group_name
        self._network = network_client or NetworkManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._resources = resource_client or ResourceManagementClient(
            credential=credential, subscription_id=subscription_id
        )

    @property
    def resource_group_name(self) -> str:
        return self._resource_group

    async def _call(self, operation: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, operation)
        except AzureError as e:
            raise classify_error(e) from e

    def gateway_id(self, gateway_name: str) -> str:
        return (
            f"/subscriptions/{self._subscription_id}/resourceGroups/{self._resource_group}"
            f"/providers/Microsoft.Network/virtualNetworkGateways/{gateway_name}"
        )

    async def ensure_resource_group(self, location: str, tags: Mapping[str, str]) -> None:
        """Create the resource group if needed (idempotent)."""
        await self._call(
            lambda: self._resources.resource_groups.create_or_update(
                self._resource_group, {"location": location, "tags": dict(tags)}
            )
        )
        logger.info(
            "Resource group ensured",
            extra={"resource_group": self._resource_group, "location": location},
        )

    # =========================================================================
    # Provider interface
    # =========================================================================

    async def create_or_update(
        self, kind: ResourceKind, name: str, payload: Mapping[str, Any]
    ) -> ProviderResponse:
        if kind == ResourceKind.GATEWAY_IP_CONFIG:
            return ProviderResponse(
                status=OperationStatus.SUCCEEDED,
                handle=self._ip_config_handle(name, payload),
            )

        operations, to_model, to_live = self._dispatch(kind)
        model = to_model(payload)
        # The engine polls through get(); polling=False keeps the SDK from starting its
        # own poller thread and hands back the resource from the initial response.
        poller = await self._call(
            lambda: operations.begin_create_or_update(
                self._resource_group, name, model, polling=False
            )
        )
        resource = await self._call(poller.result)
        if resource is None:
            # 202 with an empty body
            return ProviderResponse(status=OperationStatus.ACCEPTED)
        live = to_live(resource)
        if live.provisioning_state == ProvisioningState.SUCCEEDED:
            return ProviderResponse(status=OperationStatus.SUCCEEDED, handle=live.handle)
        if live.provisioning_state.terminal:
            return ProviderResponse(
                status=OperationStatus.FAILED,
                error=PermanentProviderError(
                    f"{kind.value} {name} provisioning {live.provisioning_state.value}"
                ),
            )
        logger.debug(
            "Provider accepted operation",
            extra={
                "kind": kind.value,
                "resource_name": name,
                "provisioning_state": live.provisioning_state.value,
            },
        )
        return ProviderResponse(status=OperationStatus.ACCEPTED)

    async def get(self, kind: ResourceKind, name: str) -> LiveResource | None:
        if kind == ResourceKind.GATEWAY_IP_CONFIG:
            return await self._get_ip_config(name)

        operations, _, to_live = self._dispatch(kind)
        try:
            resource = await self._call(lambda: operations.get(self._resource_group, name))
        except PermanentProviderError as e:
            if isinstance(e.__cause__, ResourceNotFoundError):
                return None
            raise
        return to_live(resource)

    async def delete(self, kind: ResourceKind, name: str) -> OperationStatus:
        if kind == ResourceKind.GATEWAY_IP_CONFIG:
            # Removed together with the gateway
            return OperationStatus.SUCCEEDED

        operations, _, _ = self._dispatch(kind)
        try:
            await self._call(
                lambda: operations.begin_delete(self._resource_group, name, polling=False)
            )
        except PermanentProviderError as e:
            if isinstance(e.__cause__, ResourceNotFoundError):
                return OperationStatus.SUCCEEDED
            raise
        # Without a poller the only completion signal is the resource being gone
        if await self.get(kind, name) is None:
            return OperationStatus.SUCCEEDED
        return OperationStatus.ACCEPTED

    def _dispatch(
        self, kind: ResourceKind
    ) -> tuple[Any, Callable[[Mapping[str, Any]], Any], Callable[[Any], LiveResource]]:
        match kind:
            case ResourceKind.PUBLIC_IP:
                return self._network.public_ip_addresses, _public_ip_model, _public_ip_live
            case ResourceKind.NSG:
                return self._network.network_security_groups, _nsg_model, _nsg_live
            case ResourceKind.VPN_GATEWAY:
                return self._network.virtual_network_gateways, _gateway_model, _gateway_live
            case ResourceKind.LOCAL_NETWORK_GATEWAY:
                return self._network.local_network_gateways, _lng_model, _lng_live
            case ResourceKind.VPN_CONNECTION:
                return (
                    self._network.virtual_network_gateway_connections,
                    _connection_model,
                    _connection_live,
                )
            case _:
                raise ValueError(f"Unsupported resource kind: {kind}")

    # =========================================================================
    # Gateway IP configurations (children of the gateway)
    # =========================================================================

    def _ip_config_handle(self, name: str, payload: Mapping[str, Any]) -> ProviderHandle:
        gateway_name, _, config_name = name.partition("/")
        return ProviderHandle(
            resource_id=f"{self.gateway_id(gateway_name)}/ipConfigurations/{config_name}",
            name=config_name,
            attributes={
                "private_ip_address_allocation": payload.get(
                    "private_ip_address_allocation", "Dynamic"
                ),
                "public_ip_address_id": payload.get("public_ip_address_id", ""),
                "subnet_id": payload.get("subnet_id", ""),
            },
        )

    async def _get_ip_config(self, name: str) -> LiveResource | None:
        gateway_name, _, config_name = name.partition("/")
        gateway = await self.get(ResourceKind.VPN_GATEWAY, gateway_name)
        if gateway is None:
            return None
        for config in gateway.properties.get("ip_configurations", []):
            if config["name"] == config_name:
                handle = self._ip_config_handle(name, config)
                return LiveResource(handle=handle, properties=dict(handle.attributes))
        return None


# =============================================================================
# Payload -> SDK model, SDK model -> live resource
# =============================================================================


def _public_ip_model(payload: Mapping[str, Any]) -> PublicIPAddress:
    return PublicIPAddress(
        location=payload["location"],
        tags=payload.get("tags") or None,
        sku=PublicIPAddressSku(name=payload["sku"]),
        public_ip_allocation_method=payload["allocation_method"],
        zones=payload.get("zones") or None,
    )


def _public_ip_live(resource: PublicIPAddress) -> LiveResource:
    return LiveResource(
        handle=ProviderHandle(
            resource_id=resource.id,
            name=resource.name,
            attributes={"ip_address": resource.ip_address or ""},
        ),
        properties={
            "allocation_method": resource.public_ip_allocation_method,
            "sku": resource.sku.name if resource.sku else None,
            "zones": list(resource.zones or []),
            "tags": dict(resource.tags or {}),
        },
        provisioning_state=_provisioning_state(resource.provisioning_state),
    )


def _nsg_model(payload: Mapping[str, Any]) -> NetworkSecurityGroup:
    return NetworkSecurityGroup(location=payload["location"], tags=payload.get("tags") or None)


def _nsg_live(resource: NetworkSecurityGroup) -> LiveResource:
    return LiveResource(
        handle=ProviderHandle(resource_id=resource.id, name=resource.name),
        properties={"tags": dict(resource.tags or {})},
        provisioning_state=_provisioning_state(resource.provisioning_state),
    )


def _gateway_model(payload: Mapping[str, Any]) -> VirtualNetworkGateway:
    enable_bgp = bool(payload.get("enable_bgp"))
    return VirtualNetworkGateway(
        location=payload["location"],
        tags=payload.get("tags") or None,
        gateway_type=payload.get("gateway_type", "Vpn"),
        vpn_type=payload.get("vpn_type", "RouteBased"),
        vpn_gateway_generation=payload.get("generation"),
        sku=VirtualNetworkGatewaySku(name=payload["sku"], tier=payload["sku"]),
        active=bool(payload.get("active_active")),
        enable_bgp=enable_bgp,
        bgp_settings=BgpSettings(asn=payload["bgp_asn"]) if enable_bgp else None,
        ip_configurations=[
            VirtualNetworkGatewayIPConfiguration(
                name=config["name"],
                private_ip_allocation_method=config["private_ip_address_allocation"],
                public_ip_address=SubResource(id=config["public_ip_address_id"]),
                subnet=SubResource(id=config["subnet_id"]) if config["subnet_id"] else None,
            )
            for config in payload.get("ip_configurations", [])
        ],
    )


def _gateway_live(resource: VirtualNetworkGateway) -> LiveResource:
    bgp = resource.bgp_settings if resource.enable_bgp else None
    return LiveResource(
        handle=ProviderHandle(
            resource_id=resource.id,
            name=resource.name,
            attributes={
                "bgp_peering_address": (bgp.bgp_peering_address or "") if bgp else "",
            },
        ),
        properties={
            "gateway_type": resource.gateway_type,
            "vpn_type": resource.vpn_type,
            "sku": resource.sku.name if resource.sku else None,
            "generation": resource.vpn_gateway_generation,
            "active_active": bool(resource.active),
            "enable_bgp": bool(resource.enable_bgp),
            "bgp_asn": bgp.asn if bgp else None,
            "ip_configurations": [
                {
                    "name": config.name,
                    "private_ip_address_allocation": config.private_ip_allocation_method,
                    "public_ip_address_id": _sub_id(config.public_ip_address),
                    "subnet_id": _sub_id(config.subnet),
                }
                for config in resource.ip_configurations or []
            ],
            "tags": dict(resource.tags or {}),
        },
        provisioning_state=_provisioning_state(resource.provisioning_state),
    )


def _lng_model(payload: Mapping[str, Any]) -> LocalNetworkGateway:
    bgp_asn = payload.get("bgp_asn")
    return LocalNetworkGateway(
        location=payload["location"],
        tags=payload.get("tags") or None,
        gateway_ip_address=payload["gateway_address"],
        local_network_address_space=AddressSpace(address_prefixes=list(payload["address_space"])),
        bgp_settings=(
            BgpSettings(asn=bgp_asn, bgp_peering_address=payload.get("bgp_peering_address"))
            if bgp_asn
            else None
        ),
    )


def _lng_live(resource: LocalNetworkGateway) -> LiveResource:
    bgp = resource.bgp_settings
    address_space = resource.local_network_address_space
    return LiveResource(
        handle=ProviderHandle(
            resource_id=resource.id,
            name=resource.name,
            attributes={"gateway_address": resource.gateway_ip_address or ""},
        ),
        properties={
            "gateway_address": resource.gateway_ip_address,
            "address_space": list(address_space.address_prefixes or []) if address_space else [],
            "bgp_asn": bgp.asn if bgp else None,
            "bgp_peering_address": bgp.bgp_peering_address if bgp else None,
            "tags": dict(resource.tags or {}),
        },
        provisioning_state=_provisioning_state(resource.provisioning_state),
    )


def _connection_model(payload: Mapping[str, Any]) -> VirtualNetworkGatewayConnection:
    policy = payload.get("ipsec_policy")
    return VirtualNetworkGatewayConnection(
        location=payload["location"],
        tags=payload.get("tags") or None,
        connection_type=payload["connection_type"],
        connection_protocol=payload.get("connection_protocol"),
        shared_key=payload.get("shared_key"),
        enable_bgp=bool(payload.get("enable_bgp")),
        virtual_network_gateway1=VirtualNetworkGateway(id=payload["virtual_network_gateway_id"]),
        local_network_gateway2=LocalNetworkGateway(id=payload["local_network_gateway_id"]),
        ipsec_policies=(
            [
                IpsecPolicy(
                    sa_life_time_seconds=policy["sa_lifetime_seconds"],
                    sa_data_size_kilobytes=policy["sa_datasize_kb"],
                    ipsec_encryption=policy["ipsec_encryption"],
                    ipsec_integrity=policy["ipsec_integrity"],
                    ike_encryption=policy["ike_encryption"],
                    ike_integrity=policy["ike_integrity"],
                    dh_group=policy["dh_group"],
                    pfs_group=policy["pfs_group"],
                )
            ]
            if policy
            else None
        ),
    )


def _connection_live(resource: VirtualNetworkGatewayConnection) -> LiveResource:
    policies = resource.ipsec_policies or []
    policy = policies[0] if policies else None
    return LiveResource(
        handle=ProviderHandle(
            resource_id=resource.id,
            name=resource.name,
            attributes={"connection_status": resource.connection_status or ""},
        ),
        properties={
            "connection_type": resource.connection_type,
            "connection_protocol": resource.connection_protocol,
            "enable_bgp": bool(resource.enable_bgp),
            "ipsec_policy": (
                {
                    "dh_group": policy.dh_group,
                    "ike_encryption": policy.ike_encryption,
                    "ike_integrity": policy.ike_integrity,
                    "ipsec_encryption": policy.ipsec_encryption,
                    "ipsec_integrity": policy.ipsec_integrity,
                    "pfs_group": policy.pfs_group,
                    "sa_lifetime_seconds": policy.sa_life_time_seconds,
                    "sa_datasize_kb": policy.sa_data_size_kilobytes,
                }
                if policy
                else None
            ),
            "virtual_network_gateway_id": _sub_id(resource.virtual_network_gateway1),
            "local_network_gateway_id": _sub_id(resource.local_network_gateway2),
            "tags": dict(resource.tags or {}),
        },
        provisioning_state=_provisioning_state(resource.provisioning_state),
    )
