"""Provider backed by the Azure management SDK for Python.

Every create call uses the `begin_*` long-running operation where the SDK has
one and waits on the poller; when an operation timeout is configured, an
unfinished poller raises OperationTimeoutError rather than blocking forever.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.identity import ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.network.models import VirtualNetworkGatewayConnection
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient

from ..config import GATEWAY_SUBNET_NAME, AzureCredentials
from ..errors import OperationTimeoutError, ProviderOperationError
from ..resources import (
    ConnectivityResult,
    ResourceHandle,
    ResourceKind,
    ResourceSpec,
    TroubleshootingRequest,
    TroubleshootingResult,
)
from .base import Provider

logger = logging.getLogger(__name__)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class AzureProvider(Provider):
    def __init__(
        self,
        credential,
        subscription_id: str,
        operation_timeout: Optional[float] = None,
        resource_client=None,
        network_client=None,
        storage_client=None,
        compute_client=None,
    ):
        self.subscription_id = subscription_id
        self.operation_timeout = operation_timeout
        self.resource_client = resource_client or ResourceManagementClient(credential, subscription_id)
        self.network_client = network_client or NetworkManagementClient(credential, subscription_id)
        self.storage_client = storage_client or StorageManagementClient(credential, subscription_id)
        self.compute_client = compute_client or ComputeManagementClient(credential, subscription_id)

        self._creators = {
            ResourceKind.PUBLIC_IP: self._create_public_ip,
            ResourceKind.VIRTUAL_NETWORK: self._create_virtual_network,
            ResourceKind.VIRTUAL_NETWORK_GATEWAY: self._create_gateway,
            ResourceKind.GATEWAY_CONNECTION: self._create_connection,
            ResourceKind.NETWORK_WATCHER: self._create_network_watcher,
            ResourceKind.STORAGE_ACCOUNT: self._create_storage_account,
            ResourceKind.STORAGE_CONTAINER: self._create_storage_container,
            ResourceKind.VIRTUAL_MACHINE: self._create_virtual_machine,
        }

    @classmethod
    def from_credentials(cls, credentials: AzureCredentials, operation_timeout: Optional[float] = None):
        credential = ClientSecretCredential(
            tenant_id=credentials.tenant_id,
            client_id=credentials.client_id,
            client_secret=credentials.client_secret,
        )
        return cls(credential, credentials.subscription_id, operation_timeout=operation_timeout)

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    def create_or_update(
        self,
        resource_group: str,
        spec: ResourceSpec,
        dependencies: Dict[str, ResourceHandle],
    ) -> ResourceHandle:
        with self._translate_errors(spec.kind, spec.name):
            if spec.kind == ResourceKind.RESOURCE_GROUP:
                group = self.resource_client.resource_groups.create_or_update(
                    spec.name, {"location": spec.location, "tags": spec.parameters.get("tags", {})}
                )
                return self._group_handle(group)
            model = self._creators[spec.kind](resource_group, spec, dependencies)

        handle = self._to_handle(spec.kind, resource_group, model)
        if handle.provisioning_state.lower() == "failed":
            raise ProviderOperationError(
                f"Provisioning of {spec.kind.label} {spec.name} failed",
                kind=spec.kind.value, name=spec.name, code="ProvisioningStateFailed",
            )
        return handle

    def get(self, resource_group: str, kind: ResourceKind, name: str) -> ResourceHandle:
        """Fetch a resource. Storage containers are addressed as "account/container"."""
        network = self.network_client
        with self._translate_errors(kind, name):
            if kind == ResourceKind.RESOURCE_GROUP:
                return self._group_handle(self.resource_client.resource_groups.get(name))
            if kind == ResourceKind.STORAGE_CONTAINER:
                account, _, container = name.partition("/")
                model = self.storage_client.blob_containers.get(resource_group, account, container)
            else:
                getters = {
                    ResourceKind.PUBLIC_IP: network.public_ip_addresses.get,
                    ResourceKind.VIRTUAL_NETWORK: network.virtual_networks.get,
                    ResourceKind.VIRTUAL_NETWORK_GATEWAY: network.virtual_network_gateways.get,
                    ResourceKind.GATEWAY_CONNECTION: network.virtual_network_gateway_connections.get,
                    ResourceKind.NETWORK_WATCHER: network.network_watchers.get,
                    ResourceKind.STORAGE_ACCOUNT: self.storage_client.storage_accounts.get_properties,
                    ResourceKind.VIRTUAL_MACHINE: self.compute_client.virtual_machines.get,
                }
                model = getters[kind](resource_group, name)
        return self._to_handle(kind, resource_group, model)

    def delete_resource_group(self, name: str, timeout: Optional[float] = None):
        with self._translate_errors(ResourceKind.RESOURCE_GROUP, name):
            poller = self.resource_client.resource_groups.begin_delete(name)
            self._wait(poller, f"Deletion of resource group {name}", timeout)

    def run_diagnostic(self, request: TroubleshootingRequest) -> TroubleshootingResult:
        watcher = request.network_watcher
        with self._translate_errors(ResourceKind.NETWORK_WATCHER, watcher.name):
            poller = self.network_client.network_watchers.begin_get_troubleshooting(
                watcher.resource_group,
                watcher.name,
                {
                    "target_resource_id": request.target.id,
                    "storage_id": request.storage_account.id,
                    "storage_path": request.storage_path,
                },
            )
            result = self._wait(poller, f"Troubleshooting of {request.target.name}")
        details = [d.summary or d.detail for d in (result.results or []) if d.summary or d.detail]
        return TroubleshootingResult.from_code(result.code, details)

    def list_connections(self, resource_group: str, gateway: str) -> List[ResourceHandle]:
        with self._translate_errors(ResourceKind.VIRTUAL_NETWORK_GATEWAY, gateway):
            entries = list(self.network_client.virtual_network_gateways.list_connections(resource_group, gateway))
        return [self._to_handle(ResourceKind.GATEWAY_CONNECTION, resource_group, e) for e in entries]

    def check_connectivity(
        self,
        resource_group: str,
        network_watcher: str,
        source: ResourceHandle,
        destination: ResourceHandle,
        port: int = 22,
    ) -> ConnectivityResult:
        with self._translate_errors(ResourceKind.NETWORK_WATCHER, network_watcher):
            poller = self.network_client.network_watchers.begin_check_connectivity(
                resource_group,
                network_watcher,
                {
                    "source": {"resource_id": source.id},
                    "destination": {"resource_id": destination.id, "port": port},
                },
            )
            info = self._wait(poller, f"Connectivity check {source.name} -> {destination.name}")
        return ConnectivityResult(
            status=str(_enum_value(info.connection_status)),
            avg_latency_ms=info.avg_latency_in_ms,
            probes_sent=info.probes_sent or 0,
            probes_failed=info.probes_failed or 0,
        )

    # ------------------------------------------------------------------
    # Creators
    # ------------------------------------------------------------------

    def _create_public_ip(self, resource_group, spec, dependencies):
        poller = self.network_client.public_ip_addresses.begin_create_or_update(
            resource_group,
            spec.name,
            {
                "location": spec.location,
                "public_ip_allocation_method": spec.parameters.get("allocation_method", "Dynamic"),
                "sku": {"name": spec.parameters.get("sku", "Basic")},
            },
        )
        return self._wait(poller, f"Public IP {spec.name}")

    def _create_virtual_network(self, resource_group, spec, dependencies):
        params = spec.parameters
        poller = self.network_client.virtual_networks.begin_create_or_update(
            resource_group,
            spec.name,
            {
                "location": spec.location,
                "address_space": {"address_prefixes": list(params["address_prefixes"])},
                "subnets": [
                    {"name": s["name"], "address_prefix": s["address_prefix"]} for s in params.get("subnets", [])
                ],
                "tags": params.get("tags", {}),
            },
        )
        return self._wait(poller, f"Virtual network {spec.name}")

    def _create_gateway(self, resource_group, spec, dependencies):
        params = spec.parameters
        network = self._dependency(spec, dependencies, params["virtual_network"])
        public_ip = self._dependency(spec, dependencies, params["public_ip"])
        subnet_id = self._subnet_id(spec, network, GATEWAY_SUBNET_NAME)

        sku = params.get("sku", "Basic")
        poller = self.network_client.virtual_network_gateways.begin_create_or_update(
            resource_group,
            spec.name,
            {
                "location": spec.location,
                "tags": params.get("tags", {}),
                "sku": {"name": sku, "tier": sku},
                "gateway_type": params.get("gateway_type", "Vpn"),
                "vpn_type": params.get("vpn_type", "RouteBased"),
                "enable_bgp": params.get("enable_bgp", False),
                "ip_configurations": [{
                    "name": params.get("ip_configuration_name", f"{spec.name}-ipconfig"),
                    "private_ip_allocation_method": "Dynamic",
                    "public_ip_address": {"id": public_ip.id},
                    "subnet": {"id": subnet_id},
                }],
            },
        )
        return self._wait(poller, f"Virtual network gateway {spec.name}")

    def _create_connection(self, resource_group, spec, dependencies):
        params = spec.parameters
        gateways = self.network_client.virtual_network_gateways
        connection = VirtualNetworkGatewayConnection(
            location=spec.location,
            connection_type=params.get("connection_type", "Vnet2Vnet"),
            virtual_network_gateway1=gateways.get(resource_group, params["gateway1"]),
            virtual_network_gateway2=gateways.get(resource_group, params["gateway2"]),
            shared_key=params["shared_key"],
        )
        poller = self.network_client.virtual_network_gateway_connections.begin_create_or_update(
            resource_group, spec.name, connection
        )
        return self._wait(poller, f"Connection {spec.name}")

    def _create_network_watcher(self, resource_group, spec, dependencies):
        return self.network_client.network_watchers.create_or_update(
            resource_group, spec.name, {"location": spec.location}
        )

    def _create_storage_account(self, resource_group, spec, dependencies):
        poller = self.storage_client.storage_accounts.begin_create(
            resource_group,
            spec.name,
            {
                "location": spec.location,
                "sku": {"name": spec.parameters.get("sku", "Standard_LRS")},
                "kind": spec.parameters.get("account_kind", "StorageV2"),
            },
        )
        return self._wait(poller, f"Storage account {spec.name}")

    def _create_storage_container(self, resource_group, spec, dependencies):
        return self.storage_client.blob_containers.create(
            resource_group, spec.parameters["storage_account"], spec.name, {}
        )

    def _create_virtual_machine(self, resource_group, spec, dependencies):
        params = spec.parameters
        network = self._dependency(spec, dependencies, params["virtual_network"])
        subnet_id = self._subnet_id(spec, network, params["subnet"])

        nic_poller = self.network_client.network_interfaces.begin_create_or_update(
            resource_group,
            f"{spec.name}-nic",
            {
                "location": spec.location,
                "ip_configurations": [{
                    "name": "primary",
                    "private_ip_allocation_method": "Dynamic",
                    "subnet": {"id": subnet_id},
                }],
            },
        )
        nic = self._wait(nic_poller, f"Network interface for {spec.name}")

        image = params.get("image", {})
        vm_poller = self.compute_client.virtual_machines.begin_create_or_update(
            resource_group,
            spec.name,
            {
                "location": spec.location,
                "hardware_profile": {"vm_size": params.get("size", "Standard_B1s")},
                "storage_profile": {"image_reference": dict(image)},
                "os_profile": {
                    "computer_name": spec.name,
                    "admin_username": params["admin_username"],
                    "admin_password": params["admin_password"],
                    "linux_configuration": {"disable_password_authentication": False},
                },
                "network_profile": {"network_interfaces": [{"id": nic.id, "primary": True}]},
            },
        )
        vm = self._wait(vm_poller, f"Virtual machine {spec.name}")

        for extension in params.get("extensions", []):
            ext_poller = self.compute_client.virtual_machine_extensions.begin_create_or_update(
                resource_group,
                spec.name,
                extension["name"],
                {
                    "location": spec.location,
                    "publisher": extension["publisher"],
                    "type_properties_type": extension["type"],
                    "type_handler_version": extension["version"],
                    "auto_upgrade_minor_version": True,
                },
            )
            self._wait(ext_poller, f"Extension {extension['name']} on {spec.name}")
        return vm

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _wait(self, poller, description: str, timeout: Optional[float] = None):
        timeout = self.operation_timeout if timeout is None else timeout
        poller.wait(timeout=timeout)
        if not poller.done():
            raise OperationTimeoutError(f"{description} did not complete within {timeout}s", timeout=timeout)
        return poller.result()

    @contextmanager
    def _translate_errors(self, kind: ResourceKind, name: str):
        try:
            yield
        except ResourceNotFoundError as e:
            raise ProviderOperationError(
                f"The {kind.label} {name} was not found",
                kind=kind.value, name=name, code="ResourceNotFound", detail=e.message,
            ) from e
        except HttpResponseError as e:
            code = e.error.code if e.error is not None else None
            raise ProviderOperationError(
                f"Request for {kind.label} {name} failed",
                kind=kind.value, name=name, code=code, detail=e.message,
            ) from e

    @staticmethod
    def _dependency(spec: ResourceSpec, dependencies: Dict[str, ResourceHandle], name: str) -> ResourceHandle:
        try:
            return dependencies[name]
        except KeyError:
            raise ProviderOperationError(
                f"{spec.kind.label} {spec.name} needs {name}, which was not provided",
                kind=spec.kind.value, name=spec.name, code="DependencyNotProvided",
            )

    @staticmethod
    def _subnet_id(spec: ResourceSpec, network: ResourceHandle, subnet_name: str) -> str:
        for subnet in network.properties.get("subnets", []):
            if subnet.get("name") == subnet_name:
                return subnet["id"]
        raise ProviderOperationError(
            f"Virtual network {network.name} has no subnet named {subnet_name}",
            kind=spec.kind.value, name=spec.name, code="SubnetNotFound",
        )

    def _group_handle(self, group) -> ResourceHandle:
        state = group.properties.provisioning_state if group.properties is not None else None
        return ResourceHandle(
            id=group.id,
            kind=ResourceKind.RESOURCE_GROUP,
            name=group.name,
            resource_group=group.name,
            provisioning_state=str(_enum_value(state) or "Succeeded"),
            properties={"location": group.location, "tags": dict(group.tags or {})},
        )

    def _to_handle(self, kind: ResourceKind, resource_group: str, model) -> ResourceHandle:
        properties = model.as_dict() if hasattr(model, "as_dict") else {}
        state = _enum_value(getattr(model, "provisioning_state", None))
        return ResourceHandle(
            id=model.id,
            kind=kind,
            name=model.name,
            resource_group=resource_group,
            provisioning_state=str(state or "Succeeded"),
            properties=properties,
        )
