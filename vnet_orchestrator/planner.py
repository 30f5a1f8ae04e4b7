"""
Resource Planner

Turns a PlanConfig into an ordered ProvisioningPlan: every spec appears after
the specs it depends on, and diagnostic and connectivity steps only reference
resources the plan creates earlier.
"""

import ipaddress
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from .config import GATEWAY_SUBNET_NAME, PlanConfig, VirtualNetworkConfig, load_plan_config
from .errors import ConfigurationError
from .resources import ResourceKind, ResourceSpec


@dataclass(frozen=True)
class DiagnosticTarget:
    """What to troubleshoot, where to store the output, and how to repair it."""

    connection: str
    network_watcher: str
    storage_account: str
    container: str
    reverse_connection: ResourceSpec

    @property
    def depends_on(self) -> Tuple[str, ...]:
        return (self.connection, self.network_watcher, self.storage_account, self.container) + tuple(
            self.reverse_connection.depends_on
        )


@dataclass(frozen=True)
class ConnectivityCheck:
    source: str
    destination: str
    network_watcher: str
    port: int = 22

    @property
    def depends_on(self) -> Tuple[str, ...]:
        return (self.source, self.destination, self.network_watcher)


@dataclass(frozen=True)
class ProvisioningPlan:
    resource_group: str
    location: str
    specs: Tuple[ResourceSpec, ...]
    diagnostic: Optional[DiagnosticTarget] = None
    connectivity: Optional[ConnectivityCheck] = None

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def names(self) -> List[str]:
        return [spec.name for spec in self.specs]

    def get(self, name: str) -> ResourceSpec:
        for spec in self.specs:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def first_of(self, kind: ResourceKind) -> Optional[ResourceSpec]:
        return next((spec for spec in self.specs if spec.kind == kind), None)

    def validate(self):
        """Check the topological-order invariant, raising ConfigurationError."""
        if not self.specs:
            raise ConfigurationError("Plan is empty")
        first = self.specs[0]
        if first.kind != ResourceKind.RESOURCE_GROUP or first.name != self.resource_group:
            raise ConfigurationError("Plan must start with its resource group")

        seen = set()
        for spec in self.specs:
            if spec.name in seen:
                raise ConfigurationError(f"Duplicate resource name in plan: {spec.name}")
            for dependency in spec.depends_on:
                if dependency not in seen:
                    raise ConfigurationError(
                        f"{spec.name} depends on {dependency}, which is not created before it"
                    )
            seen.add(spec.name)

        for step, label in ((self.diagnostic, "troubleshooting"), (self.connectivity, "connectivity check")):
            if step is None:
                continue
            missing = [name for name in step.depends_on if name not in seen]
            if missing:
                raise ConfigurationError(f"{label} references resources not in plan: {missing}")


def _check_no_overlap(first: VirtualNetworkConfig, second: VirtualNetworkConfig):
    pairs = (
        ("address spaces", first.address_space, second.address_space),
        ("gateway subnets", first.gateway_subnet, second.gateway_subnet),
    )
    for label, a, b in pairs:
        if ipaddress.ip_network(a).overlaps(ipaddress.ip_network(b)):
            raise ConfigurationError(f"Virtual network {label} overlap: {a} and {b}")


def _network_spec(name, group, location, network: VirtualNetworkConfig, tags) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.VIRTUAL_NETWORK,
        name=name,
        location=location,
        parameters={
            "address_prefixes": [network.address_space],
            "subnets": [
                {"name": GATEWAY_SUBNET_NAME, "address_prefix": network.gateway_subnet},
                {"name": network.workload_subnet_name, "address_prefix": network.workload_subnet},
            ],
            "tags": dict(tags),
        },
        depends_on=(group,),
    )


def _gateway_spec(name, group, location, network, public_ip, config: PlanConfig) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.VIRTUAL_NETWORK_GATEWAY,
        name=name,
        location=location,
        parameters={
            "virtual_network": network,
            "public_ip": public_ip,
            "ip_configuration_name": f"{name}-ipconfig",
            "sku": config.gateway_sku,
            "gateway_type": "Vpn",
            "vpn_type": "RouteBased",
            "enable_bgp": False,
            "tags": dict(config.tags),
        },
        depends_on=(group, network, public_ip),
    )


def _connection_spec(name, group, location, source, destination, shared_key) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.GATEWAY_CONNECTION,
        name=name,
        location=location,
        parameters={
            "connection_type": "Vnet2Vnet",
            "gateway1": source,
            "gateway2": destination,
            "shared_key": shared_key,
        },
        depends_on=(group, source, destination),
    )


def build_plan(config) -> ProvisioningPlan:
    """Build the ordered plan for the two-network VPN gateway topology."""
    config = load_plan_config(config)
    _check_no_overlap(config.vnet1, config.vnet2)

    run = config.run_id
    group = config.group_name
    location = config.region

    vnet1, vnet2 = f"vnet1-{run}", f"vnet2-{run}"
    pip1, pip2 = f"pip1-{run}", f"pip2-{run}"
    gateway1, gateway2 = f"vpn-gateway1-{run}", f"vpn-gateway2-{run}"
    connection, reverse = f"connection-1to2-{run}", f"connection-2to1-{run}"
    watcher = f"nw-{run}"
    storage = f"sa{run}"
    container = config.troubleshooting.container_name

    def public_ip(name):
        return ResourceSpec(
            kind=ResourceKind.PUBLIC_IP,
            name=name,
            location=location,
            parameters={"allocation_method": "Dynamic", "sku": "Basic"},
            depends_on=(group,),
        )

    specs = [
        ResourceSpec(kind=ResourceKind.RESOURCE_GROUP, name=group, location=location,
                     parameters={"tags": dict(config.tags)}),
        _network_spec(vnet1, group, location, config.vnet1, config.tags),
        public_ip(pip1),
        public_ip(pip2),
        _gateway_spec(gateway1, group, location, vnet1, pip1, config),
        _network_spec(vnet2, group, location, config.vnet2, config.tags),
        _gateway_spec(gateway2, group, location, vnet2, pip2, config),
        _connection_spec(connection, group, location, gateway1, gateway2, config.shared_key),
    ]

    diagnostic = None
    if config.troubleshooting.enabled:
        specs += [
            ResourceSpec(kind=ResourceKind.NETWORK_WATCHER, name=watcher, location=location,
                         depends_on=(group,)),
            ResourceSpec(kind=ResourceKind.STORAGE_ACCOUNT, name=storage, location=location,
                         parameters={"sku": "Standard_LRS", "account_kind": "StorageV2"},
                         depends_on=(group,)),
            ResourceSpec(kind=ResourceKind.STORAGE_CONTAINER, name=container, location=location,
                         parameters={"storage_account": storage},
                         depends_on=(group, storage)),
        ]
        diagnostic = DiagnosticTarget(
            connection=connection,
            network_watcher=watcher,
            storage_account=storage,
            container=container,
            reverse_connection=_connection_spec(
                reverse, group, location, gateway2, gateway1, config.shared_key
            ),
        )

    connectivity = None
    vms = config.virtual_machines
    if vms is not None:
        vm_specs = []
        for index, (network, settings) in enumerate(((vnet1, config.vnet1), (vnet2, config.vnet2)), start=1):
            vm_specs.append(ResourceSpec(
                kind=ResourceKind.VIRTUAL_MACHINE,
                name=f"vm{index}-{run}",
                location=location,
                parameters={
                    "virtual_network": network,
                    "subnet": settings.workload_subnet_name,
                    "size": vms.size,
                    "image": {
                        "publisher": vms.image_publisher,
                        "offer": vms.image_offer,
                        "sku": vms.image_sku,
                        "version": vms.image_version,
                    },
                    "admin_username": vms.admin_username,
                    "admin_password": vms.admin_password,
                    "public_ip": False,
                    "extensions": [{
                        "name": "networkWatcher",
                        "publisher": "Microsoft.Azure.NetworkWatcher",
                        "type": "NetworkWatcherAgentLinux",
                        "version": "1.4",
                    }],
                },
                depends_on=(group, network),
            ))
        specs += vm_specs
        if diagnostic is not None:
            connectivity = ConnectivityCheck(
                source=vm_specs[0].name, destination=vm_specs[1].name, network_watcher=watcher
            )

    plan = ProvisioningPlan(
        resource_group=group,
        location=location,
        specs=tuple(specs),
        diagnostic=diagnostic,
        connectivity=connectivity,
    )
    plan.validate()
    return plan
