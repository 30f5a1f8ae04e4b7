"""
Resource declarations and provider-side handles.

A ResourceSpec says what to create; a ResourceHandle is what the provider
returned once the create-or-update reached a terminal state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ResourceKind(Enum):
    RESOURCE_GROUP = "resource_group"
    PUBLIC_IP = "public_ip"
    VIRTUAL_NETWORK = "virtual_network"
    VIRTUAL_NETWORK_GATEWAY = "virtual_network_gateway"
    GATEWAY_CONNECTION = "gateway_connection"
    NETWORK_WATCHER = "network_watcher"
    STORAGE_ACCOUNT = "storage_account"
    STORAGE_CONTAINER = "storage_container"
    VIRTUAL_MACHINE = "virtual_machine"

    @property
    def arm_type(self) -> str:
        return ARM_TYPES[self]

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


ARM_TYPES = {
    ResourceKind.RESOURCE_GROUP: "Microsoft.Resources/resourceGroups",
    ResourceKind.PUBLIC_IP: "Microsoft.Network/publicIPAddresses",
    ResourceKind.VIRTUAL_NETWORK: "Microsoft.Network/virtualNetworks",
    ResourceKind.VIRTUAL_NETWORK_GATEWAY: "Microsoft.Network/virtualNetworkGateways",
    ResourceKind.GATEWAY_CONNECTION: "Microsoft.Network/connections",
    ResourceKind.NETWORK_WATCHER: "Microsoft.Network/networkWatchers",
    ResourceKind.STORAGE_ACCOUNT: "Microsoft.Storage/storageAccounts",
    ResourceKind.STORAGE_CONTAINER: "Microsoft.Storage/storageAccounts/blobServices/containers",
    ResourceKind.VIRTUAL_MACHINE: "Microsoft.Compute/virtualMachines",
}


class HealthStatus(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "HealthStatus":
        """Map a provider troubleshooting code ("Healthy", "UnHealthy", ...)."""
        normalized = (code or "").strip().lower()
        if normalized == "healthy":
            return cls.HEALTHY
        if normalized == "unhealthy":
            return cls.UNHEALTHY
        return cls.UNKNOWN


@dataclass(frozen=True)
class ResourceSpec:
    """Declaration of one resource to create. Never mutated after planning."""

    kind: ResourceKind
    name: str
    location: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResourceHandle:
    id: str
    kind: ResourceKind
    name: str
    resource_group: str
    provisioning_state: str = "Succeeded"
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.provisioning_state.lower() == "succeeded"


@dataclass(frozen=True)
class TroubleshootingRequest:
    network_watcher: ResourceHandle
    target: ResourceHandle
    storage_account: ResourceHandle
    storage_path: str


@dataclass(frozen=True)
class TroubleshootingResult:
    code: str
    status: HealthStatus
    details: List[str] = field(default_factory=list)

    @classmethod
    def from_code(cls, code: Optional[str], details: Optional[List[str]] = None):
        return cls(code=code or "Unknown", status=HealthStatus.from_code(code), details=details or [])


@dataclass(frozen=True)
class ConnectivityResult:
    status: str
    avg_latency_ms: Optional[int] = None
    probes_sent: int = 0
    probes_failed: int = 0

    @property
    def reachable(self) -> bool:
        return self.status.lower() == "reachable"
