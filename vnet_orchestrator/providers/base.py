"""The boundary between the orchestration core and a cloud management API."""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..resources import (
    ConnectivityResult,
    ResourceHandle,
    ResourceKind,
    ResourceSpec,
    TroubleshootingRequest,
    TroubleshootingResult,
)


class Provider(ABC):
    """
    An already-authenticated handle on a cloud management API.

    Every mutating call blocks until the provider reports a terminal state.
    Failures are raised as ProviderOperationError, bounded waits that expire
    as OperationTimeoutError.
    """

    @abstractmethod
    def create_or_update(
        self,
        resource_group: str,
        spec: ResourceSpec,
        dependencies: Dict[str, ResourceHandle],
    ) -> ResourceHandle:
        """Create the resource, or update it in place if the name exists."""

    @abstractmethod
    def get(self, resource_group: str, kind: ResourceKind, name: str) -> ResourceHandle:
        ...

    @abstractmethod
    def delete_resource_group(self, name: str, timeout: Optional[float] = None):
        """Delete a resource group and everything in it, waiting for completion."""

    @abstractmethod
    def run_diagnostic(self, request: TroubleshootingRequest) -> TroubleshootingResult:
        ...

    @abstractmethod
    def list_connections(self, resource_group: str, gateway: str) -> List[ResourceHandle]:
        ...

    @abstractmethod
    def check_connectivity(
        self,
        resource_group: str,
        network_watcher: str,
        source: ResourceHandle,
        destination: ResourceHandle,
        port: int = 22,
    ) -> ConnectivityResult:
        ...
