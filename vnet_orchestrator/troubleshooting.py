"""
Troubleshooting Orchestrator

Diagnoses a VNet-to-VNet connection. With only one direction configured the
provider reports the connection unhealthy; the orchestrator then creates the
reverse connection with the same shared key, waits for it to report
Connected, and diagnoses the original connection again.

States: UNKNOWN -> (troubleshoot) -> HEALTHY | UNHEALTHY
        UNHEALTHY -> (reverse connection settles, troubleshoot) -> HEALTHY | ...
Any result other than that single designed transition is reported as is.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import ConfigurationError, OperationTimeoutError, ProviderOperationError
from .executor import ProvisioningExecutor
from .metrics import METRICS
from .planner import ProvisioningPlan
from .progress import ProgressLogger
from .providers.base import Provider
from .resources import (
    HealthStatus,
    ResourceHandle,
    ResourceKind,
    TroubleshootingRequest,
    TroubleshootingResult,
)

logger = logging.getLogger(__name__)

CONNECTED = "Connected"


@dataclass
class TroubleshootingReport:
    initial: TroubleshootingResult
    final: TroubleshootingResult
    reverse_connection: Optional[ResourceHandle] = None
    transitions: List[HealthStatus] = field(default_factory=lambda: [HealthStatus.UNKNOWN])

    @property
    def healthy(self) -> bool:
        return self.final.status == HealthStatus.HEALTHY


def build_request(plan: ProvisioningPlan, handles: Dict[str, ResourceHandle]) -> TroubleshootingRequest:
    """Assemble the diagnostic request from the plan's diagnostic target."""
    target = plan.diagnostic
    if target is None:
        raise ConfigurationError("Plan has no troubleshooting target")
    missing = [name for name in (target.connection, target.network_watcher, target.storage_account)
               if name not in handles]
    if missing:
        raise ConfigurationError(f"Troubleshooting needs resources that were not created: {missing}")

    storage_account = handles[target.storage_account]
    endpoints = storage_account.properties.get("primary_endpoints") or {}
    blob_endpoint = endpoints.get("blob") or f"https://{storage_account.name}.blob.core.windows.net/"
    if not blob_endpoint.endswith("/"):
        blob_endpoint += "/"

    return TroubleshootingRequest(
        network_watcher=handles[target.network_watcher],
        target=handles[target.connection],
        storage_account=storage_account,
        storage_path=blob_endpoint + target.container,
    )


class TroubleshootingOrchestrator:
    def __init__(
        self,
        provider: Provider,
        executor: ProvisioningExecutor,
        progress: Optional[ProgressLogger] = None,
        settle_timeout: float = 600.0,
        initial_interval: float = 5.0,
        max_interval: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.executor = executor
        self.progress = progress or executor.progress
        self.settle_timeout = settle_timeout
        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self._sleep = sleep
        self._clock = clock

    def troubleshoot(self, request: TroubleshootingRequest) -> TroubleshootingResult:
        result = self.provider.run_diagnostic(request)
        METRICS["diagnostics_total"].labels(status=result.status.value).inc()
        self.progress.log_step(f"Troubleshooting status is: {result.code}")
        for detail in result.details:
            self.progress.log_step(f"  {detail}")
        return result

    def run(self, plan: ProvisioningPlan, handles: Dict[str, ResourceHandle]) -> TroubleshootingReport:
        """
        Troubleshoot the plan's connection, repairing it once if unhealthy.

        The reverse connection handle is added to `handles` so teardown and
        later steps can see it.
        """
        request = build_request(plan, handles)
        initial = self.troubleshoot(request)
        report = TroubleshootingReport(initial=initial, final=initial)
        report.transitions.append(initial.status)

        if initial.status != HealthStatus.UNHEALTHY:
            if initial.status == HealthStatus.UNKNOWN:
                self.progress.log_warning(
                    f"Troubleshooting returned an unrecognized status: {initial.code}",
                    {"target": request.target.id},
                )
            return report

        reverse_spec = plan.diagnostic.reverse_connection
        self.progress.log_step(
            "Creating the reverse connection so both gateways share the key..."
        )
        reverse = self.executor.apply_spec(plan.resource_group, reverse_spec, handles)
        handles[reverse_spec.name] = reverse
        report.reverse_connection = self.wait_for_connection(plan.resource_group, reverse_spec.name)

        final = self.troubleshoot(request)
        report.final = final
        report.transitions.append(final.status)
        if final.status != HealthStatus.HEALTHY:
            self.progress.log_warning(
                f"Connection still reports {final.code} after the reverse connection settled",
                {"target": request.target.id, "details": final.details},
            )
        return report

    def wait_for_connection(self, resource_group: str, name: str) -> ResourceHandle:
        """Poll a connection with exponential backoff until it reports Connected."""
        deadline = self._clock() + self.settle_timeout
        interval = self.initial_interval
        attempt = 0

        while True:
            attempt += 1
            handle = self.provider.get(resource_group, ResourceKind.GATEWAY_CONNECTION, name)
            status = handle.properties.get("connection_status")
            if handle.provisioning_state.lower() == "failed":
                raise ProviderOperationError(
                    f"Connection {name} entered a failed state",
                    kind=ResourceKind.GATEWAY_CONNECTION.value, name=name, code="ProvisioningStateFailed",
                )
            if status == CONNECTED:
                self.progress.log_step(f"Connection {name} is {status} after {attempt} checks")
                return handle

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise OperationTimeoutError(
                    f"Connection {name} did not reach {CONNECTED} within {self.settle_timeout}s "
                    f"(last status: {status})",
                    timeout=self.settle_timeout,
                )
            logger.debug(f"Connection {name} is {status}; checking again in {interval}s")
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self.max_interval)
