"""
VPN gateway VNet-to-VNet sample.

- Create 2 virtual networks with subnets and 2 virtual network gateways, one per network
- Create a VPN VNet-to-VNet connection
- Troubleshoot the connection
  - Create a network watcher in the same region as the gateways
  - Create a storage account and container for the troubleshooting output
  - Run troubleshooting: the result is UnHealthy, because only one direction exists
- Create the connection from the second gateway to the first and troubleshoot
  again: the result is Healthy
- List the VPN connections of the first gateway
- Create 2 virtual machines, one in each network, and check connectivity between them
- Delete the resource group
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import load_plan_config
from .executor import ProvisioningExecutor
from .planner import ProvisioningPlan, build_plan
from .progress import ProgressLogger
from .providers.base import Provider
from .resources import ConnectivityResult, ResourceHandle, ResourceKind
from .teardown import SessionState, TeardownGuard
from .troubleshooting import TroubleshootingOrchestrator, TroubleshootingReport


@dataclass
class SampleReport:
    plan: ProvisioningPlan
    handles: Dict[str, ResourceHandle] = field(default_factory=dict)
    troubleshooting: Optional[TroubleshootingReport] = None
    connections: List[ResourceHandle] = field(default_factory=list)
    connectivity: Optional[ConnectivityResult] = None
    cleaned_up: bool = False


def run_sample(
    provider: Provider,
    config,
    progress: Optional[ProgressLogger] = None,
    teardown_timeout: Optional[float] = None,
    sleep=None,
) -> SampleReport:
    """
    Run the whole sample against `provider`. The resource group is deleted on
    every exit path; provisioning errors are re-raised after cleanup.
    """
    progress = progress or ProgressLogger()
    session = SessionState()
    report = None

    with TeardownGuard(provider, progress, timeout=teardown_timeout, session=session) as guard:
        config = load_plan_config(config)
        plan = build_plan(config)
        report = SampleReport(plan=plan)

        progress.log_step("Creating resource group...")
        executor = ProvisioningExecutor(provider, session, progress)
        result = executor.apply(plan)
        report.handles = result.handles
        if not result.success:
            raise result.error

        if plan.diagnostic is not None:
            settings = config.troubleshooting
            orchestrator_args = {
                "settle_timeout": settings.settle_timeout_seconds,
                "initial_interval": settings.initial_poll_interval_seconds,
                "max_interval": settings.max_poll_interval_seconds,
            }
            if sleep is not None:
                orchestrator_args["sleep"] = sleep
            orchestrator = TroubleshootingOrchestrator(provider, executor, progress, **orchestrator_args)
            report.troubleshooting = orchestrator.run(plan, report.handles)

        first_gateway = plan.first_of(ResourceKind.VIRTUAL_NETWORK_GATEWAY)
        report.connections = provider.list_connections(plan.resource_group, first_gateway.name)
        for connection in report.connections:
            progress.log_step(
                f"Connection {connection.name}: status={connection.properties.get('connection_status')}, "
                f"provisioning_state={connection.provisioning_state}"
            )

        check = plan.connectivity
        if check is not None:
            report.connectivity = provider.check_connectivity(
                plan.resource_group,
                check.network_watcher,
                report.handles[check.source],
                report.handles[check.destination],
                port=check.port,
            )
            progress.log_step(f"Connectivity status: {report.connectivity.status}")

    report.cleaned_up = guard.cleaned_up
    return report
