#!/usr/bin/env python3
"""
Provisioning Executor

Walks a ProvisioningPlan in order and issues one blocking create-or-update per
spec against the provider.

Implements:
- Dependency resolution from handles created earlier in the run
- Idempotent create-or-update keyed on resource name
- Stop-on-first-failure with the partial handle map returned to the caller
- Recording of the resource group into the session state for teardown
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import ConfigurationError, OperationTimeoutError, ProviderOperationError
from .metrics import METRICS
from .planner import ProvisioningPlan
from .progress import ProgressLogger
from .providers.base import Provider
from .resources import ResourceHandle, ResourceKind, ResourceSpec
from .teardown import SessionState


@dataclass
class ExecutionResult:
    """Handles created by a run, plus the error that stopped it, if any."""

    handles: Dict[str, ResourceHandle] = field(default_factory=dict)
    error: Optional[Exception] = None
    failed_spec: Optional[str] = None
    duration_ms: float = 0

    @property
    def success(self) -> bool:
        return self.error is None


class ProvisioningExecutor:
    def __init__(self, provider: Provider, session: SessionState, progress: Optional[ProgressLogger] = None):
        self.provider = provider
        self.session = session
        self.progress = progress or ProgressLogger()

    def apply(self, plan: ProvisioningPlan) -> ExecutionResult:
        """
        Provision every spec of the plan, strictly in plan order.

        Provider failures and timeouts do not raise: they end the run and are
        returned in the result together with the handles created so far.
        """
        plan.validate()
        start_time = time.time()
        result = ExecutionResult()

        for spec in plan:
            try:
                handle = self.apply_spec(plan.resource_group, spec, result.handles)
            except (ProviderOperationError, OperationTimeoutError) as e:
                result.error = e
                result.failed_spec = spec.name
                self.progress.log_error(
                    f"Failed to create {spec.kind.label} {spec.name}: {e}",
                    {"resource_group": plan.resource_group, "created": list(result.handles)},
                )
                break
            result.handles[spec.name] = handle

        result.duration_ms = (time.time() - start_time) * 1000
        return result

    def apply_spec(
        self,
        resource_group: str,
        spec: ResourceSpec,
        handles: Dict[str, ResourceHandle],
    ) -> ResourceHandle:
        """Create or update a single resource and block until it is terminal."""
        missing = [name for name in spec.depends_on if name not in handles]
        if missing:
            raise ConfigurationError(f"{spec.name} depends on resources that were not created: {missing}")
        dependencies = {name: handles[name] for name in spec.depends_on}

        if spec.kind != ResourceKind.RESOURCE_GROUP:
            self.progress.log_step(f"Creating {spec.kind.label} {spec.name}...")

        start_time = time.time()
        try:
            handle = self.provider.create_or_update(resource_group, spec, dependencies)
        except (ProviderOperationError, OperationTimeoutError):
            METRICS["operations_total"].labels(kind=spec.kind.value, outcome="failed").inc()
            raise
        finally:
            METRICS["operation_latency"].labels(kind=spec.kind.value).observe((time.time() - start_time) * 1000)

        METRICS["operations_total"].labels(kind=spec.kind.value, outcome="succeeded").inc()
        METRICS["resources_created"].inc()

        if spec.kind == ResourceKind.RESOURCE_GROUP:
            self.session.record_resource_group(handle)
            self.progress.log_step(f"Created a resource group with name: {handle.name}")
        else:
            self.progress.log_step(f"Created {spec.kind.label}: {handle.name}")
        return handle
