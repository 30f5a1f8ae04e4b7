from unittest.mock import MagicMock

import pytest

from vnet_orchestrator.errors import ConfigurationError, OperationTimeoutError, ProviderOperationError
from vnet_orchestrator.executor import ProvisioningExecutor
from vnet_orchestrator.providers.simulated import SimulatedProvider
from vnet_orchestrator.resources import HealthStatus, ResourceHandle, ResourceKind, TroubleshootingResult
from vnet_orchestrator.teardown import SessionState
from vnet_orchestrator.troubleshooting import TroubleshootingOrchestrator, build_request

from conftest import RUN_ID


def _provisioned(provider, plan, progress):
    executor = ProvisioningExecutor(provider, SessionState(), progress)
    result = executor.apply(plan)
    assert result.success
    return executor, result.handles


def _orchestrator(provider, executor, clock, **kwargs):
    kwargs.setdefault("initial_interval", 1)
    return TroubleshootingOrchestrator(provider, executor, sleep=clock.sleep, clock=clock, **kwargs)


class TestHealthStatus:
    @pytest.mark.parametrize(
        "code,status",
        [
            ("Healthy", HealthStatus.HEALTHY),
            ("UnHealthy", HealthStatus.UNHEALTHY),
            ("unhealthy", HealthStatus.UNHEALTHY),
            ("Degraded", HealthStatus.UNKNOWN),
            (None, HealthStatus.UNKNOWN),
        ],
    )
    def test_from_code(self, code, status):
        assert HealthStatus.from_code(code) == status

    def test_missing_code_is_reported_as_unknown(self):
        assert TroubleshootingResult.from_code(None).code == "Unknown"


def test_build_request_uses_blob_endpoint(provider, plan, progress):
    _, handles = _provisioned(provider, plan, progress)
    request = build_request(plan, handles)
    assert request.storage_path == f"https://sa{RUN_ID}.blob.core.windows.net/troubleshooting"
    assert request.target.name == f"connection-1to2-{RUN_ID}"
    assert request.network_watcher.kind == ResourceKind.NETWORK_WATCHER


def test_build_request_needs_created_resources(plan):
    with pytest.raises(ConfigurationError):
        build_request(plan, {})


class TestRepairFlow:
    def test_unhealthy_then_healthy(self, provider, plan, progress, clock):
        """One-directional connection is repaired by creating the reverse one."""
        executor, handles = _provisioned(provider, plan, progress)

        report = _orchestrator(provider, executor, clock).run(plan, handles)

        assert report.initial.status == HealthStatus.UNHEALTHY
        assert report.final.status == HealthStatus.HEALTHY
        assert report.healthy
        assert report.transitions == [HealthStatus.UNKNOWN, HealthStatus.UNHEALTHY, HealthStatus.HEALTHY]
        assert report.reverse_connection.properties["connection_status"] == "Connected"
        assert f"connection-2to1-{RUN_ID}" in handles
        assert "Troubleshooting status is: UnHealthy" in progress.steps
        assert "Troubleshooting status is: Healthy" in progress.steps
        assert [r["code"] for r in provider.troubleshooting_records(plan.resource_group)] == ["UnHealthy", "Healthy"]

    def test_waits_with_exponential_backoff(self, plan, progress, clock):
        provider = SimulatedProvider(settle_polls=3)
        executor, handles = _provisioned(provider, plan, progress)

        report = _orchestrator(provider, executor, clock).run(plan, handles)

        assert report.healthy
        assert clock.sleeps == [1, 2, 4]

    def test_backoff_is_capped(self, plan, progress, clock):
        provider = SimulatedProvider(settle_polls=5)
        executor, handles = _provisioned(provider, plan, progress)

        _orchestrator(provider, executor, clock, max_interval=3).run(plan, handles)

        assert clock.sleeps == [1, 2, 3, 3, 3]

    def test_settle_timeout(self, plan, progress, clock):
        provider = SimulatedProvider(settle_polls=100)
        executor, handles = _provisioned(provider, plan, progress)
        orchestrator = _orchestrator(provider, executor, clock, settle_timeout=5)

        with pytest.raises(OperationTimeoutError) as exc_info:
            orchestrator.run(plan, handles)

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.timeout == 5
        assert sum(clock.sleeps) == 5

    def test_already_healthy_needs_no_repair(self, provider, plan, progress, clock):
        executor, handles = _provisioned(provider, plan, progress)
        executor.apply_spec(plan.resource_group, plan.diagnostic.reverse_connection, handles)
        progress.steps.clear()

        report = _orchestrator(provider, executor, clock).run(plan, handles)

        assert report.initial.status == HealthStatus.HEALTHY
        assert report.reverse_connection is None
        assert report.transitions == [HealthStatus.UNKNOWN, HealthStatus.HEALTHY]
        assert not any(step.startswith("Creating") for step in progress.steps)


class TestUnexpectedResults:
    """Results outside the Unhealthy -> Healthy transition are reported as they are."""

    def _setup(self, plan, progress):
        provider = SimulatedProvider()
        executor, handles = _provisioned(provider, plan, progress)
        mocked = MagicMock(wraps=provider)
        executor.provider = mocked
        return mocked, executor, handles

    def test_unknown_code_is_not_retried(self, plan, progress, clock):
        provider, executor, handles = self._setup(plan, progress)
        provider.run_diagnostic.side_effect = None
        provider.run_diagnostic.return_value = TroubleshootingResult.from_code("Degraded")

        report = _orchestrator(provider, executor, clock).run(plan, handles)

        assert report.final.status == HealthStatus.UNKNOWN
        assert report.final.code == "Degraded"
        assert provider.run_diagnostic.call_count == 1
        provider.create_or_update.assert_not_called()
        assert len(progress.warnings) == 1

    def test_still_unhealthy_after_repair(self, plan, progress, clock):
        provider, executor, handles = self._setup(plan, progress)
        provider.run_diagnostic.side_effect = None
        provider.run_diagnostic.return_value = TroubleshootingResult.from_code(
            "UnHealthy", ["The remote gateway is not reachable"]
        )

        report = _orchestrator(provider, executor, clock).run(plan, handles)

        assert report.final.status == HealthStatus.UNHEALTHY
        assert not report.healthy
        assert provider.run_diagnostic.call_count == 2
        assert progress.warnings[0]["context"]["details"] == ["The remote gateway is not reachable"]

    def test_failed_reverse_connection(self, plan, progress, clock):
        provider = MagicMock()
        executor = MagicMock(progress=progress)
        provider.run_diagnostic.return_value = TroubleshootingResult.from_code("UnHealthy")
        provider.get.return_value = ResourceHandle(
            id="c21", kind=ResourceKind.GATEWAY_CONNECTION, name="c21", resource_group=plan.resource_group,
            provisioning_state="Failed", properties={"connection_status": "NotConnected"},
        )
        handles = {
            spec.name: ResourceHandle(
                id=spec.name, kind=spec.kind, name=spec.name, resource_group=plan.resource_group,
                properties={"primary_endpoints": {"blob": f"https://{spec.name}.blob.core.windows.net/"}},
            )
            for spec in plan
        }

        with pytest.raises(ProviderOperationError, match="failed state"):
            _orchestrator(provider, executor, clock).run(plan, handles)
        assert clock.sleeps == []
