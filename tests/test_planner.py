import pytest

from vnet_orchestrator.config import PlanConfig, TroubleshootingConfig, VirtualMachineConfig
from vnet_orchestrator.errors import ConfigurationError
from vnet_orchestrator.planner import DiagnosticTarget, ProvisioningPlan, build_plan
from vnet_orchestrator.resources import ResourceKind, ResourceSpec

from conftest import RUN_ID, SHARED_KEY


def _assert_dependency_order(plan):
    seen = set()
    for spec in plan:
        for dependency in spec.depends_on:
            assert dependency in seen, f"{spec.name} references {dependency} before it exists"
        seen.add(spec.name)
    for step in (plan.diagnostic, plan.connectivity):
        if step is not None:
            assert set(step.depends_on) <= seen


def test_default_plan_order(plan):
    kinds = [spec.kind for spec in plan]
    assert kinds == [
        ResourceKind.RESOURCE_GROUP,
        ResourceKind.VIRTUAL_NETWORK,
        ResourceKind.PUBLIC_IP,
        ResourceKind.PUBLIC_IP,
        ResourceKind.VIRTUAL_NETWORK_GATEWAY,
        ResourceKind.VIRTUAL_NETWORK,
        ResourceKind.VIRTUAL_NETWORK_GATEWAY,
        ResourceKind.GATEWAY_CONNECTION,
        ResourceKind.NETWORK_WATCHER,
        ResourceKind.STORAGE_ACCOUNT,
        ResourceKind.STORAGE_CONTAINER,
    ]
    assert plan.resource_group == f"NetworkSampleRG{RUN_ID}"
    assert plan.connectivity is None


@pytest.mark.parametrize(
    "overrides",
    [
        {},
        {"troubleshooting": TroubleshootingConfig(enabled=False)},
        {"virtual_machines": VirtualMachineConfig(admin_username="azureuser", admin_password="Sup3rSecret!!")},
        {"resource_group_name": "AZNetworkRG000", "region": "westeurope", "gateway_sku": "VpnGw1"},
    ],
)
def test_dependencies_always_precede_dependents(overrides):
    plan = build_plan(PlanConfig(shared_key=SHARED_KEY, run_id=RUN_ID, **overrides))
    _assert_dependency_order(plan)


def test_network_definitions(plan):
    vnet1 = plan.get(f"vnet1-{RUN_ID}")
    vnet2 = plan.get(f"vnet2-{RUN_ID}")
    assert vnet1.parameters["address_prefixes"] == ["10.11.0.0/16"]
    assert vnet2.parameters["address_prefixes"] == ["10.41.0.0/16"]
    assert vnet1.parameters["subnets"] == [
        {"name": "GatewaySubnet", "address_prefix": "10.11.255.0/27"},
        {"name": "Subnet1", "address_prefix": "10.11.0.0/24"},
    ]
    assert vnet2.parameters["subnets"][1] == {"name": "Subnet2", "address_prefix": "10.41.0.0/24"}


def test_gateways_reference_their_network_and_public_ip(plan):
    gateway = plan.get(f"vpn-gateway1-{RUN_ID}")
    assert gateway.parameters["virtual_network"] == f"vnet1-{RUN_ID}"
    assert gateway.parameters["public_ip"] == f"pip1-{RUN_ID}"
    assert gateway.parameters["vpn_type"] == "RouteBased"
    assert gateway.parameters["enable_bgp"] is False
    assert set(gateway.depends_on) == {plan.resource_group, f"vnet1-{RUN_ID}", f"pip1-{RUN_ID}"}


def test_connection_and_reverse_share_the_key(plan):
    connection = plan.get(plan.diagnostic.connection)
    reverse = plan.diagnostic.reverse_connection
    assert connection.parameters["gateway1"] == reverse.parameters["gateway2"]
    assert connection.parameters["gateway2"] == reverse.parameters["gateway1"]
    assert connection.parameters["shared_key"] == reverse.parameters["shared_key"] == SHARED_KEY
    assert reverse.name not in plan.names()


def test_connectivity_check_only_with_virtual_machines(config_with_vms):
    plan = build_plan(config_with_vms)
    assert plan.connectivity is not None
    assert plan.connectivity.port == 22
    source = plan.get(plan.connectivity.source)
    assert source.parameters["subnet"] == "Subnet1"
    assert source.parameters["extensions"][0]["type"] == "NetworkWatcherAgentLinux"
    assert plan.get(plan.connectivity.destination).parameters["subnet"] == "Subnet2"


def test_accepts_a_mapping():
    plan = build_plan({"shared_key": SHARED_KEY, "run_id": RUN_ID})
    assert len(plan) == 11


def test_missing_shared_key():
    with pytest.raises(ConfigurationError):
        build_plan({"run_id": RUN_ID})


def test_overlapping_networks_rejected():
    overlapping = {
        "address_space": "10.11.0.0/16",
        "gateway_subnet": "10.11.254.0/27",
        "workload_subnet_name": "Subnet2",
        "workload_subnet": "10.11.1.0/24",
    }
    with pytest.raises(ConfigurationError, match="overlap"):
        build_plan({"shared_key": SHARED_KEY, "vnet2": overlapping})


@pytest.mark.parametrize(
    "vnet",
    [
        {"address_space": "10.11.0.0/33", "gateway_subnet": "10.11.255.0/27",
         "workload_subnet_name": "Subnet1", "workload_subnet": "10.11.0.0/24"},
        {"address_space": "10.11.0.0/16", "gateway_subnet": "10.12.255.0/27",
         "workload_subnet_name": "Subnet1", "workload_subnet": "10.11.0.0/24"},
        {"address_space": "10.11.0.0/16", "gateway_subnet": "10.11.0.0/27",
         "workload_subnet_name": "Subnet1", "workload_subnet": "10.11.0.0/24"},
    ],
)
def test_invalid_network_definitions(vnet):
    with pytest.raises(ConfigurationError):
        build_plan({"shared_key": SHARED_KEY, "vnet1": vnet})


class TestPlanValidation:
    """Plans assembled by hand still have to respect creation order."""

    def _group(self):
        return ResourceSpec(kind=ResourceKind.RESOURCE_GROUP, name="rg", location="eastus")

    def test_dependency_after_dependent(self):
        gateway = ResourceSpec(ResourceKind.VIRTUAL_NETWORK_GATEWAY, "gw", "eastus", depends_on=("rg", "vnet"))
        vnet = ResourceSpec(ResourceKind.VIRTUAL_NETWORK, "vnet", "eastus", depends_on=("rg",))
        plan = ProvisioningPlan(resource_group="rg", location="eastus", specs=(self._group(), gateway, vnet))
        with pytest.raises(ConfigurationError, match="gw depends on vnet"):
            plan.validate()

    def test_duplicate_names(self):
        vnet = ResourceSpec(ResourceKind.VIRTUAL_NETWORK, "vnet", "eastus", depends_on=("rg",))
        plan = ProvisioningPlan(resource_group="rg", location="eastus", specs=(self._group(), vnet, vnet))
        with pytest.raises(ConfigurationError, match="Duplicate"):
            plan.validate()

    def test_must_start_with_resource_group(self):
        vnet = ResourceSpec(ResourceKind.VIRTUAL_NETWORK, "vnet", "eastus")
        plan = ProvisioningPlan(resource_group="rg", location="eastus", specs=(vnet, self._group()))
        with pytest.raises(ConfigurationError):
            plan.validate()

    def test_empty_plan(self):
        with pytest.raises(ConfigurationError):
            ProvisioningPlan(resource_group="rg", location="eastus", specs=()).validate()

    def test_diagnostic_target_must_exist(self):
        reverse = ResourceSpec(ResourceKind.GATEWAY_CONNECTION, "c21", "eastus", depends_on=("rg",))
        target = DiagnosticTarget(
            connection="c12", network_watcher="nw", storage_account="sa", container="c",
            reverse_connection=reverse,
        )
        plan = ProvisioningPlan(resource_group="rg", location="eastus", specs=(self._group(),), diagnostic=target)
        with pytest.raises(ConfigurationError, match="troubleshooting"):
            plan.validate()
