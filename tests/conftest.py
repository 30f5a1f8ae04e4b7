import pytest

from vnet_orchestrator.config import PlanConfig, VirtualMachineConfig
from vnet_orchestrator.executor import ProvisioningExecutor
from vnet_orchestrator.planner import build_plan
from vnet_orchestrator.progress import ProgressLogger
from vnet_orchestrator.providers.simulated import SimulatedProvider
from vnet_orchestrator.teardown import SessionState

RUN_ID = "t3st01"
SHARED_KEY = "MySecretKey"


@pytest.fixture
def provider():
    return SimulatedProvider()


@pytest.fixture
def progress():
    return ProgressLogger()


@pytest.fixture
def session():
    return SessionState()


@pytest.fixture
def config():
    return PlanConfig(shared_key=SHARED_KEY, run_id=RUN_ID)


@pytest.fixture
def config_with_vms():
    return PlanConfig(
        shared_key=SHARED_KEY,
        run_id=RUN_ID,
        virtual_machines=VirtualMachineConfig(admin_username="tirekicker", admin_password="12NewPA$$w0rd!"),
    )


@pytest.fixture
def plan(config):
    return build_plan(config)


@pytest.fixture
def executor(provider, session, progress):
    return ProvisioningExecutor(provider, session, progress)


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
