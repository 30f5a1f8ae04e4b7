"""Plan configuration and credentials, read from the environment."""

import ipaddress
import os
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConfigurationError

GATEWAY_SUBNET_NAME = "GatewaySubnet"


def random_suffix(length: int = 6) -> str:
    return uuid.uuid4().hex[:length]


class VirtualNetworkConfig(BaseModel):
    address_space: str
    gateway_subnet: str
    workload_subnet_name: str = Field(..., min_length=1, max_length=80)
    workload_subnet: str

    @field_validator("address_space", "gateway_subnet", "workload_subnet")
    @classmethod
    def _valid_cidr(cls, value: str) -> str:
        try:
            ipaddress.ip_network(value, strict=True)
        except ValueError as e:
            raise ValueError(f"invalid CIDR block {value!r}: {e}")
        return value

    @model_validator(mode="after")
    def _subnets_inside_network(self):
        network = ipaddress.ip_network(self.address_space)
        gateway = ipaddress.ip_network(self.gateway_subnet)
        workload = ipaddress.ip_network(self.workload_subnet)
        for subnet in (gateway, workload):
            if not subnet.subnet_of(network):
                raise ValueError(f"subnet {subnet} is outside address space {network}")
        if gateway.overlaps(workload):
            raise ValueError(f"gateway subnet {gateway} overlaps workload subnet {workload}")
        return self


class VirtualMachineConfig(BaseModel):
    admin_username: str = Field(..., min_length=1)
    admin_password: str = Field(..., min_length=12)
    size: str = "Standard_B1s"
    image_publisher: str = "Canonical"
    image_offer: str = "UbuntuServer"
    image_sku: str = "16.04-LTS"
    image_version: str = "latest"


class TroubleshootingConfig(BaseModel):
    enabled: bool = True
    container_name: str = Field("troubleshooting", min_length=3, max_length=63)
    settle_timeout_seconds: float = Field(600.0, gt=0)
    initial_poll_interval_seconds: float = Field(5.0, gt=0)
    max_poll_interval_seconds: float = Field(60.0, gt=0)


class PlanConfig(BaseModel):
    region: str = "eastus"
    resource_group_name: Optional[str] = None
    run_id: str = Field(default_factory=random_suffix, min_length=1, max_length=12)
    vnet1: VirtualNetworkConfig = VirtualNetworkConfig(
        address_space="10.11.0.0/16",
        gateway_subnet="10.11.255.0/27",
        workload_subnet_name="Subnet1",
        workload_subnet="10.11.0.0/24",
    )
    vnet2: VirtualNetworkConfig = VirtualNetworkConfig(
        address_space="10.41.0.0/16",
        gateway_subnet="10.41.255.0/27",
        workload_subnet_name="Subnet2",
        workload_subnet="10.41.0.0/24",
    )
    gateway_sku: str = "Basic"
    shared_key: str = Field(..., min_length=1, max_length=128)
    virtual_machines: Optional[VirtualMachineConfig] = None
    troubleshooting: TroubleshootingConfig = TroubleshootingConfig()
    tags: Dict[str, str] = Field(default_factory=lambda: {"key": "value"})

    @field_validator("run_id")
    @classmethod
    def _lowercase_alnum(cls, value: str) -> str:
        # Storage account names only allow lowercase letters and digits
        if not value.isalnum() or value.lower() != value:
            raise ValueError("run_id must be lowercase alphanumeric")
        return value

    @property
    def group_name(self) -> str:
        return self.resource_group_name or f"NetworkSampleRG{self.run_id}"

    @classmethod
    def from_env(cls, **overrides) -> "PlanConfig":
        """Build a config from VNET_* / VM_* environment variables."""
        values = {}
        if os.getenv("VNET_REGION"):
            values["region"] = os.getenv("VNET_REGION")
        if os.getenv("VNET_RESOURCE_GROUP"):
            values["resource_group_name"] = os.getenv("VNET_RESOURCE_GROUP")
        if os.getenv("VNET_GATEWAY_SKU"):
            values["gateway_sku"] = os.getenv("VNET_GATEWAY_SKU")
        if os.getenv("VNET_SHARED_KEY"):
            values["shared_key"] = os.getenv("VNET_SHARED_KEY")

        username = os.getenv("VM_ADMIN_USERNAME")
        password = os.getenv("VM_ADMIN_PASSWORD")
        if username and password:
            values["virtual_machines"] = {"admin_username": username, "admin_password": password}

        settle = os.getenv("VNET_SETTLE_TIMEOUT")
        if settle:
            values["troubleshooting"] = {"settle_timeout_seconds": float(settle)}

        values.update(overrides)
        return load_plan_config(values)


def load_plan_config(values) -> PlanConfig:
    """Validate a mapping into a PlanConfig, raising ConfigurationError."""
    if isinstance(values, PlanConfig):
        return values
    try:
        return PlanConfig(**dict(values))
    except (ValueError, TypeError) as e:
        # pydantic's ValidationError is a ValueError
        raise ConfigurationError(f"Invalid plan configuration: {e}") from e


@dataclass(frozen=True)
class AzureCredentials:
    client_id: str
    client_secret: str
    tenant_id: str
    subscription_id: str

    ENV_VARS = ("CLIENT_ID", "CLIENT_SECRET", "TENANT_ID", "SUBSCRIPTION_ID")

    @classmethod
    def from_env(cls) -> "AzureCredentials":
        missing = [name for name in cls.ENV_VARS if not os.getenv(name)]
        if missing:
            raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}")
        return cls(
            client_id=os.getenv("CLIENT_ID"),
            client_secret=os.getenv("CLIENT_SECRET"),
            tenant_id=os.getenv("TENANT_ID"),
            subscription_id=os.getenv("SUBSCRIPTION_ID"),
        )


def operation_timeout_from_env() -> Optional[float]:
    value = os.getenv("OPERATION_TIMEOUT")
    return float(value) if value else None
