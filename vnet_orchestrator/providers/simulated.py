"""
Simulated Provider

An in-process control plane that mimics the management API closely enough to
exercise the whole orchestration flow without a cloud subscription. State is
kept in SQLite through SQLAlchemy, so a run can be inspected afterwards when a
file database is used.

Simulated behaviour:
- ARM-style resource ids, create-or-update keyed on (group, kind, name)
- Dependency validation (gateway subnet, public IP reuse, subnet membership)
- VNet-to-VNet connections report NotConnected until the reverse connection
  with the same shared key exists, then Connecting for `settle_polls` reads,
  then Connected
- Troubleshooting reports Healthy only for Connected connections
- Deleting a resource group cascades to everything in it
"""

import ipaddress
import logging
import re
from typing import Dict, Iterable, List, Optional

from sqlalchemy import create_engine, func
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import GATEWAY_SUBNET_NAME
from ..errors import ProviderOperationError
from ..resources import (
    ConnectivityResult,
    ResourceHandle,
    ResourceKind,
    ResourceSpec,
    TroubleshootingRequest,
    TroubleshootingResult,
)
from .base import Provider
from .models import (
    Base,
    Resource as ResourceModel,
    ResourceGroup as ResourceGroupModel,
    TroubleshootingRecord as TroubleshootingRecordModel,
)

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"
STORAGE_ACCOUNT_NAME = re.compile(r"^[a-z0-9]{3,24}$")
NETWORK_WATCHER_PUBLISHER = "Microsoft.Azure.NetworkWatcher"
PROBES_PER_CHECK = 10


class SimulatedProvider(Provider):
    def __init__(
        self,
        database_url: str = "sqlite:///:memory:",
        subscription_id: str = DEFAULT_SUBSCRIPTION,
        settle_polls: int = 0,
        fail_on: Iterable[str] = (),
        echo: bool = False,
    ):
        engine_args = {"echo": echo, "connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            engine_args["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_args)
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

        self.subscription_id = subscription_id
        self.settle_polls = settle_polls
        self.fail_on = set(fail_on)

        self._builders = {
            ResourceKind.PUBLIC_IP: self._build_public_ip,
            ResourceKind.VIRTUAL_NETWORK: self._build_virtual_network,
            ResourceKind.VIRTUAL_NETWORK_GATEWAY: self._build_gateway,
            ResourceKind.GATEWAY_CONNECTION: self._build_connection,
            ResourceKind.NETWORK_WATCHER: self._build_network_watcher,
            ResourceKind.STORAGE_ACCOUNT: self._build_storage_account,
            ResourceKind.STORAGE_CONTAINER: self._build_storage_container,
            ResourceKind.VIRTUAL_MACHINE: self._build_virtual_machine,
        }

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    def create_or_update(
        self,
        resource_group: str,
        spec: ResourceSpec,
        dependencies: Dict[str, ResourceHandle],
    ) -> ResourceHandle:
        if spec.kind == ResourceKind.RESOURCE_GROUP:
            return self._create_resource_group(spec)

        db = self.SessionLocal()
        try:
            if db.get(ResourceGroupModel, resource_group) is None:
                raise ProviderOperationError(
                    f"Resource group {resource_group} could not be found",
                    kind=spec.kind.value, name=spec.name, code="ResourceGroupNotFound",
                )

            row = self._find(db, resource_group, spec.kind, spec.name)
            properties = self._builders[spec.kind](db, resource_group, spec, row)

            if row is None:
                row = ResourceModel(
                    id=self._resource_id(resource_group, spec.kind, spec.name, spec.parameters),
                    resource_group=resource_group,
                    kind=spec.kind.value,
                    name=spec.name,
                    location=spec.location,
                )
                db.add(row)
            row.location = spec.location
            row.properties = properties

            if spec.name in self.fail_on:
                row.provisioning_state = "Failed"
                db.commit()
                raise ProviderOperationError(
                    f"Provisioning of {spec.kind.label} {spec.name} failed",
                    kind=spec.kind.value, name=spec.name, code="InternalServerError",
                    detail="Simulated failure",
                )

            row.provisioning_state = "Succeeded"
            if spec.kind == ResourceKind.GATEWAY_CONNECTION:
                db.flush()
                completes_pair = self._reverse_of(db, row) is not None
                row.settle_remaining = self.settle_polls if completes_pair else 0
            db.commit()
            db.refresh(row)
            logger.debug(f"{spec.kind.label} {spec.name} provisioned")
            return self._to_handle(db, row)
        finally:
            db.close()

    def get(self, resource_group: str, kind: ResourceKind, name: str) -> ResourceHandle:
        db = self.SessionLocal()
        try:
            if kind == ResourceKind.RESOURCE_GROUP:
                group = db.get(ResourceGroupModel, name)
                if group is None:
                    raise ProviderOperationError(
                        f"Resource group {name} could not be found",
                        kind=kind.value, name=name, code="ResourceGroupNotFound",
                    )
                return self._group_handle(group)

            row = self._require(db, resource_group, kind, name)
            handle = self._to_handle(db, row)

            if kind == ResourceKind.GATEWAY_CONNECTION:
                # Each read moves a settling pair one step closer to Connected
                for connection in (row, self._reverse_of(db, row)):
                    if connection is not None and connection.settle_remaining:
                        connection.settle_remaining -= 1
                db.commit()
            return handle
        finally:
            db.close()

    def delete_resource_group(self, name: str, timeout: Optional[float] = None):
        db = self.SessionLocal()
        try:
            group = db.get(ResourceGroupModel, name)
            if group is None:
                raise ProviderOperationError(
                    f"Resource group {name} could not be found",
                    kind=ResourceKind.RESOURCE_GROUP.value, name=name, code="ResourceGroupNotFound",
                )
            count = len(group.resources)
            db.delete(group)
            db.commit()
            logger.debug(f"Resource group {name} deleted with {count} resources")
        finally:
            db.close()

    def run_diagnostic(self, request: TroubleshootingRequest) -> TroubleshootingResult:
        target = request.target
        db = self.SessionLocal()
        try:
            self._require(db, request.network_watcher.resource_group, ResourceKind.NETWORK_WATCHER,
                          request.network_watcher.name)
            account = self._require(db, request.storage_account.resource_group,
                                    ResourceKind.STORAGE_ACCOUNT, request.storage_account.name)
            blob_endpoint = account.properties["primary_endpoints"]["blob"]
            if not request.storage_path.startswith(blob_endpoint):
                raise ProviderOperationError(
                    f"Storage path {request.storage_path} is not in account {account.name}",
                    kind=ResourceKind.STORAGE_ACCOUNT.value, name=account.name, code="InvalidStoragePath",
                )

            row = self._require(db, target.resource_group, target.kind, target.name)
            if target.kind == ResourceKind.GATEWAY_CONNECTION:
                status = self._connection_status(db, row)
                healthy = status == "Connected"
                details = [] if healthy else [
                    f"Connection status is {status}: the remote gateway has no matching connection back"
                ]
            elif target.kind == ResourceKind.VIRTUAL_NETWORK_GATEWAY:
                healthy = row.provisioning_state == "Succeeded"
                details = [] if healthy else [f"Gateway provisioning state is {row.provisioning_state}"]
            else:
                raise ProviderOperationError(
                    f"Troubleshooting is not supported for {target.kind.label}",
                    kind=target.kind.value, name=target.name, code="UnsupportedTarget",
                )

            code = "Healthy" if healthy else "UnHealthy"
            db.add(TroubleshootingRecordModel(
                resource_group=target.resource_group,
                target_id=row.id,
                storage_path=request.storage_path,
                code=code,
                details=details,
            ))
            db.commit()
            return TroubleshootingResult.from_code(code, details)
        finally:
            db.close()

    def list_connections(self, resource_group: str, gateway: str) -> List[ResourceHandle]:
        db = self.SessionLocal()
        try:
            self._require(db, resource_group, ResourceKind.VIRTUAL_NETWORK_GATEWAY, gateway)
            rows = self._connections(db, resource_group)
            return [
                self._to_handle(db, row)
                for row in rows
                if gateway in (row.properties.get("gateway1"), row.properties.get("gateway2"))
            ]
        finally:
            db.close()

    def check_connectivity(
        self,
        resource_group: str,
        network_watcher: str,
        source: ResourceHandle,
        destination: ResourceHandle,
        port: int = 22,
    ) -> ConnectivityResult:
        db = self.SessionLocal()
        try:
            self._require(db, resource_group, ResourceKind.NETWORK_WATCHER, network_watcher)
            src = self._require(db, source.resource_group, ResourceKind.VIRTUAL_MACHINE, source.name)
            dst = self._require(db, destination.resource_group, ResourceKind.VIRTUAL_MACHINE, destination.name)

            extensions = src.properties.get("extensions", [])
            if not any(ext.get("publisher") == NETWORK_WATCHER_PUBLISHER for ext in extensions):
                raise ProviderOperationError(
                    f"Virtual machine {src.name} has no network watcher agent",
                    kind=ResourceKind.VIRTUAL_MACHINE.value, name=src.name,
                    code="NetworkWatcherAgentNotFound",
                )

            src_network = src.properties["network"]["virtual_network_id"]
            dst_network = dst.properties["network"]["virtual_network_id"]
            if src_network == dst_network or self._networks_connected(db, resource_group, src_network, dst_network):
                return ConnectivityResult(status="Reachable", avg_latency_ms=2, probes_sent=PROBES_PER_CHECK)
            return ConnectivityResult(
                status="Unreachable", probes_sent=PROBES_PER_CHECK, probes_failed=PROBES_PER_CHECK
            )
        finally:
            db.close()

    def troubleshooting_records(self, resource_group: str) -> List[Dict]:
        """Stored troubleshooting output, oldest first."""
        db = self.SessionLocal()
        try:
            rows = (
                db.query(TroubleshootingRecordModel)
                .filter(TroubleshootingRecordModel.resource_group == resource_group)
                .order_by(TroubleshootingRecordModel.id)
                .all()
            )
            return [
                {"target_id": r.target_id, "storage_path": r.storage_path, "code": r.code, "details": r.details}
                for r in rows
            ]
        finally:
            db.close()

    def resource_count(self, resource_group: Optional[str] = None) -> int:
        db = self.SessionLocal()
        try:
            query = db.query(func.count(ResourceModel.id))
            if resource_group is not None:
                query = query.filter(ResourceModel.resource_group == resource_group)
            return query.scalar()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Builders: validate a spec and return the stored properties
    # ------------------------------------------------------------------

    def _build_public_ip(self, db: Session, resource_group, spec, existing):
        if existing is not None:
            ip_address = existing.properties["ip_address"]
        else:
            count = db.query(ResourceModel).filter(ResourceModel.kind == ResourceKind.PUBLIC_IP.value).count()
            ip_address = f"203.0.113.{count + 10}"
        return {
            "ip_address": ip_address,
            "allocation_method": spec.parameters.get("allocation_method", "Dynamic"),
            "sku": spec.parameters.get("sku", "Basic"),
        }

    def _build_virtual_network(self, db: Session, resource_group, spec, existing):
        try:
            prefixes = [ipaddress.ip_network(p) for p in spec.parameters.get("address_prefixes", [])]
            subnet_networks = [
                ipaddress.ip_network(s["address_prefix"]) for s in spec.parameters.get("subnets", [])
            ]
        except ValueError as e:
            raise self._invalid(spec, "InvalidAddressPrefix", str(e))
        if not prefixes:
            raise self._invalid(spec, "InvalidAddressPrefix", "A virtual network needs an address space")

        vnet_id = self._resource_id(resource_group, spec.kind, spec.name)
        subnets = []
        for subnet, network in zip(spec.parameters.get("subnets", []), subnet_networks):
            if not any(network.subnet_of(prefix) for prefix in prefixes):
                raise self._invalid(
                    spec, "NetcfgInvalidSubnet",
                    f"Subnet {subnet['name']} ({network}) is outside the address space",
                )
            subnets.append({
                "id": f"{vnet_id}/subnets/{subnet['name']}",
                "name": subnet["name"],
                "address_prefix": subnet["address_prefix"],
            })
        return {
            "address_space": {"address_prefixes": [str(p) for p in prefixes]},
            "subnets": subnets,
            "tags": spec.parameters.get("tags", {}),
        }

    def _build_gateway(self, db: Session, resource_group, spec, existing):
        params = spec.parameters
        vnet = self._require(db, resource_group, ResourceKind.VIRTUAL_NETWORK, params["virtual_network"])
        public_ip = self._require(db, resource_group, ResourceKind.PUBLIC_IP, params["public_ip"])

        gateway_subnet = next(
            (s for s in vnet.properties["subnets"] if s["name"] == GATEWAY_SUBNET_NAME), None
        )
        if gateway_subnet is None:
            raise self._invalid(
                spec, "GatewaySubnetNotFound",
                f"Virtual network {vnet.name} has no subnet named {GATEWAY_SUBNET_NAME}",
            )

        for other in self._rows(db, resource_group, ResourceKind.VIRTUAL_NETWORK_GATEWAY):
            if other.name == spec.name:
                continue
            used = [c["public_ip_address_id"] for c in other.properties["ip_configurations"]]
            if public_ip.id in used:
                raise self._invalid(
                    spec, "PublicIPAddressInUse",
                    f"Public IP {public_ip.name} is already used by gateway {other.name}",
                )

        sku = params.get("sku", "Basic")
        return {
            "sku": {"name": sku, "tier": sku},
            "gateway_type": params.get("gateway_type", "Vpn"),
            "vpn_type": params.get("vpn_type", "RouteBased"),
            "enable_bgp": params.get("enable_bgp", False),
            "virtual_network_id": vnet.id,
            "ip_configurations": [{
                "name": params.get("ip_configuration_name", f"{spec.name}-ipconfig"),
                "private_ip_allocation_method": "Dynamic",
                "public_ip_address_id": public_ip.id,
                "subnet_id": gateway_subnet["id"],
            }],
            "tags": params.get("tags", {}),
        }

    def _build_connection(self, db: Session, resource_group, spec, existing):
        params = spec.parameters
        gateway1 = self._require(db, resource_group, ResourceKind.VIRTUAL_NETWORK_GATEWAY, params["gateway1"])
        gateway2 = self._require(db, resource_group, ResourceKind.VIRTUAL_NETWORK_GATEWAY, params["gateway2"])
        if gateway1.id == gateway2.id:
            raise self._invalid(spec, "InvalidConnection", "A connection needs two distinct gateways")
        if not params.get("shared_key"):
            raise self._invalid(spec, "SharedKeyRequired", "VNet-to-VNet connections need a shared key")
        return {
            "connection_type": params.get("connection_type", "Vnet2Vnet"),
            "gateway1": gateway1.name,
            "gateway2": gateway2.name,
            "virtual_network_gateway1_id": gateway1.id,
            "virtual_network_gateway2_id": gateway2.id,
            "shared_key": params["shared_key"],
        }

    def _build_network_watcher(self, db: Session, resource_group, spec, existing):
        return {}

    def _build_storage_account(self, db: Session, resource_group, spec, existing):
        if not STORAGE_ACCOUNT_NAME.match(spec.name):
            raise self._invalid(
                spec, "AccountNameInvalid",
                f"{spec.name} must be 3-24 lowercase letters and digits",
            )
        return {
            "sku": {"name": spec.parameters.get("sku", "Standard_LRS")},
            "kind": spec.parameters.get("account_kind", "StorageV2"),
            "primary_endpoints": {"blob": f"https://{spec.name}.blob.core.windows.net/"},
        }

    def _build_storage_container(self, db: Session, resource_group, spec, existing):
        account = self._require(db, resource_group, ResourceKind.STORAGE_ACCOUNT,
                                spec.parameters["storage_account"])
        return {"storage_account_id": account.id, "public_access": "None"}

    def _build_virtual_machine(self, db: Session, resource_group, spec, existing):
        params = spec.parameters
        vnet = self._require(db, resource_group, ResourceKind.VIRTUAL_NETWORK, params["virtual_network"])
        subnet = next((s for s in vnet.properties["subnets"] if s["name"] == params["subnet"]), None)
        if subnet is None:
            raise self._invalid(spec, "SubnetNotFound", f"Subnet {params['subnet']} not in {vnet.name}")

        if existing is not None:
            private_ip = existing.properties["network"]["private_ip_address"]
        else:
            taken = [
                vm for vm in self._rows(db, resource_group, ResourceKind.VIRTUAL_MACHINE)
                if vm.properties["network"]["subnet_id"] == subnet["id"]
            ]
            # The first four addresses of every subnet are reserved
            private_ip = str(ipaddress.ip_network(subnet["address_prefix"]).network_address + 4 + len(taken))

        return {
            "vm_size": params.get("size"),
            "os_type": "Linux",
            "image": params.get("image", {}),
            "admin_username": params.get("admin_username"),
            "network": {
                "virtual_network_id": vnet.id,
                "subnet_id": subnet["id"],
                "private_ip_address": private_ip,
                "public_ip": bool(params.get("public_ip", False)),
            },
            "extensions": list(params.get("extensions", [])),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _create_resource_group(self, spec: ResourceSpec) -> ResourceHandle:
        db = self.SessionLocal()
        try:
            group = db.get(ResourceGroupModel, spec.name)
            if group is None:
                group = ResourceGroupModel(
                    name=spec.name,
                    id=f"/subscriptions/{self.subscription_id}/resourceGroups/{spec.name}",
                    location=spec.location,
                )
                db.add(group)
            group.tags = dict(spec.parameters.get("tags", {}))
            group.status = "Succeeded"
            db.commit()
            db.refresh(group)
            return self._group_handle(group)
        finally:
            db.close()

    def _group_handle(self, group: ResourceGroupModel) -> ResourceHandle:
        return ResourceHandle(
            id=group.id,
            kind=ResourceKind.RESOURCE_GROUP,
            name=group.name,
            resource_group=group.name,
            provisioning_state=group.status,
            properties={"location": group.location, "tags": dict(group.tags or {})},
        )

    def _resource_id(self, resource_group, kind, name, parameters=None) -> str:
        base = f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}/providers"
        if kind == ResourceKind.STORAGE_CONTAINER:
            account = (parameters or {}).get("storage_account", "")
            return f"{base}/Microsoft.Storage/storageAccounts/{account}/blobServices/default/containers/{name}"
        return f"{base}/{kind.arm_type}/{name}"

    def _find(self, db: Session, resource_group, kind, name) -> Optional[ResourceModel]:
        return (
            db.query(ResourceModel)
            .filter(
                ResourceModel.resource_group == resource_group,
                ResourceModel.kind == kind.value,
                ResourceModel.name == name,
            )
            .first()
        )

    def _require(self, db: Session, resource_group, kind, name) -> ResourceModel:
        row = self._find(db, resource_group, kind, name)
        if row is None:
            raise ProviderOperationError(
                f"The {kind.label} {name} was not found in resource group {resource_group}",
                kind=kind.value, name=name, code="ResourceNotFound",
            )
        return row

    def _rows(self, db: Session, resource_group, kind) -> List[ResourceModel]:
        return (
            db.query(ResourceModel)
            .filter(ResourceModel.resource_group == resource_group, ResourceModel.kind == kind.value)
            .order_by(ResourceModel.created_at, ResourceModel.name)
            .all()
        )

    def _connections(self, db: Session, resource_group) -> List[ResourceModel]:
        return self._rows(db, resource_group, ResourceKind.GATEWAY_CONNECTION)

    def _reverse_of(self, db: Session, row: ResourceModel) -> Optional[ResourceModel]:
        props = row.properties or {}
        for other in self._connections(db, row.resource_group):
            if other.id == row.id:
                continue
            if (other.properties.get("gateway1") == props.get("gateway2")
                    and other.properties.get("gateway2") == props.get("gateway1")):
                return other
        return None

    def _connection_status(self, db: Session, row: ResourceModel) -> str:
        reverse = self._reverse_of(db, row)
        if reverse is None or "Failed" in (row.provisioning_state, reverse.provisioning_state):
            return "NotConnected"
        if reverse.properties.get("shared_key") != row.properties.get("shared_key"):
            return "NotConnected"
        if max(row.settle_remaining or 0, reverse.settle_remaining or 0) > 0:
            return "Connecting"
        return "Connected"

    def _networks_connected(self, db: Session, resource_group, first_network, second_network) -> bool:
        gateways = {
            gw.name: gw.properties["virtual_network_id"]
            for gw in self._rows(db, resource_group, ResourceKind.VIRTUAL_NETWORK_GATEWAY)
        }
        for connection in self._connections(db, resource_group):
            ends = {
                gateways.get(connection.properties.get("gateway1")),
                gateways.get(connection.properties.get("gateway2")),
            }
            if ends == {first_network, second_network} and self._connection_status(db, connection) == "Connected":
                return True
        return False

    def _to_handle(self, db: Session, row: ResourceModel) -> ResourceHandle:
        kind = ResourceKind(row.kind)
        properties = dict(row.properties or {})
        if kind == ResourceKind.GATEWAY_CONNECTION:
            properties["connection_status"] = self._connection_status(db, row)
        return ResourceHandle(
            id=row.id,
            kind=kind,
            name=row.name,
            resource_group=row.resource_group,
            provisioning_state=row.provisioning_state,
            properties=properties,
        )

    @staticmethod
    def _invalid(spec: ResourceSpec, code: str, detail: str) -> ProviderOperationError:
        return ProviderOperationError(
            f"Invalid request for {spec.kind.label} {spec.name}",
            kind=spec.kind.value, name=spec.name, code=code, detail=detail,
        )
