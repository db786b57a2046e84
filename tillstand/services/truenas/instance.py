"""Container instance lifecycle (virt.instance.* middleware namespace).

Every mutating virt.instance call runs as a middleware job. Devices are
addressed by name; names the caller leaves out are generated by the
server and recovered afterwards with the identity matcher.
"""
import threading
from typing import Any, Dict, List, Optional

from tillstand.core.config import TillstandConfig, get_config
from tillstand.core.device_reconciler import DeviceBackend, DeviceReconciler
from tillstand.core.errors import NotFoundError, RPCError
from tillstand.core.identity_matcher import match_created_devices
from tillstand.core.logger import get_logger
from tillstand.core.power_engine import PowerDriver, PowerStateEngine
from tillstand.core.refresh import refresh_instance_spec
from tillstand.models.devices import INSTANCE_DEVICE_TYPES, Device
from tillstand.models.instance import InstanceSpec, ObservedState
from tillstand.models.power import INSTANCE_STATES, PowerState
from tillstand.services.truenas.gateway import RPCGateway
from tillstand.services.truenas.params import (
    build_instance_create_params,
    build_instance_device,
    build_instance_update_params,
    expect_list,
    parse_instance_devices,
    string_attr,
)

logger = get_logger(__name__)


def query_instance(gateway: RPCGateway, name: str) -> Optional[Dict[str, Any]]:
    """Return the instance record for ``name``, or None when it does not exist."""
    records = expect_list(
        "virt.instance.query",
        gateway.call("virt.instance.query", [["name", "=", name]]),
    )
    return records[0] if records else None


class InstanceDeviceBackend(DeviceBackend):
    def __init__(self, gateway: RPCGateway, instance_id: str):
        self.gateway = gateway
        self.instance_id = instance_id

    def create(self, device: Device) -> None:
        self.gateway.call_and_wait(
            "virt.instance.device_add", [self.instance_id, build_instance_device(device)]
        )
        # Names come from the spec or from matching after the fact
        return None

    def update(self, device: Device) -> None:
        self.gateway.call_and_wait(
            "virt.instance.device_update", [self.instance_id, build_instance_device(device)]
        )

    def delete(self, identity: Any) -> None:
        self.gateway.call_and_wait("virt.instance.device_delete", [self.instance_id, identity])


class InstancePowerDriver(PowerDriver):
    state_model = INSTANCE_STATES

    def __init__(self, gateway: RPCGateway, instance_id: str, name: str):
        super().__init__(f"container {name!r}")
        self.gateway = gateway
        self.instance_id = instance_id
        self.name = name

    def start(self) -> None:
        self.gateway.call_and_wait("virt.instance.start", self.instance_id)

    def stop(self, shutdown_timeout: Optional[int]) -> None:
        self.gateway.call_and_wait(
            "virt.instance.stop", [self.instance_id, {"timeout": shutdown_timeout}]
        )

    def query_state(self) -> str:
        record = query_instance(self.gateway, self.name)
        if record is None:
            raise NotFoundError("container", self.name)
        return string_attr(record, "status")


class InstanceResource:
    """Create, read, update and delete container instances."""

    kind = "instance"
    device_types = INSTANCE_DEVICE_TYPES

    def __init__(
        self,
        gateway: RPCGateway,
        config: Optional[TillstandConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.gateway = gateway
        self.config = config or get_config()
        self.cancel_event = cancel_event

    def engine(self, spec: InstanceSpec) -> PowerStateEngine:
        return PowerStateEngine(
            InstancePowerDriver(self.gateway, spec.id, spec.name),
            config=self.config,
            cancel_event=self.cancel_event,
        )

    def reconciler(self, instance_id: str) -> DeviceReconciler:
        return DeviceReconciler(InstanceDeviceBackend(self.gateway, instance_id), INSTANCE_DEVICE_TYPES)

    def shutdown_timeout(self, spec: InstanceSpec) -> int:
        if spec.shutdown_timeout is not None:
            return spec.shutdown_timeout
        return self.config.default_shutdown_timeout

    def list_devices(self, instance_id: str) -> List[Device]:
        records = expect_list(
            "virt.instance.device_list",
            self.gateway.call("virt.instance.device_list", instance_id),
        )
        return parse_instance_devices(records)

    def observe(self, name: str) -> Optional[ObservedState]:
        record = query_instance(self.gateway, name)
        if record is None:
            return None
        instance_id = string_attr(record, "id")
        return ObservedState(
            id=instance_id,
            status=string_attr(record, "status"),
            devices=self.list_devices(instance_id),
            record=record,
        )

    def create(self, spec: InstanceSpec) -> InstanceSpec:
        """Create the instance with its devices, then converge power state."""
        logger.info(f"Creating container {spec.name} from {spec.image}")
        self.gateway.call_and_wait("virt.instance.create", build_instance_create_params(spec))

        record = query_instance(self.gateway, spec.name)
        if record is None:
            raise NotFoundError("container", spec.name, "after create")
        spec.id = string_attr(record, "id")

        if spec.devices():
            match_created_devices(spec.devices(), self.list_devices(spec.id))

        self.engine(spec).reconcile(
            string_attr(record, "status"),
            spec.desired_state,
            spec.state_timeout,
            self.shutdown_timeout(spec),
        )

        return self._refresh(spec, "after create")

    def read(self, prior: InstanceSpec) -> Optional[InstanceSpec]:
        observed = self.observe(prior.name)
        if observed is None:
            return None
        return refresh_instance_spec(prior, observed, self.config)

    def update(self, plan: InstanceSpec, state: InstanceSpec) -> InstanceSpec:
        plan.id = state.id

        params = build_instance_update_params(plan, state)
        if params:
            logger.info(f"Updating container {plan.name}: {', '.join(sorted(params))}")
            self.gateway.call_and_wait("virt.instance.update", [plan.id, params])

        unnamed = [d for d in plan.devices() if not d.has_identity()]
        self.reconciler(plan.id).reconcile(plan.devices(), state.devices())
        if unnamed:
            match_created_devices(plan.devices(), self.list_devices(plan.id))

        self.engine(plan).converge(
            plan.desired_state, plan.state_timeout, self.shutdown_timeout(plan)
        )

        return self._refresh(plan, "after update")

    def delete(self, state: InstanceSpec) -> None:
        record = query_instance(self.gateway, state.name)
        if record is None:
            logger.info(f"Container {state.name} already gone")
            return
        instance_id = string_attr(record, "id")

        if string_attr(record, "status") == PowerState.RUNNING.value:
            logger.info(f"Stopping container {state.name} before delete")
            self.gateway.call_and_wait(
                "virt.instance.stop", [instance_id, {"timeout": self.shutdown_timeout(state)}]
            )

        logger.info(f"Deleting container {state.name}")
        try:
            self.gateway.call_and_wait("virt.instance.delete", instance_id)
        except RPCError as e:
            if e.is_not_found:
                return
            raise

    def _refresh(self, spec: InstanceSpec, context: str) -> InstanceSpec:
        observed = self.observe(spec.name)
        if observed is None:
            raise NotFoundError("container", spec.name, context)
        return refresh_instance_spec(spec, observed, self.config)
