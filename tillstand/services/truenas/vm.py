"""Virtual machine lifecycle (vm.* middleware namespace)."""
import threading
from typing import Any, Optional

from tillstand.core.config import TillstandConfig, get_config
from tillstand.core.device_reconciler import DeviceBackend, DeviceReconciler
from tillstand.core.errors import MalformedResponseError, NotFoundError, RPCError
from tillstand.core.logger import get_logger
from tillstand.core.power_engine import PowerDriver, PowerStateEngine
from tillstand.core.refresh import refresh_vm_spec
from tillstand.models.devices import VM_DEVICE_TYPES, VMDevice
from tillstand.models.instance import ObservedState, VMSpec
from tillstand.models.power import VM_STATES, PowerState
from tillstand.services.truenas.gateway import RPCGateway
from tillstand.services.truenas.params import (
    build_vm_create_params,
    build_vm_device_params,
    build_vm_update_params,
    expect_list,
    expect_record,
    int_attr,
    parse_vm_devices,
)

logger = get_logger(__name__)


class VMDeviceBackend(DeviceBackend):
    """vm.device.* calls for one VM. All are immediate calls."""

    def __init__(self, gateway: RPCGateway, vm_id: int):
        self.gateway = gateway
        self.vm_id = vm_id

    def create(self, device: VMDevice) -> Optional[int]:
        result = self.gateway.call("vm.device.create", build_vm_device_params(device, self.vm_id))
        if isinstance(result, dict):
            # id 0 is never assigned; treat it as absent
            return int_attr(result, "id") or None
        return None

    def update(self, device: VMDevice) -> None:
        params = build_vm_device_params(device, self.vm_id)
        self.gateway.call("vm.device.update", [device.device_id, params])

    def delete(self, identity: Any) -> None:
        self.gateway.call("vm.device.delete", identity)


class VMPowerDriver(PowerDriver):
    state_model = VM_STATES

    def __init__(self, gateway: RPCGateway, vm_id: int, name: str):
        super().__init__(f"VM {name!r}")
        self.gateway = gateway
        self.vm_id = vm_id

    def start(self) -> None:
        self.gateway.call("vm.start", self.vm_id)

    def stop(self, shutdown_timeout: Optional[int]) -> None:
        # vm.stop has no timeout argument; the VM's own shutdown_timeout applies
        self.gateway.call_and_wait(
            "vm.stop", [self.vm_id, {"force": False, "force_after_timeout": True}]
        )

    def query_state(self) -> str:
        record = expect_record("vm.get_instance", self.gateway.call("vm.get_instance", self.vm_id))
        return (record.get("status") or {}).get("state")


class VMResource:
    """Create, read, update and delete VMs with their devices and power state."""

    kind = "vm"
    device_types = VM_DEVICE_TYPES

    def __init__(
        self,
        gateway: RPCGateway,
        config: Optional[TillstandConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.gateway = gateway
        self.config = config or get_config()
        self.cancel_event = cancel_event

    def engine(self, vm_id: int, name: str) -> PowerStateEngine:
        return PowerStateEngine(
            VMPowerDriver(self.gateway, vm_id, name),
            config=self.config,
            cancel_event=self.cancel_event,
        )

    def reconciler(self, vm_id: int) -> DeviceReconciler:
        return DeviceReconciler(VMDeviceBackend(self.gateway, vm_id), VM_DEVICE_TYPES)

    def find_id(self, name: str) -> Optional[int]:
        """Look up a VM id by name (used for VMs not yet in the state file)."""
        records = expect_list("vm.query", self.gateway.call("vm.query", [["name", "=", name]]))
        if not records:
            return None
        return int_attr(records[0], "id")

    def observe(self, vm_id: int) -> Optional[ObservedState]:
        """Fetch the VM and its devices; None if the VM no longer exists."""
        try:
            result = self.gateway.call("vm.get_instance", vm_id)
        except RPCError as e:
            if e.is_not_found:
                return None
            raise
        record = expect_record("vm.get_instance", result)

        device_records = expect_list(
            "vm.device.query",
            self.gateway.call("vm.device.query", [[["vm", "=", vm_id]]]),
        )
        status = (record.get("status") or {}).get("state")
        return ObservedState(
            id=int_attr(record, "id"),
            status=status,
            devices=parse_vm_devices(device_records),
            record=record,
        )

    def create(self, spec: VMSpec) -> VMSpec:
        """Create the VM, attach its devices and converge its power state."""
        logger.info(f"Creating VM {spec.name}")
        result = expect_record("vm.create", self.gateway.call("vm.create", build_vm_create_params(spec)))
        vm_id = int_attr(result, "id")
        if vm_id is None:
            raise MalformedResponseError("vm.create", "response has no id")
        spec.id = vm_id

        # Nothing exists yet, so every device is a create
        self.reconciler(vm_id).reconcile(spec.devices(), [])

        state = (result.get("status") or {}).get("state") or PowerState.STOPPED.value
        self.engine(vm_id, spec.name).reconcile(state, spec.desired_state, spec.state_timeout)

        return self._refresh(spec, "after create")

    def read(self, prior: VMSpec) -> Optional[VMSpec]:
        vm_id = prior.id if prior.id is not None else self.find_id(prior.name)
        if vm_id is None:
            return None
        observed = self.observe(vm_id)
        if observed is None:
            logger.warning(f"VM {prior.name} (id {vm_id}) no longer exists")
            return None
        return refresh_vm_spec(prior, observed, self.config)

    def update(self, plan: VMSpec, state: VMSpec) -> VMSpec:
        """Apply top-level changes, devices, then power state."""
        vm_id = state.id
        plan.id = vm_id

        params = build_vm_update_params(plan, state)
        if params:
            logger.info(f"Updating VM {plan.name}: {', '.join(sorted(params))}")
            self.gateway.call("vm.update", [vm_id, params])

        self.reconciler(vm_id).reconcile(plan.devices(), state.devices())
        self.engine(vm_id, plan.name).converge(plan.desired_state, plan.state_timeout)

        return self._refresh(plan, "after update")

    def delete(self, state: VMSpec) -> None:
        vm_id = state.id
        observed = self.observe(vm_id)
        if observed is None:
            logger.info(f"VM {state.name} already gone")
            return

        if observed.status == PowerState.RUNNING.value:
            logger.info(f"Stopping VM {state.name} before delete")
            self.gateway.call_and_wait("vm.stop", [vm_id, {"force": True, "force_after_timeout": True}])

        logger.info(f"Deleting VM {state.name}")
        self.gateway.call("vm.delete", vm_id)

    def _refresh(self, spec: VMSpec, context: str) -> VMSpec:
        observed = self.observe(spec.id)
        if observed is None:
            raise NotFoundError(self.kind, spec.name, context)
        return refresh_vm_spec(spec, observed, self.config)
