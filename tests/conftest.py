"""Shared test fixtures for Tillstand tests."""
import copy
import itertools

import pytest

from tillstand.core.config import TillstandConfig, set_config
from tillstand.core.errors import RPCError
from tillstand.services.truenas.gateway import RPCGateway


class FakeGateway(RPCGateway):
    """Records every call and answers from per-method handlers.

    A handler is either a plain value (returned as a copy) or a callable
    taking the params. Unhandled methods return None.
    """

    def __init__(self, handlers=None):
        super().__init__(mock=False)
        self.handlers = dict(handlers or {})
        self.calls = []

    def on(self, method, handler):
        self.handlers[method] = handler
        return self

    def call(self, method, params=None):
        return self._dispatch(method, params, job=False)

    def call_and_wait(self, method, params=None):
        return self._dispatch(method, params, job=True)

    def _dispatch(self, method, params, job):
        self.calls.append((method, copy.deepcopy(params), job))
        handler = self.handlers.get(method)
        if handler is None:
            return None
        if callable(handler):
            return handler(params)
        return copy.deepcopy(handler)

    @property
    def methods(self):
        return [method for method, _, _ in self.calls]

    def calls_to(self, method):
        return [(params, job) for m, params, job in self.calls if m == method]

    def mutating_methods(self):
        """Methods called, minus read-only queries."""
        readonly = (".query", ".get_instance", ".device_list")
        return [m for m in self.methods if not m.endswith(readonly)]


def _not_found(method, what):
    return RPCError(method, f"{what} does not exist", code="ENOENT")


class FakeTrueNAS:
    """In-memory middleware answering vm.*, virt.instance.* and app.* calls."""

    def __init__(self, gateway: FakeGateway):
        self.gateway = gateway
        self.vms = {}
        self.vm_devices = {}
        self.instances = {}
        self.instance_devices = {}
        self.apps = {}
        self._vm_ids = itertools.count(1)
        self._device_ids = itertools.count(10)
        self._device_names = itertools.count(0)
        # Status a new instance reports right after create
        self.instance_create_status = "RUNNING"

        for method, handler in {
            "vm.query": self.vm_query,
            "vm.create": self.vm_create,
            "vm.get_instance": self.vm_get_instance,
            "vm.update": self.vm_update,
            "vm.delete": self.vm_delete,
            "vm.start": self.vm_start,
            "vm.stop": self.vm_stop,
            "vm.device.query": self.vm_device_query,
            "vm.device.create": self.vm_device_create,
            "vm.device.update": self.vm_device_update,
            "vm.device.delete": self.vm_device_delete,
            "virt.instance.query": self.instance_query,
            "virt.instance.create": self.instance_create,
            "virt.instance.update": self.instance_update,
            "virt.instance.delete": self.instance_delete,
            "virt.instance.start": self.instance_start,
            "virt.instance.stop": self.instance_stop,
            "virt.instance.device_list": self.instance_device_list,
            "virt.instance.device_add": self.instance_device_add,
            "virt.instance.device_update": self.instance_device_update,
            "virt.instance.device_delete": self.instance_device_delete,
            "app.query": self.app_query,
            "app.start": self.app_start,
            "app.stop": self.app_stop,
        }.items():
            gateway.on(method, handler)

    # ---- VMs ----

    def vm_query(self, filters):
        name = filters[0][2]
        return [copy.deepcopy(vm) for vm in self.vms.values() if vm["name"] == name]

    def vm_create(self, params):
        vm_id = next(self._vm_ids)
        record = {
            "id": vm_id,
            "cpu_mode": "CUSTOM",
            "cpu_model": None,
            "min_memory": None,
            "time": "LOCAL",
            **params,
            "status": {"state": "STOPPED"},
            "display_available": False,
        }
        self.vms[vm_id] = record
        return copy.deepcopy(record)

    def vm_get_instance(self, vm_id):
        if vm_id not in self.vms:
            raise _not_found("vm.get_instance", f"VM {vm_id}")
        return copy.deepcopy(self.vms[vm_id])

    def vm_update(self, params):
        vm_id, changes = params
        self.vms[vm_id].update(changes)
        return copy.deepcopy(self.vms[vm_id])

    def vm_delete(self, vm_id):
        self.vms.pop(vm_id)
        for device_id in [d for d, rec in self.vm_devices.items() if rec["vm"] == vm_id]:
            self.vm_devices.pop(device_id)
        return True

    def vm_start(self, vm_id):
        self.vms[vm_id]["status"]["state"] = "RUNNING"

    def vm_stop(self, params):
        self.vms[params[0]]["status"]["state"] = "STOPPED"

    def vm_device_query(self, filters):
        vm_id = filters[0][0][2]
        return [copy.deepcopy(d) for d in self.vm_devices.values() if d["vm"] == vm_id]

    def vm_device_create(self, params):
        device_id = next(self._device_ids)
        attributes = dict(params["attributes"])
        attributes.pop("exists", None)
        record = {
            "id": device_id,
            "vm": params["vm"],
            "order": params.get("order", 1000 + device_id),
            "attributes": attributes,
        }
        self.vm_devices[device_id] = record
        return copy.deepcopy(record)

    def vm_device_update(self, params):
        device_id, changes = params
        if device_id not in self.vm_devices:
            raise _not_found("vm.device.update", f"Device {device_id}")
        attributes = dict(changes["attributes"])
        attributes.pop("exists", None)
        self.vm_devices[device_id]["attributes"] = attributes
        return copy.deepcopy(self.vm_devices[device_id])

    def vm_device_delete(self, device_id):
        if device_id not in self.vm_devices:
            raise _not_found("vm.device.delete", f"Device {device_id}")
        self.vm_devices.pop(device_id)
        return True

    # ---- Container instances ----

    def instance_query(self, filters):
        name = filters[0][2]
        return [copy.deepcopy(i) for i in self.instances.values() if i["name"] == name]

    def _name_device(self, device):
        device = dict(device)
        if not device.get("name"):
            device["name"] = f"{device['dev_type'].lower()}{next(self._device_names)}"
        return device

    def instance_create(self, params):
        name = params["name"]
        self.instances[name] = {
            "id": name,
            "name": name,
            "type": "CONTAINER",
            "status": self.instance_create_status,
            "autostart": params.get("autostart", True),
            "storage_pool": params.get("storage_pool") or "tank",
            "image": {"os": params["image"].split("/")[0].capitalize()},
        }
        # The server always adds a root disk
        devices = [{"dev_type": "DISK", "name": "root", "source": None, "destination": "/"}]
        devices += [self._name_device(d) for d in params.get("devices", [])]
        self.instance_devices[name] = devices
        return None

    def instance_update(self, params):
        instance_id, changes = params
        self.instances[instance_id].update(changes)

    def instance_delete(self, instance_id):
        if instance_id not in self.instances:
            raise _not_found("virt.instance.delete", f"Instance {instance_id}")
        self.instances.pop(instance_id)
        self.instance_devices.pop(instance_id, None)
        return True

    def instance_start(self, instance_id):
        self.instances[instance_id]["status"] = "RUNNING"
        return True

    def instance_stop(self, params):
        self.instances[params[0]]["status"] = "STOPPED"
        return True

    def instance_device_list(self, instance_id):
        return copy.deepcopy(self.instance_devices.get(instance_id, []))

    def instance_device_add(self, params):
        instance_id, device = params
        self.instance_devices[instance_id].append(self._name_device(device))
        return True

    def instance_device_update(self, params):
        instance_id, device = params
        devices = self.instance_devices[instance_id]
        for i, existing in enumerate(devices):
            if existing["name"] == device["name"]:
                devices[i] = dict(device)
                return True
        raise _not_found("virt.instance.device_update", f"Device {device['name']}")

    def instance_device_delete(self, params):
        instance_id, name = params
        devices = self.instance_devices[instance_id]
        self.instance_devices[instance_id] = [d for d in devices if d["name"] != name]
        return True

    # ---- Apps ----

    def app_query(self, filters):
        name = filters[0][2]
        return [copy.deepcopy(a) for a in self.apps.values() if a["name"] == name]

    def app_start(self, name):
        self.apps[name]["state"] = "RUNNING"

    def app_stop(self, name):
        self.apps[name]["state"] = "STOPPED"


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


class FakeCancelEvent:
    """Stand-in for threading.Event whose wait advances a FakeClock."""

    def __init__(self, clock, cancel_after=None):
        self.clock = clock
        self.cancel_after = cancel_after
        self.waits = []

    def wait(self, timeout=None):
        if self.cancel_after is not None and len(self.waits) >= self.cancel_after:
            return True
        self.waits.append(timeout)
        self.clock.now += timeout
        return False

    def set(self):
        self.cancel_after = len(self.waits)


@pytest.fixture(autouse=True)
def fast_config():
    """Short poll settings so nothing in tests sleeps for long."""
    config = TillstandConfig(
        poll_interval=0.01,
        min_poll_interval=0.01,
        default_state_timeout=2,
        default_shutdown_timeout=30,
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def truenas(gateway):
    return FakeTrueNAS(gateway)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cancel_event(clock):
    return FakeCancelEvent(clock)
