"""Translate between typed specs and middleware payloads.

Builders emit only the fields a spec actually sets, so the middleware
fills in its own defaults. Parsers are lenient: an attribute of the wrong
JSON type is read as unset rather than failing the whole refresh.
"""
from dataclasses import fields
from typing import Any, Dict, List, Optional

from tillstand.core.errors import MalformedResponseError
from tillstand.models.devices import (
    Device,
    DiskDevice,
    NICDevice,
    ProxyDevice,
    VMDevice,
    VM_DEVICE_TYPES,
)
from tillstand.models.instance import InstanceSpec, VMSpec

# Top-level VM fields accepted by vm.create / vm.update
VM_FIELDS = (
    "name", "memory", "description", "vcpus", "cores", "threads", "min_memory",
    "autostart", "time", "bootloader", "bootloader_ovmf", "cpu_mode", "cpu_model",
    "shutdown_timeout", "command_line_args",
)
# Fields the middleware accepts as null to clear a value
VM_NULLABLE_FIELDS = ("min_memory", "cpu_model")

_VM_DEVICE_BY_DTYPE = {cls.dtype: cls for cls in VM_DEVICE_TYPES}
_INSTANCE_DEVICE_BY_DTYPE = {
    cls.dtype: cls for cls in (DiskDevice, NICDevice, ProxyDevice)
}

_STRING_FIELDS = {
    "path", "type", "iotype", "serial", "nic_attach", "mac", "resolution", "bind",
    "password", "pptdev", "controller_type", "device", "name", "source",
    "destination", "network", "nic_type", "parent", "source_proto", "dest_proto",
}
_INT_FIELDS = {
    "logical_sectorsize", "physical_sectorsize", "size", "port", "web_port",
    "source_port", "dest_port",
}
_BOOL_FIELDS = {"boot", "trust_guest_rx_filters", "wait", "web", "readonly"}


# ----------------------------
# Response shape checks
# ----------------------------

def expect_list(method: str, result: Any) -> List[Dict[str, Any]]:
    """Require a list of records; ``None`` reads as empty."""
    if result is None:
        return []
    if not isinstance(result, list) or not all(isinstance(r, dict) for r in result):
        raise MalformedResponseError(method, f"expected a list of records, got {type(result).__name__}")
    return result


def expect_record(method: str, result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict):
        raise MalformedResponseError(method, f"expected a record, got {type(result).__name__}")
    return result


# ----------------------------
# Lenient attribute extraction
# ----------------------------

def string_attr(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


def int_attr(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    # bool is an int subclass; a boolean here is a type mismatch
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def bool_attr(data: Dict[str, Any], key: str) -> Optional[bool]:
    value = data.get(key)
    return value if isinstance(value, bool) else None


def _extract(data: Dict[str, Any], key: str) -> Any:
    if key in _INT_FIELDS:
        return int_attr(data, key)
    if key in _BOOL_FIELDS:
        return bool_attr(data, key)
    if key in _STRING_FIELDS:
        return string_attr(data, key)
    return data.get(key)


def _payload_fields(device: Device) -> List[str]:
    """Dataclass fields of ``device`` that go on the wire as attributes."""
    skip = {"order", "device_id"}
    return [f.name for f in fields(device) if f.name not in skip]


# ----------------------------
# VM devices
# ----------------------------

def build_vm_device_params(device: VMDevice, vm_id: int) -> Dict[str, Any]:
    """Build the ``vm.device.create`` payload for one VM device.

    Args:
        device: Typed VM device
        vm_id: Owning VM id

    Returns:
        ``{"vm": id, "attributes": {"dtype": ..., ...}}`` plus ``order`` when set
    """
    attributes: Dict[str, Any] = {"dtype": device.dtype}
    for name in _payload_fields(device):
        value = getattr(device, name)
        if value is not None:
            attributes[name] = value

    params: Dict[str, Any] = {"vm": vm_id, "attributes": attributes}
    if device.order is not None:
        params["order"] = device.order
    return params


def parse_vm_device(record: Dict[str, Any]) -> Optional[VMDevice]:
    """Map a ``vm.device.query`` record to a typed device.

    Returns None for device types Tillstand does not manage.
    """
    attributes = record.get("attributes") or {}
    cls = _VM_DEVICE_BY_DTYPE.get(string_attr(attributes, "dtype"))
    if cls is None:
        return None

    kwargs = {}
    for f in fields(cls):
        if f.name in ("order", "device_id", "exists"):
            continue
        kwargs[f.name] = _extract(attributes, f.name)
    kwargs["order"] = int_attr(record, "order")
    kwargs["device_id"] = int_attr(record, "id")
    return cls(**kwargs)


def parse_vm_devices(records: List[Dict[str, Any]]) -> List[VMDevice]:
    devices = []
    for record in records or []:
        device = parse_vm_device(record)
        if device is not None:
            devices.append(device)
    return devices


# ----------------------------
# Container instance devices
# ----------------------------

def build_instance_device(device: Device) -> Dict[str, Any]:
    """Build one entry of the ``devices`` list for virt.instance calls."""
    payload: Dict[str, Any] = {"dev_type": device.dtype}
    for name in _payload_fields(device):
        value = getattr(device, name)
        if value is None or value == "":
            continue
        payload[name] = value
    return payload


def parse_instance_device(record: Dict[str, Any]) -> Optional[Device]:
    """Map a ``virt.instance.device_list`` record to a typed device."""
    cls = _INSTANCE_DEVICE_BY_DTYPE.get(string_attr(record, "dev_type"))
    if cls is None:
        return None
    return cls(**{f.name: _extract(record, f.name) for f in fields(cls)})


def parse_instance_devices(records: List[Dict[str, Any]]) -> List[Device]:
    devices = []
    for record in records or []:
        device = parse_instance_device(record)
        if device is not None:
            devices.append(device)
    return devices


# ----------------------------
# Top-level resources
# ----------------------------

def build_vm_create_params(spec: VMSpec) -> Dict[str, Any]:
    params: Dict[str, Any] = {"name": spec.name, "memory": spec.memory}
    for name in VM_FIELDS:
        value = getattr(spec, name)
        if value is not None and name not in params:
            params[name] = value
    return params


def build_vm_update_params(plan: VMSpec, state: VMSpec) -> Dict[str, Any]:
    """Changed top-level fields only.

    A nullable field cleared in the plan is sent as an explicit ``None``.
    Other fields left unset in the plan keep their remote value.
    """
    params: Dict[str, Any] = {}
    for name in VM_FIELDS:
        wanted = getattr(plan, name)
        if wanted == getattr(state, name):
            continue
        if wanted is None and name not in VM_NULLABLE_FIELDS:
            continue
        params[name] = wanted
    return params


def build_instance_create_params(spec: InstanceSpec) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "name": spec.name,
        "image": spec.image,
        "instance_type": "CONTAINER",
        "storage_pool": spec.storage_pool,
    }
    if spec.autostart is not None:
        params["autostart"] = spec.autostart

    devices = [build_instance_device(device) for device in spec.devices()]
    if devices:
        params["devices"] = devices
    return params


def build_instance_update_params(plan: InstanceSpec, state: InstanceSpec) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if plan.autostart is not None and plan.autostart != state.autostart:
        params["autostart"] = plan.autostart
    return params


def parse_vm_record(record: Dict[str, Any], spec: VMSpec) -> None:
    """Copy ``vm.get_instance`` fields onto ``spec`` in place."""
    spec.id = int_attr(record, "id")
    spec.name = string_attr(record, "name") or spec.name
    for name in VM_FIELDS:
        if name == "name" or name not in record:
            continue
        setattr(spec, name, record[name])
    status = record.get("status") or {}
    spec.state = string_attr(status, "state")
    spec.display_available = bool_attr(record, "display_available")


def parse_instance_record(record: Dict[str, Any], spec: InstanceSpec) -> None:
    """Copy ``virt.instance.query`` fields onto ``spec`` in place.

    Image name and version are left alone: the middleware may report them
    with different casing than the config uses.
    """
    spec.id = string_attr(record, "id")
    spec.uuid = spec.id
    spec.name = string_attr(record, "name") or spec.name
    spec.storage_pool = string_attr(record, "storage_pool")
    spec.autostart = bool_attr(record, "autostart")
    spec.state = string_attr(record, "status")
