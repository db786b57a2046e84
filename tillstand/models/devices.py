"""Device models for VMs and container instances.

Each device kind is a dataclass that knows three things about itself:

- ``identity_field``: the attribute holding the server-side identity
  (``name`` for container instances, ``device_id`` for VMs)
- ``comparable``: attributes whose change requires a remote update
- ``match_fields``: attributes used to recognise a device the server
  created without a caller-supplied identity
"""
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type


@dataclass
class Device:
    """Base class for all device kinds."""

    kind: ClassVar[str] = ""
    dtype: ClassVar[str] = ""
    identity_field: ClassVar[str] = "name"
    comparable: ClassVar[Tuple[str, ...]] = ()
    match_fields: ClassVar[Tuple[str, ...]] = ()

    @property
    def identity(self) -> Any:
        value = getattr(self, self.identity_field)
        if value is None or value == "":
            return None
        return value

    @identity.setter
    def identity(self, value: Any) -> None:
        setattr(self, self.identity_field, value)

    def has_identity(self) -> bool:
        return self.identity is not None

    def changed_fields(self, observed: "Device") -> List[str]:
        """Comparable fields where this (desired) device differs from ``observed``.

        Fields left unset on the desired side are skipped: the server fills
        them with computed defaults that must not read as drift.
        """
        changed = []
        for name in self.comparable:
            wanted = getattr(self, name)
            if wanted is None:
                continue
            if wanted != getattr(observed, name):
                changed.append(name)
        return changed

    def matches(self, observed: "Device") -> bool:
        """True if ``observed`` carries this device's identifying attributes."""
        if type(observed) is not type(self):
            return False
        keyed = [name for name in self.match_fields if getattr(self, name) is not None]
        if not keyed:
            return False
        return all(getattr(observed, name) == getattr(self, name) for name in keyed)

    def describe(self) -> str:
        parts = [
            f"{name}={getattr(self, name)}"
            for name in self.match_fields
            if getattr(self, name) is not None
        ]
        return f"{self.kind}({', '.join(parts)})"


# ----------------------------
# Container instance devices
# ----------------------------

def _strip_trailing_slash(path: Optional[str]) -> Optional[str]:
    if not path or path == "/":
        return path
    return path.rstrip("/") or "/"


@dataclass
class DiskDevice(Device):
    """Host path mounted into a container."""
    kind: ClassVar[str] = "disk"
    dtype: ClassVar[str] = "DISK"
    comparable: ClassVar[Tuple[str, ...]] = ("source", "destination", "readonly")
    match_fields: ClassVar[Tuple[str, ...]] = ("source", "destination")

    name: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    readonly: Optional[bool] = None

    def __post_init__(self):
        # The server drops trailing slashes; compare paths the way it stores them
        self.source = _strip_trailing_slash(self.source)
        self.destination = _strip_trailing_slash(self.destination)

    def matches(self, observed: Device) -> bool:
        # Both halves of the mapping are required
        if self.source is None or self.destination is None:
            return False
        return super().matches(observed)


@dataclass
class NICDevice(Device):
    """Network interface; attaches either to a managed network or a parent interface."""
    kind: ClassVar[str] = "nic"
    dtype: ClassVar[str] = "NIC"
    comparable: ClassVar[Tuple[str, ...]] = ("network", "nic_type", "parent")
    match_fields: ClassVar[Tuple[str, ...]] = ("network", "parent")

    name: Optional[str] = None
    network: Optional[str] = None
    nic_type: Optional[str] = None
    parent: Optional[str] = None

    def matches(self, observed: Device) -> bool:
        if type(observed) is not type(self):
            return False
        if self.network:
            return observed.network == self.network
        if self.parent:
            return observed.parent == self.parent
        return False


@dataclass
class ProxyDevice(Device):
    """Port forward from the host into the container."""
    kind: ClassVar[str] = "proxy"
    dtype: ClassVar[str] = "PROXY"
    comparable: ClassVar[Tuple[str, ...]] = (
        "source_proto", "source_port", "dest_proto", "dest_port",
    )
    match_fields: ClassVar[Tuple[str, ...]] = comparable

    name: Optional[str] = None
    source_proto: Optional[str] = None
    source_port: Optional[int] = None
    dest_proto: Optional[str] = None
    dest_port: Optional[int] = None

    def matches(self, observed: Device) -> bool:
        if any(getattr(self, name) is None for name in self.match_fields):
            return False
        return super().matches(observed)


# ----------------------------
# VM devices
# ----------------------------

@dataclass
class VMDevice(Device):
    """VM devices are addressed by a numeric id the server assigns."""
    identity_field: ClassVar[str] = "device_id"


@dataclass
class VMDisk(VMDevice):
    """Zvol-backed block device."""
    kind: ClassVar[str] = "disk"
    dtype: ClassVar[str] = "DISK"
    comparable: ClassVar[Tuple[str, ...]] = (
        "path", "type", "logical_sectorsize", "physical_sectorsize", "iotype", "serial",
    )
    match_fields: ClassVar[Tuple[str, ...]] = ("path",)

    path: Optional[str] = None
    type: Optional[str] = None
    logical_sectorsize: Optional[int] = None
    physical_sectorsize: Optional[int] = None
    iotype: Optional[str] = None
    serial: Optional[str] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


@dataclass
class VMRaw(VMDevice):
    """File-backed raw disk."""
    kind: ClassVar[str] = "raw"
    dtype: ClassVar[str] = "RAW"
    comparable: ClassVar[Tuple[str, ...]] = ("path", "type", "boot", "size")
    match_fields: ClassVar[Tuple[str, ...]] = ("path",)

    path: Optional[str] = None
    type: Optional[str] = None
    boot: Optional[bool] = None
    exists: Optional[bool] = None  # create-time flag, never echoed back
    size: Optional[int] = None
    logical_sectorsize: Optional[int] = None
    physical_sectorsize: Optional[int] = None
    iotype: Optional[str] = None
    serial: Optional[str] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


@dataclass
class VMCDROM(VMDevice):
    kind: ClassVar[str] = "cdrom"
    dtype: ClassVar[str] = "CDROM"
    comparable: ClassVar[Tuple[str, ...]] = ("path",)
    match_fields: ClassVar[Tuple[str, ...]] = ("path",)

    path: Optional[str] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


@dataclass
class VMNIC(VMDevice):
    kind: ClassVar[str] = "nic"
    dtype: ClassVar[str] = "NIC"
    comparable: ClassVar[Tuple[str, ...]] = (
        "type", "nic_attach", "mac", "trust_guest_rx_filters",
    )
    match_fields: ClassVar[Tuple[str, ...]] = ("mac", "nic_attach", "type")

    type: Optional[str] = None
    nic_attach: Optional[str] = None
    mac: Optional[str] = None
    trust_guest_rx_filters: Optional[bool] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


@dataclass
class VMDisplay(VMDevice):
    """SPICE display."""
    kind: ClassVar[str] = "display"
    dtype: ClassVar[str] = "DISPLAY"
    comparable: ClassVar[Tuple[str, ...]] = (
        "type", "resolution", "bind", "web", "wait", "port", "web_port",
    )
    match_fields: ClassVar[Tuple[str, ...]] = ("type", "port")

    type: Optional[str] = None
    resolution: Optional[str] = None
    port: Optional[int] = None
    web_port: Optional[int] = None
    bind: Optional[str] = None
    wait: Optional[bool] = None
    password: Optional[str] = None
    web: Optional[bool] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


@dataclass
class VMPCI(VMDevice):
    kind: ClassVar[str] = "pci"
    dtype: ClassVar[str] = "PCI"
    comparable: ClassVar[Tuple[str, ...]] = ("pptdev",)
    match_fields: ClassVar[Tuple[str, ...]] = ("pptdev",)

    pptdev: Optional[str] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


@dataclass
class VMUSB(VMDevice):
    kind: ClassVar[str] = "usb"
    dtype: ClassVar[str] = "USB"
    comparable: ClassVar[Tuple[str, ...]] = ("controller_type", "device")
    match_fields: ClassVar[Tuple[str, ...]] = ("device", "controller_type")

    controller_type: Optional[str] = None
    device: Optional[str] = None
    order: Optional[int] = None
    device_id: Optional[int] = None


# Reconciliation order per resource kind
INSTANCE_DEVICE_TYPES: Tuple[Type[Device], ...] = (DiskDevice, NICDevice, ProxyDevice)
VM_DEVICE_TYPES: Tuple[Type[Device], ...] = (
    VMDisk, VMRaw, VMCDROM, VMNIC, VMDisplay, VMPCI, VMUSB,
)


def device_from_dict(cls: Type[Device], data: Dict[str, Any]) -> Device:
    """Build a device of ``cls`` from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{key: value for key, value in (data or {}).items() if key in known})
