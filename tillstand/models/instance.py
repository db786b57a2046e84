"""Desired-state specs for VMs, container instances and apps."""
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from tillstand.models.devices import (
    Device,
    DiskDevice,
    NICDevice,
    ProxyDevice,
    VMCDROM,
    VMDisk,
    VMDisplay,
    VMNIC,
    VMPCI,
    VMRaw,
    VMUSB,
    device_from_dict,
)
from tillstand.models.power import PowerState


@dataclass
class ObservedState:
    """A fresh snapshot of a remote resource. Replaced wholesale on every read."""
    id: Any
    status: str
    devices: List[Device] = field(default_factory=list)
    record: Dict[str, Any] = field(default_factory=dict)


class _SpecMixin:
    """Shared (de)serialization for specs with per-kind device lists."""

    # (attribute, device class) pairs in reconciliation order
    DEVICE_LISTS: Tuple[Tuple[str, type], ...] = ()

    def devices(self) -> List[Device]:
        """All devices of every kind, in reconciliation order."""
        result: List[Device] = []
        for attr, _ in self.DEVICE_LISTS:
            result.extend(getattr(self, attr))
        return result

    def set_devices(self, devices: List[Device]) -> None:
        """Partition ``devices`` back into the per-kind lists."""
        for attr, cls in self.DEVICE_LISTS:
            setattr(self, attr, [d for d in devices if type(d) is cls])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        data = dict(data or {})
        device_attrs = {attr: dev_cls for attr, dev_cls in cls.DEVICE_LISTS}
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in device_attrs:
                kwargs[key] = [device_from_dict(device_attrs[key], item) for item in value or []]
            else:
                kwargs[key] = value
        return cls(**kwargs)


@dataclass
class InstanceSpec(_SpecMixin):
    """A container instance (virt.instance)."""

    DEVICE_LISTS = (
        ("disks", DiskDevice),
        ("nics", NICDevice),
        ("proxies", ProxyDevice),
    )

    name: str
    image_name: Optional[str] = None
    image_version: Optional[str] = None
    storage_pool: Optional[str] = None
    autostart: Optional[bool] = None

    # Caller-only knobs; no remote equivalent
    desired_state: Optional[str] = PowerState.RUNNING.value
    state_timeout: Optional[int] = None
    shutdown_timeout: Optional[int] = None

    disks: List[DiskDevice] = field(default_factory=list)
    nics: List[NICDevice] = field(default_factory=list)
    proxies: List[ProxyDevice] = field(default_factory=list)

    # Computed from the remote side
    id: Optional[str] = None
    state: Optional[str] = None
    uuid: Optional[str] = None

    @property
    def image(self) -> str:
        return f"{self.image_name}/{self.image_version}"


@dataclass
class VMSpec(_SpecMixin):
    """A QEMU/KVM virtual machine."""

    DEVICE_LISTS = (
        ("disks", VMDisk),
        ("raws", VMRaw),
        ("cdroms", VMCDROM),
        ("nics", VMNIC),
        ("displays", VMDisplay),
        ("pcis", VMPCI),
        ("usbs", VMUSB),
    )

    name: str
    memory: int = 512
    description: Optional[str] = None
    vcpus: Optional[int] = None
    cores: Optional[int] = None
    threads: Optional[int] = None
    min_memory: Optional[int] = None
    autostart: Optional[bool] = None
    time: Optional[str] = None
    bootloader: Optional[str] = None
    bootloader_ovmf: Optional[str] = None
    cpu_mode: Optional[str] = None
    cpu_model: Optional[str] = None
    shutdown_timeout: Optional[int] = None
    command_line_args: Optional[str] = None

    desired_state: Optional[str] = PowerState.STOPPED.value
    state_timeout: Optional[int] = None

    disks: List[VMDisk] = field(default_factory=list)
    raws: List[VMRaw] = field(default_factory=list)
    cdroms: List[VMCDROM] = field(default_factory=list)
    nics: List[VMNIC] = field(default_factory=list)
    displays: List[VMDisplay] = field(default_factory=list)
    pcis: List[VMPCI] = field(default_factory=list)
    usbs: List[VMUSB] = field(default_factory=list)

    id: Optional[int] = None
    state: Optional[str] = None
    display_available: Optional[bool] = None


@dataclass
class AppSpec(_SpecMixin):
    """An installed app whose power state is managed."""

    name: str
    desired_state: Optional[str] = PowerState.RUNNING.value
    state_timeout: Optional[int] = None
    state: Optional[str] = None
