"""Pydantic models for tillstand.yml."""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tillstand.models.power import DESIRABLE_STATES, normalize_state


def _check_desired_state(value, default):
    if value is None:
        return default
    state = normalize_state(value)
    if state not in DESIRABLE_STATES:
        raise ValueError(
            f"desired_state must be one of {', '.join(DESIRABLE_STATES)}. Got: {value}"
        )
    return state


class _Strict(BaseModel):
    model_config = ConfigDict(extra='forbid')


# ----------------------------
# Container instances
# ----------------------------

class ContainerDiskConfig(_Strict):
    name: Optional[str] = None
    source: str
    destination: str
    readonly: Optional[bool] = None

    @field_validator('destination')
    @classmethod
    def validate_destination(cls, v):
        if not v.startswith('/'):
            raise ValueError(f"Disk destination must be absolute (start with /). Got: {v}")
        return v


class ContainerNICConfig(_Strict):
    name: Optional[str] = None
    network: Optional[str] = None
    nic_type: Optional[Literal["BRIDGED", "MACVLAN"]] = None
    parent: Optional[str] = None

    @model_validator(mode='after')
    def validate_attachment(self) -> 'ContainerNICConfig':
        """A NIC attaches to a managed network or to a parent interface, not both."""
        if self.network and self.parent:
            raise ValueError("NIC takes either network or parent, not both")
        if not self.network and not self.parent:
            raise ValueError("NIC requires network or parent")
        return self


class ProxyConfig(_Strict):
    name: Optional[str] = None
    source_proto: Literal["TCP", "UDP"]
    source_port: int = Field(..., ge=1, le=65535)
    dest_proto: Literal["TCP", "UDP"]
    dest_port: int = Field(..., ge=1, le=65535)


class ContainerConfig(_Strict):
    """A container instance."""

    name: str = Field(..., min_length=1)
    image_name: str = Field(..., min_length=1, description="Image name, e.g. alpine")
    image_version: str = Field(..., min_length=1, description="Image version, e.g. 3.20")
    storage_pool: Optional[str] = None
    autostart: Optional[bool] = None
    desired_state: Optional[str] = Field(None, validate_default=True)
    state_timeout: Optional[int] = Field(None, ge=1)
    shutdown_timeout: Optional[int] = Field(None, ge=0)
    disks: List[ContainerDiskConfig] = Field(default_factory=list)
    nics: List[ContainerNICConfig] = Field(default_factory=list)
    proxies: List[ProxyConfig] = Field(default_factory=list)

    @field_validator('image_version', mode='before')
    @classmethod
    def coerce_version(cls, v):
        # YAML reads 3.20 as the float 3.2
        if isinstance(v, float):
            raise ValueError(f"Quote image_version so YAML keeps it a string. Got: {v}")
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('desired_state', mode='before')
    @classmethod
    def validate_desired_state(cls, v):
        return _check_desired_state(v, "RUNNING")

    @model_validator(mode='after')
    def validate_device_names(self) -> 'ContainerConfig':
        """Device names are unique across disks, nics and proxies."""
        seen = set()
        for device in [*self.disks, *self.nics, *self.proxies]:
            if not device.name:
                continue
            if device.name in seen:
                raise ValueError(f"Duplicate device name '{device.name}' in container {self.name}")
            seen.add(device.name)
        return self


# ----------------------------
# Virtual machines
# ----------------------------

class _VMDeviceConfig(_Strict):
    order: Optional[int] = Field(None, ge=1000)
    device_id: Optional[int] = Field(None, ge=1)


class VMDiskConfig(_VMDeviceConfig):
    path: str
    type: Optional[Literal["AHCI", "VIRTIO"]] = None
    logical_sectorsize: Optional[Literal[512, 4096]] = None
    physical_sectorsize: Optional[Literal[512, 4096]] = None
    iotype: Optional[Literal["NATIVE", "THREADS", "IO_URING"]] = None
    serial: Optional[str] = None


class VMRawConfig(VMDiskConfig):
    boot: Optional[bool] = None
    exists: Optional[bool] = None
    size: Optional[int] = Field(None, ge=1)


class VMCDROMConfig(_VMDeviceConfig):
    path: str


class VMNICConfig(_VMDeviceConfig):
    type: Optional[Literal["E1000", "VIRTIO"]] = None
    nic_attach: Optional[str] = None
    mac: Optional[str] = Field(None, pattern=r'^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$')
    trust_guest_rx_filters: Optional[bool] = None


class VMDisplayConfig(_VMDeviceConfig):
    type: Optional[Literal["SPICE"]] = None
    resolution: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    web_port: Optional[int] = Field(None, ge=1, le=65535)
    bind: Optional[str] = None
    wait: Optional[bool] = None
    password: Optional[str] = None
    web: Optional[bool] = None


class VMPCIConfig(_VMDeviceConfig):
    pptdev: str


class VMUSBConfig(_VMDeviceConfig):
    controller_type: Optional[str] = None
    device: Optional[str] = None


class VMConfig(_Strict):
    """A QEMU/KVM virtual machine."""

    name: str = Field(..., pattern=r'^[A-Za-z0-9_]+$')
    memory: int = Field(512, ge=20, description="Memory in MiB")
    description: Optional[str] = None
    vcpus: Optional[int] = Field(None, ge=1)
    cores: Optional[int] = Field(None, ge=1)
    threads: Optional[int] = Field(None, ge=1)
    min_memory: Optional[int] = Field(None, ge=20)
    autostart: Optional[bool] = None
    time: Optional[Literal["LOCAL", "UTC"]] = None
    bootloader: Optional[Literal["UEFI", "UEFI_CSM"]] = None
    bootloader_ovmf: Optional[str] = None
    cpu_mode: Optional[Literal["CUSTOM", "HOST-MODEL", "HOST-PASSTHROUGH"]] = None
    cpu_model: Optional[str] = None
    shutdown_timeout: Optional[int] = Field(None, ge=5, le=300)
    command_line_args: Optional[str] = None
    desired_state: Optional[str] = Field(None, validate_default=True)
    state_timeout: Optional[int] = Field(None, ge=1)

    disks: List[VMDiskConfig] = Field(default_factory=list)
    raws: List[VMRawConfig] = Field(default_factory=list)
    cdroms: List[VMCDROMConfig] = Field(default_factory=list)
    nics: List[VMNICConfig] = Field(default_factory=list)
    displays: List[VMDisplayConfig] = Field(default_factory=list)
    pcis: List[VMPCIConfig] = Field(default_factory=list)
    usbs: List[VMUSBConfig] = Field(default_factory=list)

    @field_validator('desired_state', mode='before')
    @classmethod
    def validate_desired_state(cls, v):
        return _check_desired_state(v, "STOPPED")

    @model_validator(mode='after')
    def validate_memory(self) -> 'VMConfig':
        if self.min_memory is not None and self.min_memory > self.memory:
            raise ValueError(f"min_memory ({self.min_memory}) exceeds memory ({self.memory})")
        return self

    @model_validator(mode='after')
    def validate_device_ids(self) -> 'VMConfig':
        seen = set()
        for attr in ("disks", "raws", "cdroms", "nics", "displays", "pcis", "usbs"):
            for device in getattr(self, attr):
                if device.device_id is None:
                    continue
                if device.device_id in seen:
                    raise ValueError(f"Duplicate device_id {device.device_id} in VM {self.name}")
                seen.add(device.device_id)
        return self


# ----------------------------
# Apps
# ----------------------------

class AppStateConfig(_Strict):
    """An installed app whose power state is managed."""

    name: str = Field(..., min_length=1)
    desired_state: Optional[str] = Field(None, validate_default=True)
    state_timeout: Optional[int] = Field(None, ge=1)

    @field_validator('desired_state', mode='before')
    @classmethod
    def validate_desired_state(cls, v):
        return _check_desired_state(v, "RUNNING")


class TillstandFile(_Strict):
    """Top level of tillstand.yml."""

    vms: List[VMConfig] = Field(default_factory=list)
    containers: List[ContainerConfig] = Field(default_factory=list)
    apps: List[AppStateConfig] = Field(default_factory=list)

    @model_validator(mode='after')
    def validate_unique_names(self) -> 'TillstandFile':
        for section in ("vms", "containers", "apps"):
            names = [item.name for item in getattr(self, section)]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ValueError(f"Duplicate {section} names: {', '.join(duplicates)}")
        return self
