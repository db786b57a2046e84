"""Data models for Tillstand."""
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
)
from tillstand.models.instance import AppSpec, InstanceSpec, ObservedState, VMSpec
from tillstand.models.power import (
    APP_STATES,
    INSTANCE_STATES,
    VM_STATES,
    PowerState,
    StateModel,
    normalize_state,
)

__all__ = [
    'Device',
    'DiskDevice',
    'NICDevice',
    'ProxyDevice',
    'VMCDROM',
    'VMDisk',
    'VMDisplay',
    'VMNIC',
    'VMPCI',
    'VMRaw',
    'VMUSB',
    'AppSpec',
    'InstanceSpec',
    'ObservedState',
    'VMSpec',
    'APP_STATES',
    'INSTANCE_STATES',
    'VM_STATES',
    'PowerState',
    'StateModel',
    'normalize_state',
]
