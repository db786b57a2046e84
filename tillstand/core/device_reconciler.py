"""Device set reconciliation.

Moves the observed device set of one VM or container instance to the
desired set. Work happens in two phases:

1. Deletes for every identity the state has and the plan does not.
2. Creates and updates, kind by kind, in the resource's device order.

Only a kind's comparable attributes decide whether an update is needed.
A failure stops the remaining operations; nothing already done is undone.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Type

from tillstand.core.errors import DeviceOperationError, TillstandError
from tillstand.core.logger import get_logger
from tillstand.models.devices import Device

logger = get_logger(__name__)


class DeviceAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class DeviceOperation:
    """One planned device change."""
    action: DeviceAction
    kind: str
    identity: Any = None
    device: Optional[Device] = None
    changed: List[str] = field(default_factory=list)

    def describe(self) -> str:
        if self.action == DeviceAction.DELETE:
            return f"delete {self.kind} {self.identity}"
        target = self.identity if self.identity is not None else self.device.describe()
        if self.action == DeviceAction.UPDATE:
            return f"update {self.kind} {target} ({', '.join(self.changed)})"
        return f"create {self.kind} {target}"


class DeviceBackend(ABC):
    """Remote device operations for one owning resource."""

    @abstractmethod
    def create(self, device: Device) -> Any:
        """Create ``device`` remotely.

        Returns:
            The server-assigned identity, or None if the response carries none
        """
        pass

    @abstractmethod
    def update(self, device: Device) -> None:
        """Replace the remote attributes of ``device`` (keyed by its identity)."""
        pass

    @abstractmethod
    def delete(self, identity: Any) -> None:
        pass


def plan_operations(
    plan: Sequence[Device],
    state: Sequence[Device],
    device_types: Sequence[Type[Device]],
) -> List[DeviceOperation]:
    """Compute the ordered operations that turn ``state`` into ``plan``.

    Args:
        plan: Desired devices, all kinds mixed
        state: Last known devices, all kinds mixed
        device_types: Kind order for creates and updates

    Returns:
        Deletes first, then creates/updates grouped by kind
    """
    plan_identities = {d.identity for d in plan if d.has_identity()}
    state_by_identity: Dict[Any, Device] = {}
    for device in state:
        if device.has_identity():
            state_by_identity[device.identity] = device

    operations: List[DeviceOperation] = []

    for identity, device in state_by_identity.items():
        if identity not in plan_identities:
            operations.append(DeviceOperation(DeviceAction.DELETE, device.kind, identity))

    ordered = list(device_types)
    for device in plan:
        if type(device) not in ordered:
            ordered.append(type(device))

    for device_type in ordered:
        for device in plan:
            if type(device) is not device_type:
                continue
            op = _plan_entry(device, state_by_identity)
            if op is not None:
                operations.append(op)

    return operations


def _plan_entry(device: Device, state_by_identity: Dict[Any, Device]) -> Optional[DeviceOperation]:
    if not device.has_identity():
        return DeviceOperation(DeviceAction.CREATE, device.kind, None, device)

    current = state_by_identity.get(device.identity)
    if current is None:
        # Known identity with nothing behind it: bring it under management
        return DeviceOperation(DeviceAction.CREATE, device.kind, device.identity, device)

    if type(current) is not type(device):
        changed = [name for name in device.comparable if getattr(device, name) is not None]
    else:
        changed = device.changed_fields(current)
    if not changed:
        return None
    return DeviceOperation(DeviceAction.UPDATE, device.kind, device.identity, device, changed)


class DeviceReconciler:
    """Executes planned device operations against a ``DeviceBackend``."""

    def __init__(self, backend: DeviceBackend, device_types: Sequence[Type[Device]]):
        self.backend = backend
        self.device_types = tuple(device_types)

    def plan(self, plan: Sequence[Device], state: Sequence[Device]) -> List[DeviceOperation]:
        return plan_operations(plan, state, self.device_types)

    def reconcile(self, plan: Sequence[Device], state: Sequence[Device]) -> List[DeviceOperation]:
        """Apply the device diff.

        Identities returned by creates are written back onto the plan entries.

        Returns:
            The operations that were executed

        Raises:
            DeviceOperationError: On the first failing operation
        """
        operations = self.plan(plan, state)
        if not operations:
            logger.debug("Devices already converged")
            return operations

        for op in operations:
            try:
                self._execute(op)
            except TillstandError as e:
                raise DeviceOperationError(op.action.value, op.kind, op.identity, e) from e

        return operations

    def _execute(self, op: DeviceOperation) -> None:
        logger.info(f"Device: {op.describe()}")

        if op.action == DeviceAction.DELETE:
            self.backend.delete(op.identity)
            return

        if op.action == DeviceAction.UPDATE:
            self.backend.update(op.device)
            return

        identity = self.backend.create(op.device)
        if identity is not None and not op.device.has_identity():
            op.device.identity = identity
            op.identity = identity
            logger.debug(f"Captured {op.kind} identity {identity}")
