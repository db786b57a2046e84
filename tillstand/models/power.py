"""Power-state values and per-kind stability rules."""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional


class PowerState(str, Enum):
    """Power states reported by the middleware."""
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    STOPPING = "STOPPING"
    DEPLOYING = "DEPLOYING"
    CRASHED = "CRASHED"


@dataclass(frozen=True)
class StateModel:
    """Stable (terminal) states for one resource kind."""
    kind: str
    stable: FrozenSet[str]

    def is_stable(self, state: Optional[str]) -> bool:
        """True if no further transition is expected without caller action."""
        return normalize_state(state) in self.stable


VM_STATES = StateModel("vm", frozenset({PowerState.RUNNING.value, PowerState.STOPPED.value}))
INSTANCE_STATES = StateModel(
    "instance", frozenset({PowerState.RUNNING.value, PowerState.STOPPED.value})
)
# Crashed apps need no further waiting
APP_STATES = StateModel(
    "app",
    frozenset({PowerState.RUNNING.value, PowerState.STOPPED.value, PowerState.CRASHED.value}),
)

DESIRABLE_STATES = (PowerState.RUNNING.value, PowerState.STOPPED.value)


def normalize_state(value: Optional[str]) -> Optional[str]:
    """Upper-case and trim a state string; blank becomes None."""
    if value is None:
        return None
    if isinstance(value, PowerState):
        return value.value
    text = str(value).strip().upper()
    return text or None
