"""Power-state convergence.

Issues start/stop transitions and polls until the resource settles in a
stable state or the deadline passes.
"""
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from tillstand.core.config import TillstandConfig, get_config
from tillstand.core.errors import (
    ConfigValidationError,
    OperationCancelled,
    StateTimeoutError,
    WrongTerminalStateError,
)
from tillstand.core.logger import get_logger
from tillstand.models.power import DESIRABLE_STATES, PowerState, StateModel, normalize_state

logger = get_logger(__name__)


class PowerDriver(ABC):
    """Power operations for one remote resource."""

    #: Stable states for the resource kind
    state_model: StateModel

    def __init__(self, resource: str):
        self.resource = resource

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def stop(self, shutdown_timeout: Optional[int]) -> None:
        """Stop the resource, waiting for the stop job to finish."""
        pass

    @abstractmethod
    def query_state(self) -> str:
        """Return the current remote power state."""
        pass


class PowerStateEngine:
    """Converges one resource to a desired power state."""

    def __init__(
        self,
        driver: PowerDriver,
        config: Optional[TillstandConfig] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize engine.

        Args:
            driver: Power driver for the resource
            config: Poll settings (defaults to the global config)
            cancel_event: Setting this event aborts a wait in progress
            clock: Monotonic time source
        """
        self.driver = driver
        self.config = config or get_config()
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

    def poll_interval(self, timeout: float) -> float:
        """Seconds between polls for a given timeout.

        Short timeouts get a proportionally shorter interval so the deadline
        is never overshot without a check, bounded below by the poll floor.
        """
        scaled = max(timeout / 10, self.config.min_poll_interval)
        return min(self.config.poll_interval, scaled)

    def reconcile(
        self,
        current: Optional[str],
        desired: Optional[str],
        timeout: Optional[float] = None,
        shutdown_timeout: Optional[int] = None,
    ) -> Optional[str]:
        """Move the resource from ``current`` to ``desired``.

        Args:
            current: Last observed power state
            desired: Target power state (RUNNING or STOPPED)
            timeout: Seconds to wait for a stable state
            shutdown_timeout: Graceful shutdown hint passed to stop

        Returns:
            The final stable state (``current`` when nothing had to change)

        Raises:
            RPCError: The transition call failed; no polling happens
            StateTimeoutError: Still transient when the deadline passed
            WrongTerminalStateError: Settled in a state other than ``desired``
            OperationCancelled: The cancel event was set during a wait
        """
        current = normalize_state(current)
        desired = normalize_state(desired)

        if desired is None or current == desired:
            return current
        if desired not in DESIRABLE_STATES:
            raise ConfigValidationError(
                f"{self.driver.resource}: desired state must be one of "
                f"{', '.join(DESIRABLE_STATES)}, got {desired}"
            )

        if desired == PowerState.RUNNING.value:
            logger.info(f"Starting {self.driver.resource} ({current} -> {desired})")
            self.driver.start()
        else:
            logger.info(f"Stopping {self.driver.resource} ({current} -> {desired})")
            self.driver.stop(shutdown_timeout)

        final = self.wait_for_stable_state(timeout, desired=desired)
        if final != desired:
            raise WrongTerminalStateError(self.driver.resource, final, desired)
        return final

    def converge(
        self,
        desired: Optional[str],
        timeout: Optional[float] = None,
        shutdown_timeout: Optional[int] = None,
    ) -> Optional[str]:
        """Query, wait out any transient state, then reconcile to ``desired``."""
        current = normalize_state(self.driver.query_state())
        if not self.driver.state_model.is_stable(current):
            logger.info(f"{self.driver.resource} is {current}; waiting for it to settle")
            current = self.wait_for_stable_state(timeout)
        return self.reconcile(current, desired, timeout, shutdown_timeout)

    def wait_for_stable_state(self, timeout: Optional[float] = None, desired: Optional[str] = None) -> str:
        """Poll until the resource reports a stable state.

        Args:
            timeout: Seconds before giving up (defaults to the configured state timeout)
            desired: Only used to enrich the timeout message

        Returns:
            The stable state observed
        """
        if timeout is None:
            timeout = self.config.default_state_timeout

        model = self.driver.state_model
        interval = self.poll_interval(timeout)
        started = self.clock()
        deadline = started + timeout

        while True:
            state = normalize_state(self.driver.query_state())
            if model.is_stable(state):
                logger.debug(f"{self.driver.resource} is {state}")
                return state

            now = self.clock()
            remaining = deadline - now
            if remaining <= 0:
                raise StateTimeoutError(self.driver.resource, state, now - started, desired)

            logger.debug(
                f"{self.driver.resource} is {state}; next check in {min(interval, remaining):.1f}s"
            )
            if self.cancel_event.wait(min(interval, remaining)):
                raise OperationCancelled(f"wait for {self.driver.resource} cancelled in state {state}")
