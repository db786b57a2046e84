"""Power management for installed apps.

Apps are installed and configured elsewhere; Tillstand only keeps them
running or stopped.
"""
import threading
from typing import Any, Dict, Optional

from tillstand.core.config import TillstandConfig, get_config
from tillstand.core.errors import NotFoundError
from tillstand.core.logger import get_logger
from tillstand.core.power_engine import PowerDriver, PowerStateEngine
from tillstand.core.refresh import refresh_app_spec
from tillstand.models.instance import AppSpec, ObservedState
from tillstand.models.power import APP_STATES, PowerState
from tillstand.services.truenas.gateway import RPCGateway
from tillstand.services.truenas.params import expect_list, string_attr

logger = get_logger(__name__)


def query_app(gateway: RPCGateway, name: str) -> Optional[Dict[str, Any]]:
    records = expect_list("app.query", gateway.call("app.query", [["name", "=", name]]))
    return records[0] if records else None


class AppPowerDriver(PowerDriver):
    state_model = APP_STATES

    def __init__(self, gateway: RPCGateway, name: str):
        super().__init__(f"app {name!r}")
        self.gateway = gateway
        self.name = name

    def start(self) -> None:
        self.gateway.call_and_wait("app.start", self.name)

    def stop(self, shutdown_timeout: Optional[int]) -> None:
        self.gateway.call_and_wait("app.stop", self.name)

    def query_state(self) -> str:
        record = query_app(self.gateway, self.name)
        if record is None:
            raise NotFoundError("app", self.name)
        return string_attr(record, "state")


class AppResource:
    kind = "app"
    device_types = ()

    def __init__(
        self,
        gateway: RPCGateway,
        config: Optional[TillstandConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.gateway = gateway
        self.config = config or get_config()
        self.cancel_event = cancel_event

    def engine(self, name: str) -> PowerStateEngine:
        return PowerStateEngine(
            AppPowerDriver(self.gateway, name),
            config=self.config,
            cancel_event=self.cancel_event,
        )

    def observe(self, name: str) -> Optional[ObservedState]:
        record = query_app(self.gateway, name)
        if record is None:
            return None
        return ObservedState(id=name, status=string_attr(record, "state"), record=record)

    def create(self, spec: AppSpec) -> AppSpec:
        """Take an installed app under management and converge its state."""
        if self.observe(spec.name) is None:
            raise NotFoundError("app", spec.name, "(install it before managing its state)")
        return self.update(spec, spec)

    def read(self, prior: AppSpec) -> Optional[AppSpec]:
        observed = self.observe(prior.name)
        if observed is None:
            return None
        return refresh_app_spec(prior, observed, self.config)

    def update(self, plan: AppSpec, state: AppSpec) -> AppSpec:
        self.engine(plan.name).converge(plan.desired_state, plan.state_timeout)
        observed = self.observe(plan.name)
        if observed is None:
            raise NotFoundError("app", plan.name, "after update")
        return refresh_app_spec(plan, observed, self.config)

    def delete(self, state: AppSpec) -> None:
        """Stop managing the app, stopping it if it runs. The app stays installed."""
        observed = self.observe(state.name)
        if observed is None:
            return
        if observed.status == PowerState.RUNNING.value:
            logger.info(f"Stopping app {state.name}")
            self.gateway.call_and_wait("app.stop", state.name)
