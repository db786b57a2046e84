"""
Apply cycles for configured resources.

For every resource in the config file:
- Load the last applied spec from the state store
- Refresh it against the server (or discover it by name)
- Plan device operations, top-level field changes and power changes
- Create or update, then record the refreshed spec
"""
import copy
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tillstand.core.config import TillstandConfig, get_config
from tillstand.core.device_reconciler import DeviceOperation, plan_operations
from tillstand.core.errors import NotFoundError
from tillstand.core.identity_matcher import adopt_identities
from tillstand.core.logger import get_logger
from tillstand.core.refresh import carry_caller_fields
from tillstand.core.state_store import StateStore
from tillstand.models.instance import AppSpec, InstanceSpec, VMSpec
from tillstand.models.power import normalize_state
from tillstand.services.truenas.app import AppResource
from tillstand.services.truenas.gateway import RPCGateway
from tillstand.services.truenas.instance import InstanceResource
from tillstand.services.truenas.params import build_instance_update_params, build_vm_update_params
from tillstand.services.truenas.vm import VMResource

logger = get_logger(__name__)

SPEC_TYPES = {"vm": VMSpec, "instance": InstanceSpec, "app": AppSpec}
KIND_LABELS = {"vm": "VMs", "instance": "Containers", "app": "Apps"}


@dataclass
class ResourcePlan:
    """Everything an apply would do to one resource."""
    kind: str
    name: str
    action: str  # create | update | noop
    spec: Any
    state: Any = None
    device_operations: List[DeviceOperation] = field(default_factory=list)
    field_changes: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    power_change: Optional[Tuple[Optional[str], str]] = None

    @property
    def has_changes(self) -> bool:
        return self.action == "create" or bool(
            self.device_operations or self.field_changes or self.power_change
        )


class ApplyRunner:
    """Runs plan, apply, refresh and destroy across all resource kinds."""

    def __init__(
        self,
        gateway: RPCGateway,
        store: StateStore,
        config: Optional[TillstandConfig] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.gateway = gateway
        self.store = store
        self.config = config or get_config()
        self.resources = {
            "vm": VMResource(gateway, self.config, cancel_event),
            "instance": InstanceResource(gateway, self.config, cancel_event),
            "app": AppResource(gateway, self.config, cancel_event),
        }

    def stored_spec(self, kind: str, name: str):
        data = self.store.get_resource(kind, name)
        if data is None:
            return None
        return SPEC_TYPES[kind].from_dict(data)

    def current_state(self, kind: str, spec):
        """Refreshed remote state of ``spec``, or None when it does not exist."""
        prior = self.stored_spec(kind, spec.name)
        if prior is None:
            # Not tracked yet; look it up by name
            prior = copy.deepcopy(spec)
        return self.resources[kind].read(prior)

    def prepare(self, kind: str, spec) -> ResourcePlan:
        """Plan one resource. ``spec`` receives identities adopted from state."""
        resource = self.resources[kind]
        state = self.current_state(kind, spec)
        desired = normalize_state(spec.desired_state)

        if state is None:
            return ResourcePlan(
                kind=kind,
                name=spec.name,
                action="create",
                spec=spec,
                device_operations=plan_operations(spec.devices(), [], resource.device_types),
                power_change=(None, desired) if desired else None,
            )

        adopt_identities(spec.devices(), state.devices())
        if kind == "instance":
            # The refreshed state only keeps devices it already knows by name.
            # Entries still unnamed (first contact, or a match missed right
            # after create) are matched against everything the server reports.
            self._adopt_server_devices(resource, spec, state)

        plan = ResourcePlan(
            kind=kind,
            name=spec.name,
            action="noop",
            spec=spec,
            state=state,
            device_operations=plan_operations(spec.devices(), state.devices(), resource.device_types),
            field_changes=self._field_changes(kind, spec, state),
        )
        current = normalize_state(state.state)
        if desired and current != desired:
            plan.power_change = (current, desired)
        if plan.has_changes:
            plan.action = "update"
        return plan

    def _adopt_server_devices(self, resource: InstanceResource, spec: InstanceSpec, state: InstanceSpec) -> None:
        if all(d.has_identity() for d in spec.devices()):
            return
        observed = resource.list_devices(state.id)
        if adopt_identities(spec.devices(), observed):
            known = {d.identity for d in spec.devices() + state.devices() if d.has_identity()}
            state.set_devices([d for d in observed if d.identity in known])

    def _field_changes(self, kind: str, spec, state) -> Dict[str, Tuple[Any, Any]]:
        if kind == "vm":
            params = build_vm_update_params(spec, state)
        elif kind == "instance":
            params = build_instance_update_params(spec, state)
        else:
            params = {}
        return {name: (getattr(state, name), value) for name, value in params.items()}

    def plan(self, specs: Dict[str, list]) -> List[ResourcePlan]:
        plans = []
        for kind in SPEC_TYPES:
            for spec in specs.get(kind, []):
                plans.append(self.prepare(kind, spec))
        return plans

    def apply(self, plans: List[ResourcePlan]) -> List[ResourcePlan]:
        """Execute prepared plans in order, recording each result.

        Stops at the first failure; resources applied before it stay recorded.
        """
        for plan in plans:
            resource = self.resources[plan.kind]
            if plan.action == "create":
                result = resource.create(plan.spec)
            elif plan.action == "update":
                result = resource.update(plan.spec, plan.state)
            else:
                result = plan.state
                carry_caller_fields(plan.spec, result)
            self.store.record_resource(plan.kind, plan.name, result.to_dict())
        return plans

    def refresh(self) -> Dict[str, List[str]]:
        """Refresh every tracked resource; forget the ones that are gone."""
        summary: Dict[str, List[str]] = {"refreshed": [], "removed": []}
        for kind, name in self.store.list_resources():
            prior = self.stored_spec(kind, name)
            current = self.resources[kind].read(prior)
            label = f"{kind}/{name}"
            if current is None:
                logger.warning(f"{label} no longer exists; removing from state")
                self.store.remove_resource(kind, name)
                summary["removed"].append(label)
            else:
                self.store.record_resource(kind, name, current.to_dict())
                summary["refreshed"].append(label)
        return summary

    def destroy(self, kind: str, name: str) -> None:
        """Delete a tracked resource and forget it."""
        spec = self.stored_spec(kind, name)
        if spec is None:
            raise NotFoundError(kind, name, "in state")
        self.resources[kind].delete(spec)
        self.store.remove_resource(kind, name)


def format_plan(plans: List[ResourcePlan]) -> str:
    """Format plans as a human-readable summary."""
    changed = [p for p in plans if p.has_changes]
    if not changed:
        return "No changes required. Resources are up to date."

    lines = ["Tillstand will perform the following actions:\n"]
    for kind, label in KIND_LABELS.items():
        group = [p for p in changed if p.kind == kind]
        if not group:
            continue
        lines.append(f"{label}:")
        for plan in group:
            if plan.action == "create":
                lines.append(f"  + {plan.name} (will be created)")
            else:
                lines.append(f"  ~ {plan.name} (will be updated)")
            for name, (old, new) in plan.field_changes.items():
                lines.append(f"      {name}: {old} -> {new}")
            for op in plan.device_operations:
                lines.append(f"      device: {op.describe()}")
            if plan.power_change:
                old, new = plan.power_change
                lines.append(f"      state: {old or '(new)'} -> {new}")
        lines.append("")

    lines.append(f"Plan: {len(changed)} resource(s) to change")
    return "\n".join(lines)
