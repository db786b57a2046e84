"""Rebuild specs from a fresh observed snapshot.

Caller-only fields (desired state and timeouts) have no remote equivalent
and are carried over from the prior spec, so drift in the actual power
state never rewrites what the user asked for.
"""
import copy
from typing import List, Optional, Sequence

from tillstand.core.config import TillstandConfig, get_config
from tillstand.models.devices import VMRaw
from tillstand.models.instance import AppSpec, InstanceSpec, ObservedState, VMSpec
from tillstand.models.power import normalize_state
from tillstand.services.truenas.params import parse_instance_record, parse_vm_record


def _carry_power_fields(prior, spec, observed_status: Optional[str], config: TillstandConfig) -> None:
    spec.state = observed_status
    # Imported resources have no stated intent yet; adopt what is running
    spec.desired_state = normalize_state(prior.desired_state) or normalize_state(observed_status)
    spec.state_timeout = prior.state_timeout if prior.state_timeout is not None else config.default_state_timeout


def refresh_instance_spec(
    prior: InstanceSpec,
    observed: ObservedState,
    config: Optional[TillstandConfig] = None,
) -> InstanceSpec:
    """Build the refreshed spec of a container instance.

    Args:
        prior: Spec from config or the last saved state
        observed: Fresh query result, devices already parsed

    Returns:
        New spec; ``prior`` is not modified
    """
    config = config or get_config()

    spec = InstanceSpec(
        name=prior.name,
        image_name=prior.image_name,
        image_version=prior.image_version,
    )
    parse_instance_record(observed.record, spec)
    spec.id = observed.id if observed.id is not None else spec.id
    spec.uuid = spec.id

    _carry_power_fields(prior, spec, observed.status, config)
    spec.shutdown_timeout = (
        prior.shutdown_timeout if prior.shutdown_timeout is not None else config.default_shutdown_timeout
    )

    # Only devices this spec manages; the rest are server defaults
    managed = {d.identity for d in prior.devices() if d.has_identity()}
    spec.set_devices([copy.deepcopy(d) for d in observed.devices if d.has_identity() and d.identity in managed])
    return spec


def refresh_vm_spec(
    prior: VMSpec,
    observed: ObservedState,
    config: Optional[TillstandConfig] = None,
) -> VMSpec:
    """Build the refreshed spec of a VM. All VM devices are tracked."""
    config = config or get_config()

    spec = VMSpec(name=prior.name)
    parse_vm_record(observed.record, spec)
    if observed.id is not None:
        spec.id = observed.id

    _carry_power_fields(prior, spec, observed.status, config)

    spec.set_devices(copy.deepcopy(list(observed.devices)))
    preserve_raw_exists(spec.raws, prior.raws)
    return spec


def refresh_app_spec(
    prior: AppSpec,
    observed: ObservedState,
    config: Optional[TillstandConfig] = None,
) -> AppSpec:
    config = config or get_config()
    spec = AppSpec(name=prior.name)
    _carry_power_fields(prior, spec, observed.status, config)
    return spec


def preserve_raw_exists(mapped: List[VMRaw], prior: Sequence[VMRaw]) -> None:
    """Copy the create-time ``exists`` flag onto refreshed raw devices.

    The middleware never echoes ``exists`` back. Devices are paired by id,
    falling back to list position for devices created in this cycle.
    """
    prior_by_id = {p.device_id: p for p in prior if p.device_id is not None}

    for i, raw in enumerate(mapped):
        if raw.device_id is not None and raw.device_id in prior_by_id:
            raw.exists = prior_by_id[raw.device_id].exists
            continue
        if i < len(prior):
            raw.exists = prior[i].exists


def carry_caller_fields(source, target) -> None:
    """Copy desired state and timeouts set on ``source`` onto ``target``."""
    for name in ("desired_state", "state_timeout", "shutdown_timeout"):
        value = getattr(source, name, None)
        if value is not None:
            setattr(target, name, value)
    target.desired_state = normalize_state(target.desired_state)
