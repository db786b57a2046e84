"""Match server-assigned device identities back onto unnamed spec entries."""
from typing import List, Sequence

from tillstand.core.logger import get_logger
from tillstand.models.devices import Device

logger = get_logger(__name__)


def match_created_devices(plan_devices: Sequence[Device], observed_devices: Sequence[Device]) -> List[Device]:
    """Assign observed identities to plan entries submitted without one.

    Scans observed devices of the same kind and takes the first whose
    matching attributes equal the plan entry's. Entries that already carry
    an identity are left alone, and observed devices without one are
    skipped. An observed device is claimed at most once, so two identical
    plan entries never share an identity; which of them wins is first-match
    order and otherwise unspecified.

    Args:
        plan_devices: Desired devices; updated in place
        observed_devices: Devices as reported by the server

    Returns:
        Plan entries that are still without an identity
    """
    claimed = {d.identity for d in plan_devices if d.has_identity()}
    unmatched = []

    for device in plan_devices:
        if device.has_identity():
            continue

        for candidate in observed_devices:
            if not candidate.has_identity() or candidate.identity in claimed:
                continue
            if device.matches(candidate):
                device.identity = candidate.identity
                claimed.add(candidate.identity)
                logger.debug(f"Matched {device.describe()} -> {candidate.identity}")
                break
        else:
            unmatched.append(device)

    for device in unmatched:
        logger.warning(f"No server device matches {device.describe()}; it will not be tracked")

    return unmatched


def adopt_identities(plan_devices: Sequence[Device], state_devices: Sequence[Device]) -> int:
    """Carry identities from stored state onto config entries that omit them.

    Config files usually leave server-assigned identities out. Without this
    step every apply would see those devices as new and stale at once.

    Returns:
        Number of entries that received an identity
    """
    before = sum(1 for d in plan_devices if d.has_identity())
    claimed = {d.identity for d in plan_devices if d.has_identity()}
    available = [d for d in state_devices if d.has_identity() and d.identity not in claimed]

    for device in plan_devices:
        if device.has_identity():
            continue
        for candidate in available:
            if candidate.identity in claimed:
                continue
            if device.matches(candidate):
                device.identity = candidate.identity
                claimed.add(candidate.identity)
                break

    adopted = sum(1 for d in plan_devices if d.has_identity()) - before
    if adopted:
        logger.debug(f"Adopted {adopted} device identities from state")
    return adopted
