"""Ownership gate consulted before any destructive action.

A VM is only considered ours when all three checks pass: the persisted state
has a record for it, its notes carry our marker for this config file, and its
name equals the one we would derive for that record's machine.
"""

import logging
from typing import Dict, Optional

from vmfleet.models import ObservedResource, OwnershipChecks, OwnershipVerdict, ProjectState
from vmfleet.naming import derive_name, has_valid_marker

logger = logging.getLogger(__name__)


def verify_ownership(
    derived_name: str,
    state: Optional[ProjectState],
    observed: Optional[ObservedResource],
    config_path: str,
) -> OwnershipVerdict:
    """Run the triple ownership check for a candidate VM name."""
    record = state.find_by_derived_name(derived_name) if state is not None else None

    note = observed.metadata_note if observed is not None else None
    name_ok = False
    if record is not None and state is not None:
        name_ok = derived_name == derive_name(state.project_name, record.machine_name, config_path)

    checks = OwnershipChecks(
        in_persisted_state=record is not None,
        has_valid_marker=has_valid_marker(note, config_path),
        name_matches_pattern=name_ok,
    )
    if checks.all_passed:
        return OwnershipVerdict(owned=True, checks=checks)

    reason = _failure_reason(checks)
    logger.debug(f"{derived_name}: {reason}")
    return OwnershipVerdict(owned=False, checks=checks, reason=reason)


def verify_ownership_by_machine(
    machine_name: str,
    state: Optional[ProjectState],
    observed_by_name: Dict[str, ObservedResource],
    config_path: str,
    project_name: str,
) -> OwnershipVerdict:
    derived_name = derive_name(project_name, machine_name, config_path)
    return verify_ownership(derived_name, state, observed_by_name.get(derived_name), config_path)


def _failure_reason(checks: OwnershipChecks) -> str:
    failures = []
    if not checks.in_persisted_state:
        failures.append("not in state file")
    if not checks.has_valid_marker:
        failures.append("missing vmfleet marker")
    if not checks.name_matches_pattern:
        failures.append("name does not match expected pattern")
    return f"Ownership verification failed: {', '.join(failures)}"
