"""Plan computation.

Every function here is pure: it diffs desired, persisted and observed state
and returns a PlanResult without touching the platform or the filesystem.
Resources that are not in the persisted state are never part of any plan.
"""

import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from vmfleet.config import Config
from vmfleet.errors import CheckpointNotFound, DuplicateCheckpoint
from vmfleet.models import (
    Action,
    ActionKind,
    CheckpointPayload,
    CreatePayload,
    DesiredConfig,
    DestroyPayload,
    DiskStrategy,
    MachineSpec,
    ObservedResource,
    PlanResult,
    ProjectState,
    RestorePayload,
    RuntimeState,
    StartPayload,
    StopPayload,
)
from vmfleet.naming import derive_marker, derive_name


@dataclass(frozen=True)
class PlanOptions:
    """Knobs shared by all plan functions.

    ``auto_start`` overrides the config's setting when not None.
    ``filter_machines`` limits a plan to the named machines.
    """

    auto_start: Optional[bool] = None
    filter_machines: Optional[Sequence[str]] = None
    force: bool = False

    def includes(self, machine_name: str) -> bool:
        return self.filter_machines is None or machine_name in self.filter_machines


def index_observed(observed: Iterable[ObservedResource]) -> Dict[str, ObservedResource]:
    """Map observed resources by name."""
    return {resource.name: resource for resource in observed}


def disk_path_for(desired: DesiredConfig, machine: MachineSpec) -> str:
    return os.path.join(desired.artifact_path, f"{machine.name}.{Config.DISK_EXTENSION}")


def plan(
    desired: DesiredConfig,
    state: Optional[ProjectState],
    observed: Iterable[ObservedResource],
    options: Optional[PlanOptions] = None,
) -> PlanResult:
    """Compute the actions that bring the fleet up to the desired state."""
    options = options or PlanOptions()
    auto_start = desired.auto_start if options.auto_start is None else options.auto_start
    by_name = index_observed(observed)
    resources = state.resources if state is not None else {}
    result = PlanResult()

    for machine in desired.machines:
        if not options.includes(machine.name):
            continue
        derived_name = derive_name(desired.project_name, machine.name, desired.config_path)
        record = resources.get(machine.name)
        current = by_name.get(derived_name)

        if current is None:
            # Covers both a new machine and a record whose VM vanished
            result.add(_create_action(desired, machine, derived_name, auto_start))
        elif record is None:
            result.skipped.append(machine.name)
            result.summary.unchanged += 1
        elif current.runtime_state == RuntimeState.OFF and auto_start:
            result.add(Action(machine.name, derived_name, StartPayload(platform_id=current.platform_id)))
        else:
            result.summary.unchanged += 1

    return result


def plan_halt(
    state: Optional[ProjectState],
    observed: Iterable[ObservedResource],
    options: Optional[PlanOptions] = None,
) -> PlanResult:
    """Stop every managed machine that is running."""
    options = options or PlanOptions()
    result = PlanResult()
    for machine_name, record, current in _managed(state, observed, options):
        if current is not None and current.is_running:
            payload = StopPayload(platform_id=current.platform_id, force=options.force)
            result.add(Action(machine_name, record.derived_name, payload))
        else:
            result.summary.unchanged += 1
    return result


def plan_destroy(
    state: Optional[ProjectState],
    observed: Iterable[ObservedResource],
    options: Optional[PlanOptions] = None,
) -> PlanResult:
    """Destroy managed machines that still exist.

    A record whose VM is gone counts as unchanged; callers prune it.
    """
    options = options or PlanOptions()
    result = PlanResult()
    for machine_name, record, current in _managed(state, observed, options):
        if current is None:
            result.summary.unchanged += 1
            continue
        payload = DestroyPayload(platform_id=current.platform_id, disk_path=record.disk_path)
        result.add(Action(machine_name, record.derived_name, payload))
    return result


def plan_checkpoint(
    state: Optional[ProjectState],
    observed: Iterable[ObservedResource],
    name: str,
    options: Optional[PlanOptions] = None,
) -> PlanResult:
    """Checkpoint every managed machine that exists.

    Raises:
        DuplicateCheckpoint: If a machine already has a checkpoint called name
    """
    options = options or PlanOptions()
    result = PlanResult()
    for machine_name, record, current in _managed(state, observed, options):
        if any(cp.name == name for cp in record.checkpoints):
            raise DuplicateCheckpoint(name, machine_name)
        if current is None:
            result.skipped.append(machine_name)
            continue
        payload = CheckpointPayload(platform_id=current.platform_id, checkpoint_name=name)
        result.add(Action(machine_name, record.derived_name, payload))
    return result


def plan_restore(
    state: Optional[ProjectState],
    observed: Iterable[ObservedResource],
    name: str,
    options: Optional[PlanOptions] = None,
) -> PlanResult:
    """Restore every managed machine to a named checkpoint.

    Raises:
        CheckpointNotFound: Listing each machine whose record lacks the checkpoint
    """
    options = options or PlanOptions()
    result = PlanResult()
    missing: List[str] = []
    for machine_name, record, current in _managed(state, observed, options):
        checkpoint = next((cp for cp in record.checkpoints if cp.name == name), None)
        if checkpoint is None:
            missing.append(machine_name)
            continue
        if current is None:
            result.skipped.append(machine_name)
            continue
        payload = RestorePayload(platform_id=current.platform_id, checkpoint_id=checkpoint.id, checkpoint_name=name)
        result.add(Action(machine_name, record.derived_name, payload))
    if missing:
        raise CheckpointNotFound(name, missing)
    return result


def _managed(state: Optional[ProjectState], observed: Iterable[ObservedResource], options: PlanOptions):
    if state is None:
        return
    by_name = index_observed(observed)
    for machine_name, record in state.resources.items():
        if options.includes(machine_name):
            yield machine_name, record, by_name.get(record.derived_name)


def _create_action(desired: DesiredConfig, machine: MachineSpec, derived_name: str, start: bool) -> Action:
    payload = CreatePayload(
        cpu=machine.cpu,
        memory_mb=machine.memory_mb,
        base_image_path=machine.base_image_path,
        disk_path=disk_path_for(desired, machine),
        differencing=machine.disk_strategy == DiskStrategy.DIFFERENCING,
        note=derive_marker(desired.config_path),
        start=start,
    )
    return Action(machine.name, derived_name, payload)


def has_actions(result: PlanResult) -> bool:
    return len(result.actions) > 0


_SUMMARY_ORDER = [
    ActionKind.CREATE,
    ActionKind.START,
    ActionKind.STOP,
    ActionKind.DESTROY,
    ActionKind.CHECKPOINT,
    ActionKind.RESTORE,
]


def format_summary(result: PlanResult) -> str:
    """One-line summary such as '2 to create, 1 to start'."""
    parts = []
    for kind in _SUMMARY_ORDER:
        count = getattr(result.summary, kind.value)
        if count:
            parts.append(f"{count} to {kind.value}")
    if not parts:
        return "No changes needed"
    return ", ".join(parts)
