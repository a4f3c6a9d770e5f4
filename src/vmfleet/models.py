"""Data models for fleet convergence."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


class DiskStrategy(Enum):
    """How a machine's disk is derived from its base image."""

    DIFFERENCING = "differencing"
    COPY = "copy"


class RuntimeState(Enum):
    """Runtime state of an observed VM."""

    RUNNING = "running"
    OFF = "off"
    SAVED = "saved"
    PAUSED = "paused"
    TRANSITIONAL = "transitional"
    OTHER = "other"


class ActionKind(Enum):
    """Actions the planner can emit."""

    CREATE = "create"
    START = "start"
    STOP = "stop"
    DESTROY = "destroy"
    CHECKPOINT = "checkpoint"
    RESTORE = "restore"


DESTRUCTIVE_KINDS = frozenset({ActionKind.DESTROY})


@dataclass(frozen=True)
class MachineSpec:
    """Desired state of one machine, with defaults already applied."""

    name: str
    cpu: int
    memory_mb: int
    base_image_path: str
    disk_strategy: DiskStrategy = DiskStrategy.DIFFERENCING


@dataclass(frozen=True)
class DesiredConfig:
    """Fully resolved fleet configuration."""

    project_name: str
    machines: Tuple[MachineSpec, ...]
    artifact_path: str
    config_path: str
    config_hash: str = ""
    auto_start: bool = True

    def machine(self, name: str) -> Optional[MachineSpec]:
        for spec in self.machines:
            if spec.name == name:
                return spec
        return None


@dataclass
class CheckpointRecord:
    """A checkpoint taken of a managed VM."""

    id: str
    name: str
    created_at: str


@dataclass
class ManagedResourceRecord:
    """Persisted record of a VM created by vmfleet."""

    platform_id: str
    derived_name: str
    machine_name: str
    disk_path: str
    created_at: str
    checkpoints: List[CheckpointRecord] = field(default_factory=list)


@dataclass
class ProjectState:
    """Ownership ledger for one fleet configuration file."""

    config_hash: str
    config_path: str
    project_name: str
    created_at: str
    updated_at: str
    resources: Dict[str, ManagedResourceRecord] = field(default_factory=dict)
    schema_version: int = 1

    def find_by_derived_name(self, derived_name: str) -> Optional[ManagedResourceRecord]:
        for record in self.resources.values():
            if record.derived_name == derived_name:
                return record
        return None


@dataclass(frozen=True)
class ObservedResource:
    """A VM as currently reported by the actuator."""

    platform_id: str
    name: str
    runtime_state: RuntimeState
    metadata_note: Optional[str] = None
    cpu: int = 0
    memory_mb: int = 0

    @property
    def is_running(self) -> bool:
        return self.runtime_state == RuntimeState.RUNNING


@dataclass(frozen=True)
class CreatePayload:
    cpu: int
    memory_mb: int
    base_image_path: str
    disk_path: str
    differencing: bool
    note: str
    start: bool = False


@dataclass(frozen=True)
class StartPayload:
    platform_id: str


@dataclass(frozen=True)
class StopPayload:
    platform_id: str
    force: bool = False


@dataclass(frozen=True)
class DestroyPayload:
    platform_id: str
    disk_path: str


@dataclass(frozen=True)
class CheckpointPayload:
    platform_id: str
    checkpoint_name: str


@dataclass(frozen=True)
class RestorePayload:
    platform_id: str
    checkpoint_id: str
    checkpoint_name: str


ActionPayload = Union[
    CreatePayload, StartPayload, StopPayload, DestroyPayload, CheckpointPayload, RestorePayload
]

PAYLOAD_KINDS = {
    CreatePayload: ActionKind.CREATE,
    StartPayload: ActionKind.START,
    StopPayload: ActionKind.STOP,
    DestroyPayload: ActionKind.DESTROY,
    CheckpointPayload: ActionKind.CHECKPOINT,
    RestorePayload: ActionKind.RESTORE,
}


@dataclass(frozen=True)
class Action:
    """A single planned step. The kind always follows from the payload type."""

    machine_name: str
    derived_name: str
    payload: ActionPayload

    @property
    def kind(self) -> ActionKind:
        return PAYLOAD_KINDS[type(self.payload)]

    @property
    def is_destructive(self) -> bool:
        return self.kind in DESTRUCTIVE_KINDS

    def describe(self) -> str:
        """Human-readable one-line description."""
        payload = self.payload
        if isinstance(payload, CreatePayload):
            strategy = "differencing" if payload.differencing else "copy"
            return (
                f"Create VM {self.derived_name} ({payload.cpu} CPU, {payload.memory_mb} MB, "
                f"disk {payload.disk_path} [{strategy}])"
                f"{' and start' if payload.start else ''}"
            )
        if isinstance(payload, StartPayload):
            return f"Start VM {self.derived_name}"
        if isinstance(payload, StopPayload):
            return f"Stop VM {self.derived_name}{' (force)' if payload.force else ''}"
        if isinstance(payload, DestroyPayload):
            return f"Destroy VM {self.derived_name} and delete disk {payload.disk_path}"
        if isinstance(payload, CheckpointPayload):
            return f"Checkpoint VM {self.derived_name} as '{payload.checkpoint_name}'"
        return f"Restore VM {self.derived_name} to checkpoint '{payload.checkpoint_name}'"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "machine_name": self.machine_name,
            "derived_name": self.derived_name,
            "payload": asdict(self.payload),
        }


@dataclass(frozen=True)
class OwnershipChecks:
    in_persisted_state: bool = False
    has_valid_marker: bool = False
    name_matches_pattern: bool = False

    @property
    def all_passed(self) -> bool:
        return self.in_persisted_state and self.has_valid_marker and self.name_matches_pattern


@dataclass(frozen=True)
class OwnershipVerdict:
    """Result of the triple ownership check."""

    owned: bool
    checks: OwnershipChecks
    reason: Optional[str] = None


@dataclass
class PlanSummary:
    create: int = 0
    start: int = 0
    stop: int = 0
    destroy: int = 0
    checkpoint: int = 0
    restore: int = 0
    unchanged: int = 0

    def count(self, kind: ActionKind) -> None:
        setattr(self, kind.value, getattr(self, kind.value) + 1)

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class PlanResult:
    """Ordered actions plus per-kind tallies."""

    actions: List[Action] = field(default_factory=list)
    summary: PlanSummary = field(default_factory=PlanSummary)
    skipped: List[str] = field(default_factory=list)

    def add(self, action: Action) -> None:
        self.actions.append(action)
        self.summary.count(action.kind)

    def to_dict(self) -> dict:
        return {
            "actions": [action.to_dict() for action in self.actions],
            "summary": self.summary.to_dict(),
            "skipped": list(self.skipped),
        }
