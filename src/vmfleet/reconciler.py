"""Sequential execution of planned actions.

Actions run one at a time in plan order. State is written through to the
store after every step that changes it, so an interrupted batch never leaves
the ledger behind the platform by more than one action.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from vmfleet.actuator import Actuator, CreateRequest
from vmfleet.config import Config
from vmfleet.errors import ActionFailed, ActuatorError, OwnershipVerificationFailed, VMFleetError
from vmfleet.models import (
    Action,
    ActionKind,
    CheckpointRecord,
    ManagedResourceRecord,
    ObservedResource,
)
from vmfleet.ownership import verify_ownership
from vmfleet.planner import index_observed
from vmfleet.state_store import StateStore, timestamp

logger = logging.getLogger(__name__)


class FailurePolicy(Enum):
    """What to do with the rest of a batch after an action fails."""

    STOP = "stop"
    CONTINUE = "continue"

    @classmethod
    def from_value(cls, value: str) -> "FailurePolicy":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown failure policy '{value}', expected 'stop' or 'continue'")


class ProgressStatus(Enum):
    STARTING = "starting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    action: Action
    status: ProgressStatus
    error: Optional[ActionFailed] = None


class ProgressListener(ABC):
    """Receives one event per action state change."""

    @abstractmethod
    def on_event(self, event: ProgressEvent) -> None:
        pass


class CollectingListener(ProgressListener):
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []

    def on_event(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def statuses(self) -> List[ProgressStatus]:
        return [event.status for event in self.events]


class LoggingListener(ProgressListener):
    """Writes progress to the module logger, for runs without a console."""

    def on_event(self, event: ProgressEvent) -> None:
        if event.status == ProgressStatus.FAILED:
            logger.error(f"{event.action.describe()}: {event.error}")
        else:
            logger.info(f"{event.action.describe()}: {event.status.value}")


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ActionOutcome:
    action: Action
    status: OutcomeStatus
    error: Optional[ActionFailed] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action.to_dict(),
            "status": self.status.value,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ReconcileResult:
    """Per-action outcomes of one reconcile run."""

    results: List[ActionOutcome] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.skipped == 0

    @property
    def errors(self) -> List[ActionFailed]:
        return [outcome.error for outcome in self.results if outcome.error is not None]

    def record(self, outcome: ActionOutcome) -> None:
        self.results.append(outcome)
        if outcome.status == OutcomeStatus.SUCCEEDED:
            self.succeeded += 1
        elif outcome.status == OutcomeStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [outcome.to_dict() for outcome in self.results],
        }


class Reconciler:
    """Executes actions against an actuator and commits state after each one."""

    def __init__(
        self,
        actuator: Actuator,
        store: StateStore,
        config_path: str,
        listener: Optional[ProgressListener] = None,
        failure_policy: FailurePolicy = FailurePolicy.STOP,
        shutdown_timeout: float = Config.SHUTDOWN_TIMEOUT,
        poll_interval: float = Config.POLL_INTERVAL,
    ) -> None:
        self.actuator = actuator
        self.store = store
        self.config_path = config_path
        self.listener = listener
        self.failure_policy = failure_policy
        self.shutdown_timeout = shutdown_timeout
        self.poll_interval = poll_interval
        self._observed: Dict[str, ObservedResource] = {}

        self.handlers: Dict[ActionKind, Callable[[Action], None]] = {
            ActionKind.CREATE: self._create,
            ActionKind.START: self._start,
            ActionKind.STOP: self._stop,
            ActionKind.DESTROY: self._destroy,
            ActionKind.CHECKPOINT: self._checkpoint,
            ActionKind.RESTORE: self._restore,
        }
        missing = set(ActionKind) - set(self.handlers)
        if missing:
            raise TypeError(f"No handler for action kind(s): {sorted(kind.value for kind in missing)}")

    def reconcile(self, actions: Iterable[Action], observed: Iterable[ObservedResource] = ()) -> ReconcileResult:
        """Run actions in order and report what happened to each."""
        actions = list(actions)
        self._observed = index_observed(observed)
        result = ReconcileResult()
        halted = False

        for action in actions:
            if halted:
                result.record(ActionOutcome(action, OutcomeStatus.SKIPPED))
                continue

            self._emit(action, ProgressStatus.STARTING)
            logger.info(action.describe())
            try:
                if action.is_destructive:
                    self._verify_owned(action)
                self.handlers[action.kind](action)
            except VMFleetError as e:
                failure = ActionFailed(action, e)
                logger.error(failure.message)
                self._emit(action, ProgressStatus.FAILED, failure)
                result.record(ActionOutcome(action, OutcomeStatus.FAILED, failure))
                if isinstance(e, OwnershipVerificationFailed) or self.failure_policy == FailurePolicy.STOP:
                    halted = True
                continue

            self._emit(action, ProgressStatus.COMPLETED)
            result.record(ActionOutcome(action, OutcomeStatus.SUCCEEDED))

        if result.skipped:
            logger.warning(f"Skipped {result.skipped} action(s) after a failure")
        return result

    def _emit(self, action: Action, status: ProgressStatus, error: Optional[ActionFailed] = None) -> None:
        if self.listener is not None:
            self.listener.on_event(ProgressEvent(action, status, error))

    def _verify_owned(self, action: Action) -> None:
        observed = self._observed.get(action.derived_name)
        if observed is None:
            observed = self.actuator.find(action.payload.platform_id)

        verdict = verify_ownership(action.derived_name, self.store.state, observed, self.config_path)
        if not verdict.owned:
            logger.warning(f"Refusing to {action.kind.value} {action.derived_name}: {verdict.reason}")
            raise OwnershipVerificationFailed(verdict.reason, action.derived_name, verdict.checks)

    def _create(self, action: Action) -> None:
        payload = action.payload
        created = self.actuator.create(
            CreateRequest(
                name=action.derived_name,
                cpu=payload.cpu,
                memory_mb=payload.memory_mb,
                base_image_path=payload.base_image_path,
                disk_path=payload.disk_path,
                differencing=payload.differencing,
                note=payload.note,
            )
        )
        self.store.add_resource(
            action.machine_name,
            ManagedResourceRecord(
                platform_id=created.platform_id,
                derived_name=action.derived_name,
                machine_name=action.machine_name,
                disk_path=payload.disk_path,
                created_at=timestamp(),
            ),
        )
        self.store.save()
        if payload.start:
            self.actuator.start(created.platform_id)

    def _start(self, action: Action) -> None:
        self.actuator.start(action.payload.platform_id)

    def _stop(self, action: Action) -> None:
        platform_id = action.payload.platform_id
        if action.payload.force:
            self.actuator.stop(platform_id, force=True)
            return

        self.actuator.stop(platform_id, force=False)
        deadline = time.time() + self.shutdown_timeout
        while True:
            current = self.actuator.find(platform_id)
            if current is None or not current.is_running:
                return
            if time.time() >= deadline:
                break
            time.sleep(self.poll_interval)

        logger.warning(
            f"{action.derived_name} still running after {self.shutdown_timeout}s, forcing power off"
        )
        self.actuator.stop(platform_id, force=True)

    def _destroy(self, action: Action) -> None:
        payload = action.payload
        self.actuator.destroy(payload.platform_id)
        if payload.disk_path:
            try:
                self.actuator.delete_artifact(payload.disk_path)
            except (ActuatorError, OSError) as e:
                logger.warning(f"Could not delete disk {payload.disk_path} for {action.derived_name}: {e}")

        self.store.remove_resource(action.machine_name)
        if self.store.has_resources():
            self.store.save()
        else:
            self.store.delete()

    def _checkpoint(self, action: Action) -> None:
        payload = action.payload
        snapshot = self.actuator.snapshot(payload.platform_id, payload.checkpoint_name)
        self.store.add_checkpoint(
            action.machine_name,
            CheckpointRecord(id=snapshot.id, name=snapshot.name, created_at=snapshot.created_at or timestamp()),
        )
        self.store.save()

    def _restore(self, action: Action) -> None:
        self.actuator.restore_snapshot(action.payload.platform_id, action.payload.checkpoint_id)
