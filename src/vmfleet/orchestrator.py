"""Command flows tying config, state, planning and execution together."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from vmfleet.actuator import Actuator
from vmfleet.config import Config
from vmfleet.errors import ActuatorError, MachineNotFound, OwnershipVerificationFailed, StateNotFound
from vmfleet.models import Action, DesiredConfig, ObservedResource, PlanResult
from vmfleet.naming import derive_name, has_valid_marker
from vmfleet.ownership import verify_ownership_by_machine
from vmfleet.planner import (
    PlanOptions,
    index_observed,
    plan,
    plan_checkpoint,
    plan_destroy,
    plan_halt,
    plan_restore,
)
from vmfleet.preflight import PreflightReport, assert_preflight_passed, run_preflight_checks
from vmfleet.reconciler import FailurePolicy, ProgressListener, ReconcileResult, Reconciler
from vmfleet.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class RejectedAction:
    action: Action
    reason: str

    def to_dict(self) -> dict:
        return {"action": self.action.to_dict(), "reason": self.reason}


@dataclass
class OperationReport:
    """What a command planned, executed, refused and cleaned up."""

    plan: PlanResult = field(default_factory=PlanResult)
    result: Optional[ReconcileResult] = None
    rejected: List[RejectedAction] = field(default_factory=list)
    pruned: List[str] = field(default_factory=list)
    preflight: Optional[PreflightReport] = None

    @property
    def ok(self) -> bool:
        return self.result is None or self.result.ok

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.to_dict(),
            "result": self.result.to_dict() if self.result else None,
            "rejected": [rejected.to_dict() for rejected in self.rejected],
            "pruned": list(self.pruned),
            "preflight": self.preflight.to_dict() if self.preflight else None,
        }


@dataclass
class MachineStatus:
    machine_name: str
    derived_name: str
    managed: bool
    runtime_state: str
    cpu: int = 0
    memory_mb: int = 0
    checkpoints: List[str] = field(default_factory=list)

    @property
    def missing(self) -> bool:
        return self.runtime_state == "missing"

    def to_dict(self) -> dict:
        return {
            "machine_name": self.machine_name,
            "derived_name": self.derived_name,
            "managed": self.managed,
            "runtime_state": self.runtime_state,
            "cpu": self.cpu,
            "memory_mb": self.memory_mb,
            "checkpoints": list(self.checkpoints),
        }


@dataclass
class StatusReport:
    project_name: str
    machines: List[MachineStatus] = field(default_factory=list)
    state_exists: bool = False
    platform_available: bool = True

    def count(self, runtime_state: str) -> int:
        return sum(1 for machine in self.machines if machine.runtime_state == runtime_state)

    def to_dict(self) -> dict:
        return {
            "project": self.project_name,
            "state_exists": self.state_exists,
            "platform_available": self.platform_available,
            "machines": [machine.to_dict() for machine in self.machines],
            "summary": {
                "total": len(self.machines),
                "running": self.count("running"),
                "off": self.count("off"),
                "missing": self.count("missing"),
            },
        }


class FleetOrchestrator:
    """Runs up/halt/destroy/checkpoint/restore/status for one fleet."""

    def __init__(
        self,
        desired: DesiredConfig,
        actuator: Actuator,
        store: Optional[StateStore] = None,
        listener: Optional[ProgressListener] = None,
        failure_policy: Optional[FailurePolicy] = None,
        network: Optional[str] = None,
        shutdown_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        self.desired = desired
        self.actuator = actuator
        self.store = store or StateStore(desired.config_path)
        self.listener = listener
        self.failure_policy = failure_policy or FailurePolicy.from_value(Config.FAILURE_POLICY)
        self.network = network or Config.PROXMOX_BRIDGE
        self.shutdown_timeout = Config.SHUTDOWN_TIMEOUT if shutdown_timeout is None else shutdown_timeout
        self.poll_interval = Config.POLL_INTERVAL if poll_interval is None else poll_interval

    def _reconciler(self) -> Reconciler:
        return Reconciler(
            self.actuator,
            self.store,
            self.desired.config_path,
            listener=self.listener,
            failure_policy=self.failure_policy,
            shutdown_timeout=self.shutdown_timeout,
            poll_interval=self.poll_interval,
        )

    def preflight(self) -> PreflightReport:
        report = run_preflight_checks(self.actuator, self.desired, self.network)
        assert_preflight_passed(report)
        return report

    def _load_if_exists(self):
        return self.store.load() if self.store.exists() else None

    def _require_state(self):
        if not self.store.exists():
            raise StateNotFound(str(self.store.state_path))
        return self.store.load()

    def _check_machines(self, machines: Optional[Sequence[str]]) -> None:
        for machine_name in machines or []:
            if self.store.get_resource(machine_name) is None:
                raise MachineNotFound(machine_name, "Run 'vmfleet status' to list managed machines.")

    def plan_up(self, options: Optional[PlanOptions] = None) -> OperationReport:
        """Compute the up plan without changing anything."""
        preflight = self.preflight()
        state = self._load_if_exists()
        observed = self.actuator.query()
        return OperationReport(plan=plan(self.desired, state, observed, options), preflight=preflight)

    def up(self, options: Optional[PlanOptions] = None) -> OperationReport:
        preflight = self.preflight()
        state = self.store.load_or_create(self.desired.project_name, self.desired.config_hash)
        if state.config_hash != self.desired.config_hash:
            logger.info(f"Config changed ({state.config_hash or 'none'} -> {self.desired.config_hash})")
            self.store.update_config_hash(self.desired.config_hash)
            self.store.save()

        observed = self.actuator.query()
        up_plan = plan(self.desired, state, observed, options)
        for machine_name in up_plan.skipped:
            logger.warning(f"Machine {machine_name} exists on the platform but is not managed by this config")

        report = OperationReport(plan=up_plan, preflight=preflight)
        if up_plan.actions:
            report.result = self._reconciler().reconcile(up_plan.actions, observed)
        return report

    def halt(self, machines: Optional[Sequence[str]] = None, force: bool = False) -> OperationReport:
        if not self.store.exists():
            return OperationReport()
        state = self.store.load()
        self._check_machines(machines)

        observed = self.actuator.query()
        halt_plan = plan_halt(state, observed, PlanOptions(filter_machines=machines, force=force))
        report = OperationReport(plan=halt_plan)
        if halt_plan.actions:
            report.result = self._reconciler().reconcile(halt_plan.actions, observed)
        return report

    def destroy(self, machines: Optional[Sequence[str]] = None) -> OperationReport:
        """Destroy managed machines, all of them when machines is None.

        Raises:
            OwnershipVerificationFailed: If no planned machine passes ownership verification
        """
        if not self.store.exists():
            return OperationReport()
        state = self.store.load()
        self._check_machines(machines)

        observed = self.actuator.query()
        destroy_plan = plan_destroy(state, observed, PlanOptions(filter_machines=machines))
        report = OperationReport(plan=destroy_plan)
        report.pruned = self._prune_missing(observed, machines)
        if not destroy_plan.actions:
            return report

        by_name = index_observed(observed)
        verified = []
        for action in destroy_plan.actions:
            verdict = verify_ownership_by_machine(
                action.machine_name, self.store.state, by_name, self.desired.config_path, self.desired.project_name
            )
            if verdict.owned:
                verified.append(action)
            else:
                logger.warning(f"{action.machine_name}: {verdict.reason}")
                report.rejected.append(RejectedAction(action, verdict.reason or "ownership verification failed"))

        if not verified:
            raise OwnershipVerificationFailed("No VMs passed ownership verification. No actions were taken.")

        report.result = self._reconciler().reconcile(verified, observed)
        return report

    def _prune_missing(self, observed: List[ObservedResource], machines: Optional[Sequence[str]]) -> List[str]:
        by_name = index_observed(observed)
        pruned = []
        for machine_name, record in self.store.list_resources().items():
            if machines is not None and machine_name not in machines:
                continue
            if record.derived_name not in by_name:
                self.store.remove_resource(machine_name)
                pruned.append(machine_name)

        if pruned:
            logger.info(f"Pruned stale state record(s): {', '.join(pruned)}")
            if self.store.has_resources():
                self.store.save()
            else:
                self.store.delete()
        return pruned

    def checkpoint(self, name: str) -> OperationReport:
        state = self._require_state()
        observed = self.actuator.query()
        checkpoint_plan = plan_checkpoint(state, observed, name)
        report = OperationReport(plan=checkpoint_plan)
        if checkpoint_plan.actions:
            report.result = self._reconciler().reconcile(checkpoint_plan.actions, observed)
        return report

    def restore(self, name: str) -> OperationReport:
        state = self._require_state()
        observed = self.actuator.query()
        restore_plan = plan_restore(state, observed, name)
        report = OperationReport(plan=restore_plan)
        if restore_plan.actions:
            report.result = self._reconciler().reconcile(restore_plan.actions, observed)
        return report

    def status(self) -> StatusReport:
        """Report every configured or managed machine with its live state."""
        report = StatusReport(project_name=self.desired.project_name)
        state = self._load_if_exists()
        report.state_exists = state is not None

        try:
            by_name = index_observed(self.actuator.query())
        except ActuatorError as e:
            logger.warning(f"Could not query platform, showing state only: {e}")
            report.platform_available = False
            by_name = {}

        machine_names = [machine.name for machine in self.desired.machines]
        if state is not None:
            machine_names += [name for name in state.resources if name not in machine_names]

        for machine_name in machine_names:
            record = state.resources.get(machine_name) if state is not None else None
            derived_name = record.derived_name if record else derive_name(
                self.desired.project_name, machine_name, self.desired.config_path
            )
            current = by_name.get(derived_name)
            if current is not None:
                runtime_state = current.runtime_state.value
            elif not report.platform_available:
                runtime_state = "unknown"
            elif record is not None:
                runtime_state = "missing"
            else:
                runtime_state = "not created"

            managed = record is not None and has_valid_marker(
                current.metadata_note if current else None, self.desired.config_path
            )
            report.machines.append(
                MachineStatus(
                    machine_name=machine_name,
                    derived_name=derived_name,
                    managed=managed,
                    runtime_state=runtime_state,
                    cpu=current.cpu if current else 0,
                    memory_mb=current.memory_mb if current else 0,
                    checkpoints=[cp.name for cp in record.checkpoints] if record else [],
                )
            )
        return report
