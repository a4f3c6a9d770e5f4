"""Tests for plan computation."""

import os

import pytest

from vmfleet.errors import CheckpointNotFound, DuplicateCheckpoint
from vmfleet.models import (
    ActionKind,
    CheckpointRecord,
    DesiredConfig,
    DiskStrategy,
    MachineSpec,
    ManagedResourceRecord,
    ObservedResource,
    ProjectState,
    RuntimeState,
)
from vmfleet.naming import derive_marker, derive_name
from vmfleet.planner import (
    PlanOptions,
    format_summary,
    has_actions,
    plan,
    plan_checkpoint,
    plan_destroy,
    plan_halt,
    plan_restore,
)
from vmfleet.ownership import verify_ownership

CONFIG_PATH = "/srv/fleet/vmfleet.yaml"


@pytest.fixture
def fleet():
    return DesiredConfig(
        project_name="demo",
        machines=(
            MachineSpec("web", 2, 2048, "/images/base.qcow2"),
            MachineSpec("db", 4, 4096, "/images/base.qcow2", DiskStrategy.COPY),
        ),
        artifact_path="/vms/demo",
        config_path=CONFIG_PATH,
    )


def name_of(machine):
    return derive_name("demo", machine, CONFIG_PATH)


def state_with(*machines, checkpoints=()):
    state = ProjectState("", CONFIG_PATH, "demo", "t", "t")
    for index, machine in enumerate(machines):
        record = ManagedResourceRecord(str(100 + index), name_of(machine), machine, f"/vms/demo/{machine}.qcow2", "t")
        record.checkpoints = [CheckpointRecord(f"snap-{machine}-{name}", name, "t") for name in checkpoints]
        state.resources[machine] = record
    return state


def observed(machine, runtime_state=RuntimeState.RUNNING, platform_id=None):
    return ObservedResource(platform_id or f"vm-{machine}", name_of(machine), runtime_state, derive_marker(CONFIG_PATH))


class TestPlanUp:
    """Test cases for the up plan."""

    def test_creates_everything_from_scratch(self, fleet):
        result = plan(fleet, None, [])

        assert [a.kind for a in result.actions] == [ActionKind.CREATE, ActionKind.CREATE]
        assert result.summary.create == 2
        assert [a.machine_name for a in result.actions] == ["web", "db"]

    def test_create_payload(self, fleet):
        result = plan(fleet, None, [])

        web, db = result.actions
        assert web.derived_name == name_of("web")
        assert web.payload.disk_path == os.path.join("/vms/demo", "web.qcow2")
        assert web.payload.differencing is True
        assert web.payload.note == derive_marker(CONFIG_PATH)
        assert web.payload.start is True
        assert db.payload.differencing is False
        assert db.payload.cpu == 4
        assert db.payload.memory_mb == 4096

    def test_running_machines_are_unchanged(self, fleet):
        result = plan(fleet, state_with("web", "db"), [observed("web"), observed("db")])

        assert result.actions == []
        assert result.summary.unchanged == 2
        assert has_actions(result) is False

    def test_stopped_machine_is_started(self, fleet):
        result = plan(fleet, state_with("web", "db"), [observed("web", RuntimeState.OFF), observed("db")])

        assert len(result.actions) == 1
        action = result.actions[0]
        assert action.kind == ActionKind.START
        assert action.machine_name == "web"
        assert action.payload.platform_id == "vm-web"

    def test_auto_start_disabled(self, fleet):
        result = plan(fleet, state_with("web"), [observed("web", RuntimeState.OFF)],
                      PlanOptions(auto_start=False, filter_machines=["web"]))

        assert result.actions == []
        assert result.summary.unchanged == 1

    def test_create_without_auto_start(self, fleet):
        result = plan(fleet, None, [], PlanOptions(auto_start=False))
        assert all(action.payload.start is False for action in result.actions)

    @pytest.mark.parametrize("runtime_state", [RuntimeState.SAVED, RuntimeState.PAUSED,
                                               RuntimeState.TRANSITIONAL, RuntimeState.OTHER])
    def test_non_off_states_are_left_alone(self, fleet, runtime_state):
        result = plan(fleet, state_with("web"), [observed("web", runtime_state)], PlanOptions(filter_machines=["web"]))
        assert result.actions == []

    def test_orphaned_record_is_recreated(self, fleet):
        result = plan(fleet, state_with("web", "db"), [observed("db")])

        assert [(a.kind, a.machine_name) for a in result.actions] == [(ActionKind.CREATE, "web")]

    def test_unmanaged_resource_with_our_name_is_skipped(self, fleet):
        result = plan(fleet, None, [observed("web", RuntimeState.OFF)])

        assert [a.machine_name for a in result.actions] == ["db"]
        assert result.skipped == ["web"]

    def test_idempotent(self, fleet):
        state = state_with("web", "db")
        live = [observed("web"), observed("db")]

        first = plan(fleet, state, live)
        second = plan(fleet, state, live)

        assert first.actions == [] and second.actions == []
        assert first.summary == second.summary

    def test_filter_machines(self, fleet):
        result = plan(fleet, None, [], PlanOptions(filter_machines=["db"]))
        assert [a.machine_name for a in result.actions] == ["db"]


class TestPlanHalt:
    def test_stops_running_managed_machines(self, fleet):
        result = plan_halt(state_with("web", "db"), [observed("web"), observed("db", RuntimeState.OFF)])

        assert [(a.kind, a.machine_name) for a in result.actions] == [(ActionKind.STOP, "web")]
        assert result.summary.unchanged == 1
        assert result.actions[0].payload.force is False

    def test_force_is_carried(self, fleet):
        result = plan_halt(state_with("web"), [observed("web")], PlanOptions(force=True))
        assert result.actions[0].payload.force is True

    def test_no_state(self):
        assert plan_halt(None, [observed("web")]).actions == []


class TestPlanDestroy:
    def test_destroys_existing_records(self):
        result = plan_destroy(state_with("web", "db"), [observed("web"), observed("db")])

        assert [a.kind for a in result.actions] == [ActionKind.DESTROY, ActionKind.DESTROY]
        assert result.actions[0].payload.disk_path == "/vms/demo/web.qcow2"
        assert result.actions[0].payload.platform_id == "vm-web"

    def test_missing_resource_counts_as_unchanged(self):
        result = plan_destroy(state_with("web", "db"), [observed("db")])

        assert [a.machine_name for a in result.actions] == ["db"]
        assert result.summary.unchanged == 1

    def test_filter_applies_to_records_outside_config(self):
        # "old" is not in the desired config, only in state
        state = state_with("web", "old")
        result = plan_destroy(state, [observed("web"), observed("old")], PlanOptions(filter_machines=["old"]))

        assert [a.machine_name for a in result.actions] == ["old"]

    def test_unmanaged_resource_never_destroyed(self):
        """A resource with a valid-looking name but no record is never targeted."""
        foreign = observed("web")

        result = plan_destroy(state_with(), [foreign])
        verdict = verify_ownership(foreign.name, state_with(), foreign, CONFIG_PATH)

        assert result.actions == []
        assert verdict.owned is False
        assert verdict.checks.in_persisted_state is False


class TestForeignResourceSafety:
    """Foreign resources never show up in any plan."""

    def test_foreign_resources_ignored_everywhere(self, fleet):
        foreign = [
            ObservedResource("900", "someone-elses-vm", RuntimeState.RUNNING),
            ObservedResource("901", "demo-web-deadbeef", RuntimeState.OFF, derive_marker("/elsewhere.yaml")),
            ObservedResource("902", "demo-cache-12345678", RuntimeState.RUNNING),
        ]
        state = state_with("web", "db")
        live = [observed("web"), observed("db")] + foreign

        results = [
            plan(fleet, state, live),
            plan_halt(state, live),
            plan_destroy(state, live),
            plan_checkpoint(state, live, "clean"),
        ]

        foreign_ids = {resource.platform_id for resource in foreign}
        for result in results:
            for action in result.actions:
                assert getattr(action.payload, "platform_id", None) not in foreign_ids


class TestPlanCheckpointRestore:
    def test_checkpoint_all(self):
        result = plan_checkpoint(state_with("web", "db"), [observed("web"), observed("db")], "clean")

        assert [a.kind for a in result.actions] == [ActionKind.CHECKPOINT] * 2
        assert result.summary.checkpoint == 2

    def test_duplicate_checkpoint(self):
        with pytest.raises(DuplicateCheckpoint) as exc_info:
            plan_checkpoint(state_with("web", checkpoints=["clean"]), [observed("web")], "clean")
        assert exc_info.value.machine_name == "web"

    def test_checkpoint_skips_missing_vm(self):
        result = plan_checkpoint(state_with("web", "db"), [observed("web")], "clean")
        assert result.skipped == ["db"]

    def test_restore_uses_checkpoint_id(self):
        result = plan_restore(state_with("web", checkpoints=["clean"]), [observed("web")], "clean")

        payload = result.actions[0].payload
        assert payload.checkpoint_id == "snap-web-clean"
        assert payload.checkpoint_name == "clean"

    def test_restore_missing_checkpoint(self):
        state = state_with("web", checkpoints=["clean"])
        state.resources.update(state_with("db").resources)

        with pytest.raises(CheckpointNotFound) as exc_info:
            plan_restore(state, [observed("web"), observed("db")], "clean")
        assert exc_info.value.machines == ["db"]


class TestFormatSummary:
    def test_no_changes(self, fleet):
        assert format_summary(plan(fleet, state_with("web", "db"), [observed("web"), observed("db")])) == \
            "No changes needed"

    def test_counts(self, fleet):
        result = plan(fleet, state_with("web", "db"), [observed("web", RuntimeState.OFF)])
        assert format_summary(result) == "1 to create, 1 to start"
