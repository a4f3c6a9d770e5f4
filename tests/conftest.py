"""Shared test fixtures and configuration for vmfleet tests."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import pytest

from vmfleet.actuator import Actuator, CreatedResource, CreateRequest, AvailabilityResult, SnapshotInfo
from vmfleet.errors import ActuatorError, ActuatorErrorKind
from vmfleet.fleet_config import load_desired_config
from vmfleet.models import ObservedResource, RuntimeState
from vmfleet.state_store import StateStore

BASE_IMAGE = "/var/lib/vz/template/base.qcow2"

MUTATING_CALLS = {"create", "start", "stop", "destroy", "snapshot", "restore_snapshot", "delete_artifact"}


@dataclass
class FakeVM:
    platform_id: str
    name: str
    state: RuntimeState
    note: Optional[str] = None
    cpu: int = 2
    memory_mb: int = 2048
    snapshots: Dict[str, str] = field(default_factory=dict)


class FakeActuator(Actuator):
    """In-memory platform that reflects every executed action."""

    def __init__(self) -> None:
        self.vms: Dict[str, FakeVM] = {}
        self.artifacts: Set[str] = {BASE_IMAGE}
        self.networks: Set[str] = {"vmbr0"}
        self.available = True
        self.ignore_shutdown = False
        self.calls: List[Tuple] = []
        self.errors: Dict[str, Exception] = {}
        self._next_id = 100

    def fail(self, method: str, error: Exception) -> None:
        """Make the next and all later calls to method raise error."""
        self.errors[method] = error

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if method in self.errors:
            raise self.errors[method]

    def _get(self, platform_id: str) -> FakeVM:
        if platform_id not in self.vms:
            raise ActuatorError(f"VM {platform_id} not found", ActuatorErrorKind.NOT_FOUND)
        return self.vms[platform_id]

    def mutating_calls(self) -> List[Tuple]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def add_vm(self, name: str, state: RuntimeState = RuntimeState.RUNNING, note: Optional[str] = None,
               cpu: int = 2, memory_mb: int = 2048) -> str:
        """Put a VM on the platform without going through create()."""
        platform_id = str(self._next_id)
        self._next_id += 1
        self.vms[platform_id] = FakeVM(platform_id, name, state, note, cpu, memory_mb)
        return platform_id

    def by_name(self, name: str) -> Optional[FakeVM]:
        for vm in self.vms.values():
            if vm.name == name:
                return vm
        return None

    def query(self) -> List[ObservedResource]:
        self._record("query")
        return [
            ObservedResource(vm.platform_id, vm.name, vm.state, vm.note, vm.cpu, vm.memory_mb)
            for vm in self.vms.values()
        ]

    def create(self, request: CreateRequest) -> CreatedResource:
        self._record("create", request.name)
        platform_id = self.add_vm(request.name, RuntimeState.OFF, request.note, request.cpu, request.memory_mb)
        self.artifacts.add(request.disk_path)
        return CreatedResource(platform_id=platform_id, name=request.name)

    def start(self, platform_id: str) -> None:
        self._record("start", platform_id)
        self._get(platform_id).state = RuntimeState.RUNNING

    def stop(self, platform_id: str, force: bool = False) -> None:
        self._record("stop", platform_id, force)
        vm = self._get(platform_id)
        if force or not self.ignore_shutdown:
            vm.state = RuntimeState.OFF

    def destroy(self, platform_id: str) -> None:
        self._record("destroy", platform_id)
        self._get(platform_id)
        del self.vms[platform_id]

    def snapshot(self, platform_id: str, name: str) -> SnapshotInfo:
        self._record("snapshot", platform_id, name)
        snapshot_id = f"snap-{platform_id}-{name}"
        self._get(platform_id).snapshots[snapshot_id] = name
        return SnapshotInfo(id=snapshot_id, name=name, created_at="2026-01-01T00:00:00+00:00")

    def restore_snapshot(self, platform_id: str, snapshot_id: str) -> None:
        self._record("restore_snapshot", platform_id, snapshot_id)
        if snapshot_id not in self._get(platform_id).snapshots:
            raise ActuatorError(f"Snapshot {snapshot_id} not found", ActuatorErrorKind.NOT_FOUND)

    def delete_artifact(self, path: str) -> None:
        self._record("delete_artifact", path)
        self.artifacts.discard(path)

    def check_available(self) -> AvailabilityResult:
        self._record("check_available")
        return AvailabilityResult(available=self.available, message="fake platform")

    def network_exists(self, name: str) -> bool:
        self._record("network_exists", name)
        return name in self.networks

    def artifact_exists(self, path: str) -> bool:
        self._record("artifact_exists", path)
        return path in self.artifacts


FLEET_YAML = """\
project:
  name: demo
defaults:
  cpu: 2
  memory: 2048
  base_image: {base_image}
machines:
  - name: web
  - name: db
    memory: 4096
settings:
  artifact_path: {artifact_path}
"""


@pytest.fixture
def config_file(tmp_path):
    """Fleet config with two machines in a temporary directory."""
    path = tmp_path / "vmfleet.yaml"
    path.write_text(FLEET_YAML.format(base_image=BASE_IMAGE, artifact_path=tmp_path / "vms"))
    return path


@pytest.fixture
def desired(config_file):
    return load_desired_config(str(config_file))


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def store(desired):
    return StateStore(desired.config_path)


@pytest.fixture
def mock_env(monkeypatch):
    """Set up Proxmox environment variables."""
    env_vars = {
        "API_TOKEN": "root@pam!vmfleet=secretvalue",
        "PROXMOX_HOST": "pve.test",
        "PROXMOX_NODE": "pve",
        "SSH_USER": "root",
        "SSH_KEY_PATH": "/tmp/id_test",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    return env_vars
