"""Persisted ownership ledger.

The ledger lives beside the fleet config file in ``.vmfleet/state.json`` and
records every VM vmfleet has created. Writes go to a temporary sibling file
that is renamed over the target, so readers only ever see a complete document.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmfleet.config import Config
from vmfleet.errors import StateCorrupted, StateNotFound, StateNotLoaded
from vmfleet.models import CheckpointRecord, ManagedResourceRecord, ProjectState

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def timestamp() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def state_dir_for(config_path: str) -> Path:
    return Path(os.path.abspath(config_path)).parent / Config.STATE_DIR_NAME


class StateStore:
    """Loads, mutates and atomically saves the state of one project."""

    def __init__(self, config_path: str) -> None:
        self.config_path = os.path.abspath(config_path)
        self.state_dir = state_dir_for(self.config_path)
        self.state_path = self.state_dir / Config.STATE_FILE_NAME
        self._state: Optional[ProjectState] = None

    @property
    def state(self) -> ProjectState:
        """Currently loaded state.

        Raises:
            StateNotLoaded: If neither load() nor create() has been called
        """
        if self._state is None:
            raise StateNotLoaded()
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is not None

    def exists(self) -> bool:
        return self.state_path.is_file()

    def load(self) -> ProjectState:
        """Read the state file from disk.

        Raises:
            StateNotFound: If there is no state file
            StateCorrupted: If the document is not valid state JSON
        """
        try:
            content = self.state_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StateNotFound(str(self.state_path))

        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateCorrupted(f"State file {self.state_path} is not valid JSON: {e}", str(self.state_path)) from e

        self._state = self._from_document(document)
        logger.debug(f"Loaded state for {self._state.project_name} with {len(self._state.resources)} resource(s)")
        return self._state

    def create(self, project_name: str, config_hash: str = "") -> ProjectState:
        """Start a fresh state for a project and persist it."""
        now = timestamp()
        self._state = ProjectState(
            config_hash=config_hash,
            config_path=self.config_path,
            project_name=project_name,
            created_at=now,
            updated_at=now,
            schema_version=SCHEMA_VERSION,
        )
        self.save()
        logger.info(f"Created state file {self.state_path}")
        return self._state

    def load_or_create(self, project_name: str, config_hash: str = "") -> ProjectState:
        if self.exists():
            return self.load()
        return self.create(project_name, config_hash)

    def save(self) -> None:
        """Atomically write the current state to disk."""
        state = self.state
        state.updated_at = timestamp()
        content = json.dumps(self._to_document(state), indent=2)

        self.state_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w", encoding="utf-8", dir=str(self.state_dir), prefix=".state-", suffix=".tmp", delete=False
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            try:
                tmp_file.write(content)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            except OSError:
                tmp_file.close()
                tmp_path.unlink(missing_ok=True)
                raise

        try:
            os.replace(tmp_path, self.state_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug(f"Saved state to {self.state_path}")

    def delete(self) -> None:
        """Remove the state file, and its directory when nothing else is in it."""
        self.state_path.unlink(missing_ok=True)
        try:
            self.state_dir.rmdir()
        except OSError:
            logger.debug(f"Leaving non-empty state directory {self.state_dir}")
        self._state = None
        logger.info(f"Deleted state file {self.state_path}")

    def add_resource(self, machine_name: str, record: ManagedResourceRecord) -> None:
        self.state.resources[machine_name] = record

    def remove_resource(self, machine_name: str) -> Optional[ManagedResourceRecord]:
        return self.state.resources.pop(machine_name, None)

    def get_resource(self, machine_name: str) -> Optional[ManagedResourceRecord]:
        return self.state.resources.get(machine_name)

    def list_resources(self) -> Dict[str, ManagedResourceRecord]:
        return dict(self.state.resources)

    def has_resources(self) -> bool:
        return bool(self.state.resources)

    def add_checkpoint(self, machine_name: str, checkpoint: CheckpointRecord) -> None:
        """Append a checkpoint to a machine's record.

        Raises:
            KeyError: If the machine has no record
        """
        record = self.get_resource(machine_name)
        if record is None:
            raise KeyError(f"Machine '{machine_name}' not found in state")
        record.checkpoints.append(checkpoint)

    def get_checkpoint(self, machine_name: str, checkpoint_name: str) -> Optional[CheckpointRecord]:
        record = self.get_resource(machine_name)
        if record is None:
            return None
        for checkpoint in record.checkpoints:
            if checkpoint.name == checkpoint_name:
                return checkpoint
        return None

    def remove_checkpoint(self, machine_name: str, checkpoint_name: str) -> Optional[CheckpointRecord]:
        record = self.get_resource(machine_name)
        checkpoint = self.get_checkpoint(machine_name, checkpoint_name)
        if record is None or checkpoint is None:
            return None
        record.checkpoints.remove(checkpoint)
        return checkpoint

    def update_config_hash(self, config_hash: str) -> None:
        self.state.config_hash = config_hash

    # Serialization

    def _to_document(self, state: ProjectState) -> Dict[str, Any]:
        return {
            "version": state.schema_version,
            "configHash": state.config_hash,
            "configPath": state.config_path,
            "project": state.project_name,
            "createdAt": state.created_at,
            "updatedAt": state.updated_at,
            "vms": {
                machine_name: {
                    "id": record.platform_id,
                    "name": record.derived_name,
                    "machineName": record.machine_name,
                    "diskPath": record.disk_path,
                    "createdAt": record.created_at,
                    "checkpoints": [
                        {"id": cp.id, "name": cp.name, "createdAt": cp.created_at} for cp in record.checkpoints
                    ],
                }
                for machine_name, record in state.resources.items()
            },
        }

    def _from_document(self, document: Any) -> ProjectState:
        if not isinstance(document, dict):
            raise StateCorrupted(f"State file {self.state_path} does not contain a JSON object", str(self.state_path))
        if not isinstance(document.get("project"), str):
            raise StateCorrupted(f"State file {self.state_path} has no project name", str(self.state_path))

        vms = document.get("vms")
        if vms is None:
            vms = {}
        if not isinstance(vms, dict):
            raise StateCorrupted(f"State file {self.state_path} has a malformed 'vms' section", str(self.state_path))

        updated_at = str(document.get("updatedAt") or document.get("createdAt") or timestamp())
        resources = {}
        for machine_name, entry in vms.items():
            resources[machine_name] = self._record_from_entry(machine_name, entry)

        try:
            schema_version = int(document.get("version") or SCHEMA_VERSION)
        except (TypeError, ValueError):
            raise StateCorrupted(f"State file {self.state_path} has an invalid version", str(self.state_path))

        return ProjectState(
            config_hash=str(document.get("configHash") or ""),
            config_path=str(document.get("configPath") or self.config_path),
            project_name=document["project"],
            created_at=str(document.get("createdAt") or updated_at),
            updated_at=updated_at,
            resources=resources,
            schema_version=schema_version,
        )

    def _record_from_entry(self, machine_name: str, entry: Any) -> ManagedResourceRecord:
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("name"):
            raise StateCorrupted(
                f"State entry for machine '{machine_name}' is missing its id or name", str(self.state_path)
            )
        raw_checkpoints = entry.get("checkpoints") or []
        if not isinstance(raw_checkpoints, list):
            raise StateCorrupted(
                f"Checkpoints for machine '{machine_name}' are not a list", str(self.state_path)
            )
        checkpoints: List[CheckpointRecord] = []
        for raw in raw_checkpoints:
            if not isinstance(raw, dict) or "id" not in raw or "name" not in raw:
                raise StateCorrupted(
                    f"Checkpoint entry for machine '{machine_name}' is malformed", str(self.state_path)
                )
            checkpoints.append(
                CheckpointRecord(id=str(raw["id"]), name=str(raw["name"]), created_at=str(raw.get("createdAt", "")))
            )
        return ManagedResourceRecord(
            platform_id=str(entry["id"]),
            derived_name=str(entry["name"]),
            machine_name=str(entry.get("machineName") or machine_name),
            disk_path=str(entry.get("diskPath", "")),
            created_at=str(entry.get("createdAt", "")),
            checkpoints=checkpoints,
        )
