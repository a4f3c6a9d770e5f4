"""Loading, validation and resolution of the fleet YAML file.

A fleet file looks like::

    project:
      name: lab
    defaults:
      cpu: 2
      memory: 2048
      base_image: /var/lib/vz/template/base.qcow2
    machines:
      - name: web
      - name: db
        memory: 4096
    settings:
      auto_start: true
"""

import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from vmfleet.config import Config
from vmfleet.errors import ConfigError, ErrorCode
from vmfleet.models import DesiredConfig, DiskStrategy, MachineSpec

logger = logging.getLogger(__name__)

DEFAULT_CPU = 2
DEFAULT_MEMORY_MB = 2048
DEFAULT_DISK_STRATEGY = DiskStrategy.DIFFERENCING
DEFAULT_AUTO_START = True

_NAME_CHARS = re.compile(r"^[a-z0-9-]+$")


class ProjectSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=32)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not _NAME_CHARS.match(value):
            raise ValueError("must contain only lowercase letters, digits and hyphens")
        return value


class DefaultsSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cpu: Optional[int] = Field(default=None, ge=1, le=64)
    memory: Optional[int] = Field(default=None, ge=512, le=1048576)
    base_image: Optional[str] = None
    disk_strategy: Optional[DiskStrategy] = None


class MachineSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=16)
    cpu: Optional[int] = Field(default=None, ge=1, le=64)
    memory: Optional[int] = Field(default=None, ge=512, le=1048576)
    base_image: Optional[str] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not _NAME_CHARS.match(value):
            raise ValueError("must contain only lowercase letters, digits and hyphens")
        return value


class SettingsSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    artifact_path: Optional[str] = None
    auto_start: Optional[bool] = None


class FleetFile(BaseModel):
    """Root of the fleet YAML document."""

    model_config = ConfigDict(extra="forbid")

    project: ProjectSection
    defaults: DefaultsSection = Field(default_factory=DefaultsSection)
    machines: List[MachineSection] = Field(min_length=1)
    settings: SettingsSection = Field(default_factory=SettingsSection)

    @model_validator(mode="after")
    def check_machines(self) -> "FleetFile":
        seen = set()
        for machine in self.machines:
            if machine.name in seen:
                raise ValueError(f"duplicate machine name '{machine.name}'")
            seen.add(machine.name)
            if not machine.base_image and not self.defaults.base_image:
                raise ValueError(
                    f"machine '{machine.name}' has no base_image and no default base_image is defined"
                )
        return self


def load_yaml_file(path: str) -> Any:
    """Read and parse a YAML file.

    Raises:
        ConfigError: If the file is missing or is not valid YAML
    """
    config_file = Path(path)
    if not config_file.is_file():
        raise ConfigError(
            f"Config file not found: {path}",
            code=ErrorCode.CONFIG_NOT_FOUND,
            suggestion="Check the path, or create a vmfleet.yaml in the current directory.",
            path=path,
        )
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML in {path}: {e}",
            code=ErrorCode.CONFIG_INVALID_YAML,
            suggestion="Fix the YAML syntax error.",
            path=path,
        ) from e


def validate_config(raw: Any, path: Optional[str] = None) -> FleetFile:
    """Validate a parsed document against the fleet schema.

    Raises:
        ConfigError: With one entry per failing field
    """
    if not isinstance(raw, dict):
        raise ConfigError(
            "Config must be a YAML mapping with project and machines sections",
            suggestion="See the example fleet file in the README.",
            path=path,
        )
    try:
        return FleetFile.model_validate(raw)
    except ValidationError as e:
        problems = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"]) or "(root)"
            problems.append((location, error["msg"]))
        raise ConfigError(
            f"Config validation failed with {len(problems)} error(s)",
            suggestion="Fix the listed fields and run 'vmfleet validate' again.",
            path=path,
            validation_errors=problems,
        ) from e


def expand_path(value: str, base_dir: str) -> str:
    """Expand ~ and environment variables, then anchor relative paths at base_dir."""
    expanded = os.path.expandvars(os.path.expanduser(value))
    if not os.path.isabs(expanded):
        expanded = os.path.normpath(os.path.join(base_dir, expanded))
    return expanded


def compute_config_hash(path: str) -> str:
    content = Path(path).read_bytes()
    return hashlib.sha256(content).hexdigest()[:8]


def resolve_config(fleet: FleetFile, config_path: str) -> DesiredConfig:
    """Apply defaults and expand paths, producing the DesiredConfig."""
    absolute_path = os.path.abspath(config_path)
    base_dir = os.path.dirname(absolute_path)
    defaults = fleet.defaults

    machines = []
    for machine in fleet.machines:
        base_image = machine.base_image or defaults.base_image
        machines.append(
            MachineSpec(
                name=machine.name,
                cpu=machine.cpu or defaults.cpu or DEFAULT_CPU,
                memory_mb=machine.memory or defaults.memory or DEFAULT_MEMORY_MB,
                base_image_path=expand_path(base_image, base_dir),
                disk_strategy=defaults.disk_strategy or DEFAULT_DISK_STRATEGY,
            )
        )

    artifact_raw = fleet.settings.artifact_path or Config.default_artifact_path(fleet.project.name)
    auto_start = fleet.settings.auto_start
    return DesiredConfig(
        project_name=fleet.project.name,
        machines=tuple(machines),
        artifact_path=expand_path(artifact_raw, base_dir),
        config_path=absolute_path,
        config_hash=compute_config_hash(absolute_path),
        auto_start=DEFAULT_AUTO_START if auto_start is None else auto_start,
    )


def load_desired_config(path: str) -> DesiredConfig:
    """Load, validate and resolve a fleet file."""
    raw = load_yaml_file(path)
    fleet = validate_config(raw, path)
    desired = resolve_config(fleet, path)
    logger.debug(f"Loaded {len(desired.machines)} machine(s) for project {desired.project_name} from {path}")
    return desired
