"""Abstract boundary to the virtualization platform."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from vmfleet.errors import ActuatorErrorKind
from vmfleet.models import ObservedResource


@dataclass(frozen=True)
class CreateRequest:
    """Everything an actuator needs to create one VM."""

    name: str
    cpu: int
    memory_mb: int
    base_image_path: str
    disk_path: str
    differencing: bool
    note: str


@dataclass(frozen=True)
class CreatedResource:
    platform_id: str
    name: str


@dataclass(frozen=True)
class SnapshotInfo:
    id: str
    name: str
    created_at: str


@dataclass
class AvailabilityResult:
    """Outcome of an availability check."""

    available: bool
    message: str = ""
    details: List[str] = field(default_factory=list)


class Actuator(ABC):
    """Performs the actual mutations on the platform.

    Implementations raise ActuatorError for every platform failure.
    """

    @abstractmethod
    def query(self) -> List[ObservedResource]:
        """List every VM visible on the platform."""

    @abstractmethod
    def create(self, request: CreateRequest) -> CreatedResource:
        pass

    @abstractmethod
    def start(self, platform_id: str) -> None:
        pass

    @abstractmethod
    def stop(self, platform_id: str, force: bool = False) -> None:
        """Request a stop. A graceful stop returns once the request is accepted."""

    @abstractmethod
    def destroy(self, platform_id: str) -> None:
        """Remove a VM, stopping it first if needed."""

    @abstractmethod
    def snapshot(self, platform_id: str, name: str) -> SnapshotInfo:
        pass

    @abstractmethod
    def restore_snapshot(self, platform_id: str, snapshot_id: str) -> None:
        pass

    @abstractmethod
    def delete_artifact(self, path: str) -> None:
        pass

    @abstractmethod
    def check_available(self) -> AvailabilityResult:
        pass

    @abstractmethod
    def network_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def artifact_exists(self, path: str) -> bool:
        pass

    def find(self, platform_id: str) -> Optional[ObservedResource]:
        """Return the observed resource with the given id, if present."""
        for resource in self.query():
            if resource.platform_id == platform_id:
                return resource
        return None


_PATTERNS = [
    (re.compile(r"access denied|permission|unauthori[sz]ed|forbidden|\b40[13]\b", re.IGNORECASE),
     ActuatorErrorKind.ACCESS_DENIED),
    (re.compile(r"timed? ?out|timeout", re.IGNORECASE), ActuatorErrorKind.TIMED_OUT),
    (re.compile(r"not found|does not exist|no such|\b404\b", re.IGNORECASE), ActuatorErrorKind.NOT_FOUND),
    (re.compile(r"connection refused|unreachable|unavailable|not running|name or service not known",
                re.IGNORECASE),
     ActuatorErrorKind.UNAVAILABLE),
]


def classify_error_text(text: Optional[str]) -> ActuatorErrorKind:
    """Map raw platform error output to an error kind."""
    if not text:
        return ActuatorErrorKind.EXECUTION_FAILED
    for pattern, kind in _PATTERNS:
        if pattern.search(text):
            return kind
    return ActuatorErrorKind.EXECUTION_FAILED
