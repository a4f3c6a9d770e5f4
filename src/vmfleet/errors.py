"""Exception hierarchy for vmfleet.

Every error raised by the engine carries a machine-readable code, a severity
that separates user-fixable problems from environment and internal ones, and
an optional suggestion telling the operator how to fix it.
"""

from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from vmfleet.models import Action, OwnershipChecks


class ErrorCode(Enum):
    """Machine-readable error codes."""

    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_INVALID_YAML = "CONFIG_INVALID_YAML"
    CONFIG_VALIDATION_FAILED = "CONFIG_VALIDATION_FAILED"
    PLATFORM_UNAVAILABLE = "PLATFORM_UNAVAILABLE"
    NETWORK_NOT_FOUND = "NETWORK_NOT_FOUND"
    BASE_IMAGE_NOT_FOUND = "BASE_IMAGE_NOT_FOUND"
    STATE_CORRUPTED = "STATE_CORRUPTED"
    STATE_NOT_FOUND = "STATE_NOT_FOUND"
    STATE_NOT_LOADED = "STATE_NOT_LOADED"
    MACHINE_NOT_FOUND = "MACHINE_NOT_FOUND"
    CHECKPOINT_NOT_FOUND = "CHECKPOINT_NOT_FOUND"
    DUPLICATE_CHECKPOINT = "DUPLICATE_CHECKPOINT"
    OWNERSHIP_VERIFICATION_FAILED = "OWNERSHIP_VERIFICATION_FAILED"
    ACTUATOR_ERROR = "ACTUATOR_ERROR"
    ACTION_FAILED = "ACTION_FAILED"
    USAGE_ERROR = "USAGE_ERROR"


class Severity(Enum):
    """Who is expected to fix the problem."""

    USER = "user"
    ENVIRONMENT = "environment"
    INTERNAL = "internal"


EXIT_CODES = {
    Severity.USER: 1,
    Severity.ENVIRONMENT: 2,
    Severity.INTERNAL: 2,
}


class VMFleetError(Exception):
    """Base exception for all vmfleet errors."""

    code = ErrorCode.ACTION_FAILED
    severity = Severity.INTERNAL

    def __init__(self, message: str, suggestion: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.severity]

    def format(self) -> str:
        """Format the error for display."""
        output = f"Error: {self.message}"
        if self.suggestion:
            output += f"\n\nFix: {self.suggestion}"
        return output

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
            "suggestion": self.suggestion,
        }


class ConfigError(VMFleetError):
    """Raised when the fleet configuration file cannot be loaded or is invalid."""

    severity = Severity.USER

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIG_VALIDATION_FAILED,
        suggestion: Optional[str] = None,
        path: Optional[str] = None,
        validation_errors: Optional[Sequence[Tuple[str, str]]] = None,
    ) -> None:
        super().__init__(message, suggestion)
        self.code = code
        self.path = path
        self.validation_errors: List[Tuple[str, str]] = list(validation_errors or [])

    def format(self) -> str:
        output = super().format()
        if self.validation_errors:
            output += "\n\nValidation errors:"
            for field_path, problem in self.validation_errors:
                output += f"\n  - {field_path}: {problem}"
        return output


class PreflightFailed(VMFleetError):
    """Raised when the platform is not ready for planning."""

    def __init__(self, message: str, code: ErrorCode, suggestion: Optional[str] = None,
                 missing: Optional[Sequence[str]] = None) -> None:
        super().__init__(message, suggestion)
        self.code = code
        self.missing = list(missing or [])
        # A missing base image is fixable in the config; the rest is the host
        self.severity = Severity.USER if code == ErrorCode.BASE_IMAGE_NOT_FOUND else Severity.ENVIRONMENT


class StateCorrupted(VMFleetError):
    """Raised when the persisted state document cannot be parsed."""

    code = ErrorCode.STATE_CORRUPTED
    severity = Severity.ENVIRONMENT

    def __init__(self, message: str, state_path: Optional[str] = None) -> None:
        super().__init__(
            message,
            "Inspect or restore the state file manually. vmfleet never deletes or recreates a corrupted state file.",
        )
        self.state_path = state_path


class StateNotFound(VMFleetError):
    """Raised when load() is called and no state file exists."""

    code = ErrorCode.STATE_NOT_FOUND
    severity = Severity.USER

    def __init__(self, state_path: str) -> None:
        super().__init__(f"No state file at {state_path}", "Run 'vmfleet up' first to create machines.")
        self.state_path = state_path


class StateNotLoaded(VMFleetError):
    """Raised when the state store is used before load() or create()."""

    code = ErrorCode.STATE_NOT_LOADED
    severity = Severity.INTERNAL

    def __init__(self) -> None:
        super().__init__("State not loaded. Call load() or create() first.")


class MachineNotFound(VMFleetError):
    """Raised when a named machine has no persisted record."""

    code = ErrorCode.MACHINE_NOT_FOUND
    severity = Severity.USER

    def __init__(self, machine_name: str, suggestion: Optional[str] = None) -> None:
        super().__init__(f"Machine '{machine_name}' not found in state", suggestion)
        self.machine_name = machine_name


class CheckpointNotFound(VMFleetError):
    """Raised when a restore targets a checkpoint some machines do not have."""

    code = ErrorCode.CHECKPOINT_NOT_FOUND
    severity = Severity.USER

    def __init__(self, checkpoint_name: str, machines: Sequence[str]) -> None:
        super().__init__(
            f"Checkpoint '{checkpoint_name}' not found for machine(s): {', '.join(machines)}",
            f"Run 'vmfleet checkpoint --name {checkpoint_name}' to create it first.",
        )
        self.checkpoint_name = checkpoint_name
        self.machines = list(machines)


class DuplicateCheckpoint(VMFleetError):
    """Raised when a checkpoint name is already used by a machine."""

    code = ErrorCode.DUPLICATE_CHECKPOINT
    severity = Severity.USER

    def __init__(self, checkpoint_name: str, machine_name: str) -> None:
        super().__init__(
            f"Checkpoint '{checkpoint_name}' already exists for machine '{machine_name}'",
            "Use a different checkpoint name.",
        )
        self.checkpoint_name = checkpoint_name
        self.machine_name = machine_name


class OwnershipVerificationFailed(VMFleetError):
    """Raised when a destructive action is blocked by the ownership gate."""

    code = ErrorCode.OWNERSHIP_VERIFICATION_FAILED
    severity = Severity.USER

    def __init__(self, message: str, derived_name: Optional[str] = None,
                 checks: Optional["OwnershipChecks"] = None) -> None:
        super().__init__(
            message,
            "This VM was not created by vmfleet or belongs to a different configuration. "
            "Remove it manually if it really should go.",
        )
        self.derived_name = derived_name
        self.checks = checks


class ActuatorErrorKind(Enum):
    """Classification of failures raised at the actuator boundary."""

    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    UNAVAILABLE = "unavailable"
    EXECUTION_FAILED = "execution_failed"
    TIMED_OUT = "timed_out"


class ActuatorError(VMFleetError):
    """Raised by an actuator when a platform call fails."""

    code = ErrorCode.ACTUATOR_ERROR
    severity = Severity.ENVIRONMENT

    def __init__(self, message: str, kind: ActuatorErrorKind = ActuatorErrorKind.EXECUTION_FAILED,
                 detail: Optional[str] = None) -> None:
        super().__init__(message, _ACTUATOR_SUGGESTIONS.get(kind))
        self.kind = kind
        self.detail = detail

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = self.kind.value
        return data


_ACTUATOR_SUGGESTIONS = {
    ActuatorErrorKind.ACCESS_DENIED: "Check that the API token has VM.Allocate, VM.PowerMgmt and VM.Snapshot privileges.",
    ActuatorErrorKind.UNAVAILABLE: "Check that the virtualization host is reachable and its management service is running.",
    ActuatorErrorKind.TIMED_OUT: "The platform did not answer in time. Retry, or raise VMFLEET_COMMAND_TIMEOUT.",
}


class ActionFailed(VMFleetError):
    """Wraps the error that made a single planned action fail."""

    code = ErrorCode.ACTION_FAILED
    severity = Severity.ENVIRONMENT

    def __init__(self, action: "Action", cause: Exception) -> None:
        message = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(
            f"{action.kind.value} {action.derived_name} failed: {message}",
            getattr(cause, "suggestion", None),
        )
        self.action = action
        self.cause = cause
        if isinstance(cause, VMFleetError):
            self.severity = cause.severity


class UsageError(VMFleetError):
    """Raised for invalid command-line argument combinations."""

    code = ErrorCode.USAGE_ERROR
    severity = Severity.USER

    def __init__(self, message: str) -> None:
        super().__init__(message, "Run 'vmfleet --help' for usage.")
