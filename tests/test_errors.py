"""Tests for the vmfleet exception hierarchy."""

import pytest

from vmfleet.errors import (
    ActionFailed,
    ActuatorError,
    ActuatorErrorKind,
    CheckpointNotFound,
    ConfigError,
    ErrorCode,
    OwnershipVerificationFailed,
    PreflightFailed,
    Severity,
    StateCorrupted,
    StateNotLoaded,
    UsageError,
    VMFleetError,
)
from vmfleet.models import Action, StartPayload


@pytest.mark.parametrize("error,exit_code", [
    (ConfigError("bad"), 1),
    (UsageError("bad flags"), 1),
    (CheckpointNotFound("clean", ["web"]), 1),
    (OwnershipVerificationFailed("not ours"), 1),
    (StateCorrupted("garbage"), 2),
    (StateNotLoaded(), 2),
    (ActuatorError("down", ActuatorErrorKind.UNAVAILABLE), 2),
])
def test_exit_codes(error, exit_code):
    assert isinstance(error, VMFleetError)
    assert error.exit_code == exit_code


def test_format_with_suggestion():
    error = VMFleetError("Something broke", "Try again")
    assert error.format() == "Error: Something broke\n\nFix: Try again"


def test_format_without_suggestion():
    assert VMFleetError("Something broke").format() == "Error: Something broke"


def test_config_error_lists_validation_errors():
    error = ConfigError("Invalid configuration", validation_errors=[("machines.0.cpu", "must be >= 1")])

    assert "  - machines.0.cpu: must be >= 1" in error.format()
    assert error.code == ErrorCode.CONFIG_VALIDATION_FAILED


@pytest.mark.parametrize("code,severity", [
    (ErrorCode.PLATFORM_UNAVAILABLE, Severity.ENVIRONMENT),
    (ErrorCode.NETWORK_NOT_FOUND, Severity.ENVIRONMENT),
    (ErrorCode.BASE_IMAGE_NOT_FOUND, Severity.USER),
])
def test_preflight_severity(code, severity):
    assert PreflightFailed("not ready", code).severity == severity


def test_actuator_error_suggestion_and_dict():
    error = ActuatorError("denied", ActuatorErrorKind.ACCESS_DENIED)

    assert "VM.Allocate" in error.suggestion
    assert error.to_dict() == {
        "code": "ACTUATOR_ERROR",
        "severity": "environment",
        "message": "denied",
        "suggestion": error.suggestion,
        "kind": "access_denied",
    }


class TestActionFailed:
    action = Action("web", "demo-web-1a2b3c4d", StartPayload("120"))

    def test_wraps_vmfleet_error(self):
        cause = OwnershipVerificationFailed("not ours")
        error = ActionFailed(self.action, cause)

        assert error.message == "start demo-web-1a2b3c4d failed: not ours"
        assert error.severity == Severity.USER
        assert error.suggestion == cause.suggestion

    def test_wraps_plain_exception(self):
        error = ActionFailed(self.action, KeyError())

        assert error.message.endswith("failed: KeyError")
        assert error.severity == Severity.ENVIRONMENT
