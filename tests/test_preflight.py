"""Tests for platform readiness checks."""

import pytest

from vmfleet.errors import ActuatorError, ErrorCode, PreflightFailed, Severity
from vmfleet.preflight import assert_preflight_passed, run_preflight_checks


class TestPreflight:
    def test_all_pass(self, actuator, desired):
        report = run_preflight_checks(actuator, desired, "vmbr0")

        assert report.passed
        assert_preflight_passed(report)

    def test_platform_unavailable_skips_other_checks(self, actuator, desired):
        actuator.available = False

        report = run_preflight_checks(actuator, desired, "vmbr0")

        assert not report.platform.passed
        assert [call[0] for call in actuator.calls] == ["check_available"]
        with pytest.raises(PreflightFailed) as exc_info:
            assert_preflight_passed(report)
        assert exc_info.value.code == ErrorCode.PLATFORM_UNAVAILABLE
        assert exc_info.value.severity == Severity.ENVIRONMENT

    def test_check_exception_counts_as_failure(self, actuator, desired):
        actuator.fail("check_available", ActuatorError("connection refused"))

        report = run_preflight_checks(actuator, desired, "vmbr0")

        assert not report.platform.passed
        assert "connection refused" in report.platform.message

    def test_missing_network(self, actuator, desired):
        report = run_preflight_checks(actuator, desired, "vmbr9")

        assert report.network.missing == ["vmbr9"]
        with pytest.raises(PreflightFailed) as exc_info:
            assert_preflight_passed(report)
        assert exc_info.value.code == ErrorCode.NETWORK_NOT_FOUND
        assert exc_info.value.exit_code == 2

    def test_missing_base_image(self, actuator, desired):
        actuator.artifacts.clear()

        report = run_preflight_checks(actuator, desired, "vmbr0")

        assert report.base_images.missing == ["/var/lib/vz/template/base.qcow2"]
        with pytest.raises(PreflightFailed) as exc_info:
            assert_preflight_passed(report)
        assert exc_info.value.code == ErrorCode.BASE_IMAGE_NOT_FOUND
        assert exc_info.value.exit_code == 1

    def test_each_base_image_checked_once(self, actuator, desired):
        run_preflight_checks(actuator, desired, "vmbr0")

        lookups = [call for call in actuator.calls if call[0] == "artifact_exists"]
        assert len(lookups) == 1

    def test_report_to_dict(self, actuator, desired):
        report = run_preflight_checks(actuator, desired, "vmbr0")
        assert set(report.to_dict()) == {"platform", "network", "base_images"}
