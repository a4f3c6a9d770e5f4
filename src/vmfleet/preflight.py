"""Platform readiness checks run before planning."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from vmfleet.actuator import Actuator
from vmfleet.config import Config
from vmfleet.errors import ErrorCode, PreflightFailed
from vmfleet.models import DesiredConfig

logger = logging.getLogger(__name__)


@dataclass
class PreflightResult:
    """Outcome of one preflight check."""

    passed: bool
    message: str
    suggestion: Optional[str] = None
    missing: List[str] = field(default_factory=list)


@dataclass
class PreflightReport:
    platform: PreflightResult
    network: PreflightResult
    base_images: PreflightResult

    @property
    def passed(self) -> bool:
        return self.platform.passed and self.network.passed and self.base_images.passed

    def to_dict(self) -> dict:
        return {
            name: {
                "passed": result.passed,
                "message": result.message,
                "suggestion": result.suggestion,
                "missing": list(result.missing),
            }
            for name, result in (
                ("platform", self.platform),
                ("network", self.network),
                ("base_images", self.base_images),
            )
        }


def check_platform(actuator: Actuator) -> PreflightResult:
    try:
        availability = actuator.check_available()
    except Exception as e:
        logger.warning(f"Platform check failed: {e}")
        return PreflightResult(
            passed=False,
            message=f"Virtualization platform is not reachable: {e}",
            suggestion="Check that the virtualization host is up and the API credentials are valid.",
        )
    if not availability.available:
        return PreflightResult(
            passed=False,
            message=availability.message or "Virtualization platform is not available",
            suggestion="Check that the virtualization host is up and the API credentials are valid.",
        )
    return PreflightResult(passed=True, message=availability.message or "Virtualization platform is available")


def check_network(actuator: Actuator, network: str) -> PreflightResult:
    """Verify the network the VMs attach to exists."""
    try:
        exists = actuator.network_exists(network)
    except Exception as e:
        logger.warning(f"Network check for {network} failed: {e}")
        exists = False
    if not exists:
        return PreflightResult(
            passed=False,
            message=f"Network '{network}' not found",
            suggestion=f"Create the bridge '{network}' on the host or set PROXMOX_BRIDGE to an existing one.",
            missing=[network],
        )
    return PreflightResult(passed=True, message=f"Network '{network}' exists")


def check_base_images(actuator: Actuator, desired: DesiredConfig) -> PreflightResult:
    """Verify every distinct base image referenced by the fleet exists."""
    missing = []
    for path in sorted({machine.base_image_path for machine in desired.machines}):
        try:
            found = actuator.artifact_exists(path)
        except Exception as e:
            logger.warning(f"Base image check for {path} failed: {e}")
            found = False
        if not found:
            missing.append(path)

    if missing:
        return PreflightResult(
            passed=False,
            message=f"Base image(s) not found: {', '.join(missing)}",
            suggestion="Fix base_image in the fleet config or upload the image to the host.",
            missing=missing,
        )
    return PreflightResult(passed=True, message="All base images found")


def run_preflight_checks(actuator: Actuator, desired: DesiredConfig, bridge: Optional[str] = None) -> PreflightReport:
    """Run all checks. Later checks are skipped when the platform is unreachable."""
    network = bridge or Config.PROXMOX_BRIDGE
    platform = check_platform(actuator)
    if not platform.passed:
        skipped = PreflightResult(passed=False, message="Skipped: platform unavailable")
        return PreflightReport(platform=platform, network=skipped, base_images=skipped)

    return PreflightReport(
        platform=platform,
        network=check_network(actuator, network),
        base_images=check_base_images(actuator, desired),
    )


def assert_preflight_passed(report: PreflightReport) -> None:
    """Raise the first failing check as PreflightFailed.

    Raises:
        PreflightFailed: If any check failed
    """
    checks = [
        (report.platform, ErrorCode.PLATFORM_UNAVAILABLE),
        (report.network, ErrorCode.NETWORK_NOT_FOUND),
        (report.base_images, ErrorCode.BASE_IMAGE_NOT_FOUND),
    ]
    for result, code in checks:
        if not result.passed:
            raise PreflightFailed(result.message, code, result.suggestion, result.missing)
