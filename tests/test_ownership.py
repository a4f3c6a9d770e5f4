"""Tests for the triple ownership check."""

import itertools

import pytest

from vmfleet.models import ManagedResourceRecord, ObservedResource, ProjectState, RuntimeState
from vmfleet.naming import derive_marker, derive_name
from vmfleet.ownership import verify_ownership, verify_ownership_by_machine

CONFIG_PATH = "/srv/fleet/vmfleet.yaml"
OTHER_CONFIG = "/srv/other/vmfleet.yaml"


def build_case(in_state: bool, valid_marker: bool, name_ok: bool):
    """Build (derived_name, state, observed) with each check forced on or off."""
    good_name = derive_name("demo", "web", CONFIG_PATH)
    # A name from another config still parses but is not the derived one
    candidate = good_name if name_ok else derive_name("demo", "web", OTHER_CONFIG)

    state = ProjectState("", CONFIG_PATH, "demo", "t", "t")
    if in_state:
        state.resources["web"] = ManagedResourceRecord("101", candidate, "web", "/vms/web.qcow2", "t")

    note = derive_marker(CONFIG_PATH if valid_marker else OTHER_CONFIG)
    observed = ObservedResource("101", candidate, RuntimeState.RUNNING, note)
    return candidate, state, observed


class TestVerifyOwnership:
    """Exhaustive test cases over the three checks."""

    @pytest.mark.parametrize("in_state,valid_marker,name_ok", list(itertools.product([True, False], repeat=3)))
    def test_all_combinations(self, in_state, valid_marker, name_ok):
        candidate, state, observed = build_case(in_state, valid_marker, name_ok)

        verdict = verify_ownership(candidate, state, observed, CONFIG_PATH)

        assert verdict.checks.in_persisted_state is in_state
        assert verdict.checks.has_valid_marker is valid_marker
        # The name check needs a persisted record to compare against
        assert verdict.checks.name_matches_pattern is (in_state and name_ok)
        assert verdict.owned is (in_state and valid_marker and name_ok)

    def test_owned_has_no_reason(self):
        verdict = verify_ownership(*build_case(True, True, True), CONFIG_PATH)
        assert verdict.owned is True
        assert verdict.reason is None

    def test_reason_lists_every_failed_check(self):
        verdict = verify_ownership(*build_case(False, False, False), CONFIG_PATH)

        assert verdict.reason == (
            "Ownership verification failed: not in state file, missing vmfleet marker, "
            "name does not match expected pattern"
        )

    def test_missing_observed_resource(self):
        candidate, state, _ = build_case(True, True, True)

        verdict = verify_ownership(candidate, state, None, CONFIG_PATH)

        assert verdict.owned is False
        assert verdict.checks.has_valid_marker is False

    def test_no_state(self):
        candidate, _, observed = build_case(True, True, True)

        verdict = verify_ownership(candidate, None, observed, CONFIG_PATH)

        assert verdict.owned is False
        assert verdict.checks.in_persisted_state is False

    def test_record_for_other_machine_fails_name_check(self):
        candidate, state, observed = build_case(True, True, True)
        state.resources["web"].machine_name = "db"

        verdict = verify_ownership(candidate, state, observed, CONFIG_PATH)

        assert verdict.owned is False
        assert verdict.checks.name_matches_pattern is False


class TestVerifyOwnershipByMachine:
    def test_looks_up_observed_by_derived_name(self):
        candidate, state, observed = build_case(True, True, True)

        verdict = verify_ownership_by_machine("web", state, {candidate: observed}, CONFIG_PATH, "demo")

        assert verdict.owned is True

    def test_unknown_machine(self):
        candidate, state, observed = build_case(True, True, True)

        verdict = verify_ownership_by_machine("db", state, {candidate: observed}, CONFIG_PATH, "demo")

        assert verdict.owned is False
        assert verdict.checks.in_persisted_state is False
