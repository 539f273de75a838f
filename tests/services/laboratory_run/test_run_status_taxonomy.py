from __future__ import annotations

import pytest

from easy_genomics.laboratory_run.taxonomy import (
    IN_FLIGHT_STATUSES,
    PLATFORM_OMICS,
    PLATFORM_SEQERA,
    TERMINAL_STATUSES,
    LaboratoryRunTaxonomyError,
    can_transition,
    ensure_supported_platform,
    ensure_supported_status,
    is_terminal_status,
    translate_foreign_status,
)


def test_terminal_statuses_are_the_closed_set() -> None:
    assert TERMINAL_STATUSES == {"FAILED", "SUCCEEDED", "CANCELLED", "COMPLETED", "DELETED"}
    assert not TERMINAL_STATUSES.intersection(IN_FLIGHT_STATUSES)


@pytest.mark.parametrize("status", ["succeeded", " FAILED ", "Cancelled", "COMPLETED", "DELETED"])
def test_is_terminal_status_normalizes_case_and_whitespace(status: str) -> None:
    assert is_terminal_status(status) is True


@pytest.mark.parametrize("status", ["PENDING", "SUBMITTED", "RUNNING", "", None, "UNKNOWN"])
def test_is_terminal_status_false_for_non_terminal(status: str | None) -> None:
    assert is_terminal_status(status) is False


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("PENDING", "SUBMITTED"),
        ("SUBMITTED", "RUNNING"),
        ("SUBMITTED", "SUCCEEDED"),
        ("RUNNING", "FAILED"),
        ("STARTING", "STOPPING"),
        ("STOPPING", "CANCELLED"),
    ],
)
def test_forward_transitions_are_legal(current: str, target: str) -> None:
    assert can_transition(current, target) is True


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("RUNNING", "RUNNING"),
        ("RUNNING", "SUBMITTED"),
        ("STOPPING", "PENDING"),
        ("SUCCEEDED", "FAILED"),
        ("FAILED", "RUNNING"),
        ("COMPLETED", "DELETED"),
        ("RUNNING", "NOT_A_STATUS"),
        ("RUNNING", None),
    ],
)
def test_regressions_terminal_sources_and_unknown_targets_are_rejected(current: str, target: str | None) -> None:
    assert can_transition(current, target) is False


def test_unknown_stored_status_can_move_to_any_known_status() -> None:
    assert can_transition("LEGACY_QUEUED", "PENDING") is True
    assert can_transition(None, "RUNNING") is True


def test_ensure_supported_status_rejects_unknown() -> None:
    assert ensure_supported_status("running") == "RUNNING"
    with pytest.raises(LaboratoryRunTaxonomyError):
        ensure_supported_status("WAITING")


def test_ensure_supported_platform() -> None:
    assert ensure_supported_platform(" Seqera Cloud ") == PLATFORM_SEQERA
    with pytest.raises(LaboratoryRunTaxonomyError):
        ensure_supported_platform("Local Slurm")


@pytest.mark.parametrize(
    ("platform", "foreign", "expected"),
    [
        (PLATFORM_SEQERA, "SUBMITTED", "SUBMITTED"),
        (PLATFORM_SEQERA, "running", "RUNNING"),
        (PLATFORM_SEQERA, "SUCCEEDED", "SUCCEEDED"),
        (PLATFORM_SEQERA, "UNKNOWN", None),
        (PLATFORM_OMICS, "PENDING", "PENDING"),
        (PLATFORM_OMICS, "STARTING", "STARTING"),
        (PLATFORM_OMICS, "COMPLETED", "COMPLETED"),
        (PLATFORM_OMICS, "STOPPING", "STOPPING"),
        (PLATFORM_OMICS, "", None),
    ],
)
def test_translate_foreign_status(platform: str, foreign: str, expected: str | None) -> None:
    assert translate_foreign_status(platform, foreign) == expected


def test_translate_foreign_status_rejects_unsupported_platform() -> None:
    with pytest.raises(LaboratoryRunTaxonomyError):
        translate_foreign_status("Cromwell", "RUNNING")
