"""Tests for validation classification and state proposals (no database)."""

from __future__ import annotations

import pytest

from recunlock.models import UnlockState, ValidationStatus
from recunlock.validation.engine import classify, normalize_findings, propose_state

REQUIRED = ["faq-section", "faq-schema", "faq-heading"]


class TestNormalizeFindings:
    def test_list_of_names(self):
        assert normalize_findings(["FAQ-Section", " faq-schema "]) == {"faq-section", "faq-schema"}

    def test_mapping_counts_truthy_values_only(self):
        findings = {"faq-section": True, "faq-schema": 0, "faq-heading": "yes", 7: True}

        assert normalize_findings(findings) == {"faq-section", "faq-heading"}

    def test_non_string_entries_dropped(self):
        assert normalize_findings(["faq-section", None, 42, {"x": 1}, ""]) == {"faq-section"}

    @pytest.mark.parametrize("garbage", [None, 42, 3.5, object()])
    def test_unrecognised_input_is_empty(self, garbage):
        assert normalize_findings(garbage) == set()

    def test_single_string(self):
        assert normalize_findings("faq-section") == {"faq-section"}


class TestClassify:
    def test_all_present_is_verified_complete(self):
        result = classify(REQUIRED, REQUIRED, was_completed=False)

        assert result.status == ValidationStatus.VERIFIED_COMPLETE
        assert result.completion_percentage == 100
        assert result.missing == []

    def test_partial_percentage_is_floored(self):
        result = classify(REQUIRED, ["faq-section"], was_completed=False)

        assert result.status == ValidationStatus.PARTIAL_PROGRESS
        assert result.completion_percentage == 33
        assert result.found == ["faq-section"]
        assert result.missing == ["faq-schema", "faq-heading"]

    def test_two_of_three(self):
        result = classify(REQUIRED, ["faq-section", "faq-heading"], was_completed=True)

        assert result.status == ValidationStatus.PARTIAL_PROGRESS
        assert result.completion_percentage == 66

    def test_none_present_never_completed(self):
        result = classify(REQUIRED, [], was_completed=False)

        assert result.status == ValidationStatus.NOT_IMPLEMENTED
        assert result.completion_percentage == 0

    def test_none_present_after_completion_is_regression(self):
        result = classify(REQUIRED, ["unrelated"], was_completed=True)

        assert result.status == ValidationStatus.REGRESSED
        assert result.completion_percentage == 0

    def test_nothing_to_check_is_pending(self):
        result = classify([], ["faq-section"], was_completed=True)

        assert result.status == ValidationStatus.PENDING_VALIDATION

    def test_malformed_findings_count_as_missing(self):
        result = classify(REQUIRED, 12345, was_completed=False)

        assert result.status == ValidationStatus.NOT_IMPLEMENTED
        assert result.missing == REQUIRED


class TestProposeState:
    @pytest.mark.parametrize(
        "current,expected",
        [
            (UnlockState.ACTIVE, UnlockState.COMPLETED),
            (UnlockState.IN_PROGRESS, UnlockState.COMPLETED),
            (UnlockState.COMPLETED, UnlockState.VERIFIED),
            (UnlockState.VERIFIED, None),
        ],
    )
    def test_verified_complete(self, current, expected):
        assert propose_state(current, ValidationStatus.VERIFIED_COMPLETE) == expected

    @pytest.mark.parametrize("status", [ValidationStatus.PARTIAL_PROGRESS, ValidationStatus.REGRESSED])
    def test_partial_and_regressed_move_to_in_progress(self, status):
        assert propose_state(UnlockState.VERIFIED, status) == UnlockState.IN_PROGRESS
        assert propose_state(UnlockState.COMPLETED, status) == UnlockState.IN_PROGRESS
        assert propose_state(UnlockState.IN_PROGRESS, status) is None

    def test_not_implemented_and_pending_propose_nothing(self):
        assert propose_state(UnlockState.ACTIVE, ValidationStatus.NOT_IMPLEMENTED) is None
        assert propose_state(UnlockState.COMPLETED, ValidationStatus.PENDING_VALIDATION) is None
