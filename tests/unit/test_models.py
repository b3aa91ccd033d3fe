"""Unit tests for the state machine and pydantic models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from recunlock.models import (
    ALLOWED_TRANSITIONS,
    RecommendationDraft,
    UnlockRejected,
    UnlockRejection,
    UnlockState,
    ValidationOutcome,
    ValidationStatus,
    ValidationSummary,
    can_transition,
)


class TestTransitionTable:
    """The transition table is closed and matches the lifecycle."""

    def test_every_state_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(UnlockState)

    @pytest.mark.parametrize(
        "current,target",
        [
            (UnlockState.LOCKED, UnlockState.ACTIVE),
            (UnlockState.ACTIVE, UnlockState.IN_PROGRESS),
            (UnlockState.ACTIVE, UnlockState.COMPLETED),
            (UnlockState.IN_PROGRESS, UnlockState.COMPLETED),
            (UnlockState.COMPLETED, UnlockState.VERIFIED),
            (UnlockState.COMPLETED, UnlockState.IN_PROGRESS),
            (UnlockState.VERIFIED, UnlockState.IN_PROGRESS),
        ],
    )
    def test_forward_and_regression_moves_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (UnlockState.LOCKED, UnlockState.COMPLETED),
            (UnlockState.ACTIVE, UnlockState.LOCKED),
            (UnlockState.ACTIVE, UnlockState.VERIFIED),
            (UnlockState.COMPLETED, UnlockState.ACTIVE),
            (UnlockState.VERIFIED, UnlockState.COMPLETED),
        ],
    )
    def test_backward_moves_refused(self, current, target):
        assert not can_transition(current, target)

    def test_every_non_terminal_state_can_be_skipped(self):
        for state in UnlockState:
            if state == UnlockState.SKIPPED:
                continue
            assert can_transition(state, UnlockState.SKIPPED)

    def test_nothing_leaves_skipped(self):
        assert ALLOWED_TRANSITIONS[UnlockState.SKIPPED] == frozenset()

    def test_accepts_raw_string_state(self):
        assert can_transition("locked", UnlockState.ACTIVE)


class TestRecommendationDraft:
    def test_defaults(self):
        draft = RecommendationDraft(category="schema", recommendation_text="Add Organization schema")

        assert draft.batch_number == 1
        assert draft.checked_elements == []
        assert draft.scope.value == "page_specific"

    def test_batch_number_must_be_positive(self):
        with pytest.raises(ValidationError):
            RecommendationDraft(category="x", recommendation_text="y", batch_number=0)

    def test_checked_elements_are_stripped_and_deduplicated(self):
        draft = RecommendationDraft(
            category="faq",
            recommendation_text="Add FAQ",
            checked_elements=[" faq-section ", "faq-schema", "faq-section", ""],
        )

        assert draft.checked_elements == ["faq-section", "faq-schema"]


class TestResultModels:
    def test_daily_limit_rejection_is_deferred(self):
        rejected = UnlockRejected(scan_id=1, reason=UnlockRejection.DAILY_LIMIT, message="later")

        assert rejected.deferred
        assert not rejected.success

    def test_active_remaining_rejection_is_not_deferred(self):
        rejected = UnlockRejected(
            scan_id=1,
            reason=UnlockRejection.ACTIVE_REMAINING,
            active_remaining=3,
            message="finish first",
        )

        assert not rejected.deferred
        assert rejected.active_remaining == 3

    def test_validation_summary_counts_outcomes(self):
        outcomes = [
            ValidationOutcome(
                recommendation_id=i,
                outcome=status,
                completion_percentage=0,
                previous_state=UnlockState.COMPLETED,
            )
            for i, status in enumerate(
                [
                    ValidationStatus.VERIFIED_COMPLETE,
                    ValidationStatus.VERIFIED_COMPLETE,
                    ValidationStatus.REGRESSED,
                    ValidationStatus.PARTIAL_PROGRESS,
                ]
            )
        ]

        summary = ValidationSummary.from_outcomes(9, outcomes)

        assert summary.total == 4
        assert summary.verified_complete == 2
        assert summary.regressed == 1
        assert summary.partial_progress == 1
        assert summary.not_implemented == 0
        assert len(summary.results) == 4
