"""Pydantic models and closed enums for the unlock engine.

The recommendation lifecycle is a single enumerated ``UnlockState`` plus a
separate ``ValidationStatus``; the allowed moves between states are listed
once in ``ALLOWED_TRANSITIONS``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UnlockState(str, Enum):
    """Visibility/lifecycle state of a recommendation."""

    LOCKED = "locked"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    SKIPPED = "skipped"


class ValidationStatus(str, Enum):
    """Result of the latest live-page check."""

    PENDING_VALIDATION = "pending_validation"
    VERIFIED_COMPLETE = "verified_complete"
    PARTIAL_PROGRESS = "partial_progress"
    NOT_IMPLEMENTED = "not_implemented"
    REGRESSED = "regressed"


class RecommendationScope(str, Enum):
    """Whether a recommendation applies to the whole domain or one page."""

    SITE_WIDE = "site_wide"
    PAGE_SPECIFIC = "page_specific"


class UnlockRejection(str, Enum):
    """Machine-readable reasons an unlock attempt was refused."""

    ACTIVE_REMAINING = "active_remaining"
    DAILY_LIMIT = "daily_limit"
    ALL_UNLOCKED = "all_unlocked"


ALLOWED_TRANSITIONS: dict[UnlockState, frozenset[UnlockState]] = {
    UnlockState.LOCKED: frozenset({UnlockState.ACTIVE, UnlockState.SKIPPED}),
    UnlockState.ACTIVE: frozenset(
        {UnlockState.IN_PROGRESS, UnlockState.COMPLETED, UnlockState.SKIPPED}
    ),
    UnlockState.IN_PROGRESS: frozenset({UnlockState.COMPLETED, UnlockState.SKIPPED}),
    UnlockState.COMPLETED: frozenset(
        {UnlockState.VERIFIED, UnlockState.IN_PROGRESS, UnlockState.SKIPPED}
    ),
    UnlockState.VERIFIED: frozenset({UnlockState.IN_PROGRESS, UnlockState.SKIPPED}),
    UnlockState.SKIPPED: frozenset(),
}

# States that count toward each bucket of a progress snapshot
ACTIVE_STATES = frozenset({UnlockState.ACTIVE, UnlockState.IN_PROGRESS})
ACTIONED_STATES = frozenset(
    {UnlockState.COMPLETED, UnlockState.VERIFIED, UnlockState.SKIPPED}
)


def can_transition(current: UnlockState, target: UnlockState) -> bool:
    return target in ALLOWED_TRANSITIONS[UnlockState(current)]


class RecommendationDraft(BaseModel):
    """Generated recommendation handed over by the generation service."""

    category: str
    recommendation_text: str
    batch_number: int = Field(default=1, ge=1)
    scope: RecommendationScope = RecommendationScope.PAGE_SPECIFIC
    page_url: str | None = None
    priority: int = 0
    checked_elements: list[str] = Field(default_factory=list)

    @field_validator("checked_elements")
    @classmethod
    def dedupe_elements(cls, v: list[str]) -> list[str]:
        # Keep declaration order, drop blanks and repeats
        seen: dict[str, None] = {}
        for element in v:
            element = element.strip()
            if element:
                seen.setdefault(element, None)
        return list(seen)


class RecommendationView(BaseModel):
    """Read model returned to the API layer."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    scan_id: int
    user_id: int
    category: str
    recommendation_text: str
    scope: RecommendationScope
    page_url: str | None = None
    priority: int = 0
    unlock_state: UnlockState
    batch_number: int
    progress_percentage: int = 0
    validation_status: ValidationStatus | None = None
    previous_recommendation_id: int | None = None
    checked_elements: list[str] = Field(default_factory=list)
    unlocked_at: datetime | None = None
    marked_complete_at: datetime | None = None
    verified_at: datetime | None = None
    skipped_at: datetime | None = None
    skip_enabled_at: datetime | None = None


class ScopeCounts(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    locked: int = 0


class ProgressSnapshot(BaseModel):
    """Derived counts for one scan at a point in time.

    ``completed`` counts actioned rows (completed, verified, skipped) so that
    ``completed + active + locked == total`` holds for every observation.
    """

    scan_id: int
    total: int = 0
    active: int = 0
    completed: int = 0
    locked: int = 0
    in_progress: int = 0
    verified: int = 0
    skipped: int = 0
    site_wide: ScopeCounts = Field(default_factory=ScopeCounts)
    page_specific: ScopeCounts = Field(default_factory=ScopeCounts)

    @property
    def site_wide_complete(self) -> bool:
        return self.site_wide.completed == self.site_wide.total


class UnlockResult(BaseModel):
    scan_id: int
    unlocked_count: int
    batch_number: int
    recommendations: list[RecommendationView]
    progress: ProgressSnapshot
    daily_limit_reached: bool = False

    @property
    def success(self) -> bool:
        return True


class UnlockRejected(BaseModel):
    """Negative unlock result; a normal outcome rather than an error."""

    scan_id: int
    reason: UnlockRejection
    message: str
    active_remaining: int | None = None
    next_unlock_available_at: datetime | None = None

    @property
    def success(self) -> bool:
        return False

    @property
    def deferred(self) -> bool:
        """True when waiting (not user action) will make the unlock succeed."""
        return self.reason == UnlockRejection.DAILY_LIMIT


class ValidationOutcome(BaseModel):
    recommendation_id: int
    outcome: ValidationStatus
    completion_percentage: int
    checked_elements: list[str] = Field(default_factory=list)
    found_elements: list[str] = Field(default_factory=list)
    missing_elements: list[str] = Field(default_factory=list)
    previous_state: UnlockState
    proposed_state: UnlockState | None = None
    applied: bool = False
    history_id: int | None = None
    notes: str = ""


class ValidationSummary(BaseModel):
    scan_id: int
    total: int = 0
    verified_complete: int = 0
    partial_progress: int = 0
    not_implemented: int = 0
    regressed: int = 0
    pending_validation: int = 0
    results: list[ValidationOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(
        cls, scan_id: int, outcomes: list[ValidationOutcome]
    ) -> ValidationSummary:
        counts: dict[str, Any] = {status.value: 0 for status in ValidationStatus}
        for outcome in outcomes:
            counts[outcome.outcome.value] += 1
        return cls(scan_id=scan_id, total=len(outcomes), results=outcomes, **counts)


class ReplacementReport(BaseModel):
    """What one scan's replacement run did."""

    scan_id: int
    replaced_ids: list[int] = Field(default_factory=list)
    new_ids: list[int] = Field(default_factory=list)
    next_replacement_date: datetime | None = None
    forced: bool = False

    @property
    def replaced_count(self) -> int:
        return len(self.replaced_ids)


class ScanRecommendations(BaseModel):
    recommendations: list[RecommendationView]
    progress: ProgressSnapshot
