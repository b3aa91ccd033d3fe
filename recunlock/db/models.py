"""SQLAlchemy async database models for the unlock engine.

Recommendation rows are never hard-deleted: superseded rows stay as
``skipped`` with their replacement pointing back through
``previous_recommendation_id``.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from recunlock.models import RecommendationScope, UnlockState, ValidationStatus
from recunlock.utils import utcnow


def _str_enum(enum_cls: type) -> Enum:
    # Store enum values ("in_progress"), not member names, as VARCHAR
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RecommendationModel(Base):
    """One actionable suggestion tied to a scan."""

    __tablename__ = "recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # Content (immutable after generation)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation_text: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[RecommendationScope] = mapped_column(
        _str_enum(RecommendationScope),
        nullable=False,
        default=RecommendationScope.PAGE_SPECIFIC,
    )
    page_url: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    checked_elements: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Lifecycle
    unlock_state: Mapped[UnlockState] = mapped_column(
        _str_enum(UnlockState), nullable=False, default=UnlockState.LOCKED
    )
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    validation_status: Mapped[ValidationStatus | None] = mapped_column(
        _str_enum(ValidationStatus)
    )
    previous_recommendation_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("recommendations.id"), index=True
    )

    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime)
    marked_complete_at: Mapped[datetime | None] = mapped_column(DateTime)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime)
    skipped_at: Mapped[datetime | None] = mapped_column(DateTime)
    skip_enabled_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("batch_number >= 1", name="check_batch_number_positive"),
        CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="check_progress_percentage_range",
        ),
        CheckConstraint(
            "previous_recommendation_id IS NULL OR previous_recommendation_id <> id",
            name="check_no_self_replacement",
        ),
        Index("idx_recommendations_scan_state", "scan_id", "unlock_state"),
        Index("idx_recommendations_scan_batch", "scan_id", "batch_number", "id"),
    )


class ValidationHistoryModel(Base):
    """Append-only audit row for one validation check."""

    __tablename__ = "recommendation_validation_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recommendation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("recommendations.id"), nullable=False, index=True
    )
    scan_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    checked_elements: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    found_elements: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    missing_elements: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    outcome: Mapped[ValidationStatus] = mapped_column(
        _str_enum(ValidationStatus), nullable=False
    )
    completion_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state_before: Mapped[UnlockState] = mapped_column(_str_enum(UnlockState), nullable=False)
    proposed_state: Mapped[UnlockState | None] = mapped_column(_str_enum(UnlockState))
    applied: Mapped[bool] = mapped_column(nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)

    checked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "completion_percentage >= 0 AND completion_percentage <= 100",
            name="check_history_completion_range",
        ),
    )


class UserProgressModel(Base):
    """Per (user, scan) progress row.

    Counter columns are a cache refreshed by the progress aggregator after
    every mutation; the recommendation rows are the source of truth.
    """

    __tablename__ = "user_progress"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    scan_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # Cached rollups
    total_recommendations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_recommendations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_recommendations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verified_recommendations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_recommendations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    site_wide_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    site_wide_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    site_wide_active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    page_specific_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    page_specific_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    site_wide_complete: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Batch schedule
    total_batches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_batch: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    batch_1_unlock_date: Mapped[datetime | None] = mapped_column(DateTime)
    batch_2_unlock_date: Mapped[datetime | None] = mapped_column(DateTime)
    batch_3_unlock_date: Mapped[datetime | None] = mapped_column(DateTime)
    batch_4_unlock_date: Mapped[datetime | None] = mapped_column(DateTime)
    last_unlock_at: Mapped[datetime | None] = mapped_column(DateTime)
    unlock_window_started_at: Mapped[datetime | None] = mapped_column(DateTime)
    unlocks_in_window: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Replacement schedule
    next_replacement_date: Mapped[datetime | None] = mapped_column(DateTime, index=True)
    last_replacement_date: Mapped[datetime | None] = mapped_column(DateTime)
    recommendations_replaced_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_active_count: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "scan_id", name="uq_user_progress_user_scan"),
        CheckConstraint(
            "completed_recommendations <= total_recommendations",
            name="check_completed_within_total",
        ),
        CheckConstraint("target_active_count >= 0", name="check_target_active_count"),
    )

    BATCH_DATE_SLOTS = 4

    def batch_unlock_date(self, batch_number: int) -> datetime | None:
        if 1 <= batch_number <= self.BATCH_DATE_SLOTS:
            return getattr(self, f"batch_{batch_number}_unlock_date")
        return None

    def stamp_batch_unlock(self, batch_number: int, when: datetime) -> None:
        """Record when a batch first became eligible (batches 1-4 only)."""
        if 1 <= batch_number <= self.BATCH_DATE_SLOTS and self.batch_unlock_date(batch_number) is None:
            setattr(self, f"batch_{batch_number}_unlock_date", when)
