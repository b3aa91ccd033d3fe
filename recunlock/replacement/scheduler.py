"""Stale recommendation replacement.

Independently of batch completion, each scan has a ``next_replacement_date``.
When it falls due, active recommendations that have sat unimplemented longer
than the staleness threshold are swapped for fresh records (up to
``target_active_count`` of them) and the schedule advances by the interval.

Replacement content comes from a ``ReplacementSource``; the engine never
writes recommendation text itself.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recunlock.config import ReplacementConfig
from recunlock.db.models import RecommendationModel, UserProgressModel
from recunlock.models import RecommendationDraft, ReplacementReport, UnlockState
from recunlock.progress.aggregator import ProgressAggregator
from recunlock.store.repository import RecommendationStore

logger = logging.getLogger(__name__)


class ReplacementSource(Protocol):
    """Supplies fresh content for a stale recommendation."""

    async def draft_for(
        self, stale: RecommendationModel, store: RecommendationStore, now: datetime
    ) -> RecommendationDraft | None:
        """Return replacement content, or None to leave the slot alone.

        Runs inside the replacement transaction; any writes made through
        ``store`` commit or roll back with the replacement itself.
        """
        ...


class LockedPoolSource:
    """Fill stale slots from the scan's own locked recommendations.

    The next locked recommendation (highest priority, then lowest id) gives
    its content to the replacement and is superseded, so each pooled item
    surfaces exactly once. An empty pool leaves the slot alone.
    """

    async def draft_for(
        self, stale: RecommendationModel, store: RecommendationStore, now: datetime
    ) -> RecommendationDraft | None:
        pooled = await store.next_locked(stale.scan_id)
        if pooled is None:
            return None

        await store.update_state(pooled, UnlockState.SKIPPED, now)
        logger.debug(f"Recommendation {pooled.id} drawn from the locked pool for slot {stale.id}")
        return RecommendationDraft(
            category=pooled.category,
            recommendation_text=pooled.recommendation_text,
            batch_number=stale.batch_number,
            scope=pooled.scope,
            page_url=pooled.page_url,
            priority=pooled.priority,
            checked_elements=list(pooled.checked_elements or []),
        )


class ReplacementScheduler:
    """Swaps stale active recommendations for fresh ones on a fixed cadence."""

    def __init__(
        self,
        session: AsyncSession,
        store: RecommendationStore,
        aggregator: ProgressAggregator,
        source: ReplacementSource | None = None,
        config: ReplacementConfig | None = None,
    ):
        self.session = session
        self.store = store
        self.aggregator = aggregator
        self.source = source or LockedPoolSource()
        self.config = config or ReplacementConfig()

    @property
    def interval(self) -> timedelta:
        return timedelta(days=self.config.interval_days)

    @property
    def staleness(self) -> timedelta:
        return timedelta(days=self.config.staleness_days)

    @staticmethod
    def is_due(progress: UserProgressModel, now: datetime) -> bool:
        return progress.next_replacement_date is not None and progress.next_replacement_date <= now

    async def find_stale(self, progress: UserProgressModel, now: datetime) -> list[RecommendationModel]:
        """Active, untouched recommendations unlocked before the staleness cutoff."""
        cutoff = now - self.staleness
        limit = (
            progress.target_active_count
            if progress.target_active_count is not None
            else self.config.target_active_count
        )
        stmt = (
            select(RecommendationModel)
            .where(
                RecommendationModel.scan_id == progress.scan_id,
                RecommendationModel.unlock_state == UnlockState.ACTIVE,
                RecommendationModel.progress_percentage == 0,
                RecommendationModel.unlocked_at.is_not(None),
                RecommendationModel.unlocked_at <= cutoff,
            )
            .order_by(RecommendationModel.id)
            .limit(limit)
        )
        return list((await self.session.execute(stmt)).scalars())

    async def replace_for_scan(
        self,
        progress: UserProgressModel,
        now: datetime,
        forced: bool = False,
    ) -> ReplacementReport:
        """Run one scan's replacement inside the caller's transaction.

        Callers hold the scan lock; when not forced, callers also check
        ``is_due`` under that lock.
        """
        report = ReplacementReport(scan_id=progress.scan_id, forced=forced)

        for stale in await self.find_stale(progress, now):
            draft = await self.source.draft_for(stale, self.store, now)
            if draft is None:
                logger.debug(f"No replacement content for recommendation {stale.id}")
                continue
            new = await self.store.append_replacement(stale.id, draft, now)
            report.replaced_ids.append(stale.id)
            report.new_ids.append(new.id)

        progress.last_replacement_date = now
        progress.next_replacement_date = now + self.interval
        progress.recommendations_replaced_count += report.replaced_count
        if report.replaced_count:
            progress.last_activity_at = now
        report.next_replacement_date = progress.next_replacement_date

        await self.aggregator.recompute(progress.scan_id, progress)
        logger.info(
            f"Replacement for scan {progress.scan_id}: {report.replaced_count} replaced, "
            f"next due {progress.next_replacement_date.isoformat()}"
        )
        return report

    async def due_scan_ids(self, now: datetime) -> list[int]:
        stmt = (
            select(UserProgressModel.scan_id)
            .where(
                UserProgressModel.next_replacement_date.is_not(None),
                UserProgressModel.next_replacement_date <= now,
            )
            .order_by(UserProgressModel.next_replacement_date, UserProgressModel.scan_id)
        )
        return list((await self.session.execute(stmt)).scalars())
