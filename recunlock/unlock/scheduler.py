"""Batch unlock scheduler.

Decides whether a scan's next batch may unlock and performs the unlock.
Preconditions are checked in order and the first failure wins:

1. No ``active``/``in_progress`` recommendations remain.
2. The rolling daily cap has room (a deferred success, not an error).
3. A locked batch remains.

Selection within a batch is by ascending recommendation id, capped at the
configured batch size, so retries always pick the same rows.

Callers must hold the scan's lock and an open transaction; see
``recunlock.service.UnlockService.unlock_next``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from recunlock.config import UnlockConfig
from recunlock.db.models import RecommendationModel, UserProgressModel
from recunlock.errors import ConcurrencyConflict
from recunlock.models import (
    ACTIVE_STATES,
    RecommendationView,
    UnlockRejected,
    UnlockRejection,
    UnlockResult,
    UnlockState,
)
from recunlock.progress.aggregator import ProgressAggregator
from recunlock.store.repository import RecommendationStore

logger = logging.getLogger(__name__)


class BatchUnlockScheduler:
    """Gatekeeper for progressive batch unlocks."""

    def __init__(
        self,
        session: AsyncSession,
        store: RecommendationStore,
        aggregator: ProgressAggregator,
        config: UnlockConfig | None = None,
    ):
        self.session = session
        self.store = store
        self.aggregator = aggregator
        self.config = config or UnlockConfig()

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.config.unlock_window_hours)

    async def attempt_unlock(
        self, progress: UserProgressModel, now: datetime
    ) -> UnlockResult | UnlockRejected:
        """Unlock the next batch for ``progress.scan_id`` if every gate passes."""
        scan_id = progress.scan_id

        # 1. Current batch must be finished
        active_remaining = await self._count_active(scan_id)
        if active_remaining:
            logger.info(f"Unlock rejected for scan {scan_id}: {active_remaining} still active")
            return UnlockRejected(
                scan_id=scan_id,
                reason=UnlockRejection.ACTIVE_REMAINING,
                active_remaining=active_remaining,
                message=(
                    f"Complete all active recommendations before unlocking more "
                    f"({active_remaining} remaining)"
                ),
            )

        # 2. Daily cap (rolling window)
        unlocks_in_window = self._unlocks_in_window(progress, now)
        limit = self.config.daily_unlock_limit
        if limit and unlocks_in_window >= limit:
            available_at = progress.unlock_window_started_at + self.window
            logger.info(f"Unlock deferred for scan {scan_id}: daily limit reached until {available_at}")
            return UnlockRejected(
                scan_id=scan_id,
                reason=UnlockRejection.DAILY_LIMIT,
                next_unlock_available_at=available_at,
                message=f"Daily unlock limit reached; next unlock available at {available_at.isoformat()}",
            )

        # 3. Something left to unlock
        batch_number = await self._next_locked_batch(scan_id)
        if batch_number is None:
            logger.info(f"Unlock rejected for scan {scan_id}: all batches unlocked")
            return UnlockRejected(
                scan_id=scan_id,
                reason=UnlockRejection.ALL_UNLOCKED,
                message="All recommendations have been unlocked",
            )

        candidates = await self._select_batch(scan_id, batch_number)
        candidate_ids = [record.id for record in candidates]
        activated = await self.store.activate(candidate_ids, now)
        if activated != len(candidate_ids):
            # Another writer changed these rows under us; the caller's rollback undoes the partial update
            raise ConcurrencyConflict(scan_id)

        if unlocks_in_window == 0:
            progress.unlock_window_started_at = now
        progress.unlocks_in_window = unlocks_in_window + 1
        progress.last_unlock_at = now
        progress.last_activity_at = now
        progress.current_batch = max(progress.current_batch, batch_number)
        progress.total_batches = max(progress.total_batches, batch_number)
        progress.stamp_batch_unlock(batch_number, now)

        for record in candidates:
            await self.session.refresh(record)
        snapshot = await self.aggregator.recompute(scan_id, progress)

        logger.info(f"Unlocked {activated} recommendations in batch {batch_number} for scan {scan_id}")
        return UnlockResult(
            scan_id=scan_id,
            unlocked_count=activated,
            batch_number=batch_number,
            recommendations=[RecommendationView.model_validate(r) for r in candidates],
            progress=snapshot,
            daily_limit_reached=bool(limit) and progress.unlocks_in_window >= limit,
        )

    def _unlocks_in_window(self, progress: UserProgressModel, now: datetime) -> int:
        started = progress.unlock_window_started_at
        if started is None or now - started >= self.window:
            return 0
        return progress.unlocks_in_window

    async def _count_active(self, scan_id: int) -> int:
        stmt = select(func.count(RecommendationModel.id)).where(
            RecommendationModel.scan_id == scan_id,
            RecommendationModel.unlock_state.in_(list(ACTIVE_STATES)),
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def _next_locked_batch(self, scan_id: int) -> int | None:
        stmt = select(func.min(RecommendationModel.batch_number)).where(
            RecommendationModel.scan_id == scan_id,
            RecommendationModel.unlock_state == UnlockState.LOCKED,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _select_batch(self, scan_id: int, batch_number: int) -> list[RecommendationModel]:
        stmt = (
            select(RecommendationModel)
            .where(
                RecommendationModel.scan_id == scan_id,
                RecommendationModel.batch_number == batch_number,
                RecommendationModel.unlock_state == UnlockState.LOCKED,
            )
            .order_by(RecommendationModel.id)
            .limit(self.config.batch_size)
        )
        return list((await self.session.execute(stmt)).scalars())
