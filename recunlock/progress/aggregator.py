"""Progress aggregation.

Counts are always re-derived from the recommendation rows with one grouped
query; the counters on ``user_progress`` are only a cache written back here.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from recunlock.db.models import RecommendationModel, UserProgressModel
from recunlock.models import (
    ACTIONED_STATES,
    ACTIVE_STATES,
    ProgressSnapshot,
    RecommendationScope,
    ScopeCounts,
    UnlockState,
)

logger = logging.getLogger(__name__)


def snapshot_from_counts(
    scan_id: int,
    counts: Iterable[tuple[RecommendationScope, UnlockState, int]],
) -> ProgressSnapshot:
    """Build a snapshot from ``(scope, state, row_count)`` triples.

    Each row lands in exactly one scope and one bucket, so the per-scope
    totals always add up to the scan total.
    """
    snapshot = ProgressSnapshot(scan_id=scan_id)
    for scope, state, count in counts:
        scope = RecommendationScope(scope)
        state = UnlockState(state)
        bucket = (
            snapshot.site_wide if scope == RecommendationScope.SITE_WIDE else snapshot.page_specific
        )

        snapshot.total += count
        bucket.total += count
        if state in ACTIVE_STATES:
            snapshot.active += count
            bucket.active += count
        elif state in ACTIONED_STATES:
            snapshot.completed += count
            bucket.completed += count
        else:
            snapshot.locked += count
            bucket.locked += count

        if state == UnlockState.IN_PROGRESS:
            snapshot.in_progress += count
        elif state == UnlockState.VERIFIED:
            snapshot.verified += count
        elif state == UnlockState.SKIPPED:
            snapshot.skipped += count

    return snapshot


class ProgressAggregator:
    """Per-scan rollups over the current recommendation rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def snapshot(self, scan_id: int) -> ProgressSnapshot:
        """Read-only rollup (no cache write)."""
        stmt = (
            select(
                RecommendationModel.scope,
                RecommendationModel.unlock_state,
                func.count(RecommendationModel.id),
            )
            .where(RecommendationModel.scan_id == scan_id)
            .group_by(RecommendationModel.scope, RecommendationModel.unlock_state)
        )
        rows = (await self.session.execute(stmt)).all()
        return snapshot_from_counts(scan_id, ((r[0], r[1], r[2]) for r in rows))

    async def recompute(
        self, scan_id: int, progress: UserProgressModel | None = None
    ) -> ProgressSnapshot:
        """Re-derive the rollup and refresh the cached counters.

        Args:
            scan_id: Scan to aggregate
            progress: Already-loaded (and possibly row-locked) progress row
        """
        await self.session.flush()
        snapshot = await self.snapshot(scan_id)

        if progress is None:
            progress = (
                await self.session.execute(
                    select(UserProgressModel).where(UserProgressModel.scan_id == scan_id)
                )
            ).scalar_one_or_none()

        if progress is not None:
            write_back(progress, snapshot)
            await self.session.flush()
        else:
            logger.debug(f"No progress row for scan {scan_id}; snapshot not cached")

        return snapshot


def write_back(progress: UserProgressModel, snapshot: ProgressSnapshot) -> None:
    progress.total_recommendations = snapshot.total
    progress.active_recommendations = snapshot.active
    progress.completed_recommendations = snapshot.completed
    progress.verified_recommendations = snapshot.verified
    progress.skipped_recommendations = snapshot.skipped
    progress.site_wide_total = snapshot.site_wide.total
    progress.site_wide_completed = snapshot.site_wide.completed
    progress.site_wide_active = snapshot.site_wide.active
    progress.page_specific_total = snapshot.page_specific.total
    progress.page_specific_completed = snapshot.page_specific.completed
    progress.site_wide_complete = snapshot.site_wide_complete
