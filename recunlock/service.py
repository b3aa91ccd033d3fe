"""Unlock engine operations exposed to the API layer.

Every mutating operation runs as one transaction under the scan's lock:

    scan lock -> BEGIN -> row-lock user_progress -> read/check/write -> recompute -> COMMIT

so concurrent unlock, completion, validation and replacement calls on the
same scan cannot interleave, and a failure leaves previously committed
state untouched.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recunlock.config import AppConfig, get_config
from recunlock.core.locks import ScanLocks, lock_progress_row
from recunlock.core.logging import bind_scan, clear_context
from recunlock.db.models import RecommendationModel, UserProgressModel
from recunlock.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    ScanAlreadyRegistered,
    SkipNotAvailable,
)
from recunlock.models import (
    ACTIVE_STATES,
    ProgressSnapshot,
    RecommendationDraft,
    RecommendationView,
    ReplacementReport,
    ScanRecommendations,
    UnlockRejected,
    UnlockResult,
    UnlockState,
    ValidationOutcome,
    ValidationSummary,
)
from recunlock.progress.aggregator import ProgressAggregator
from recunlock.replacement.scheduler import ReplacementScheduler, ReplacementSource
from recunlock.store.repository import RecommendationStore
from recunlock.unlock.scheduler import BatchUnlockScheduler
from recunlock.utils import as_naive_utc, utcnow
from recunlock.validation.engine import ValidationEngine

logger = logging.getLogger(__name__)

_MARKABLE_STATES = frozenset({UnlockState.ACTIVE, UnlockState.IN_PROGRESS})


class UnlockService:
    """Facade over the record store, aggregator, validator and schedulers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: AppConfig | None = None,
        replacement_source: ReplacementSource | None = None,
        clock: Callable[[], datetime] = utcnow,
        locks: ScanLocks | None = None,
    ):
        """Initialize the service.

        Args:
            session_factory: Session factory (defaults to the configured engine)
            config: Application config (defaults to ``get_config()``)
            replacement_source: Content provider for replacements
            clock: Returns "now" as naive UTC; injectable for tests
            locks: Shared per-scan lock registry
        """
        if session_factory is None:
            from recunlock.db.connection import get_session_factory

            session_factory = get_session_factory()
        self.session_factory = session_factory
        self.config = config or get_config()
        self.replacement_source = replacement_source
        self.clock = clock
        self.locks = locks if locks is not None else ScanLocks(self.config.lock.timeout_seconds)

    # ------------------------------------------------------------------
    # Component wiring
    # ------------------------------------------------------------------

    def _store(self, session: AsyncSession) -> RecommendationStore:
        return RecommendationStore(session, timedelta(days=self.config.skip.cooldown_days))

    def _unlocker(self, session: AsyncSession, store: RecommendationStore) -> BatchUnlockScheduler:
        return BatchUnlockScheduler(
            session, store, ProgressAggregator(session), self.config.unlock
        )

    def _replacer(self, session: AsyncSession, store: RecommendationStore) -> ReplacementScheduler:
        return ReplacementScheduler(
            session,
            store,
            ProgressAggregator(session),
            source=self.replacement_source,
            config=self.config.replacement,
        )

    def _now(self, now: datetime | None = None) -> datetime:
        return as_naive_utc(now) if now is not None else self.clock()

    @asynccontextmanager
    async def _scan_transaction(
        self, scan_id: int
    ) -> AsyncIterator[tuple[AsyncSession, UserProgressModel]]:
        """Scan lock + transaction + row-locked progress row."""
        bind_scan(scan_id)
        try:
            async with self.locks.hold(scan_id):
                async with self.session_factory() as session:
                    async with session.begin():
                        progress = await lock_progress_row(session, scan_id)
                        yield session, progress
        finally:
            clear_context()

    async def _scan_of(self, recommendation_id: int) -> int:
        # scan_id is immutable, so reading it outside the lock is safe
        async with self.session_factory() as session:
            scan_id = await session.scalar(
                select(RecommendationModel.scan_id).where(RecommendationModel.id == recommendation_id)
            )
        if scan_id is None:
            raise NotFound("recommendation", recommendation_id)
        return scan_id

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def register_scan(
        self,
        scan_id: int,
        user_id: int,
        drafts: Sequence[RecommendationDraft],
        now: datetime | None = None,
    ) -> ProgressSnapshot:
        """Store freshly generated recommendations and open the scan's progress row.

        Raises:
            ScanAlreadyRegistered: If the scan already has a progress row
        """
        now = self._now(now)
        async with self.locks.hold(scan_id):
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await session.scalar(
                        select(UserProgressModel.id).where(UserProgressModel.scan_id == scan_id)
                    )
                    if existing is not None:
                        raise ScanAlreadyRegistered(scan_id)

                    store = self._store(session)
                    records = await store.add_drafts(scan_id, user_id, drafts, now)

                    progress = UserProgressModel(
                        user_id=user_id,
                        scan_id=scan_id,
                        total_batches=max((r.batch_number for r in records), default=0),
                        current_batch=1,
                        target_active_count=self.config.replacement.target_active_count,
                        next_replacement_date=now + timedelta(days=self.config.replacement.interval_days),
                        last_activity_at=now,
                    )
                    progress.stamp_batch_unlock(1, now)
                    session.add(progress)

                    snapshot = await ProgressAggregator(session).recompute(scan_id, progress)

        logger.info(f"Registered {len(records)} recommendations for scan {scan_id} (user {user_id})")
        return snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_recommendations(self, scan_id: int) -> ScanRecommendations:
        """All recommendations of a scan plus its progress snapshot.

        Raises:
            NotFound: If the scan is unknown
        """
        async with self.session_factory() as session:
            await self._require_scan(session, scan_id)
            records = await self._store(session).list_by_scan(scan_id)
            snapshot = await ProgressAggregator(session).snapshot(scan_id)
        return ScanRecommendations(
            recommendations=[RecommendationView.model_validate(r) for r in records],
            progress=snapshot,
        )

    async def list_active(self, scan_id: int) -> list[RecommendationView]:
        """Visible, unfinished recommendations (``active`` and ``in_progress``).

        Raises:
            NotFound: If the scan is unknown
        """
        async with self.session_factory() as session:
            await self._require_scan(session, scan_id)
            records = await self._store(session).list_by_scan_and_state(scan_id, ACTIVE_STATES)
        return [RecommendationView.model_validate(r) for r in records]

    async def get_progress(self, scan_id: int) -> ProgressSnapshot:
        async with self.session_factory() as session:
            await self._require_scan(session, scan_id)
            return await ProgressAggregator(session).snapshot(scan_id)

    async def _require_scan(self, session: AsyncSession, scan_id: int) -> None:
        found = await session.scalar(
            select(UserProgressModel.id).where(UserProgressModel.scan_id == scan_id)
        )
        if found is None:
            raise NotFound("scan", scan_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mark_complete(self, recommendation_id: int) -> ProgressSnapshot:
        """User marks an active or in-progress recommendation as done.

        Raises:
            NotFound: If the id is unknown
            InvalidTransition: If the recommendation is not active/in_progress
            ConcurrencyConflict: If the scan lock times out
        """
        scan_id = await self._scan_of(recommendation_id)
        now = self.clock()
        async with self._scan_transaction(scan_id) as (session, progress):
            store = self._store(session)
            record = await store.get(recommendation_id)
            current = UnlockState(record.unlock_state)
            if current not in _MARKABLE_STATES:
                raise InvalidTransition(record.id, current.value, UnlockState.COMPLETED.value)

            await store.update_state(record, UnlockState.COMPLETED, now)
            progress.last_activity_at = now
            snapshot = await ProgressAggregator(session).recompute(scan_id, progress)

        logger.info(f"Recommendation {recommendation_id} marked complete")
        return snapshot

    async def skip_recommendation(
        self, recommendation_id: int, force: bool = False
    ) -> ProgressSnapshot:
        """Opt out of a recommendation.

        Users may skip only after the cooldown since unlock; ``force`` is the
        admin path and ignores the cooldown.

        Raises:
            NotFound, InvalidTransition, SkipNotAvailable, ConcurrencyConflict
        """
        scan_id = await self._scan_of(recommendation_id)
        now = self.clock()
        async with self._scan_transaction(scan_id) as (session, progress):
            store = self._store(session)
            record = await store.get(recommendation_id)
            if (
                not force
                and record.skip_enabled_at is not None
                and record.skip_enabled_at > now
            ):
                raise SkipNotAvailable(record.id, record.skip_enabled_at)

            await store.update_state(record, UnlockState.SKIPPED, now)
            progress.last_activity_at = now
            snapshot = await ProgressAggregator(session).recompute(scan_id, progress)

        logger.info(f"Recommendation {recommendation_id} skipped (force={force})")
        return snapshot

    async def unlock_next(self, scan_id: int) -> UnlockResult | UnlockRejected:
        """Try to unlock the scan's next batch.

        Raises:
            NotFound: If the scan is unknown
            ConcurrencyConflict: If the scan lock times out
        """
        now = self.clock()
        async with self._scan_transaction(scan_id) as (session, progress):
            store = self._store(session)
            return await self._unlocker(session, store).attempt_unlock(progress, now)

    async def validate_recommendation(
        self, recommendation_id: int, live_findings: Any
    ) -> ValidationOutcome:
        """Check one recommendation against crawler findings.

        History is written even when the proposed transition is refused.
        """
        scan_id = await self._scan_of(recommendation_id)
        now = self.clock()
        async with self._scan_transaction(scan_id) as (session, progress):
            store = self._store(session)
            outcome = await ValidationEngine(session, store).validate(
                recommendation_id, live_findings, now
            )
            await ProgressAggregator(session).recompute(scan_id, progress)
        return outcome

    async def validate_completed(self, scan_id: int, live_findings: Any) -> ValidationSummary:
        """Re-check every completed/verified recommendation of a scan."""
        now = self.clock()
        async with self._scan_transaction(scan_id) as (session, progress):
            store = self._store(session)
            engine = ValidationEngine(session, store)
            records = await store.list_by_scan_and_state(
                scan_id, (UnlockState.COMPLETED, UnlockState.VERIFIED)
            )
            outcomes = [await engine.validate(r.id, live_findings, now) for r in records]
            await ProgressAggregator(session).recompute(scan_id, progress)

        summary = ValidationSummary.from_outcomes(scan_id, outcomes)
        logger.info(
            f"Validated {summary.total} completed recommendations for scan {scan_id}: "
            f"{summary.verified_complete} verified, {summary.regressed} regressed"
        )
        return summary

    # ------------------------------------------------------------------
    # Replacement
    # ------------------------------------------------------------------

    async def run_replacement_sweep(self, now: datetime | None = None) -> list[int]:
        """Replace stale recommendations on every scan whose date is due.

        Each scan is processed in its own transaction, so an interrupted
        sweep loses at most the scan in flight; rerunning picks up the rest.
        A scan whose lock times out stays due for the next sweep.

        Returns:
            Ids of the recommendations that were replaced
        """
        now = self._now(now)
        async with self.session_factory() as session:
            due = await self._replacer(session, self._store(session)).due_scan_ids(now)

        if not due:
            logger.debug("Replacement sweep: nothing due")
            return []

        replaced: list[int] = []
        for scan_id in due:
            try:
                report = await self._replace_due_scan(scan_id, now)
            except ConcurrencyConflict as exc:
                logger.warning(f"Replacement sweep skipped scan {scan_id}: {exc}")
                continue
            if report is not None:
                replaced.extend(report.replaced_ids)

        logger.info(f"Replacement sweep over {len(due)} scan(s) replaced {len(replaced)}")
        return replaced

    async def force_replacement(self, scan_id: int, now: datetime | None = None) -> ReplacementReport:
        """Run one scan's replacement now, regardless of its due date."""
        now = self._now(now)
        async with self._scan_transaction(scan_id) as (session, progress):
            replacer = self._replacer(session, self._store(session))
            return await replacer.replace_for_scan(progress, now, forced=True)

    async def _replace_due_scan(self, scan_id: int, now: datetime) -> ReplacementReport | None:
        async with self._scan_transaction(scan_id) as (session, progress):
            replacer = self._replacer(session, self._store(session))
            # Re-check under the lock: another sweeper may have handled it
            if not replacer.is_due(progress, now):
                return None
            return await replacer.replace_for_scan(progress, now)
