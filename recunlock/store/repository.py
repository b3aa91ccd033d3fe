"""Recommendation record store.

Enforces the transition table on every state change and keeps replacement
lineage intact. All methods work inside the caller's transaction; nothing
here commits, so a caller's rollback undoes every write of the operation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recunlock.db.models import RecommendationModel
from recunlock.errors import InvalidTransition, NotFound
from recunlock.models import (
    RecommendationDraft,
    UnlockState,
    can_transition,
)
from recunlock.utils import utcnow

logger = logging.getLogger(__name__)


class RecommendationStore:
    """Durable recommendation records keyed by id."""

    def __init__(self, session: AsyncSession, skip_cooldown: timedelta = timedelta(days=5)):
        """Initialize the store with a database session.

        Args:
            session: SQLAlchemy async session (transaction owned by caller)
            skip_cooldown: Delay after unlock before a user may skip
        """
        self.session = session
        self.skip_cooldown = skip_cooldown

    async def get(self, recommendation_id: int) -> RecommendationModel:
        """Fetch one recommendation.

        Raises:
            NotFound: If the id is unknown
        """
        record = await self.session.get(RecommendationModel, recommendation_id)
        if record is None:
            raise NotFound("recommendation", recommendation_id)
        return record

    async def list_by_scan(self, scan_id: int) -> list[RecommendationModel]:
        stmt = (
            select(RecommendationModel)
            .where(RecommendationModel.scan_id == scan_id)
            .order_by(RecommendationModel.batch_number, RecommendationModel.id)
        )
        return list((await self.session.execute(stmt)).scalars())

    async def list_by_scan_and_state(
        self,
        scan_id: int,
        state: UnlockState | Iterable[UnlockState],
    ) -> list[RecommendationModel]:
        """Recommendations of a scan in the given state(s), ascending id."""
        states = [state] if isinstance(state, UnlockState) else list(state)
        stmt = (
            select(RecommendationModel)
            .where(
                RecommendationModel.scan_id == scan_id,
                RecommendationModel.unlock_state.in_(states),
            )
            .order_by(RecommendationModel.id)
        )
        return list((await self.session.execute(stmt)).scalars())

    async def next_locked(self, scan_id: int) -> RecommendationModel | None:
        """Highest-priority locked recommendation of a scan (ties by ascending id)."""
        stmt = (
            select(RecommendationModel)
            .where(
                RecommendationModel.scan_id == scan_id,
                RecommendationModel.unlock_state == UnlockState.LOCKED,
            )
            .order_by(RecommendationModel.priority.desc(), RecommendationModel.id)
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def update_state(
        self,
        recommendation: int | RecommendationModel,
        new_state: UnlockState,
        now: datetime | None = None,
    ) -> RecommendationModel:
        """Move one recommendation to ``new_state``.

        Raises:
            NotFound: If an id is given and unknown
            InvalidTransition: If the move is not in the transition table
        """
        record = (
            recommendation
            if isinstance(recommendation, RecommendationModel)
            else await self.get(recommendation)
        )
        current = UnlockState(record.unlock_state)
        if not can_transition(current, new_state):
            raise InvalidTransition(record.id, current.value, new_state.value)

        self._apply_state(record, new_state, now or utcnow())
        await self.session.flush()
        logger.debug(f"Recommendation {record.id}: {current.value} -> {new_state.value}")
        return record

    async def activate(
        self, recommendation_ids: Sequence[int], now: datetime | None = None
    ) -> int:
        """Bulk ``locked -> active`` as a single statement.

        Only rows still ``locked`` are touched; callers compare the returned
        count with the ids they selected to detect interference.
        """
        if not recommendation_ids:
            return 0
        now = now or utcnow()
        stmt = (
            update(RecommendationModel)
            .where(
                RecommendationModel.id.in_(recommendation_ids),
                RecommendationModel.unlock_state == UnlockState.LOCKED,
            )
            .values(
                unlock_state=UnlockState.ACTIVE,
                unlocked_at=now,
                skip_enabled_at=now + self.skip_cooldown,
            )
            .returning(RecommendationModel.id)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return len(result.scalars().all())

    async def add_drafts(
        self,
        scan_id: int,
        user_id: int,
        drafts: Sequence[RecommendationDraft],
        now: datetime | None = None,
    ) -> list[RecommendationModel]:
        """Insert generated recommendations; batch 1 starts active, the rest locked."""
        now = now or utcnow()
        records = []
        for draft in drafts:
            record = self._from_draft(scan_id, user_id, draft)
            if draft.batch_number == 1:
                self._apply_state(record, UnlockState.ACTIVE, now)
            else:
                record.unlock_state = UnlockState.LOCKED
            records.append(record)

        self.session.add_all(records)
        await self.session.flush()
        return records

    async def append_replacement(
        self,
        old_id: int,
        draft: RecommendationDraft,
        now: datetime | None = None,
    ) -> RecommendationModel:
        """Supersede ``old_id`` with a fresh record in the same slot.

        The old row becomes ``skipped`` and the new row is inserted with
        ``previous_recommendation_id = old_id``. Both writes are flushed in
        the caller's transaction, so either both commit or neither does.

        Raises:
            NotFound: If ``old_id`` is unknown
            InvalidTransition: If the old record is already ``skipped``
        """
        now = now or utcnow()
        old = await self.get(old_id)
        current = UnlockState(old.unlock_state)
        if not can_transition(current, UnlockState.SKIPPED):
            raise InvalidTransition(old.id, current.value, UnlockState.SKIPPED.value)

        self._apply_state(old, UnlockState.SKIPPED, now)

        new = self._from_draft(old.scan_id, old.user_id, draft)
        new.previous_recommendation_id = old.id
        # A replacement occupies the old slot, so it is visible when the old one was
        if current == UnlockState.LOCKED:
            new.unlock_state = UnlockState.LOCKED
        else:
            self._apply_state(new, UnlockState.ACTIVE, now)
            # The slot keeps its skip eligibility; the cooldown does not restart
            if old.skip_enabled_at is not None and old.skip_enabled_at < new.skip_enabled_at:
                new.skip_enabled_at = old.skip_enabled_at

        self.session.add(new)
        await self.session.flush()
        logger.info(f"Recommendation {old.id} replaced by {new.id} (scan {old.scan_id})")
        return new

    async def replacement_chain(self, recommendation_id: int) -> list[RecommendationModel]:
        """Walk ``previous_recommendation_id`` back to the original record."""
        chain: list[RecommendationModel] = []
        seen: set[int] = set()
        current: int | None = recommendation_id
        while current is not None and current not in seen:
            seen.add(current)
            record = await self.get(current)
            chain.append(record)
            current = record.previous_recommendation_id
        return chain

    def _apply_state(
        self, record: RecommendationModel, new_state: UnlockState, now: datetime
    ) -> None:
        record.unlock_state = new_state
        if new_state == UnlockState.ACTIVE:
            record.unlocked_at = now
            record.skip_enabled_at = now + self.skip_cooldown
        elif new_state == UnlockState.COMPLETED:
            record.marked_complete_at = now
        elif new_state == UnlockState.VERIFIED:
            record.verified_at = now
        elif new_state == UnlockState.SKIPPED:
            record.skipped_at = now

    @staticmethod
    def _from_draft(scan_id: int, user_id: int, draft: RecommendationDraft) -> RecommendationModel:
        return RecommendationModel(
            scan_id=scan_id,
            user_id=user_id,
            category=draft.category,
            recommendation_text=draft.recommendation_text,
            scope=draft.scope,
            page_url=draft.page_url,
            priority=draft.priority,
            checked_elements=list(draft.checked_elements),
            batch_number=draft.batch_number,
            progress_percentage=0,
        )
