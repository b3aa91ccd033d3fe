"""Per-scan mutual exclusion.

Two layers guard every read-check-write sequence on a scan:

1. An in-process ``asyncio.Lock`` per scan id (this module), acquired with a
   timeout so a stuck holder surfaces as ``ConcurrencyConflict``.
2. A row lock on the scan's ``user_progress`` row (``SELECT ... FOR UPDATE``),
   taken inside the transaction, which serializes API processes and workers
   on PostgreSQL. SQLite ignores ``FOR UPDATE``; there the in-process lock and
   SQLite's own writer lock apply.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from recunlock.db.models import UserProgressModel
from recunlock.errors import ConcurrencyConflict, NotFound

logger = logging.getLogger(__name__)


class ScanLocks:
    """Registry of asyncio locks keyed by scan id.

    An entry lives only while some task holds or waits for it.
    """

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout = timeout_seconds
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, scan_id: int) -> asyncio.Lock:
        lock = self._locks.get(scan_id)
        if lock is None:
            lock = self._locks[scan_id] = asyncio.Lock()
        self._users[scan_id] = self._users.get(scan_id, 0) + 1
        return lock

    def _checkin(self, scan_id: int) -> None:
        remaining = self._users[scan_id] - 1
        if remaining:
            self._users[scan_id] = remaining
        else:
            del self._users[scan_id]
            del self._locks[scan_id]

    def is_locked(self, scan_id: int) -> bool:
        lock = self._locks.get(scan_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, scan_id: int) -> AsyncIterator[None]:
        """Hold the scan's lock for the duration of the block.

        Raises:
            ConcurrencyConflict: If the lock is not acquired within the timeout
        """
        lock = self._checkout(scan_id)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out after {self.timeout:.1f}s waiting for scan {scan_id} lock")
                raise ConcurrencyConflict(scan_id, self.timeout) from None

            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(scan_id)


async def lock_progress_row(session: AsyncSession, scan_id: int) -> UserProgressModel:
    """Load and row-lock the scan's progress row inside the open transaction.

    Raises:
        NotFound: If the scan has no progress row
        ConcurrencyConflict: If the database refuses the row lock
    """
    stmt = (
        select(UserProgressModel)
        .where(UserProgressModel.scan_id == scan_id)
        .with_for_update()
    )
    try:
        progress = (await session.execute(stmt)).scalar_one_or_none()
    except OperationalError as exc:
        raise ConcurrencyConflict(scan_id) from exc

    if progress is None:
        raise NotFound("scan", scan_id)
    return progress
