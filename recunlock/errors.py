"""Exception taxonomy for the unlock engine.

Unlock rejections are not exceptions; see ``recunlock.models.UnlockRejected``.
"""

from __future__ import annotations

from datetime import datetime


class UnlockEngineError(Exception):
    """Base class for engine errors surfaced to the API layer."""


class NotFound(UnlockEngineError):
    """Referenced scan or recommendation does not exist."""

    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class InvalidTransition(UnlockEngineError):
    """Requested state change is not in the transition table."""

    def __init__(self, recommendation_id: int | None, current: str, attempted: str):
        self.recommendation_id = recommendation_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Recommendation {recommendation_id}: cannot move from "
            f"'{current}' to '{attempted}'"
        )


class ConcurrencyConflict(UnlockEngineError):
    """Scan-scoped lock could not be acquired in time. Safe to retry."""

    def __init__(self, scan_id: int, timeout: float | None = None):
        self.scan_id = scan_id
        self.timeout = timeout
        detail = f" within {timeout:.1f}s" if timeout is not None else ""
        super().__init__(f"Could not lock scan {scan_id}{detail}")


class ScanAlreadyRegistered(UnlockEngineError):
    """Recommendations for this scan were already registered."""

    def __init__(self, scan_id: int):
        self.scan_id = scan_id
        super().__init__(f"Scan {scan_id} already has registered recommendations")


class SkipNotAvailable(UnlockEngineError):
    """User skip requested before the cooldown elapsed."""

    def __init__(self, recommendation_id: int, skip_enabled_at: datetime):
        self.recommendation_id = recommendation_id
        self.skip_enabled_at = skip_enabled_at
        super().__init__(
            f"Recommendation {recommendation_id} can be skipped from "
            f"{skip_enabled_at.isoformat()}"
        )
