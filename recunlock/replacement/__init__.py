"""Replacement of stale recommendations."""

from recunlock.replacement.scheduler import (
    LockedPoolSource,
    ReplacementScheduler,
    ReplacementSource,
)

__all__ = ["LockedPoolSource", "ReplacementScheduler", "ReplacementSource"]
