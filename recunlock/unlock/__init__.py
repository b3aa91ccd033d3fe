"""Progressive batch unlocking."""

from recunlock.unlock.scheduler import BatchUnlockScheduler

__all__ = ["BatchUnlockScheduler"]
