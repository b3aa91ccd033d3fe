"""arq worker: scheduled replacement sweeps.

Run with ``arq recunlock.worker.WorkerSettings``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from arq.connections import RedisSettings
from arq.cron import cron

from recunlock.config import get_config
from recunlock.core.logging import configure_logging
from recunlock.db.connection import close_db, get_session_factory
from recunlock.service import UnlockService

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)
    ctx["service"] = UnlockService(session_factory=get_session_factory(), config=config)
    logger.info("Worker started. Database connection initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    logger.info("Worker stopped. Database connection closed.")


async def replacement_sweep_job(ctx: dict[str, Any]) -> dict[str, Any]:
    """Replace stale recommendations on every due scan."""
    service: UnlockService = ctx["service"]
    replaced = await service.run_replacement_sweep()
    return {"status": "completed", "replaced": len(replaced), "replaced_ids": replaced}


async def force_replacement_job(ctx: dict[str, Any], scan_id: int) -> dict[str, Any]:
    """On-demand replacement for one scan."""
    service: UnlockService = ctx["service"]
    report = await service.force_replacement(scan_id)
    return {
        "status": "completed",
        "scan_id": scan_id,
        "replaced": report.replaced_count,
        "next_replacement_date": report.next_replacement_date.isoformat()
        if report.next_replacement_date
        else None,
    }


def _sweep_hour() -> int:
    try:
        return get_config().replacement.sweep_hour
    except KeyError:
        return int(os.environ.get("REPLACEMENT_SWEEP_HOUR", "3"))


def _redis_url() -> str:
    try:
        return get_config().redis_url
    except KeyError:
        return os.environ.get("REDIS_URL", "redis://localhost:6379")


class WorkerSettings:
    functions = [replacement_sweep_job, force_replacement_job]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(_redis_url())
    cron_jobs = [
        cron(replacement_sweep_job, hour=_sweep_hour(), minute=0, run_at_startup=False),
    ]
