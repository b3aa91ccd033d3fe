"""Pytest configuration and fixtures for unlock engine tests.

Provides a file-backed SQLite database per test, a controllable clock and
a draft factory mimicking the recommendation generator's output.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from recunlock.config import AppConfig, DBConfig, LockConfig, reset_config
from recunlock.db.models import Base
from recunlock.models import RecommendationDraft, RecommendationScope
from recunlock.service import UnlockService

START = datetime(2026, 1, 5, 9, 0, 0)


class FakeClock:
    """Callable clock returning a settable naive-UTC time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    """Fresh SQLite database file shared by every session of one test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'unlock.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        db=DBConfig(url="sqlite+aiosqlite://"),
        lock=LockConfig(timeout_seconds=2.0),
    )


@pytest.fixture
def service(session_factory, app_config, clock) -> UnlockService:
    return UnlockService(session_factory=session_factory, config=app_config, clock=clock)


@pytest.fixture
def make_drafts():
    """Build drafts: ``make_drafts(5, 5, 3)`` gives batches of 5, 5 and 3."""

    def _make(
        *batch_sizes: int,
        scope: RecommendationScope = RecommendationScope.PAGE_SPECIFIC,
        elements: tuple[str, ...] = ("faq-section", "faq-schema"),
    ) -> list[RecommendationDraft]:
        drafts = []
        for batch, size in enumerate(batch_sizes, start=1):
            for position in range(1, size + 1):
                drafts.append(
                    RecommendationDraft(
                        category="content",
                        recommendation_text=f"Batch {batch} recommendation {position}",
                        batch_number=batch,
                        scope=scope,
                        page_url=None if scope == RecommendationScope.SITE_WIDE else "https://example.com/pricing",
                        checked_elements=list(elements),
                    )
                )
        return drafts

    return _make


@pytest_asyncio.fixture()
async def registered_scan(service, make_drafts) -> int:
    """Scan 101 (user 7) with batches of 5, 5 and 3."""
    await service.register_scan(101, 7, make_drafts(5, 5, 3))
    return 101
