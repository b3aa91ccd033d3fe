"""Tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from recunlock.config import AppConfig, get_config, reset_config


def test_defaults(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///./unlock.db")
    for name in (
        "UNLOCK_BATCH_SIZE",
        "DAILY_UNLOCK_LIMIT",
        "REPLACEMENT_INTERVAL_DAYS",
        "SKIP_COOLDOWN_DAYS",
        "LOG_FORMAT",
        "REDIS_URL",
    ):
        monkeypatch.delenv(name, raising=False)

    config = AppConfig.from_env()

    assert config.db.url == "sqlite+aiosqlite:///./unlock.db"
    assert config.unlock.batch_size == 5
    assert config.unlock.daily_unlock_limit == 1
    assert config.unlock.unlock_window_hours == 24
    assert config.replacement.interval_days == 5
    assert config.replacement.staleness_days == 5
    assert config.replacement.target_active_count == 5
    assert config.skip.cooldown_days == 5
    assert config.lock.timeout_seconds == 10.0
    assert config.log_format == "text"
    assert config.redis_url == "redis://localhost:6379"


def test_overrides_from_env(monkeypatch):
    monkeypatch.setenv("UNLOCK_BATCH_SIZE", "3")
    monkeypatch.setenv("DAILY_UNLOCK_LIMIT", "0")
    monkeypatch.setenv("REPLACEMENT_STALENESS_DAYS", "7")
    monkeypatch.setenv("SCAN_LOCK_TIMEOUT", "2.5")
    monkeypatch.setenv("DB_ECHO", "true")
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6380")

    config = AppConfig.from_env()

    assert config.unlock.batch_size == 3
    assert config.unlock.daily_unlock_limit == 0
    assert config.replacement.staleness_days == 7
    assert config.lock.timeout_seconds == 2.5
    assert config.db.echo is True
    assert config.log_format == "json"
    assert config.redis_url == "redis://cache:6380"


def test_missing_database_url_fails_fast(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(KeyError, match="DATABASE_URL"):
        AppConfig.from_env()


def test_get_config_is_cached_until_reset(monkeypatch):
    first = get_config()
    assert get_config() is first

    monkeypatch.setenv("UNLOCK_BATCH_SIZE", "9")
    assert get_config().unlock.batch_size == first.unlock.batch_size

    reset_config()
    assert get_config().unlock.batch_size == 9
