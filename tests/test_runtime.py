import pytest

from rentease.config import reset_settings_cache
from rentease.service.runtime import (
    Runtime,
    _mask_url_password,
    check_rate_limit,
    get_runtime,
    reset_runtime_for_tests,
)
from rentease.storage.memory import MemoryCache, MemoryStore


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:secret@localhost:6379/0", "redis://:***@localhost:6379/0"),
        ("postgresql://app:pw@db:5432/rentease", "postgresql://app:***@db:5432/rentease"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        ("", ""),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_test_mode_runtime_uses_in_process_backends():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.redis_enabled is False
    assert runtime.auth.cache is runtime.cache


def test_missing_redis_without_fallback_fails(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    reset_settings_cache()

    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime()


def test_dev_fallback_uses_memory_cache(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
    reset_settings_cache()

    runtime = Runtime()

    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.redis_enabled is False


def test_reset_requires_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    with pytest.raises(RuntimeError, match="TEST_MODE"):
        reset_runtime_for_tests()


class TestCheckRateLimit:
    @pytest.mark.asyncio
    async def test_non_positive_limit_disables_check(self):
        runtime = get_runtime()
        for _ in range(5):
            assert await check_rate_limit(runtime, "global:1.1.1.1", 0, 60) is True

    @pytest.mark.asyncio
    async def test_invalid_window_defaults(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "global:1.1.1.1", 1, 0) is True
        assert await check_rate_limit(runtime, "global:1.1.1.1", 1, 0) is False
