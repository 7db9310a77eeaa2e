from __future__ import annotations

import pytest

from hybridchat.services.cache import ExpiringCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache: ExpiringCache[str] = ExpiringCache(60, clock=clock)

    cache.set("default", "gpt-4o")
    clock.now += 59
    assert cache.get("default") == "gpt-4o"
    assert "default" in cache

    clock.now += 1
    assert cache.get("default") is None
    assert "default" not in cache
    assert len(cache) == 0


def test_invalidate_and_clear() -> None:
    cache: ExpiringCache[int] = ExpiringCache(60, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    assert cache.get("a", "missing") == "missing"

    cache.clear()
    assert len(cache) == 0


def test_negative_ttl_rejected() -> None:
    with pytest.raises(ValueError):
        ExpiringCache(-1)
