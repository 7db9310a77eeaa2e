"""In-memory expiring cache with an injectable clock.

Model lookups are read on every chat turn but change rarely, so they are
kept for a short TTL. Writers must call :meth:`ExpiringCache.invalidate`
(or :meth:`ExpiringCache.clear`) before returning so a stale default model
never outlives the write that replaced it.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Generic, Hashable, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]

_MISSING = object()


class ExpiringCache(Generic[T]):
    """Key/value cache where each entry expires ``ttl`` seconds after being set."""

    def __init__(self, ttl: float, *, clock: Clock | None = None) -> None:
        if ttl < 0:
            raise ValueError("ttl must be non-negative")
        self._ttl = ttl
        self._clock: Clock = clock or time.monotonic
        self._entries: dict[Hashable, tuple[T, float]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: Hashable, default: Any = None) -> T | Any:
        entry = self._entries.get(key, _MISSING)
        if entry is _MISSING:
            return default
        value, expires_at = entry  # type: ignore[misc]
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return default
        return value

    def set(self, key: Hashable, value: T) -> None:
        self._entries[key] = (value, self._clock() + self._ttl)

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key, _MISSING) is not _MISSING  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["Clock", "ExpiringCache"]
