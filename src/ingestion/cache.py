"""
In-process TTL cache used for tokens and display-name lookups.

Adapters keep bearer tokens, user names and group names here instead of on
ad-hoc instance attributes, so expiry is explicit and refreshes are
idempotent.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

V = TypeVar("V")

# Tokens are refreshed this long before the platform says they expire
TOKEN_SAFETY_MARGIN_SECONDS = 300.0


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float | None  # monotonic deadline, None = never


class TTLCache(Generic[V]):
    """
    Key/value cache with per-entry expiry.

    Usage:
        cache: TTLCache[str] = TTLCache(default_ttl=3600)
        value, hit = cache.get("U123")
        if not hit:
            cache.put("U123", "alice")
    """

    def __init__(
        self,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry[V]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> tuple[V | None, bool]:
        """Return ``(value, hit)``; expired entries count as misses."""
        entry = self._entries.get(key)
        if entry is None:
            return None, False
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._entries[key]
            return None, False
        return entry.value, True

    def put(self, key: str, value: V, ttl: float | None = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        expires_at = None if ttl is None else self._clock() + ttl
        self._entries[key] = _Entry(value=value, expires_at=expires_at)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_refresh(
        self,
        key: str,
        fetch: Callable[[], Awaitable[tuple[V, float]]],
        safety_margin: float = TOKEN_SAFETY_MARGIN_SECONDS,
    ) -> V:
        """
        Return a cached value or fetch a fresh one.

        ``fetch`` returns ``(value, lifetime_seconds)``. The entry is stored
        with ``lifetime - safety_margin`` so callers never receive a value
        that is about to expire. Concurrent callers for the same key share
        one fetch.
        """
        value, hit = self.get(key)
        if hit:
            return value  # type: ignore[return-value]

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            value, hit = self.get(key)
            if hit:
                return value  # type: ignore[return-value]
            fresh, lifetime = await fetch()
            self.put(key, fresh, ttl=max(0.0, lifetime - safety_margin))
            return fresh


def cache_key(*parts: Any) -> str:
    """Join key parts into a stable cache key."""
    return ":".join(str(p) for p in parts)
