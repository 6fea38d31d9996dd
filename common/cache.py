"""TTL cache used for read-heavy catalog listings."""
from __future__ import annotations

from datetime import date
from typing import Callable, Generic, Optional, TypeVar

from cachetools import TTLCache

T = TypeVar("T")


class SimpleTTLCache(Generic[T]):
    def __init__(self, ttl: int, maxsize: int = 256) -> None:
        self._cache: TTLCache[str, T] = TTLCache(maxsize=maxsize, ttl=ttl)

    def get(self, key: str) -> Optional[T]:
        return self._cache.get(key)

    def set(self, key: str, value: T) -> None:
        self._cache[key] = value

    def get_or_set(self, key: str, factory: Callable[[], T]) -> T:
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        value = factory()
        self._cache[key] = value
        return value

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


def service_listing_key(page: int, per_page: int, today: date) -> str:
    # Discounted prices depend on the day, so the date is part of the key.
    return f"services:{today.isoformat()}:{page}:{per_page}"
