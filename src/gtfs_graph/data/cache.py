"""Keyed cache scoped to one reconciliation run."""

from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class RunCache(Generic[K, V]):
    """Memoizes lookups for the lifetime of one run.

    A fresh cache is created for every reconciliation, so values never leak
    from one feed (or one snapshot of a feed) into another.
    """

    def __init__(self) -> None:
        self._values: dict[K, V] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: K) -> V | None:
        """Get a cached value, or None if the key was never stored."""
        return self._values.get(key)

    def set(self, key: K, value: V) -> None:
        """Store a value for the rest of the run."""
        self._values[key] = value

    async def get_or_load(self, key: K, loader: Callable[[K], Awaitable[V]]) -> V:
        """Return the cached value for key, calling loader once on a miss.

        None results are cached too.
        """
        value = self._values.get(key, _MISSING)
        if value is not _MISSING:
            self.hits += 1
            return value  # type: ignore[return-value]
        self.misses += 1
        loaded = await loader(key)
        self._values[key] = loaded
        return loaded

    def clear(self) -> None:
        """Drop all cached values."""
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)
