"""Single-flight memoizing cache for secondary resources.

Keyed by ScopedName, with the loader supplied per call since keypairs and
security groups are created differently. Concurrent callers for one key
share one creation task; failures are never memoized.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator

from loguru import logger

from cirrus.api.model import ScopedName


class KeyedResourceCache[V]:
    """In-process cache from ScopedName to a created-or-found resource."""

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._entries: dict[ScopedName, V] = {}
        self._in_flight: dict[ScopedName, asyncio.Task[V]] = {}
        # Creations invalidated while running; their result is not kept
        self._stale: set[asyncio.Task[V]] = set()
        self._guard = asyncio.Lock()
        self._log = logger.bind(component="cache", cache=name)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ScopedName]:
        return iter(list(self._entries))

    def keys(self) -> frozenset[ScopedName]:
        return frozenset(self._entries)

    def get(self, key: ScopedName) -> V | None:
        return self._entries.get(key)

    def put(self, key: ScopedName, value: V) -> None:
        """Record a resource discovered outside get_or_create."""
        self._entries[key] = value

    def invalidate(self, key: ScopedName) -> bool:
        """Forget key. A creation already in flight is delivered but not kept."""
        task = self._in_flight.pop(key, None)
        if task is not None:
            self._stale.add(task)
        removed = self._entries.pop(key, None) is not None
        if removed:
            self._log.debug("Invalidated {key}", key=key)
        return removed

    def clear(self) -> None:
        for key in list(self._entries) + list(self._in_flight):
            self.invalidate(key)

    async def get_or_create(self, key: ScopedName, create: Callable[[], Awaitable[V]]) -> V:
        if key in self._entries:
            return self._entries[key]

        async with self._guard:
            if key in self._entries:
                return self._entries[key]

            task = self._in_flight.get(key)
            if task is None or _failed(task):
                self._log.debug("Cache miss {key}, creating", key=key)
                task = asyncio.create_task(self._create(key, create))
                self._in_flight[key] = task
            else:
                self._log.debug("Joining in-flight creation of {key}", key=key)

        return await asyncio.shield(task)

    async def _create(self, key: ScopedName, create: Callable[[], Awaitable[V]]) -> V:
        task = asyncio.current_task()
        try:
            value = await create()
        except BaseException as e:
            self._log.debug("Creation of {key} failed, not cached: {err!r}", key=key, err=e)
            raise
        else:
            if task in self._stale:
                self._log.debug("{key} invalidated during creation, not cached", key=key)
            else:
                self._entries[key] = value
            return value
        finally:
            async with self._guard:
                if self._in_flight.get(key) is task:
                    del self._in_flight[key]
            self._stale.discard(task)


def _failed(task: asyncio.Task) -> bool:
    return task.done() and (task.cancelled() or task.exception() is not None)
