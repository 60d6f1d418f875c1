"""
Connection Cache
================

Process-local cache of live tenant connections.

Features:
- Read-through lookup keyed by tenant id
- At most one in-flight connect per tenant; concurrent misses share it
- Failed connects are never cached
- Capacity (LRU), idle and age eviction
- Leases: evicting a leased entry defers the close until the last release
- Metrics and monitoring

Usage:
    cache = ConnectionCache(close_client=adapter.close_client, policy=CachePolicy(max_entries=100))

    client = await cache.get_or_create("acme", lambda: adapter.create_client(url))

    async with cache.lease("acme", factory) as client:
        ...
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set
import logging

logger = logging.getLogger(__name__)


ClientFactory = Callable[[], Awaitable[Any]]


@dataclass
class CachePolicy:
    """Eviction policy for cached connections. None disables a limit."""
    max_entries: Optional[int] = None
    idle_timeout: Optional[float] = None  # seconds since last use
    max_age: Optional[float] = None       # seconds since creation

    def is_expired(self, entry: "CacheEntry", now: float) -> bool:
        if self.idle_timeout is not None and now - entry.last_used_at >= self.idle_timeout:
            return True
        if self.max_age is not None and now - entry.created_at >= self.max_age:
            return True
        return False


@dataclass
class CacheEntry:
    """A live connection owned by the cache."""
    tenant_id: str
    client: Any
    created_at: float
    last_used_at: float
    in_use: int = 0
    evict_pending: bool = False


@dataclass
class CacheMetrics:
    """Cache performance metrics."""
    hits: int = 0
    misses: int = 0
    connects: int = 0
    evictions: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return (self.hits / total) if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "connects": self.connects,
            "evictions": self.evictions,
            "errors": self.errors,
            "hit_rate": self.hit_rate,
        }


def _consume_result(task: "asyncio.Task") -> None:
    # Failures are delivered to waiters; this only marks them retrieved
    if not task.cancelled():
        task.exception()


class ConnectionCache:
    """
    Tenant id -> live connection map with coalesced creation.

    All inserts, evictions and removals go through this class. Nothing else
    mutates the entry map.
    """

    def __init__(
        self,
        close_client: Callable[[Any], Awaitable[None]],
        policy: Optional[CachePolicy] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._close_client = close_client
        self.policy = policy or CachePolicy()
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._pending: Dict[str, "asyncio.Task"] = {}
        self._waiting_leases: Dict[str, int] = {}
        self._draining: List[CacheEntry] = []
        self._closing: Set["asyncio.Task"] = set()
        self.metrics = CacheMetrics()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> List[str]:
        return list(self._entries)

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if self.policy.is_expired(entry, now):
            self._retire(entry)
            return None

        entry.last_used_at = now
        self.metrics.hits += 1
        return entry

    async def get_or_create(self, key: str, factory: ClientFactory) -> Any:
        """
        Return the cached client for key, creating it with factory on a miss.

        Concurrent misses for the same key await a single factory call. A
        failure propagates to every waiter and leaves nothing cached. A
        cancelled waiter does not cancel the shared creation.
        """
        return await self._get(key, factory, lease=False)

    async def acquire(self, key: str, factory: ClientFactory) -> Any:
        """
        Get a client and mark its entry in use until release().

        The lease is counted before the entry becomes visible to other
        callers, so eviction can never close a client between creation and
        the caller receiving it.
        """
        return await self._get(key, factory, lease=True)

    async def _get(self, key: str, factory: ClientFactory, lease: bool) -> Any:
        entry = self._lookup(key)
        if entry is not None:
            if lease:
                entry.in_use += 1
            return entry.client

        self.metrics.misses += 1
        task = self._pending.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._populate(key, factory))
            task.add_done_callback(_consume_result)
            self._pending[key] = task

        if not lease:
            return await asyncio.shield(task)

        # Leases taken while the connect is in flight; _populate moves them onto the entry
        self._waiting_leases[key] = self._waiting_leases.get(key, 0) + 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await self._abandon_lease(key, task)
            raise

    async def _abandon_lease(self, key: str, task: "asyncio.Task") -> None:
        if not task.done():
            remaining = self._waiting_leases.get(key, 0) - 1
            if remaining > 0:
                self._waiting_leases[key] = remaining
            else:
                self._waiting_leases.pop(key, None)
        elif not task.cancelled() and task.exception() is None:
            await self.release(key, task.result())

    async def _populate(self, key: str, factory: ClientFactory) -> Any:
        try:
            client = await factory()
        except BaseException:
            self.metrics.errors += 1
            self._waiting_leases.pop(key, None)
            raise
        finally:
            self._pending.pop(key, None)

        now = self._clock()
        self._entries[key] = CacheEntry(
            tenant_id=key,
            client=client,
            created_at=now,
            last_used_at=now,
            in_use=self._waiting_leases.pop(key, 0)
        )
        self.metrics.connects += 1
        logger.debug(f"Cached connection for tenant '{key}' ({len(self._entries)} cached)")

        self._enforce_policy(exclude=key)
        return client

    async def release(self, key: str, client: Any) -> None:
        """Return a client obtained with acquire()."""
        entry = self._entries.get(key)
        if entry is not None and entry.client is client:
            entry.in_use = max(0, entry.in_use - 1)
            entry.last_used_at = self._clock()
            return

        for draining in self._draining:
            if draining.client is client:
                draining.in_use -= 1
                if draining.in_use <= 0:
                    self._draining.remove(draining)
                    await self._close_entry(draining)
                return

    @asynccontextmanager
    async def lease(self, key: str, factory: ClientFactory) -> AsyncIterator[Any]:
        client = await self.acquire(key, factory)
        try:
            yield client
        finally:
            await self.release(key, client)

    def _retire(self, entry: CacheEntry) -> None:
        if self._entries.get(entry.tenant_id) is entry:
            del self._entries[entry.tenant_id]
        self.metrics.evictions += 1

        if entry.in_use > 0:
            entry.evict_pending = True
            self._draining.append(entry)
            logger.debug(f"Deferring close of leased connection for tenant '{entry.tenant_id}'")
            return

        task = asyncio.get_running_loop().create_task(self._close_entry(entry))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _enforce_policy(self, exclude: Optional[str] = None) -> int:
        now = self._clock()
        retired = 0

        for entry in list(self._entries.values()):
            if entry.tenant_id != exclude and self.policy.is_expired(entry, now):
                self._retire(entry)
                retired += 1

        max_entries = self.policy.max_entries
        if max_entries is not None and len(self._entries) > max_entries:
            # Idle entries go first, least recently used first
            candidates = sorted(
                (e for e in self._entries.values() if e.tenant_id != exclude),
                key=lambda e: (e.in_use > 0, e.last_used_at)
            )
            for entry in candidates[:len(self._entries) - max_entries]:
                self._retire(entry)
                retired += 1

        return retired

    async def _close_entry(self, entry: CacheEntry) -> None:
        try:
            await self._close_client(entry.client)
            logger.debug(f"Closed connection for tenant '{entry.tenant_id}'")
        except Exception as e:
            self.metrics.errors += 1
            logger.warning(f"Error closing connection for tenant '{entry.tenant_id}': {e}")

    async def _wait_closing(self) -> None:
        if self._closing:
            await asyncio.wait(set(self._closing))

    async def sweep(self) -> int:
        """Apply the eviction policy now; returns the number of entries evicted."""
        retired = self._enforce_policy()
        await self._wait_closing()
        return retired

    async def invalidate(self, key: str) -> bool:
        """
        Remove and close the connection for key.

        Waits for an in-flight creation for key to settle first, so a
        connection created by a racing miss is removed as well. Closes
        even if the entry is leased.

        Returns:
            True if a cached connection was removed
        """
        task = self._pending.get(key)
        if task is not None:
            await asyncio.wait({task})

        entry = self._entries.pop(key, None)
        draining = [e for e in self._draining if e.tenant_id == key]
        self._draining = [e for e in self._draining if e.tenant_id != key]

        for stale in draining:
            await self._close_entry(stale)
        if entry is None:
            return False

        await self._close_entry(entry)
        logger.debug(f"Invalidated connection for tenant '{key}'")
        return True

    async def clear(self) -> int:
        """Close every connection. Safe to call repeatedly."""
        while self._pending:
            await asyncio.wait(set(self._pending.values()))

        entries = list(self._entries.values()) + self._draining
        self._entries.clear()
        self._draining = []

        for entry in entries:
            await self._close_entry(entry)
        await self._wait_closing()

        if entries:
            logger.info(f"Closed {len(entries)} cached connections")
        return len(entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "pending": len(self._pending),
            "draining": len(self._draining),
            "policy": {
                "max_entries": self.policy.max_entries,
                "idle_timeout": self.policy.idle_timeout,
                "max_age": self.policy.max_age,
            },
            "metrics": self.metrics.to_dict(),
        }
