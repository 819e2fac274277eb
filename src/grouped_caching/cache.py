"""
FastCache: TTL storage, read-through loading and group invalidation.

One FastCache owns the entry store, the provenance index, the background
refresh registry and the check timer. All synchronous mutations run under the
store's re-entrant lock; the only suspension points are loader awaits.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from .propagation import (
    Operation,
    apply_create,
    apply_delete,
    apply_update,
    records_of,
)
from .provenance import DataInfo, ProvenanceIndex, ProvenanceLink, as_data_info
from .refresh import (
    DEFAULT_MAX_REFRESH_FAILURES,
    BackgroundRefreshTask,
    ErrorHandler,
    Loader,
    RefreshRegistry,
    RefreshSupervisor,
    call_loader,
)
from .scheduler import DEFAULT_CHECK_INTERVAL, CheckTimer
from .storage import DEFAULT_RELOAD, DEFAULT_TTL, CacheEntry, InMemStore

logger = logging.getLogger(__name__)

DEFAULT_READ_THROUGH_RELOAD = 20
DEFAULT_READ_THROUGH_TTL = 40


class FastCache:
    """
    In-process cache with TTL entries, stale-while-revalidate loading and
    owner/collection provenance for bulk updates of cached query results.

    A loader signals "no value" by returning None; every other result,
    falsy ones included, is cached.

    Example:
        async with FastCache(check_interval=5) as cache:
            users = await cache.get_or_load("users:active", load_users, reload=30, ttl=120)

            cache.register("q:latest", result, {"owner": "db1", "collection": "posts"}, load_latest)
            await cache.propagate(post_id, "update", {"title": "new"}, DataInfo("db1", "posts"))
    """

    def __init__(
        self,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        *,
        id_field: str = "id",
        data_field: str = "data",
        max_refresh_failures: int = DEFAULT_MAX_REFRESH_FAILURES,
        on_error: ErrorHandler | None = None,
    ):
        """
        Initialize the cache. The check timer is armed by start().

        Args:
            check_interval: Seconds between TTL sweeps / background refreshes (min 0.1)
            id_field: Record field compared against record ids in propagate()
            data_field: Field of a cached mapping that holds the record list
            max_refresh_failures: Consecutive background failures before a key is suspended
            on_error: Optional ``(key, exc)`` callback for background refresh failures
        """
        self.id_field = id_field
        self.data_field = data_field
        self._index = ProvenanceIndex()
        self._registry = RefreshRegistry()
        self._supervisor = RefreshSupervisor(
            max_failures=max_refresh_failures,
            on_error=on_error,
            on_exhausted=self.unregister_background_refresh,
        )
        self._store = InMemStore(
            on_delete=self._cleanup_key, on_write=self._supervisor.reset
        )
        self._lock = self._store.lock
        self._timer = CheckTimer(self._tick, check_interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Arm the check timer. Must be called with a running event loop."""
        self._timer.start()

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the check timer and optionally wait for pending refreshes."""
        self._timer.shutdown()
        if wait:
            await self.drain()

    async def drain(self) -> None:
        """Wait for every in-flight background refresh to finish."""
        await self._supervisor.drain()

    async def __aenter__(self) -> "FastCache":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    def get_check_interval(self) -> float:
        """Seconds between driver ticks."""
        return self._timer.interval

    def set_check_interval(self, seconds: float) -> bool:
        """Change the tick interval, re-arming a running timer. Invalid values are ignored."""
        return self._timer.set_interval(seconds)

    async def _tick(self) -> None:
        self.run_background_refresh()
        self.clear_expired()

    # ------------------------------------------------------------------
    # Entry store
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if absent or expired."""
        return self._store.get(key)

    def get_entry(self, key: str) -> CacheEntry | None:
        """Raw entry with deadlines (no expiry check)."""
        return self._store.get_entry(key)

    get_full = get_entry

    def exists(self, key: str) -> bool:
        return self._store.exists(key)

    def get_ttl(self, key: str) -> float | None:
        """Absolute time.monotonic() expiry of key, or None if absent."""
        return self._store.get_ttl(key)

    def set(self, key: str, value: Any, ttl: float = DEFAULT_TTL) -> None:
        self._store.set(key, value, ttl)

    def set_read_through(
        self,
        key: str,
        value: Any,
        reload: float = DEFAULT_RELOAD,
        ttl: float = DEFAULT_TTL,
    ) -> None:
        """Store value to be reloaded after ``reload`` and dropped after ``ttl`` seconds."""
        self._store.set_read_through(key, value, reload, ttl)

    def set_ttl(self, key: str, ttl: float) -> None:
        self._store.set_ttl(key, ttl)

    def set_value(self, key: str, value: Any) -> None:
        self._store.set_value(key, value)

    def delete(self, key: str) -> bool:
        """Delete key and its provenance link. Absent keys are a no-op."""
        return self._store.delete(key)

    def _cleanup_key(self, key: str) -> None:
        self._index.unlink(key)
        self._supervisor.reset(key)

    def list_keys(self) -> list[str]:
        return self._store.keys()

    def count_keys(self) -> int:
        return self._store.count()

    def clear_expired(self) -> int:
        """Sweep expired entries through the delete path. Returns count removed."""
        with self._lock:
            expired = self._store.expired_keys()
            for key in expired:
                self._store.delete(key)

        if expired:
            logger.debug(f"Swept {len(expired)} expired keys")
        return len(expired)

    def flush_entries(self) -> None:
        """Drop every entry together with every provenance link."""
        with self._lock:
            self._store.clear()
            self._index.flush_owners()
            self._supervisor.clear()

    def flush_owners(self) -> None:
        """Drop the whole provenance index; entries stay cached as plain entries."""
        with self._lock:
            self._index.flush_owners()

    def flush_collections(self, collection: str | None = None) -> int:
        """Drop provenance for one collection name across owners, or for all."""
        with self._lock:
            return self._index.flush_collections(collection)

    # ------------------------------------------------------------------
    # Read-through
    # ------------------------------------------------------------------

    async def get_or_load(
        self,
        key: str,
        loader: Loader,
        reload: float = DEFAULT_READ_THROUGH_RELOAD,
        ttl: float = DEFAULT_READ_THROUGH_TTL,
        background: bool = False,
    ) -> Any | None:
        """
        Read-through get with stale-while-revalidate.

        On a hit the cached value is returned immediately; if its reload
        deadline has passed, one refresh of ``loader`` is scheduled in the
        background. On a miss ``loader`` is awaited and a non-None result is
        stored. Concurrent misses each call the loader.

        Args:
            key: Cache key
            loader: Sync or async callable returning the value, or None for "absent"
            reload: Seconds until the entry is revalidated
            ttl: Seconds until the entry is dropped
            background: Register key for proactive refresh on every driver tick

        Raises:
            Whatever ``loader`` raises on a miss.
        """
        entry = self._store.live_entry(key)

        if entry is not None:
            if entry.needs_reload():
                if self._supervisor.is_suspended(key):
                    logger.debug(f"Cache HIT (stale, refresh suspended): {key}")
                else:
                    logger.debug(f"Cache HIT (stale): {key}, refreshing in background")
                    self._spawn_refresh(key, loader, reload, ttl, entry.version)
            else:
                logger.debug(f"Cache HIT (fresh): {key}")
            return entry.value

        logger.debug(f"Cache MISS: {key}")
        if background and not self._registry.has(key):
            self.register_background_refresh(key, reload, ttl, loader)

        value = await call_loader(loader)
        if value is None:
            return None

        self._store.set_read_through(key, value, reload, ttl)
        return value

    async def delete_and_cleanup(self, key: str, cleanup: Loader | None = None) -> Any:
        """Delete key, then await ``cleanup()`` and return its result."""
        self.delete(key)
        if cleanup is None:
            return None
        return await call_loader(cleanup)

    def _spawn_refresh(
        self,
        key: str,
        loader: Loader,
        reload: float,
        ttl: float,
        version: int | None,
    ) -> None:
        self._supervisor.spawn(key, self._refresh(key, loader, reload, ttl, version))

    async def _refresh(
        self,
        key: str,
        loader: Loader,
        reload: float,
        ttl: float,
        version: int | None,
    ) -> None:
        start = time.monotonic()
        value = await call_loader(loader)

        with self._lock:
            current = self._store.get_entry(key)
            if (current.version if current is not None else None) != version:
                logger.debug(f"Discarding refresh of {key}: key changed while loading")
                return

            if value is None:
                self._store.delete(key)
                logger.debug(f"Refresh of {key} returned nothing, key deleted")
            else:
                self._store.set_read_through(key, value, reload, ttl)
                logger.debug(
                    f"Refreshed {key} in {time.monotonic() - start:.3f}s"
                )

    # ------------------------------------------------------------------
    # Background refresh registry
    # ------------------------------------------------------------------

    def register_background_refresh(
        self, key: str, reload: float, ttl: float, loader: Loader
    ) -> BackgroundRefreshTask:
        """
        Refresh key on driver ticks once its reload deadline passed, read or not.

        Registering clears the key's failure count, so a suspended key gets
        another max_refresh_failures attempts.
        """
        with self._lock:
            self._supervisor.reset(key)
            return self._registry.register(key, reload, ttl, loader)

    def unregister_background_refresh(self, key: str) -> int:
        with self._lock:
            return self._registry.unregister(key)

    def clear_background_refresh_tasks(self) -> None:
        with self._lock:
            self._registry.clear()

    def background_refresh_tasks(self) -> list[BackgroundRefreshTask]:
        with self._lock:
            return self._registry.tasks()

    def run_background_refresh(self) -> int:
        """
        Schedule a refresh for every registered key that is due.

        A key is due when its entry's reload deadline passed or when it has no
        entry at all. Plain entries without a reload deadline, and keys whose
        refresh is suspended, are left alone.
        Must be called from inside the event loop. Returns the number scheduled.
        """
        due = []
        now = time.monotonic()
        with self._lock:
            for task in self._registry.tasks():
                if self._supervisor.is_suspended(task.key):
                    continue
                entry = self._store.get_entry(task.key)
                if entry is None:
                    due.append((task, None))
                elif entry.needs_reload(now):
                    due.append((task, entry.version))

        for task, version in due:
            self._spawn_refresh(
                task.key, task.loader, task.reload_seconds, task.ttl_seconds, version
            )
        return len(due)

    # ------------------------------------------------------------------
    # Provenance & propagation
    # ------------------------------------------------------------------

    def link(
        self,
        key: str,
        loader: Loader | None,
        owner: str,
        collection: str,
        ttl: float = DEFAULT_TTL,
    ) -> ProvenanceLink:
        """Group key under (owner, collection); ``loader`` rebuilds it on refresh."""
        with self._lock:
            return self._index.link(key, loader, owner, collection, ttl)

    map_cache_to_db = link

    def register(
        self,
        key: str,
        value: Any,
        data_info: DataInfo | Mapping[str, Any] | tuple,
        loader: Loader | None = None,
        ttl: float = DEFAULT_TTL,
    ) -> ProvenanceLink:
        """Cache a query result and link it to the collection it was read from."""
        info = as_data_info(data_info)
        with self._lock:
            self._store.set(key, value, ttl)
            return self._index.link(key, loader, info.owner, info.collection, ttl)

    register_read_query = register

    def get_link(self, key: str) -> ProvenanceLink | None:
        with self._lock:
            return self._index.get(key)

    def owners(self) -> dict[str, dict[str, list[str]]]:
        """Snapshot of the provenance index as owner -> collection -> keys."""
        with self._lock:
            return self._index.owners()

    def collection_keys(self, owner: str, collection: str) -> list[str]:
        with self._lock:
            return self._index.keys_for(owner, collection)

    async def propagate(
        self,
        record_id: Any,
        operation: Operation | str,
        patch: Mapping[str, Any] | None,
        data_info: DataInfo | Mapping[str, Any] | tuple,
    ) -> int:
        """
        Apply an upstream record change to every cached result of a collection.

        - update: merge ``patch`` into the first record with a matching id
        - delete: remove every record with a matching id
        - create: prepend ``patch`` to every linked record list
        - refresh (or anything else): rebuild each entry with its own loader,
          which receives the currently cached value

        Returns:
            Number of cache entries that were changed

        Raises:
            ValueError: create without a record
        """
        info = as_data_info(data_info)
        op = Operation.parse(operation)
        if op is Operation.CREATE and patch is None:
            raise ValueError("create requires the new record as patch")

        with self._lock:
            links = self._index.links_for(info.owner, info.collection)

        if op is Operation.REFRESH:
            return await self._refresh_links(links)

        touched = 0
        with self._lock:
            for link in links:
                entry = self._store.get_entry(link.key)
                if entry is None:
                    continue
                records = records_of(entry.value, self.data_field)
                if records is None:
                    logger.warning(
                        f"Cannot {op.value} {link.key}: cached value holds no record list"
                    )
                    continue

                if op is Operation.UPDATE:
                    changed = apply_update(records, record_id, patch, self.id_field)
                elif op is Operation.DELETE:
                    changed = apply_delete(records, record_id, self.id_field) > 0
                else:
                    apply_create(records, patch)
                    changed = True
                if changed:
                    touched += 1

        logger.debug(
            f"Propagated {op.value} of {record_id} to {touched} keys in "
            f"{info.owner}/{info.collection}"
        )
        return touched

    update_cache = propagate

    async def _refresh_links(self, links: list[ProvenanceLink]) -> int:
        touched = 0
        for link in links:
            entry = self._store.get_entry(link.key)
            if entry is None:
                continue
            if link.loader is None:
                logger.warning(f"Cannot refresh {link.key}: no loader linked")
                continue

            value = await call_loader(link.loader, entry.value)
            with self._lock:
                current = self._store.get_entry(link.key)
                if current is None or current.version != entry.version:
                    logger.debug(
                        f"Discarding refresh of {link.key}: key changed while loading"
                    )
                    continue

                if value is None:
                    self._store.delete(link.key)
                else:
                    self._store.set(link.key, value, link.ttl)
            touched += 1
        return touched
