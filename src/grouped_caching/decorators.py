"""
Cache decorators for function result caching on top of a FastCache.

Provides:
- TTLCache: Simple TTL-based caching (sync and async functions)
- ReadThroughCache: read-through / stale-while-revalidate for async callers
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Callable, TypeVar

from .cache import DEFAULT_READ_THROUGH_RELOAD, DEFAULT_READ_THROUGH_TTL, FastCache
from .storage import DEFAULT_TTL

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_key(key: str | Callable[..., str], args: tuple, kwargs: dict) -> str:
    """Build a cache key from a template ("user:{}") or a key function."""
    if callable(key):
        return key(*args, **kwargs)
    if "{" not in key:
        return key
    # Simple format string with first arg
    if args:
        return key.format(args[0])
    return key.format(**kwargs)


def _check_key(key: Any) -> None:
    if not callable(key) and not isinstance(key, str):
        raise TypeError(f"key must be a template string or callable, got {key!r}")


def _expose(wrapper: Callable, func: Callable, cache: FastCache) -> None:
    # Store cache reference for testing/debugging
    wrapper.__wrapped__ = func  # type: ignore
    wrapper.__name__ = func.__name__  # type: ignore
    wrapper.__doc__ = func.__doc__  # type: ignore
    wrapper._cache = cache  # type: ignore


# ============================================================================
# TTLCache - Simple TTL-based caching decorator
# ============================================================================


class SimpleTTLCache:
    """
    TTL cache decorator writing plain entries into a FastCache.

    Example:
        cache = FastCache()

        @TTLCache.cached(cache, "user:{}", ttl=60)
        def get_user(user_id):
            return db.fetch_user(user_id)

        @TTLCache.cached(cache, key=lambda x: f"calc:{x}", ttl=60)
        async def calculate(x):
            return x * 2
    """

    @classmethod
    def cached(
        cls,
        cache: FastCache,
        key: str | Callable[..., str],
        ttl: float = DEFAULT_TTL,
    ) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """
        Cache decorator with TTL.

        Args:
            cache: FastCache to store results in
            key: Cache key template (e.g., "user:{}") or generator function
            ttl: Time-to-live in seconds

        A result of None is never cached.
        """
        _check_key(key)

        def decorator(func: Callable[..., T]) -> Callable[..., T]:
            if inspect.iscoroutinefunction(func):

                async def async_wrapper(*args, **kwargs):
                    cache_key = make_key(key, args, kwargs)
                    cached_value = cache.get(cache_key)
                    if cached_value is not None:
                        return cached_value

                    logger.debug(f"Cache MISS: {cache_key}")
                    result = await func(*args, **kwargs)
                    if result is not None:
                        cache.set(cache_key, result, ttl)
                    return result

                _expose(async_wrapper, func, cache)
                return async_wrapper  # type: ignore

            def wrapper(*args, **kwargs) -> T:
                cache_key = make_key(key, args, kwargs)

                # Try cache first
                cached_value = cache.get(cache_key)
                if cached_value is not None:
                    return cached_value

                # Cache miss - call function
                logger.debug(f"Cache MISS: {cache_key}")
                result = func(*args, **kwargs)
                if result is not None:
                    cache.set(cache_key, result, ttl)
                return result

            _expose(wrapper, func, cache)
            return wrapper

        return decorator


# Alias for easier import
TTLCache = SimpleTTLCache


# ============================================================================
# ReadThroughCache - stale-while-revalidate on FastCache.get_or_load
# ============================================================================


class ReadThroughCache:
    """
    Read-through decorator: misses await the function, stale hits are served
    immediately while the function refreshes the entry in the background.

    The decorated function becomes a coroutine function whatever it was.

    Example:
        @RTCache.cached(cache, "product:{}", reload=30, ttl=300)
        async def get_product(product_id: int):
            return await db.fetch_product(product_id)
    """

    @classmethod
    def cached(
        cls,
        cache: FastCache,
        key: str | Callable[..., str],
        reload: float = DEFAULT_READ_THROUGH_RELOAD,
        ttl: float = DEFAULT_READ_THROUGH_TTL,
        background: bool = False,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """
        Read-through cache decorator.

        Args:
            cache: FastCache to store results in
            key: Cache key template or generator function
            reload: Seconds after which a hit triggers a background refresh
            ttl: Seconds after which the entry is dropped
            background: Also refresh the key on every cache tick once due
        """
        _check_key(key)

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            async def wrapper(*args, **kwargs):
                cache_key = make_key(key, args, kwargs)
                loader = functools.partial(func, *args, **kwargs)
                return await cache.get_or_load(
                    cache_key, loader, reload=reload, ttl=ttl, background=background
                )

            _expose(wrapper, func, cache)
            return wrapper

        return decorator


# Alias for shorter usage
RTCache = ReadThroughCache
