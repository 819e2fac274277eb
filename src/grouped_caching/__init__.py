"""
Grouped caching: TTL storage, read-through loading and group invalidation.

Expose the cache facade, its building blocks and decorators under `grouped_caching`.
"""

from .storage import InMemStore, CacheEntry
from .provenance import DataInfo, ProvenanceIndex, ProvenanceLink
from .propagation import Operation
from .refresh import BackgroundRefreshTask, RefreshRegistry, RefreshSupervisor
from .scheduler import CheckTimer
from .cache import FastCache
from .decorators import (
    TTLCache,
    ReadThroughCache,
    RTCache,
)

__all__ = [
    "InMemStore",
    "CacheEntry",
    "DataInfo",
    "ProvenanceIndex",
    "ProvenanceLink",
    "Operation",
    "BackgroundRefreshTask",
    "RefreshRegistry",
    "RefreshSupervisor",
    "CheckTimer",
    "FastCache",
    "TTLCache",
    "ReadThroughCache",
    "RTCache",
]
