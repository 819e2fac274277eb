"""
Provenance index: which cached keys were built from which (owner, collection).

The index keeps two views of the same links:
- a reverse map key -> ProvenanceLink
- a forward grouping owner -> collection -> {key: ProvenanceLink}

A link exists in the reverse map iff it is present in the forward grouping,
and the forward grouping never holds an empty collection or owner.
The index does no locking of its own; FastCache guards it with its store lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .storage import DEFAULT_TTL


# ============================================================================
# Provenance descriptors
# ============================================================================


@dataclass(frozen=True)
class DataInfo:
    """Grouping key for cached query results: upstream owner and collection."""

    owner: str
    collection: str

    @classmethod
    def from_mapping(cls, info: Mapping[str, Any]) -> "DataInfo":
        """
        Build from a mapping.

        Accepts ``{"owner", "collection"}`` and the ``{"owner", "collectionName"}``
        shape used by data-layer descriptors.
        """
        collection = info.get("collection", info.get("collectionName"))
        if info.get("owner") is None or collection is None:
            raise ValueError(f"owner and collection are required, got {dict(info)!r}")
        return cls(owner=info["owner"], collection=collection)


def as_data_info(info: DataInfo | Mapping[str, Any] | tuple) -> DataInfo:
    """Coerce a DataInfo, mapping or (owner, collection) pair into a DataInfo."""
    if isinstance(info, DataInfo):
        return info
    if isinstance(info, Mapping):
        return DataInfo.from_mapping(info)
    if isinstance(info, tuple) and len(info) == 2:
        return DataInfo(*info)
    raise ValueError(f"Unsupported provenance descriptor: {info!r}")


@dataclass
class ProvenanceLink:
    """Ties a cache key to its group and to the loader that can rebuild it."""

    key: str
    owner: str
    collection: str
    loader: Callable[..., Any] | None = None
    ttl: float = DEFAULT_TTL

    @property
    def data_info(self) -> DataInfo:
        return DataInfo(self.owner, self.collection)


# ============================================================================
# ProvenanceIndex
# ============================================================================


class ProvenanceIndex:
    """Reverse and forward provenance maps with cascading cleanup."""

    def __init__(self):
        self._links: dict[str, ProvenanceLink] = {}
        self._owners: dict[str, dict[str, dict[str, ProvenanceLink]]] = {}

    def link(
        self,
        key: str,
        loader: Callable[..., Any] | None,
        owner: str,
        collection: str,
        ttl: float = DEFAULT_TTL,
    ) -> ProvenanceLink:
        """Create or replace the link for key, moving it if its group changed."""
        current = self._links.get(key)
        if current is not None and (current.owner, current.collection) != (
            owner,
            collection,
        ):
            self.unlink(key)

        link = ProvenanceLink(
            key=key, owner=owner, collection=collection, loader=loader, ttl=ttl
        )
        self._links[key] = link
        self._owners.setdefault(owner, {}).setdefault(collection, {})[key] = link
        return link

    def unlink(self, key: str) -> bool:
        """Remove the link for key and prune emptied containers."""
        link = self._links.pop(key, None)
        if link is None:
            return False

        collections = self._owners.get(link.owner, {})
        members = collections.get(link.collection, {})
        members.pop(key, None)
        self._prune(link.owner, link.collection)
        return True

    def _prune(self, owner: str, collection: str) -> None:
        collections = self._owners.get(owner)
        if collections is None:
            return
        if not collections.get(collection, True):
            del collections[collection]
        if not collections:
            del self._owners[owner]

    def get(self, key: str) -> ProvenanceLink | None:
        return self._links.get(key)

    def links_for(self, owner: str, collection: str) -> list[ProvenanceLink]:
        """Snapshot of the links in one group (empty if the group is unknown)."""
        return list(self._owners.get(owner, {}).get(collection, {}).values())

    def keys_for(self, owner: str, collection: str) -> list[str]:
        return [link.key for link in self.links_for(owner, collection)]

    def has_owner(self, owner: str) -> bool:
        return owner in self._owners

    def has_collection(self, owner: str, collection: str) -> bool:
        return collection in self._owners.get(owner, {})

    def owners(self) -> dict[str, dict[str, list[str]]]:
        """Copy of the forward grouping as owner -> collection -> keys."""
        return {
            owner: {name: list(members) for name, members in collections.items()}
            for owner, collections in self._owners.items()
        }

    def flush_owners(self) -> None:
        """Drop every owner, and with them every link."""
        self._owners.clear()
        self._links.clear()

    def flush_collections(self, collection: str | None = None) -> int:
        """
        Drop collections by name across all owners (all collections when None).

        Owners left without collections are removed. Returns the number of
        links dropped.
        """
        if collection is None:
            dropped = len(self._links)
            self.flush_owners()
            return dropped

        dropped = 0
        for owner in list(self._owners):
            members = self._owners[owner].pop(collection, None)
            if members is None:
                continue
            for key in members:
                self._links.pop(key, None)
            dropped += len(members)
            self._prune(owner, collection)
        return dropped

    def __contains__(self, key: object) -> bool:
        return key in self._links

    def __len__(self) -> int:
        return len(self._links)
