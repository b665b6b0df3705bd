# poolfeed/filters/deduplicator.py

"""Insert-or-update decision for incoming canonical listings."""

import asyncio
import logging
import weakref
from dataclasses import replace
from typing import Literal

from poolfeed.models.listing import CanonicalListing
from poolfeed.storage.listing_store import ListingStore

logger = logging.getLogger("poolfeed.filters")

UpsertOutcome = Literal["created", "updated"]


class ListingDeduplicator:
    """Upsert listings so one identity key never maps to two rows.

    Upserts for the same key are serialised with a per-key lock (last
    writer wins); different keys proceed in parallel. The store call
    runs in a worker thread so the event loop never blocks on SQLite.
    """

    def __init__(self, store: ListingStore) -> None:
        self.store = store
        # Entries vanish once no upsert holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _merge(
        self,
        candidate: CanonicalListing,
        existing: CanonicalListing | None,
    ) -> CanonicalListing:
        """Wholesale replace, keeping ``created_at`` and a cached image.

        A candidate without a local image keeps the existing one as
        long as it still points at the same remote source.
        """
        if existing is None:
            return candidate
        image = candidate.image
        if image is None and existing.image and (
            not candidate.image_source
            or candidate.image_source == existing.image_source
        ):
            image = existing.image
        return replace(
            candidate,
            id=existing.id,
            url=existing.url,
            image=image,
            image_source=candidate.image_source or existing.image_source,
            created_at=existing.created_at,
        )

    def _upsert_sync(self, candidate: CanonicalListing) -> UpsertOutcome:
        existing = self.store.get(candidate.id)
        if existing is None and candidate.product_ref:
            existing = self.store.find_by_product_ref(candidate.product_ref)
            if existing is not None:
                logger.info(
                    "Matched %s to existing listing %s by product ref %s",
                    candidate.url,
                    existing.id,
                    candidate.product_ref,
                )
        merged = self._merge(candidate, existing)
        created = self.store.upsert(merged)
        return "created" if created else "updated"

    async def upsert(self, candidate: CanonicalListing) -> UpsertOutcome:
        """Insert *candidate* or replace the listing it duplicates."""
        async with self._lock_for(candidate.id):
            outcome = await asyncio.to_thread(self._upsert_sync, candidate)
        logger.debug("Listing %s %s", candidate.id, outcome)
        return outcome
