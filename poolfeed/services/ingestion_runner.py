# poolfeed/services/ingestion_runner.py

"""Runs ingestion: adapter search, normalisation, filtering, upsert."""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from poolfeed.adapters.base_adapter import SourceAdapter
from poolfeed.adapters.registry import load_adapter
from poolfeed.config.settings import Settings
from poolfeed.errors import (
    NormalizationError,
    TransientFetchError,
    UnknownSourceError,
)
from poolfeed.filters.deduplicator import ListingDeduplicator
from poolfeed.filters.normalizer import (
    ListingNormalizer,
    identity_key,
    source_url,
)
from poolfeed.filters.quality_filter import QualityFilter
from poolfeed.models.listing import CanonicalListing, Marketplace, RawListing
from poolfeed.services.event_hub import EventHub
from poolfeed.services.fetch_gate import FetchGate
from poolfeed.storage.image_cache import ImageCache
from poolfeed.storage.listing_store import ListingStore

logger = logging.getLogger("poolfeed.ingest")

T = TypeVar("T")

LISTING_UPDATED = "listing.updated"


@dataclass
class IngestionJob:
    """One marketplace + query to ingest."""

    marketplace: Marketplace
    query: str
    limit: int = Settings.DEFAULT_INGEST_LIMIT
    options: dict[str, Any] = field(
        default_factory=lambda: dict[str, Any]()
    )


@dataclass
class IngestionReport:
    """Counts and recovered errors from one ingestion run."""

    marketplace: str
    query: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    rejected: int = 0
    excluded: int = 0
    images_cached: int = 0
    notified: int = 0
    cancelled: bool = False
    listing_ids: list[str] = field(
        default_factory=lambda: list[str]()
    )
    errors: list[str] = field(
        default_factory=lambda: list[str]()
    )

    @property
    def persisted(self) -> int:
        return self.created + self.updated


def _group_by_identity(raws: list[RawListing]) -> list[list[RawListing]]:
    """Group records sharing an identity key, keeping adapter order."""
    groups: dict[str, list[RawListing]] = {}
    for index, raw in enumerate(raws):
        url = source_url(raw) if isinstance(raw, Mapping) else None
        key = identity_key(url) if url else f"#{index}"
        groups.setdefault(key, []).append(raw)
    return list(groups.values())


class IngestionRunner:
    """Coordinates adapters, the normaliser, filters and the store.

    Every adapter call and image download holds a fetch-gate permit.
    Failures are recorded on the report; a run never aborts because
    of one bad record or one unreachable marketplace.
    """

    def __init__(
        self,
        store: ListingStore,
        gate: FetchGate | None = None,
        image_cache: ImageCache | None = None,
        event_hub: EventHub | None = None,
        normalizer: ListingNormalizer | None = None,
        quality_filter: QualityFilter | None = None,
        adapter_factory: Callable[[Marketplace], SourceAdapter] = load_adapter,
        workers: int | None = None,
        call_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.gate = gate or FetchGate()
        self.image_cache = image_cache
        self.event_hub = event_hub or EventHub()
        self.normalizer = normalizer or ListingNormalizer()
        self.quality_filter = quality_filter or QualityFilter()
        self.deduplicator = ListingDeduplicator(store)
        self._adapter_factory = adapter_factory
        self._workers = workers or Settings.INGEST_WORKERS
        self._call_timeout = (
            call_timeout
            if call_timeout is not None
            else Settings.OUTBOUND_CALL_TIMEOUT
        )
        for marketplace in Marketplace:
            self.gate.set_budget(
                self._gate_key(marketplace),
                Settings.ADAPTER_RATE_LIMIT,
                Settings.ADAPTER_RATE_WINDOW_MS,
            )

    # ── Private helpers ──────────────────────────────────

    @staticmethod
    def _gate_key(marketplace: Marketplace) -> str:
        return f"adapter:{marketplace.value}"

    async def _call_adapter(
        self,
        marketplace: Marketplace,
        func: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run one blocking adapter call under a permit and a timeout."""
        async with self.gate.acquire(self._gate_key(marketplace)):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(func, *args),
                    timeout=self._call_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise TransientFetchError(
                    f"[{marketplace.value}] adapter call timed out after "
                    f"{self._call_timeout:.0f}s",
                    source=marketplace.value,
                ) from exc

    async def _enrich(
        self,
        raw: RawListing,
        marketplace: Marketplace,
        adapter: SourceAdapter,
        report: IngestionReport,
    ) -> RawListing:
        """Attach the detail record; the search card stays the fallback."""
        url = source_url(raw)
        if url is None:
            return raw
        try:
            detail = await self._call_adapter(
                marketplace, adapter.fetch_detail, url,
            )
        except TransientFetchError as exc:
            report.errors.append(str(exc))
            logger.warning("Detail fetch failed for %s: %s", url, exc)
            return raw
        if not detail:
            return raw
        return {**raw, "detail": detail}

    async def _prefetch_image(
        self, listing: CanonicalListing, report: IngestionReport,
    ) -> None:
        if (
            self.image_cache is None
            or listing.image is not None
            or not listing.image_source
        ):
            return
        try:
            listing.image = await self.image_cache.resolve(
                listing.image_source
            )
            report.images_cached += 1
        except TransientFetchError as exc:
            report.errors.append(str(exc))
            logger.warning(
                "Image prefetch failed for listing %s: %s", listing.id, exc,
            )

    async def _notify_watchers(
        self, listing: CanonicalListing, report: IngestionReport,
    ) -> None:
        watchers = await asyncio.to_thread(self.store.watchers, listing.id)
        for user_id in watchers:
            report.notified += self.event_hub.publish(user_id, {
                "type": LISTING_UPDATED,
                "listing_id": listing.id,
                "title": listing.title,
                "url": listing.url,
                "updated_at": (
                    listing.updated_at or datetime.now(timezone.utc)
                ).isoformat(),
            })

    async def _process_record(
        self,
        raw: RawListing,
        marketplace: Marketplace,
        adapter: SourceAdapter,
        report: IngestionReport,
        with_details: bool,
        prefetch_images: bool,
    ) -> None:
        if with_details:
            raw = await self._enrich(raw, marketplace, adapter, report)

        try:
            listing = self.normalizer.normalize(raw, marketplace)
        except NormalizationError as exc:
            report.rejected += 1
            logger.info(
                "Rejected %s record: %s", marketplace.value, exc.reason,
            )
            return

        verdict = self.quality_filter.assess_listing(listing)
        if verdict.excluded:
            report.excluded += 1
            logger.info(
                "Excluded %s (%s): %s",
                listing.url,
                verdict.reason,
                listing.title,
            )
            return

        if prefetch_images:
            await self._prefetch_image(listing, report)

        outcome = await self.deduplicator.upsert(listing)
        if outcome == "created":
            report.created += 1
        else:
            report.updated += 1
            await self._notify_watchers(listing, report)
        report.listing_ids.append(listing.id)

    # ── Public API ───────────────────────────────────────

    async def run(
        self,
        marketplace: Marketplace,
        query: str,
        limit: int = Settings.DEFAULT_INGEST_LIMIT,
        options: Mapping[str, Any] | None = None,
        with_details: bool = False,
        prefetch_images: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> IngestionReport:
        """Ingest up to *limit* listings for *query* from *marketplace*.

        Records sharing an identity key are handled in adapter order by
        the same worker. Setting *cancel_event* stops the run between
        records.
        """
        report = IngestionReport(marketplace=marketplace.value, query=query)
        logger.info(
            "Ingesting '%s' from %s (limit %d)",
            query, marketplace.value, limit,
        )

        try:
            adapter = self._adapter_factory(marketplace)
        except UnknownSourceError as exc:
            report.errors.append(str(exc))
            logger.error("Cannot ingest from %s: %s", marketplace.value, exc)
            return report

        try:
            raws = await self._call_adapter(
                marketplace, adapter.search, query, limit, options,
            )
        except TransientFetchError as exc:
            report.errors.append(str(exc))
            logger.warning(
                "Search failed for '%s' on %s: %s",
                query, marketplace.value, exc,
            )
            return report

        raws = list(raws)[:limit]
        report.fetched = len(raws)

        queue: asyncio.Queue[list[RawListing]] = asyncio.Queue()
        for group in _group_by_identity(raws):
            queue.put_nowait(group)

        async def worker() -> None:
            while not queue.empty():
                group = queue.get_nowait()
                for raw in group:
                    if cancel_event is not None and cancel_event.is_set():
                        report.cancelled = True
                        return
                    try:
                        await self._process_record(
                            raw, marketplace, adapter, report,
                            with_details, prefetch_images,
                        )
                    except Exception as exc:
                        report.errors.append(str(exc))
                        logger.error(
                            "Unexpected error ingesting %s record: %s",
                            marketplace.value,
                            exc,
                            exc_info=True,
                        )

        await asyncio.gather(
            *(worker() for _ in range(min(self._workers, queue.qsize()) or 1))
        )

        logger.info(
            "Ingest '%s' on %s: %d fetched, %d created, %d updated, "
            "%d rejected, %d excluded, %d errors%s",
            query,
            marketplace.value,
            report.fetched,
            report.created,
            report.updated,
            report.rejected,
            report.excluded,
            len(report.errors),
            " (cancelled)" if report.cancelled else "",
        )
        return report

    async def run_many(
        self,
        jobs: list[IngestionJob],
        with_details: bool = False,
        prefetch_images: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> list[IngestionReport]:
        """Run several jobs concurrently; the gate bounds total fan-out."""
        return list(await asyncio.gather(*(
            self.run(
                job.marketplace,
                job.query,
                job.limit,
                job.options,
                with_details=with_details,
                prefetch_images=prefetch_images,
                cancel_event=cancel_event,
            )
            for job in jobs
        )))

    async def renormalize_all(self) -> IngestionReport:
        """Re-derive every stored listing from its raw blob, no fetching."""
        report = IngestionReport(marketplace="*", query="renormalize")
        listings = await asyncio.to_thread(
            lambda: list(self.store.iter_all())
        )
        report.fetched = len(listings)
        for stored in listings:
            try:
                fresh = self.normalizer.renormalize(stored)
            except NormalizationError as exc:
                report.rejected += 1
                logger.info(
                    "Cannot renormalize %s: %s", stored.id, exc.reason,
                )
                continue
            fresh.id = stored.id
            fresh.url = stored.url
            await self.deduplicator.upsert(fresh)
            report.updated += 1
            report.listing_ids.append(stored.id)
        logger.info(
            "Renormalized %d of %d listings",
            report.updated, report.fetched,
        )
        return report
