# poolfeed/api/app.py

"""HTTP endpoints: image resolution and listing queries."""

import asyncio
import logging
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from poolfeed.config.settings import Settings
from poolfeed.errors import TransientFetchError
from poolfeed.filters.normalizer import display_title
from poolfeed.models.listing import Marketplace
from poolfeed.services.fetch_gate import FetchGate, RateLimitStatus
from poolfeed.storage.image_cache import (
    ImageCache,
    content_key,
    is_local_ref,
    remote_ref,
)
from poolfeed.storage.listing_store import ListingStore

logger = logging.getLogger("poolfeed.api")


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "anonymous"


def _record_image(
    store: ListingStore, listing_id: str, src: str, local_path: str,
) -> bool:
    """Point a listing at *local_path* if *src* is that listing's image."""
    stored = store.get(listing_id)
    if stored is None or not stored.image_source:
        return False
    if content_key(remote_ref(stored.image_source)) != content_key(
        remote_ref(src)
    ):
        logger.warning(
            "Ignoring image back-reference: %s is not the image of %s",
            src, listing_id,
        )
        return False
    return store.set_image(listing_id, local_path)


def _too_many(status: RateLimitStatus) -> JSONResponse:
    return JSONResponse(
        {"error": "Too many requests"},
        status_code=429,
        headers=status.headers(),
    )


def create_app(
    store: ListingStore | None = None,
    image_cache: ImageCache | None = None,
    gate: FetchGate | None = None,
) -> FastAPI:
    """Build the app around injectable store, cache and gate."""
    gate = gate or FetchGate()
    store = store or ListingStore()
    image_cache = image_cache or ImageCache(gate)

    app = FastAPI(title="poolfeed", version="0.1.0")
    app.state.store = store
    app.state.image_cache = image_cache
    app.state.gate = gate

    @app.get("/api/image")
    async def resolve_image(
        request: Request,
        src: str = Query(..., min_length=1),
        force: bool = False,
        listing: str | None = None,
    ) -> Any:
        """Redirect to the local copy of *src*, fetching it if needed."""
        limit = gate.rate_limited(
            f"image:{_client_id(request)}",
            Settings.IMAGE_RATE_LIMIT,
            Settings.IMAGE_RATE_WINDOW_MS,
        )
        if limit.limited:
            return _too_many(limit)

        if is_local_ref(src):
            return RedirectResponse(
                src, status_code=302, headers=limit.headers(),
            )

        try:
            local_path = await image_cache.resolve(src, force=force)
        except TransientFetchError as exc:
            logger.warning("Image resolution failed for %s: %s", src, exc)
            return JSONResponse(
                {
                    "error": str(exc),
                    "placeholder": Settings.PLACEHOLDER_IMAGE,
                },
                status_code=502,
                headers=limit.headers(),
            )

        if listing:
            await asyncio.to_thread(
                _record_image, store, listing, src, local_path,
            )
        return RedirectResponse(
            local_path, status_code=302, headers=limit.headers(),
        )

    @app.get("/api/listings")
    async def list_listings(
        request: Request,
        q: str | None = None,
        marketplace: Marketplace | None = None,
        category: str | None = None,
        offset: int = Query(0, ge=0),
        limit: int = Query(Settings.LISTING_QUERY_DEFAULT_LIMIT, ge=1),
    ) -> Any:
        """Query stored listings; ``limit`` is capped server-side."""
        rate = gate.rate_limited(
            f"listings:{_client_id(request)}",
            Settings.LISTING_RATE_LIMIT,
            Settings.LISTING_RATE_WINDOW_MS,
        )
        if rate.limited:
            return _too_many(rate)

        listings = await asyncio.to_thread(
            store.query,
            q,
            marketplace,
            category,
            offset,
            min(limit, Settings.LISTING_QUERY_MAX_LIMIT),
        )
        payload = [
            {**item.to_dict(), "display_title": display_title(item.title)}
            for item in listings
        ]
        return JSONResponse(payload, headers=rate.headers())

    app.mount(
        Settings.IMAGE_CACHE_URL_PREFIX,
        StaticFiles(directory=image_cache.cache_dir, check_dir=False),
        name="cache",
    )
    return app
