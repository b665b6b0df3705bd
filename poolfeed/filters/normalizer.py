# poolfeed/filters/normalizer.py

"""Map heterogeneous adapter records onto the canonical listing shape."""

import hashlib
import html
import json
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from poolfeed.adapters.registry import default_currency
from poolfeed.errors import NormalizationError
from poolfeed.filters.price_parser import (
    parse_moq_text,
    parse_price_text,
    parse_sold_count,
    price_from_fields,
)
from poolfeed.models.listing import (
    CanonicalListing,
    Marketplace,
    MinimumOrder,
    PriceRange,
    RawListing,
)

logger = logging.getLogger("poolfeed.filters")

UNTITLED = "Untitled"

# Query params that never change which product a URL points at
_TRACKING_PARAMS: frozenset[str] = frozenset({
    "ref", "spm", "scm", "src", "from", "source", "tracelog",
    "abtest", "abbucket", "algo_pvid", "algo_exp_id", "pvid",
    "qid", "sr", "sp_csd", "aref", "psc", "keywords",
    "pd_rd_i", "pd_rd_r", "pd_rd_w", "pd_rd_wg",
    "gclid", "fbclid", "mc_cid", "mc_eid", "_ga",
    "s_from", "searchtext", "selectedcarrier", "productsubject",
})

# Field names seen across adapters, in preference order
_URL_KEYS = ("url", "productUrl", "detailUrl", "link", "href")
_TITLE_KEYS = ("title", "name", "name_en", "productName", "subject", "heading")
_IMAGE_KEYS = (
    "heroImage", "image", "imageUrl", "image_url", "mainImage",
    "img", "thumbnail",
)
_PRICE_TEXT_KEYS = ("priceText", "priceRaw", "price_text", "price")
_MOQ_KEYS = ("moq", "moqText", "minOrder", "min_order", "minimumOrder")
_STORE_KEYS = (
    "supplier", "store", "storeName", "seller", "company", "companyName",
)
_CATEGORY_KEYS = ("categories", "category", "tags")
_SOLD_KEYS = ("soldCount", "sold", "ordersRaw", "orders")

# Marketplace product numbers recoverable from several URL shapes
_PRODUCT_REF_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"_(\d{8,})\.html?$"),                  # alibaba
    re.compile(r"/proddetail/[^/]*?-?(\d{6,})\.html?$"),  # indiamart
    re.compile(r"/product/([A-Za-z0-9]{6,})/"),        # made-in-china
    re.compile(r"/(?:p|item|product|dp|offer)/(\d+)(?:[/.]|$)"),
]
_PRODUCT_ID_PARAMS = ("productId", "product_id", "itemId", "offerId", "id")

_TAG_RE = re.compile(r"<[^>]+>")
_SLUG_RE = re.compile(r"[^a-z0-9]+")

# Marketplace boilerplate appended to titles
_TITLE_BOILERPLATE_RE = re.compile(
    r"\s*[-|]\s*(?:buy\s.*|alibaba\.com|made-in-china\.com|indiamart)\s*$",
    re.IGNORECASE,
)
_DISPLAY_TITLE_MAX = 120


def normalize_url(raw_url: str) -> str:
    """Strip tracking/session params to get a stable product URL."""
    parsed = urlparse(raw_url.strip())
    scheme = "https" if parsed.scheme in ("http", "https", "") else parsed.scheme
    netloc = parsed.netloc.lower()

    # Amazon-style path tracking (e.g. /ref=sr_1_243)
    path = re.sub(r"/ref=[^/]*", "", parsed.path)
    if len(path) > 1:
        path = path.rstrip("/")

    params = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in _TRACKING_PARAMS
        and not k.lower().startswith("utm_")
    ]
    new_query = urlencode(sorted(params)) if params else ""
    return urlunparse((scheme, netloc, path, "", new_query, ""))


def identity_key(raw_url: str) -> str:
    """Stable listing id: a pure function of the source URL."""
    return hashlib.sha1(
        normalize_url(raw_url).encode("utf-8")
    ).hexdigest()


def product_ref(raw_url: str, marketplace: Marketplace) -> str | None:
    """Best-effort marketplace product number, used as a dedup hint."""
    parsed = urlparse(raw_url)
    for pattern in _PRODUCT_REF_PATTERNS:
        match = pattern.search(parsed.path)
        if match:
            return f"{marketplace.value}:{match.group(1)}"
    query = dict(parse_qsl(parsed.query))
    for name in _PRODUCT_ID_PARAMS:
        value = query.get(name, "")
        if value.isdigit():
            return f"{marketplace.value}:{value}"
    return None


def clean_text(value: object) -> str:
    """Unescape entities, drop markup, collapse whitespace."""
    text = html.unescape(_TAG_RE.sub(" ", str(value)))
    return " ".join(text.split())


def display_title(title: str) -> str:
    """Shorten a stored title for listing cards."""
    text = _TITLE_BOILERPLATE_RE.sub("", clean_text(title))
    text = text.strip(" -|,;:")
    letters = [c for c in text if c.isalpha()]
    if letters and all(c.isupper() for c in letters) and len(letters) > 3:
        text = text.title()
    if len(text) > _DISPLAY_TITLE_MAX:
        text = text[:_DISPLAY_TITLE_MAX - 1].rstrip() + "…"
    return text or UNTITLED


def _slug(value: str) -> str:
    return _SLUG_RE.sub("-", value.lower()).strip("-")


def _first(
    layers: Iterable[Mapping[str, Any]], keys: Iterable[str],
) -> Any:
    """First non-empty value for any of *keys*, searching layers in order."""
    keys = tuple(keys)
    for layer in layers:
        for key in keys:
            value = layer.get(key)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            if isinstance(value, (list, tuple, dict)) and not value:
                continue
            return value
    return None


def source_url(raw: Mapping[str, Any]) -> str | None:
    """The record's http(s) source URL, coalesced across URL-ish keys.

    Search-card keys win over the attached ``detail`` record. Returns
    None when no usable URL is present.
    """
    detail = raw.get("detail")
    layers = [raw, detail] if isinstance(detail, Mapping) else [raw]
    value = _first(layers, _URL_KEYS)
    url = str(value).strip() if value is not None else ""
    if url.startswith("//"):
        url = "https:" + url
    if not url.startswith(("http://", "https://")):
        return None
    return url


class ListingNormalizer:
    """Turn one raw adapter record into a :class:`CanonicalListing`.

    A record may carry a ``detail`` mapping (from ``fetch_detail``);
    detail fields win over search-card fields, which remain the
    fallback.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Field extraction ─────────────────────────────────

    @staticmethod
    def _source_url(raw: Mapping[str, Any]) -> str:
        url = source_url(raw)
        if url is None:
            raise NormalizationError(
                f"no usable source url (got {_first([raw], _URL_KEYS)!r})"
            )
        return url

    @staticmethod
    def _title(layers: list[Mapping[str, Any]]) -> str:
        for layer in layers:
            for key in _TITLE_KEYS:
                value = layer.get(key)
                if value is None:
                    continue
                title = clean_text(value)
                if title and title.upper() != "N/A":
                    return title
        return UNTITLED

    @staticmethod
    def _price(
        layers: list[Mapping[str, Any]], currency: str,
    ) -> PriceRange | None:
        structured = price_from_fields(
            _first(layers, ("priceMin", "price_min", "minPrice")),
            _first(layers, ("priceMax", "price_max", "maxPrice")),
            _first(layers, ("currency",)),
            currency,
        )
        if structured is not None:
            return structured
        value = _first(layers, _PRICE_TEXT_KEYS)
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return price_from_fields(value, value, None, currency)
        return parse_price_text(str(value), currency)

    @staticmethod
    def _moq(layers: list[Mapping[str, Any]]) -> MinimumOrder | None:
        value = _first(layers, _MOQ_KEYS)
        if value is None:
            return None
        if isinstance(value, (int, float)) and value > 0:
            return MinimumOrder(quantity=int(value), text=str(value))
        return parse_moq_text(str(value))

    @staticmethod
    def _image(layers: list[Mapping[str, Any]]) -> tuple[str | None, str | None]:
        """Return ``(local_path, remote_url)``."""
        value = _first(layers, _IMAGE_KEYS)
        if isinstance(value, list):
            value = value[0]
        if not isinstance(value, str):
            return None, None
        ref = value.strip()
        if ref.startswith("//"):
            return None, "https:" + ref
        if ref.startswith("/"):
            return ref, None
        if ref.startswith(("http://", "https://")):
            return None, ref
        return None, None

    @staticmethod
    def _store(layers: list[Mapping[str, Any]]) -> str | None:
        for layer in layers:
            for key in _STORE_KEYS:
                value = layer.get(key)
                if isinstance(value, Mapping):
                    value = value.get("name")
                if value:
                    name = clean_text(value)
                    if name:
                        return name
        return None

    @staticmethod
    def _categories(layers: list[Mapping[str, Any]]) -> frozenset[str]:
        tags: set[str] = set()
        for layer in layers:
            for key in _CATEGORY_KEYS:
                value = layer.get(key)
                if isinstance(value, str):
                    parts: list[str] = re.split(r"[>|,/]", value)
                elif isinstance(value, (list, tuple, set, frozenset)):
                    parts = [str(v) for v in value]
                else:
                    continue
                tags.update(s for s in (_slug(p) for p in parts) if s)
        return frozenset(tags)

    @staticmethod
    def _tiers(layers: list[Mapping[str, Any]]) -> list[dict[str, str]]:
        value = _first(layers, ("priceTiers", "tiers"))
        if not isinstance(value, list):
            return []
        tiers: list[dict[str, str]] = []
        for tier in value:
            if isinstance(tier, Mapping) and tier.get("price"):
                tiers.append({
                    "price": clean_text(tier["price"]),
                    "range": clean_text(tier.get("range", "")),
                })
        return tiers

    @staticmethod
    def _sold(layers: list[Mapping[str, Any]]) -> int | None:
        value = _first(layers, _SOLD_KEYS)
        if isinstance(value, int):
            return value
        return parse_sold_count(str(value)) if value is not None else None

    @staticmethod
    def _raw_blob(raw: Mapping[str, Any]) -> RawListing:
        """Detach the raw record into plain JSON types."""
        blob: RawListing = json.loads(json.dumps(dict(raw), default=str))
        return blob

    # ── Public API ───────────────────────────────────────

    def normalize(
        self, raw: Mapping[str, Any], marketplace: Marketplace,
    ) -> CanonicalListing:
        """Normalise *raw* or raise :class:`NormalizationError`."""
        detail_value = raw.get("detail")
        detail: Mapping[str, Any] = (
            detail_value if isinstance(detail_value, Mapping) else {}
        )
        layers: list[Mapping[str, Any]] = [detail, raw]

        url = self._source_url(raw)
        title = self._title(layers)
        if title == UNTITLED:
            logger.debug("No title in record from %s: %s", marketplace.value, url)
        local_image, remote_image = self._image(layers)

        return CanonicalListing(
            id=identity_key(url),
            url=normalize_url(url),
            title=title,
            marketplace=marketplace,
            image=local_image,
            image_source=remote_image,
            price=self._price(layers, default_currency(marketplace)),
            moq=self._moq(layers),
            store_name=self._store(layers),
            categories=self._categories(layers),
            price_tiers=self._tiers(layers),
            sold_count=self._sold(layers),
            product_ref=product_ref(url, marketplace),
            raw=self._raw_blob(raw),
            updated_at=self._clock(),
        )

    def renormalize(self, listing: CanonicalListing) -> CanonicalListing:
        """Rebuild a stored listing from its preserved raw blob."""
        if listing.raw is None:
            raise NormalizationError(
                f"listing {listing.id} has no raw record"
            )
        fresh = self.normalize(listing.raw, listing.marketplace)
        if fresh.image is None and fresh.image_source == listing.image_source:
            fresh.image = listing.image
        fresh.created_at = listing.created_at
        return fresh
