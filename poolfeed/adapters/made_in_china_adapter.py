# poolfeed/adapters/made_in_china_adapter.py

"""Reference adapter for made-in-china.com search and detail pages."""

import re
import urllib.parse
from collections.abc import Mapping
from typing import Any

from bs4 import BeautifulSoup, Tag

from poolfeed.adapters.base_adapter import BaseAdapter
from poolfeed.errors import TransientFetchError
from poolfeed.models.listing import Marketplace, RawListing

# Hero image URLs embedded in scripts when the gallery markup is lazy
_IMAGE_IN_PAGE_RE = re.compile(
    r"https?://image\.made-in-china\.com/[^\"'\s]+\.(?:webp|jpe?g|png)",
    re.IGNORECASE,
)


class MadeInChinaAdapter(BaseAdapter):
    """Adapter for made-in-china.com (server-rendered HTML).

    Search cards carry title, price text, MOQ text, a thumbnail and the
    supplier name; detail pages add price tiers, attributes and the
    breadcrumb used for category tags.
    """

    BASE_URL = "https://www.made-in-china.com"
    SEARCH_URL = BASE_URL + "/multi-search/{query}/F1/{page}.html"

    marketplace = Marketplace.MADE_IN_CHINA

    def __init__(self) -> None:
        super().__init__("made_in_china")

    def _get_homepage(self) -> str:
        """Return the made-in-china.com homepage URL."""
        return self.BASE_URL + "/"

    # ── Field helpers ────────────────────────────────────

    def _text(self, node: Tag | BeautifulSoup, key: str) -> str | None:
        selector = self.selectors.get(key, "")
        if not selector:
            return None
        el = node.select_one(selector)
        if el is None:
            return None
        text = " ".join(el.get_text(" ", strip=True).split())
        return text or None

    def _absolute(self, href: str) -> str:
        if href.startswith("//"):
            return "https:" + href
        return urllib.parse.urljoin(self.BASE_URL, href)

    def _image(self, node: Tag | BeautifulSoup, key: str) -> str | None:
        selector = self.selectors.get(key, "")
        el = node.select_one(selector) if selector else None
        if el is None:
            return None
        # Lazy-loaded galleries keep the real URL in data-* attributes
        for attr in ("data-original", "data-src", "src"):
            value = el.get(attr)
            if isinstance(value, str) and value.strip():
                if value.startswith("data:"):
                    continue
                return self._absolute(value.strip())
        return None

    # ── Search ───────────────────────────────────────────

    def _parse_card(self, card: Tag) -> RawListing | None:
        """Parse a single search result card into a raw record."""
        link = card.select_one(self.selectors["url"])
        href = link.get("href") if link else None
        if not isinstance(href, str) or not href.strip():
            return None
        return {
            "url": self._absolute(href.strip()),
            "title": self._text(card, "title"),
            "priceText": self._text(card, "price"),
            "moqText": self._text(card, "moq"),
            "image": self._image(card, "image"),
            "supplier": self._text(card, "supplier"),
        }

    def search(
        self,
        query: str,
        limit: int,
        options: Mapping[str, Any] | None = None,
    ) -> list[RawListing]:
        """Search made-in-china.com for listings matching the query.

        A failure on the first page is a transient fetch failure; a
        failure on a later page ends pagination with what we have.
        """
        opts = dict(options or {})
        max_pages = int(opts.get("max_pages", self.settings.MAX_PAGES))
        encoded = urllib.parse.quote_plus(query.strip())
        records: list[RawListing] = []

        for page in range(1, max_pages + 1):
            url = self.SEARCH_URL.format(query=encoded, page=page)
            self.logger.info(
                "[%s] Fetching page %d (%d so far)",
                self.source_name,
                page,
                len(records),
            )
            try:
                soup = self._require_page(url)
            except TransientFetchError:
                if page == 1:
                    raise
                self.logger.warning(
                    "[%s] Failed page %d, keeping %d records",
                    self.source_name,
                    page,
                    len(records),
                )
                break

            cards = soup.select(self.selectors["product_card"])
            if not cards:
                break
            for card in cards:
                record = self._parse_card(card)
                if record is not None:
                    records.append(record)
                if len(records) >= limit:
                    return records

            next_btn = soup.select_one(
                self.selectors.get("next_page", "") or "a.next"
            )
            if next_btn is None:
                break

        return records

    # ── Detail ───────────────────────────────────────────

    def _tiers(self, soup: BeautifulSoup) -> list[dict[str, str]]:
        tiers: list[dict[str, str]] = []
        for row in soup.select(self.selectors.get("detail_tier_rows", "")):
            price = self._text(row, "detail_tier_price")
            qty = self._text(row, "detail_tier_range")
            if price:
                tiers.append({"price": price, "range": qty or ""})
        return tiers

    def _attributes(self, soup: BeautifulSoup) -> list[list[str]]:
        attrs: list[list[str]] = []
        for row in soup.select(self.selectors.get("detail_attr_rows", "")):
            name = self._text(row, "detail_attr_name")
            value = self._text(row, "detail_attr_value")
            if name and value:
                attrs.append([name.rstrip(":"), value])
        return attrs

    def _hero_image(self, soup: BeautifulSoup) -> str | None:
        image = self._image(soup, "detail_image")
        if image:
            return image
        match = _IMAGE_IN_PAGE_RE.search(str(soup))
        return match.group(0) if match else None

    def fetch_detail(self, url: str) -> RawListing | None:
        """Fetch and parse a product detail page."""
        soup, status = self._fetch_page(url)
        if soup is None:
            if status in (404, 410):
                self.logger.info(
                    "[%s] Detail page gone: %s", self.source_name, url,
                )
                return None
            raise TransientFetchError(
                f"[{self.source_name}] could not fetch detail {url}"
                f" (last status {status or 'n/a'})",
                source=self.source_name,
            )

        crumbs = [
            " ".join(el.get_text(" ", strip=True).split())
            for el in soup.select(
                self.selectors.get("detail_breadcrumb", "")
            )
        ]
        return {
            "url": url,
            "title": self._text(soup, "detail_title"),
            "priceText": self._text(soup, "detail_price"),
            "priceTiers": self._tiers(soup),
            "moqText": self._text(soup, "detail_moq"),
            "heroImage": self._hero_image(soup),
            "supplier": {
                "name": self._text(soup, "detail_supplier"),
            },
            "attributes": self._attributes(soup),
            "categories": [c for c in crumbs[1:] if c],
        }
