# poolfeed/models/listing.py

"""Canonical listing model shared by every pipeline stage."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Raw adapter output: whatever keys the marketplace happened to expose.
RawListing = dict[str, Any]


class Marketplace(str, Enum):
    """External marketplaces listings are ingested from."""

    MADE_IN_CHINA = "made_in_china"
    ALIBABA = "alibaba"
    INDIAMART = "indiamart"


@dataclass(frozen=True)
class PriceRange:
    """Parsed unit price, possibly a range.

    ``text`` always holds the verbatim source text so that prices the
    parser could not fully normalise are never lost.
    """

    min: float | None = None
    max: float | None = None
    currency: str | None = None
    text: str = ""

    @property
    def parsed(self) -> bool:
        """True when at least one bound was recovered."""
        return self.min is not None


@dataclass(frozen=True)
class MinimumOrder:
    """Minimum order quantity, numeric when parseable."""

    quantity: int | None = None
    unit: str | None = None
    text: str = ""


@dataclass
class CanonicalListing:
    """Marketplace-agnostic representation of one product listing."""

    id: str
    url: str
    title: str
    marketplace: Marketplace
    image: str | None = None
    image_source: str | None = None
    price: PriceRange | None = None
    moq: MinimumOrder | None = None
    store_name: str | None = None
    categories: frozenset[str] = field(
        default_factory=lambda: frozenset[str]()
    )
    price_tiers: list[dict[str, str]] = field(
        default_factory=lambda: list[dict[str, str]]()
    )
    sold_count: int | None = None
    product_ref: str | None = None
    raw: RawListing | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to plain JSON-friendly types."""
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "marketplace": self.marketplace.value,
            "image": self.image,
            "image_source": self.image_source,
            "price": (
                {
                    "min": self.price.min,
                    "max": self.price.max,
                    "currency": self.price.currency,
                    "text": self.price.text,
                }
                if self.price
                else None
            ),
            "moq": (
                {
                    "quantity": self.moq.quantity,
                    "unit": self.moq.unit,
                    "text": self.moq.text,
                }
                if self.moq
                else None
            ),
            "store_name": self.store_name,
            "categories": sorted(self.categories),
            "price_tiers": list(self.price_tiers),
            "sold_count": self.sold_count,
            "created_at": (
                self.created_at.isoformat() if self.created_at else None
            ),
            "updated_at": (
                self.updated_at.isoformat() if self.updated_at else None
            ),
        }
