# poolfeed/storage/listing_store.py

"""SQLite-backed durable store for canonical listings."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

from poolfeed.config.settings import Settings
from poolfeed.models.listing import (
    CanonicalListing,
    Marketplace,
    MinimumOrder,
    PriceRange,
)

logger = logging.getLogger("poolfeed.store")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS listings (
    id           TEXT    PRIMARY KEY,
    url          TEXT    NOT NULL UNIQUE,
    title        TEXT    NOT NULL,
    marketplace  TEXT    NOT NULL,
    image        TEXT,
    image_source TEXT,
    price_min    REAL,
    price_max    REAL,
    currency     TEXT,
    price_text   TEXT,
    moq_quantity INTEGER,
    moq_unit     TEXT,
    moq_text     TEXT,
    store_name   TEXT,
    price_tiers  TEXT    NOT NULL DEFAULT '[]',
    sold_count   INTEGER,
    product_ref  TEXT,
    raw          TEXT,
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_listings_product_ref
    ON listings(product_ref);
CREATE INDEX IF NOT EXISTS idx_listings_marketplace_updated
    ON listings(marketplace, updated_at);

CREATE TABLE IF NOT EXISTS listing_categories (
    listing_id TEXT NOT NULL
               REFERENCES listings(id) ON DELETE CASCADE,
    category   TEXT NOT NULL,
    PRIMARY KEY (listing_id, category)
);

CREATE INDEX IF NOT EXISTS idx_categories_category
    ON listing_categories(category);

CREATE TABLE IF NOT EXISTS listing_watches (
    user_id    TEXT NOT NULL,
    listing_id TEXT NOT NULL
               REFERENCES listings(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (user_id, listing_id)
);
"""

_UPSERT = """\
INSERT INTO listings (
    id, url, title, marketplace, image, image_source,
    price_min, price_max, currency, price_text,
    moq_quantity, moq_unit, moq_text, store_name,
    price_tiers, sold_count, product_ref, raw,
    created_at, updated_at
) VALUES (
    :id, :url, :title, :marketplace, :image, :image_source,
    :price_min, :price_max, :currency, :price_text,
    :moq_quantity, :moq_unit, :moq_text, :store_name,
    :price_tiers, :sold_count, :product_ref, :raw,
    :created_at, :updated_at
)
ON CONFLICT(id) DO UPDATE SET
    url=excluded.url,
    title=excluded.title,
    marketplace=excluded.marketplace,
    image=excluded.image,
    image_source=excluded.image_source,
    price_min=excluded.price_min,
    price_max=excluded.price_max,
    currency=excluded.currency,
    price_text=excluded.price_text,
    moq_quantity=excluded.moq_quantity,
    moq_unit=excluded.moq_unit,
    moq_text=excluded.moq_text,
    store_name=excluded.store_name,
    price_tiers=excluded.price_tiers,
    sold_count=excluded.sold_count,
    product_ref=excluded.product_ref,
    raw=excluded.raw,
    updated_at=excluded.updated_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ListingStore:
    """Keyed collection of canonical listings.

    One connection is shared across worker threads and guarded by a
    lock; every write runs in a single transaction so a listing is
    either fully written or not at all.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        path = db_path or Settings.LISTING_DB_PATH
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._lock = threading.Lock()
        logger.debug("ListingStore opened at %s", path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # ── Row mapping ──────────────────────────────────────

    def _categories_for(self, listing_id: str) -> frozenset[str]:
        rows = self._conn.execute(
            "SELECT category FROM listing_categories WHERE listing_id = ?",
            (listing_id,),
        ).fetchall()
        return frozenset(r[0] for r in rows)

    def _from_row(self, row: sqlite3.Row) -> CanonicalListing:
        price = None
        if row["price_min"] is not None or row["price_text"]:
            price = PriceRange(
                min=row["price_min"],
                max=row["price_max"],
                currency=row["currency"],
                text=row["price_text"] or "",
            )
        moq = None
        if row["moq_quantity"] is not None or row["moq_text"]:
            moq = MinimumOrder(
                quantity=row["moq_quantity"],
                unit=row["moq_unit"],
                text=row["moq_text"] or "",
            )
        return CanonicalListing(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            marketplace=Marketplace(row["marketplace"]),
            image=row["image"],
            image_source=row["image_source"],
            price=price,
            moq=moq,
            store_name=row["store_name"],
            categories=self._categories_for(row["id"]),
            price_tiers=json.loads(row["price_tiers"] or "[]"),
            sold_count=row["sold_count"],
            product_ref=row["product_ref"],
            raw=json.loads(row["raw"]) if row["raw"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _to_params(
        listing: CanonicalListing, now: datetime,
    ) -> dict[str, object]:
        return {
            "id": listing.id,
            "url": listing.url,
            "title": listing.title,
            "marketplace": listing.marketplace.value,
            "image": listing.image,
            "image_source": listing.image_source,
            "price_min": listing.price.min if listing.price else None,
            "price_max": listing.price.max if listing.price else None,
            "currency": listing.price.currency if listing.price else None,
            "price_text": listing.price.text if listing.price else None,
            "moq_quantity": listing.moq.quantity if listing.moq else None,
            "moq_unit": listing.moq.unit if listing.moq else None,
            "moq_text": listing.moq.text if listing.moq else None,
            "store_name": listing.store_name,
            "price_tiers": json.dumps(listing.price_tiers),
            "sold_count": listing.sold_count,
            "product_ref": listing.product_ref,
            "raw": (
                json.dumps(listing.raw) if listing.raw is not None else None
            ),
            "created_at": _ts(listing.created_at or now),
            "updated_at": _ts(listing.updated_at or now),
        }

    # ── Reads ────────────────────────────────────────────

    def get(self, listing_id: str) -> CanonicalListing | None:
        """Return the listing stored under *listing_id*."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM listings WHERE id = ?", (listing_id,),
            ).fetchone()
            return self._from_row(row) if row else None

    def find_by_product_ref(self, ref: str) -> CanonicalListing | None:
        """Return the oldest listing carrying marketplace product *ref*."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM listings WHERE product_ref = ? "
                "ORDER BY created_at ASC LIMIT 1",
                (ref,),
            ).fetchone()
            return self._from_row(row) if row else None

    def query(
        self,
        text: str | None = None,
        marketplace: Marketplace | None = None,
        category: str | None = None,
        offset: int = 0,
        limit: int = Settings.LISTING_QUERY_DEFAULT_LIMIT,
    ) -> list[CanonicalListing]:
        """Filter listings, most recently updated first.

        Every whitespace-separated term of *text* must appear in the
        title or store name.
        """
        clauses: list[str] = []
        params: list[object] = []
        for term in (text or "").split():
            clauses.append("(l.title LIKE ? OR l.store_name LIKE ?)")
            params.extend([f"%{term}%", f"%{term}%"])
        if marketplace is not None:
            clauses.append("l.marketplace = ?")
            params.append(marketplace.value)
        if category:
            clauses.append(
                "EXISTS (SELECT 1 FROM listing_categories c "
                "WHERE c.listing_id = l.id AND c.category = ?)"
            )
            params.append(category.lower())
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.extend([max(0, limit), max(0, offset)])

        with self._lock:
            rows = self._conn.execute(
                f"SELECT l.* FROM listings l {where}"
                "ORDER BY l.updated_at DESC, l.id ASC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
            return [self._from_row(r) for r in rows]

    def iter_all(self, batch_size: int = 200) -> Iterator[CanonicalListing]:
        """Yield every stored listing in creation order."""
        offset = 0
        while True:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM listings ORDER BY created_at, id "
                    "LIMIT ? OFFSET ?",
                    (batch_size, offset),
                ).fetchall()
                batch = [self._from_row(r) for r in rows]
            if not batch:
                return
            yield from batch
            offset += len(batch)

    def count(self) -> int:
        """Number of stored listings."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM listings"
            ).fetchone()
            return int(row[0])

    # ── Writes ───────────────────────────────────────────

    def upsert(self, listing: CanonicalListing) -> bool:
        """Insert or wholesale-replace *listing*, keeping ``created_at``.

        Returns True when a new row was created.
        """
        now = _utcnow()
        params = self._to_params(listing, now)
        with self._lock, self._conn:
            exists = self._conn.execute(
                "SELECT 1 FROM listings WHERE id = ?", (listing.id,),
            ).fetchone() is not None
            self._conn.execute(_UPSERT, params)
            self._conn.execute(
                "DELETE FROM listing_categories WHERE listing_id = ?",
                (listing.id,),
            )
            self._conn.executemany(
                "INSERT INTO listing_categories (listing_id, category) "
                "VALUES (?, ?)",
                [(listing.id, c) for c in sorted(listing.categories)],
            )
        logger.debug(
            "%s listing %s (%s)",
            "Inserted" if not exists else "Updated",
            listing.id,
            listing.url,
        )
        return not exists

    def set_image(self, listing_id: str, local_path: str) -> bool:
        """Point a listing's image back-reference at a cached file."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE listings SET image = ? WHERE id = ?",
                (local_path, listing_id),
            )
            return cur.rowcount > 0

    # ── Watches ──────────────────────────────────────────

    def add_watch(self, user_id: str, listing_id: str) -> bool:
        """Record that *user_id* watches *listing_id*."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO listing_watches "
                "(user_id, listing_id, created_at) "
                "SELECT ?, id, ? FROM listings WHERE id = ?",
                (user_id, _ts(_utcnow()), listing_id),
            )
            return cur.rowcount > 0

    def remove_watch(self, user_id: str, listing_id: str) -> bool:
        """Stop *user_id* watching *listing_id*."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM listing_watches "
                "WHERE user_id = ? AND listing_id = ?",
                (user_id, listing_id),
            )
            return cur.rowcount > 0

    def watchers(self, listing_id: str) -> list[str]:
        """Users currently watching *listing_id*."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT user_id FROM listing_watches "
                "WHERE listing_id = ? ORDER BY created_at, user_id",
                (listing_id,),
            ).fetchall()
            return [r[0] for r in rows]
