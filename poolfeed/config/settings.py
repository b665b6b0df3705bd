# poolfeed/config/settings.py

"""Central configuration for the poolfeed ingestion pipeline."""

import os
from pathlib import Path

from curl_cffi.requests import BrowserTypeLiteral
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer override from the environment."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_path(name: str, default: Path) -> Path:
    """Read a path override from the environment."""
    raw = os.getenv(name)
    return Path(raw) if raw else default


class Settings:
    """Central configuration for the poolfeed ingestion pipeline."""

    # --- Scraping ---
    REQUEST_DELAY: float = 2.0          # Seconds between requests
    REQUEST_TIMEOUT: int = 15           # Seconds before a request times out
    MAX_RETRIES: int = 3                # Retry count on transient failures
    MAX_PAGES: int = 5                  # Max pagination depth per source

    # --- Resilience ---
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures to trip
    CIRCUIT_BREAKER_COOLDOWN: float = 120.0
    MAX_DELAY_MULTIPLIER: int = 8       # Cap for adaptive backoff
    CAPTCHA_KEYWORDS: list[str] = [
        "captcha",
        "verify you are human",
        "unusual traffic",
        "automated requests",
        "slide to verify",
    ]

    # --- Fetch gate ---
    MAX_CONCURRENT: int = _env_int("POOLFEED_MAX_CONCURRENT", 6)
    GATE_WAIT_CEILING: float = 60.0     # Seconds a caller may wait for a permit
    GATE_SWEEP_INTERVAL: float = 60.0   # Seconds between idle-bucket sweeps
    ADAPTER_RATE_LIMIT: int = 30        # Requests per adapter per window
    ADAPTER_RATE_WINDOW_MS: int = 60_000
    OUTBOUND_CALL_TIMEOUT: float = 90.0  # Hard cap around one adapter call

    # --- HTTP endpoints ---
    IMAGE_RATE_LIMIT: int = _env_int("POOLFEED_IMAGE_RATE_LIMIT", 120)
    IMAGE_RATE_WINDOW_MS: int = 60_000
    LISTING_RATE_LIMIT: int = 240
    LISTING_RATE_WINDOW_MS: int = 60_000
    LISTING_QUERY_MAX_LIMIT: int = 100
    LISTING_QUERY_DEFAULT_LIMIT: int = 24

    # --- Ingestion ---
    INGEST_WORKERS: int = _env_int("POOLFEED_INGEST_WORKERS", 4)
    DEFAULT_INGEST_LIMIT: int = 60

    # --- Quality filtering ---
    BANNED_KEYWORDS: list[str] = [
        "custom",
        "customized",
        "customised",
        "customizable",
        "customization",
        "customize",
        "bespoke",
        "personalized",
        "personalised",
        "made to order",
        "tailor made",
        "oem service",
        "odm service",
        "private label",
    ]
    REJECT_SINGLE_UNIT_MOQ: bool = False

    # --- Image cache ---
    IMAGE_FETCH_TIMEOUT: int = 30
    IMAGE_MIN_BYTES: int = 512          # Anything smaller is a placeholder
    IMAGE_MIN_DIMENSION: int = 200      # PNG width/height floor
    IMAGE_CACHE_URL_PREFIX: str = "/cache"
    PLACEHOLDER_IMAGE: str = "/seed/placeholder.jpg"
    # Content keys that are always re-fetched, on top of the cache's
    # known_bad.txt (which `main.py mark-bad` appends to). Comma-separated.
    KNOWN_BAD_IMAGE_KEYS: list[str] = [
        key.strip()
        for key in os.getenv("POOLFEED_KNOWN_BAD_KEYS", "").split(",")
        if key.strip()
    ]

    # --- Browser Impersonation ---
    IMPERSONATE_BROWSER: BrowserTypeLiteral = "chrome131"
    DEFAULT_HEADERS: dict[str, str] = {
        "Accept": (
            "text/html,application/xhtml+xml,"
            "application/xml;q=0.9,image/avif,"
            "image/webp,image/apng,*/*;q=0.8"
        ),
        "Accept-Language": "en-US,en;q=0.9",
        "sec-ch-ua": (
            '"Google Chrome";v="131", '
            '"Chromium";v="131", '
            '"Not_A Brand";v="24"'
        ),
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "sec-fetch-dest": "document",
        "sec-fetch-mode": "navigate",
        "sec-fetch-site": "none",
        "sec-fetch-user": "?1",
        "Upgrade-Insecure-Requests": "1",
    }
    IMAGE_HEADERS: dict[str, str] = {
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "sec-fetch-dest": "image",
        "sec-fetch-mode": "no-cors",
        "sec-fetch-site": "cross-site",
    }

    # --- Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    SELECTORS_PATH: Path = Path(__file__).resolve().parent / "selectors.json"
    DATA_DIR: Path = _env_path("POOLFEED_DATA_DIR", BASE_DIR / "data")
    LISTING_DB_PATH: Path = _env_path(
        "POOLFEED_DB_PATH", DATA_DIR / "listings.db"
    )
    IMAGE_CACHE_DIR: Path = _env_path(
        "POOLFEED_IMAGE_CACHE_DIR", BASE_DIR / "public" / "cache"
    )
    LOGS_DIR: Path = BASE_DIR / "logs"

    # --- Logging (level names, e.g. "INFO") ---
    CONSOLE_LOG_LEVEL: str = os.getenv("POOLFEED_CONSOLE_LOG_LEVEL", "WARNING")
    FILE_LOG_LEVEL: str = os.getenv("POOLFEED_LOG_LEVEL", "DEBUG")

    # --- Sources (adapter registry, keyed by marketplace id) ---
    AVAILABLE_SOURCES: list[dict[str, str]] = [
        {
            "id": "made_in_china",
            "label": "Made-in-China",
            "adapter": (
                "poolfeed.adapters.made_in_china_adapter."
                "MadeInChinaAdapter"
            ),
            "currency": "USD",
        },
        {
            "id": "alibaba",
            "label": "Alibaba",
            "adapter": "",
            "currency": "USD",
        },
        {
            "id": "indiamart",
            "label": "IndiaMART",
            "adapter": "",
            "currency": "INR",
        },
    ]
