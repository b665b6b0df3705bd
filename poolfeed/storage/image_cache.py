# poolfeed/storage/image_cache.py

"""Content-addressed, file-backed cache of remote listing images."""

import asyncio
import hashlib
import logging
import os
import re
import struct
import threading
import uuid
import weakref
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

from curl_cffi import requests as curl_requests

from poolfeed.config.settings import Settings
from poolfeed.errors import (
    ImageFetchError,
    ImageRejectedError,
    TransientFetchError,
)
from poolfeed.models.cached_image import CachedImage
from poolfeed.services.fetch_gate import FetchGate

logger = logging.getLogger("poolfeed.image_cache")

# (body, content-type header or None)
ImageFetcher = Callable[[str], Awaitable[tuple[bytes, str | None]]]

KNOWN_BAD_FILENAME = "known_bad.txt"

_KEY_RE = re.compile(r"^[0-9a-f]{40}$")
_ENTRY_RE = re.compile(r"^([0-9a-f]{40})\.([a-z0-9]+)$")

_CONTENT_TYPE_EXT: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/pjpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/avif": "avif",
}
_URL_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp", "gif", "avif"})

# Words that mark site chrome rather than product photos. They count
# anywhere in a directory, but only at the start of the file name:
# product slugs such as "Laser-Logo-Projector.jpg" are real photos.
_CHROME_WORDS = r"(?:sprite|logo|favicon|badge|watermark|icon)s?"
_BAD_DIR_RE = re.compile(rf"(?<![a-z]){_CHROME_WORDS}(?![a-z])")
_BAD_NAME_RE = re.compile(rf"^{_CHROME_WORDS}(?![a-z])")
_BANNER_RE = re.compile(r"tps-\d+-\d+")
_THUMB_SIZE_RE = re.compile(r"_(\d+)x(\d+)")

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def content_key(url: str) -> str:
    """Deterministic cache key for a resolved remote URL."""
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


def is_local_ref(ref: str) -> bool:
    """True for already-cached paths and bundled assets like ``/seed/...``."""
    return ref.startswith("/") and not ref.startswith("//")


def remote_ref(url: str) -> str:
    """Trim *url* and give protocol-relative references a scheme."""
    ref = url.strip()
    if ref.startswith("//"):
        ref = "https:" + ref
    return ref


def looks_like_bad_image_url(url: str) -> bool:
    """Spot sprites, logos, banners and tiny thumbnails by URL alone."""
    path = urlparse(url).path.lower()
    directory, _, name = path.rpartition("/")
    if "@img" in path:
        return True
    if _BAD_DIR_RE.search(directory) or _BAD_NAME_RE.match(name):
        return True
    if _BANNER_RE.search(path):
        return True
    for match in _THUMB_SIZE_RE.finditer(path):
        width, height = int(match.group(1)), int(match.group(2))
        if min(width, height) < Settings.IMAGE_MIN_DIMENSION:
            return True
    return False


def _sniff_extension(body: bytes) -> str | None:
    if body.startswith(_PNG_SIGNATURE):
        return "png"
    if body.startswith(b"\xff\xd8\xff"):
        return "jpg"
    if body[:4] == b"RIFF" and body[8:12] == b"WEBP":
        return "webp"
    if body[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    if body[4:12] in (b"ftypavif", b"ftypavis"):
        return "avif"
    return None


def _png_size(body: bytes) -> tuple[int, int] | None:
    if not body.startswith(_PNG_SIGNATURE) or body[12:16] != b"IHDR":
        return None
    width, height = struct.unpack(">II", body[16:24])
    return width, height


class CurlImageFetcher:
    """Default fetcher: a browser-impersonating GET in a worker thread."""

    def __init__(self, timeout: int | None = None) -> None:
        self._timeout = timeout or Settings.IMAGE_FETCH_TIMEOUT

    def _get(self, url: str) -> tuple[bytes, str | None]:
        parsed = urlparse(url)
        headers = {
            **Settings.IMAGE_HEADERS,
            "Referer": f"{parsed.scheme}://{parsed.netloc}/",
        }
        try:
            resp = curl_requests.get(
                url,
                headers=headers,
                impersonate=Settings.IMPERSONATE_BROWSER,
                timeout=self._timeout,
            )
        except Exception as exc:
            raise ImageFetchError(
                f"Image request failed for {url}: {exc}"
            ) from exc
        if resp.status_code != 200:
            raise ImageFetchError(
                f"Image request for {url} returned HTTP {resp.status_code}"
            )
        return resp.content, resp.headers.get("content-type")

    async def __call__(self, url: str) -> tuple[bytes, str | None]:
        return await asyncio.to_thread(self._get, url)


class ImageCache:
    """Resolve remote image URLs to stable local paths.

    Entries live on disk as ``<content key>.<ext>`` under
    ``cache_dir`` and are served under ``url_prefix``. The in-memory
    index is built lazily from the directory on first use. Keys in the
    known-bad set are never served as hits; they are always re-fetched.
    """

    def __init__(
        self,
        gate: FetchGate,
        cache_dir: Path | None = None,
        fetcher: ImageFetcher | None = None,
        known_bad: Iterable[str] | None = None,
        url_prefix: str | None = None,
        gate_key: str = "images",
    ) -> None:
        self._gate = gate
        self.cache_dir = cache_dir or Settings.IMAGE_CACHE_DIR
        self._fetcher: ImageFetcher = fetcher or CurlImageFetcher()
        self._seed_bad = set(
            Settings.KNOWN_BAD_IMAGE_KEYS if known_bad is None else known_bad
        )
        self._url_prefix = (
            url_prefix or Settings.IMAGE_CACHE_URL_PREFIX
        ).rstrip("/")
        self._gate_key = gate_key
        self._index: dict[str, CachedImage] | None = None
        self._known_bad: set[str] | None = None
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._file_lock = threading.Lock()

    @property
    def lock_count(self) -> int:
        """Keys with a resolve in progress or waiting."""
        return len(self._locks)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ── Index ────────────────────────────────────────────

    def _load_index(self) -> dict[str, CachedImage]:
        if self._index is not None:
            return self._index
        index: dict[str, CachedImage] = {}
        if self.cache_dir.exists():
            for path in self.cache_dir.iterdir():
                match = _ENTRY_RE.match(path.name)
                if not match or not path.is_file():
                    continue
                key, ext = match.groups()
                index[key] = CachedImage(
                    key=key,
                    file_path=path,
                    local_path=f"{self._url_prefix}/{key}.{ext}",
                    fetched_at=datetime.fromtimestamp(
                        path.stat().st_mtime, timezone.utc,
                    ),
                )
        logger.debug(
            "Indexed %d cached images in %s", len(index), self.cache_dir,
        )
        self._index = index
        return index

    def entry(self, key: str) -> CachedImage | None:
        """Return the cache entry for *key*, if one is on disk."""
        cached = self._load_index().get(key)
        if cached is None:
            return None
        if not cached.file_path.exists():
            del self._load_index()[key]
            return None
        cached.known_bad = self.is_known_bad(key)
        return cached

    # ── Known-bad set ────────────────────────────────────

    @property
    def known_bad_path(self) -> Path:
        return self.cache_dir / KNOWN_BAD_FILENAME

    def _load_known_bad(self) -> set[str]:
        if self._known_bad is not None:
            return self._known_bad
        keys = set(self._seed_bad)
        if self.known_bad_path.exists():
            for line in self.known_bad_path.read_text(
                encoding="utf-8"
            ).splitlines():
                line = line.strip()
                if _KEY_RE.match(line):
                    keys.add(line)
        self._known_bad = keys
        return keys

    def is_known_bad(self, key: str) -> bool:
        return key in self._load_known_bad()

    def mark_bad(self, key_or_url: str) -> str:
        """Add a content key (or the key of a URL) to the known-bad set.

        Persists to ``known_bad.txt`` in the cache directory and returns
        the key.
        """
        ref = key_or_url.strip()
        key = ref if _KEY_RE.match(ref) else content_key(ref)
        with self._file_lock:
            known = self._load_known_bad()
            if key in known:
                return key
            known.add(key)
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with open(self.known_bad_path, "a", encoding="utf-8") as f:
                f.write(key + "\n")
        logger.info("Marked image key %s as known-bad", key)
        return key

    # ── Storage ──────────────────────────────────────────

    @staticmethod
    def _extension(
        content_type: str | None, url: str, body: bytes,
    ) -> str | None:
        if content_type:
            ext = _CONTENT_TYPE_EXT.get(
                content_type.split(";")[0].strip().lower()
            )
            if ext:
                return ext
        sniffed = _sniff_extension(body)
        if sniffed:
            return sniffed
        suffix = Path(urlparse(url).path).suffix.lstrip(".").lower()
        if suffix in _URL_EXTENSIONS:
            return "jpg" if suffix == "jpeg" else suffix
        return None

    @staticmethod
    def _quality_problem(body: bytes) -> str | None:
        if not body:
            return "empty body"
        if len(body) < Settings.IMAGE_MIN_BYTES:
            return f"only {len(body)} bytes"
        size = _png_size(body)
        if size and min(size) < Settings.IMAGE_MIN_DIMENSION:
            return f"png is {size[0]}x{size[1]}"
        return None

    def _write(self, key: str, ext: str, body: bytes) -> CachedImage:
        """Atomically persist *body*; a failed write leaves no file."""
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        final = self.cache_dir / f"{key}.{ext}"
        tmp = self.cache_dir / f".{key}.{uuid.uuid4().hex}.tmp"
        try:
            tmp.write_bytes(body)
            os.replace(tmp, final)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        for stale in self.cache_dir.glob(f"{key}.*"):
            if stale != final:
                stale.unlink(missing_ok=True)
        cached = CachedImage(
            key=key,
            file_path=final,
            local_path=f"{self._url_prefix}/{key}.{ext}",
            fetched_at=datetime.now(timezone.utc),
            known_bad=self.is_known_bad(key),
        )
        self._load_index()[key] = cached
        return cached

    # ── Resolution ───────────────────────────────────────

    async def _download(self, url: str) -> tuple[bytes, str | None]:
        async with self._gate.acquire(self._gate_key):
            try:
                return await asyncio.wait_for(
                    self._fetcher(url),
                    timeout=Settings.IMAGE_FETCH_TIMEOUT,
                )
            except asyncio.TimeoutError as exc:
                raise ImageFetchError(
                    f"Image fetch timed out for {url}"
                ) from exc

    async def resolve(self, url: str, force: bool = False) -> str:
        """Return a local path for *url*, downloading it when needed.

        Raises :class:`ImageFetchError` (or :class:`ImageRejectedError`
        for junk assets) when no local copy can be produced; a failed
        fetch never leaves a partial file behind.
        """
        ref = remote_ref(url)
        if is_local_ref(ref):
            return ref
        if not ref.startswith(("http://", "https://")):
            raise ImageFetchError(f"Unsupported image reference: {url!r}")
        if looks_like_bad_image_url(ref):
            raise ImageRejectedError(f"Image URL looks like site chrome: {ref}")

        key = content_key(ref)
        async with self._lock_for(key):
            known_bad = self.is_known_bad(key)
            if not force and not known_bad:
                cached = await asyncio.to_thread(self.entry, key)
                if cached is not None:
                    return cached.local_path

            logger.debug(
                "Fetching image %s (key=%s, force=%s, known_bad=%s)",
                ref, key, force, known_bad,
            )
            body, content_type = await self._download(ref)

            problem = self._quality_problem(body)
            if problem:
                self.mark_bad(key)
                raise ImageRejectedError(
                    f"Refused image {ref}: {problem}"
                )
            ext = self._extension(content_type, ref, body)
            if ext is None:
                raise ImageFetchError(
                    f"Response for {ref} is not an image "
                    f"(content-type {content_type!r})"
                )
            try:
                cached = await asyncio.to_thread(self._write, key, ext, body)
            except OSError as exc:
                raise ImageFetchError(
                    f"Could not store image {ref}: {exc}"
                ) from exc

        logger.info("Cached image %s -> %s", ref, cached.local_path)
        return cached.local_path

    async def resolve_or_placeholder(
        self, url: str | None, force: bool = False,
    ) -> str:
        """Like :meth:`resolve` but degrade to the placeholder image."""
        if not url:
            return Settings.PLACEHOLDER_IMAGE
        try:
            return await self.resolve(url, force=force)
        except TransientFetchError as exc:
            logger.warning("Image fallback to placeholder: %s", exc)
            return Settings.PLACEHOLDER_IMAGE
