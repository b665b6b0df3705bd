# tests/test_image_cache.py

"""Tests for the content-addressed ImageCache."""

import asyncio
import struct
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from poolfeed.config.settings import Settings
from poolfeed.errors import ImageFetchError, ImageRejectedError
from poolfeed.services.fetch_gate import FetchGate
from poolfeed.storage.image_cache import (
    KNOWN_BAD_FILENAME,
    ImageCache,
    content_key,
    is_local_ref,
    looks_like_bad_image_url,
)

JPEG_BODY = b"\xff\xd8\xff\xe0" + b"\x00" * 4096


def _png(width: int, height: int) -> bytes:
    """A PNG header with the given IHDR dimensions, padded past the byte floor."""
    header = (
        b"\x89PNG\r\n\x1a\n"
        + struct.pack(">I", 13)
        + b"IHDR"
        + struct.pack(">II", width, height)
    )
    return header + b"\x00" * 2048


class _FakeFetcher:
    """Records calls and tracks how many fetches overlap."""

    def __init__(
        self,
        body: bytes = JPEG_BODY,
        content_type: str | None = "image/jpeg",
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.body = body
        self.content_type = content_type
        self.delay = delay
        self.error = error
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def __call__(self, url: str) -> tuple[bytes, str | None]:
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.body, self.content_type
        finally:
            self.active -= 1


class _CacheTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.cache_dir = Path(self._tmp.name) / "cache"
        self.gate = FetchGate(max_concurrent=6)
        self.fetcher = _FakeFetcher()
        self.cache = self._make_cache(self.fetcher)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _make_cache(self, fetcher: _FakeFetcher) -> ImageCache:
        return ImageCache(
            self.gate, cache_dir=self.cache_dir, fetcher=fetcher, known_bad=[],
        )


class TestResolve(_CacheTestCase):
    """Cache hits, misses and forced refreshes."""

    async def test_second_resolve_is_a_cache_hit(self) -> None:
        url = "https://cdn.example/a.jpg"
        first = await self.cache.resolve(url)
        second = await self.cache.resolve(url)
        self.assertEqual(first, second)
        self.assertEqual(len(self.fetcher.calls), 1)
        self.assertEqual(first, f"/cache/{content_key(url)}.jpg")
        self.assertTrue((self.cache_dir / f"{content_key(url)}.jpg").exists())

    async def test_force_refetches(self) -> None:
        url = "https://cdn.example/a.jpg"
        await self.cache.resolve(url)
        await self.cache.resolve(url, force=True)
        self.assertEqual(len(self.fetcher.calls), 2)

    async def test_existing_files_are_indexed_on_startup(self) -> None:
        url = "https://cdn.example/a.jpg"
        path = await self.cache.resolve(url)

        fresh_fetcher = _FakeFetcher()
        fresh = self._make_cache(fresh_fetcher)
        self.assertEqual(await fresh.resolve(url), path)
        self.assertEqual(fresh_fetcher.calls, [])

    async def test_local_refs_pass_through(self) -> None:
        for ref in ("/cache/abc.jpg", Settings.PLACEHOLDER_IMAGE):
            self.assertEqual(await self.cache.resolve(ref), ref)
        self.assertEqual(self.fetcher.calls, [])

    async def test_protocol_relative_url(self) -> None:
        path = await self.cache.resolve("//cdn.example/a.jpg")
        self.assertEqual(self.fetcher.calls, ["https://cdn.example/a.jpg"])
        self.assertIn(content_key("https://cdn.example/a.jpg"), path)

    async def test_extension_from_magic_bytes(self) -> None:
        fetcher = _FakeFetcher(body=_png(800, 600), content_type=None)
        cache = self._make_cache(fetcher)
        path = await cache.resolve("https://cdn.example/photo")
        self.assertTrue(path.endswith(".png"))

    async def test_unsupported_reference(self) -> None:
        with self.assertRaises(ImageFetchError):
            await self.cache.resolve("ftp://cdn.example/a.jpg")


class TestKnownBad(_CacheTestCase):
    """Known-bad keys are never served as hits."""

    async def test_marking_bad_forces_refetch(self) -> None:
        url = "https://cdn.example/a.jpg"
        await self.cache.resolve(url)
        self.cache.mark_bad(content_key(url))
        await self.cache.resolve(url)
        self.assertEqual(len(self.fetcher.calls), 2)

    async def test_mark_bad_accepts_url_and_persists(self) -> None:
        url = "https://cdn.example/a.jpg"
        key = self.cache.mark_bad(url)
        self.assertEqual(key, content_key(url))
        contents = (self.cache_dir / KNOWN_BAD_FILENAME).read_text()
        self.assertIn(key, contents.splitlines())

        reloaded = self._make_cache(_FakeFetcher())
        self.assertTrue(reloaded.is_known_bad(key))

    async def test_known_bad_refetched_by_a_new_instance(self) -> None:
        url = "https://cdn.example/a.jpg"
        await self.cache.resolve(url)
        self.cache.mark_bad(url)

        fresh_fetcher = _FakeFetcher()
        fresh = self._make_cache(fresh_fetcher)
        cached = fresh.entry(content_key(url))
        assert cached is not None
        self.assertTrue(cached.known_bad)
        await fresh.resolve(url)

        self.assertEqual(fresh_fetcher.calls, [url])

    async def test_seeded_known_bad_keys(self) -> None:
        seeded = "ab" * 20
        cache = ImageCache(
            self.gate, cache_dir=self.cache_dir, fetcher=self.fetcher,
            known_bad=[seeded],
        )
        self.assertTrue(cache.is_known_bad(seeded))
        self.assertFalse(cache.is_known_bad(content_key("https://cdn.example/a.jpg")))

    async def test_default_seeds_come_from_settings(self) -> None:
        seeded = "cd" * 20
        with patch.object(Settings, "KNOWN_BAD_IMAGE_KEYS", [seeded]):
            cache = ImageCache(
                self.gate, cache_dir=self.cache_dir, fetcher=self.fetcher,
            )
        self.assertTrue(cache.is_known_bad(seeded))

    async def test_tiny_body_is_refused_and_marked(self) -> None:
        fetcher = _FakeFetcher(body=b"\xff\xd8\xff" + b"\x00" * 10)
        cache = self._make_cache(fetcher)
        url = "https://cdn.example/tiny.jpg"
        with self.assertRaises(ImageRejectedError):
            await cache.resolve(url)
        self.assertTrue(cache.is_known_bad(content_key(url)))
        self.assertFalse(any(self.cache_dir.glob(f"{content_key(url)}.*")))

    async def test_small_png_is_refused(self) -> None:
        cache = self._make_cache(_FakeFetcher(body=_png(64, 64), content_type="image/png"))
        with self.assertRaises(ImageRejectedError):
            await cache.resolve("https://cdn.example/p.png")

    async def test_site_chrome_urls_refused_without_network(self) -> None:
        for url in (
            "https://img.alicdn.com/tfs/TB1-tps-120-60.png",
            "https://cdn.example/shop/logo.png",
            "https://cdn.example/a_50x50.jpg",
        ):
            with self.subTest(url=url):
                with self.assertRaises(ImageRejectedError):
                    await self.cache.resolve(url)
        self.assertEqual(self.fetcher.calls, [])


class TestFailures(_CacheTestCase):
    """Download failures leave no partial files."""

    async def test_fetch_error_leaves_no_file(self) -> None:
        fetcher = _FakeFetcher(error=ImageFetchError("HTTP 500"))
        cache = self._make_cache(fetcher)
        url = "https://cdn.example/a.jpg"
        with self.assertRaises(ImageFetchError):
            await cache.resolve(url)
        files = list(self.cache_dir.glob("*")) if self.cache_dir.exists() else []
        self.assertEqual(files, [])
        self.assertIsNone(cache.entry(content_key(url)))

    async def test_non_image_response_is_an_error(self) -> None:
        fetcher = _FakeFetcher(body=b"<html>" + b" " * 4096, content_type="text/html")
        cache = self._make_cache(fetcher)
        with self.assertRaises(ImageFetchError):
            await cache.resolve("https://cdn.example/page")

    async def test_resolve_or_placeholder(self) -> None:
        cache = self._make_cache(_FakeFetcher(error=ImageFetchError("boom")))
        self.assertEqual(
            await cache.resolve_or_placeholder("https://cdn.example/a.jpg"),
            Settings.PLACEHOLDER_IMAGE,
        )
        self.assertEqual(
            await cache.resolve_or_placeholder(None), Settings.PLACEHOLDER_IMAGE,
        )


class TestConcurrency(_CacheTestCase):
    """Outbound image fetches respect the gate."""

    async def test_fifty_resolves_never_exceed_six_in_flight(self) -> None:
        fetcher = _FakeFetcher(delay=0.01)
        cache = self._make_cache(fetcher)
        urls = [f"https://cdn.example/img/{i}.jpg" for i in range(50)]

        paths = await asyncio.gather(*(cache.resolve(u) for u in urls))

        self.assertEqual(len(set(paths)), 50)
        self.assertLessEqual(fetcher.peak, 6)
        self.assertLessEqual(self.gate.high_water, 6)
        self.assertEqual(self.gate.in_flight, 0)

    async def test_concurrent_same_url_fetches_once(self) -> None:
        fetcher = _FakeFetcher(delay=0.01)
        cache = self._make_cache(fetcher)
        paths = await asyncio.gather(
            *(cache.resolve("https://cdn.example/a.jpg") for _ in range(10))
        )
        self.assertEqual(len(set(paths)), 1)
        self.assertEqual(len(fetcher.calls), 1)

    async def test_key_locks_released_after_resolves(self) -> None:
        fetcher = _FakeFetcher(delay=0.001)
        cache = self._make_cache(fetcher)
        urls = [f"https://cdn.example/img/{i}.jpg" for i in range(200)]

        await asyncio.gather(*(cache.resolve(u) for u in urls))

        self.assertEqual(cache.lock_count, 0)


class TestHelpers(unittest.TestCase):
    """Pure helper functions."""

    def test_is_local_ref(self) -> None:
        self.assertTrue(is_local_ref("/cache/a.jpg"))
        self.assertFalse(is_local_ref("//cdn.example/a.jpg"))
        self.assertFalse(is_local_ref("https://cdn.example/a.jpg"))

    def test_content_key_is_stable(self) -> None:
        self.assertEqual(
            content_key("https://cdn.example/a.jpg"),
            content_key("https://cdn.example/a.jpg"),
        )

    def test_bad_url_heuristics(self) -> None:
        self.assertTrue(looks_like_bad_image_url("https://x.example/sprite-v2.png"))
        self.assertTrue(looks_like_bad_image_url("https://x.example/a.jpg_100x100.jpg"))
        self.assertFalse(looks_like_bad_image_url("https://x.example/a.jpg_640x640.jpg"))
        self.assertFalse(looks_like_bad_image_url("https://x.example/silicone-case.jpg"))

    def test_product_slugs_naming_chrome_words_are_kept(self) -> None:
        for url in (
            "https://image.made-in-china.com/2f0j00abc/Laser-Logo-Projector-Light.jpg",
            "https://image.made-in-china.com/2f0j00def/Custom-Badge-Holder.webp",
            "https://image.made-in-china.com/2f0j00ghi/Desktop-Icon-Lamp.png",
        ):
            with self.subTest(url=url):
                self.assertFalse(looks_like_bad_image_url(url))

    def test_chrome_directories_and_file_names_rejected(self) -> None:
        for url in (
            "https://cdn.example/shop/logo.png",
            "https://cdn.example/icons/cart.png",
            "https://cdn.example/static/favicon.ico",
            "https://cdn.example/assets/badges/gold.png",
            "https://img.example/abc@img/photo.jpg",
        ):
            with self.subTest(url=url):
                self.assertTrue(looks_like_bad_image_url(url))


if __name__ == "__main__":
    unittest.main()
