# tests/test_cli_runner.py

"""Tests for the operator CLI commands and argument parsing."""

import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from main import _build_parser
from poolfeed.cli.runner import (
    cli_ingest,
    resolve_marketplace,
    run_mark_bad,
    run_renormalize,
)
from poolfeed.models.listing import Marketplace
from poolfeed.services.fetch_gate import FetchGate
from poolfeed.services.ingestion_runner import IngestionReport
from poolfeed.storage.image_cache import ImageCache, content_key


def _report(**kwargs: object) -> IngestionReport:
    report = IngestionReport(marketplace="made_in_china", query="widget")
    for name, value in kwargs.items():
        setattr(report, name, value)
    return report


def _mock_runner(*reports: IngestionReport) -> MagicMock:
    runner = MagicMock()
    runner.run = AsyncMock(side_effect=list(reports))
    runner.renormalize_all = AsyncMock(
        return_value=_report(fetched=3, updated=2, rejected=1)
    )
    return runner


class TestResolveMarketplace(unittest.TestCase):
    """Marketplace id lookup."""

    def test_known_ids(self) -> None:
        self.assertEqual(
            resolve_marketplace(" Made_In_China "), Marketplace.MADE_IN_CHINA,
        )

    def test_unknown_id_exits(self) -> None:
        with self.assertRaises(SystemExit) as ctx:
            resolve_marketplace("ebay")
        self.assertEqual(ctx.exception.code, 1)


class TestCliIngest(unittest.IsolatedAsyncioTestCase):
    """The ingest command."""

    async def test_single_run_success(self) -> None:
        runner = _mock_runner(_report(fetched=2, created=2))
        code = await cli_ingest("made_in_china", "widget", limit=5, runner=runner)
        self.assertEqual(code, 0)
        runner.run.assert_awaited_once_with(
            Marketplace.MADE_IN_CHINA,
            "widget",
            5,
            with_details=False,
            prefetch_images=False,
        )

    async def test_failure_with_nothing_persisted(self) -> None:
        runner = _mock_runner(_report(errors=["blocked"]))
        code = await cli_ingest("made_in_china", "widget", runner=runner)
        self.assertEqual(code, 1)

    async def test_partial_failure_still_succeeds(self) -> None:
        runner = _mock_runner(_report(fetched=3, created=2, errors=["detail"]))
        code = await cli_ingest("made_in_china", "widget", runner=runner)
        self.assertEqual(code, 0)

    async def test_every_repeats_until_max_runs(self) -> None:
        runner = _mock_runner(
            _report(fetched=1, created=1), _report(fetched=1, updated=1),
        )
        code = await cli_ingest(
            "made_in_china", "widget", every=0.01, max_runs=2, runner=runner,
        )
        self.assertEqual(code, 0)
        self.assertEqual(runner.run.await_count, 2)

    async def test_exit_code_follows_the_last_run(self) -> None:
        runner = _mock_runner(
            _report(fetched=1, created=1), _report(errors=["blocked"]),
        )
        code = await cli_ingest(
            "made_in_china", "widget", every=0.01, max_runs=2, runner=runner,
        )
        self.assertEqual(code, 1)

    async def test_max_runs_of_one_does_not_sleep(self) -> None:
        runner = _mock_runner(_report(fetched=1, created=1))
        with patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
            code = await cli_ingest(
                "made_in_china", "widget", every=3600, max_runs=1,
                runner=runner,
            )
        self.assertEqual(code, 0)
        sleep.assert_not_awaited()

    async def test_json_output(self) -> None:
        runner = _mock_runner(_report(fetched=1, created=1, listing_ids=["abc"]))
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            await cli_ingest(
                "made_in_china", "widget", output_format="json", runner=runner,
            )
        payload = json.loads(out.getvalue())
        self.assertEqual(payload["created"], 1)
        self.assertEqual(payload["listing_ids"], ["abc"])

    async def test_renormalize(self) -> None:
        runner = _mock_runner()
        self.assertEqual(await run_renormalize(runner), 0)
        runner.renormalize_all.assert_awaited_once()


class TestMarkBad(unittest.TestCase):
    """The mark-bad command."""

    def test_marks_keys_and_urls(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            cache = ImageCache(FetchGate(), cache_dir=Path(tmp), known_bad=[])
            url = "https://cdn.example/a.jpg"
            self.assertEqual(run_mark_bad(["f" * 40, url], cache), 0)
            self.assertTrue(cache.is_known_bad("f" * 40))
            self.assertTrue(cache.is_known_bad(content_key(url)))


class TestArgParser(unittest.TestCase):
    """Subcommand parsing."""

    def test_ingest_arguments(self) -> None:
        args = _build_parser().parse_args([
            "ingest", "made_in_china", "pool pump",
            "-n", "10", "--details", "--prefetch-images",
            "-e", "oem,logo", "--every", "3600", "-f", "json",
        ])
        self.assertEqual(args.command, "ingest")
        self.assertEqual(args.limit, 10)
        self.assertTrue(args.details)
        self.assertTrue(args.prefetch_images)
        self.assertEqual(args.exclude, "oem,logo")
        self.assertEqual(args.every, 3600.0)
        self.assertEqual(args.output_format, "json")

    def test_mark_bad_requires_refs(self) -> None:
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                _build_parser().parse_args(["mark-bad"])

    def test_serve_defaults(self) -> None:
        args = _build_parser().parse_args(["serve"])
        self.assertEqual((args.host, args.port), ("127.0.0.1", 8000))


if __name__ == "__main__":
    unittest.main()
