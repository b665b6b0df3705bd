# tests/test_quality_filter.py

"""Tests for QualityFilter keyword and MOQ exclusion rules."""

import unittest

from poolfeed.filters.quality_filter import QualityFilter
from poolfeed.models.listing import CanonicalListing, Marketplace, MinimumOrder


def _make_listing(
    title: str, moq: int | None = None, attributes: list[list[str]] | None = None,
) -> CanonicalListing:
    """Create a minimal listing with the given title."""
    return CanonicalListing(
        id=title.lower().replace(" ", "-"),
        url=f"https://m.example/{title.lower().replace(' ', '-')}",
        title=title,
        marketplace=Marketplace.ALIBABA,
        moq=MinimumOrder(quantity=moq) if moq is not None else None,
        raw={"attributes": attributes or []},
    )


class TestAssess(unittest.TestCase):
    """QualityFilter.assess whole-word matching."""

    def setUp(self) -> None:
        self.quality = QualityFilter()

    def test_custom_phone_case_is_excluded(self) -> None:
        verdict = self.quality.assess("Custom Phone Case")
        self.assertTrue(verdict.excluded)
        self.assertEqual(verdict.reason, "banned keyword: custom")

    def test_customer_service_organizer_is_not_excluded(self) -> None:
        """"Customer" only shares a prefix with "custom"."""
        verdict = self.quality.assess("Customer Service Desk Organizer")
        self.assertFalse(verdict.excluded)
        self.assertIsNone(verdict.reason)

    def test_case_insensitive(self) -> None:
        self.assertTrue(self.quality.assess("BESPOKE leather wallet").excluded)

    def test_simple_plurals_match(self) -> None:
        self.assertTrue(self.quality.assess("Customs welcome").excluded)

    def test_multi_word_keyword_spans_whitespace(self) -> None:
        self.assertTrue(
            self.quality.assess("Sofa, made   to order in 14 days").excluded
        )

    def test_description_is_checked(self) -> None:
        verdict = self.quality.assess("Leather Wallet", "Personalized engraving")
        self.assertTrue(verdict.excluded)

    def test_embedded_word_does_not_match(self) -> None:
        quality = QualityFilter(keywords=["logo"])
        self.assertFalse(quality.assess("Logotype Stickers").excluded)
        self.assertTrue(quality.assess("Logo Stickers").excluded)

    def test_extra_keywords_are_added(self) -> None:
        quality = QualityFilter(extra_keywords=["refurbished"])
        self.assertTrue(quality.assess("Refurbished Drill").excluded)
        self.assertIn("custom", quality.keywords)


class TestAssessListing(unittest.TestCase):
    """Listing-level rules, including the optional MOQ rule."""

    def test_attributes_count_as_description(self) -> None:
        listing = _make_listing(
            "Leather Wallet", attributes=[["Service", "OEM Service"]],
        )
        self.assertTrue(QualityFilter().assess_listing(listing).excluded)

    def test_single_unit_moq_off_by_default(self) -> None:
        quality = QualityFilter(reject_single_unit_moq=False)
        self.assertFalse(
            quality.assess_listing(_make_listing("Drill", moq=1)).excluded
        )

    def test_single_unit_moq_rule(self) -> None:
        quality = QualityFilter(reject_single_unit_moq=True)
        verdict = quality.assess_listing(_make_listing("Drill", moq=1))
        self.assertTrue(verdict.excluded)
        self.assertEqual(verdict.reason, "single-unit MOQ")
        self.assertFalse(
            quality.assess_listing(_make_listing("Drill", moq=50)).excluded
        )


class TestFilterListings(unittest.TestCase):
    """Batch filtering returns kept listings and the excluded count."""

    def test_filter_listings(self) -> None:
        listings = [
            _make_listing("Custom Phone Case"),
            _make_listing("Customer Service Desk Organizer"),
            _make_listing("Steel Bolt"),
        ]
        with self.assertLogs("poolfeed.filters", level="INFO"):
            kept, excluded = QualityFilter().filter_listings(listings)
        self.assertEqual(excluded, 1)
        self.assertEqual(
            [item.title for item in kept],
            ["Customer Service Desk Organizer", "Steel Bolt"],
        )


if __name__ == "__main__":
    unittest.main()
