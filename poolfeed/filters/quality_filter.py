# poolfeed/filters/quality_filter.py

"""Pre-persistence exclusion of listings by banned keywords."""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from poolfeed.config.settings import Settings
from poolfeed.models.listing import CanonicalListing

logger = logging.getLogger("poolfeed.filters")


@dataclass(frozen=True)
class QualityVerdict:
    """Outcome of a quality assessment."""

    excluded: bool
    reason: str | None = None


ACCEPTED = QualityVerdict(excluded=False)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    """Whole-word, case-insensitive pattern tolerant of plural -s/-es."""
    words = [re.escape(w) for w in keyword.lower().split()]
    body = r"\s+".join(words)
    return re.compile(rf"\b{body}(?:s|es)?\b", re.IGNORECASE)


class QualityFilter:
    """Reject listings whose text matches any exclusion keyword.

    The keyword list defaults to ``Settings.BANNED_KEYWORDS`` (terms
    implying custom or bespoke work). Extra keywords can be layered on
    per run.
    """

    def __init__(
        self,
        keywords: Iterable[str] | None = None,
        extra_keywords: Iterable[str] | None = None,
        reject_single_unit_moq: bool | None = None,
    ) -> None:
        base = list(
            Settings.BANNED_KEYWORDS if keywords is None else keywords
        )
        base.extend(extra_keywords or [])
        self._patterns: list[tuple[str, re.Pattern[str]]] = [
            (kw.strip().lower(), _keyword_pattern(kw))
            for kw in dict.fromkeys(k for k in base if k.strip())
        ]
        self.reject_single_unit_moq = (
            Settings.REJECT_SINGLE_UNIT_MOQ
            if reject_single_unit_moq is None
            else reject_single_unit_moq
        )

    @property
    def keywords(self) -> list[str]:
        return [kw for kw, _ in self._patterns]

    def assess(self, title: str, description: str = "") -> QualityVerdict:
        """Return whether *title*/*description* hits a banned keyword."""
        text = f"{title or ''} {description or ''}"
        for keyword, pattern in self._patterns:
            if pattern.search(text):
                return QualityVerdict(
                    excluded=True, reason=f"banned keyword: {keyword}",
                )
        return ACCEPTED

    def assess_listing(self, listing: CanonicalListing) -> QualityVerdict:
        """Assess a normalised listing, including the optional MOQ rule."""
        attributes = (listing.raw or {}).get("attributes") or []
        if not isinstance(attributes, list):
            attributes = []
        description = " ".join(
            str(v) for pair in attributes
            if isinstance(pair, (list, tuple)) for v in pair
        )
        verdict = self.assess(listing.title, description)
        if verdict.excluded:
            return verdict

        if (
            self.reject_single_unit_moq
            and listing.moq is not None
            and listing.moq.quantity is not None
            and listing.moq.quantity <= 1
        ):
            return QualityVerdict(excluded=True, reason="single-unit MOQ")
        return ACCEPTED

    def filter_listings(
        self, listings: list[CanonicalListing],
    ) -> tuple[list[CanonicalListing], int]:
        """Drop excluded listings.

        Returns the kept list and the count of excluded listings.
        """
        kept: list[CanonicalListing] = []
        excluded = 0
        for listing in listings:
            verdict = self.assess_listing(listing)
            if verdict.excluded:
                excluded += 1
                logger.info(
                    "Excluded %s (%s): %s",
                    listing.url,
                    verdict.reason,
                    listing.title,
                )
            else:
                kept.append(listing)

        if excluded:
            logger.info(
                "Filtered out %d listings matching exclusion rules",
                excluded,
            )
        return kept, excluded
