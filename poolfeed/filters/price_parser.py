# poolfeed/filters/price_parser.py

"""Free-text price, MOQ and sold-count parsing.

Marketplace price strings are messy ("US$3.50-4.20 / Piece",
"₹ 1,20,000/Unit", "Get Latest Price"). The parsers recover what they
can and always keep the verbatim text so nothing is lost when they
cannot.
"""

import re

from poolfeed.models.listing import MinimumOrder, PriceRange

# Checked in order: multi-character markers before bare symbols.
_CURRENCY_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"US\s?\$"), "USD"),
    (re.compile(r"\bUSD\b", re.IGNORECASE), "USD"),
    (re.compile(r"CN\s?¥|\bRMB\b|\bCNY\b", re.IGNORECASE), "CNY"),
    (re.compile(r"₹|\bINR\b|\bRs\.?(?=\s|\d)", re.IGNORECASE), "INR"),
    (re.compile(r"€|\bEUR\b", re.IGNORECASE), "EUR"),
    (re.compile(r"£|\bGBP\b", re.IGNORECASE), "GBP"),
    (re.compile(r"\bAED\b", re.IGNORECASE), "AED"),
    (re.compile(r"¥|￥"), "CNY"),
    (re.compile(r"\$"), "USD"),
]

# 3.50 / 1,299.00 / 1,20,000 (lakh grouping)
_NUMBER_RE = re.compile(r"\d+(?:,\d{2,3})*(?:\.\d+)?")

_RANGE_SEPARATORS = frozenset({"-", "–", "—", "~", "to"})

_INLINE_CURRENCY_RE = re.compile(
    r"[$¥￥₹€£]|USD|US|RMB|CNY|INR|Rs\.?", re.IGNORECASE,
)

_MOQ_RE = re.compile(
    r"[≥>]?\s*(\d[\d,]*)\s*(?:\(?\s*([A-Za-z][A-Za-z]*)\)?)?"
)

_MOQ_NOISE_UNITS = frozenset({"moq", "min", "minimum", "order", "orders"})

_SOLD_RE = re.compile(r"(\d[\d,\.]*?)\s*(sold|orders)\b", re.IGNORECASE)


def detect_currency(text: str) -> str | None:
    """Return the ISO code for the first currency marker in *text*."""
    for pattern, code in _CURRENCY_PATTERNS:
        if pattern.search(text):
            return code
    return None


def _to_float(token: str) -> float | None:
    try:
        return float(token.replace(",", ""))
    except ValueError:
        return None


def parse_price_text(
    text: str | None,
    default_currency: str | None = None,
) -> PriceRange | None:
    """Parse a price string into a :class:`PriceRange`.

    Ranges are recognised when the text between the first two numbers
    is a dash, tilde or "to" (optionally preceded by a currency
    symbol). Unparseable text comes back with ``min=None`` and the
    original string in ``text``.
    """
    if text is None:
        return None
    raw = " ".join(str(text).split())
    if not raw:
        return None

    matches = list(_NUMBER_RE.finditer(raw))
    values = [_to_float(m.group(0)) for m in matches]
    if not matches or values[0] is None or values[0] <= 0:
        return PriceRange(text=raw)

    low = values[0]
    high = low
    if len(matches) >= 2 and values[1] is not None:
        between = raw[matches[0].end():matches[1].start()]
        # "$3.50-$4.20" leaves "-$" between the numbers
        cleaned = _INLINE_CURRENCY_RE.sub("", between).strip().lower()
        if cleaned in _RANGE_SEPARATORS:
            low, high = sorted((values[0], values[1]))

    return PriceRange(
        min=low,
        max=high,
        currency=detect_currency(raw) or default_currency,
        text=raw,
    )


def price_from_fields(
    low: object,
    high: object,
    currency: object,
    default_currency: str | None = None,
) -> PriceRange | None:
    """Build a price range from already-structured numeric fields."""
    lo = _to_float(str(low)) if low not in (None, "") else None
    hi = _to_float(str(high)) if high not in (None, "") else None
    bounds = [v for v in (lo, hi) if v is not None]
    if not bounds:
        return None
    lo, hi = min(bounds), max(bounds)
    code = str(currency).upper() if currency else default_currency
    if code == "RMB":
        code = "CNY"
    return PriceRange(
        min=lo, max=hi, currency=code, text=format_range(lo, hi, code),
    )


def format_range(
    low: float | None, high: float | None, currency: str | None,
) -> str:
    """Render a range the way listing cards display it."""
    symbols = {"USD": "US$", "CNY": "¥", "INR": "₹", "EUR": "€", "GBP": "£"}
    sym = symbols.get(currency or "USD", f"{currency} ")

    def fmt(value: float) -> str:
        if value % 1 == 0:
            return f"{value:,.0f}"
        return f"{value:,.2f}"

    if low is not None and high is not None and low != high:
        return f"{sym}{fmt(low)} - {sym}{fmt(high)}"
    value = low if low is not None else high
    return f"{sym}{fmt(value)}" if value is not None else ""


def parse_moq_text(text: str | None) -> MinimumOrder | None:
    """Parse "≥ 100 Pieces" / "MOQ: 500 sets" style text."""
    if text is None:
        return None
    raw = " ".join(str(text).split())
    if not raw:
        return None
    for match in _MOQ_RE.finditer(raw):
        digits = match.group(1).replace(",", "")
        quantity = int(digits) if digits.isdigit() else 0
        if quantity <= 0:
            continue
        unit = match.group(2)
        if unit and unit.lower() in _MOQ_NOISE_UNITS:
            unit = None
        return MinimumOrder(
            quantity=quantity,
            unit=unit.lower() if unit else None,
            text=raw,
        )
    return MinimumOrder(text=raw)


def parse_sold_count(text: str | None) -> int | None:
    """Extract "1,234 sold" / "56 orders" counts."""
    if not text:
        return None
    match = _SOLD_RE.search(str(text))
    if not match:
        return None
    digits = re.sub(r"[,\.]", "", match.group(1))
    return int(digits) if digits.isdigit() else None
