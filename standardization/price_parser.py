"""
Price Parser

Turns listing price text into a numeric range and currency code.

Handles:
- "Free", "FREE entry", "$0"
- single prices: "$25", "€12.50", "CA$ 40", "25 USD"
- ranges: "$20 - $50", "From $15", "$10-$20", "$20 - 50"
- thousands separators: "$1,250.00"
- stray numbers next to a priced amount: "2 tickets for $30"
"""

import re
from dataclasses import dataclass
from typing import Optional, List

DEFAULT_CURRENCY = "USD"

# Longest symbols first so "CA$" wins over "$"
CURRENCY_SYMBOLS = [
    ('CA$', 'CAD'),
    ('C$', 'CAD'),
    ('A$', 'AUD'),
    ('US$', 'USD'),
    ('$', 'USD'),
    ('€', 'EUR'),
    ('£', 'GBP'),
    ('¥', 'JPY'),
]

CURRENCY_CODES = {'USD', 'EUR', 'GBP', 'JPY', 'CAD', 'AUD', 'BGN', 'CHF'}

FREE_PATTERN = re.compile(r'\b(free|gratis|no charge|complimentary)\b', re.IGNORECASE)
AMOUNT_PATTERN = re.compile(r'\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?')

# Context an amount needs to count as a price once the text names a currency
_SYMBOL_BEFORE = re.compile(
    r'(?:' + '|'.join(re.escape(symbol) for symbol, _ in CURRENCY_SYMBOLS) + r')\s?$'
)
_CODE_AFTER = re.compile(r'^\s?(?:' + '|'.join(sorted(CURRENCY_CODES)) + r')\b', re.IGNORECASE)
_RANGE_DASH = re.compile(r'^\s*[-–]\s*$')


@dataclass(frozen=True)
class PriceInfo:
    is_free: bool
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    currency: Optional[str] = None


def currency_code(value: Optional[str]) -> Optional[str]:
    """Currency code for a symbol or code; None when unknown"""
    if not value:
        return None
    value = value.strip()
    upper = value.upper()
    if upper in CURRENCY_CODES:
        return upper
    for symbol, code in CURRENCY_SYMBOLS:
        if value == symbol:
            return code
    return None


def detect_currency(text: str) -> Optional[str]:
    for code in re.findall(r'\b[A-Z]{3}\b', text.upper()):
        if code in CURRENCY_CODES:
            return code
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code
    return None


def _to_float(match: re.Match) -> float:
    return float(match.group(0).replace(',', ''))


def parse_amounts(text: str, marked_only: bool = False) -> List[float]:
    """
    Numbers in text, in order.

    With marked_only, keep just the amounts written next to a currency
    symbol or code, plus the other end of a range such as "$20 - 50".
    """
    matches = list(AMOUNT_PATTERN.finditer(text))
    if not marked_only:
        return [_to_float(m) for m in matches]

    marked = [
        bool(_SYMBOL_BEFORE.search(text[:m.start()]) or _CODE_AFTER.search(text[m.end():]))
        for m in matches
    ]
    for i in range(len(matches) - 1):
        between = text[matches[i].end():matches[i + 1].start()]
        if marked[i] != marked[i + 1] and _RANGE_DASH.match(between):
            marked[i] = marked[i + 1] = True
    return [_to_float(m) for m, keep in zip(matches, marked) if keep]


def parse_price(text: Optional[str], default_currency: str = DEFAULT_CURRENCY) -> Optional[PriceInfo]:
    """
    Parse price text.

    Returns None when the text carries no price information at all.
    """
    if not text or not text.strip():
        return None

    detected = detect_currency(text)
    amounts = parse_amounts(text, marked_only=detected is not None)
    if FREE_PATTERN.search(text) and not any(a > 0 for a in amounts):
        return PriceInfo(is_free=True, min_price=0.0, max_price=0.0, currency=detected)

    if not amounts:
        return None

    currency = detected or default_currency
    low, high = min(amounts), max(amounts)
    if high == 0:
        return PriceInfo(is_free=True, min_price=0.0, max_price=0.0, currency=currency)
    return PriceInfo(is_free=False, min_price=low, max_price=high, currency=currency)
