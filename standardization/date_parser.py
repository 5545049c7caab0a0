"""
Date/Time Parsing

Listing pages print dates in every format imaginable. Parsing goes
through python-dateutil; wall-clock values are localized in the
declared (or default) timezone and converted to UTC. Dates printed
without a year ("Sat, Oct 24") get one from a reference time, normally
the record's scraped_at.
"""

import logging
import re
from datetime import datetime, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

TIMEZONE_ABBREVIATIONS = {
    'PST': 'America/Los_Angeles',
    'PDT': 'America/Los_Angeles',
    'MST': 'America/Denver',
    'MDT': 'America/Denver',
    'CST': 'America/Chicago',
    'CDT': 'America/Chicago',
    'EST': 'America/New_York',
    'EDT': 'America/New_York',
    'GMT': 'UTC',
    'UTC': 'UTC',
    'BST': 'Europe/London',
    'CET': 'Europe/Paris',
    'CEST': 'Europe/Paris',
}

# Decorations listing pages wrap around dates
_NOISE = re.compile(
    r'\b(starts?|from|on|doors?|at)\b\s*:?|[•|·]',
    re.IGNORECASE,
)
_TRAILING_ABBR = re.compile(r'\s+([A-Z]{2,4})$')

# Text must name a month or carry a numeric date to count as a date
_MONTH_NAME = re.compile(
    r'\b(jan(uary)?|feb(ruary)?|mar(ch)?|apr(il)?|may|june?|july?|aug(ust)?'
    r'|sep(t(ember)?)?|oct(ober)?|nov(ember)?|dec(ember)?)\b',
    re.IGNORECASE,
)
_NUMERIC_DATE = re.compile(r'\b\d{1,4}[-/.]\d{1,2}(?:[-/.]\d{1,4})?\b')
_DIGIT = re.compile(r'\d')

# Both leap years, so "Feb 29" parses under either
_DEFAULT = datetime(2000, 1, 1, 0, 0)
_ALTERNATE_DEFAULT = datetime(2004, 1, 1, 0, 0)
_MAX_YEAR_LOOKAHEAD = 8


def resolve_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> str:
    """IANA name for an abbreviation or zone name; default when unknown"""
    if not name:
        return default
    name = name.strip()
    mapped = TIMEZONE_ABBREVIATIONS.get(name.upper())
    if mapped:
        return mapped
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown timezone '{name}', using {default}")
        return default
    return name


def _split_abbreviation(text: str) -> Tuple[str, Optional[str]]:
    match = _TRAILING_ABBR.search(text)
    if match and match.group(1) in TIMEZONE_ABBREVIATIONS:
        return text[:match.start()], TIMEZONE_ABBREVIATIONS[match.group(1)]
    return text, None


def _has_date(text: str) -> bool:
    return bool(_MONTH_NAME.search(text) or _NUMERIC_DATE.search(text))


def _infer_year(parsed: datetime, zone: tzinfo, reference: Optional[datetime]) -> Optional[datetime]:
    """
    Place a yearless date on or after the reference day.

    "Oct 24" scraped on 2026-10-01 is 2026-10-24; "Jan 5" scraped the
    same day is 2027-01-05.
    """
    if reference is None:
        reference = datetime.now(timezone.utc)
    elif reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    today = reference.astimezone(zone).date()

    for year in range(today.year, today.year + _MAX_YEAR_LOOKAHEAD):
        try:
            candidate = parsed.replace(year=year)
        except ValueError:
            # Feb 29 outside a leap year
            continue
        if candidate.date() >= today:
            return candidate
    return None


def parse_datetime(
    text: Optional[str],
    tz_name: str = DEFAULT_TIMEZONE,
    reference: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Parse a date/time string to an aware UTC datetime.

    Offsets embedded in the string win; a trailing abbreviation (EST,
    CET, ...) comes next; otherwise the value is read as wall-clock time
    in tz_name. A missing year comes from reference (now when not
    given), rolling into the next year for dates already past.

    Returns None for anything unparseable, for text naming no month or
    numeric date, and for text where numbers were skipped as noise.
    """
    if not text or not text.strip():
        return None

    cleaned = _NOISE.sub(' ', text)
    cleaned = re.sub(r'\s+', ' ', cleaned).strip()
    cleaned, abbreviation_zone = _split_abbreviation(cleaned)
    if not cleaned or not _has_date(cleaned):
        logger.debug(f"No date in '{text}'")
        return None

    try:
        parsed, skipped = date_parser.parse(cleaned, default=_DEFAULT, fuzzy_with_tokens=True)
        # Differs from parsed.year only when the text has no year
        other_year = date_parser.parse(cleaned, default=_ALTERNATE_DEFAULT, fuzzy=True).year
    except (ValueError, OverflowError) as e:
        logger.debug(f"Unparseable date '{text}': {e}")
        return None

    if any(_DIGIT.search(token) for token in skipped):
        logger.debug(f"Date '{text}' has unparsed numbers {list(skipped)}")
        return None

    zone = parsed.tzinfo or ZoneInfo(abbreviation_zone or tz_name)
    if other_year != parsed.year:
        parsed = _infer_year(parsed, zone, reference)
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(timezone.utc)


def is_date_only(text: Optional[str]) -> bool:
    """True when the string carries no time of day"""
    if not text:
        return False
    return not re.search(r'\d{1,2}:\d{2}|\d\s*(am|pm)\b|\bnoon\b|\bmidnight\b', text, re.IGNORECASE)
