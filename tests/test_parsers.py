"""Tests for price, date and text parsing helpers"""

from datetime import datetime, timezone

import pytest

from standardization import (
    CategoryClassifier,
    EventCategory,
    clean_text,
    filter_images,
    normalize_url,
    parse_datetime,
    parse_price,
    resolve_timezone,
    strip_html,
)


class TestParsePrice:
    def test_free(self):
        """'Free' is a free event priced at zero"""
        info = parse_price("Free")
        assert info.is_free
        assert (info.min_price, info.max_price) == (0.0, 0.0)

    def test_range(self):
        """'$20 - $50' is a USD range"""
        info = parse_price("$20 - $50")
        assert not info.is_free
        assert (info.min_price, info.max_price, info.currency) == (20.0, 50.0, "USD")

    @pytest.mark.parametrize("text,expected", [
        ("€12.50", (12.5, 12.5, "EUR")),
        ("CA$ 40", (40.0, 40.0, "CAD")),
        ("25 GBP", (25.0, 25.0, "GBP")),
        ("From $15", (15.0, 15.0, "USD")),
        ("$1,250.00", (1250.0, 1250.0, "USD")),
        ("$10-$20", (10.0, 20.0, "USD")),
    ])
    def test_formats(self, text, expected):
        """Symbols, codes and thousands separators"""
        info = parse_price(text)
        assert (info.min_price, info.max_price, info.currency) == expected

    def test_zero_amount_is_free(self):
        assert parse_price("$0").is_free

    def test_free_with_paid_option(self):
        """'Free' next to a positive amount is not free"""
        info = parse_price("Free - $25 VIP")
        assert not info.is_free
        assert info.max_price == 25.0

    @pytest.mark.parametrize("text", [None, "", "   ", "Tickets at the door"])
    def test_no_price_information(self, text):
        assert parse_price(text) is None

    def test_default_currency(self):
        """Bare numbers take the supplied default currency"""
        assert parse_price("30", default_currency="CAD").currency == "CAD"

    @pytest.mark.parametrize("text,expected", [
        ("2 tickets for $30", (30.0, 30.0, "USD")),
        ("Ages 19+ | $25 advance", (25.0, 25.0, "USD")),
        ("Table for 4: 120 EUR", (120.0, 120.0, "EUR")),
    ])
    def test_unpriced_numbers_ignored(self, text, expected):
        """Counts and ages beside a priced amount are not prices"""
        info = parse_price(text)
        assert (info.min_price, info.max_price, info.currency) == expected

    def test_range_end_without_symbol(self):
        """'$20 - 50' keeps both ends of the range"""
        info = parse_price("$20 - 50")
        assert (info.min_price, info.max_price) == (20.0, 50.0)


class TestParseDatetime:
    def test_wall_clock_in_declared_zone(self):
        """Naive times are read in the given zone and converted to UTC"""
        parsed = parse_datetime("2026-07-04 20:00", "America/Los_Angeles")
        assert parsed == datetime(2026, 7, 5, 3, 0, tzinfo=timezone.utc)

    def test_embedded_offset_wins(self):
        parsed = parse_datetime("2026-07-04T20:00:00+02:00", "America/New_York")
        assert parsed == datetime(2026, 7, 4, 18, 0, tzinfo=timezone.utc)

    def test_trailing_abbreviation(self):
        """'EST' style suffixes pick the zone"""
        parsed = parse_datetime("Nov 20, 2026 7:00 PM PST", "America/New_York")
        assert parsed == datetime(2026, 11, 21, 3, 0, tzinfo=timezone.utc)

    def test_listing_decorations(self):
        """Words like 'Starts' and bullet separators are ignored"""
        parsed = parse_datetime("Starts: Fri, Nov 20, 2026 • 7:00 PM", "UTC")
        assert parsed == datetime(2026, 11, 20, 19, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("text", [None, "", "TBA soon"])
    def test_unparseable(self, text):
        assert parse_datetime(text) is None

    def test_missing_year_from_reference(self):
        """A date printed without a year takes the reference year"""
        reference = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
        parsed = parse_datetime("Tue, Oct 20 7:00 PM", "UTC", reference)
        assert parsed == datetime(2026, 10, 20, 19, 0, tzinfo=timezone.utc)

    def test_missing_year_rolls_forward(self):
        """Yearless dates already past the reference fall in the next year"""
        reference = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
        parsed = parse_datetime("Jan 5 8:00 PM", "UTC", reference)
        assert parsed == datetime(2027, 1, 5, 20, 0, tzinfo=timezone.utc)

    def test_missing_year_same_day_kept(self):
        """The reference day itself is not rolled forward"""
        reference = datetime(2026, 10, 1, 23, 0, tzinfo=timezone.utc)
        parsed = parse_datetime("Oct 1 9:00 AM", "UTC", reference)
        assert parsed == datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

    def test_missing_year_leap_day(self):
        """Feb 29 skips ahead to the next leap year"""
        reference = datetime(2026, 10, 1, tzinfo=timezone.utc)
        parsed = parse_datetime("Feb 29", "UTC", reference)
        assert parsed == datetime(2028, 2, 29, 0, 0, tzinfo=timezone.utc)

    def test_naive_reference_read_as_utc(self):
        parsed = parse_datetime("Dec 31 10:00 PM", "UTC", datetime(2026, 10, 1))
        assert parsed.year == 2026

    @pytest.mark.parametrize("text", ["Doors at 8", "Room 12", "Starts at 7:30"])
    def test_numbers_without_a_date_rejected(self, text):
        """Times or numbers that fuzzy matching would turn into a date are refused"""
        reference = datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert parse_datetime(text, "UTC", reference) is None

    def test_resolve_timezone(self):
        """Abbreviations map to IANA names; unknown names fall back"""
        assert resolve_timezone("EDT") == "America/New_York"
        assert resolve_timezone("Europe/Sofia") == "Europe/Sofia"
        assert resolve_timezone("Mars/Olympus", default="UTC") == "UTC"
        assert resolve_timezone(None, default="UTC") == "UTC"


class TestCleaning:
    def test_strip_html(self):
        assert strip_html("<p>Live <em>jazz</em>&nbsp;tonight</p>") == "Live jazz tonight"

    def test_double_encoded_entities(self):
        assert strip_html("<p>Rock &amp;amp; Roll</p>") == "Rock & Roll"

    def test_clean_text(self):
        assert clean_text("  a \n\t b  ") == "a b"
        assert clean_text("   ") is None

    @pytest.mark.parametrize("url,expected", [
        ("//cdn.example.com/a.jpg", "https://cdn.example.com/a.jpg"),
        ("example.com/events", "https://example.com/events"),
        ("http://example.com", "http://example.com"),
        ("javascript:void(0)", None),
        ("ftp://example.com/file", None),
        ("https://localhost:8000/x", "https://localhost:8000/x"),
        ("https://intranet/x", None),
    ])
    def test_normalize_url(self, url, expected):
        assert normalize_url(url) == expected

    def test_filter_images(self):
        """Only allowed extensions survive, duplicates dropped"""
        images = filter_images([
            "https://img.example.com/a.png",
            "https://img.example.com/a.png",
            "https://img.example.com/b.svg",
            "https://img.example.com/noext",
            None,
        ])
        assert images == ["https://img.example.com/a.png"]


class TestCategoryClassifier:
    def test_keyword_match(self):
        assert CategoryClassifier().classify(["Live Music"]) == EventCategory.MUSIC

    def test_canonical_name(self):
        assert CategoryClassifier().classify(["technology"]) == EventCategory.TECHNOLOGY

    def test_tags_used_when_categories_unknown(self):
        assert CategoryClassifier().classify(["Misc"], ["startup"]) == EventCategory.TECHNOLOGY

    def test_default_other(self):
        classifier = CategoryClassifier()
        assert classifier.classify([], []) == EventCategory.OTHER
        assert classifier.stats['defaulted'] == 1
