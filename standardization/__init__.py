"""
Event Standardization Module

Turns raw scraped event, venue and organizer records into validated
canonical records, and reports on the quality of each batch.

Key Components:
- DataNormalizer: Main transform + quality report
- NormalizedEvent / NormalizedVenue / NormalizedOrganizer: Canonical schema
- CategoryClassifier: Keyword -> EventCategory mapping
- parse_price: Price text -> range + currency
- parse_datetime: Date text -> UTC datetime
"""

from .schema import (
    EventCategory,
    EventStatus,
    NormalizedEvent,
    NormalizedVenue,
    NormalizedOrganizer,
    QualityIssue,
    DataQualityReport,
    NormalizationResult,
)
from .category_classifier import CategoryClassifier, classify_event
from .price_parser import PriceInfo, parse_price
from .date_parser import parse_datetime, resolve_timezone
from .cleaner import clean_text, strip_html, normalize_url, filter_images
from .normalizer import DataNormalizer, NormalizationConfig, record_id

__all__ = [
    # Schema
    'EventCategory',
    'EventStatus',
    'NormalizedEvent',
    'NormalizedVenue',
    'NormalizedOrganizer',
    'QualityIssue',
    'DataQualityReport',
    'NormalizationResult',

    # Classification
    'CategoryClassifier',
    'classify_event',

    # Parsing
    'PriceInfo',
    'parse_price',
    'parse_datetime',
    'resolve_timezone',

    # Cleaning
    'clean_text',
    'strip_html',
    'normalize_url',
    'filter_images',

    # Normalizer
    'DataNormalizer',
    'NormalizationConfig',
    'record_id',
]
