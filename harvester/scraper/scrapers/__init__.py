# Target scrapers
from .base import BaseScraper
from .listing_scraper import EventListingScraper

__all__ = [
    'BaseScraper',
    'EventListingScraper',
]
