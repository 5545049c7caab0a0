"""Event Harvester - resilient event and venue scraping"""

__version__ = "0.1.0"
