"""
Built-in Scrape Targets

Selector maps for the event sources supported out of the box, plus
loading of job files. Base URLs may carry {location} / {city} / {query}
placeholders that the orchestrator fills from the job's filters.
"""

import json
import logging
from pathlib import Path
from dataclasses import replace
from typing import Dict, Any, List, Optional, Union

from .models import ScrapeJob, ScrapeTarget

logger = logging.getLogger(__name__)

CAPTCHA_SELECTORS = [
    '.captcha',
    '#captcha',
    '[data-captcha]',
    '.recaptcha',
    '.cf-browser-verification',
]

# Shared recovery chain: wait out rate limits, give up quietly when blocked
DEFAULT_FALLBACKS = [
    {
        'id': 'wait_on_rate_limit',
        'triggers': ['rate_limited'],
        'action': 'wait_and_retry',
        'config': {'delay': 60, 'max_retries': 1},
        'description': 'Back off and try once more',
    },
    {
        'id': 'skip_when_blocked',
        'triggers': ['blocked'],
        'action': 'skip',
        'description': 'Target refuses us; skip until next run',
    },
]

EVENTBRITE_SELECTORS = {
    'container': '[data-testid="search-results"], .search-results',
    'item': '[data-testid="search-result-card"], .search-result-card, .eds-event-card',
    'title': '[data-testid="event-name"], .event-name, .event-title h2, .eds-event-card__title',
    'description': '[data-testid="event-description"], .event-description, .event-summary',
    'date': '[data-testid="event-start-date"], .event-date, .event-start-date',
    'time': '[data-testid="event-start-time"], .event-time, .event-start-time',
    'venue': '[data-testid="venue-name"], .venue-name, .event-venue',
    'price': '[data-testid="ticket-price"], .price, .event-price, .ticket-price',
    'image': '[data-testid="event-image"] img, .event-image img, .event-card-image img',
    'link': 'a[href*="/e/"], a[href*="/events/"]',
    'category': '[data-testid="event-category"], .event-category',
    'fallback_containers': ['main [role="list"]', 'main'],
}

# Older card markup still served on city listings
EVENTBRITE_CITY_SELECTORS = {
    'container': '.search-results, [data-testid="search-results"]',
    'item': '.event-card, [data-testid="search-result-card"]',
    'title': '.event-title h2, [data-testid="event-name"]',
}

EVENTBRITE_DETAIL_SELECTORS = {
    'description': '[data-testid="event-description"], .event-description, .structured-content',
    'organizer': '[data-testid="organizer-name"], .organizer-name',
    'organizer_url': '[data-testid="organizer-link"], .organizer-link',
    'venue_address': '[data-testid="venue-address"], .venue-address, .location-info__address',
}

BUILTIN_TARGETS: Dict[str, Dict[str, Any]] = {
    'eventbrite_search': {
        'id': 'eventbrite_search',
        'name': 'Eventbrite Search Results',
        'source': 'eventbrite',
        'base_url': 'https://www.eventbrite.com/d/{location}/events/',
        'selectors': EVENTBRITE_SELECTORS,
        'pagination': {
            'type': 'button',
            'selector': '[data-testid="pagination-next"], .pagination-next',
            'max_pages': 10,
        },
        'cookie_consent': {
            'accept_selector': '[data-cookiebanner="accept_button"], #onetrust-accept-btn-handler, .cookie-accept',
            'timeout': 3.0,
        },
        'captcha_selectors': CAPTCHA_SELECTORS,
        'fallbacks': [
            {
                'id': 'eventbrite_city_markup',
                'triggers': ['selector_missing', 'empty_results'],
                'action': 'alternative_selectors',
                'config': {'selectors': EVENTBRITE_CITY_SELECTORS},
                'description': 'Retry with the older card markup',
            },
        ] + DEFAULT_FALLBACKS,
        'detail_selectors': EVENTBRITE_DETAIL_SELECTORS,
        'default_country': 'US',
    },
    'eventbrite_city': {
        'id': 'eventbrite_city',
        'name': 'Eventbrite City Events',
        'source': 'eventbrite',
        'base_url': 'https://www.eventbrite.com/d/{city}/events/',
        'selectors': {**EVENTBRITE_SELECTORS, **EVENTBRITE_CITY_SELECTORS},
        'pagination': {'type': 'infinite_scroll', 'max_pages': 5},
        'captcha_selectors': CAPTCHA_SELECTORS,
        'fallbacks': DEFAULT_FALLBACKS,
        'default_country': 'US',
    },
    'meetup_events': {
        'id': 'meetup_events',
        'name': 'Meetup Events Search',
        'source': 'meetup',
        'base_url': 'https://www.meetup.com/find/events/?location={location}',
        'selectors': {
            'container': '[data-testid="event-card-list"]',
            'item': '[data-testid="event-card"]',
            'title': '[data-testid="event-title"]',
            'description': '[data-testid="event-description"]',
            'date': '[data-testid="event-datetime"]',
            'venue': '[data-testid="event-venue"]',
            'price': '[data-testid="event-price"]',
            'image': '[data-testid="event-image"] img',
            'link': 'a[href*="/events/"]',
        },
        'pagination': {
            'type': 'button',
            'selector': '[data-testid="load-more"]',
            'max_pages': 5,
        },
        'fallbacks': DEFAULT_FALLBACKS,
    },
    'ticketmaster_events': {
        'id': 'ticketmaster_events',
        'name': 'Ticketmaster Events',
        'source': 'ticketmaster',
        'base_url': 'https://www.ticketmaster.com/search?q={query}',
        'selectors': {
            'container': '.SearchResults',
            'item': '.SearchResult',
            'title': '.EventDetails h3',
            'date': '.EventDetails .date',
            'venue': '.EventDetails .venue',
            'price': '.PriceRange',
            'image': '.EventImage img',
            'link': 'a',
        },
        'pagination': {'type': 'button', 'selector': '.LoadMore', 'max_pages': 5},
        'fallbacks': DEFAULT_FALLBACKS,
    },
    'ra_events': {
        'id': 'ra_events',
        'name': 'Resident Advisor Events',
        'source': 'resident_advisor',
        'base_url': 'https://ra.co/events/{location}',
        'selectors': {
            'container': '.event-listing',
            'item': '.event-item',
            'title': '.event-title',
            'date': '.event-date',
            'venue': '.event-venue',
            'price': '.event-price',
            'image': '.event-image img',
            'link': 'a',
        },
        'fallbacks': DEFAULT_FALLBACKS,
    },
}

VENUE_SELECTORS = {
    'container': '.events, .event-list, #events',
    'item': '.event, .event-item, .event-card',
    'title': '.event-title, .title, h2, h3',
    'description': '.event-description, .description, .summary',
    'date': '.event-date, .date, time',
    'venue': '.venue, .location',
    'price': '.price, .cost, .ticket-price',
    'image': '.event-image img, .image img',
    'link': 'a',
}


def get_target(target_id: str, **changes) -> ScrapeTarget:
    """Built-in target by id, optionally with fields replaced"""
    if target_id not in BUILTIN_TARGETS:
        raise ValueError(f"Unknown target: {target_id}")
    target = ScrapeTarget.from_dict(BUILTIN_TARGETS[target_id])
    return replace(target, **changes) if changes else target


def venue_target(
    venue_url: str,
    name: str,
    target_id: Optional[str] = None,
    city: Optional[str] = None,
    **changes,
) -> ScrapeTarget:
    """Generic target for a venue's own events page"""
    venue_url = venue_url.rstrip('/')
    data = {
        'id': target_id or f"venue_{name.lower().replace(' ', '_')}",
        'name': name,
        'source': 'venue_direct',
        'base_url': f"{venue_url}/events",
        'selectors': VENUE_SELECTORS,
        'pagination': {'type': 'url_params', 'param': 'page', 'max_pages': 3},
        'fallbacks': [
            {
                'id': 'venue_root_page',
                'triggers': ['selector_missing', 'empty_results'],
                'action': 'different_url',
                'config': {'url': venue_url},
                'description': 'Events listed on the home page',
            },
        ] + DEFAULT_FALLBACKS,
        'default_city': city,
    }
    target = ScrapeTarget.from_dict(data)
    return replace(target, **changes) if changes else target


def list_targets() -> List[Dict[str, str]]:
    return [
        {'id': t['id'], 'name': t['name'], 'source': t['source'], 'base_url': t['base_url']}
        for t in BUILTIN_TARGETS.values()
    ]


def _target_entry(entry: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    """A job file target: a built-in id, a built-in with overrides, or a full definition"""
    if isinstance(entry, str):
        if entry not in BUILTIN_TARGETS:
            raise ValueError(f"Unknown target: {entry}")
        return BUILTIN_TARGETS[entry]
    if 'extends' in entry:
        base_id = entry['extends']
        if base_id not in BUILTIN_TARGETS:
            raise ValueError(f"Unknown target: {base_id}")
        merged = {**BUILTIN_TARGETS[base_id], **{k: v for k, v in entry.items() if k != 'extends'}}
        if 'selectors' in entry:
            merged['selectors'] = {**BUILTIN_TARGETS[base_id]['selectors'], **entry['selectors']}
        return merged
    return entry


def build_job(data: Dict[str, Any]) -> ScrapeJob:
    """ScrapeJob from a decoded job document"""
    data = dict(data)
    data['targets'] = [_target_entry(entry) for entry in data.get('targets', [])]
    if not data['targets']:
        raise ValueError("Job has no targets")
    return ScrapeJob.from_dict(data)


def load_job_file(path: Union[str, Path]) -> ScrapeJob:
    """Load a job definition from a JSON file"""
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    job = build_job(data)
    logger.info(f"Loaded job '{job.name}' from {path}: {len(job.targets)} targets")
    return job
