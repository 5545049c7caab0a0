"""
Data Normalizer

Pure transform from source-shaped raw records to canonical records.

Usage:
    normalizer = DataNormalizer()

    # Single record (None when it fails the validation gate)
    event = normalizer.normalize_event(raw_event, source="eventbrite")

    # Whole target run, with quality report
    result = normalizer.normalize_batch(raw_scraped_data, session_id=session.id)

Normalizing the same raw record twice gives identical output: ids are
derived from (source, external_id) and last_updated comes from the raw
record's scraped_at, never from the clock at normalization time.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple, TYPE_CHECKING

from pydantic import ValidationError as SchemaValidationError

from .category_classifier import CategoryClassifier
from .cleaner import (
    ALLOWED_IMAGE_EXTENSIONS,
    clean_text,
    filter_images,
    normalize_phone,
    normalize_url,
    strip_html,
    truncate,
)
from .date_parser import DEFAULT_TIMEZONE, is_date_only, parse_datetime, resolve_timezone
from .price_parser import currency_code, parse_price
from .schema import (
    DataQualityReport,
    EventStatus,
    NormalizationResult,
    NormalizedEvent,
    NormalizedOrganizer,
    NormalizedVenue,
    QualityIssue,
)

if TYPE_CHECKING:
    from harvester.scraper.models import (
        RawEventData,
        RawOrganizer,
        RawScrapedData,
        RawVenueData,
    )

logger = logging.getLogger(__name__)

# Fixed namespace so ids are stable across processes
RECORD_NAMESPACE = uuid.UUID('6f1c2a3e-9b4d-5e8f-a0b1-c2d3e4f5a6b7')

VENUE_TYPES = {
    'concert hall': 'concert_hall',
    'theater': 'theater',
    'theatre': 'theater',
    'club': 'nightclub',
    'nightclub': 'nightclub',
    'bar': 'bar',
    'restaurant': 'restaurant',
    'outdoor': 'outdoor',
    'park': 'park',
    'stadium': 'stadium',
    'arena': 'arena',
    'convention center': 'convention_center',
    'museum': 'museum',
    'gallery': 'gallery',
    'community center': 'community_center',
    'library': 'library',
    'church': 'religious',
    'hotel': 'hotel',
    'private': 'private_venue',
    'online': 'virtual',
}

STATUS_MAP = {
    'active': EventStatus.ACTIVE,
    'live': EventStatus.ACTIVE,
    'published': EventStatus.ACTIVE,
    'sold_out': EventStatus.ACTIVE,
    'sold out': EventStatus.ACTIVE,
    'cancelled': EventStatus.CANCELLED,
    'canceled': EventStatus.CANCELLED,
    'postponed': EventStatus.POSTPONED,
}

# Missing-field histogram keys -> fix suggestion
RECOMMENDATIONS = {
    'title': "Check the title selector; events are being extracted without titles",
    'start_time': "Improve date extraction; many events have no start date",
    'venue': "Improve venue extraction logic; many events are missing venue information",
    'description': "Enhance description extraction from event pages (enable detail enrichment)",
    'price': "Add or fix the price selector",
    'image': "Add or fix the image selector",
}

REJECTION_RECOMMENDATION = "Review rejected records; the validation gate is dropping events"
DUPLICATE_RECOMMENDATION = "Investigate duplicate listings; pagination may be revisiting pages"


@dataclass
class NormalizationConfig:
    strict: bool = True  # False: truncate long titles instead of rejecting
    require_venue: bool = True
    max_title_length: int = 200
    max_name_length: int = 100
    min_description_length: int = 10
    max_tags: int = 10
    default_timezone: str = DEFAULT_TIMEZONE
    default_currency: str = "USD"
    allowed_image_formats: Tuple[str, ...] = ALLOWED_IMAGE_EXTENSIONS
    venue_types: Dict[str, str] = field(default_factory=lambda: dict(VENUE_TYPES))
    sample_size: int = 3
    # Quality score below which a general recommendation is added
    min_quality_score: float = 0.8


def record_id(kind: str, source: str, external_id: str) -> str:
    """Deterministic id for a canonical record"""
    return str(uuid.uuid5(RECORD_NAMESPACE, f"{kind}:{source}:{external_id}"))


def _slug(text: str) -> str:
    return re.sub(r'[^a-z0-9]+', '_', text.lower()).strip('_')


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DataNormalizer:
    """
    Converts raw event/venue/organizer records into the canonical schema.
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        classifier: Optional[CategoryClassifier] = None,
    ):
        self.config = config or NormalizationConfig()
        self.classifier = classifier or CategoryClassifier()
        self.stats = {
            'events_processed': 0,
            'events_rejected': 0,
            'venues_processed': 0,
            'venues_rejected': 0,
            'organizers_processed': 0,
        }

    # ============================================
    # Events
    # ============================================

    def _title(self, raw_title: Optional[str]) -> Optional[str]:
        title = strip_html(raw_title)
        if not title:
            return None
        if len(title) > self.config.max_title_length and not self.config.strict:
            title = truncate(title, self.config.max_title_length)
        return title

    def rejection_reason(
        self,
        raw: "RawEventData",
        default_timezone: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> Optional[str]:
        """Why the validation gate drops this record; None if it passes"""
        config = self.config
        title = self._title(raw.title)
        if not title:
            return 'missing_title'
        if len(title) > config.max_title_length:
            return 'title_too_long'

        tz_name = resolve_timezone(raw.date_time.timezone, default_timezone or config.default_timezone)
        if parse_datetime(raw.date_time.start, tz_name, _as_utc(raw.scraped_at or observed_at)) is None:
            return 'missing_start_time' if not raw.date_time.start else 'unparseable_start_time'

        if config.require_venue and (raw.venue is None or not clean_text(raw.venue.name)):
            return 'missing_venue'
        return None

    def normalize_event(
        self,
        raw: "RawEventData",
        source: str,
        default_timezone: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> Optional[NormalizedEvent]:
        """
        Canonical event, or None when the record fails the validation gate.

        Rejections are data-quality outcomes, never retried.
        """
        self.stats['events_processed'] += 1
        reason = self.rejection_reason(raw, default_timezone, observed_at)
        if reason is not None:
            self.stats['events_rejected'] += 1
            logger.debug(f"[{source}] Rejected event {raw.external_id}: {reason}")
            return None

        config = self.config
        observed = _as_utc(raw.scraped_at or observed_at)
        tz_name = resolve_timezone(raw.date_time.timezone, default_timezone or config.default_timezone)
        start = parse_datetime(raw.date_time.start, tz_name, observed)
        end = parse_datetime(raw.date_time.end, tz_name, observed)
        if end is not None and end < start:
            end = None

        is_free, price_min, price_max, currency = self._pricing(raw)
        event_url = normalize_url(raw.event_url)
        images = filter_images(raw.images, config.allowed_image_formats)
        venue_name = clean_text(raw.venue.name) if raw.venue else None

        last_updated = observed or datetime.now(timezone.utc)

        try:
            return NormalizedEvent(
                id=record_id('event', source, raw.external_id),
                external_id=raw.external_id,
                source=source,
                title=self._title(raw.title),
                description=self._description(raw.description),
                start_time=start,
                end_time=end,
                timezone=tz_name,
                all_day=raw.date_time.all_day or is_date_only(raw.date_time.start),
                venue_id=self._venue_ref_id(raw, source),
                venue_name=venue_name,
                organizer_id=self._organizer_id(raw.organizer, source),
                category=self.classifier.classify(raw.categories, raw.tags),
                subcategory=self.classifier.subcategory(raw.categories),
                tags=self._tags(raw.tags),
                is_free=is_free,
                price_min=price_min,
                price_max=price_max,
                price_currency=currency,
                event_url=event_url,
                ticket_url=normalize_url(raw.pricing.ticket_url) or event_url,
                image_url=images[0] if images else None,
                images=images,
                status=self._status(raw.status),
                age_restriction=self._age_restriction(raw.age_restriction),
                capacity=raw.capacity if raw.capacity and raw.capacity > 0 else None,
                last_updated=last_updated,
            )
        except SchemaValidationError as e:
            self.stats['events_rejected'] += 1
            logger.warning(f"[{source}] Event {raw.external_id} failed schema validation: {e}")
            return None

    def _description(self, text: Optional[str]) -> Optional[str]:
        description = strip_html(text)
        if not description or len(description) < self.config.min_description_length:
            return None
        return description

    def _pricing(self, raw: "RawEventData") -> Tuple[bool, Optional[float], Optional[float], Optional[str]]:
        """(is_free, min, max, currency); an explicit is_free short-circuits parsing"""
        pricing = raw.pricing
        declared_currency = currency_code(pricing.currency)

        if pricing.is_free:
            return True, 0.0, 0.0, declared_currency

        if pricing.min_price is not None:
            low = float(pricing.min_price)
            high = float(pricing.max_price) if pricing.max_price is not None else low
            if low == 0 and high == 0:
                return True, 0.0, 0.0, declared_currency
            return False, low, max(high, low), declared_currency or self.config.default_currency

        info = parse_price(pricing.price_text, declared_currency or self.config.default_currency)
        if info is None:
            return False, None, None, None
        return info.is_free, info.min_price, info.max_price, info.currency

    def _tags(self, tags: List[str]) -> List[str]:
        result = []
        for tag in tags or []:
            cleaned = clean_text(tag)
            if not cleaned:
                continue
            cleaned = cleaned.lower()
            if cleaned not in result:
                result.append(cleaned)
        return result[:self.config.max_tags]

    @staticmethod
    def _status(status: Optional[str]) -> EventStatus:
        if not status:
            return EventStatus.ACTIVE
        return STATUS_MAP.get(status.strip().lower(), EventStatus.ACTIVE)

    @staticmethod
    def _age_restriction(value: Optional[str]) -> Optional[int]:
        if not value:
            return None
        match = re.search(r'(\d+)', str(value))
        return int(match.group(1)) if match else None

    @staticmethod
    def _venue_external_id(raw: "RawEventData") -> Optional[str]:
        venue = raw.venue
        if venue is None:
            return None
        if venue.external_id:
            return venue.external_id
        name = clean_text(venue.name)
        return f"venue_{_slug(name)}" if name else None

    def _venue_ref_id(self, raw: "RawEventData", source: str) -> Optional[str]:
        external_id = self._venue_external_id(raw)
        return record_id('venue', source, external_id) if external_id else None

    @staticmethod
    def _organizer_external_id(raw: Optional["RawOrganizer"]) -> Optional[str]:
        if raw is None:
            return None
        if raw.external_id:
            return raw.external_id
        name = clean_text(raw.name)
        return f"org_{_slug(name)}" if name else None

    def _organizer_id(self, raw: Optional["RawOrganizer"], source: str) -> Optional[str]:
        external_id = self._organizer_external_id(raw)
        return record_id('organizer', source, external_id) if external_id else None

    # ============================================
    # Venues & organizers
    # ============================================

    def normalize_venue(
        self,
        raw: "RawVenueData",
        source: str,
        observed_at: Optional[datetime] = None,
    ) -> Optional[NormalizedVenue]:
        """Canonical venue; name and city are required"""
        self.stats['venues_processed'] += 1
        name = clean_text(raw.name)
        city = clean_text(raw.city)
        if not name or not city:
            self.stats['venues_rejected'] += 1
            logger.debug(f"[{source}] Rejected venue {raw.external_id}: missing name or city")
            return None

        street = clean_text(raw.street)
        state = clean_text(raw.state)
        postal_code = clean_text(raw.postal_code)
        address = ', '.join(p for p in (street, city, state, postal_code) if p)

        latitude, longitude = raw.latitude, raw.longitude
        if latitude is None or longitude is None or not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            latitude, longitude = None, None

        try:
            return NormalizedVenue(
                id=record_id('venue', source, raw.external_id),
                external_id=raw.external_id,
                source=source,
                name=truncate(name, self.config.max_name_length),
                address=address or None,
                city=city,
                state=state,
                postal_code=postal_code,
                country=clean_text(raw.country),
                latitude=latitude,
                longitude=longitude,
                phone=normalize_phone(raw.phone),
                website=normalize_url(raw.website),
                venue_type=self.config.venue_types.get((raw.venue_type or '').strip().lower(), 'other'),
                capacity=raw.capacity if raw.capacity and raw.capacity > 0 else None,
                description=self._description(raw.description),
                images=filter_images(raw.images, self.config.allowed_image_formats),
                last_updated=_as_utc(raw.scraped_at or observed_at) or datetime.now(timezone.utc),
            )
        except SchemaValidationError as e:
            self.stats['venues_rejected'] += 1
            logger.warning(f"[{source}] Venue {raw.external_id} failed schema validation: {e}")
            return None

    def normalize_organizer(
        self,
        raw: Optional["RawOrganizer"],
        source: str,
        observed_at: Optional[datetime] = None,
    ) -> Optional[NormalizedOrganizer]:
        """Canonical organizer; name is required"""
        if raw is None or not clean_text(raw.name):
            return None
        self.stats['organizers_processed'] += 1
        external_id = self._organizer_external_id(raw)
        logo = filter_images([raw.logo_url], self.config.allowed_image_formats)
        return NormalizedOrganizer(
            id=record_id('organizer', source, external_id),
            external_id=external_id,
            source=source,
            name=truncate(clean_text(raw.name), self.config.max_name_length),
            description=self._description(raw.description),
            website=normalize_url(raw.url),
            logo_url=logo[0] if logo else None,
            last_updated=_as_utc(observed_at) or datetime.now(timezone.utc),
        )

    # ============================================
    # Batches
    # ============================================

    def normalize_batch(
        self,
        raw_data: "RawScrapedData",
        session_id: str = "",
        default_timezone: Optional[str] = None,
    ) -> NormalizationResult:
        """Normalize one target run and report on its quality"""
        source = raw_data.source
        observed_at = raw_data.scraped_at

        events: List[NormalizedEvent] = []
        per_raw: List[Optional[NormalizedEvent]] = []
        organizers: Dict[tuple, NormalizedOrganizer] = {}
        seen_events = set()

        for raw in raw_data.events:
            event = self.normalize_event(raw, source, default_timezone, observed_at)
            per_raw.append(event)
            if event is None or event.key in seen_events:
                continue
            seen_events.add(event.key)
            events.append(event)

            organizer = self.normalize_organizer(raw.organizer, source, raw.scraped_at or observed_at)
            if organizer is not None and organizer.key not in organizers:
                organizers[organizer.key] = organizer

        venues: Dict[tuple, NormalizedVenue] = {}
        for raw_venue in raw_data.venues:
            venue = self.normalize_venue(raw_venue, source, observed_at)
            if venue is not None and venue.key not in venues:
                venues[venue.key] = venue

        skipped_reason = None
        if raw_data.skipped:
            skipped_reason = f"Target skipped by fallback '{raw_data.fallback_used}'"

        report = self.generate_quality_report(
            raw_data.events,
            per_raw,
            session_id=session_id,
            skipped=raw_data.skipped,
            skipped_reason=skipped_reason,
        )

        logger.info(
            f"[{raw_data.target_id}] Normalized {len(events)}/{len(raw_data.events)} events, "
            f"{len(venues)} venues, {len(organizers)} organizers "
            f"(quality {report.quality_score:.0%})"
        )
        return NormalizationResult(
            events=events,
            venues=list(venues.values()),
            organizers=list(organizers.values()),
            report=report,
        )

    # ============================================
    # Quality report
    # ============================================

    def generate_quality_report(
        self,
        raw_events: List["RawEventData"],
        normalized_events: List[Optional[NormalizedEvent]],
        session_id: str = "",
        skipped: bool = False,
        skipped_reason: Optional[str] = None,
    ) -> DataQualityReport:
        """
        Aggregate score (valid / total) plus a missing-field histogram.

        Recommendations are ranked by how many records they affect.
        """
        total = len(raw_events)
        valid = sum(1 for e in normalized_events if e is not None)
        invalid = total - valid

        missing: Dict[str, List["RawEventData"]] = {}
        for raw in raw_events:
            for field_name in self._missing_fields(raw):
                missing.setdefault(field_name, []).append(raw)

        duplicates = self._duplicates(raw_events)

        rejections: Dict[str, List["RawEventData"]] = {}
        for raw, normalized in zip(raw_events, normalized_events):
            if normalized is None:
                reason = self.rejection_reason(raw) or 'schema_validation'
                rejections.setdefault(reason, []).append(raw)

        issues = []
        for field_name, records in missing.items():
            issues.append(QualityIssue(
                type='missing_field',
                field=field_name,
                count=len(records),
                samples=self._samples(records),
            ))
        for reason, records in rejections.items():
            issues.append(QualityIssue(
                type='invalid_record',
                field=reason,
                count=len(records),
                samples=self._samples(records),
            ))
        if duplicates:
            issues.append(QualityIssue(
                type='duplicate',
                count=len(duplicates),
                samples=self._samples(duplicates),
            ))

        quality_score = round(valid / total, 4) if total else 0.0

        ranked: List[Tuple[int, str]] = [
            (len(records), RECOMMENDATIONS[field_name])
            for field_name, records in missing.items()
            if field_name in RECOMMENDATIONS
        ]
        if total and quality_score < self.config.min_quality_score:
            ranked.append((invalid, REJECTION_RECOMMENDATION))
        if duplicates:
            ranked.append((len(duplicates), DUPLICATE_RECOMMENDATION))
        ranked.sort(key=lambda item: item[0], reverse=True)

        return DataQualityReport(
            session_id=session_id,
            total_records=total,
            valid_records=valid,
            invalid_records=invalid,
            missing_fields={name: len(records) for name, records in missing.items()},
            duplicates=len(duplicates),
            quality_score=quality_score,
            issues=issues,
            recommendations=[text for _, text in ranked],
            skipped=skipped,
            skipped_reason=skipped_reason,
        )

    @staticmethod
    def _missing_fields(raw: "RawEventData") -> List[str]:
        missing = []
        if not clean_text(raw.title):
            missing.append('title')
        if not clean_text(raw.date_time.start):
            missing.append('start_time')
        if raw.venue is None or not clean_text(raw.venue.name):
            missing.append('venue')
        if not clean_text(raw.description):
            missing.append('description')
        pricing = raw.pricing
        if not pricing.price_text and pricing.is_free is None and pricing.min_price is None:
            missing.append('price')
        if not raw.images:
            missing.append('image')
        return missing

    @staticmethod
    def _duplicates(raw_events: List["RawEventData"]) -> List["RawEventData"]:
        """Exact duplicates by external id or by (title, start, venue)"""
        seen_ids = set()
        seen_content = set()
        duplicates = []
        for raw in raw_events:
            content = (
                (clean_text(raw.title) or '').lower(),
                clean_text(raw.date_time.start) or '',
                (clean_text(raw.venue.name) if raw.venue else None) or '',
            )
            if raw.external_id in seen_ids or (content[0] and content in seen_content):
                duplicates.append(raw)
            seen_ids.add(raw.external_id)
            seen_content.add(content)
        return duplicates

    def _samples(self, records: List["RawEventData"]) -> List[Dict[str, Any]]:
        return [
            {'external_id': r.external_id, 'title': r.title}
            for r in records[:self.config.sample_size]
        ]
