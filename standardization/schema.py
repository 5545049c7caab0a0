"""
Canonical Record Schema

The only record types handed to persistence. Raw records never leave
the normalizer; everything here is validated, typed and keyed on
(external_id, source) for idempotent upserts.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventCategory(str, Enum):
    MUSIC = "Music"
    ARTS = "Arts"
    FOOD = "Food"
    SPORTS = "Sports"
    BUSINESS = "Business"
    EDUCATION = "Education"
    TECHNOLOGY = "Technology"
    FAMILY = "Family"
    HEALTH = "Health"
    SOCIAL = "Social"
    OTHER = "Other"


class EventStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"


# ============================================
# Canonical records
# ============================================

class NormalizedEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    external_id: str
    source: str

    title: str
    description: Optional[str] = None

    start_time: datetime  # UTC
    end_time: Optional[datetime] = None  # UTC
    timezone: str  # IANA name the source times were declared in
    all_day: bool = False

    venue_id: Optional[str] = None
    venue_name: Optional[str] = None
    organizer_id: Optional[str] = None

    category: EventCategory = EventCategory.OTHER
    subcategory: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    is_free: bool = False
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    price_currency: Optional[str] = None

    event_url: Optional[str] = None
    ticket_url: Optional[str] = None
    image_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    status: EventStatus = EventStatus.ACTIVE
    age_restriction: Optional[int] = None
    capacity: Optional[int] = None

    last_updated: datetime

    @field_validator('price_max')
    @classmethod
    def _max_not_below_min(cls, value, info):
        price_min = info.data.get('price_min')
        if value is not None and price_min is not None and value < price_min:
            raise ValueError("price_max below price_min")
        return value

    @property
    def key(self) -> tuple:
        return (self.external_id, self.source)


class NormalizedVenue(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    external_id: str
    source: str

    name: str
    address: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    venue_type: str = "other"
    capacity: Optional[int] = None
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    last_updated: datetime

    @property
    def key(self) -> tuple:
        return (self.external_id, self.source)


class NormalizedOrganizer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    external_id: str
    source: str

    name: str
    description: Optional[str] = None
    website: Optional[str] = None
    logo_url: Optional[str] = None

    last_updated: datetime

    @property
    def key(self) -> tuple:
        return (self.external_id, self.source)


# ============================================
# Quality reporting
# ============================================

class QualityIssue(BaseModel):
    type: str  # missing_field | invalid_record | duplicate
    field: Optional[str] = None
    count: int
    samples: List[Dict[str, Any]] = Field(default_factory=list)


class DataQualityReport(BaseModel):
    session_id: str = ""
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    missing_fields: Dict[str, int] = Field(default_factory=dict)
    duplicates: int = 0
    quality_score: float = 0.0  # valid / total, 0.0 for an empty batch
    issues: List[QualityIssue] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    skipped: bool = False
    skipped_reason: Optional[str] = None


class NormalizationResult(BaseModel):
    events: List[NormalizedEvent] = Field(default_factory=list)
    venues: List[NormalizedVenue] = Field(default_factory=list)
    organizers: List[NormalizedOrganizer] = Field(default_factory=list)
    report: DataQualityReport = Field(default_factory=DataQualityReport)
