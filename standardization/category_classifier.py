"""
Event Category Classifier

Maps free-form source categories and tags onto EventCategory through an
ordered keyword table. The first keyword that matches (on a word
boundary) wins; raw categories are checked before tags.
"""

import re
from typing import Optional, List, Iterable, Tuple, Dict

from .schema import EventCategory

# Ordered: earlier entries win
CATEGORY_KEYWORDS: List[Tuple[str, EventCategory]] = [
    # Music
    ('music', EventCategory.MUSIC),
    ('concert', EventCategory.MUSIC),
    ('live music', EventCategory.MUSIC),
    ('band', EventCategory.MUSIC),
    ('dj', EventCategory.MUSIC),
    ('festival', EventCategory.MUSIC),
    ('classical', EventCategory.MUSIC),
    ('jazz', EventCategory.MUSIC),
    ('rock', EventCategory.MUSIC),
    ('pop', EventCategory.MUSIC),
    ('electronic', EventCategory.MUSIC),
    # Arts & culture
    ('art', EventCategory.ARTS),
    ('arts', EventCategory.ARTS),
    ('theater', EventCategory.ARTS),
    ('theatre', EventCategory.ARTS),
    ('exhibition', EventCategory.ARTS),
    ('gallery', EventCategory.ARTS),
    ('museum', EventCategory.ARTS),
    ('dance', EventCategory.ARTS),
    ('opera', EventCategory.ARTS),
    ('comedy', EventCategory.ARTS),
    ('standup', EventCategory.ARTS),
    # Food & drink
    ('food', EventCategory.FOOD),
    ('dining', EventCategory.FOOD),
    ('restaurant', EventCategory.FOOD),
    ('bar', EventCategory.FOOD),
    ('wine', EventCategory.FOOD),
    ('beer', EventCategory.FOOD),
    ('cocktail', EventCategory.FOOD),
    ('tasting', EventCategory.FOOD),
    ('culinary', EventCategory.FOOD),
    # Sports & recreation
    ('sports', EventCategory.SPORTS),
    ('fitness', EventCategory.SPORTS),
    ('recreation', EventCategory.SPORTS),
    ('outdoor', EventCategory.SPORTS),
    ('hiking', EventCategory.SPORTS),
    ('cycling', EventCategory.SPORTS),
    ('running', EventCategory.SPORTS),
    ('yoga', EventCategory.SPORTS),
    # Business & networking
    ('business', EventCategory.BUSINESS),
    ('networking', EventCategory.BUSINESS),
    ('conference', EventCategory.BUSINESS),
    ('seminar', EventCategory.BUSINESS),
    ('workshop', EventCategory.BUSINESS),
    ('meetup', EventCategory.BUSINESS),
    ('professional', EventCategory.BUSINESS),
    # Education
    ('education', EventCategory.EDUCATION),
    ('learning', EventCategory.EDUCATION),
    ('class', EventCategory.EDUCATION),
    ('course', EventCategory.EDUCATION),
    ('lecture', EventCategory.EDUCATION),
    ('training', EventCategory.EDUCATION),
    # Technology
    ('tech', EventCategory.TECHNOLOGY),
    ('technology', EventCategory.TECHNOLOGY),
    ('programming', EventCategory.TECHNOLOGY),
    ('startup', EventCategory.TECHNOLOGY),
    ('innovation', EventCategory.TECHNOLOGY),
    # Family & kids
    ('family', EventCategory.FAMILY),
    ('kids', EventCategory.FAMILY),
    ('children', EventCategory.FAMILY),
    ('parenting', EventCategory.FAMILY),
    # Health & wellness
    ('health', EventCategory.HEALTH),
    ('wellness', EventCategory.HEALTH),
    ('medical', EventCategory.HEALTH),
    ('mental health', EventCategory.HEALTH),
    # Social & community
    ('social', EventCategory.SOCIAL),
    ('community', EventCategory.SOCIAL),
    ('volunteer', EventCategory.SOCIAL),
    ('charity', EventCategory.SOCIAL),
    ('fundraiser', EventCategory.SOCIAL),
]


class CategoryClassifier:
    """
    Keyword classifier over raw categories and tags.

    Usage:
        classifier = CategoryClassifier()
        classifier.classify(["Live Music", "Jazz"], ["downtown"])  # EventCategory.MUSIC
    """

    def __init__(self, keywords: Optional[List[Tuple[str, EventCategory]]] = None):
        self.keywords = keywords or CATEGORY_KEYWORDS
        self._patterns = [
            (re.compile(rf'\b{re.escape(keyword)}\b', re.IGNORECASE), category)
            for keyword, category in self.keywords
        ]
        self.stats: Dict[str, int] = {'classified': 0, 'defaulted': 0}

    def match(self, text: str) -> Optional[EventCategory]:
        for pattern, category in self._patterns:
            if pattern.search(text):
                return category
        return None

    def classify(self, categories: Iterable[str], tags: Iterable[str] = ()) -> EventCategory:
        for text in list(categories or []) + list(tags or []):
            if not text:
                continue
            # Direct canonical names ("Music", "Technology") map to themselves
            for category in EventCategory:
                if text.strip().lower() == category.value.lower():
                    self.stats['classified'] += 1
                    return category
            category = self.match(text)
            if category is not None:
                self.stats['classified'] += 1
                return category

        self.stats['defaulted'] += 1
        return EventCategory.OTHER

    @staticmethod
    def subcategory(categories: List[str]) -> Optional[str]:
        """Second raw category, capitalized"""
        if not categories or len(categories) < 2 or not categories[1].strip():
            return None
        value = categories[1].strip()
        return value[0].upper() + value[1:]


def classify_event(categories: Iterable[str], tags: Iterable[str] = ()) -> EventCategory:
    """Convenience function using a default classifier"""
    return CategoryClassifier().classify(categories, tags)
