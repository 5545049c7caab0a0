"""
JSON File Sink

RecordStore that keeps canonical records keyed on (external_id, source)
and rewrites a single JSON file after each upsert.
"""

import json
import time
import logging
import threading
from pathlib import Path
from typing import Dict, Any, Optional, Sequence, List

from standardization.schema import (
    DataQualityReport,
    NormalizedEvent,
    NormalizedOrganizer,
    NormalizedVenue,
)

logger = logging.getLogger(__name__)


class JsonFileSink:
    """Upserting JSON exporter"""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.events: Dict[tuple, Dict[str, Any]] = {}
        self.venues: Dict[tuple, Dict[str, Any]] = {}
        self.organizers: Dict[tuple, Dict[str, Any]] = {}
        self.runs: List[Dict[str, Any]] = []
        self._load()

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load existing export {self.path}: {e}")
            return
        for name in ('events', 'venues', 'organizers'):
            bucket = getattr(self, name)
            for record in data.get(name, []):
                bucket[(record['external_id'], record['source'])] = record
        self.runs = data.get('runs', [])

    def _upsert(self, bucket: Dict[tuple, Dict[str, Any]], records: Sequence) -> int:
        with self._lock:
            for record in records:
                bucket[record.key] = record.model_dump(mode='json')
            self._write()
        return len(records)

    def upsert_events(self, events: Sequence[NormalizedEvent]) -> int:
        return self._upsert(self.events, events)

    def upsert_venues(self, venues: Sequence[NormalizedVenue]) -> int:
        return self._upsert(self.venues, venues)

    def upsert_organizers(self, organizers: Sequence[NormalizedOrganizer]) -> int:
        return self._upsert(self.organizers, organizers)

    def record_run(self, session: Dict[str, Any], report: Optional[DataQualityReport], saved: int):
        with self._lock:
            self.runs.append({
                'session': session,
                'quality_report': report.model_dump(mode='json') if report else None,
                'events_saved': saved,
            })
            self._write()

    def _write(self):
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump({
                'exported_at': time.time(),
                'event_count': len(self.events),
                'events': list(self.events.values()),
                'venues': list(self.venues.values()),
                'organizers': list(self.organizers.values()),
                'runs': self.runs,
            }, f, ensure_ascii=False, indent=2)
        tmp_path.replace(self.path)
