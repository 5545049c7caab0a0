"""
Record Store

Persistence contract for canonical records plus the SQLite reference
implementation. Every upsert is idempotent on (external_id, source).
"""

import json
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional, List, Dict, Any, Sequence, Protocol
from contextlib import contextmanager

from standardization.schema import (
    DataQualityReport,
    NormalizedEvent,
    NormalizedOrganizer,
    NormalizedVenue,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("./data/events.db")
SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class RecordStore(Protocol):
    """What the orchestrator needs from persistence"""

    def upsert_events(self, events: Sequence[NormalizedEvent]) -> int: ...

    def upsert_venues(self, venues: Sequence[NormalizedVenue]) -> int: ...

    def upsert_organizers(self, organizers: Sequence[NormalizedOrganizer]) -> int: ...

    def record_run(self, session: Dict[str, Any], report: Optional[DataQualityReport], saved: int) -> None: ...


class SQLiteRecordStore:
    """
    SQLite store with upsert semantics.

    Calls may arrive from worker threads; one lock serialises them on
    the shared connection.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA journal_mode = WAL")
            self.init_schema()
        return self._connection

    def close(self):
        if self._connection:
            self._connection.close()
            self._connection = None

    @contextmanager
    def transaction(self):
        """Context manager for transactions."""
        with self._lock:
            conn = self.connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def init_schema(self):
        """Initialize database schema from SQL file."""
        with open(SCHEMA_PATH, 'r', encoding='utf-8') as f:
            schema_sql = f.read()
        self._connection.executescript(schema_sql)
        self._connection.commit()
        logger.info(f"Database schema initialized: {self.db_path}")

    def upsert_events(self, events: Sequence[NormalizedEvent]) -> int:
        rows = [
            (
                e.id, e.external_id, e.source, e.title, e.start_time.isoformat(),
                e.category.value, e.venue_id, e.organizer_id,
                e.model_dump_json(), e.last_updated.isoformat(),
            )
            for e in events
        ]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO events (id, external_id, source, title, start_time,
                                    category, venue_id, organizer_id, payload, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_id, source) DO UPDATE SET
                    title = excluded.title,
                    start_time = excluded.start_time,
                    category = excluded.category,
                    venue_id = excluded.venue_id,
                    organizer_id = excluded.organizer_id,
                    payload = excluded.payload,
                    last_updated = excluded.last_updated
                """,
                rows,
            )
        logger.debug(f"Upserted {len(rows)} events")
        return len(rows)

    def upsert_venues(self, venues: Sequence[NormalizedVenue]) -> int:
        rows = [
            (v.id, v.external_id, v.source, v.name, v.city, v.model_dump_json(), v.last_updated.isoformat())
            for v in venues
        ]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO venues (id, external_id, source, name, city, payload, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_id, source) DO UPDATE SET
                    name = excluded.name,
                    city = excluded.city,
                    payload = excluded.payload,
                    last_updated = excluded.last_updated
                """,
                rows,
            )
        return len(rows)

    def upsert_organizers(self, organizers: Sequence[NormalizedOrganizer]) -> int:
        rows = [
            (o.id, o.external_id, o.source, o.name, o.model_dump_json(), o.last_updated.isoformat())
            for o in organizers
        ]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO organizers (id, external_id, source, name, payload, last_updated)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_id, source) DO UPDATE SET
                    name = excluded.name,
                    payload = excluded.payload,
                    last_updated = excluded.last_updated
                """,
                rows,
            )
        return len(rows)

    def record_run(self, session: Dict[str, Any], report: Optional[DataQualityReport], saved: int):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO scrape_runs
                    (session_id, job_id, target_id, source, status, events_found, events_saved,
                     quality_score, skipped, fallback_used, errors, started_at, finished_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session['id'], session['job_id'], session['target_id'], session['source'],
                    session['status'], session['progress']['events_found'], saved,
                    report.quality_score if report else None,
                    int(session['skipped']), session['fallback_used'],
                    json.dumps(session['errors']), session['started_at'], session['finished_at'],
                ),
            )

    def fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connect().execute(query, params).fetchall()

    def get_table_counts(self) -> Dict[str, int]:
        counts = {}
        for table in ('events', 'venues', 'organizers', 'scrape_runs'):
            rows = self.fetchall(f"SELECT COUNT(*) AS cnt FROM {table}")
            counts[table] = rows[0]['cnt'] if rows else 0
        return counts
