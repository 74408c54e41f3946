#!/usr/bin/env python3
"""
Chapter Events Catalog
Read access to the central event catalog (fbla_events) that every member sees,
plus the maintainer-side upsert used by the seed script.

Listing degrades to an empty list when the store is unavailable (the UI can
show "no events" and retry); single-event lookups raise BackendUnavailable so
callers that need a definite answer can tell "missing" from "unknown".
"""

import logging
import sqlite3
import uuid
from datetime import datetime

import pytz

from database_setup import ChapterEventsDatabase, get_connection
from event_models import (
    EVENT_CATEGORIES, EVENT_DIVISIONS, EVENT_STATUSES, LOCATION_TYPES,
    COMPETITION_LEVELS, BackendUnavailable, InvalidRecord,
    event_from_row, format_instant, parse_instant,
)
from events_config import get_timezone

logger = logging.getLogger(__name__)

# SQLite caps bound parameters; keep IN (...) lists comfortably below it
_ID_BATCH_SIZE = 500


class EventCatalog:
    def __init__(self, db_path='chapter_events.db', tz=None):
        self.db_path = db_path
        self.tz = tz or get_timezone()
        ChapterEventsDatabase(db_path).create_tables()

    # ── Helpers ───────────────────────────────────────────────

    def _get_conn(self):
        return get_connection(self.db_path)

    def _rows_to_events(self, rows):
        events = []
        for row in rows:
            try:
                events.append(event_from_row(row, self.tz))
            except InvalidRecord as e:
                logger.warning(f"[Catalog] Skipping invalid event row {row['id']}: {e}")
        return events

    def _bound(self, value, name):
        if value is None:
            return None
        instant = parse_instant(value, self.tz)
        if instant is None:
            raise ValueError(f'Invalid {name}: {value!r}')
        return format_instant(instant)

    # ── Queries ───────────────────────────────────────────────

    def list_events(self, category=None, division=None, status=None,
                    start_from=None, start_to=None):
        """All catalog events matching every supplied filter, by start date.

        start_from / start_to bound the start date (inclusive). Returns [] if
        the store cannot be read.
        """
        if category is not None and category not in EVENT_CATEGORIES:
            raise ValueError(f'Unknown event category: {category!r}')
        if division is not None and division not in EVENT_DIVISIONS:
            raise ValueError(f'Unknown event division: {division!r}')
        if status is not None and status not in EVENT_STATUSES:
            raise ValueError(f'Unknown event status: {status!r}')

        where = []
        params = []
        if category:
            where.append('event_category = ?')
            params.append(category)
        if division:
            where.append('event_division = ?')
            params.append(division)
        if status:
            where.append('status = ?')
            params.append(status)
        lower = self._bound(start_from, 'start_from')
        if lower:
            where.append('start_date >= ?')
            params.append(lower)
        upper = self._bound(start_to, 'start_to')
        if upper:
            where.append('start_date <= ?')
            params.append(upper)

        sql = 'SELECT * FROM fbla_events'
        if where:
            sql += ' WHERE ' + ' AND '.join(where)
        sql += ' ORDER BY start_date ASC'

        try:
            conn = self._get_conn()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Catalog] Error listing events: {e}")
            return []

        events = self._rows_to_events(rows)
        # Stored instants are UTC text, but sort on the parsed value anyway
        events.sort(key=lambda ev: ev.start_date)
        return events

    def get_events_by_date_range(self, start, end):
        """Calendar view: events starting within [start, end]."""
        return self.list_events(start_from=start, start_to=end)

    def get_event(self, event_id):
        """Single event or None. Raises BackendUnavailable on store errors."""
        try:
            conn = self._get_conn()
            try:
                row = conn.execute('SELECT * FROM fbla_events WHERE id = ?', (event_id,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Catalog] Error fetching event {event_id}: {e}")
            raise BackendUnavailable(f'Could not load event {event_id}') from e

        if not row:
            return None
        try:
            return event_from_row(row, self.tz)
        except InvalidRecord as e:
            logger.warning(f"[Catalog] Event {event_id} failed validation: {e}")
            return None

    def get_events_by_ids(self, event_ids):
        """Batched lookup: {event_id: Event} for the ids that exist."""
        ids = list(dict.fromkeys(event_ids))
        events = {}
        if not ids:
            return events
        try:
            conn = self._get_conn()
            try:
                for i in range(0, len(ids), _ID_BATCH_SIZE):
                    batch = ids[i:i + _ID_BATCH_SIZE]
                    placeholders = ','.join('?' for _ in batch)
                    rows = conn.execute(
                        f'SELECT * FROM fbla_events WHERE id IN ({placeholders})', batch
                    ).fetchall()
                    for event in self._rows_to_events(rows):
                        events[event.id] = event
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Catalog] Error loading {len(ids)} events: {e}")
            raise BackendUnavailable('Could not load events') from e
        return events

    # ── Maintainer writes ─────────────────────────────────────

    def upsert_event(self, data):
        """Insert or update one catalog event from a dict of column values.

        Validation happens before anything is written; the stored row is
        returned as an Event.
        """
        now = format_instant(datetime.now(pytz.utc))
        event_id = data.get('id') or str(uuid.uuid4())

        name = (data.get('name') or '').strip()
        if not name:
            raise InvalidRecord('Event name is required')
        category = data.get('event_category') or data.get('category')
        if category not in EVENT_CATEGORIES:
            raise InvalidRecord(f'Invalid event_category: {category!r}')
        division = data.get('event_division') or data.get('division')
        if division is not None and division not in EVENT_DIVISIONS:
            raise InvalidRecord(f'Invalid event_division: {division!r}')
        status = data.get('status') or 'upcoming'
        if status not in EVENT_STATUSES:
            raise InvalidRecord(f'Invalid status: {status!r}')
        location_type = data.get('location_type') or 'physical'
        if location_type not in LOCATION_TYPES:
            raise InvalidRecord(f'Invalid location_type: {location_type!r}')
        level = data.get('competition_level')
        if level is not None and level not in COMPETITION_LEVELS:
            raise InvalidRecord(f'Invalid competition_level: {level!r}')

        start = parse_instant(data.get('start_date'), self.tz)
        if start is None:
            raise InvalidRecord('Event start_date is required')
        end = parse_instant(data.get('end_date'), self.tz)
        if end is not None and end < start:
            raise InvalidRecord('End date must be on or after start date')
        deadline = parse_instant(data.get('registration_deadline'), self.tz)

        values = (
            name, category, division, data.get('description'),
            format_instant(start), format_instant(end), format_instant(deadline),
            data.get('location'), location_type, data.get('virtual_link'),
            data.get('competition_category'), level, status,
        )

        try:
            conn = self._get_conn()
            try:
                existing = conn.execute('SELECT id FROM fbla_events WHERE id = ?', (event_id,)).fetchone()
                if existing:
                    conn.execute('''
                        UPDATE fbla_events SET
                            name = ?, event_category = ?, event_division = ?, description = ?,
                            start_date = ?, end_date = ?, registration_deadline = ?,
                            location = ?, location_type = ?, virtual_link = ?,
                            competition_category = ?, competition_level = ?, status = ?,
                            updated_at = ?
                        WHERE id = ?
                    ''', values + (now, event_id))
                else:
                    conn.execute('''
                        INSERT INTO fbla_events (
                            name, event_category, event_division, description,
                            start_date, end_date, registration_deadline,
                            location, location_type, virtual_link,
                            competition_category, competition_level, status,
                            created_at, updated_at, id
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', values + (now, now, event_id))
                conn.commit()
                row = conn.execute('SELECT * FROM fbla_events WHERE id = ?', (event_id,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Catalog] Error saving event {name!r}: {e}")
            raise BackendUnavailable(f'Could not save event {name!r}') from e

        logger.info(f"[Catalog] {'Updated' if existing else 'Added'} event {name!r} ({event_id})")
        return event_from_row(row, self.tz)
