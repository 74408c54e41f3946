#!/usr/bin/env python3
"""
Chapter Events Schedule Manager
Per-member "My Events": which catalog events a member has added to their
schedule, and the reminder preferences attached to each one.

Every call takes the member id explicitly and every statement is scoped by
it, so one member can never read or change another member's rows.
"""

import logging
import sqlite3
import uuid
from datetime import datetime

import pytz

from database_setup import ChapterEventsDatabase, get_connection
from event_catalog import EventCatalog
from event_models import (
    TRIGGER_KINDS, AssociationNotFound, BackendUnavailable, EventNotFound, anchor_kind,
    InvalidRecord, OwnershipError, association_from_row, format_instant,
)
from events_config import DEFAULT_REMINDER_DAYS_BEFORE, get_timezone

logger = logging.getLogger(__name__)


def _validate_days(value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f'reminder_days_before must be a whole number of days, got {value!r}')
    if value < 0:
        raise ValueError('reminder_days_before cannot be negative')
    return value


class ScheduleManager:
    def __init__(self, db_path='chapter_events.db', catalog=None, tz=None):
        self.db_path = db_path
        self.tz = tz or get_timezone()
        ChapterEventsDatabase(db_path).create_tables()
        self.catalog = catalog or EventCatalog(db_path, tz=self.tz)

    # ── Helpers ───────────────────────────────────────────────

    def _get_conn(self):
        return get_connection(self.db_path)

    def _fetch_association(self, conn, member_id, event_id):
        row = conn.execute(
            'SELECT * FROM user_event_associations WHERE user_id = ? AND event_id = ?',
            (member_id, event_id)
        ).fetchone()
        return association_from_row(row, self.tz) if row else None

    # ── Reads ─────────────────────────────────────────────────

    def list_associations(self, member_id):
        """All of a member's associations, oldest first."""
        try:
            conn = self._get_conn()
            try:
                rows = conn.execute('''
                    SELECT * FROM user_event_associations
                    WHERE user_id = ?
                    ORDER BY added_at ASC
                ''', (member_id,)).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Schedule] Error listing associations for {member_id}: {e}")
            raise BackendUnavailable('Could not load schedule') from e

        associations = []
        for row in rows:
            try:
                associations.append(association_from_row(row, self.tz))
            except InvalidRecord as e:
                logger.warning(f"[Schedule] Skipping invalid association {row['id']}: {e}")
        return associations

    def get_user_events(self, member_id):
        """My Events: the catalog events a member has added, by start date.
        Returns [] if anything cannot be loaded."""
        try:
            associations = self.list_associations(member_id)
            if not associations:
                return []
            events = self.catalog.get_events_by_ids(a.event_id for a in associations)
        except BackendUnavailable:
            return []
        return sorted(events.values(), key=lambda ev: ev.start_date)

    def get_events_with_association_status(self, member_id, **filters):
        """Catalog listing annotated with the member's schedule state."""
        events = self.catalog.list_events(**filters)
        try:
            by_event = {a.event_id: a for a in self.list_associations(member_id)}
        except BackendUnavailable:
            # Still show the catalog, just without "added" badges
            by_event = {}

        results = []
        for event in events:
            association = by_event.get(event.id)
            data = event.to_dict()
            data['is_added_to_my_events'] = association is not None
            data['association_id'] = association.id if association else None
            data['reminder_enabled'] = association.reminder_enabled if association else False
            results.append(data)
        return results

    def list_member_ids(self):
        """Members with at least one reminder-enabled association."""
        try:
            conn = self._get_conn()
            try:
                rows = conn.execute('''
                    SELECT DISTINCT user_id FROM user_event_associations
                    WHERE reminder_enabled = 1
                    ORDER BY user_id
                ''').fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Schedule] Error listing members: {e}")
            raise BackendUnavailable('Could not list members') from e
        return [row['user_id'] for row in rows]

    # ── Writes ────────────────────────────────────────────────

    def add_association(self, member_id, event_id, reminder_enabled=True,
                        reminder_days_before=DEFAULT_REMINDER_DAYS_BEFORE):
        """Add an event to a member's schedule.

        Adding an event that is already on the schedule is a no-op: the
        existing association is returned with its existing settings.
        """
        _validate_days(reminder_days_before)
        if not member_id:
            raise ValueError('member_id is required')

        association_id = str(uuid.uuid4())
        now = format_instant(datetime.now(pytz.utc))

        try:
            conn = self._get_conn()
            try:
                if not conn.execute('SELECT id FROM fbla_events WHERE id = ?', (event_id,)).fetchone():
                    raise EventNotFound(f'Event {event_id} does not exist')
                try:
                    conn.execute('''
                        INSERT INTO user_event_associations (
                            id, user_id, event_id, reminder_enabled,
                            reminder_days_before, reminder_sent, reminder_sent_kinds, added_at
                        ) VALUES (?, ?, ?, ?, ?, 0, '', ?)
                    ''', (association_id, member_id, event_id,
                          1 if reminder_enabled else 0, reminder_days_before, now))
                    conn.commit()
                    created = True
                except sqlite3.IntegrityError as e:
                    conn.rollback()
                    if 'UNIQUE' not in str(e).upper():
                        raise EventNotFound(f'Event {event_id} does not exist') from e
                    created = False
                association = self._fetch_association(conn, member_id, event_id)
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Schedule] Error adding event {event_id} for {member_id}: {e}")
            raise BackendUnavailable('Could not add event to schedule') from e

        if created:
            logger.info(f"[Schedule] {member_id} added event {event_id}")
        else:
            logger.info(f"[Schedule] Event {event_id} already in schedule for {member_id}")
        return association

    def remove_association(self, member_id, event_id):
        """Remove an event from a member's schedule. Absent is fine.
        Returns True if a row was deleted."""
        try:
            conn = self._get_conn()
            try:
                cursor = conn.execute(
                    'DELETE FROM user_event_associations WHERE user_id = ? AND event_id = ?',
                    (member_id, event_id)
                )
                conn.commit()
                removed = cursor.rowcount > 0
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Schedule] Error removing event {event_id} for {member_id}: {e}")
            raise BackendUnavailable('Could not remove event from schedule') from e

        if removed:
            logger.info(f"[Schedule] {member_id} removed event {event_id}")
        return removed

    def update_reminder_settings(self, member_id, event_id, enabled=None, reminder_days_before=None):
        """Partial update of reminder preferences; only supplied fields change.
        Returns True if the member has this event on their schedule."""
        sets = []
        vals = []
        if enabled is not None:
            sets.append('reminder_enabled = ?')
            vals.append(1 if enabled else 0)
        if reminder_days_before is not None:
            sets.append('reminder_days_before = ?')
            vals.append(_validate_days(reminder_days_before))
        if not sets:
            raise ValueError('No fields to update')

        vals.extend([member_id, event_id])
        try:
            conn = self._get_conn()
            try:
                cursor = conn.execute(
                    f"UPDATE user_event_associations SET {', '.join(sets)} WHERE user_id = ? AND event_id = ?",
                    vals
                )
                conn.commit()
                matched = cursor.rowcount > 0
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Schedule] Error updating reminder for {member_id}/{event_id}: {e}")
            raise BackendUnavailable('Could not update reminder settings') from e
        return matched

    def mark_reminder_sent(self, association_id, member_id, trigger_kind=None, per_kind=False):
        """Record that a reminder fired for this association.

        Compare-and-set: only the PENDING -> FIRED transition writes. Returns
        True when this call made the transition, False if it had already
        happened (another cycle won the race). trigger_kind, when given, is
        added to reminder_sent_kinds in either mode; with per_kind=True the
        transition is tracked per kind ('per_trigger' reminder mode). Raises
        OwnershipError if the row belongs to another member and
        AssociationNotFound if it does not exist.
        """
        if trigger_kind is not None and trigger_kind not in TRIGGER_KINDS:
            raise ValueError(f'Unknown trigger kind: {trigger_kind!r}')
        if per_kind and trigger_kind is None:
            raise ValueError('per_kind marking needs a trigger_kind')

        try:
            conn = self._get_conn()
            try:
                if not per_kind:
                    cursor = conn.execute('''
                        UPDATE user_event_associations
                        SET reminder_sent = 1,
                            reminder_sent_kinds = CASE
                                WHEN ? IS NULL THEN reminder_sent_kinds
                                WHEN COALESCE(reminder_sent_kinds, '') = '' THEN ?
                                ELSE reminder_sent_kinds || ',' || ?
                            END
                        WHERE id = ? AND user_id = ? AND reminder_sent = 0
                    ''', (trigger_kind, trigger_kind, trigger_kind, association_id, member_id))
                    changed = cursor.rowcount > 0
                else:
                    conn.execute('BEGIN IMMEDIATE')
                    row = conn.execute('''
                        SELECT a.reminder_sent, a.reminder_sent_kinds, e.registration_deadline
                        FROM user_event_associations a
                        LEFT JOIN fbla_events e ON e.id = a.event_id
                        WHERE a.id = ? AND a.user_id = ?
                    ''', (association_id, member_id)).fetchone()
                    changed = False
                    if row:
                        kinds = set(k for k in (row['reminder_sent_kinds'] or '').split(',') if k)
                        if row['reminder_sent'] and not kinds:
                            # Fired in 'single' mode before kinds were recorded
                            kinds.add(anchor_kind(row['registration_deadline']))
                        if trigger_kind not in kinds:
                            kinds.add(trigger_kind)
                            conn.execute('''
                                UPDATE user_event_associations
                                SET reminder_sent = 1, reminder_sent_kinds = ?
                                WHERE id = ? AND user_id = ?
                            ''', (','.join(sorted(kinds)), association_id, member_id))
                            changed = True
                conn.commit()

                if not changed:
                    owner = conn.execute(
                        'SELECT user_id FROM user_event_associations WHERE id = ?',
                        (association_id,)
                    ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"[Schedule] Error marking reminder sent for {association_id}: {e}")
            raise BackendUnavailable('Could not record reminder as sent') from e

        if changed:
            return True
        if owner is None:
            raise AssociationNotFound(f'Association {association_id} does not exist')
        if owner['user_id'] != member_id:
            logger.error(f"[Schedule] {member_id} tried to mark association {association_id} owned by another member")
            raise OwnershipError(f'Association {association_id} does not belong to {member_id}')
        return False
