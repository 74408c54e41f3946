#!/usr/bin/env python3
"""
Chapter Events Reminder Dispatcher

One cycle for one member:
  1. load the member's associations and (in one batch) their events
  2. ask the evaluator which reminders are due
  3. for each: log the attempt, notify, and ONLY if that worked mark it sent

Per association the state machine is PENDING (sent=0) -> FIRED (sent=1), one
way. Delivery is at-least-once:
  - notify fails      -> not marked, same reminder is retried next cycle
  - mark-sent fails   -> member may get it again next cycle (accepted)

Cycles for the same member never overlap within a process, even when they
come from different dispatchers (the API's on-demand dispatch and the
scheduled job): a second concurrent call returns immediately with
skipped='busy'. Different members are independent. Across processes the
compare-and-set in mark_reminder_sent is the last line; a lost race is
counted as 'already_sent'.
"""

import logging
import os
import sqlite3
import threading
from datetime import datetime

import pytz

from database_setup import get_connection
from event_models import BackendUnavailable, OwnershipError, format_instant
from events_config import get_reminder_mode, get_timezone
from reminder_evaluator import PER_TRIGGER, due_reminders

logger = logging.getLogger(__name__)


# ── Reminder log helpers ──────────────────────────────────────

def _log_attempt(db_path, reminder):
    """Insert a pending row into reminder_log. Returns the new row id (or None)."""
    association = reminder.association
    try:
        conn = get_connection(db_path)
        try:
            cursor = conn.execute('''
                INSERT INTO reminder_log
                    (association_id, user_id, event_id, trigger_kind,
                     trigger_instant, status, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?)
            ''', (association.id, association.member_id, reminder.event.id,
                  reminder.trigger_kind, format_instant(reminder.trigger_instant),
                  format_instant(datetime.now(pytz.utc))))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()
    except sqlite3.Error as e:
        # The audit log is best effort; it must not block delivery
        logger.warning(f"[Reminders] Could not log attempt for {association.id}: {e}")
        return None


def _mark_log(db_path, log_id, status, message_id=None, error_message=None):
    if log_id is None:
        return
    sent_at = format_instant(datetime.now(pytz.utc)) if status == 'sent' else None
    try:
        conn = get_connection(db_path)
        try:
            conn.execute('''
                UPDATE reminder_log SET status = ?, message_id = ?, error_message = ?, sent_at = ?
                WHERE id = ?
            ''', (status, message_id, error_message, sent_at, log_id))
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.warning(f"[Reminders] Could not update reminder_log {log_id}: {e}")


# Members with a cycle in flight, shared by every dispatcher in the process
# (the API handler's and the scheduled job's), keyed by (database, member).
_running = set()
_running_guard = threading.Lock()


def _cycle_key(db_path, member_id):
    return os.path.abspath(db_path), member_id


def _claim_member(db_path, member_id):
    """Mark a member's cycle as running. False if one already is."""
    key = _cycle_key(db_path, member_id)
    with _running_guard:
        if key in _running:
            return False
        _running.add(key)
        return True


def _release_member(db_path, member_id):
    with _running_guard:
        _running.discard(_cycle_key(db_path, member_id))


class ReminderDispatcher:
    def __init__(self, schedule, catalog, notifier, tz=None, mode=None):
        self.schedule = schedule
        self.catalog = catalog
        self.notifier = notifier
        self.tz = tz or get_timezone()
        self.mode = mode or get_reminder_mode()

    def _now(self, now):
        if now is None:
            return datetime.now(pytz.utc)
        if now.tzinfo is None:
            return self.tz.localize(now)
        return now

    # ── Queries ───────────────────────────────────────────────

    def pending_reminders(self, member_id, now=None):
        """Reminders due for a member right now, soonest trigger first.
        Read-only: drives the in-app banner. Raises BackendUnavailable."""
        now = self._now(now)
        associations = self.schedule.list_associations(member_id)
        candidates = [a for a in associations if a.reminder_enabled]
        if not candidates:
            return []
        events = self.catalog.get_events_by_ids(a.event_id for a in candidates)
        due = due_reminders(now, candidates, events, tz=self.tz, mode=self.mode)
        due.sort(key=lambda r: r.trigger_instant)
        return due

    # ── Dispatch ──────────────────────────────────────────────

    def _notify(self, reminder):
        try:
            return self.notifier.notify(reminder)
        except Exception as e:
            logger.exception(f"[Reminders] Notifier raised for association {reminder.association.id}")
            return False, None, str(e)

    def run_cycle(self, member_id, now=None):
        """Evaluate and deliver a member's due reminders.

        Returns counts: {'due', 'sent', 'failed', 'mark_failed', 'already_sent'}.
        """
        db_path = self.schedule.db_path
        if not _claim_member(db_path, member_id):
            logger.info(f"[Reminders] Cycle already running for {member_id}, skipping")
            return {'skipped': 'busy'}

        try:
            results = {'due': 0, 'sent': 0, 'failed': 0, 'mark_failed': 0, 'already_sent': 0}
            due = self.pending_reminders(member_id, now)
            results['due'] = len(due)

            for reminder in due:
                association = reminder.association
                log_id = _log_attempt(db_path, reminder)

                ok, message_id, error = self._notify(reminder)
                if not ok:
                    # Stays PENDING; the next cycle retries it
                    _mark_log(db_path, log_id, 'failed', error_message=error)
                    logger.warning(f"[Reminders] Delivery failed for {association.id} "
                                   f"({reminder.event.name}): {error}")
                    results['failed'] += 1
                    continue

                _mark_log(db_path, log_id, 'sent', message_id=message_id)
                try:
                    marked = self.schedule.mark_reminder_sent(
                        association.id, member_id,
                        trigger_kind=reminder.trigger_kind,
                        per_kind=self.mode == PER_TRIGGER,
                    )
                except (BackendUnavailable, LookupError) as e:
                    # Delivered but not recorded: may be delivered again next cycle
                    logger.error(f"[Reminders] Sent reminder for {association.id} but could not "
                                 f"mark it sent: {e}")
                    results['mark_failed'] += 1
                    continue
                if not marked:
                    # Another process recorded it between our read and our send
                    logger.warning(f"[Reminders] {reminder.trigger_kind} reminder for {association.id} "
                                   f"was already marked sent by another cycle")
                    results['already_sent'] += 1
                    continue
                results['sent'] += 1
                logger.info(f"[Reminders] {reminder.trigger_kind} reminder sent to {member_id} "
                            f"for {reminder.event.name}")
            return results
        finally:
            _release_member(db_path, member_id)

    def run_all(self, now=None):
        """One cycle for every member with reminders enabled."""
        now = self._now(now)
        totals = {'members': 0, 'due': 0, 'sent': 0, 'failed': 0, 'mark_failed': 0,
                  'already_sent': 0, 'errors': 0}
        for member_id in self.schedule.list_member_ids():
            totals['members'] += 1
            try:
                results = self.run_cycle(member_id, now)
            except (BackendUnavailable, OwnershipError) as e:
                logger.error(f"[Reminders] Cycle failed for {member_id}: {e}")
                totals['errors'] += 1
                continue
            for key in ('due', 'sent', 'failed', 'mark_failed', 'already_sent'):
                totals[key] += results.get(key, 0)
        return totals
