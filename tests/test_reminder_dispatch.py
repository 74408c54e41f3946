#!/usr/bin/env python3
"""
Tests for the reminder cycle:
  - ReminderDispatcher.run_cycle / run_all (at-least-once delivery)
  - SendGridNotifier (TEST MODE, missing contacts, email content)
  - reminder_processor.process_event_reminders (scheduled job entry point)

Uses a temporary SQLite database and fake notifiers; SendGrid is mocked.
"""

import os
import sqlite3
import sys
import tempfile
import threading
import unittest
from datetime import datetime
from unittest.mock import patch

import pytz

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from event_catalog import EventCatalog
from event_models import BackendUnavailable
from notifier import MemberDirectory, SendGridNotifier, build_reminder_email
from reminder_dispatch import ReminderDispatcher, _claim_member, _release_member
from reminder_processor import process_event_reminders
from schedule_manager import ScheduleManager

NY = pytz.timezone('America/New_York')


def local(*args):
    return NY.localize(datetime(*args))


class FakeNotifier:
    """Records every reminder; outcome controlled per test."""

    def __init__(self, ok=True, raises=None):
        self.ok = ok
        self.raises = raises
        self.sent = []
        self.api_key = None

    def notify(self, reminder):
        if self.raises:
            raise self.raises
        self.sent.append(reminder)
        if self.ok:
            return True, f'msg-{len(self.sent)}', None
        return False, None, 'SendGrid returned 503'


class DispatchTestBase(unittest.TestCase):

    mode = 'single'

    def setUp(self):
        self.db_fd, self.db_path = tempfile.mkstemp(suffix='.db')
        self.catalog = EventCatalog(self.db_path, tz=NY)
        self.schedule = ScheduleManager(self.db_path, catalog=self.catalog, tz=NY)
        self.notifier = FakeNotifier()
        self.dispatcher = ReminderDispatcher(self.schedule, self.catalog, self.notifier,
                                             tz=NY, mode=self.mode)

        self.catalog.upsert_event({
            'id': 'ev-summit', 'name': 'Collegiate Officer Leadership Summit',
            'event_category': 'conferences', 'start_date': '2026-02-21T11:00:00-05:00',
            'registration_deadline': '2026-02-14T23:59:00-05:00',
        })
        self.catalog.upsert_event({
            'id': 'ev-webinar', 'name': 'Industry Connect Webinar',
            'event_category': 'member_webinar', 'start_date': '2026-02-18T18:00:00-05:00',
        })

    def tearDown(self):
        os.close(self.db_fd)
        os.unlink(self.db_path)

    def _log_rows(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            return conn.execute('SELECT * FROM reminder_log ORDER BY id').fetchall()
        finally:
            conn.close()


class TestRunCycle(DispatchTestBase):

    def test_delivers_once(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        now = local(2026, 2, 17, 19, 0)

        results = self.dispatcher.run_cycle('member-a', now)
        self.assertEqual(results, {'due': 1, 'sent': 1, 'failed': 0, 'mark_failed': 0, 'already_sent': 0})
        self.assertEqual(self.notifier.sent[0].payload()['event_name'], 'Industry Connect Webinar')
        self.assertTrue(self.schedule.list_associations('member-a')[0].reminder_sent)

        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 20, 0))
        self.assertEqual(results['due'], 0)
        self.assertEqual(len(self.notifier.sent), 1)

    def test_nothing_due(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 1, 9, 0))
        self.assertEqual(results, {'due': 0, 'sent': 0, 'failed': 0, 'mark_failed': 0, 'already_sent': 0})
        self.assertEqual(self.notifier.sent, [])

    def test_disabled_reminder_not_sent(self):
        self.schedule.add_association('member-a', 'ev-webinar', reminder_enabled=False)
        self.assertEqual(self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))['due'], 0)

    def test_failed_delivery_is_retried(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.notifier.ok = False

        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        self.assertEqual(results['failed'], 1)
        self.assertFalse(self.schedule.list_associations('member-a')[0].reminder_sent)

        self.notifier.ok = True
        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 15))
        self.assertEqual(results['sent'], 1)
        self.assertTrue(self.schedule.list_associations('member-a')[0].reminder_sent)

    def test_notifier_exception_counts_as_failure(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.dispatcher.notifier = FakeNotifier(raises=RuntimeError('connection reset'))
        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        self.assertEqual(results['failed'], 1)
        self.assertFalse(self.schedule.list_associations('member-a')[0].reminder_sent)
        rows = self._log_rows()
        self.assertEqual(rows[0]['status'], 'failed')
        self.assertIn('connection reset', rows[0]['error_message'])

    def test_mark_failure_redelivers_next_cycle(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        with patch.object(self.schedule, 'mark_reminder_sent',
                          side_effect=BackendUnavailable('database is locked')):
            results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        self.assertEqual(results, {'due': 1, 'sent': 0, 'failed': 0, 'mark_failed': 1, 'already_sent': 0})

        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 15))
        self.assertEqual(results['sent'], 1)
        self.assertEqual(len(self.notifier.sent), 2)

    def test_deadline_takes_precedence(self):
        self.schedule.add_association('member-a', 'ev-summit')
        self.dispatcher.run_cycle('member-a', local(2026, 2, 14, 9, 0))
        self.assertEqual(self.notifier.sent[0].trigger_kind, 'deadline')

        # Inside the start-date window: already fired, nothing more
        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 20, 12, 0))
        self.assertEqual(results['due'], 0)

    def test_members_are_isolated(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.schedule.add_association('member-b', 'ev-webinar')
        self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        self.assertFalse(self.schedule.list_associations('member-b')[0].reminder_sent)
        self.assertEqual([r.association.member_id for r in self.notifier.sent], ['member-a'])

    def test_busy_member_is_skipped(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.assertTrue(_claim_member(self.db_path, 'member-a'))
        try:
            results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))

            # Other members are not blocked
            self.schedule.add_association('member-b', 'ev-webinar')
            other = self.dispatcher.run_cycle('member-b', local(2026, 2, 17, 19, 0))
        finally:
            _release_member(self.db_path, 'member-a')
        self.assertEqual(results, {'skipped': 'busy'})
        self.assertEqual(other['sent'], 1)
        self.assertEqual([r.association.member_id for r in self.notifier.sent], ['member-b'])

    def test_busy_across_dispatchers(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        started = threading.Event()
        release = threading.Event()

        class BlockingNotifier(FakeNotifier):
            def notify(self, reminder):
                started.set()
                release.wait(5)
                return super().notify(reminder)

        blocking = BlockingNotifier()
        first = ReminderDispatcher(self.schedule, self.catalog, blocking, tz=NY, mode=self.mode)
        second = ReminderDispatcher(self.schedule, self.catalog, self.notifier, tz=NY, mode=self.mode)
        now = local(2026, 2, 17, 19, 0)
        results = []

        worker = threading.Thread(target=lambda: results.append(first.run_cycle('member-a', now)))
        worker.start()
        try:
            self.assertTrue(started.wait(5))
            self.assertEqual(second.run_cycle('member-a', now), {'skipped': 'busy'})
        finally:
            release.set()
            worker.join()

        self.assertEqual(results[0]['sent'], 1)
        self.assertEqual(len(blocking.sent), 1)
        self.assertEqual(self.notifier.sent, [])

    def test_lost_mark_race_is_not_counted_sent(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        with patch.object(self.schedule, 'mark_reminder_sent', return_value=False):
            results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        self.assertEqual(results, {'due': 1, 'sent': 0, 'failed': 0, 'mark_failed': 0, 'already_sent': 1})

    def test_reminder_log(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        rows = self._log_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['status'], 'sent')
        self.assertEqual(rows[0]['message_id'], 'msg-1')
        self.assertEqual(rows[0]['trigger_kind'], 'start')
        self.assertIsNotNone(rows[0]['sent_at'])

    def test_pending_reminders_sorted(self):
        self.schedule.add_association('member-a', 'ev-summit', reminder_days_before=7)
        self.schedule.add_association('member-a', 'ev-webinar', reminder_days_before=7)
        due = self.dispatcher.pending_reminders('member-a', local(2026, 2, 12, 9, 0))
        self.assertEqual([r.event.id for r in due], ['ev-summit', 'ev-webinar'])
        # Read-only
        self.assertEqual(self.notifier.sent, [])

    def test_store_unavailable_raises(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute('DROP TABLE user_event_associations')
        conn.commit()
        conn.close()
        with self.assertRaises(BackendUnavailable):
            self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        # Claim released even on failure
        self.assertTrue(_claim_member(self.db_path, 'member-a'))
        _release_member(self.db_path, 'member-a')


class TestRunAll(DispatchTestBase):

    def test_totals_across_members(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.schedule.add_association('member-b', 'ev-webinar')
        self.schedule.add_association('member-c', 'ev-webinar', reminder_enabled=False)
        totals = self.dispatcher.run_all(local(2026, 2, 17, 19, 0))
        self.assertEqual(totals['members'], 2)
        self.assertEqual(totals['sent'], 2)
        self.assertEqual(totals['already_sent'], 0)
        self.assertEqual(totals['errors'], 0)

    def test_totals_count_lost_mark_races(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.schedule.add_association('member-b', 'ev-webinar')
        with patch.object(self.schedule, 'mark_reminder_sent', return_value=False):
            totals = self.dispatcher.run_all(local(2026, 2, 17, 19, 0))
        self.assertEqual(totals['already_sent'], 2)
        self.assertEqual(totals['sent'], 0)

    def test_one_member_failing_does_not_stop_others(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        self.schedule.add_association('member-b', 'ev-webinar')
        real_list = self.schedule.list_associations

        def flaky(member_id):
            if member_id == 'member-a':
                raise BackendUnavailable('Could not load schedule')
            return real_list(member_id)

        with patch.object(self.schedule, 'list_associations', side_effect=flaky):
            totals = self.dispatcher.run_all(local(2026, 2, 17, 19, 0))
        self.assertEqual(totals['errors'], 1)
        self.assertEqual(totals['sent'], 1)


class TestPerTriggerDispatch(DispatchTestBase):

    mode = 'per_trigger'

    def test_deadline_then_start(self):
        self.schedule.add_association('member-a', 'ev-summit')

        self.dispatcher.run_cycle('member-a', local(2026, 2, 14, 9, 0))
        self.dispatcher.run_cycle('member-a', local(2026, 2, 14, 10, 0))
        self.dispatcher.run_cycle('member-a', local(2026, 2, 20, 12, 0))
        self.dispatcher.run_cycle('member-a', local(2026, 2, 20, 13, 0))

        self.assertEqual([r.trigger_kind for r in self.notifier.sent], ['deadline', 'start'])
        stored = self.schedule.list_associations('member-a')[0]
        self.assertEqual(stored.sent_kinds, frozenset({'deadline', 'start'}))

    def test_switch_from_single_mode_does_not_resend(self):
        self.schedule.add_association('member-a', 'ev-summit')
        single = ReminderDispatcher(self.schedule, self.catalog, self.notifier, tz=NY, mode='single')
        self.assertEqual(single.run_cycle('member-a', local(2026, 2, 14, 9, 0))['sent'], 1)
        self.assertEqual(self.schedule.list_associations('member-a')[0].sent_kinds,
                         frozenset({'deadline'}))

        # Still inside the deadline window after the switch
        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 14, 10, 0))
        self.assertEqual(results['due'], 0)
        self.assertEqual([r.trigger_kind for r in self.notifier.sent], ['deadline'])

        # The start-date reminder is still owed
        self.dispatcher.run_cycle('member-a', local(2026, 2, 20, 12, 0))
        self.assertEqual([r.trigger_kind for r in self.notifier.sent], ['deadline', 'start'])

    def test_row_sent_before_kinds_were_recorded(self):
        association = self.schedule.add_association('member-a', 'ev-webinar')
        conn = sqlite3.connect(self.db_path)
        conn.execute("UPDATE user_event_associations SET reminder_sent = 1, reminder_sent_kinds = '' "
                     "WHERE id = ?", (association.id,))
        conn.commit()
        conn.close()

        results = self.dispatcher.run_cycle('member-a', local(2026, 2, 17, 19, 0))
        self.assertEqual(results['due'], 0)
        self.assertEqual(self.notifier.sent, [])


class TestSendGridNotifier(DispatchTestBase):

    def setUp(self):
        super().setUp()
        self.directory = MemberDirectory(self.db_path)
        self.directory.save_contact('member-a', 'Dana.Lee@example.com', 'Dana Lee')
        self.schedule.add_association('member-a', 'ev-summit')
        self.reminder = self.dispatcher.pending_reminders('member-a', local(2026, 2, 14, 9, 0))[0]

    def test_test_mode_without_key(self):
        notifier = SendGridNotifier(self.directory.get_contact, api_key='', tz=NY)
        self.assertEqual(notifier.notify(self.reminder), (True, 'test-mode', None))

    @patch('notifier._send_via_sendgrid')
    def test_sends_to_contact(self, mock_send):
        mock_send.return_value = (True, 'sg-123', None)
        notifier = SendGridNotifier(self.directory.get_contact, api_key='SG.fake', tz=NY)
        self.assertEqual(notifier.notify(self.reminder), (True, 'sg-123', None))
        key, email, name, subject, html, plain = mock_send.call_args[0]
        self.assertEqual(key, 'SG.fake')
        self.assertEqual(email, 'dana.lee@example.com')
        self.assertEqual(subject, 'Registration closes soon: Collegiate Officer Leadership Summit')
        self.assertIn('Hi Dana', html)
        self.assertTrue(plain.startswith('Hi Dana,'))
        self.assertNotIn('<', plain)
        self.assertEqual(mock_send.call_args[1]['association_id'], self.reminder.association.id)

    @patch('sendgrid.SendGridAPIClient')
    def test_sendgrid_error_status(self, mock_client):
        mock_client.return_value.send.return_value.status_code = 400
        notifier = SendGridNotifier(self.directory.get_contact, api_key='SG.fake', tz=NY)
        self.assertEqual(notifier.notify(self.reminder), (False, None, 'SendGrid returned 400'))

    def test_missing_contact(self):
        notifier = SendGridNotifier(lambda member_id: None, api_key='', tz=NY)
        ok, message_id, error = notifier.notify(self.reminder)
        self.assertFalse(ok)
        self.assertIsNone(message_id)
        self.assertEqual(error, 'No email address on file')

    def test_invalid_email_rejected(self):
        with self.assertRaises(ValueError):
            self.directory.save_contact('member-b', 'not-an-email')

    def test_start_reminder_subject(self):
        self.schedule.add_association('member-a', 'ev-webinar')
        reminder = [r for r in self.dispatcher.pending_reminders('member-a', local(2026, 2, 17, 19, 0))
                    if r.event.id == 'ev-webinar'][0]
        subject, html, plain = build_reminder_email(reminder, None, NY)
        self.assertEqual(subject, 'Coming up: Industry Connect Webinar')
        self.assertIn('Hi there', html)
        self.assertIn('February 18, 2026 at 06:00 PM', html)
        self.assertIn('February 18, 2026 at 06:00 PM', plain)
        self.assertIn('/events/ev-webinar', plain)


class TestProcessEventReminders(DispatchTestBase):

    @patch('notifier._send_via_sendgrid')
    def test_scheduled_run(self, mock_send):
        mock_send.return_value = (True, 'sg-1', None)
        MemberDirectory(self.db_path).save_contact('member-a', 'dana@example.com', 'Dana')
        self.schedule.add_association('member-a', 'ev-webinar')

        with patch.dict(os.environ, {'REMINDER_MODE': 'single'}):
            totals = process_event_reminders(self.db_path, now=local(2026, 2, 17, 19, 0))
        self.assertEqual(totals['sent'], 1)
        self.assertEqual(mock_send.call_count, 1)
        self.assertTrue(self.schedule.list_associations('member-a')[0].reminder_sent)

    def test_never_raises(self):
        missing = os.path.join(tempfile.gettempdir(), 'no-such-dir', 'events.db')
        self.assertIsNone(process_event_reminders(missing))

        conn = sqlite3.connect(self.db_path)
        conn.execute('DROP TABLE user_event_associations')
        conn.commit()
        conn.close()
        with patch('schedule_manager.ChapterEventsDatabase.create_tables'):
            self.assertIsNone(process_event_reminders(self.db_path))


if __name__ == '__main__':
    unittest.main()
