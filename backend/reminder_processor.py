#!/usr/bin/env python3
"""
Chapter Events Reminder Processor
Scheduled job that delivers due event reminders for every member.
Called by APScheduler every REMINDER_INTERVAL_MINUTES (see api_server.run_server).
"""

import logging

from event_catalog import EventCatalog
from event_models import BackendUnavailable
from notifier import MemberDirectory, SendGridNotifier
from reminder_dispatch import ReminderDispatcher
from schedule_manager import ScheduleManager

logger = logging.getLogger(__name__)


def build_dispatcher(db_path, notifier=None, tz=None, mode=None):
    """Wire catalog, schedule and notifier for one database."""
    catalog = EventCatalog(db_path, tz=tz)
    schedule = ScheduleManager(db_path, catalog=catalog, tz=tz)
    if notifier is None:
        notifier = SendGridNotifier(MemberDirectory(db_path).get_contact, tz=tz)
    return ReminderDispatcher(schedule, catalog, notifier, tz=tz, mode=mode)


def process_event_reminders(db_path, now=None):
    """Run one reminder cycle for every member. Never raises."""
    try:
        dispatcher = build_dispatcher(db_path)
    except Exception as e:
        logger.error(f"[Reminders] Failed to initialize dispatcher: {e}")
        return None

    try:
        totals = dispatcher.run_all(now)
    except BackendUnavailable as e:
        logger.error(f"[Reminders] Store unavailable, will retry next run: {e}")
        return None

    if totals['due']:
        logger.info(f"[Reminders] Processing complete: {totals['sent']} sent, {totals['failed']} failed, "
                    f"{totals['mark_failed']} unrecorded, {totals['members']} members")
    return totals
