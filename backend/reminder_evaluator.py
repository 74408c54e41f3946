#!/usr/bin/env python3
"""
Chapter Events Reminder Evaluator
Pure logic: given "now", a member's associations and the events they point
at, decide which reminders are due. Nothing here reads or writes storage.

Rules:
  - Only enabled associations whose reminder has not fired are considered.
  - Only events with status 'upcoming' can fire; cancelled/completed never do.
  - If the event has a registration deadline, the reminder is anchored on the
    deadline and ONLY the deadline. Otherwise it is anchored on the start date.
  - trigger = anchor - reminder_days_before calendar days (chapter timezone,
    same wall-clock time, so DST changes do not shift it by an hour).
  - Due when trigger <= now < anchor. Once the anchor has passed the reminder
    is stale and is suppressed rather than sent late.

In 'per_trigger' mode the deadline and the start date each get their own
reminder (tracked in Association.sent_kinds). The deadline is still checked
first; the start-date reminder becomes eligible once the deadline reminder
has fired or its window has closed.
"""

from datetime import datetime, timedelta

from event_models import TRIGGER_DEADLINE, TRIGGER_START, DueReminder, anchor_kind
from events_config import get_timezone

SINGLE = 'single'
PER_TRIGGER = 'per_trigger'


def shift_calendar_days(instant, days, tz=None):
    """Move an aware instant back `days` calendar days in the chapter timezone.

    The local wall-clock time is kept: 9:00 the day after a DST change minus
    one day is 9:00 the day before, not 8:00 or 10:00.
    """
    tz = tz or get_timezone()
    local = instant.astimezone(tz).replace(tzinfo=None)
    shifted = local - timedelta(days=days)
    # is_dst=False resolves the ambiguous/skipped hour deterministically
    return tz.normalize(tz.localize(shifted, is_dst=False))


def _window(anchor, days, tz):
    return shift_calendar_days(anchor, days, tz), anchor


def _is_due(trigger, reference, now):
    return trigger <= now < reference


def evaluate_association(now, association, event, tz=None, mode=SINGLE):
    """DueReminder for one association, or None."""
    if not association.reminder_enabled:
        return None
    if event is None or event.status != 'upcoming':
        return None

    days = association.reminder_days_before
    deadline = event.registration_deadline

    if mode == PER_TRIGGER:
        fired = association.sent_kinds
        if association.reminder_sent and not fired:
            # Fired in 'single' mode before kinds were recorded
            fired = frozenset({anchor_kind(deadline)})
        if deadline is not None and TRIGGER_DEADLINE not in fired:
            trigger, reference = _window(deadline, days, tz)
            if _is_due(trigger, reference, now):
                return DueReminder(association, event, trigger, reference, TRIGGER_DEADLINE)
            if now < reference:
                # Deadline reminder still ahead; start date waits its turn
                return None
        if TRIGGER_START in fired:
            return None
        trigger, reference = _window(event.start_date, days, tz)
        if _is_due(trigger, reference, now):
            return DueReminder(association, event, trigger, reference, TRIGGER_START)
        return None

    if association.reminder_sent:
        return None
    kind = anchor_kind(deadline)
    anchor = deadline if kind == TRIGGER_DEADLINE else event.start_date
    trigger, reference = _window(anchor, days, tz)
    if _is_due(trigger, reference, now):
        return DueReminder(association, event, trigger, reference, kind)
    return None


def due_reminders(now, associations, events_by_id, tz=None, mode=SINGLE):
    """Every association that needs a reminder right now.

    `now` may be naive (taken as chapter-local time). No ordering is promised;
    sort by trigger_instant if a stable notification order matters.
    """
    if mode not in (SINGLE, PER_TRIGGER):
        raise ValueError(f'Unknown reminder mode: {mode!r}')
    tz = tz or get_timezone()
    if not isinstance(now, datetime):
        raise TypeError('now must be a datetime')
    if now.tzinfo is None:
        now = tz.localize(now)

    due = []
    for association in associations:
        reminder = evaluate_association(now, association, events_by_id.get(association.event_id),
                                        tz=tz, mode=mode)
        if reminder is not None:
            due.append(reminder)
    return due
