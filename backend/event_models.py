"""
Chapter Events data types.

Rows coming back from the relational store are loosely typed (TEXT dates,
0/1 booleans, NULLs). They are validated and converted here, at the accessor
boundary, so the reminder logic only ever sees Event / Association objects.
"""

from dataclasses import dataclass, field
from datetime import datetime

import pytz

EVENT_CATEGORIES = ('adviser_webinar', 'celebration', 'conferences', 'member_webinar')
EVENT_DIVISIONS = ('collegiate', 'high_school', 'middle_school')
LOCATION_TYPES = ('physical', 'virtual', 'hybrid')
COMPETITION_LEVELS = ('regional', 'state', 'national')
EVENT_STATUSES = ('upcoming', 'ongoing', 'completed', 'cancelled')

TRIGGER_DEADLINE = 'deadline'
TRIGGER_START = 'start'
TRIGGER_KINDS = (TRIGGER_DEADLINE, TRIGGER_START)


def anchor_kind(registration_deadline):
    """The one trigger kind 'single' mode uses: the deadline if there is one."""
    return TRIGGER_DEADLINE if registration_deadline else TRIGGER_START


# ── Errors ────────────────────────────────────────────────────

class BackendUnavailable(Exception):
    """The relational store could not answer (locked, missing, corrupt)."""


class OwnershipError(PermissionError):
    """A member tried to touch an association that belongs to someone else."""


class AssociationNotFound(LookupError):
    pass


class EventNotFound(LookupError):
    pass


class InvalidRecord(ValueError):
    """A stored row or incoming payload failed boundary validation."""


# ── Instants ──────────────────────────────────────────────────

def parse_instant(value, tz=None):
    """Parse an ISO-8601 string (or datetime) into an aware datetime.

    Naive values are taken to be local time in `tz` (the chapter timezone).
    Returns None for empty values.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidRecord(f'Invalid timestamp: {value!r}')
    if dt.tzinfo is None:
        if tz is None:
            raise InvalidRecord(f'Timestamp has no UTC offset: {value!r}')
        dt = tz.localize(dt)
    return dt


def format_instant(dt):
    """Storage format: ISO-8601 in UTC."""
    if dt is None:
        return None
    return dt.astimezone(pytz.utc).isoformat()


def _choice(value, allowed, name, required=True):
    if value is None or value == '':
        if required:
            raise InvalidRecord(f'Missing {name}')
        return None
    if value not in allowed:
        raise InvalidRecord(f'Invalid {name}: {value!r}')
    return value


# ── Records ───────────────────────────────────────────────────

@dataclass(frozen=True)
class Event:
    id: str
    name: str
    category: str
    start_date: datetime
    status: str = 'upcoming'
    division: str = None
    description: str = None
    end_date: datetime = None
    registration_deadline: datetime = None
    location: str = None
    location_type: str = 'physical'
    virtual_link: str = None
    competition_category: str = None
    competition_level: str = None
    created_at: datetime = None
    updated_at: datetime = None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'category': self.category,
            'division': self.division,
            'description': self.description,
            'start_date': format_instant(self.start_date),
            'end_date': format_instant(self.end_date),
            'registration_deadline': format_instant(self.registration_deadline),
            'location': self.location,
            'location_type': self.location_type,
            'virtual_link': self.virtual_link,
            'competition_category': self.competition_category,
            'competition_level': self.competition_level,
            'status': self.status,
        }


@dataclass(frozen=True)
class Association:
    id: str
    member_id: str
    event_id: str
    reminder_enabled: bool = True
    reminder_days_before: int = 1
    reminder_sent: bool = False
    added_at: datetime = None
    sent_kinds: frozenset = field(default_factory=frozenset)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'event_id': self.event_id,
            'reminder_enabled': self.reminder_enabled,
            'reminder_days_before': self.reminder_days_before,
            'reminder_sent': self.reminder_sent,
            'added_at': format_instant(self.added_at),
            'sent_kinds': sorted(self.sent_kinds),
        }


@dataclass(frozen=True)
class DueReminder:
    association: Association
    event: Event
    trigger_instant: datetime
    reference_instant: datetime
    trigger_kind: str

    def payload(self):
        """The contract handed to the notification transport."""
        return {
            'member_id': self.association.member_id,
            'event_id': self.event.id,
            'event_name': self.event.name,
            'trigger_instant': format_instant(self.trigger_instant),
            'reference_instant': format_instant(self.reference_instant),
        }

    def to_dict(self):
        data = self.payload()
        data['association_id'] = self.association.id
        data['trigger_kind'] = self.trigger_kind
        return data


# ── Row conversion ────────────────────────────────────────────

def event_from_row(row, tz=None):
    """Build an Event from a fbla_events row. Raises InvalidRecord."""
    data = dict(row)
    if not data.get('id') or not (data.get('name') or '').strip():
        raise InvalidRecord('Event row is missing id or name')
    start = parse_instant(data.get('start_date'), tz)
    if start is None:
        raise InvalidRecord(f"Event {data['id']} has no start_date")
    return Event(
        id=str(data['id']),
        name=data['name'].strip(),
        category=_choice(data.get('event_category'), EVENT_CATEGORIES, 'event_category'),
        division=_choice(data.get('event_division'), EVENT_DIVISIONS, 'event_division', required=False),
        description=data.get('description') or None,
        start_date=start,
        end_date=parse_instant(data.get('end_date'), tz),
        registration_deadline=parse_instant(data.get('registration_deadline'), tz),
        location=data.get('location') or None,
        location_type=_choice(data.get('location_type') or 'physical', LOCATION_TYPES, 'location_type'),
        virtual_link=data.get('virtual_link') or None,
        competition_category=data.get('competition_category') or None,
        competition_level=_choice(data.get('competition_level'), COMPETITION_LEVELS,
                                  'competition_level', required=False),
        status=_choice(data.get('status') or 'upcoming', EVENT_STATUSES, 'status'),
        created_at=parse_instant(data.get('created_at'), tz),
        updated_at=parse_instant(data.get('updated_at'), tz),
    )


def association_from_row(row, tz=None):
    """Build an Association from a user_event_associations row."""
    data = dict(row)
    for key in ('id', 'user_id', 'event_id'):
        if not data.get(key):
            raise InvalidRecord(f'Association row is missing {key}')
    try:
        days = int(data.get('reminder_days_before') if data.get('reminder_days_before') is not None else 1)
    except (TypeError, ValueError):
        raise InvalidRecord(f"Invalid reminder_days_before: {data.get('reminder_days_before')!r}")
    if days < 0:
        raise InvalidRecord(f'Negative reminder_days_before on association {data["id"]}')
    kinds = frozenset(k for k in (data.get('reminder_sent_kinds') or '').split(',') if k in TRIGGER_KINDS)
    return Association(
        id=str(data['id']),
        member_id=str(data['user_id']),
        event_id=str(data['event_id']),
        reminder_enabled=bool(data.get('reminder_enabled', 1)),
        reminder_days_before=days,
        reminder_sent=bool(data.get('reminder_sent', 0)),
        added_at=parse_instant(data.get('added_at'), tz),
        sent_kinds=kinds,
    )
