"""
Chapter Events configuration.
Everything is read from environment variables so the same code runs locally,
in tests (temp databases) and on the hosted server.
"""

import os

import pytz

BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get('DATABASE_PATH', os.path.join(BACKEND_DIR, '..', 'chapter_events.db'))

# Email transport (SendGrid). No key = TEST MODE, emails are only logged.
SENDGRID_API_KEY = os.environ.get('SENDGRID_API_KEY')
FROM_EMAIL = os.environ.get('FROM_EMAIL', 'reminders@chapterevents.org')
FROM_NAME = os.environ.get('FROM_NAME', 'Chapter Events')
BASE_URL = os.environ.get('BASE_URL', 'https://chapterevents.org')

# Reminder lead days are whole calendar days in the chapter's timezone
CHAPTER_TIMEZONE = os.environ.get('CHAPTER_TIMEZONE', 'America/New_York')
REMINDER_INTERVAL_MINUTES = int(os.environ.get('REMINDER_INTERVAL_MINUTES', 15))

# 'single'      one reminder per association, ever (sent flag)
# 'per_trigger' deadline and start date each get their own reminder
REMINDER_MODE = os.environ.get('REMINDER_MODE', 'single')
REMINDER_MODES = ('single', 'per_trigger')

DEFAULT_REMINDER_DAYS_BEFORE = 1


def get_timezone(name=None):
    """Return the pytz timezone for the chapter (or the one named)."""
    return pytz.timezone(name or CHAPTER_TIMEZONE)


def get_reminder_mode():
    mode = os.environ.get('REMINDER_MODE', REMINDER_MODE)
    if mode not in REMINDER_MODES:
        raise ValueError(f'REMINDER_MODE must be one of {REMINDER_MODES}, got {mode!r}')
    return mode
