#!/usr/bin/env python3
"""
Chapter Events Reminder Notifier
Turns one due reminder into one outgoing email via SendGrid.

Delivery only: deciding *whether* a reminder should go out (and making sure it
goes out once) is the dispatcher's job. A notifier reports back
(success, message_id, error_message) and never raises for delivery problems.
"""

import html as html_mod
import logging
import sqlite3
from datetime import datetime

import pytz

from database_setup import get_connection
from event_models import TRIGGER_DEADLINE, format_instant
from events_config import BASE_URL, FROM_EMAIL, FROM_NAME, SENDGRID_API_KEY, get_timezone

logger = logging.getLogger(__name__)


def _email_wrapper(inner_html):
    return f"""
<div style="font-family:Helvetica,Arial,sans-serif;max-width:560px;margin:0 auto;padding:2rem;color:#1d2a4d;background:#ffffff;">
    {inner_html}
    <hr style="border:none;border-top:1px solid #d6dbe6;margin:2rem 0 1rem;">
    <p style="text-align:center;font-size:0.8rem;color:#6b7897;">
        You are receiving this because reminders are on for this event in My Events.<br>
        <a href="{BASE_URL}/my-events" style="color:#0a4ea3;text-decoration:none;">Manage reminders</a>
    </p>
</div>"""


def _format_when(instant, tz):
    """'Monday, February 02, 2026 at 06:00 PM EST' in the chapter timezone."""
    if instant is None:
        return ''
    return instant.astimezone(tz).strftime('%A, %B %d, %Y at %I:%M %p %Z')


def _reminder_text(reminder, tz):
    """Subject, headline and lead sentence (unescaped) for a reminder."""
    event = reminder.event
    when = _format_when(reminder.reference_instant, tz)
    if reminder.trigger_kind == TRIGGER_DEADLINE:
        return (f'Registration closes soon: {event.name}',
                'Registration Deadline Reminder',
                f'Registration for {event.name} closes on {when}.')
    return (f'Coming up: {event.name}',
            'Event Reminder',
            f'{event.name} starts on {when}.')


def build_reminder_email(reminder, recipient_name=None, tz=None):
    """Return (subject, html, plain_text) for a DueReminder."""
    tz = tz or get_timezone()
    event = reminder.event
    first = recipient_name.split()[0] if recipient_name else 'there'
    subject, headline, lead = _reminder_text(reminder, tz)
    event_url = f'{BASE_URL}/events/{event.id}'

    where = event.location or ('Online' if event.virtual_link else None)
    plain_lines = [f'Hi {first},', '', lead]
    if where:
        plain_lines += ['', f'Where: {where}']
    if event.virtual_link:
        plain_lines.append(f'Join link: {event.virtual_link}')
    plain_lines += ['', f'View event: {event_url}', f'Manage reminders: {BASE_URL}/my-events']

    location_block = ''
    if where:
        link = ''
        if event.virtual_link:
            link = f'<br><a href="{html_mod.escape(event.virtual_link)}" style="color:#0a4ea3;">Join link</a>'
        location_block = f'''
    <div style="background:#f4f7fc;border:2px solid #d6dbe6;border-radius:12px;padding:1.25rem;margin:1rem 0;">
        <p style="font-size:0.75rem;color:#0a4ea3;font-weight:700;text-transform:uppercase;letter-spacing:0.05em;margin-bottom:0.25rem;">Where</p>
        <p style="font-size:1.05rem;margin:0;">{html_mod.escape(where)}{link}</p>
    </div>'''

    html = _email_wrapper(f"""
    <div style="text-align:center;margin-bottom:1.5rem;">
        <h1 style="font-size:1.5rem;font-weight:600;color:#1d2a4d;margin:0;">{headline}</h1>
    </div>
    <p style="font-size:1rem;">Hi {html_mod.escape(first)},</p>
    <p style="font-size:1rem;">{html_mod.escape(lead)}</p>
    {location_block}
    <p style="text-align:center;margin:1.5rem 0;">
        <a href="{html_mod.escape(event_url)}" style="background:#0a4ea3;color:#ffffff;padding:0.75rem 1.5rem;border-radius:8px;text-decoration:none;">View event</a>
    </p>""")
    return subject, html, '\n'.join(plain_lines)


def _send_via_sendgrid(sendgrid_key, to_email, to_name, subject, html_content, plain_text,
                       association_id=None):
    """Send one reminder email. Returns (success, sendgrid_message_id, error_msg).

    Tagged with the 'event-reminder' category and the association id so
    SendGrid activity can be traced back to reminder_log rows.
    """
    if not sendgrid_key:
        logger.info(f"[Notifier] TEST MODE, would send to {to_email}: {subject}")
        return True, 'test-mode', None

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Category, Content, CustomArg, Email, Mail, MimeType, To

        message = Mail(
            from_email=Email(FROM_EMAIL, FROM_NAME),
            to_emails=To(to_email, to_name),
            subject=subject,
            plain_text_content=Content(MimeType.text, plain_text),
            html_content=Content(MimeType.html, html_content),
        )
        message.category = Category('event-reminder')
        if association_id:
            message.custom_arg = CustomArg('association_id', str(association_id))

        response = SendGridAPIClient(sendgrid_key).send(message)
        if response.status_code >= 300:
            return False, None, f'SendGrid returned {response.status_code}'
        headers = response.headers or {}
        return True, headers.get('X-Message-Id', ''), None
    except Exception as e:
        logger.exception(f"[Notifier] SendGrid error sending reminder to {to_email}")
        return False, None, str(e)


class MemberDirectory:
    """Contact addresses for members (member_contacts table)."""

    def __init__(self, db_path):
        self.db_path = db_path

    def get_contact(self, member_id):
        """(email, display_name) or None."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                'SELECT email, display_name FROM member_contacts WHERE user_id = ?', (member_id,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return row['email'], row['display_name']

    def save_contact(self, member_id, email, display_name=None):
        email = (email or '').strip().lower()
        if '@' not in email or '.' not in email.split('@')[-1]:
            raise ValueError(f'Invalid email address: {email!r}')
        conn = get_connection(self.db_path)
        try:
            conn.execute('''
                INSERT INTO member_contacts (user_id, email, display_name, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email = excluded.email,
                    display_name = excluded.display_name,
                    updated_at = excluded.updated_at
            ''', (member_id, email[:254], display_name, format_instant(datetime.now(pytz.utc))))
            conn.commit()
        finally:
            conn.close()


class SendGridNotifier:
    """Email notifier. With no API key it runs in TEST MODE (log only)."""

    def __init__(self, resolve_contact, api_key=None, tz=None):
        self.resolve_contact = resolve_contact
        self.api_key = api_key if api_key is not None else SENDGRID_API_KEY
        self.tz = tz or get_timezone()

    def notify(self, reminder):
        member_id = reminder.association.member_id
        try:
            contact = self.resolve_contact(member_id)
        except sqlite3.Error as e:
            logger.error(f"[Notifier] Could not look up contact for {member_id}: {e}")
            return False, None, 'Contact lookup failed'
        if not contact:
            logger.warning(f"[Notifier] No email address on file for {member_id}")
            return False, None, 'No email address on file'

        email, display_name = contact
        subject, html, plain_text = build_reminder_email(reminder, display_name, self.tz)
        return _send_via_sendgrid(self.api_key, email, display_name, subject, html, plain_text,
                                  association_id=reminder.association.id)
