#!/usr/bin/env python3
"""
Chapter Events - Seed Script
Creates the schema and populates the catalog with the national calendar
(webinars, celebrations and conferences for early 2026).
Run: python seed_events.py
"""

import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), 'backend'))

from database_setup import get_connection
from event_catalog import EventCatalog
from event_models import format_instant, parse_instant
from events_config import DB_PATH

logger = logging.getLogger(__name__)


EVENTS = [
    # ── January 2026 ──
    {
        'name': 'Industry Connect: FBLA to the Boardroom: Lessons in Marketing, Leadership & Global Careers',
        'event_category': 'member_webinar',
        'event_division': 'high_school',
        'description': 'Join us for an Industry Connect webinar exploring marketing, leadership, and global career opportunities.',
        'start_date': '2026-01-21 18:00:00-05:00',
        'end_date': '2026-01-21 19:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    {
        'name': 'Power Up Your Teaching with Design Thinking',
        'event_category': 'adviser_webinar',
        'event_division': None,
        'description': ('Join us for an interactive webinar where we will break down the 5-step design thinking '
                        'process and discuss examples of how to integrate it into your coursework. You\'ll leave '
                        'with practical strategies you can use immediately, plus free classroom-ready resources.'),
        'start_date': '2026-01-29 18:30:00-05:00',
        'end_date': '2026-01-29 19:30:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    # ── February 2026 ──
    {
        'name': 'National Career & Technical Education Month',
        'event_category': 'celebration',
        'event_division': None,
        'description': 'Celebrate National Career & Technical Education Month throughout February.',
        'start_date': '2026-02-01 00:00:00-05:00',
        'end_date': '2026-02-28 23:59:59-05:00',
        'location': 'Nationwide',
        'location_type': 'physical',
    },
    {
        'name': 'Intuit Career Lab: Skills for the New Era of Accounting',
        'event_category': 'member_webinar',
        'event_division': 'high_school',
        'description': ('This FREE Career Lab showcases a range of diverse career paths along with the skills and '
                        'certifications students need to maximize earning potential.'),
        'start_date': '2026-02-03 15:00:00-05:00',
        'end_date': '2026-02-03 16:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    {
        'name': 'Accounting Major vs. CPA: Understanding the Difference and the Opportunities',
        'event_category': 'member_webinar',
        'event_division': 'high_school',
        'description': ('Ever wondered what sets a CPA apart from an accounting major? Learn what the CPA '
                        'designation means, why it matters, and the doors it can open for your career.'),
        'start_date': '2026-02-04 18:00:00-05:00',
        'end_date': '2026-02-04 19:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    {
        'name': 'FBLA Week',
        'event_category': 'celebration',
        'event_division': None,
        'description': ('Celebrate FBLA Week with us on February 8-14, 2026! This week, held during National '
                        'Career & Technical Education Month, is a highlight of the membership year.'),
        'start_date': '2026-02-08 00:00:00-05:00',
        'end_date': '2026-02-14 23:59:59-05:00',
        'location': 'Nationwide',
        'location_type': 'physical',
    },
    {
        'name': 'Industry Connect Webinar',
        'event_category': 'member_webinar',
        'event_division': 'high_school',
        'description': 'Join us for an Industry Connect webinar featuring industry professionals and career insights.',
        'start_date': '2026-02-18 18:00:00-05:00',
        'end_date': '2026-02-18 19:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    {
        'name': 'Collegiate Officer Leadership Summit',
        'event_category': 'conferences',
        'event_division': 'collegiate',
        'description': ('Launch your leadership journey at the Officer Leadership Summit on February 21, 2026 '
                        'from 11:00 AM-1:00 PM ET! This exclusive virtual event brings together all Collegiate '
                        'officers for leadership growth, networking, and FBLA inspiration.'),
        'start_date': '2026-02-21 11:00:00-05:00',
        'end_date': '2026-02-21 13:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    # ── March 2026 ──
    {
        'name': 'Start Strong: Career Readiness & Success Skills for Future Business Leaders',
        'event_category': 'member_webinar',
        'event_division': 'high_school',
        'description': ('Your career journey doesn\'t start after graduation, it starts now. Learn the success '
                        'skills employers look for and how to start developing them today.'),
        'start_date': '2026-03-04 18:00:00-05:00',
        'end_date': '2026-03-04 19:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
    {
        'name': 'Industry Connect Webinar',
        'event_category': 'member_webinar',
        'event_division': 'high_school',
        'description': 'Join us for an Industry Connect webinar featuring industry professionals and career insights.',
        'start_date': '2026-03-18 18:00:00-05:00',
        'end_date': '2026-03-18 19:00:00-05:00',
        'location': 'Virtual',
        'location_type': 'virtual',
    },
]


def seed_events(db_path=None):
    """Seed the catalog. Events already present (same name and start) are skipped."""
    path = db_path or DB_PATH
    catalog = EventCatalog(path)

    inserted = 0
    skipped = 0
    for ev in EVENTS:
        start = format_instant(parse_instant(ev['start_date'], catalog.tz))
        conn = get_connection(path)
        try:
            exists = conn.execute(
                'SELECT id FROM fbla_events WHERE name = ? AND start_date = ?', (ev['name'], start)
            ).fetchone()
        finally:
            conn.close()
        if exists:
            skipped += 1
            continue
        catalog.upsert_event(dict(ev, status='upcoming'))
        inserted += 1

    logger.info(f"Seeded {inserted} events ({skipped} already existed)")
    return inserted, skipped


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    seed_events()
