#!/usr/bin/env python3
"""
Chapter Events Database Setup
Creates and manages the SQLite schema for the event catalog, members'
personal schedules (user_event_associations), member contact addresses and
the reminder audit log.
"""

import logging
import os
import sqlite3

logger = logging.getLogger(__name__)


class ChapterEventsDatabase:
    def __init__(self, db_path=None):
        """Initialize database connection"""
        self.db_path = db_path or os.environ.get('DATABASE_PATH', 'chapter_events.db')
        self.conn = None
        self.cursor = None

    def connect(self):
        """Establish database connection"""
        self.conn = sqlite3.connect(self.db_path)
        self.cursor = self.conn.cursor()

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.commit()
            self.conn.close()
            self.conn = None

    def create_tables(self):
        """Create all necessary tables idempotently"""
        self.connect()
        try:
            # Central event catalog, read-only to members
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS fbla_events (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    event_category TEXT NOT NULL CHECK (event_category IN
                        ('adviser_webinar', 'celebration', 'conferences', 'member_webinar')),
                    event_division TEXT CHECK (event_division IN
                        ('collegiate', 'high_school', 'middle_school')),
                    description TEXT,
                    start_date TEXT NOT NULL,
                    end_date TEXT,
                    registration_deadline TEXT,
                    location TEXT,
                    location_type TEXT DEFAULT 'physical' CHECK (location_type IN
                        ('physical', 'virtual', 'hybrid')),
                    virtual_link TEXT,
                    competition_category TEXT,
                    competition_level TEXT CHECK (competition_level IN
                        ('regional', 'state', 'national')),
                    status TEXT DEFAULT 'upcoming' CHECK (status IN
                        ('upcoming', 'ongoing', 'completed', 'cancelled')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')

            # One row per (member, event): "My Events" + reminder preferences
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS user_event_associations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    reminder_enabled INTEGER DEFAULT 1,
                    reminder_days_before INTEGER DEFAULT 1,
                    reminder_sent INTEGER DEFAULT 0,
                    added_at TEXT NOT NULL,
                    UNIQUE (user_id, event_id),
                    FOREIGN KEY (event_id) REFERENCES fbla_events(id) ON DELETE CASCADE
                )
            ''')

            # Audit trail of reminder deliveries (never used for dedup)
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS reminder_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    association_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    trigger_kind TEXT NOT NULL,
                    trigger_instant TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    message_id TEXT,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    sent_at TEXT
                )
            ''')

            # Where reminders go; mirrored from the auth provider on sign-in
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS member_contacts (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    display_name TEXT,
                    updated_at TEXT NOT NULL
                )
            ''')

            # Indexes
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_start_date ON fbla_events(start_date)')
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_category ON fbla_events(event_category)')
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_division ON fbla_events(event_division)')
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_status ON fbla_events(status)')
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_assoc_user ON user_event_associations(user_id)')
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_assoc_event ON user_event_associations(event_id)')
            self.cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_assoc_reminder
                ON user_event_associations(user_id, reminder_enabled, reminder_sent)
            ''')
            self.cursor.execute('CREATE INDEX IF NOT EXISTS idx_reminder_log_assoc ON reminder_log(association_id)')

            # Migration: per-trigger reminder state (older databases lack it)
            self.cursor.execute('PRAGMA table_info(user_event_associations)')
            columns = [row[1] for row in self.cursor.fetchall()]
            if 'reminder_sent_kinds' not in columns:
                self.cursor.execute("ALTER TABLE user_event_associations ADD COLUMN reminder_sent_kinds TEXT DEFAULT ''")
                logger.info("[DB] migration: added 'reminder_sent_kinds' to user_event_associations")
        finally:
            self.close()


def get_connection(db_path):
    """Open a connection configured the way every accessor expects."""
    conn = sqlite3.connect(db_path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    db = ChapterEventsDatabase()
    db.create_tables()
    logging.info(f"Database ready: {db.db_path}")
