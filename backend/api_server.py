#!/usr/bin/env python3
"""
Chapter Events API Server
JSON API for the mobile app: event catalog, My Events (personal schedule),
reminder settings and the due-reminder banner. Also starts the periodic
reminder job (APScheduler).

The caller's member id arrives in the X-Member-Id header; authenticating it
is the job of the gateway in front of this server.
"""

from http.server import HTTPServer, BaseHTTPRequestHandler
import json
import logging
import os
import sqlite3
import time as _time_module
from urllib.parse import urlparse, parse_qs, unquote

from event_models import (
    AssociationNotFound, BackendUnavailable, EventNotFound, InvalidRecord, OwnershipError,
)
from events_config import DB_PATH, DEFAULT_REMINDER_DAYS_BEFORE, REMINDER_INTERVAL_MINUTES
from reminder_processor import build_dispatcher, process_event_reminders

logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')


class ChapterEventsAPIHandler(BaseHTTPRequestHandler):

    # Bound by make_handler()
    catalog = None
    schedule = None
    dispatcher = None
    db_path = None

    def do_GET(self):
        """Handle GET requests"""
        _req_start = _time_module.time()
        parsed_path = urlparse(self.path)
        path = parsed_path.path
        query_params = parse_qs(parsed_path.query)

        if path == '/api/health':
            self._handle_health_check()
        elif path == '/api/events':
            self._guard(self.get_events, query_params)
        elif path.startswith('/api/events/'):
            event_id = unquote(path[len('/api/events/'):])
            self._guard(self.get_single_event, event_id)
        elif path == '/api/my-events':
            self._guard_member(self.get_my_events)
        elif path == '/api/my-events/associations':
            self._guard_member(self.get_my_associations)
        elif path == '/api/my-events/catalog':
            self._guard_member(self.get_catalog_with_status, query_params)
        elif path == '/api/my-events/reminders':
            self._guard_member(self.get_due_reminders)
        else:
            self.send_404()
        self._log_request('GET', path, _req_start)

    def do_POST(self):
        """Handle POST requests"""
        _req_start = _time_module.time()
        path = urlparse(self.path).path
        body = self._read_body_or_400()

        if body is None:
            pass
        elif path == '/api/my-events':
            self._guard_member(self.handle_add_event, body)
        elif path == '/api/my-events/reminders/dispatch':
            self._guard_member(self.handle_dispatch)
        else:
            self.send_404()
        self._log_request('POST', path, _req_start)

    def do_PUT(self):
        """Handle PUT requests"""
        _req_start = _time_module.time()
        path = urlparse(self.path).path
        body = self._read_body_or_400()

        if body is None:
            pass
        elif path.startswith('/api/my-events/') and path.endswith('/reminder'):
            event_id = unquote(path[len('/api/my-events/'):-len('/reminder')])
            self._guard_member(self.handle_update_reminder, event_id, body)
        else:
            self.send_404()
        self._log_request('PUT', path, _req_start)

    def do_DELETE(self):
        """Handle DELETE requests"""
        _req_start = _time_module.time()
        path = urlparse(self.path).path

        if path.startswith('/api/my-events/'):
            event_id = unquote(path[len('/api/my-events/'):])
            self._guard_member(self.handle_remove_event, event_id)
        else:
            self.send_404()
        self._log_request('DELETE', path, _req_start)

    def do_OPTIONS(self):
        """Handle CORS preflight requests"""
        self.send_response(200)
        self.send_cors_headers()
        self.end_headers()

    def send_cors_headers(self):
        """Send CORS headers"""
        self.send_header('Access-Control-Allow-Origin', '*')
        self.send_header('Access-Control-Allow-Methods', 'GET, POST, PUT, DELETE, OPTIONS')
        self.send_header('Access-Control-Allow-Headers', 'Content-Type, X-Member-Id')

    # ── Request plumbing ─────────────────────────────────────

    def _read_body(self):
        try:
            content_length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            raise InvalidRecord('Invalid Content-Length header')
        if content_length < 0:
            raise InvalidRecord('Invalid Content-Length header')
        return self.rfile.read(content_length) if content_length > 0 else b''

    def _read_body_or_400(self):
        """Request body, or None after answering 400 for a bad Content-Length."""
        try:
            return self._read_body()
        except InvalidRecord as e:
            self.send_error_response(str(e), 400)
            return None

    def _parse_json(self, body):
        try:
            data = json.loads(body.decode('utf-8')) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRecord('Request body must be valid JSON')
        if not isinstance(data, dict):
            raise InvalidRecord('Request body must be a JSON object')
        return data

    def _member_id(self):
        member_id = (self.headers.get('X-Member-Id') or '').strip()
        return member_id or None

    def _guard_member(self, handler, *args):
        member_id = self._member_id()
        if not member_id:
            self.send_error_response('Sign in to manage your events', 401)
            return
        self._guard(handler, member_id, *args)

    def _guard(self, handler, *args):
        """Run a handler, mapping domain errors onto HTTP statuses."""
        try:
            handler(*args)
        except OwnershipError as e:
            logging.error(f"[API] Ownership violation: {e}")
            self.send_error_response('You do not have access to that item', 403)
        except (EventNotFound, AssociationNotFound) as e:
            self.send_error_response(str(e), 404)
        except (InvalidRecord, ValueError) as e:
            self.send_error_response(str(e), 400)
        except (BackendUnavailable, sqlite3.Error) as e:
            self.send_error_response(str(e), 503)
        except Exception:
            logging.exception(f"[API] Unhandled error in {getattr(handler, '__name__', handler)}")
            self.send_error_response('An unexpected error occurred. Please try again later.', 500)

    # ── API: Catalog ─────────────────────────────────────────

    def get_events(self, query_params):
        """GET /api/events?category=&division=&status=&from=&to="""
        def param(name):
            return query_params.get(name, [None])[0] or None

        events = self.catalog.list_events(
            category=param('category'),
            division=param('division'),
            status=param('status'),
            start_from=param('from'),
            start_to=param('to'),
        )
        self.send_json_response({'status': 'success', 'data': [e.to_dict() for e in events]})

    def get_single_event(self, event_id):
        """GET /api/events/{id}"""
        event = self.catalog.get_event(event_id)
        if event is None:
            self.send_error_response('Event not found', 404)
            return
        self.send_json_response({'status': 'success', 'data': event.to_dict()})

    # ── API: My Events ───────────────────────────────────────

    def get_my_events(self, member_id):
        events = self.schedule.get_user_events(member_id)
        self.send_json_response({'status': 'success', 'data': [e.to_dict() for e in events]})

    def get_my_associations(self, member_id):
        associations = self.schedule.list_associations(member_id)
        self.send_json_response({'status': 'success', 'data': [a.to_dict() for a in associations]})

    def get_catalog_with_status(self, member_id, query_params):
        filters = {}
        for param, key in (('category', 'category'), ('division', 'division'), ('status', 'status'),
                           ('from', 'start_from'), ('to', 'start_to')):
            value = query_params.get(param, [None])[0]
            if value:
                filters[key] = value
        data = self.schedule.get_events_with_association_status(member_id, **filters)
        self.send_json_response({'status': 'success', 'data': data})

    def handle_add_event(self, member_id, body):
        """POST /api/my-events {event_id, reminder_enabled?, reminder_days_before?}"""
        data = self._parse_json(body)
        event_id = data.get('event_id')
        if not isinstance(event_id, str) or not event_id.strip():
            raise InvalidRecord('Missing required field: event_id')
        days = data.get('reminder_days_before')
        association = self.schedule.add_association(
            member_id,
            event_id.strip(),
            reminder_enabled=bool(data.get('reminder_enabled', True)),
            reminder_days_before=DEFAULT_REMINDER_DAYS_BEFORE if days is None else days,
        )
        self.send_json_response({'status': 'success', 'data': association.to_dict()})

    def handle_remove_event(self, member_id, event_id):
        """DELETE /api/my-events/{event_id}"""
        removed = self.schedule.remove_association(member_id, event_id)
        self.send_json_response({'status': 'success', 'removed': removed})

    def handle_update_reminder(self, member_id, event_id, body):
        """PUT /api/my-events/{event_id}/reminder {enabled?, reminder_days_before?}"""
        data = self._parse_json(body)
        enabled = data.get('enabled')
        if enabled is not None and not isinstance(enabled, bool):
            raise InvalidRecord('enabled must be true or false')
        matched = self.schedule.update_reminder_settings(
            member_id, event_id,
            enabled=enabled,
            reminder_days_before=data.get('reminder_days_before'),
        )
        if not matched:
            self.send_error_response('That event is not in your schedule', 404)
            return
        self.send_json_response({'status': 'success', 'message': 'Reminder settings updated'})

    # ── API: Reminders ───────────────────────────────────────

    def get_due_reminders(self, member_id):
        """GET /api/my-events/reminders: drives the in-app reminder banner."""
        due = self.dispatcher.pending_reminders(member_id)
        self.send_json_response({'status': 'success', 'data': [r.to_dict() for r in due]})

    def handle_dispatch(self, member_id):
        """POST /api/my-events/reminders/dispatch: run a cycle now (on app focus)."""
        results = self.dispatcher.run_cycle(member_id)
        self.send_json_response({'status': 'success', 'data': results})

    # ── Helpers ──────────────────────────────────────────────

    def send_json_response(self, data, status=200):
        """Send JSON response"""
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_cors_headers()
        self.end_headers()
        response = json.dumps(data, ensure_ascii=False, indent=2)
        self.wfile.write(response.encode('utf-8'))
        self._last_status = status

    def send_error_response(self, message, status=500):
        """Send error response with friendly message for 5xx"""
        if status >= 500:
            logging.error(f"[API] Server error: {message}")
            friendly = self._friendly_error(message)
        else:
            friendly = str(message)
        self.send_json_response({
            'status': 'error',
            'error': {'message': friendly}
        }, status)

    def send_404(self):
        """Send 404 response"""
        self.send_error_response('Endpoint not found', 404)

    def _log_request(self, method, path, start_time):
        """Log request with method, path, status code, and response time."""
        elapsed_ms = (_time_module.time() - start_time) * 1000
        logging.info(f"[API] {method} {path} {getattr(self, '_last_status', '-')} {elapsed_ms:.0f}ms")

    def _handle_health_check(self):
        """GET /api/health: service status with counts."""
        events = 0
        associations = 0
        try:
            conn = sqlite3.connect(self.db_path)
            try:
                events = conn.execute('SELECT COUNT(*) FROM fbla_events').fetchone()[0]
                associations = conn.execute('SELECT COUNT(*) FROM user_event_associations').fetchone()[0]
            finally:
                conn.close()
            status = 'ok'
        except sqlite3.Error as e:
            logging.error(f"[API] Health check could not read database: {e}")
            status = 'degraded'
        self.send_json_response({
            'status': status,
            'events': events,
            'associations': associations,
            'reminder_mode': self.dispatcher.mode,
        })

    def _friendly_error(self, raw_message):
        """Convert technical error messages to user-friendly text."""
        msg = str(raw_message).lower()
        if 'database is locked' in msg:
            return 'The server is busy. Please try again in a moment.'
        if 'sqlite' in msg or 'database' in msg or 'no such table' in msg:
            return 'Events are temporarily unavailable. Please try again later.'
        if len(msg) > 200:
            return 'An unexpected error occurred. Please try again later.'
        return str(raw_message)

    def log_message(self, format, *args):
        """Request lines are logged by _log_request"""
        pass


def make_handler(db_path, notifier=None, tz=None, mode=None):
    """Handler class bound to one database (tests use temp databases)."""
    dispatcher = build_dispatcher(db_path, notifier=notifier, tz=tz, mode=mode)

    return type('BoundChapterEventsAPIHandler', (ChapterEventsAPIHandler,), {
        'catalog': dispatcher.catalog,
        'schedule': dispatcher.schedule,
        'dispatcher': dispatcher,
        'db_path': db_path,
    })


def run_server(port=None, db_path=None):
    """Start the API server and the reminder scheduler"""
    if port is None:
        port = int(os.environ.get('PORT', 5000))
    db_path = db_path or DB_PATH
    handler = make_handler(db_path)
    httpd = HTTPServer(('0.0.0.0', port), handler)

    # Reminder processor via APScheduler; max_instances=1 keeps cycles from overlapping
    try:
        from apscheduler.schedulers.background import BackgroundScheduler
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            process_event_reminders,
            'interval',
            minutes=REMINDER_INTERVAL_MINUTES,
            args=[db_path],
            id='event_reminders',
            name='Deliver due event reminders',
            max_instances=1,
        )
        scheduler.start()
        logging.info(f"[Reminders] Scheduler started (every {REMINDER_INTERVAL_MINUTES} minutes)")
    except Exception as e:
        logging.error(f"[Reminders] Scheduler failed to start: {e}")

    logging.info(f"\n{'='*60}")
    logging.info(f" CHAPTER EVENTS API SERVER")
    logging.info(f"{'='*60}")
    logging.info(f" Running on: http://0.0.0.0:{port}")
    logging.info(f" Database: {db_path}")
    logging.info(f" Reminder mode: {handler.dispatcher.mode}")
    logging.info(f" Email: {'SendGrid connected' if handler.dispatcher.notifier.api_key else 'TEST MODE'}")
    logging.info(f"\n API Endpoints:")
    logging.info(f" GET /api/health - Service status")
    logging.info(f" GET /api/events - Event catalog (category, division, status, from, to)")
    logging.info(f" GET /api/events/{{id}} - Single event")
    logging.info(f" GET /api/my-events - My Events")
    logging.info(f" GET /api/my-events/catalog - Catalog with My Events status")
    logging.info(f" POST /api/my-events - Add event to My Events")
    logging.info(f" DELETE /api/my-events/{{event_id}} - Remove event from My Events")
    logging.info(f" PUT /api/my-events/{{event_id}}/reminder - Reminder settings")
    logging.info(f" GET /api/my-events/reminders - Due reminders")
    logging.info(f" POST /api/my-events/reminders/dispatch - Send due reminders now")
    logging.info(f"{'='*60}\n")

    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logging.info("\n Server stopped")
        httpd.server_close()


if __name__ == '__main__':
    run_server()
