"""Reminder offsets, send-time scheduling and the push-queue client.

Reminders are delivered by an external scheduler (Upstash QStash): we publish a
JSON payload with a ``not before`` timestamp and the queue calls
``/api/qstash/send-reminder`` back at that time with a signed request.
"""
import base64
import hashlib
import logging
import re
from datetime import datetime, time, timedelta, timezone

import jwt
import requests

import config

logger = logging.getLogger(__name__)

# Campus clock (Asia/Dhaka, no DST)
CAMPUS_TZ = timezone(timedelta(hours=6), 'BDT')
# Same clock as a browser getTimezoneOffset() value
CAMPUS_TZ_OFFSET = -360
DEFAULT_EVENT_TIME = time(9, 0)
MORNING_TIME = time(8, 0)
DEFAULT_OFFSETS = ['1d', 'morning']

# How far ahead a timing is pushed to the queue immediately instead of waiting for the daily indexer
SCHEDULE_HORIZON = timedelta(hours=25)
MIN_LEAD = timedelta(seconds=10)

OFFSET_DELTAS = {
    '15m': timedelta(minutes=15),
    '30m': timedelta(minutes=30),
    '1h': timedelta(hours=1),
    '3h': timedelta(hours=3),
    '1d': timedelta(days=1),
    '3d': timedelta(days=3),
    '1w': timedelta(weeks=1),
}

OFFSET_LABELS = {
    '15m': '15 minutes',
    '30m': '30 minutes',
    '1h': '1 hour',
    '3h': '3 hours',
    '1d': '1 day',
    '3d': '3 days',
    '1w': '1 week',
    'morning': 'Today',
}

UNIT_NAMES = {'m': 'minutes', 'h': 'hours', 'd': 'days'}
UNIT_DELTAS = {'m': timedelta(minutes=1), 'h': timedelta(hours=1), 'd': timedelta(days=1)}

DYNAMIC_OFFSET_RE = re.compile(r'^(\d+)([mhd])$')
FIXED_TIME_RE = re.compile(r'^@([01]\d|2[0-3]):([0-5]\d)$')


def _parse_hhmm(value, default):
    if not value:
        return default
    try:
        hours, minutes = value.split(':')
        return time(int(hours), int(minutes))
    except ValueError:
        return default


def event_day(event_date):
    """Calendar day of an event in campus time.

    Aware values (everything read back from Mongo) are converted to campus time;
    naive values are already campus wall-clock time.
    """
    if isinstance(event_date, str):
        event_date = datetime.fromisoformat(event_date.replace('Z', '+00:00'))
    if isinstance(event_date, datetime):
        if event_date.tzinfo is not None:
            return event_date.astimezone(CAMPUS_TZ).date()
        return event_date.date()
    return event_date


def offset_delta(offset):
    if offset in OFFSET_DELTAS:
        return OFFSET_DELTAS[offset]
    match = DYNAMIC_OFFSET_RE.match(offset or '')
    if match and int(match.group(1)) > 0:
        return int(match.group(1)) * UNIT_DELTAS[match.group(2)]
    return None


def is_valid_offset(offset):
    if offset == 'morning' or FIXED_TIME_RE.match(offset or ''):
        return True
    return offset_delta(offset) is not None


def compute_send_at(event_date, start_time, offset):
    """UTC instant at which the reminder for ``offset`` should fire, or None for an unknown offset."""
    day = event_day(event_date)
    if offset == 'morning':
        send_at = datetime.combine(day, MORNING_TIME, CAMPUS_TZ)
    elif offset.startswith('@'):
        match = FIXED_TIME_RE.match(offset)
        if not match:
            return None
        send_at = datetime.combine(day, time(int(match.group(1)), int(match.group(2))), CAMPUS_TZ)
    else:
        delta = offset_delta(offset)
        if delta is None:
            return None
        event_at = datetime.combine(day, _parse_hhmm(start_time, DEFAULT_EVENT_TIME), CAMPUS_TZ)
        send_at = event_at - delta
    return send_at.astimezone(timezone.utc)


def offset_label(offset):
    """Human-readable lead time, e.g. ``'3h'`` -> ``'3 hours'``."""
    if offset in OFFSET_LABELS:
        return OFFSET_LABELS[offset]
    match = DYNAMIC_OFFSET_RE.match(offset or '')
    if match:
        return f"{match.group(1)} {UNIT_NAMES[match.group(2)]}"
    if offset and offset.startswith('@'):
        return f"at {offset[1:]}"
    return offset


def confirmation_label(offset):
    if offset == 'morning':
        return 'Morning of the event'
    if offset.startswith('@'):
        return f"On the day {offset_label(offset)}"
    return f"{offset_label(offset)} before"


def countdown_label(event_date, now=None):
    now = now or datetime.now(timezone.utc)
    days = (event_day(event_date) - now.astimezone(CAMPUS_TZ).date()).days
    if days == 0:
        return 'Today'
    if days == 1:
        return 'Tomorrow'
    if days < 0:
        return f"{-days}d ago"
    return f"In {days}d"


def reminder_countdown(event_date, offset, now=None):
    """Badge text for a delivered reminder, e.g. ``'Tomorrow (1 day before)'``."""
    countdown = countdown_label(event_date, now)
    if offset == 'morning':
        return countdown
    if offset.startswith('@'):
        return f"{countdown} ({offset_label(offset)})"
    return f"{countdown} ({offset_label(offset)} before)"


def reminder_payload(reminder, offset, user):
    return {
        'user_id': str(reminder['user_id']),
        'user_email': user['email'],
        'user_name': user.get('name') or 'there',
        'event_title': reminder['event_title'],
        'event_date': reminder['event_date'].isoformat(),
        'event_start_time': reminder.get('event_start_time'),
        'event_end_time': reminder.get('event_end_time'),
        'event_category': reminder.get('event_category'),
        'calendar_title': reminder.get('calendar_title') or 'Calendar',
        'calendar_id': reminder.get('calendar_id'),
        'calendar_type': reminder.get('calendar_type'),
        'offset': offset,
    }


def digest_cron(local_time, timezone_offset):
    """Daily UTC cron for ``local_time`` (HH:MM) on a clock ``timezone_offset`` minutes behind UTC.

    The offset follows the browser convention: UTC+6 is ``-360``.
    """
    hours, minutes = local_time.split(':')
    total = (int(hours) * 60 + int(minutes) + timezone_offset) % (24 * 60)
    return f"{total % 60} {total // 60} * * *"


def local_day(value, timezone_offset):
    """Calendar day of ``value`` on a clock ``timezone_offset`` minutes behind UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value.astimezone(timezone.utc) - timedelta(minutes=timezone_offset)).date()


# --- Queue client ---
class QStashClient:
    """Minimal client for the QStash v2 publish, cancel and schedule endpoints."""

    def __init__(self, token=None, base_url=None, timeout=None):
        self.token = token if token is not None else config.QSTASH_TOKEN
        self.base_url = (base_url or config.QSTASH_URL).rstrip('/')
        self.timeout = timeout or config.QSTASH_TIMEOUT_SECONDS

    @property
    def enabled(self):
        return bool(self.token)

    def _headers(self):
        return {'Authorization': f"Bearer {self.token}"}

    def publish_json(self, callback_url, body, not_before):
        """Schedule ``body`` to be POSTed to ``callback_url`` at ``not_before``; returns the message id or None."""
        headers = self._headers()
        headers['Upstash-Not-Before'] = str(int(not_before.timestamp()))
        try:
            resp = requests.post(
                f"{self.base_url}/v2/publish/{callback_url}",
                json=body, headers=headers, timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json().get('messageId')
        except (requests.RequestException, ValueError) as e:
            logger.warning("ERROR: Failed to schedule reminder '%s' at offset %s: %s",
                           body.get('event_title'), body.get('offset'), e)
            return None

    def cancel(self, message_ids):
        for message_id in message_ids:
            try:
                resp = requests.delete(
                    f"{self.base_url}/v2/messages/{message_id}",
                    headers=self._headers(), timeout=self.timeout,
                )
                resp.raise_for_status()
            except requests.RequestException as e:
                # Already delivered or expired messages can't be cancelled
                logger.warning("Warning: failed to cancel queued message %s: %s", message_id, e)

    def create_schedule(self, callback_url, body, cron):
        """Register a recurring POST of ``body`` to ``callback_url``; returns the schedule id or None."""
        headers = self._headers()
        headers['Upstash-Cron'] = cron
        try:
            resp = requests.post(
                f"{self.base_url}/v2/schedules/{callback_url}",
                json=body, headers=headers, timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json().get('scheduleId')
        except (requests.RequestException, ValueError) as e:
            logger.warning("ERROR: Failed to create schedule '%s': %s", cron, e)
            return None

    def delete_schedule(self, schedule_id):
        try:
            resp = requests.delete(
                f"{self.base_url}/v2/schedules/{schedule_id}",
                headers=self._headers(), timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Warning: failed to delete schedule %s: %s", schedule_id, e)



def verify_signature(signature, body, url, signing_keys):
    """Check an ``Upstash-Signature`` JWT against the current or next signing key.

    The token must be issued by Upstash for ``url`` and carry the base64url
    SHA-256 of the raw request ``body``.
    """
    if not signature:
        return False
    body_hash = base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip('=')
    for key in signing_keys:
        if not key:
            continue
        try:
            claims = jwt.decode(signature, key, algorithms=['HS256'], issuer='Upstash')
        except jwt.InvalidTokenError:
            continue
        if url and claims.get('sub') != url:
            continue
        if (claims.get('body') or '').rstrip('=') != body_hash:
            continue
        return True
    return False
