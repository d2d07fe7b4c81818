"""Event reminders: per-user reminder documents and the queue callbacks that deliver them.

Each reminder stores one timing per offset. Timings due within the scheduling
horizon are pushed to the queue as soon as the reminder is saved; later ones
are left unscheduled and picked up by the daily indexer callback.
"""
import logging
from datetime import datetime, timedelta, timezone

from flask import Blueprint, current_app, g, jsonify, request

import config
import mailer
from auth import require_auth
from database import as_utc, get_db, is_object_id, serialize, to_object_id, utcnow
from errors import HubError, NotFound, Unauthorized, ValidationError
from reminders import (
    CAMPUS_TZ_OFFSET,
    MIN_LEAD,
    SCHEDULE_HORIZON,
    compute_send_at,
    confirmation_label,
    digest_cron,
    event_day,
    local_day,
    reminder_countdown,
    reminder_payload,
    verify_signature,
)
from schemas import BulkReminderIn, DigestCallbackIn, DigestIn, ReminderCallbackIn, ReminderIn, parse_body

logger = logging.getLogger(__name__)

reminder_bp = Blueprint('reminders', __name__, url_prefix='/api')

INDEXER_MAX_AGE = timedelta(hours=24)


class DeliveryFailed(HubError):
    status_code = 502
    default_message = 'Failed to send reminder email'


class ScheduleFailed(HubError):
    status_code = 502
    default_message = 'Failed to create the reminder schedule'


def get_queue():
    return current_app.extensions['reminder_queue']


def send_reminder_url():
    return f"{config.APP_BASE_URL}/api/qstash/send-reminder"


def send_digest_url():
    return f"{config.APP_BASE_URL}/api/qstash/send-digest"


# --- Timing helpers ---
def build_timings(event_date, start_time, offsets, now):
    """One timing per offset, skipping offsets whose send time has already passed."""
    timings = []
    for offset in dict.fromkeys(offsets):
        send_at = compute_send_at(event_date, start_time, offset)
        if send_at is None or send_at < now + MIN_LEAD:
            continue
        timings.append({"offset": offset, "send_at": send_at, "is_scheduled": False, "message_id": None})
    return timings


def scheduled_message_ids(reminder):
    return [t['message_id'] for t in reminder.get('timings', []) if t.get('is_scheduled') and t.get('message_id')]


def schedule_due_timings(queue, reminder, user, now, max_age=None):
    """Publish every unscheduled timing due before ``now + SCHEDULE_HORIZON``. Returns how many were queued."""
    if not queue.enabled:
        return 0
    count = 0
    for timing in reminder.get('timings', []):
        if timing.get('is_scheduled'):
            continue
        send_at = as_utc(timing['send_at'])
        if send_at is None or send_at > now + SCHEDULE_HORIZON:
            continue
        if max_age is not None and send_at < now - max_age:
            continue
        message_id = queue.publish_json(
            send_reminder_url(),
            reminder_payload(reminder, timing['offset'], user),
            max(send_at, now),
        )
        if message_id:
            timing['is_scheduled'] = True
            timing['message_id'] = message_id
            count += 1
    return count


def cancel_reminders(db, query):
    """Cancel queued messages for the matching reminders, then delete them."""
    reminders = list(db.event_reminders.find(query))
    message_ids = [m for r in reminders for m in scheduled_message_ids(r)]
    queue = get_queue()
    if message_ids and queue.enabled:
        queue.cancel(message_ids)
    if reminders:
        db.event_reminders.delete_many({"_id": {"$in": [r['_id'] for r in reminders]}})
    return len(reminders)


def _series_events(db, body, user):
    """Events in the same recurrence group as the requested one, from the stored calendar."""
    if body.calendar_type == 'personal':
        calendar = db.user_calendars.find_one({
            "_id": to_object_id(body.calendar_id, 'Calendar'),
            "user_id": user['_id'],
        })
        date_field = 'date'
    else:
        calendar = db.academic_calendars.find_one({"_id": to_object_id(body.calendar_id, 'Calendar')})
        date_field = 'start_date'
    if not calendar:
        raise NotFound("Calendar not found")
    return [
        {
            "event_id": e['_id'],
            "event_title": e['title'],
            "event_date": e[date_field],
            "event_start_time": e.get('start_time'),
            "event_end_time": e.get('end_time'),
            "event_category": e.get('category'),
        }
        for e in calendar.get('events', [])
        if e.get('recurrence_group_id') == body.recurrence_group_id
    ]


def _event_display(reminder):
    day = event_day(reminder['event_date'])
    return {
        "title": reminder['event_title'],
        "date": day.strftime('%a, %d %b %Y'),
        "raw_date": day.isoformat(),
        "start_time": reminder.get('event_start_time'),
        "end_time": reminder.get('event_end_time'),
        "calendar_title": reminder.get('calendar_title') or 'Calendar',
        "calendar_id": reminder.get('calendar_id'),
    }


def upsert_reminder(db, queue, user, event, body, now):
    """Create or replace the reminder for one event. Returns ``(reminder, created)``, or ``(None, False)``
    when every requested timing is already in the past."""
    key = {"user_id": user['_id'], "calendar_id": body.calendar_id, "event_id": event['event_id']}
    timings = build_timings(event['event_date'], event['event_start_time'], body.reminder_offsets, now)
    if not timings:
        return None, False

    existing = db.event_reminders.find_one(key)
    if existing:
        old_ids = scheduled_message_ids(existing)
        if old_ids and queue.enabled:
            queue.cancel(old_ids)

    reminder = dict(key, **{
        "calendar_type": body.calendar_type,
        "calendar_title": body.calendar_title,
        "event_title": event['event_title'],
        "event_date": event['event_date'],
        "event_start_time": event['event_start_time'],
        "event_end_time": event['event_end_time'],
        "event_category": event['event_category'],
        "reminder_offsets": body.reminder_offsets,
        "timings": timings,
        "enabled": True,
        "updated_at": now,
    })
    schedule_due_timings(queue, reminder, user, now)

    fields = {k: v for k, v in reminder.items() if k not in key}
    db.event_reminders.update_one(key, {"$set": fields, "$setOnInsert": {"created_at": now}}, upsert=True)
    saved = db.event_reminders.find_one(key)
    return saved, existing is None


def save_reminders(db, queue, user, events, body, now):
    """Upsert a reminder per event and confirm the new ones by email. Returns ``(saved, created)``."""
    saved, created = [], []
    for event in events:
        reminder, is_new = upsert_reminder(db, queue, user, event, body, now)
        if reminder is None:
            continue
        saved.append(reminder)
        if is_new:
            created.append(reminder)

    if created:
        mailer.send_reminder_confirmation(
            user['email'],
            user.get('name') or 'there',
            [_event_display(r) for r in created],
            [confirmation_label(o) for o in body.reminder_offsets],
        )
    return saved, created


def cancel_digests(db, query):
    """Delete the queue schedules of the matching digests, then the digests."""
    digests = list(db.digest_reminders.find(query))
    queue = get_queue()
    if queue.enabled:
        for digest in digests:
            if digest.get('schedule_id'):
                queue.delete_schedule(digest['schedule_id'])
    if digests:
        db.digest_reminders.delete_many({"_id": {"$in": [d['_id'] for d in digests]}})
    return len(digests)


# --- User routes ---
@reminder_bp.route('/reminders', methods=['GET'])
@require_auth
def list_reminders():
    query = {"user_id": g.current_user['_id']}
    if request.args.get('calendar_id'):
        query['calendar_id'] = request.args['calendar_id']
    reminders = list(get_db().event_reminders.find(query).sort("event_date", 1))
    return jsonify({"reminders": serialize(reminders)}), 200


@reminder_bp.route('/reminders', methods=['POST'])
@require_auth
def set_reminder():
    body = parse_body(ReminderIn)
    db = get_db()
    queue = get_queue()
    user = g.current_user
    now = utcnow()

    if body.apply_to_series and body.recurrence_group_id:
        events = _series_events(db, body, user)
    else:
        events = [{
            "event_id": body.event_id,
            "event_title": body.event_title,
            "event_date": body.event_date,
            "event_start_time": body.event_start_time,
            "event_end_time": body.event_end_time,
            "event_category": body.event_category,
        }]

    saved, created = save_reminders(db, queue, user, events, body, now)
    if not saved:
        raise ValidationError("All reminder times for this event have already passed")

    return jsonify({
        "message": "Reminder saved" if len(saved) == 1 else f"{len(saved)} reminders saved",
        "reminders": serialize(saved),
    }), 201 if created else 200


@reminder_bp.route('/reminders', methods=['DELETE'])
@require_auth
def delete_reminders():
    query = {"user_id": g.current_user['_id']}
    reminder_id = request.args.get('id')
    calendar_id = request.args.get('calendar_id')
    event_id = request.args.get('event_id')
    if reminder_id:
        query['_id'] = to_object_id(reminder_id, 'Reminder')
    elif calendar_id:
        query['calendar_id'] = calendar_id
        if event_id:
            query['event_id'] = event_id
    else:
        raise ValidationError("Provide id, or calendar_id with an optional event_id")

    deleted = cancel_reminders(get_db(), query)
    if reminder_id and not deleted:
        raise NotFound("Reminder not found")
    return jsonify({"message": "Reminder removed", "deleted": deleted}), 200


@reminder_bp.route('/reminders/bulk', methods=['POST'])
@require_auth
def bulk_reminders():
    """Turn reminders on or off for every listed event of one calendar at once."""
    body = parse_body(BulkReminderIn)
    db = get_db()
    user = g.current_user

    if body.action == 'unsubscribe':
        deleted = cancel_reminders(db, {"user_id": user['_id'], "calendar_id": body.calendar_id})
        return jsonify({"message": "Reminders removed", "deleted": deleted}), 200

    events = [
        {
            "event_id": e.event_id,
            "event_title": e.title,
            "event_date": e.date,
            "event_start_time": e.start_time,
            "event_end_time": e.end_time,
            "event_category": e.category,
        }
        for e in body.events
    ]
    saved, created = save_reminders(db, get_queue(), user, events, body, utcnow())
    if not saved:
        raise ValidationError("All reminder times for these events have already passed")
    return jsonify({
        "message": f"{len(saved)} reminders saved",
        "count": len(saved),
        "reminders": serialize(saved),
    }), 201 if created else 200


@reminder_bp.route('/reminders/digest', methods=['GET'])
@require_auth
def get_digest():
    calendar_id = request.args.get('calendar_id')
    if not calendar_id:
        raise ValidationError("calendar_id is required")
    digest = get_db().digest_reminders.find_one({"user_id": g.current_user['_id'], "calendar_id": calendar_id})
    return jsonify({"digest": serialize(digest) if digest else None}), 200


@reminder_bp.route('/reminders/digest', methods=['POST'])
@require_auth
def set_digest():
    """Subscribe to (or drop) a daily agenda email for one calendar."""
    body = parse_body(DigestIn)
    db = get_db()
    queue = get_queue()
    user = g.current_user
    key = {"user_id": user['_id'], "calendar_id": body.calendar_id}

    # An existing schedule is always replaced
    cancel_digests(db, key)
    if body.action == 'unsubscribe':
        return jsonify({"message": "Daily digest turned off", "digest": None}), 200

    cron = digest_cron(body.time, body.timezone_offset)
    schedule_id = None
    if queue.enabled:
        schedule_id = queue.create_schedule(send_digest_url(), {
            "user_id": str(user['_id']),
            "calendar_id": body.calendar_id,
            "notify_on_empty_days": body.notify_on_empty_days,
        }, cron)
        if not schedule_id:
            raise ScheduleFailed()

    now = utcnow()
    digest = dict(key, **{
        "calendar_type": body.calendar_type,
        "calendar_title": body.calendar_title or 'Calendar',
        "time": body.time,
        "timezone_offset": body.timezone_offset,
        "notify_on_empty_days": body.notify_on_empty_days,
        "cron": cron,
        "schedule_id": schedule_id,
        "enabled": True,
        "created_at": now,
        "updated_at": now,
    })
    digest['_id'] = db.digest_reminders.insert_one(digest).inserted_id
    logger.info("SUCCESS: Daily digest for calendar %s scheduled (%s).", body.calendar_id, cron)
    return jsonify({"message": "Daily digest scheduled", "digest": serialize(digest)}), 200


# --- Queue callbacks ---
def verify_queue_request():
    keys = [k for k in (config.QSTASH_CURRENT_SIGNING_KEY, config.QSTASH_NEXT_SIGNING_KEY) if k]
    if not keys:
        logger.warning("Warning: QStash signing keys not set, accepting unsigned callback.")
        return
    url = f"{config.APP_BASE_URL}{request.path}"
    if not verify_signature(request.headers.get('Upstash-Signature'), request.get_data(), url, keys):
        raise Unauthorized("Invalid signature")


@reminder_bp.route('/qstash/send-reminder', methods=['POST'])
def send_reminder():
    verify_queue_request()
    body = parse_body(ReminderCallbackIn)
    day = event_day(body.event_date)
    event = {
        "title": body.event_title,
        "date": day.strftime('%a, %d %b %Y'),
        "raw_date": day.isoformat(),
        "start_time": body.event_start_time,
        "end_time": body.event_end_time,
        "calendar_title": body.calendar_title or 'Calendar',
        "calendar_id": body.calendar_id,
        "countdown": reminder_countdown(body.event_date, body.offset),
    }
    if not mailer.send_reminder_email(body.user_email, body.user_name or 'there', event):
        # Non-2xx makes the queue retry delivery
        raise DeliveryFailed()
    logger.info("SUCCESS: Reminder '%s' (%s) sent to %s", body.event_title, body.offset, body.user_email)
    return jsonify({"message": "Reminder sent"}), 200


@reminder_bp.route('/qstash/daily-indexer', methods=['POST'])
def daily_indexer():
    """Queue every unscheduled timing that has come within the scheduling horizon."""
    verify_queue_request()
    db = get_db()
    queue = get_queue()
    now = datetime.now(timezone.utc)

    scheduled = 0
    users = {}
    for reminder in db.event_reminders.find({"enabled": True, "timings.is_scheduled": False}):
        user_id = reminder['user_id']
        if user_id not in users:
            users[user_id] = db.users.find_one({"_id": user_id}, {"email": 1, "name": 1})
        user = users[user_id]
        if not user:
            continue
        count = schedule_due_timings(queue, reminder, user, now, max_age=INDEXER_MAX_AGE)
        if count:
            db.event_reminders.update_one(
                {"_id": reminder['_id']},
                {"$set": {"timings": reminder['timings'], "updated_at": now}},
            )
            scheduled += count

    logger.info("SUCCESS: Daily indexer queued %d reminder emails.", scheduled)
    return jsonify({"message": "Indexing complete", "scheduled": scheduled}), 200


def _digest_calendar(db, calendar_id, user_id):
    """The user's own calendar with this id, else the academic calendar, else None."""
    if not is_object_id(calendar_id):
        return None
    calendar_id = to_object_id(calendar_id, 'Calendar')
    calendar = db.user_calendars.find_one({"_id": calendar_id, "user_id": user_id})
    if calendar:
        return calendar
    return db.academic_calendars.find_one({"_id": calendar_id})


@reminder_bp.route('/qstash/send-digest', methods=['POST'])
def send_digest():
    """Email today's events of one calendar. Missing users or calendars are acknowledged, not retried."""
    verify_queue_request()
    body = parse_body(DigestCallbackIn)
    db = get_db()

    user = None
    if is_object_id(body.user_id):
        user = db.users.find_one({"_id": to_object_id(body.user_id, 'User')}, {"email": 1, "name": 1})
    calendar = _digest_calendar(db, body.calendar_id, user['_id']) if user else None
    if not user or not calendar:
        logger.warning("Warning: digest for calendar %s has no user or calendar, skipped.", body.calendar_id)
        return jsonify({"sent": False, "reason": "User or calendar not found"}), 200

    digest = db.digest_reminders.find_one({"user_id": user['_id'], "calendar_id": body.calendar_id})
    tz_offset = digest['timezone_offset'] if digest else CAMPUS_TZ_OFFSET
    today = local_day(datetime.now(timezone.utc), tz_offset)

    events = []
    for e in calendar.get('events', []):
        when = as_utc(e.get('date') or e.get('start_date'))
        if when and local_day(when, tz_offset) == today:
            events.append({"title": e['title'], "start_time": e.get('start_time'), "end_time": e.get('end_time')})
    events.sort(key=lambda e: e['start_time'] or '')

    if not events and not body.notify_on_empty_days:
        return jsonify({"sent": False, "reason": "No events today"}), 200

    sent = mailer.send_daily_digest(
        user['email'],
        user.get('name') or 'there',
        calendar.get('title') or 'Your Calendar',
        body.calendar_id,
        today.strftime('%A, %d %b'),
        events,
    )
    if not sent:
        raise DeliveryFailed()
    logger.info("SUCCESS: Daily digest (%d events) sent to %s", len(events), user['email'])
    return jsonify({"sent": True, "event_count": len(events)}), 200
