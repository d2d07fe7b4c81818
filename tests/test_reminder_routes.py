import base64
import hashlib
import json
from datetime import datetime, time, timedelta, timezone

import jwt
import pytest

import config
from database import as_utc
from reminders import CAMPUS_TZ


def upcoming_event(hours_ahead=3):
    """Event date/start time (campus clock) ``hours_ahead`` from now."""
    event_at = datetime.now(timezone.utc).astimezone(CAMPUS_TZ) + timedelta(hours=hours_ahead)
    return event_at.strftime('%Y-%m-%dT00:00:00'), event_at.strftime('%H:%M')


def reminder_body(offsets, calendar_id='cal1', event_id='evt1', hours_ahead=3):
    event_date, start_time = upcoming_event(hours_ahead)
    return {
        "calendar_id": calendar_id,
        "calendar_type": "academic",
        "calendar_title": "Spring 2026",
        "event_id": event_id,
        "event_title": "Midterm",
        "event_date": event_date,
        "event_start_time": start_time,
        "reminder_offsets": offsets,
    }


def test_set_reminder_schedules_near_timings(client, db, queue, make_user, headers, sent_emails):
    user = make_user()
    resp = client.post('/api/reminders', json=reminder_body(['1h', '1w']), headers=headers(user))
    assert resp.status_code == 201

    reminder = db.event_reminders.find_one()
    # '1w' before an event three hours away has already passed
    assert [t['offset'] for t in reminder['timings']] == ['1h']
    assert reminder['timings'][0]['is_scheduled'] is True
    assert reminder['timings'][0]['message_id'] == 'msg_1'

    assert len(queue.published) == 1
    published = queue.published[0]
    assert published['url'] == f"{config.APP_BASE_URL}/api/qstash/send-reminder"
    assert published['body']['user_email'] == user['email']
    assert published['body']['offset'] == '1h'
    # confirmation email for a new reminder
    sent_emails.assert_called_once()


def test_far_timings_wait_for_indexer(client, db, queue, make_user, headers):
    user = make_user()
    client.post('/api/reminders', json=reminder_body(['1d'], hours_ahead=24 * 5), headers=headers(user))
    reminder = db.event_reminders.find_one()
    assert reminder['timings'][0]['is_scheduled'] is False
    assert queue.published == []


def test_resetting_cancels_previous_messages(client, db, queue, make_user, headers, sent_emails):
    user = make_user()
    client.post('/api/reminders', json=reminder_body(['1h']), headers=headers(user))
    resp = client.post('/api/reminders', json=reminder_body(['30m']), headers=headers(user))
    assert resp.status_code == 200

    assert queue.cancelled == ['msg_1']
    assert db.event_reminders.count_documents({}) == 1
    assert [t['offset'] for t in db.event_reminders.find_one()['timings']] == ['30m']
    # only the first save sends a confirmation
    assert sent_emails.call_count == 1


def test_all_past_timings_rejected(client, make_user, headers):
    resp = client.post('/api/reminders', json=reminder_body(['1w']), headers=headers(make_user()))
    assert resp.status_code == 400


def test_list_and_delete(client, db, queue, make_user, headers):
    user = make_user()
    client.post('/api/reminders', json=reminder_body(['1h'], event_id='e1'), headers=headers(user))
    client.post('/api/reminders', json=reminder_body(['1h'], event_id='e2'), headers=headers(user))

    listed = client.get('/api/reminders', headers=headers(user)).get_json()['reminders']
    assert len(listed) == 2

    resp = client.delete('/api/reminders?calendar_id=cal1&event_id=e1', headers=headers(user))
    assert resp.get_json()['deleted'] == 1
    assert queue.cancelled == ['msg_1']

    reminder_id = listed[1]['_id'] if listed[1]['event_id'] == 'e2' else listed[0]['_id']
    assert client.delete(f'/api/reminders?id={reminder_id}', headers=headers(user)).status_code == 200
    assert db.event_reminders.count_documents({}) == 0

    assert client.delete('/api/reminders', headers=headers(user)).status_code == 400


def test_series_reminders_from_calendar(client, db, make_user, headers):
    user = make_user()
    base = datetime.now(timezone.utc).replace(tzinfo=None, hour=0, minute=0, second=0, microsecond=0)
    calendar_id = db.user_calendars.insert_one({
        "user_id": user['_id'],
        "title": "Lab",
        "events": [
            {"_id": f"w{i}", "title": "Lab session", "date": base + timedelta(days=7 * i),
             "start_time": "23:59", "recurrence_group_id": "lab"}
            for i in range(1, 4)
        ] + [{"_id": "other", "title": "Other", "date": base + timedelta(days=3), "recurrence_group_id": None}],
    }).inserted_id

    body = reminder_body(['1d'], calendar_id=str(calendar_id), event_id='w1')
    body.update(calendar_type='personal', apply_to_series=True, recurrence_group_id='lab')
    resp = client.post('/api/reminders', json=body, headers=headers(user))

    assert resp.status_code == 201
    assert sorted(r['event_id'] for r in db.event_reminders.find()) == ['w1', 'w2', 'w3']


def test_series_reminder_uses_campus_day_of_stored_date(client, db, make_user, headers):
    user = make_user()
    day = (datetime.now(timezone.utc).astimezone(CAMPUS_TZ) + timedelta(days=10)).date()
    # campus midnight sent as a UTC instant falls on the previous UTC day
    midnight_utc = datetime.combine(day, time(0), CAMPUS_TZ).astimezone(timezone.utc)
    calendar = client.post('/api/calendars', json={
        "title": "Lab",
        "events": [{"_id": "lab1", "title": "Lab session", "date": midnight_utc.strftime('%Y-%m-%dT%H:%M:%SZ'),
                    "start_time": "10:00", "recurrence_group_id": "lab"}],
    }, headers=headers(user)).get_json()['calendar']

    body = reminder_body(['1d'], calendar_id=calendar['_id'], event_id='lab1')
    body.update(calendar_type='personal', apply_to_series=True, recurrence_group_id='lab')
    assert client.post('/api/reminders', json=body, headers=headers(user)).status_code == 201

    send_at = as_utc(db.event_reminders.find_one({"event_id": "lab1"})['timings'][0]['send_at'])
    assert send_at == datetime.combine(day - timedelta(days=1), time(10, 0), CAMPUS_TZ)


def test_naive_request_date_is_stored_as_campus_midnight(client, db, make_user, headers):
    user = make_user()
    body = reminder_body(['1h'])
    client.post('/api/reminders', json=body, headers=headers(user))
    stored = as_utc(db.event_reminders.find_one()['event_date'])
    assert stored.astimezone(CAMPUS_TZ).strftime('%Y-%m-%dT%H:%M:%S') == body['event_date']


def callback_payload(**overrides):
    data = {
        "user_id": "64b7f0c2a1b2c3d4e5f60718",
        "user_email": "rafi@bscse.uiu.ac.bd",
        "user_name": "Rafi",
        "event_title": "Midterm",
        "event_date": "2026-03-10T00:00:00",
        "event_start_time": "10:00",
        "calendar_title": "Spring 2026",
        "calendar_id": "cal1",
        "calendar_type": "academic",
        "offset": "1d",
    }
    data.update(overrides)
    return data


@pytest.fixture
def no_signing_keys(monkeypatch):
    monkeypatch.setattr(config, 'QSTASH_CURRENT_SIGNING_KEY', '')
    monkeypatch.setattr(config, 'QSTASH_NEXT_SIGNING_KEY', '')


def test_send_reminder_callback(client, sent_emails, no_signing_keys):
    resp = client.post('/api/qstash/send-reminder', json=callback_payload())
    assert resp.status_code == 200
    to_email, subject, html = sent_emails.call_args.args
    assert to_email == 'rafi@bscse.uiu.ac.bd'
    assert subject == 'Reminder: Midterm'
    assert '1 day before' in html


def test_send_reminder_failure_asks_queue_to_retry(client, sent_emails, no_signing_keys):
    sent_emails.return_value = False
    assert client.post('/api/qstash/send-reminder', json=callback_payload()).status_code == 502


def test_send_reminder_checks_signature(client, monkeypatch, sent_emails):
    monkeypatch.setattr(config, 'QSTASH_CURRENT_SIGNING_KEY', 'current-signing-key')
    monkeypatch.setattr(config, 'QSTASH_NEXT_SIGNING_KEY', '')
    raw = json.dumps(callback_payload()).encode()

    resp = client.post('/api/qstash/send-reminder', data=raw, content_type='application/json',
                       headers={'Upstash-Signature': 'not-a-jwt'})
    assert resp.status_code == 401
    sent_emails.assert_not_called()

    now = int(datetime.now(timezone.utc).timestamp())
    signature = jwt.encode({
        'iss': 'Upstash',
        'sub': f"{config.APP_BASE_URL}/api/qstash/send-reminder",
        'body': base64.urlsafe_b64encode(hashlib.sha256(raw).digest()).decode().rstrip('='),
        'iat': now,
        'exp': now + 300,
    }, 'current-signing-key', algorithm='HS256')
    resp = client.post('/api/qstash/send-reminder', data=raw, content_type='application/json',
                       headers={'Upstash-Signature': signature})
    assert resp.status_code == 200


def test_daily_indexer_schedules_due_timings(client, db, queue, make_user, no_signing_keys):
    user = make_user()
    now = datetime.now(timezone.utc)
    db.event_reminders.insert_one({
        "user_id": user['_id'],
        "calendar_id": "cal1",
        "event_id": "evt1",
        "event_title": "Midterm",
        "event_date": now + timedelta(days=1),
        "enabled": True,
        "timings": [
            {"offset": "1d", "send_at": now + timedelta(hours=2), "is_scheduled": False, "message_id": None},
            {"offset": "3d", "send_at": now - timedelta(days=2), "is_scheduled": False, "message_id": None},
            {"offset": "1w", "send_at": now + timedelta(days=3), "is_scheduled": False, "message_id": None},
        ],
    })

    resp = client.post('/api/qstash/daily-indexer')
    assert resp.status_code == 200
    assert resp.get_json()['scheduled'] == 1

    timings = {t['offset']: t for t in db.event_reminders.find_one()['timings']}
    assert timings['1d']['is_scheduled'] is True
    assert timings['3d']['is_scheduled'] is False
    assert timings['1w']['is_scheduled'] is False


def bulk_body(action='subscribe', count=2, offsets=('1h',)):
    event_date, start_time = upcoming_event()
    return {
        "action": action,
        "calendar_id": "cal1",
        "calendar_title": "Spring 2026",
        "events": [
            {"_id": f"e{i}", "title": f"Quiz {i}", "date": event_date, "start_time": start_time}
            for i in range(1, count + 1)
        ],
        "reminder_offsets": list(offsets),
    }


def test_bulk_subscribe_and_unsubscribe(client, db, queue, make_user, headers, sent_emails):
    user = make_user()
    resp = client.post('/api/reminders/bulk', json=bulk_body(), headers=headers(user))
    assert resp.status_code == 201
    assert resp.get_json()['count'] == 2
    assert db.event_reminders.count_documents({"user_id": user['_id']}) == 2
    assert len(queue.published) == 2
    # one confirmation covers every new reminder
    sent_emails.assert_called_once()

    resp = client.post('/api/reminders/bulk', json={"action": "unsubscribe", "calendar_id": "cal1"},
                       headers=headers(user))
    assert resp.get_json()['deleted'] == 2
    assert sorted(queue.cancelled) == ['msg_1', 'msg_2']
    assert db.event_reminders.count_documents({}) == 0


def test_bulk_subscribe_needs_events(client, make_user, headers):
    body = dict(bulk_body(), events=[])
    assert client.post('/api/reminders/bulk', json=body, headers=headers(make_user())).status_code == 400


def test_bulk_subscribe_with_only_past_timings(client, make_user, headers):
    body = bulk_body(offsets=('1w',))
    assert client.post('/api/reminders/bulk', json=body, headers=headers(make_user())).status_code == 400


def digest_body(**overrides):
    body = {
        "action": "subscribe",
        "calendar_id": "cal1",
        "calendar_title": "Spring 2026",
        "time": "08:00",
        "timezone_offset": -360,
    }
    body.update(overrides)
    return body


def test_digest_subscribe_replace_and_unsubscribe(client, db, queue, make_user, headers):
    user = make_user()
    resp = client.post('/api/reminders/digest', json=digest_body(), headers=headers(user))
    assert resp.status_code == 200
    digest = resp.get_json()['digest']
    # 08:00 in Dhaka is 02:00 UTC
    assert digest['cron'] == '0 2 * * *'
    assert digest['schedule_id'] == 'sched_1'
    assert queue.schedules[0]['url'] == f"{config.APP_BASE_URL}/api/qstash/send-digest"
    assert queue.schedules[0]['body'] == {
        "user_id": str(user['_id']), "calendar_id": "cal1", "notify_on_empty_days": False,
    }

    fetched = client.get('/api/reminders/digest?calendar_id=cal1', headers=headers(user)).get_json()['digest']
    assert fetched['time'] == '08:00'

    client.post('/api/reminders/digest', json=digest_body(time='07:00'), headers=headers(user))
    assert queue.deleted_schedules == ['sched_1']
    assert db.digest_reminders.count_documents({}) == 1

    resp = client.post('/api/reminders/digest', json={"action": "unsubscribe", "calendar_id": "cal1"},
                       headers=headers(user))
    assert resp.get_json()['digest'] is None
    assert queue.deleted_schedules == ['sched_1', 'sched_2']
    assert db.digest_reminders.count_documents({}) == 0
    assert client.get('/api/reminders/digest?calendar_id=cal1', headers=headers(user)).get_json()['digest'] is None


def test_digest_subscribe_requires_time(client, make_user, headers):
    body = digest_body()
    del body['time']
    assert client.post('/api/reminders/digest', json=body, headers=headers(make_user())).status_code == 400
    assert client.get('/api/reminders/digest', headers=headers(make_user())).status_code == 400


@pytest.fixture
def digest_calendar(db, make_user):
    user = make_user()
    today = datetime.now(timezone.utc).astimezone(CAMPUS_TZ).date()

    def _make(events):
        calendar_id = db.user_calendars.insert_one({
            "user_id": user['_id'],
            "title": "Lab",
            "events": [
                {"_id": f"e{i}", "title": title, "start_time": "10:00",
                 "date": datetime.combine(today + timedelta(days=days), time(0), CAMPUS_TZ)}
                for i, (title, days) in enumerate(events)
            ],
        }).inserted_id
        return {"user_id": str(user['_id']), "calendar_id": str(calendar_id)}

    return _make


def test_send_digest_lists_todays_events(client, digest_calendar, sent_emails, no_signing_keys):
    payload = digest_calendar([("Lab session", 0), ("Viva", 1)])
    resp = client.post('/api/qstash/send-digest', json=payload)
    assert resp.get_json() == {"sent": True, "event_count": 1}

    _, subject, html = sent_emails.call_args.args
    assert subject == 'Daily Digest: Lab'
    assert 'Lab session' in html
    assert 'Viva' not in html


def test_send_digest_skips_empty_day_unless_asked(client, digest_calendar, sent_emails, no_signing_keys):
    payload = digest_calendar([("Viva", 1)])
    resp = client.post('/api/qstash/send-digest', json=payload)
    assert resp.get_json() == {"sent": False, "reason": "No events today"}
    sent_emails.assert_not_called()

    resp = client.post('/api/qstash/send-digest', json=dict(payload, notify_on_empty_days=True))
    assert resp.get_json() == {"sent": True, "event_count": 0}
    assert 'no events scheduled for today' in sent_emails.call_args.args[2]


def test_send_digest_for_missing_calendar_is_acknowledged(client, make_user, sent_emails, no_signing_keys):
    payload = {"user_id": str(make_user()['_id']), "calendar_id": "64b7f0c2a1b2c3d4e5f60718"}
    resp = client.post('/api/qstash/send-digest', json=payload)
    assert resp.status_code == 200
    assert resp.get_json()['sent'] is False
    sent_emails.assert_not_called()
