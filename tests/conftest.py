"""Pytest configuration and fixtures: an in-memory MongoDB, a fake reminder queue and patched email."""

from unittest.mock import patch

import mongomock
import pytest

from app import create_app
from auth import generate_access_token, hash_password
from database import utcnow


class FakeQueue:
    """Records publish, cancel and schedule calls instead of talking to QStash."""

    def __init__(self, enabled=True):
        self.enabled = enabled
        self.published = []
        self.cancelled = []
        self.schedules = []
        self.deleted_schedules = []

    def publish_json(self, callback_url, body, not_before):
        self.published.append({"url": callback_url, "body": body, "not_before": not_before})
        return f"msg_{len(self.published)}"

    def cancel(self, message_ids):
        self.cancelled.extend(message_ids)

    def create_schedule(self, callback_url, body, cron):
        self.schedules.append({"url": callback_url, "body": body, "cron": cron})
        return f"sched_{len(self.schedules)}"

    def delete_schedule(self, schedule_id):
        self.deleted_schedules.append(schedule_id)


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)['StudentHubTest']


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def app(db, queue):
    return create_app(db=db, queue=queue, config_overrides={'TESTING': True, 'RATELIMIT_ENABLED': False})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def sent_emails():
    """Every outgoing email succeeds without touching SendGrid."""
    with patch('mailer.send_email', return_value=True) as send:
        yield send


@pytest.fixture
def make_user(db):
    counter = {'n': 0}

    def _make(email=None, role='user', password=None, verified=True, name='Test Student'):
        counter['n'] += 1
        now = utcnow()
        user = {
            "name": name,
            "email": email or f"student{counter['n']}@bscse.uiu.ac.bd",
            "password": hash_password(password) if password else None,
            "student_id": "011201001",
            "role": role,
            "permissions": [],
            "email_verified": verified,
            "preferences": {},
            "created_at": now,
            "updated_at": now,
        }
        user['_id'] = db.users.insert_one(user).inserted_id
        return user

    return _make


@pytest.fixture
def headers():
    def _headers(user):
        return {'Authorization': f"Bearer {generate_access_token(user)}"}
    return _headers


@pytest.fixture
def make_faculty(db):
    def _make(initials='ABC', name='Alice Bob Carter', department='CSE', approved=True):
        now = utcnow()
        doc = {
            "name": name,
            "initials": initials,
            "department": department,
            "designation": "Lecturer",
            "average_rating": 0,
            "total_reviews": 0,
            "rating_breakdown": {"teaching": 0, "grading": 0, "friendliness": 0, "availability": 0},
            "is_approved": approved,
            "created_at": now,
            "updated_at": now,
        }
        doc['_id'] = db.faculty.insert_one(doc).inserted_id
        return doc

    return _make
