import logging
from datetime import datetime, timezone
from bson import ObjectId
from bson.errors import InvalidId
from flask import current_app
from gridfs import GridFS
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from errors import NotFound

logger = logging.getLogger(__name__)


def connect(uri=None, db_name=None):
    """Create the MongoDB client and return the database handle (connection is lazy)."""
    client = MongoClient(uri or config.MONGO_URI, serverSelectionTimeoutMS=5000, tz_aware=True)
    return client[db_name or config.DB_NAME]


def check_connection(db):
    db.client.admin.command('ping')
    logger.info("SUCCESS: Successfully connected to MongoDB!")


def get_db():
    return current_app.extensions['mongo_db']


def get_fs():
    return GridFS(get_db())


def ensure_indexes(db):
    """Create the unique and lookup indexes the collections rely on."""
    db.users.create_index([("email", ASCENDING)], unique=True)
    db.faculty.create_index([("initials", ASCENDING)], unique=True)
    db.faculty.create_index([("department", ASCENDING)])
    db.reviews.create_index([("faculty_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    db.reviews.create_index([("faculty_id", ASCENDING), ("created_at", DESCENDING)])
    db.qb_folders.create_index([("parent_id", ASCENDING), ("order", ASCENDING)])
    db.event_reminders.create_index(
        [("user_id", ASCENDING), ("calendar_id", ASCENDING), ("event_id", ASCENDING)], unique=True
    )
    db.event_reminders.create_index([("enabled", ASCENDING), ("timings.send_at", ASCENDING)])
    db.cgpa_records.create_index([("user_id", ASCENDING)], unique=True)
    db.settings.create_index([("key", ASCENDING)], unique=True)
    db.rating_recomputes.create_index([("faculty_id", ASCENDING)])
    db.digest_reminders.create_index([("user_id", ASCENDING), ("calendar_id", ASCENDING)], unique=True)
    db.calendar_comments.create_index([("calendar_id", ASCENDING), ("date", ASCENDING)])
    db.calendar_comments.create_index([("user_id", ASCENDING)])
    logger.info("SUCCESS: Indexes ensured.")


# --- Document helpers ---
def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Normalize a stored timestamp (datetime or ISO string) to an aware UTC datetime, else None."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_object_id(value, what='Resource'):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def is_object_id(value):
    return isinstance(value, str) and ObjectId.is_valid(value) and len(value) == 24


def serialize(value):
    """Convert a Mongo document (or list of them) to JSON-safe primitives."""
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items() if k != 'password'}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


def pagination(total, page, limit):
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit if limit else 0,
    }
