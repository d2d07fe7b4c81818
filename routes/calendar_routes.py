import re
from datetime import date, datetime, time, timedelta

from flask import Blueprint, g, jsonify, request
from pymongo import ASCENDING, DESCENDING

import config
from auth import require_auth
from database import as_utc, get_db, serialize, to_object_id, utcnow
from errors import NotFound, ValidationError
from reminders import CAMPUS_TZ
from resources import Resource
from routes.reminder_routes import cancel_digests, cancel_reminders
from schemas import (
    AcademicCalendarIn,
    AcademicCalendarUpdate,
    CalendarCommentIn,
    CourseIn,
    CourseUpdate,
    UserCalendarIn,
    UserCalendarUpdate,
    parse_body,
)

calendar_bp = Blueprint('calendars', __name__, url_prefix='/api')

COURSE_SEARCH_LIMIT = 20
RECENT_COMMENTS_LIMIT = 50
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def _drop_calendar_followers(db, calendar):
    """Reminders, digests and comments attached to a deleted calendar."""
    calendar_id = str(calendar['_id'])
    cancel_reminders(db, {"calendar_id": calendar_id})
    cancel_digests(db, {"calendar_id": calendar_id})
    db.calendar_comments.delete_many({"calendar_id": calendar_id})


user_calendars = Resource(
    'user_calendars', 'calendar', 'calendars',
    UserCalendarIn, UserCalendarUpdate,
    access='auth',
    owner_field='user_id',
    max_per_owner=config.MAX_USER_CALENDARS,
    embedded_lists=('events', 'todos'),
    after_delete=_drop_calendar_followers,
).register(calendar_bp, '/calendars', endpoint='user_calendars')

academic_calendars = Resource(
    'academic_calendars', 'calendar', 'calendars',
    AcademicCalendarIn, AcademicCalendarUpdate,
    access='admin',
    creator_field='created_by',
    sort=(('start_date', DESCENDING), ('created_at', DESCENDING)),
    embedded_lists=('events',),
    after_delete=_drop_calendar_followers,
    public_filter={"published": True},
    filter_args=('term_code',),
)
academic_calendars.register(calendar_bp, '/admin/calendars', endpoint='academic_calendars')
academic_calendars.register_public(calendar_bp, '/calendars/public', endpoint='academic_calendars')

courses = Resource(
    'courses', 'course', 'courses',
    CourseIn, CourseUpdate,
    access='admin',
    sort=(('code', ASCENDING),),
).register(calendar_bp, '/admin/courses')


@calendar_bp.route('/courses/search', methods=['GET'])
def search_courses():
    q = request.args.get('q', '').strip()
    if not q:
        return jsonify({"courses": []}), 200
    pattern = {"$regex": re.escape(q), "$options": "i"}
    found = (
        get_db().courses.find({"$or": [{"code": pattern}, {"title": pattern}]})
        .sort("code", ASCENDING)
        .limit(COURSE_SEARCH_LIMIT)
    )
    return jsonify({"courses": serialize(list(found))}), 200


# --- Day comments ---
def campus_day_window(value):
    """UTC bounds of one campus calendar day given as YYYY-MM-DD."""
    try:
        day = date.fromisoformat(value)
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD")
    start = datetime.combine(day, time(0), CAMPUS_TZ)
    return start, start + timedelta(days=1)


def campus_date(value):
    return as_utc(value).astimezone(CAMPUS_TZ).date().isoformat()


@calendar_bp.route('/calendars/<calendar_id>/comments', methods=['GET'])
def list_comments(calendar_id):
    """Comments on a calendar's days.

    ``mode=dates`` gives the latest comment and a count per campus day,
    ``mode=all`` every comment, ``date=YYYY-MM-DD`` one day; otherwise the most recent ones.
    """
    comments = get_db().calendar_comments
    query = {"calendar_id": calendar_id}
    if request.args.get('type'):
        query['calendar_type'] = request.args['type']
    mode = request.args.get('mode')

    if mode == 'dates':
        days = {}
        for comment in comments.find(query).sort(NEWEST_FIRST):
            key = campus_date(comment['date'])
            if key in days:
                days[key]['count'] += 1
            else:
                days[key] = {"text": comment['text'], "count": 1}
        return jsonify({"dates": days}), 200

    if mode == 'all':
        found = comments.find(query).sort([("date", DESCENDING)] + NEWEST_FIRST)
    elif request.args.get('date'):
        start, end = campus_day_window(request.args['date'])
        query['date'] = {"$gte": start, "$lt": end}
        found = comments.find(query).sort(NEWEST_FIRST)
    else:
        found = comments.find(query).sort(NEWEST_FIRST).limit(RECENT_COMMENTS_LIMIT)
    return jsonify({"comments": serialize(list(found))}), 200


@calendar_bp.route('/calendars/<calendar_id>/comments', methods=['POST'])
@require_auth
def add_comment(calendar_id):
    body = parse_body(CalendarCommentIn)
    user = g.current_user
    comment = {
        "calendar_id": calendar_id,
        "calendar_type": body.calendar_type,
        "date": body.date,
        "text": body.text,
        "user_id": user['_id'],
        "user_name": user.get('name') or 'Anonymous',
        "created_at": utcnow(),
    }
    comment['_id'] = get_db().calendar_comments.insert_one(comment).inserted_id
    return jsonify({"comment": serialize(comment)}), 201


@calendar_bp.route('/comments/<comment_id>', methods=['DELETE'])
@require_auth
def delete_comment(comment_id):
    result = get_db().calendar_comments.delete_one({
        "_id": to_object_id(comment_id, 'Comment'),
        "user_id": g.current_user['_id'],
    })
    if not result.deleted_count:
        raise NotFound("Comment not found")
    return jsonify({"message": "Comment deleted"}), 200
