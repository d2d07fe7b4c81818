import logging
import re

import pandas as pd
from flask import Blueprint, g, jsonify, request
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from auth import (
    allowed_email_domains,
    ensure_first_admin,
    issue_tokens,
    public_user,
    require_admin,
    require_auth,
)
from database import get_db, pagination, serialize, to_object_id, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationError
from ratings import empty_aggregate, recompute_faculty_ratings
from routes.faculty_routes import insert_faculty, new_faculty_doc
from routes.reminder_routes import cancel_digests, cancel_reminders
from routes.review_routes import delete_and_recompute
from schemas import DomainsIn, FacultyIn, FacultyUpdate, UserAdminUpdate, parse_body, parse_page

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

FACULTY_COLUMNS = ('Name', 'Initials', 'Department')
OPTIONAL_FACULTY_COLUMNS = {'Designation': 'designation', 'Email': 'email'}


def _search(fields):
    term = request.args.get('search', '').strip()
    if not term:
        return {}
    pattern = {"$regex": re.escape(term), "$options": "i"}
    return {"$or": [{field: pattern} for field in fields]}


def _paged(collection, query, sort):
    page, limit = parse_page()
    total = collection.count_documents(query)
    docs = list(collection.find(query).sort(sort).skip((page - 1) * limit).limit(limit))
    return docs, pagination(total, page, limit)


# --- Bootstrap ---
@admin_bp.route('/setup', methods=['POST'])
@require_auth
def setup_first_admin():
    """Promote the caller to admin, but only while the system has no admin at all."""
    db = get_db()
    user = ensure_first_admin(db, g.current_user['_id'])
    if not user:
        raise Forbidden("An admin already exists")
    response = {"message": "You are now the administrator.", "user": public_user(user)}
    response.update(issue_tokens(db, user))
    return jsonify(response), 200


@admin_bp.route('/stats', methods=['GET'])
@require_admin
def stats():
    db = get_db()
    return jsonify({
        "users": db.users.count_documents({}),
        "verified_users": db.users.count_documents({"email_verified": True}),
        "admins": db.users.count_documents({"role": "admin"}),
        "faculty": db.faculty.count_documents({}),
        "pending_faculty": db.faculty.count_documents({"is_approved": False}),
        "reviews": db.reviews.count_documents({}),
        "question_bank_folders": db.qb_folders.count_documents({}),
        "academic_calendars": db.academic_calendars.count_documents({}),
        "courses": db.courses.count_documents({}),
        "active_reminders": db.event_reminders.count_documents({"enabled": True}),
    }), 200


# --- Users ---
@admin_bp.route('/users', methods=['GET'])
@require_admin
def list_users():
    users, meta = _paged(get_db().users, _search(['name', 'email', 'student_id']), [("created_at", -1)])
    return jsonify({"users": [public_user(u) for u in users], "pagination": meta}), 200


@admin_bp.route('/users/<user_id>', methods=['PATCH'])
@require_admin
def update_user(user_id):
    body = parse_body(UserAdminUpdate)
    target_id = to_object_id(user_id, 'User')
    changes = {}
    if body.role is not None:
        if target_id == g.current_user['_id'] and body.role != 'admin':
            raise ValidationError("You cannot remove your own admin role")
        changes['role'] = body.role
    if body.permissions is not None:
        unknown = set(body.permissions) - set(config.ALLOWED_PERMISSIONS)
        if unknown:
            raise ValidationError(f"Unknown permissions: {', '.join(sorted(unknown))}")
        changes['permissions'] = sorted(set(body.permissions))
    changes['updated_at'] = utcnow()

    user = get_db().users.find_one_and_update(
        {"_id": target_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not user:
        raise NotFound("User not found")
    return jsonify({"message": "User updated", "user": public_user(user)}), 200


@admin_bp.route('/users/<user_id>', methods=['DELETE'])
@require_admin
def delete_user(user_id):
    db = get_db()
    target_id = to_object_id(user_id, 'User')
    if target_id == g.current_user['_id']:
        raise ValidationError("You cannot delete your own account")
    if not db.users.find_one({"_id": target_id}):
        raise NotFound("User not found")

    for review in list(db.reviews.find({"user_id": target_id}, {"faculty_id": 1})):
        delete_and_recompute(db, review, reason='author account deleted')
    cancel_reminders(db, {"user_id": target_id})
    cancel_digests(db, {"user_id": target_id})
    calendar_ids = [str(c['_id']) for c in db.user_calendars.find({"user_id": target_id}, {"_id": 1})]
    db.calendar_comments.delete_many({"$or": [{"user_id": target_id}, {"calendar_id": {"$in": calendar_ids}}]})
    db.user_calendars.delete_many({"user_id": target_id})
    db.cgpa_records.delete_many({"user_id": target_id})
    db.refresh_tokens.delete_many({"user_id": target_id})
    db.users.delete_one({"_id": target_id})
    logger.info("SUCCESS: Deleted user %s and their data.", target_id)
    return jsonify({"message": "User deleted"}), 200


# --- Allowed email domains ---
@admin_bp.route('/domains', methods=['GET'])
@require_admin
def get_domains():
    return jsonify({"domains": allowed_email_domains(get_db())}), 200


@admin_bp.route('/domains', methods=['PUT'])
@require_admin
def set_domains():
    body = parse_body(DomainsIn)
    domains = list(dict.fromkeys(body.domains))
    get_db().settings.update_one(
        {"key": config.ALLOWED_EMAIL_DOMAINS_KEY},
        {"$set": {"value": domains, "updated_at": utcnow()}},
        upsert=True,
    )
    return jsonify({"message": "Allowed domains updated", "domains": domains}), 200


# --- Faculty ---
@admin_bp.route('/faculty', methods=['GET'])
@require_admin
def list_all_faculty():
    query = _search(['name', 'initials', 'department'])
    if request.args.get('status') == 'pending':
        query['is_approved'] = False
    faculty, meta = _paged(get_db().faculty, query, [("name", 1)])
    return jsonify({"faculty": serialize(faculty), "pagination": meta}), 200


@admin_bp.route('/faculty', methods=['POST'])
@require_admin
def create_faculty():
    body = parse_body(FacultyIn)
    doc = insert_faculty(get_db(), new_faculty_doc(body, added_by=g.current_user['_id']))
    return jsonify({"message": "Faculty added", "faculty": serialize(doc)}), 201


@admin_bp.route('/faculty/<faculty_id>', methods=['PATCH'])
@require_admin
def update_faculty(faculty_id):
    body = parse_body(FacultyUpdate)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    if changes.get('initials'):
        changes['initials'] = changes['initials'].upper()
    changes['updated_at'] = utcnow()

    db = get_db()
    target_id = to_object_id(faculty_id, 'Faculty')
    if 'initials' in changes and db.faculty.find_one({"initials": changes['initials'], "_id": {"$ne": target_id}}):
        raise Conflict(f"Faculty with initials {changes['initials']} already exists")
    try:
        faculty = db.faculty.find_one_and_update(
            {"_id": target_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise Conflict(f"Faculty with initials {changes['initials']} already exists")
    if not faculty:
        raise NotFound("Faculty not found")
    return jsonify({"message": "Faculty updated", "faculty": serialize(faculty)}), 200


@admin_bp.route('/faculty/<faculty_id>', methods=['DELETE'])
@require_admin
def delete_faculty(faculty_id):
    db = get_db()
    target_id = to_object_id(faculty_id, 'Faculty')
    if not db.faculty.find_one({"_id": target_id}):
        raise NotFound("Faculty not found")
    removed = db.reviews.delete_many({"faculty_id": target_id}).deleted_count
    db.faculty.delete_one({"_id": target_id})
    db.rating_recomputes.delete_many({"faculty_id": target_id})
    return jsonify({"message": "Faculty deleted", "deleted_reviews": removed}), 200


@admin_bp.route('/faculty/upload', methods=['POST'])
@require_admin
def upload_faculty_list():
    """Bulk add/update faculty from an Excel sheet, matched on initials."""
    if 'file' not in request.files:
        raise ValidationError("No file part")
    try:
        df = pd.read_excel(request.files['file'])
    except (ValueError, OSError) as e:
        raise ValidationError(f"Could not read Excel file: {e}")

    missing = [c for c in FACULTY_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationError(f"Excel must contain columns: {', '.join(FACULTY_COLUMNS)}")

    db = get_db()
    now = utcnow()
    count = 0
    for _, row in df.iterrows():
        name, initials, department = (row[c] for c in FACULTY_COLUMNS)
        if not all(isinstance(v, str) and v.strip() for v in (name, initials, department)):
            continue
        fields = {
            "name": name.strip(),
            "department": department.strip(),
            "is_approved": True,
            "updated_at": now,
        }
        for column, field in OPTIONAL_FACULTY_COLUMNS.items():
            value = row.get(column)
            if isinstance(value, str) and value.strip():
                fields[field] = value.strip()

        on_insert = dict(empty_aggregate(), designation="Lecturer", added_by=g.current_user["_id"], created_at=now)
        for field in fields:
            on_insert.pop(field, None)
        db.faculty.update_one(
            {"initials": initials.strip().upper()},
            {"$set": fields, "$setOnInsert": on_insert},
            upsert=True,
        )
        count += 1
    logger.info("SUCCESS: Processed %d faculty rows from upload.", count)
    return jsonify({"message": f"Successfully processed {count} faculty records.", "processed": count}), 200


# --- Reviews ---
@admin_bp.route('/reviews', methods=['GET'])
@require_admin
def list_all_reviews():
    db = get_db()
    query = _search(['comment', 'user_name'])
    if request.args.get('faculty_id'):
        query['faculty_id'] = to_object_id(request.args['faculty_id'], 'Faculty')
    reviews, meta = _paged(db.reviews, query, [("created_at", -1)])
    names = {
        f['_id']: f['name']
        for f in db.faculty.find({"_id": {"$in": list({r['faculty_id'] for r in reviews})}}, {"name": 1})
    }
    for review in reviews:
        review['faculty_name'] = names.get(review['faculty_id'])
    return jsonify({"reviews": serialize(reviews), "pagination": meta}), 200


@admin_bp.route('/reviews/<review_id>', methods=['DELETE'])
@require_admin
def delete_any_review(review_id):
    db = get_db()
    review = db.reviews.find_one({"_id": to_object_id(review_id, 'Review')})
    if not review:
        raise NotFound("Review not found")
    aggregate = delete_and_recompute(db, review, reason='review removed by admin')
    return jsonify({"message": "Review deleted", "faculty_ratings": aggregate}), 200


@admin_bp.route('/ratings/recompute', methods=['POST'])
@require_admin
def recompute_all_ratings():
    """Rebuild every faculty aggregate from its stored reviews."""
    db = get_db()
    faculty_ids = [f['_id'] for f in db.faculty.find({}, {"_id": 1})]
    for faculty_id in faculty_ids:
        recompute_faculty_ratings(db, faculty_id)
    return jsonify({"message": "Ratings recomputed", "faculty": len(faculty_ids)}), 200
