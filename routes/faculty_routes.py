import re

from flask import Blueprint, g, jsonify, request
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from auth import require_auth
from database import get_db, is_object_id, pagination, serialize, to_object_id, utcnow
from errors import Conflict, NotFound, ValidationError
from ratings import empty_aggregate
from schemas import FacultyIn, parse_body, parse_page

faculty_bp = Blueprint('faculty', __name__, url_prefix='/api/faculty')

SORT_FIELDS = {
    'name': 'name',
    'rating': 'average_rating',
    'reviews': 'total_reviews',
}


def find_faculty(id_or_slug, db=None):
    """Look a faculty up by ObjectId, or by a slug such as ``john-doe-jd`` whose last segment is the initials."""
    db = db if db is not None else get_db()
    if is_object_id(id_or_slug):
        faculty = db.faculty.find_one({"_id": to_object_id(id_or_slug)})
    else:
        initials = id_or_slug.rsplit('-', 1)[-1]
        faculty = db.faculty.find_one({"initials": {"$regex": f"^{re.escape(initials)}$", "$options": "i"}})
    if not faculty:
        raise NotFound("Faculty not found")
    return faculty


def new_faculty_doc(body, added_by=None, approved=True):
    now = utcnow()
    doc = body.model_dump()
    doc['initials'] = doc['initials'].upper()
    doc.update(empty_aggregate())
    doc.update({
        "added_by": added_by,
        "is_approved": approved,
        "created_at": now,
        "updated_at": now,
    })
    return doc


def insert_faculty(db, doc):
    if db.faculty.find_one({"initials": doc['initials']}):
        raise Conflict(f"Faculty with initials {doc['initials']} already exists")
    try:
        doc['_id'] = db.faculty.insert_one(doc).inserted_id
    except DuplicateKeyError:
        raise Conflict(f"Faculty with initials {doc['initials']} already exists")
    return doc


@faculty_bp.route('', methods=['GET'])
def list_faculty():
    db = get_db()
    page, limit = parse_page()
    query = {"is_approved": True}

    search = request.args.get('search', '').strip()
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"initials": pattern}, {"department": pattern}]
    department = request.args.get('department', '').strip()
    if department and department != 'all':
        query["department"] = department

    sort_by = request.args.get('sort_by', 'name')
    if sort_by not in SORT_FIELDS:
        raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}")
    direction = DESCENDING if request.args.get('order', 'asc') == 'desc' else ASCENDING

    total = db.faculty.count_documents(query)
    faculty = list(
        db.faculty.find(query)
        .sort([(SORT_FIELDS[sort_by], direction), ("_id", ASCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    departments = sorted(d for d in db.faculty.distinct("department", {"is_approved": True}) if d)
    return jsonify({
        "faculty": serialize(faculty),
        "departments": departments,
        "pagination": pagination(total, page, limit),
    }), 200


@faculty_bp.route('/check-initials', methods=['GET'])
def check_initials():
    initials = request.args.get('initials', '').strip().upper()
    if not initials:
        raise ValidationError("initials is required")
    exists = get_db().faculty.count_documents({"initials": initials}) > 0
    return jsonify({"initials": initials, "exists": exists}), 200


@faculty_bp.route('/<id_or_slug>', methods=['GET'])
def get_faculty(id_or_slug):
    return jsonify({"faculty": serialize(find_faculty(id_or_slug))}), 200


@faculty_bp.route('', methods=['POST'])
@require_auth
def add_faculty():
    body = parse_body(FacultyIn)
    doc = insert_faculty(get_db(), new_faculty_doc(body, added_by=g.current_user['_id']))
    return jsonify({"message": "Faculty added", "faculty": serialize(doc)}), 201
