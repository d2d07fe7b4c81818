import logging
import math
import re

from flask import Blueprint, g, jsonify, request
from pymongo.errors import DuplicateKeyError

from auth import optional_auth, require_auth
from database import get_db, is_object_id, pagination, serialize, to_object_id, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationError
from ratings import CATEGORIES, mark_pending, recompute_faculty_ratings
from schemas import ReactIn, ReviewIn, ReviewUpdate, parse_body, parse_page

logger = logging.getLogger(__name__)

review_bp = Blueprint('reviews', __name__, url_prefix='/api/reviews')

SORTS = {
    'recent': (lambda r: r['created_at'], True),
    'helpful': (lambda r: (len(r.get('likes', [])) - len(r.get('dislikes', [])), r['created_at']), True),
    'rating-high': (lambda r: (r['overall_rating'], r['created_at']), True),
    'rating-low': (lambda r: (r['overall_rating'], r['created_at']), False),
}


def overall_rating(ratings):
    """Mean of the four sub-ratings to one decimal, halves rounded up."""
    mean = sum(ratings[c] for c in CATEGORIES) / len(CATEGORIES)
    return math.floor(mean * 10 + 0.5) / 10


def public_review(review, viewer_id=None):
    """Review as shown to other students: the author stays anonymous, reactions become counts."""
    likes = review.get('likes', [])
    dislikes = review.get('dislikes', [])
    out = {k: v for k, v in review.items() if k not in ('user_id', 'likes', 'dislikes')}
    out['likes'] = len(likes)
    out['dislikes'] = len(dislikes)
    if viewer_id is not None:
        out['is_mine'] = review.get('user_id') == viewer_id
        out['user_reaction'] = 'like' if viewer_id in likes else 'dislike' if viewer_id in dislikes else None
    return serialize(out)


def own_review(db, review_id):
    review = db.reviews.find_one({"_id": to_object_id(review_id, 'Review')})
    if not review:
        raise NotFound("Review not found")
    if review['user_id'] != g.current_user['_id']:
        raise Forbidden("You can only modify your own reviews")
    return review


def alias_taken(db, name, user_id=None):
    """Whether another student already reviews under ``name``, ignoring case."""
    query = {"user_name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}
    if user_id is not None:
        query["user_id"] = {"$ne": user_id}
    return db.reviews.find_one(query, {"_id": 1}) is not None


def review_fields(body):
    ratings = body.ratings.model_dump()
    return {
        "course_history": [entry.model_dump() for entry in body.course_history],
        "ratings": ratings,
        "overall_rating": overall_rating(ratings),
        "comment": body.comment,
        "difficulty": body.difficulty,
        "would_take_again": body.would_take_again,
    }


@review_bp.route('', methods=['GET'])
@optional_auth
def list_reviews():
    faculty_id = request.args.get('faculty_id')
    if not faculty_id:
        raise ValidationError("faculty_id is required")
    sort_by = request.args.get('sort_by', 'recent')
    if sort_by not in SORTS:
        raise ValidationError(f"sort_by must be one of: {', '.join(SORTS)}")
    page, limit = parse_page()

    reviews = list(get_db().reviews.find({"faculty_id": to_object_id(faculty_id, 'Faculty')}))
    key, reverse = SORTS[sort_by]
    reviews.sort(key=key, reverse=reverse)

    viewer_id = g.current_user['_id'] if g.current_user else None
    start = (page - 1) * limit
    return jsonify({
        "reviews": [public_review(r, viewer_id) for r in reviews[start:start + limit]],
        "pagination": pagination(len(reviews), page, limit),
    }), 200


@review_bp.route('', methods=['POST'])
@require_auth
def create_review():
    body = parse_body(ReviewIn)
    db = get_db()
    user = g.current_user

    faculty_id = to_object_id(body.faculty_id, 'Faculty')
    if not db.faculty.find_one({"_id": faculty_id}):
        raise NotFound("Faculty not found")
    if db.reviews.find_one({"faculty_id": faculty_id, "user_id": user['_id']}):
        raise Conflict("You have already reviewed this faculty")
    if alias_taken(db, body.anonymous_name, user['_id']):
        raise Conflict("This anonymous name is already taken")

    now = utcnow()
    review = review_fields(body)
    review.update({
        "faculty_id": faculty_id,
        "user_id": user['_id'],
        "user_name": body.anonymous_name,
        "likes": [],
        "dislikes": [],
        "created_at": now,
        "updated_at": now,
    })
    try:
        review['_id'] = db.reviews.insert_one(review).inserted_id
    except DuplicateKeyError:
        raise Conflict("You have already reviewed this faculty")

    aggregate = recompute_faculty_ratings(db, faculty_id)
    return jsonify({
        "message": "Review submitted",
        "review": public_review(review, user['_id']),
        "faculty_ratings": aggregate,
    }), 201


@review_bp.route('/<review_id>', methods=['PUT'])
@require_auth
def update_review(review_id):
    body = parse_body(ReviewUpdate)
    db = get_db()
    review = own_review(db, review_id)

    changes = review_fields(body)
    changes['updated_at'] = utcnow()
    db.reviews.update_one({"_id": review['_id']}, {"$set": changes})
    review.update(changes)

    aggregate = recompute_faculty_ratings(db, review['faculty_id'])
    return jsonify({
        "message": "Review updated",
        "review": public_review(review, g.current_user['_id']),
        "faculty_ratings": aggregate,
    }), 200


@review_bp.route('/<review_id>', methods=['DELETE'])
@require_auth
def delete_review(review_id):
    db = get_db()
    review = own_review(db, review_id)
    delete_and_recompute(db, review, reason='review deleted by author')
    return jsonify({"message": "Review deleted"}), 200


def delete_and_recompute(db, review, reason):
    """Delete a review and bring its faculty's aggregate back in line.

    The pending marker is written first, so if the recompute never runs the
    faculty is picked up by ``drain_pending_recomputes`` later.
    """
    mark_pending(db, review['faculty_id'], reason)
    db.reviews.delete_one({"_id": review['_id']})
    return recompute_faculty_ratings(db, review['faculty_id'])


@review_bp.route('/<review_id>/react', methods=['POST'])
@require_auth
def react(review_id):
    body = parse_body(ReactIn)
    db = get_db()
    review = db.reviews.find_one({"_id": to_object_id(review_id, 'Review')})
    if not review:
        raise NotFound("Review not found")

    user_id = g.current_user['_id']
    likes = [u for u in review.get('likes', []) if u != user_id]
    dislikes = [u for u in review.get('dislikes', []) if u != user_id]
    target = 'likes' if body.action == 'like' else 'dislikes'
    # Same reaction twice clears it; otherwise switch to the new one
    if user_id not in review.get(target, []):
        (likes if target == 'likes' else dislikes).append(user_id)

    db.reviews.update_one({"_id": review['_id']}, {"$set": {"likes": likes, "dislikes": dislikes}})
    review.update(likes=likes, dislikes=dislikes)
    return jsonify({"review": public_review(review, user_id)}), 200


@review_bp.route('/mine', methods=['GET'])
@require_auth
def my_reviews():
    db = get_db()
    user_id = g.current_user['_id']
    reviews = list(db.reviews.find({"user_id": user_id}).sort("created_at", -1))
    faculty_ids = list({r['faculty_id'] for r in reviews})
    faculty = {
        f['_id']: f for f in db.faculty.find({"_id": {"$in": faculty_ids}}, {"name": 1, "initials": 1})
    }
    out = []
    for review in reviews:
        item = public_review(review, user_id)
        match = faculty.get(review['faculty_id'])
        item['faculty'] = serialize(match) if match else None
        out.append(item)
    return jsonify({"reviews": out}), 200


@review_bp.route('/check-username', methods=['GET'])
@optional_auth
def check_username():
    name = request.args.get('user_name', '').strip()
    if len(name) < 2:
        return jsonify({"available": False, "error": "Name must be at least 2 characters"}), 200
    user_id = g.current_user['_id'] if g.current_user else None
    return jsonify({"available": not alias_taken(get_db(), name, user_id)}), 200


@review_bp.route('/check-reviewed', methods=['GET'])
@optional_auth
def check_reviewed():
    faculty_id = request.args.get('faculty_id', '')
    if not g.current_user or not is_object_id(faculty_id):
        return jsonify({"has_reviewed": False, "review_id": None}), 200
    review = get_db().reviews.find_one(
        {"faculty_id": to_object_id(faculty_id, 'Faculty'), "user_id": g.current_user['_id']}, {"_id": 1}
    )
    return jsonify({"has_reviewed": review is not None, "review_id": str(review['_id']) if review else None}), 200


@review_bp.route('/my-usernames', methods=['GET'])
@optional_auth
def my_usernames():
    """Aliases the caller has reviewed under, most recent first."""
    if not g.current_user:
        return jsonify({"usernames": []}), 200
    seen = {}
    reviews = get_db().reviews.find({"user_id": g.current_user['_id']}, {"user_name": 1, "created_at": 1})
    for review in reviews.sort([("created_at", -1), ("_id", -1)]):
        name = review.get('user_name')
        if name and name.lower() not in seen:
            seen[name.lower()] = name
    return jsonify({"usernames": list(seen.values())}), 200
