"""Faculty aggregate ratings.

A faculty document stores ``average_rating``, ``total_reviews`` and
``rating_breakdown``; they are derived from the faculty's current review set and
only ever written here.
"""
import logging

from database import to_object_id, utcnow

logger = logging.getLogger(__name__)

CATEGORIES = ('teaching', 'grading', 'friendliness', 'availability')


def empty_aggregate():
    return {
        'average_rating': 0,
        'total_reviews': 0,
        'rating_breakdown': {category: 0 for category in CATEGORIES},
    }


def aggregate_ratings(reviews):
    """Mean overall rating and per-category means over ``reviews``.

    ``average_rating`` averages each review's stored ``overall_rating``; it is not
    re-derived from the four sub-ratings.
    """
    reviews = list(reviews)
    if not reviews:
        return empty_aggregate()

    totals = {category: 0 for category in CATEGORIES}
    overall = 0
    for review in reviews:
        for category in CATEGORIES:
            totals[category] += review['ratings'][category]
        overall += review['overall_rating']

    count = len(reviews)
    return {
        'average_rating': overall / count,
        'total_reviews': count,
        'rating_breakdown': {category: totals[category] / count for category in CATEGORIES},
    }


def recompute_faculty_ratings(db, faculty_id):
    """Re-aggregate one faculty from its stored reviews and replace the aggregate fields."""
    faculty_id = to_object_id(faculty_id, 'Faculty')
    started = utcnow()
    reviews = db.reviews.find(
        {"faculty_id": faculty_id},
        {"ratings": 1, "overall_rating": 1},
    )
    aggregate = aggregate_ratings(reviews)
    db.faculty.update_one(
        {"_id": faculty_id},
        {"$set": dict(aggregate, updated_at=utcnow())},
    )
    # Markers written after the read belong to writes this pass did not see
    db.rating_recomputes.delete_many({"faculty_id": faculty_id, "created_at": {"$lte": started}})
    return aggregate


def mark_pending(db, faculty_id, reason):
    """Record that ``faculty_id`` needs a recompute before a review write happens."""
    db.rating_recomputes.insert_one({
        "faculty_id": to_object_id(faculty_id, 'Faculty'),
        "reason": reason,
        "created_at": utcnow(),
    })


def drain_pending_recomputes(db):
    """Recompute every faculty left with a pending marker (a write that was never followed by a recompute)."""
    faculty_ids = db.rating_recomputes.distinct("faculty_id")
    for faculty_id in faculty_ids:
        recompute_faculty_ratings(db, faculty_id)
    if faculty_ids:
        logger.info("SUCCESS: Recomputed ratings for %d faculty.", len(faculty_ids))
    return len(faculty_ids)
