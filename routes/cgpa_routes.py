from flask import Blueprint, g, jsonify

from auth import require_auth
from database import get_db, serialize, utcnow
from grading import calculate_cgpa
from schemas import CGPARecordIn, parse_body

cgpa_bp = Blueprint('cgpa', __name__, url_prefix='/api/cgpa')


@cgpa_bp.route('', methods=['GET'])
@require_auth
def get_record():
    record = get_db().cgpa_records.find_one({"user_id": g.current_user['_id']})
    return jsonify({"record": serialize(record) if record else None}), 200


@cgpa_bp.route('', methods=['POST'])
@require_auth
def save_record():
    """Store the user's trimesters; GPA/CGPA results are always recomputed here, never taken from the client."""
    body = parse_body(CGPARecordIn)
    data = body.model_dump()
    results = calculate_cgpa(data['trimesters'], data['previous_credits'], data['previous_cgpa'])

    now = utcnow()
    db = get_db()
    db.cgpa_records.update_one(
        {"user_id": g.current_user['_id']},
        {
            "$set": dict(data, results=results, updated_at=now),
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    record = db.cgpa_records.find_one({"user_id": g.current_user['_id']})
    return jsonify({"message": "CGPA record saved", "record": serialize(record)}), 200
