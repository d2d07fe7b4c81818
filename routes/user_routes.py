from flask import Blueprint, g, jsonify
from pymongo import ReturnDocument

from auth import check_password, hash_password, public_user, require_auth
from database import get_db, utcnow
from errors import Unauthorized, ValidationError
from schemas import ChangePasswordIn, ProfileUpdate, parse_body

user_bp = Blueprint('user', __name__, url_prefix='/api/profile')


@user_bp.route('', methods=['GET'])
@require_auth
def get_profile():
    return jsonify({"user": public_user(g.current_user)}), 200


@user_bp.route('', methods=['PATCH'])
@require_auth
def update_profile():
    body = parse_body(ProfileUpdate)
    changes = {}
    if body.name is not None:
        changes['name'] = body.name
    if body.student_id is not None:
        changes['student_id'] = body.student_id
    if body.preferences is not None:
        # Preferences merge key by key so a client can update one toggle at a time
        for key, value in body.preferences.model_dump(exclude_unset=True).items():
            changes[f'preferences.{key}'] = value
    if not changes:
        raise ValidationError("Nothing to update")
    changes['updated_at'] = utcnow()

    user = get_db().users.find_one_and_update(
        {"_id": g.current_user['_id']},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    return jsonify({"message": "Profile updated", "user": public_user(user)}), 200


@user_bp.route('/change-password', methods=['POST'])
@require_auth
def change_password():
    body = parse_body(ChangePasswordIn)
    user = g.current_user
    if not check_password(body.current_password, user.get('password')):
        raise Unauthorized("Current password is incorrect")
    if body.current_password == body.new_password:
        raise ValidationError("New password must be different from the current password")

    db = get_db()
    db.users.update_one(
        {"_id": user['_id']},
        {"$set": {"password": hash_password(body.new_password), "updated_at": utcnow()}},
    )
    # Existing sessions must log in again with the new password
    db.refresh_tokens.delete_one({"user_id": user['_id']})
    return jsonify({"message": "Password changed successfully"}), 200
