import logging
import os

from bson import ObjectId
from flask import Blueprint, Response, g, jsonify, request
from gridfs.errors import NoFile
from pymongo import UpdateOne
from werkzeug.utils import secure_filename

import config
from auth import require_admin
from database import get_db, get_fs, serialize, to_object_id, utcnow
from errors import NotFound, ValidationError
from question_tree import build_folder_tree, descendant_ids, sort_folder_files, would_create_cycle
from schemas import FolderIn, FolderUpdate, ReorderIn, parse_body

logger = logging.getLogger(__name__)

question_bank_bp = Blueprint('question_bank', __name__, url_prefix='/api')

CONTENT_TYPES = {
    'pdf': 'application/pdf',
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'webp': 'image/webp',
}


# --- GridFS storage ---
def store_file(data, filename, content_type):
    return get_fs().put(data, filename=filename, content_type=content_type)


def delete_stored_files(storage_ids):
    fs = get_fs()
    for storage_id in storage_ids:
        try:
            fs.delete(to_object_id(storage_id, 'File'))
        except NotFound:
            logger.warning("Warning: skipping malformed storage id %s", storage_id)


def _folder(db, folder_id):
    folder = db.qb_folders.find_one({"_id": to_object_id(folder_id, 'Folder')})
    if not folder:
        raise NotFound("Folder not found")
    return folder


def _next_order(items):
    return max((item.get('order', 0) for item in items), default=0) + 1


def _apply_file_orders(folder, orders):
    """Return the folder's file list with ``order`` rewritten from ``{file_id: order}``."""
    files = []
    for item in folder.get('files', []):
        item = dict(item)
        if item['_id'] in orders:
            item['order'] = orders[item['_id']]
        files.append(item)
    return files


# --- Public ---
@question_bank_bp.route('/question-bank', methods=['GET'])
def get_question_bank():
    folders = list(get_db().qb_folders.find())
    sort_folder_files(folders)
    tree = build_folder_tree(folders)
    return jsonify({"tree": serialize(tree), "folders": serialize(folders)}), 200


@question_bank_bp.route('/question-bank/files/<storage_id>', methods=['GET'])
def download_file(storage_id):
    try:
        grid_out = get_fs().get(to_object_id(storage_id, 'File'))
    except NoFile:
        raise NotFound("File not found")
    filename = grid_out.filename or 'file'
    return Response(
        grid_out.read(),
        mimetype=getattr(grid_out, 'content_type', None) or 'application/octet-stream',
        headers={'Content-Disposition': f'inline; filename="{filename}"'},
    )


# --- Admin ---
@question_bank_bp.route('/admin/question-bank/folders', methods=['POST'])
@require_admin
def create_folder():
    body = parse_body(FolderIn)
    db = get_db()
    parent_id = None
    if body.parent_id:
        parent_id = _folder(db, body.parent_id)['_id']

    siblings = db.qb_folders.find({"parent_id": parent_id}, {"order": 1})
    now = utcnow()
    folder = {
        "name": body.name,
        "parent_id": parent_id,
        "order": _next_order(siblings),
        "files": [],
        "created_by": g.current_user['_id'],
        "created_at": now,
        "updated_at": now,
    }
    folder['_id'] = db.qb_folders.insert_one(folder).inserted_id
    return jsonify({"message": "Folder created", "folder": serialize(folder)}), 201


@question_bank_bp.route('/admin/question-bank/folders/<folder_id>', methods=['PATCH'])
@require_admin
def update_folder(folder_id):
    body = parse_body(FolderUpdate)
    db = get_db()
    folder = _folder(db, folder_id)

    changes = {}
    if body.name is not None:
        changes['name'] = body.name
    if body.order is not None:
        changes['order'] = body.order
    if 'parent_id' in body.model_fields_set:
        new_parent = None
        if body.parent_id:
            new_parent = _folder(db, body.parent_id)['_id']
            all_folders = list(db.qb_folders.find({}, {"parent_id": 1}))
            if would_create_cycle(all_folders, folder['_id'], new_parent):
                raise ValidationError("A folder cannot be moved inside itself or its subfolders")
        changes['parent_id'] = new_parent
    if body.file_orders is not None:
        changes['files'] = _apply_file_orders(folder, {o.file_id: o.order for o in body.file_orders})
    if not changes:
        raise ValidationError("Nothing to update")

    changes['updated_at'] = utcnow()
    db.qb_folders.update_one({"_id": folder['_id']}, {"$set": changes})
    folder.update(changes)
    return jsonify({"message": "Folder updated", "folder": serialize(folder)}), 200


@question_bank_bp.route('/admin/question-bank/folders/<folder_id>', methods=['DELETE'])
@require_admin
def delete_folder(folder_id):
    """Delete a folder, every subfolder below it and their stored files."""
    db = get_db()
    folder = _folder(db, folder_id)
    all_folders = list(db.qb_folders.find({}, {"parent_id": 1}))
    doomed = [folder['_id']] + [ObjectId(i) for i in descendant_ids(all_folders, folder['_id'])]

    storage_ids = [
        item['storage_id']
        for doc in db.qb_folders.find({"_id": {"$in": doomed}}, {"files": 1})
        for item in doc.get('files', [])
        if item.get('storage_id')
    ]
    result = db.qb_folders.delete_many({"_id": {"$in": doomed}})
    delete_stored_files(storage_ids)
    logger.info("SUCCESS: Deleted %d folders and %d files.", result.deleted_count, len(storage_ids))
    return jsonify({
        "message": "Folder deleted",
        "deleted_folders": result.deleted_count,
        "deleted_files": len(storage_ids),
    }), 200


@question_bank_bp.route('/admin/question-bank/folders/<folder_id>/files', methods=['POST'])
@require_admin
def upload_file(folder_id):
    db = get_db()
    folder = _folder(db, folder_id)
    if 'file' not in request.files:
        raise ValidationError("No file part")
    upload = request.files['file']
    filename = secure_filename(upload.filename or '')
    ext = os.path.splitext(filename)[1].lstrip('.').lower()
    if ext not in config.QUESTION_BANK_FORMATS:
        raise ValidationError(f"Unsupported file type. Allowed: {', '.join(sorted(config.QUESTION_BANK_FORMATS))}")

    data = upload.read()
    if not data:
        raise ValidationError("Uploaded file is empty")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds {config.MAX_UPLOAD_BYTES // (1024 * 1024)} MB limit")

    pages = request.form.get('pages')
    if pages:
        try:
            pages = int(pages)
        except ValueError:
            raise ValidationError("pages must be an integer")
        if pages < 1:
            raise ValidationError("pages must be at least 1")

    storage_id = store_file(data, filename, CONTENT_TYPES[ext])
    entry = {
        "_id": str(ObjectId()),
        "name": (request.form.get('name') or '').strip() or filename,
        "url": f"/api/question-bank/files/{storage_id}",
        "storage_id": str(storage_id),
        "format": ext,
        "bytes": len(data),
        "order": _next_order(folder.get('files', [])),
        "uploaded_at": utcnow(),
    }
    if pages:
        entry['pages'] = pages

    db.qb_folders.update_one(
        {"_id": folder['_id']},
        {"$push": {"files": entry}, "$set": {"updated_at": utcnow()}},
    )
    return jsonify({"message": "File uploaded", "file": serialize(entry)}), 201


@question_bank_bp.route('/admin/question-bank/folders/<folder_id>/files/<file_id>', methods=['DELETE'])
@require_admin
def delete_file(folder_id, file_id):
    db = get_db()
    folder = _folder(db, folder_id)
    files = folder.get('files', [])
    match = next((item for item in files if item['_id'] == file_id), None)
    if not match:
        raise NotFound("File not found")

    db.qb_folders.update_one(
        {"_id": folder['_id']},
        {"$set": {"files": [item for item in files if item['_id'] != file_id], "updated_at": utcnow()}},
    )
    if match.get('storage_id'):
        delete_stored_files([match['storage_id']])
    return jsonify({"message": "File deleted"}), 200


@question_bank_bp.route('/admin/question-bank/reorder', methods=['POST'])
@require_admin
def reorder():
    body = parse_body(ReorderIn)
    if not body.folder_orders and not body.file_orders:
        raise ValidationError("Nothing to reorder")
    db = get_db()
    now = utcnow()

    if body.folder_orders:
        ops = [
            UpdateOne({"_id": to_object_id(item.id, 'Folder')}, {"$set": {"order": item.order, "updated_at": now}})
            for item in body.folder_orders
        ]
        db.qb_folders.bulk_write(ops)

    if body.file_orders:
        folder = _folder(db, body.file_orders.folder_id)
        files = _apply_file_orders(folder, {o.file_id: o.order for o in body.file_orders.orders})
        db.qb_folders.update_one({"_id": folder['_id']}, {"$set": {"files": files, "updated_at": now}})

    return jsonify({"message": "Order updated"}), 200
