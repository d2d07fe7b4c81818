"""Generic CRUD routes for simple document collections.

A ``Resource`` describes one collection: who may touch it, which pydantic
models validate create/update bodies, and whether documents belong to the
calling user. ``register`` then adds list/create/get/update/delete routes to a
blueprint, so calendars, courses and similar collections don't each carry their
own copy of the same five handlers.
"""
import logging

from bson import ObjectId
from flask import g, jsonify, request
from pymongo import ReturnDocument

from auth import require_admin, require_auth
from database import get_db, pagination, serialize, to_object_id, utcnow
from errors import NotFound, ValidationError
from schemas import parse_body, parse_page

logger = logging.getLogger(__name__)


def public(f):
    return f


ACCESS_DECORATORS = {
    'public': public,
    'auth': require_auth,
    'admin': require_admin,
}


def dump_fields(model):
    """Only the top-level fields the caller sent, with nested models fully dumped."""
    full = model.model_dump(by_alias=True)
    return {name: full[name] for name in model.model_fields_set}


def assign_ids(items):
    """Give embedded list items (events, todos) a string id if the caller sent none."""
    for item in items or []:
        if not item.get('_id'):
            item['_id'] = str(ObjectId())
    return items


class Resource:
    def __init__(self, collection, singular, plural, create_model, update_model,
                 access='auth', owner_field=None, creator_field=None,
                 sort=(('created_at', -1),), max_per_owner=None,
                 embedded_lists=(), after_delete=None, public_filter=None, filter_args=()):
        if access not in ACCESS_DECORATORS:
            raise ValueError(f"Unknown access level: {access}")
        self.collection = collection
        self.singular = singular
        self.plural = plural
        self.create_model = create_model
        self.update_model = update_model
        self.access = access
        self.owner_field = owner_field
        self.creator_field = creator_field
        self.sort = list(sort)
        self.max_per_owner = max_per_owner
        self.embedded_lists = embedded_lists
        self.after_delete = after_delete
        self.public_filter = public_filter or {}
        self.filter_args = filter_args

    @property
    def label(self):
        return self.singular.replace('_', ' ').capitalize()

    def _coll(self):
        return get_db()[self.collection]

    def _scope(self, query=None):
        query = dict(query or {})
        if self.owner_field:
            query[self.owner_field] = g.current_user['_id']
        return query

    def _prepare(self, data):
        for field in self.embedded_lists:
            if field in data:
                assign_ids(data[field])
        return data

    def _filters(self):
        query = {}
        for name in self.filter_args:
            value = request.args.get(name)
            if value:
                query[name] = value.strip().lower()
        return query

    def find_one(self, item_id):
        doc = self._coll().find_one(self._scope({"_id": to_object_id(item_id, self.label)}))
        if not doc:
            raise NotFound(f"{self.label} not found")
        return doc

    # --- handlers ---
    def list(self):
        page, limit = parse_page()
        query = self._scope(self._filters())
        total = self._coll().count_documents(query)
        docs = list(self._coll().find(query).sort(self.sort).skip((page - 1) * limit).limit(limit))
        return jsonify({self.plural: serialize(docs), "pagination": pagination(total, page, limit)}), 200

    def create(self):
        body = parse_body(self.create_model)
        if self.max_per_owner and self.owner_field:
            if self._coll().count_documents(self._scope()) >= self.max_per_owner:
                raise ValidationError(f"Maximum {self.max_per_owner} {self.plural} allowed")

        doc = self._prepare(body.model_dump(by_alias=True))
        if self.owner_field:
            doc[self.owner_field] = g.current_user['_id']
        if self.creator_field:
            doc[self.creator_field] = g.current_user['_id']
        doc['created_at'] = doc['updated_at'] = utcnow()
        doc['_id'] = self._coll().insert_one(doc).inserted_id
        return jsonify({self.singular: serialize(doc)}), 201

    def get(self, item_id):
        return jsonify({self.singular: serialize(self.find_one(item_id))}), 200

    def update(self, item_id):
        body = parse_body(self.update_model)
        changes = self._prepare(dump_fields(body))
        if not changes:
            raise ValidationError("Nothing to update")
        changes['updated_at'] = utcnow()
        doc = self._coll().find_one_and_update(
            self._scope({"_id": to_object_id(item_id, self.label)}),
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFound(f"{self.label} not found")
        return jsonify({self.singular: serialize(doc)}), 200

    def delete(self, item_id):
        doc = self.find_one(item_id)
        self._coll().delete_one({"_id": doc['_id']})
        if self.after_delete:
            self.after_delete(get_db(), doc)
        return jsonify({"message": f"{self.label} deleted"}), 200

    def register(self, bp, url, endpoint=None):
        endpoint = endpoint or self.plural
        guard = ACCESS_DECORATORS[self.access]
        bp.add_url_rule(url, f'list_{endpoint}', guard(self.list), methods=['GET'])
        bp.add_url_rule(url, f'create_{endpoint}', guard(self.create), methods=['POST'])
        bp.add_url_rule(f'{url}/<item_id>', f'get_{endpoint}', guard(self.get), methods=['GET'])
        bp.add_url_rule(f'{url}/<item_id>', f'update_{endpoint}', guard(self.update), methods=['PATCH'])
        bp.add_url_rule(f'{url}/<item_id>', f'delete_{endpoint}', guard(self.delete), methods=['DELETE'])
        return self

    def list_public(self):
        """Read-only listing for anonymous callers, limited to ``public_filter``."""
        query = dict(self._filters(), **self.public_filter)
        docs = list(self._coll().find(query).sort(self.sort))
        return jsonify({self.plural: serialize(docs)}), 200

    def register_public(self, bp, url, endpoint=None):
        endpoint = endpoint or self.plural
        bp.add_url_rule(url, f'public_{endpoint}', self.list_public, methods=['GET'])
        return self
