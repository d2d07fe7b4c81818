import logging
import sys

from flask import Flask, jsonify
from flask_limiter.errors import RateLimitExceeded
from pymongo.errors import PyMongoError

import config
from auth import ensure_first_admin
from database import check_connection, connect, ensure_indexes
from errors import HubError, StorageError
from extensions import cors, limiter
from ratings import drain_pending_recomputes
from reminders import QStashClient
from routes import register_blueprints

logger = logging.getLogger(__name__)


def configure_logging(level=None):
    logging.basicConfig(
        level=(level or config.LOG_LEVEL).upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def register_error_handlers(app):
    @app.errorhandler(HubError)
    def handle_hub_error(e):
        if e.status_code >= 500:
            logger.error("ERROR: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(PyMongoError)
    def handle_storage_error(e):
        logger.exception("ERROR: DATABASE ERROR: %s", e)
        err = StorageError()
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(e):
        return jsonify({"error": f"Too many requests: {e.description}"}), 429

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(413)
    def handle_too_large(e):
        return jsonify({"error": "Upload too large"}), 413


def create_app(db=None, queue=None, config_overrides=None):
    """Build the Flask app.

    ``db`` and ``queue`` default to the configured MongoDB database and QStash
    client; tests pass an in-memory database and a fake queue instead.
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = config.MAX_UPLOAD_BYTES + 1024 * 1024
    if config_overrides:
        app.config.update(config_overrides)

    app.extensions['mongo_db'] = db if db is not None else connect()
    app.extensions['reminder_queue'] = queue if queue is not None else QStashClient()

    cors.init_app(app)
    limiter.init_app(app)
    register_error_handlers(app)
    register_blueprints(app)

    @app.route('/health')
    def health_check():
        return jsonify({"status": "healthy", "message": "Student Hub is running"}), 200

    return app


# --- CLI ---
def run_command(command):
    db = connect()
    if command == 'ensure-admin':
        user = ensure_first_admin(db)
        if user:
            print(f"SUCCESS: {user['email']} is now the admin.")
        else:
            print("An admin already exists (or there are no users yet). Nothing changed.")
    elif command == 'ensure-indexes':
        ensure_indexes(db)
    elif command == 'recompute-ratings':
        count = drain_pending_recomputes(db)
        print(f"SUCCESS: Recomputed ratings for {count} faculty.")
    else:
        print(f"ERROR: Unknown command '{command}'. Use ensure-admin, ensure-indexes or recompute-ratings.")
        return 1
    return 0


if __name__ == '__main__':
    configure_logging()
    if len(sys.argv) > 1:
        sys.exit(run_command(sys.argv[1]))

    app = create_app()
    try:
        check_connection(app.extensions['mongo_db'])
    except PyMongoError as e:
        print(f"ERROR: DATABASE ERROR: Could not connect to MongoDB. Full error: {e}")
        sys.exit(1)
    debug_mode = config.FLASK_ENV != 'production'
    print(f"SUCCESS: Flask server is running on port {config.PORT}")
    app.run(host='0.0.0.0', port=config.PORT, debug=debug_mode)
