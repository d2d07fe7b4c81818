from routes.admin_routes import admin_bp
from routes.auth_routes import auth_bp
from routes.calendar_routes import calendar_bp
from routes.cgpa_routes import cgpa_bp
from routes.faculty_routes import faculty_bp
from routes.question_bank_routes import question_bank_bp
from routes.reminder_routes import reminder_bp
from routes.review_routes import review_bp
from routes.user_routes import user_bp

BLUEPRINTS = (
    auth_bp,
    user_bp,
    faculty_bp,
    review_bp,
    question_bank_bp,
    calendar_bp,
    reminder_bp,
    cgpa_bp,
    admin_bp,
)


def register_blueprints(app):
    for bp in BLUEPRINTS:
        app.register_blueprint(bp)
