import functools
import logging
from datetime import timedelta

import bcrypt
import jwt
from flask import g, request

import config
from database import get_db, serialize, to_object_id, utcnow
from errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

PRIVATE_USER_FIELDS = ('password', 'verification_code', 'verification_expires')


# --- Passwords ---
def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt())


def check_password(password, hashed):
    if not hashed:
        return False
    if isinstance(hashed, str):
        hashed = hashed.encode('utf-8')
    return bcrypt.checkpw(password.encode('utf-8'), hashed)


def public_user(user):
    return serialize({k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS})


# --- JWT Token Functions ---
def generate_access_token(user):
    """Generate JWT access token."""
    payload = {
        'sub': str(user['_id']),
        'email': user['email'],
        'role': user.get('role', 'user'),
        'type': 'access',
        'exp': utcnow() + timedelta(minutes=config.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        'iat': utcnow(),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def generate_refresh_token(user):
    """Generate JWT refresh token."""
    payload = {
        'sub': str(user['_id']),
        'type': 'refresh',
        'exp': utcnow() + timedelta(days=config.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        'iat': utcnow(),
    }
    return jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def verify_token(token):
    """Verify JWT token and return payload, or None if it is expired or invalid."""
    try:
        return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def issue_tokens(db, user):
    """Create an access/refresh pair and store the refresh token so it can be revoked."""
    access_token = generate_access_token(user)
    refresh_token = generate_refresh_token(user)
    db.refresh_tokens.update_one(
        {"user_id": user['_id']},
        {"$set": {
            "token": refresh_token,
            "created_at": utcnow(),
            "expires_at": utcnow() + timedelta(days=config.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        }},
        upsert=True,
    )
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": config.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


# --- Authentication Decorators ---
def _bearer_token():
    auth_header = request.headers.get('Authorization')
    if not auth_header:
        return None
    return auth_header.split(' ', 1)[1] if ' ' in auth_header else auth_header


def _load_current_user(required):
    token = _bearer_token()
    if not token:
        if required:
            raise Unauthorized()
        return None

    payload = verify_token(token)
    if not payload or payload.get('type') != 'access':
        raise Unauthorized("Invalid or expired token. Please login again.")

    user = get_db().users.find_one({"_id": to_object_id(payload['sub'], 'User')})
    if not user:
        raise Unauthorized("User not found. Please login again.")
    return user


def require_auth(f):
    """Decorator to require authentication for API endpoints."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = _load_current_user(required=True)
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator to require an authenticated admin."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = _load_current_user(required=True)
        if g.current_user.get('role') != 'admin':
            raise Forbidden()
        return f(*args, **kwargs)
    return decorated_function


def optional_auth(f):
    """Decorator that loads the caller if a token is sent, without requiring one."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = _load_current_user(required=False)
        return f(*args, **kwargs)
    return decorated_function


# --- Settings-backed helpers ---
def allowed_email_domains(db):
    setting = db.settings.find_one({"key": config.ALLOWED_EMAIL_DOMAINS_KEY})
    if setting and isinstance(setting.get('value'), list) and setting['value']:
        return setting['value']
    return config.DEFAULT_EMAIL_DOMAINS


def email_domain_allowed(db, email):
    domain = email.rsplit('@', 1)[-1].lower() if '@' in email else ''
    return bool(domain) and domain in {d.lower() for d in allowed_email_domains(db)}


def ensure_first_admin(db, user_id=None):
    """Grant the admin role when no admin exists yet.

    With ``user_id`` the given user is promoted; otherwise the earliest
    registered user is. Returns the promoted user, or None when an admin already
    exists or there is nobody to promote. Safe to call repeatedly.
    """
    if db.users.count_documents({"role": "admin"}) > 0:
        return None
    if user_id is not None:
        query = {"_id": to_object_id(user_id, 'User')}
        user = db.users.find_one(query)
    else:
        user = db.users.find_one({}, sort=[("created_at", 1)])
    if not user:
        return None
    db.users.update_one({"_id": user['_id']}, {"$set": {"role": "admin", "updated_at": utcnow()}})
    user['role'] = 'admin'
    logger.info("SUCCESS: Made %s the first admin.", user['email'])
    return user
