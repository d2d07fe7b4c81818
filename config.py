import os
import secrets
import certifi
from dotenv import load_dotenv

load_dotenv()

# Ensure TLS verification uses an up-to-date CA bundle (fixes SSL errors on some Windows setups)
os.environ.setdefault('SSL_CERT_FILE', certifi.where())

# --- Database ---
MONGO_URI = os.getenv('MONGODB_URI', 'mongodb://localhost:27017/')
DB_NAME = os.getenv('MONGODB_DB_NAME', 'StudentHubDB')

# --- JWT Configuration ---
JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', secrets.token_urlsafe(64))
JWT_ALGORITHM = 'HS256'
JWT_ACCESS_TOKEN_EXPIRE_MINUTES = 60  # 1 hour
JWT_REFRESH_TOKEN_EXPIRE_DAYS = 7  # 7 days

# --- Login lockout ---
MAX_FAILED_LOGINS = 5
LOCKOUT_MINUTES = 15

# --- Email (SendGrid) ---
SENDGRID_API_KEY = os.getenv('SENDGRID_API_KEY', '')
FROM_EMAIL = os.getenv('FROM_EMAIL', 'no-reply@studenthub.local')  # must be a verified sender in SendGrid
FROM_NAME = os.getenv('FROM_NAME', 'Student Hub')
APP_BASE_URL = os.getenv('APP_BASE_URL', 'http://localhost:5001')
VERIFICATION_CODE_MINUTES = 10

# --- Reminder queue (Upstash QStash) ---
QSTASH_URL = os.getenv('QSTASH_URL', 'https://qstash.upstash.io')
QSTASH_TOKEN = os.getenv('QSTASH_TOKEN', '')
QSTASH_CURRENT_SIGNING_KEY = os.getenv('QSTASH_CURRENT_SIGNING_KEY', '')
QSTASH_NEXT_SIGNING_KEY = os.getenv('QSTASH_NEXT_SIGNING_KEY', '')
QSTASH_TIMEOUT_SECONDS = 10

# --- Server ---
PORT = int(os.getenv('PORT', 5001))
FLASK_ENV = os.getenv('FLASK_ENV', 'development')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

# --- Product constants ---
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_USER_CALENDARS = 20
MAX_UPLOAD_BYTES = 20 * 1024 * 1024
QUESTION_BANK_FORMATS = {'pdf', 'png', 'jpg', 'jpeg', 'webp'}

ALLOWED_EMAIL_DOMAINS_KEY = 'allowed_email_domains'
DEFAULT_EMAIL_DOMAINS = [
    'bscse.uiu.ac.bd',
    'bsds.uiu.ac.bd',
    'bseee.uiu.ac.bd',
    'bsce.uiu.ac.bd',
    'bba.uiu.ac.bd',
    'bbaais.uiu.ac.bd',
    'bsseds.uiu.ac.bd',
    'bssmsj.uiu.ac.bd',
    'baeng.uiu.ac.bd',
    'bpharm.uiu.ac.bd',
    'bsbge.uiu.ac.bd',
    'bsseco.uiu.ac.bd',
    'mscse.uiu.ac.bd',
    'msceee.uiu.ac.bd',
    'mba.uiu.ac.bd',
    'emba.uiu.ac.bd',
    'uiu.ac.bd',
]

ALLOWED_PERMISSIONS = ['bot_access']
