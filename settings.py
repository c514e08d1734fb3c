# settings.py
"""
Runtime configuration for the Giftiz storefront API.
Every value can be overridden through the environment (or a .env file).
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ---------- Storage ----------
DB_FILE = os.getenv("DB_FILE", "giftiz.json")
SECRET_FILE = os.getenv("SECRET_FILE", ".secret_key")
DB_ENCRYPTION = _flag("DB_ENCRYPTION", "true")
BACKUP_DIR = os.getenv("BACKUP_DIR", "backups")
BACKUP_INTERVAL_SECONDS = int(os.getenv("BACKUP_INTERVAL_SECONDS", 30 * 60))

# ---------- Sessions & codes ----------
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 60 * 60 * 24))  # 24h of inactivity
SESSION_CLOSE_GRACE_SECONDS = float(os.getenv("SESSION_CLOSE_GRACE_SECONDS", 15))
LOGIN_CODE_TTL_SECONDS = int(os.getenv("LOGIN_CODE_TTL_SECONDS", 10 * 60))
VERIFICATION_CODE_TTL_SECONDS = int(os.getenv("VERIFICATION_CODE_TTL_SECONDS", 5 * 60))
RESET_CODE_TTL_SECONDS = int(os.getenv("RESET_CODE_TTL_SECONDS", 15 * 60))
RESET_TOKEN_TTL_SECONDS = int(os.getenv("RESET_TOKEN_TTL_SECONDS", 15 * 60))
TRUSTED_DEVICE_TTL_DAYS = int(os.getenv("TRUSTED_DEVICE_TTL_DAYS", 30))
MAX_SESSIONS_PER_USER = int(os.getenv("MAX_SESSIONS_PER_USER", 1))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", 15))
BACKGROUND_TASKS = _flag("BACKGROUND_TASKS", "true")  # session sweep + auto-backup threads
JWT_ALGORITHM = "HS256"

# ---------- Catalog & cart ----------
MAX_CART_ITEM_QUANTITY = int(os.getenv("MAX_CART_ITEM_QUANTITY", 20))
MAX_ITEM_IMAGES = int(os.getenv("MAX_ITEM_IMAGES", 8))
MAX_ALLOWED_URL_LENGTH = int(os.getenv("MAX_ALLOWED_URL_LENGTH", 2048))
MAX_DATA_URI_LENGTH = int(os.getenv("MAX_DATA_URI_LENGTH", 5_000_000))
MAX_BODY_BYTES = int(os.getenv("MAX_BODY_BYTES", 10 * 1024 * 1024))
HUMAN_TIME_TIMEZONE = os.getenv("HUMAN_TIME_TIMEZONE", "Asia/Jerusalem")

# ---------- Rate limiting ----------
GLOBAL_RATE_LIMIT = int(os.getenv("GLOBAL_RATE_LIMIT", 1000))
GLOBAL_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("GLOBAL_RATE_LIMIT_WINDOW_SECONDS", 15 * 60))
AUTH_RATE_LIMIT = int(os.getenv("AUTH_RATE_LIMIT", 10))
AUTH_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", 5 * 60))

# ---------- SMTP ----------
SMTP_HOST = os.getenv("SMTP_HOST", "sandbox.smtp.mailtrap.io")
SMTP_PORT = int(os.getenv("SMTP_PORT", 2525))
SMTP_SECURE = _flag("SMTP_SECURE")
SMTP_REQUIRE_TLS = _flag("SMTP_REQUIRE_TLS")
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
SMTP_TIMEOUT_SECONDS = int(os.getenv("SMTP_TIMEOUT_SECONDS", 20))
MAIL_FROM_SUPPORT = os.getenv("MAIL_FROM_SUPPORT", "support@giftiz.com")
MAIL_FROM_SECURITY = os.getenv("MAIL_FROM_SECURITY", "security@giftiz.com")
MAIL_FROM_SALES = os.getenv("MAIL_FROM_SALES", "sales@giftiz.com")
SUPPORT_INBOX = os.getenv("SUPPORT_INBOX", "giftizofficalsupport@gmail.com")
PURCHASES_INBOX = os.getenv("PURCHASES_INBOX", "giftizpurches@gmail.com")

# ---------- Payments ----------
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "ils")

# ---------- HTTP ----------
CORS_ALLOWED_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
