import os

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set")

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise RuntimeError("REDIS_URL environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"
DB_ECHO = (os.getenv("DB_ECHO") or "false").lower() == "true"

# payment processor
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY") or ""
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET") or ""
STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS") or "300")
SUPPORTED_CURRENCIES = [
    c.strip().upper()
    for c in (os.getenv("SUPPORTED_CURRENCIES") or "USD,EUR,GBP,CAD,AUD").split(",")
    if c.strip()
]

# booking policy
HOLD_MINUTES = int(os.getenv("HOLD_MINUTES") or "15")
HOLD_SWEEP_INTERVAL_SECONDS = float(os.getenv("HOLD_SWEEP_INTERVAL_SECONDS") or "30")
CANCELLATION_WINDOW_HOURS = int(os.getenv("CANCELLATION_WINDOW_HOURS") or "24")
DEPOSIT_PERCENT = int(os.getenv("DEPOSIT_PERCENT") or "30")
DEPOSIT_CONFIRMS_BOOKING = (os.getenv("DEPOSIT_CONFIRMS_BOOKING") or "false").lower() == "true"
TAX_RATE_PERCENT = int(os.getenv("TAX_RATE_PERCENT") or "17")
SERVICE_FEE_PER_NIGHT = int(os.getenv("SERVICE_FEE_PER_NIGHT") or "2500")  # minor units
CONFIRMATION_PREFIX = os.getenv("CONFIRMATION_PREFIX") or "AMB"

# notifications
MAIL_ENABLED = (os.getenv("MAIL_ENABLED") or "false").lower() == "true"
MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", "reservations@ambassadorhotels.com")
MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "Ambassador Hotels")
MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
MAIL_STARTTLS = (os.getenv("MAIL_STARTTLS") or "true").lower() == "true"
NOTIFY_MAX_ATTEMPTS = int(os.getenv("NOTIFY_MAX_ATTEMPTS") or "5")

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE") or "120")
