import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

APP_ENV = os.environ.get("APP_ENV", "production").lower()
APP_URL = os.environ.get("APP_URL", "http://localhost:8000").rstrip("/")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("LOG_FORMAT", "json").lower()  # json | console

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
CRON_SECRET = os.environ.get("CRON_SECRET", "")

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
STRIPE_MONTHLY_PRICE_ID = os.environ.get("STRIPE_MONTHLY_PRICE_ID", "")
STRIPE_YEARLY_PRICE_ID = os.environ.get("STRIPE_YEARLY_PRICE_ID", "")

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
MAIL_FROM = os.environ.get(
    "MAIL_FROM", "Pattern Pioneer <orders@patternpioneerstudio.com>"
)

MAILERLITE_API_KEY = os.environ.get("MAILERLITE_API_KEY", "")
MAILERLITE_GROUP_ID = os.environ.get("MAILERLITE_GROUP_ID", "")
MAILERLITE_API_URL = os.environ.get(
    "MAILERLITE_API_URL", "https://connect.mailerlite.com/api"
)

SUPABASE_URL = os.environ.get("SUPABASE_URL", "").rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

PREVIEW_BUCKET = "pattern-previews"
PREMIUM_BUCKET = "patterns"

CREDIT_TTL_DAYS = 90
CREDITS_PER_BILLING_CYCLE = 12
EXPIRING_SOON_DAYS = 7
SIGNED_URL_TTL_SECONDS = 60
TRIAL_PERIOD_DAYS = 7
DEFAULT_PATTERN_PRICE = 699  # cents (EUR)


def is_development() -> bool:
    return APP_ENV == "development"
