import os

# ----------------------------
# Storage
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./canvasworks.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
# 'sql' | 'redis'
IDEMPOTENCY_BACKEND = os.getenv("IDEMPOTENCY_BACKEND", "sql").lower()

# ----------------------------
# Payment gateway
# ----------------------------
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
WEBHOOK_TOLERANCE_SECONDS = int(
    os.environ.get("WEBHOOK_TOLERANCE_SECONDS", "300")
)

# ----------------------------
# Print provider / object store
# ----------------------------
PRINTIFY_API_KEY = os.environ.get("PRINTIFY_API_KEY", "")
PRINTIFY_SHOP_ID = os.environ.get("PRINTIFY_SHOP_ID", "")
PRINTIFY_API_BASE = os.environ.get(
    "PRINTIFY_API_BASE", "https://api.printify.com/v1"
)
STORAGE_BASE_URL = os.environ.get("STORAGE_BASE_URL", "")
STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "portraits")

# ----------------------------
# Notifications
# ----------------------------
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_API_BASE = os.environ.get("RESEND_API_BASE", "https://api.resend.com")
EMAIL_FROM = os.environ.get("EMAIL_FROM", "LumePet <noreply@lumepet.app>")
BASE_URL = os.environ.get("BASE_URL", "https://lumepet.app")
# where this service is reachable from a mail client
API_BASE_URL = os.environ.get("API_BASE_URL", BASE_URL)
ALERT_EMAIL = os.environ.get("ALERT_EMAIL", "")
# the sender allows 2 req/sec
SEND_DELAY_SECONDS = float(os.environ.get("SEND_DELAY_SECONDS", "0.6"))

# ----------------------------
# Operator / cron auth
# ----------------------------
CRON_SECRET = os.environ.get("CRON_SECRET", "")
ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")

HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "30.0"))
