import logging
import os


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
CRON_SECRET = os.environ.get("CRON_SECRET", "")

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

CHECKOUT_WEBHOOK_SECRET = os.environ.get("CHECKOUT_WEBHOOK_SECRET", "supersecret")
# empty -> bank transfer notifications are not signature checked
PIX_WEBHOOK_SECRET = os.environ.get("PIX_WEBHOOK_SECRET", "")
MP_API_URL = os.environ.get("MP_API_URL", "https://api.mercadopago.com")
MP_ACCESS_TOKEN = os.environ.get("MP_ACCESS_TOKEN", "")

PROOF_UPLOAD_DIR = os.environ.get("PROOF_UPLOAD_DIR", "./uploads/proofs")
PROOF_MAX_BYTES = int(os.environ.get("PROOF_MAX_BYTES", str(10 * 1024 * 1024)))

DEFAULT_RESERVATION_TIMEOUT_MINUTES = int(
    os.environ.get("DEFAULT_RESERVATION_TIMEOUT_MINUTES", "15")
)
# unpaid drafts stop being publishable after this long
DRAFT_EXPIRY_SECONDS = int(os.environ.get("DRAFT_EXPIRY_HOURS", "24")) * 3600
DRAFT_GRACE_SECONDS = int(os.environ.get("DRAFT_GRACE_HOURS", "48")) * 3600
LOG_RETENTION_SECONDS = int(os.environ.get("LOG_RETENTION_DAYS", "30")) * 86400
REJECT_RELEASES_TICKETS = _flag("REJECT_RELEASES_TICKETS")
PHONE_COUNTRY_CODE = os.environ.get("PHONE_COUNTRY_CODE", "55")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
