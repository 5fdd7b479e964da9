import time
import re
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    # hex only: ids end up inside underscore-delimited references
    return uuid.uuid4().hex


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def normalize_phone(raw: Optional[str], country_code: str = "55") -> Optional[str]:
    """Digits only, prefixed with the country code and a leading '+'.

    A doubled country code ("5555...") is collapsed once.
    """
    if not raw:
        return None
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return None
    doubled = country_code * 2
    if digits.startswith(doubled):
        digits = digits[len(country_code):]
    if not digits.startswith(country_code):
        digits = country_code + digits
    return "+" + digits


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
