import time
import re
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import hmac
from typing import Optional, Any

from .errors import ValidationError


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Money (decimal units <-> integer cents)
# ----------------------------
CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int(quantize(amount) * 100)


def from_cents(cents: int) -> Decimal:
    return quantize(Decimal(cents) / 100)


def fmt_cents(cents: int | None) -> Optional[str]:
    if cents is None:
        return None
    return str(from_cents(cents))


def parse_money(value: Any, field: str = "amount") -> Decimal:
    # floats go through str() so 0.1 stays 0.1
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field} must be a decimal amount")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a decimal amount")
    return quantize(amount)


def positive_int(value: Any, field: str = "quantity") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer")
    if n <= 0 or str(n) != str(value).strip():
        raise ValidationError(f"{field} must be a positive integer")
    return n


# ----------------------------
# Confirmation codes
# ----------------------------
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _base36(n: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def new_confirmation_code(prefix: str, suffix_len: int = 6) -> str:
    """
    `<PREFIX>-<base36 millis>-<random>`, e.g. `CONF-MGX2K1Q0-7QZ4KD`.

    The random part comes from `secrets`, 36**6 values per millisecond.
    """
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(suffix_len))
    return f"{prefix}-{stamp}-{suffix}"
