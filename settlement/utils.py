import math
import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(value: int) -> str:
    digits = ""
    while value:
        value, rem = divmod(value, 36)
        digits = _BASE36[rem] + digits
    return digits or "0"


def generate_number(prefix: str) -> str:
    """ORD-/PAY-/REF-/POUT- style identifier: base-36 millis plus 8 random hex chars."""
    timestamp = _base36(int(time.time() * 1000))
    return f"{prefix}-{timestamp}-{secrets.token_hex(4).upper()}"


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def utcnow() -> datetime:
    # Stored naive; SQLite drops tzinfo on the way back anyway.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def calculate_pagination(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
