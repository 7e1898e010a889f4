import re
import secrets
import time
from uuid import uuid4

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_EMBEDDED_BOOKING_ID = re.compile(r"^booking_([0-9a-fA-F-]{4,36})_[0-9A-Za-z]+$")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_booking_reference() -> str:
    """Human-readable reference, e.g. BKLZ3K9Q2A7F4XC1."""
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"BK{timestamp}{random_part}"


def generate_transaction_reference(booking_id: str) -> str:
    return f"booking_{booking_id[:8]}_{uuid4().hex[:8]}"


def embedded_booking_prefix(correlation_id: str | None) -> str | None:
    """
    Returns the truncated booking id carried by a transaction reference,
    or None when the id is not shaped like one.
    """
    if not correlation_id:
        return None
    match = _EMBEDDED_BOOKING_ID.match(correlation_id)
    if not match:
        return None
    return match.group(1).lower()
