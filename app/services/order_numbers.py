import secrets
import string
from datetime import datetime, timezone
from typing import Callable, Optional

from models.order import Order

SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
SUFFIX_LENGTH = 5
MAX_ATTEMPTS = 5


class OrderNumberExhausted(Exception):
    pass


def generate_order_number(prefix: str = "RMM", now: Optional[datetime] = None) -> str:
    """Return ``<PREFIX>-<YYYYMMDD>-<XXXXX>``, sortable by creation day."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{prefix}-{now:%Y%m%d}-{suffix}"


def _order_number_taken(order_number: str) -> bool:
    return Order.query.filter_by(order_number=order_number).first() is not None


def generate_unique_order_number(
    prefix: str = "RMM",
    generator: Callable[[str], str] = generate_order_number,
    attempts: int = MAX_ATTEMPTS,
) -> str:
    """Draw order numbers until one is not already used by an order."""
    for _ in range(attempts):
        candidate = generator(prefix)
        if not _order_number_taken(candidate):
            return candidate
    raise OrderNumberExhausted(f"Could not mint a unique order number after {attempts} attempts")
