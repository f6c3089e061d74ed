import math
import re

from notipay.core.errors import InvalidRequestError

# Firestore document ids: no slashes, bounded length
OBJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

WALLET_PREFIX = "0"
WALLET_LENGTH = 11


def validate_object_id(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{field} cannot be empty")
    value = value.strip()
    if not OBJECT_ID_RE.match(value):
        raise InvalidRequestError(f"invalid {field} format: {value!r}")
    return value


def validate_required_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{field} cannot be empty")
    return value.strip()


def validate_amount(amount) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidRequestError("amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidRequestError("amount must be positive")
    return float(amount)


def is_valid_wallet_number(number) -> bool:
    """Local mobile wallet number: starts with 0, exactly 11 digits."""
    return (
        isinstance(number, str)
        and len(number) == WALLET_LENGTH
        and number.startswith(WALLET_PREFIX)
        and number.isdigit()
    )


def validate_wallet_number(number, role: str) -> str:
    if not number:
        raise InvalidRequestError(f"{role} wallet number missing")
    if not is_valid_wallet_number(number):
        raise InvalidRequestError(
            f"{role} wallet number must start with {WALLET_PREFIX} and be {WALLET_LENGTH} digits"
        )
    return number


def to_international(number: str, country_code: str = "+63") -> str:
    """09123456789 -> +639123456789"""
    return country_code + number[1:]
