# utils/redact.py
"""
Masks personal data in request bodies before they reach a log line.

The masked copy is for logs and audit trails only; the body actually sent to
the gateway is never touched.
"""
import re
from typing import Any

MASK = "****"
EMAIL_VISIBLE_CHARS = 3
NUMBER_VISIBLE_DIGITS = 4

EMAIL_KEYS = {"email", "payer_email", "customer_email", "given_email"}
NUMBER_KEYS = {
    "mobile_number",
    "account_number",
    "wallet_number",
    "phone",
    "phone_number",
}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


def mask_email(email: str) -> str:
    """abcdef@example.com -> abc****@example.com"""
    local, sep, domain = email.partition("@")
    if not sep:
        return MASK
    return f"{local[:EMAIL_VISIBLE_CHARS]}{MASK}@{domain}"


def mask_number(number: str) -> str:
    """09123456789 -> ****6789"""
    digits = "".join(ch for ch in number if ch.isdigit())
    if len(digits) <= NUMBER_VISIBLE_DIGITS:
        return MASK
    return f"{MASK}{digits[-NUMBER_VISIBLE_DIGITS:]}"


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _redact_value(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact_value(key, v) for v in value]
    if not isinstance(value, str):
        return value

    lowered = key.lower() if isinstance(key, str) else ""
    if lowered in EMAIL_KEYS or EMAIL_RE.match(value):
        return mask_email(value)
    if lowered in NUMBER_KEYS:
        return mask_number(value)
    return value


def redact_payload(body: dict) -> dict:
    """Return a masked deep copy of an outbound request body."""
    return {k: _redact_value(k, v) for k, v in body.items()}
