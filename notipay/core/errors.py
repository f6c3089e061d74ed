# core/errors.py
from typing import Optional


class NotipayError(Exception):
    """Base class for every error the payment core raises on purpose."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(NotipayError):
    """Malformed id, non-positive amount, bad wallet number, missing field."""


class MalformedWebhookError(InvalidRequestError):
    """Webhook payload without an event discriminator or data object.

    Permanent rejection: redelivering the same body will not help.
    """


class NotFoundError(NotipayError):
    pass


class ConflictError(NotipayError):
    """Status precondition violated (e.g. confirming a non-PENDING payment)."""


class UpstreamError(NotipayError):
    """Gateway unreachable or answered outside the allow-list after all retries."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        status_code: Optional[int] = None,
        body: str = "",
        attempts: int = 0,
    ):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.attempts = attempts

    def __str__(self) -> str:
        if self.status_code is None and not self.body:
            return self.message
        return f"{self.message} (status={self.status_code}, body={self.body})"


class PersistenceError(NotipayError):
    """Store read/write failed. Never retried silently."""
