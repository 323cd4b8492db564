"""
Application exceptions for the waitlist service.

Each exception carries the HTTP status it maps to and a public message that is
safe to show to a client. Diagnostic detail goes in ``details`` and is only
ever logged.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.services.rate_limit import RateLimitResult

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again later."


class WaitlistError(Exception):
    """Base application exception"""
    status_code = 500

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        if self.status_code >= 500:
            return GENERIC_ERROR_MESSAGE
        return self.message


class ValidationError(WaitlistError):
    """Malformed token or input"""
    status_code = 400


class TerminalStateError(ValidationError):
    """Entry is unsubscribed; no further transition is permitted"""


class AuthenticationError(WaitlistError):
    """Privileged operation called without a valid operator credential"""
    status_code = 401


class NotFoundError(WaitlistError):
    """Token or hash has no matching entry"""
    status_code = 404


class RateLimitedError(WaitlistError):
    """Rate budget for the identity and route category is exhausted"""
    status_code = 429

    def __init__(self, message: str, result: "RateLimitResult", details: str | None = None):
        super().__init__(message, details)
        self.result = result

    @property
    def retry_after_seconds(self) -> int:
        return self.result.retry_after_seconds


class TransportError(WaitlistError):
    """Store or email provider unreachable"""
    status_code = 500

    def __init__(self, message: str, provider: str | None = None, details: str | None = None):
        super().__init__(message, details)
        self.provider = provider


class DecryptionError(WaitlistError):
    """Ciphertext was tampered with or encrypted under another key"""
    status_code = 500


class DuplicateEntryError(WaitlistError):
    """Raised by the store when the email hash already exists"""
    status_code = 409


class ConfigurationError(WaitlistError):
    """Fatal misconfiguration detected at startup"""
