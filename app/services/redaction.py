"""Redaction helpers: nothing that reaches a log line carries a full email, token or secret."""
from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+)")
_SECRET_KEY_PARTS = ("token", "password", "secret", "key", "authorization")


def mask_email(email: str | None) -> str:
    """jane.doe@example.com -> ja***@example.com"""
    if not email or "@" not in email:
        return REDACTED if email else ""
    local, _, domain = email.strip().partition("@")
    return f"{local[:2]}***@{domain}"


def mask_token(token: str | None) -> str:
    if not token:
        return ""
    return f"{REDACTED}(len={len(token)})"


def _mask_emails_in_text(text: str) -> str:
    return _EMAIL_RE.sub(lambda m: mask_email(m.group(0)), text)


def sanitize_for_logs(data: Any) -> Any:
    """Mask emails in strings and redact token/secret-like keys in mappings."""
    if isinstance(data, str):
        return _mask_emails_in_text(data)
    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            k = str(key).lower()
            if any(part in k for part in _SECRET_KEY_PARTS):
                sanitized[key] = REDACTED
            elif isinstance(value, (dict, list, tuple, str)):
                sanitized[key] = sanitize_for_logs(value)
            else:
                sanitized[key] = value
        return sanitized
    if isinstance(data, (list, tuple)):
        return [sanitize_for_logs(v) for v in data]
    return data
