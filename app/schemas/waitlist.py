"""Waitlist request and response schemas."""
from typing import Any

from pydantic import BaseModel, EmailStr, Field, field_validator


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class WaitlistSignup(BaseModel):
    email: EmailStr
    source: str | None = Field(None, max_length=50)
    referrer: str | None = Field(None, max_length=2048)
    utm_source: str | None = Field(None, max_length=100)
    utm_medium: str | None = Field(None, max_length=100)
    utm_campaign: str | None = Field(None, max_length=100)
    utm_term: str | None = Field(None, max_length=100)
    utm_content: str | None = Field(None, max_length=100)
    ab_test_variant: str | None = Field(None, max_length=50)
    metadata: dict[str, Any] = Field(default_factory=dict)
    website: str | None = None  # honeypot

    @field_validator(
        "source", "referrer", "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "ab_test_variant",
        mode="before",
    )
    @classmethod
    def strip_optional(cls, v):
        return _blank_to_none(v) if isinstance(v, str) else v


class TokenRequest(BaseModel):
    # Length is checked by the service so the error names the token kind
    token: str = ""


class ResendRequest(BaseModel):
    email: EmailStr


class TestEmailRequest(BaseModel):
    to: EmailStr


class WaitlistResponse(BaseModel):
    success: bool
    message: str
    data: dict[str, Any] | None = None


class TokenActionResponse(BaseModel):
    success: bool
    message: str
    email: str | None = None


class WaitlistCount(BaseModel):
    count: int
