from app.schemas.waitlist import (
    ResendRequest,
    TestEmailRequest,
    TokenActionResponse,
    TokenRequest,
    WaitlistCount,
    WaitlistResponse,
    WaitlistSignup,
)
