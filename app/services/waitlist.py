"""
Waitlist lifecycle: signup, verification, unsubscribe, resend.

An entry is created unverified and subscribed. A verify flips ``verified`` once;
an unsubscribe flips ``unsubscribed`` from either state and freezes the entry.
Every operation is rate limited per client identity and route category before
it touches the store.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from app.config import Settings
from app.exceptions import (
    DuplicateEntryError,
    NotFoundError,
    RateLimitedError,
    TerminalStateError,
    TransportError,
    ValidationError,
)
from app.models.waitlist_entry import WaitlistEntry
from app.services.crypto import (
    EmailCipher,
    generate_unsubscribe_token,
    generate_verification_token,
    hash_email,
    is_well_formed_token,
    normalize_email,
    validate_verification_token,
)
from app.services.notifications import EmailService
from app.services.rate_limit import RateLimiter, RateLimitResult, RouteCategory
from app.services.redaction import mask_email, mask_token, sanitize_for_logs
from app.services.store import WaitlistStore

logger = logging.getLogger(__name__)

DISPOSABLE_DOMAINS = frozenset({
    "10minutemail.com",
    "mailinator.com",
    "guerrillamail.com",
    "temp-mail.org",
    "throwaway.email",
    "tempmail.org",
})

# Common misspellings of the big mail domains; the address is still accepted.
DOMAIN_SUGGESTIONS = {
    "gmial.com": "gmail.com",
    "gmai.com": "gmail.com",
    "gmail.co": "gmail.com",
    "yahooo.com": "yahoo.com",
    "yahoo.co": "yahoo.com",
    "hotmial.com": "hotmail.com",
    "hotmai.com": "hotmail.com",
    "outlok.com": "outlook.com",
    "outloo.com": "outlook.com",
}

BOT_USER_AGENT = re.compile(r"bot|crawler|spider|scraper|curl|wget|python|go-http", re.IGNORECASE)
BROWSER_HEADERS = ("accept", "accept-language", "accept-encoding")

MSG_JOINED_QUIETLY = "Thank you for joining our waitlist!"
MSG_RATE_LIMITED = "Too many requests. Please try again later."
MSG_VERIFY_RATE_LIMITED = "Too many verification attempts. Please try again later."
MSG_INVALID_VERIFY_TOKEN = "Invalid verification token"
MSG_EXPIRED_VERIFY_TOKEN = "Invalid or expired verification token"
MSG_INVALID_UNSUBSCRIBE_TOKEN = "Invalid unsubscribe token"
MSG_UNSUBSCRIBED_SIGNUP = "This email has been unsubscribed. Please contact support to re-subscribe."
MSG_UNSUBSCRIBED_VERIFY = "This email has been unsubscribed and cannot be verified."


@dataclass
class ClientContext:
    """
    Who is calling. ``rate_limit`` holds the last limiter decision for response headers.

    ``user_agent`` and ``headers`` are filled from the HTTP request; ``None``
    means the call did not come through HTTP and bot screening is skipped.
    """
    identity: str
    bypass: bool = False
    rate_limit: Optional[RateLimitResult] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    # Route categories already charged during this request
    checked: set = field(default_factory=set)


@dataclass
class SignupSubmission:
    email: str
    source: Optional[str] = None
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    ab_test_variant: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Honeypot: humans never see this field
    website: Optional[str] = None


@dataclass
class Outcome:
    success: bool
    message: str
    status_code: int = 200
    email: Optional[str] = None
    data: Optional[dict[str, Any]] = None


def email_domain(email: str) -> str:
    return normalize_email(email).rpartition("@")[2]


def suggest_corrections(email: str) -> list[str]:
    local, _, domain = normalize_email(email).rpartition("@")
    fixed = DOMAIN_SUGGESTIONS.get(domain)
    return [f"{local}@{fixed}"] if fixed else []


def looks_like_bot(user_agent: str, headers: Mapping[str, str]) -> bool:
    """Scripted user agents, or a request missing the headers every browser sends."""
    if BOT_USER_AGENT.search(user_agent or ""):
        return True
    return any(not headers.get(name) for name in BROWSER_HEADERS)


class WaitlistService:
    def __init__(
        self,
        store: WaitlistStore,
        cipher: EmailCipher,
        email_service: EmailService,
        rate_limiter: RateLimiter,
        settings: Settings,
    ):
        self.store = store
        self.cipher = cipher
        self.email_service = email_service
        self.rate_limiter = rate_limiter
        self.settings = settings

    async def throttle(self, client: ClientContext, category: RouteCategory, message: str = MSG_RATE_LIMITED) -> None:
        # One hit per category per request, however many layers ask.
        if category in client.checked:
            return
        client.checked.add(category)
        result = await self.rate_limiter.check(client.identity, category, bypass=client.bypass)
        client.rate_limit = result
        if not result.success:
            logger.info("Rate limited: category=%s identity=%s", category.value, mask_token(client.identity))
            raise RateLimitedError(message, result)

    async def _send_verification(self, entry_id: str, email: str, token: str, unsubscribe_token: str) -> None:
        result = await self.email_service.send_verification_email(email, token, unsubscribe_token)
        if not result.success:
            logger.error(
                "Verification email failed: id=%s to=%s provider=%s error=%s",
                entry_id, mask_email(email), result.provider, result.error,
            )
            raise TransportError("Failed to send verification email", provider=result.provider, details=result.error)

    async def signup(self, submission: SignupSubmission, client: ClientContext) -> Outcome:
        await self.throttle(client, RouteCategory.signup)

        if submission.website:
            logger.info("Honeypot triggered: identity=%s %s", mask_token(client.identity),
                        sanitize_for_logs({"email": submission.email}))
            return Outcome(success=True, message=MSG_JOINED_QUIETLY)

        email = normalize_email(submission.email)
        if email_domain(email) in DISPOSABLE_DOMAINS:
            raise ValidationError("Disposable email addresses are not allowed")

        if (
            self.settings.bot_detection
            and client.user_agent is not None
            and looks_like_bot(client.user_agent, client.headers)
        ):
            logger.info("Bot signup ignored: identity=%s user_agent=%r", mask_token(client.identity),
                        client.user_agent[:80])
            return Outcome(success=True, message=MSG_JOINED_QUIETLY)

        suggestions = suggest_corrections(email)

        def data(entry_id: str, verification_required: bool) -> dict[str, Any]:
            payload = {"id": entry_id, "email": email, "verification_required": verification_required}
            if suggestions:
                payload["suggestions"] = suggestions
            return payload

        email_hash = hash_email(email)
        existing = await self.store.get_by_hash(email_hash)
        if existing is None:
            entry = self._new_entry(email, email_hash, submission, client)
            try:
                entry = await self.store.create(entry)
            except DuplicateEntryError:
                # Lost an insert race for the same address; answer as the winner's state dictates.
                existing = await self.store.get_by_hash(email_hash)
                if existing is None:
                    raise TransportError("Entry vanished after duplicate insert", provider="database")
            else:
                await self._send_verification(entry.id, email, entry.verification_token, entry.unsubscribe_token)
                logger.info("Waitlist submission successful: %s", sanitize_for_logs({
                    "id": entry.id, "source": entry.source, "utm_campaign": entry.utm_campaign,
                }))
                return Outcome(
                    success=True,
                    message="Thanks for joining! Please check your email to verify your subscription.",
                    status_code=201,
                    data=data(entry.id, True),
                )

        if existing.unsubscribed:
            raise TerminalStateError(MSG_UNSUBSCRIBED_SIGNUP)
        if existing.verified:
            return Outcome(
                success=True,
                message="You are already on our waitlist!",
                data=data(existing.id, False),
            )

        await self._reissue_verification(existing, email)
        return Outcome(
            success=True,
            message="Verification email sent! Please check your inbox.",
            data=data(existing.id, True),
        )

    def _new_entry(
        self, email: str, email_hash: str, submission: SignupSubmission, client: ClientContext
    ) -> WaitlistEntry:
        now = datetime.now(timezone.utc)
        return WaitlistEntry(
            email_hash=email_hash,
            email_encrypted=self.cipher.encrypt(email),
            verification_token=generate_verification_token(),
            verification_sent_at=now,
            verified=False,
            unsubscribe_token=generate_unsubscribe_token(),
            unsubscribed=False,
            source=submission.source or "direct",
            referrer=submission.referrer,
            utm_source=submission.utm_source,
            utm_medium=submission.utm_medium,
            utm_campaign=submission.utm_campaign,
            utm_term=submission.utm_term,
            utm_content=submission.utm_content,
            ab_test_variant=submission.ab_test_variant,
            extra=submission.metadata or {},
            user_agent=client.user_agent[:512] if client.user_agent else None,
            ip_address=client.ip_address,
            created_at=now,
            updated_at=now,
        )

    async def _reissue_verification(self, entry: WaitlistEntry, email: str) -> None:
        token = generate_verification_token()
        rotated = await self.store.update_verification_token(entry.id, token)
        if not rotated:
            # Verified or unsubscribed between the read and the update.
            fresh = await self.store.get_by_hash(entry.email_hash)
            if fresh is not None and fresh.unsubscribed:
                raise TerminalStateError(MSG_UNSUBSCRIBED_SIGNUP)
            raise ValidationError("Email is already verified")
        await self._send_verification(entry.id, email, token, entry.unsubscribe_token)

    async def resend_verification(self, email: str, client: ClientContext) -> Outcome:
        """Operator action: issue a fresh verification token and email it."""
        await self.throttle(client, RouteCategory.admin)
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email required")
        entry = await self.store.get_by_hash(hash_email(normalized))
        if entry is None:
            raise NotFoundError("Email not found")
        if entry.unsubscribed:
            raise TerminalStateError(MSG_UNSUBSCRIBED_VERIFY)
        if entry.verified:
            raise ValidationError("Email is already verified")
        await self._reissue_verification(entry, normalized)
        logger.info("Verification resent: id=%s to=%s", entry.id, mask_email(normalized))
        return Outcome(success=True, message="Verification email sent", data={"id": entry.id})

    async def verify(
        self,
        token: str,
        client: ClientContext,
        defer: Optional[Callable[..., Any]] = None,
    ) -> Outcome:
        """
        Confirm ownership of an email address.

        The token must pass both the freshness check and the store lookup.
        The welcome email is sent only by the call that actually flipped
        ``verified``; pass ``defer`` (e.g. BackgroundTasks.add_task) to send it
        after the response.
        """
        await self.throttle(client, RouteCategory.verification, MSG_VERIFY_RATE_LIMITED)
        if not is_well_formed_token(token):
            raise ValidationError(MSG_INVALID_VERIFY_TOKEN)
        if not validate_verification_token(token, self.settings.verification_token_ttl_hours):
            logger.info("Verification token stale or malformed: %s", mask_token(token))
            raise NotFoundError(MSG_EXPIRED_VERIFY_TOKEN)

        entry = await self.store.get_by_verification_token(token)
        if entry is None:
            logger.info("Verification token not found: %s", mask_token(token))
            raise NotFoundError(MSG_EXPIRED_VERIFY_TOKEN)
        if entry.unsubscribed:
            raise TerminalStateError(MSG_UNSUBSCRIBED_VERIFY)

        email = self.cipher.decrypt(entry.email_encrypted)
        if entry.verified:
            return Outcome(success=True, message="Email already verified. Welcome to the waitlist!", email=email)

        if not await self.store.mark_verified(entry.id):
            fresh = await self.store.get_by_verification_token(token)
            if fresh is not None and fresh.unsubscribed:
                raise TerminalStateError(MSG_UNSUBSCRIBED_VERIFY)
            return Outcome(success=True, message="Email already verified. Welcome to the waitlist!", email=email)

        logger.info("Email verification successful: %s", sanitize_for_logs({"id": entry.id, "email": email}))
        if defer is not None:
            defer(self._send_welcome, email, entry.unsubscribe_token)
        else:
            await self._send_welcome(email, entry.unsubscribe_token)
        return Outcome(success=True, message="Email verified successfully! Welcome to the waitlist.", email=email)

    async def _send_welcome(self, email: str, unsubscribe_token: str) -> None:
        # Verification already succeeded; a failed position lookup or welcome only gets logged.
        try:
            position = await self.store.count_verified()
        except TransportError as e:
            logger.warning("Waitlist position unavailable for %s: %s", mask_email(email), e.details)
            position = None
        try:
            result = await self.email_service.send_welcome_email(email, unsubscribe_token, position)
        except Exception:
            logger.exception("Welcome email raised for %s", mask_email(email))
            return
        if not result.success:
            logger.error("Failed to send welcome email to %s: %s", mask_email(email), result.error)

    async def unsubscribe(self, token: str, client: ClientContext) -> Outcome:
        await self.throttle(client, RouteCategory.general)
        if not is_well_formed_token(token):
            raise ValidationError(MSG_INVALID_UNSUBSCRIBE_TOKEN)
        entry = await self.store.get_by_unsubscribe_token(token)
        if entry is None:
            logger.info("Unsubscribe token not found: %s", mask_token(token))
            raise NotFoundError(MSG_INVALID_UNSUBSCRIBE_TOKEN)

        email = self.cipher.decrypt(entry.email_encrypted)
        already = "You have already been unsubscribed from our mailing list."
        if entry.unsubscribed:
            return Outcome(success=True, message=already, email=email)
        if not await self.store.mark_unsubscribed(entry.id):
            return Outcome(success=True, message=already, email=email)

        logger.info("Email unsubscribed successfully: %s", sanitize_for_logs({"id": entry.id, "email": email}))
        return Outcome(
            success=True,
            message="You have been successfully unsubscribed from our mailing list.",
            email=email,
        )

    async def verified_count(self, client: ClientContext) -> int:
        await self.throttle(client, RouteCategory.general)
        return await self.store.count_verified()

    async def stats(self, client: ClientContext) -> dict[str, Any]:
        await self.throttle(client, RouteCategory.admin)
        return await self.store.summarize(datetime.now(timezone.utc))
