"""Notification service: waitlist emails over the configured providers, with failover."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Sequence

from app.config import Settings
from app.services.email_providers import EmailProvider, EmailResult, EmailTemplate, build_email_providers
from app.services.email_templates import EmailData, EmailKind, generate_email_template
from app.services.redaction import mask_email

logger = logging.getLogger(__name__)


class EmailService:
    """Sends through each configured provider in order until one succeeds."""

    def __init__(
        self,
        providers: Sequence[EmailProvider],
        from_email: str,
        base_url: str,
        *,
        brand: str = "Waitlist",
        verification_ttl_hours: int = 24,
    ):
        self.providers = list(providers)
        self.from_email = from_email
        self.base_url = base_url
        self.brand = brand
        self.verification_ttl_hours = verification_ttl_hours

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        from_email = settings.from_email
        if settings.from_name and "<" not in from_email:
            from_email = f"{settings.from_name} <{from_email}>"
        return cls(
            build_email_providers(settings),
            from_email=from_email,
            base_url=settings.public_url,
            brand=settings.app_name,
            verification_ttl_hours=settings.verification_token_ttl_hours,
        )

    def is_configured(self) -> bool:
        return any(p.is_configured() for p in self.providers)

    async def send(self, template: EmailTemplate) -> EmailResult:
        if not self.providers:
            logger.warning("[Email] NOT SENT: no email providers configured. to=%s subject=%s", mask_email(template.to), template.subject)
            return EmailResult(success=False, error="No email providers configured", provider="none")

        last: EmailResult | None = None
        for provider in self.providers:
            if not provider.is_configured():
                continue
            result = await provider.send_email(template)
            if result.success:
                return result
            logger.warning("[Email] provider %s failed: %s", result.provider, result.error)
            last = result

        if last is None:
            return EmailResult(success=False, error="No email providers configured", provider="none")
        return EmailResult(success=False, error="All email providers failed", provider=last.provider)

    def _compose(self, kind: EmailKind, data: EmailData, extra_meta: dict | None = None) -> EmailTemplate:
        rendered = generate_email_template(
            kind, data, self.base_url, brand=self.brand, ttl_hours=self.verification_ttl_hours
        )
        metadata = {"type": kind.value, "timestamp": datetime.now(timezone.utc).isoformat()}
        metadata.update(extra_meta or {})
        return EmailTemplate(
            to=data.email,
            from_email=self.from_email,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            tags=rendered.tags,
            metadata=metadata,
        )

    async def send_verification_email(self, email: str, verification_token: str, unsubscribe_token: str) -> EmailResult:
        data = EmailData(email=email, verification_token=verification_token, unsubscribe_token=unsubscribe_token)
        return await self.send(self._compose(EmailKind.verification, data))

    async def send_welcome_email(self, email: str, unsubscribe_token: str, waitlist_position: int | None = None) -> EmailResult:
        data = EmailData(email=email, unsubscribe_token=unsubscribe_token, waitlist_position=waitlist_position)
        return await self.send(
            self._compose(EmailKind.welcome, data, {"waitlistPosition": waitlist_position or 0})
        )

    async def send_launch_notification(self, email: str, unsubscribe_token: str) -> EmailResult:
        data = EmailData(email=email, unsubscribe_token=unsubscribe_token)
        return await self.send(self._compose(EmailKind.launch_notification, data))

    async def connection_status(self) -> dict:
        """Configured/connected state for every provider; 'configured' is true if any can send."""
        providers = []
        for provider in self.providers:
            configured = provider.is_configured()
            connected = await provider.test_connection() if configured else False
            providers.append({"provider": provider.name, "configured": configured, "connected": connected})
        working = [p["provider"] for p in providers if p["configured"] and p["connected"]]
        return {"configured": bool(working), "providers": working, "details": providers}
