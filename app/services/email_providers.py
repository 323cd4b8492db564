"""
Email delivery backends behind one interface.

Every provider normalizes failures into ``EmailResult(success=False, error=..., provider=...)``;
no provider-specific exception escapes ``send_email``. An unconfigured provider
short-circuits with a "not configured" error before any network call.
"""
from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any

import anyio
import httpx

from app.config import Settings
from app.services.redaction import mask_email

logger = logging.getLogger(__name__)

MAILGUN_US_BASE = "https://api.mailgun.net"
MAILGUN_EU_BASE = "https://api.eu.mailgun.net"
HTTP_TIMEOUT_SECONDS = 10.0


@dataclass
class EmailTemplate:
    to: str
    from_email: str
    subject: str
    html: str
    text: str | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class EmailResult:
    success: bool
    provider: str
    message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "provider": self.provider}
        if self.message_id:
            data["messageId"] = self.message_id
        if self.error:
            data["error"] = self.error
        return data


class EmailProvider(abc.ABC):
    name: str = "unknown"

    @abc.abstractmethod
    def is_configured(self) -> bool:
        ...

    @abc.abstractmethod
    async def _send(self, template: EmailTemplate) -> EmailResult:
        ...

    @abc.abstractmethod
    async def _ping(self) -> bool:
        ...

    def not_configured(self) -> EmailResult:
        return EmailResult(success=False, error=f"{self.name} is not configured", provider=self.name)

    async def send_email(self, template: EmailTemplate) -> EmailResult:
        if not self.is_configured():
            return self.not_configured()
        try:
            return await self._send(template)
        except Exception as e:
            logger.error("%s send error: to=%s error=%s: %s", self.name, mask_email(template.to), type(e).__name__, e)
            return EmailResult(success=False, error=str(e) or type(e).__name__, provider=self.name)

    async def test_connection(self) -> bool:
        if not self.is_configured():
            return False
        try:
            return await self._ping()
        except Exception as e:
            logger.warning("%s connection test failed: %s: %s", self.name, type(e).__name__, e)
            return False


class MailgunProvider(EmailProvider):
    """Multipart-form HTTP API with basic auth (api:<key>)."""
    name = "mailgun"

    def __init__(self, api_key: str, domain: str, base_url: str = MAILGUN_US_BASE, transport: httpx.AsyncBaseTransport | None = None):
        self.api_key = (api_key or "").strip()
        self.domain = (domain or "").strip().lower()
        self.base_url = (base_url or MAILGUN_US_BASE).strip().rstrip("/")
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key and self.domain)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS, transport=self._transport)

    def _form(self, template: EmailTemplate) -> list[tuple[str, str]]:
        data = [
            ("from", template.from_email),
            ("to", template.to),
            ("subject", template.subject),
            ("html", template.html or ""),
        ]
        if template.text:
            data.append(("text", template.text))
        for tag in template.tags or []:
            data.append(("o:tag", tag))
        for key, value in (template.metadata or {}).items():
            data.append((f"v:{key}", str(value)))
        return data

    async def _send(self, template: EmailTemplate) -> EmailResult:
        form = self._form(template)
        # Force multipart/form-data: each field becomes its own part.
        files = [(k, (None, v.encode("utf-8"))) for k, v in form]
        async with self._client() as client:
            url = f"{self.base_url}/v3/{self.domain}/messages"
            r = await client.post(url, auth=("api", self.api_key), files=files)
            if r.status_code == 401 and self.base_url == MAILGUN_US_BASE:
                logger.info("[Mailgun] 401 with US endpoint. Retrying with EU endpoint...")
                r = await client.post(
                    f"{MAILGUN_EU_BASE}/v3/{self.domain}/messages", auth=("api", self.api_key), files=files
                )
            if 200 <= r.status_code < 300:
                try:
                    msg_id = (r.json() or {}).get("id", "")
                except ValueError:
                    msg_id = ""
                logger.info("[Mailgun] API success: to=%s status=%s", mask_email(template.to), r.status_code)
                return EmailResult(success=True, message_id=msg_id or None, provider=self.name)
            try:
                message = (r.json() or {}).get("message") or ""
            except ValueError:
                message = ""
            logger.warning("[Mailgun] API failed: status=%s to=%s", r.status_code, mask_email(template.to))
            return EmailResult(
                success=False,
                error=message or f"Mailgun error: {r.status_code}",
                provider=self.name,
            )

    async def _ping(self) -> bool:
        async with self._client() as client:
            r = await client.get(f"{self.base_url}/v3/domains/{self.domain}", auth=("api", self.api_key))
            return 200 <= r.status_code < 300


class SendGridProvider(EmailProvider):
    """Bearer-token HTTP API via the sendgrid SDK (run in a worker thread)."""
    name = "sendgrid"

    def __init__(self, api_key: str, client=None):
        self.api_key = (api_key or "").strip()
        self._sg = client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self):
        if self._sg is None:
            from sendgrid import SendGridAPIClient

            self._sg = SendGridAPIClient(self.api_key)
        return self._sg

    def _build_message(self, template: EmailTemplate):
        from sendgrid.helpers.mail import Category, CustomArg, Mail

        message = Mail(
            from_email=template.from_email,
            to_emails=template.to,
            subject=template.subject,
            html_content=template.html,
            plain_text_content=template.text or None,
        )
        # add_category inserts at the front; reverse to keep tag order.
        for tag in reversed(template.tags or []):
            message.add_category(Category(tag))
        for key, value in (template.metadata or {}).items():
            message.add_custom_arg(CustomArg(key, str(value)))
        return message

    async def _send(self, template: EmailTemplate) -> EmailResult:
        message = self._build_message(template)
        sg = self._get_client()
        response = await anyio.to_thread.run_sync(sg.send, message)
        status = getattr(response, "status_code", 0)
        if not 200 <= status < 300:
            return EmailResult(success=False, error=f"SendGrid error: {status}", provider=self.name)
        headers = getattr(response, "headers", None) or {}
        msg_id = headers.get("X-Message-Id") if hasattr(headers, "get") else None
        return EmailResult(success=True, message_id=msg_id or "unknown", provider=self.name)

    async def _ping(self) -> bool:
        sg = self._get_client()
        response = await anyio.to_thread.run_sync(lambda: sg.client.user.profile.get())
        return 200 <= getattr(response, "status_code", 0) < 300


class ResendProvider(EmailProvider):
    """JSON-over-HTTPS API keyed by an API key, via the resend SDK."""
    name = "resend"

    def __init__(self, api_key: str, emails_api=None):
        self.api_key = (api_key or "").strip()
        self._emails = emails_api

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get_emails_api(self):
        if self._emails is None:
            import resend

            resend.api_key = self.api_key
            self._emails = resend.Emails
        return self._emails

    @staticmethod
    def _tag_name(tag: str) -> str:
        # Resend tag names: ASCII letters, numbers, underscores, dashes; max 50 chars
        cleaned = "".join(c if c.isalnum() or c in "_-" else "_" for c in str(tag).lower())
        return cleaned[:50]

    def _params(self, template: EmailTemplate) -> dict[str, Any]:
        params: dict[str, Any] = {
            "from": template.from_email,
            "to": [template.to],
            "subject": template.subject,
            "html": template.html,
        }
        if template.text:
            params["text"] = template.text
        if template.tags:
            params["tags"] = [{"name": self._tag_name(t), "value": "1"} for t in template.tags]
        if template.metadata:
            params["headers"] = {"X-Metadata": json.dumps(template.metadata, default=str)}
        return params

    async def _send(self, template: EmailTemplate) -> EmailResult:
        emails = self._get_emails_api()
        params = self._params(template)
        result = await anyio.to_thread.run_sync(emails.send, params)
        msg_id = result.get("id") if isinstance(result, dict) else getattr(result, "id", None)
        if not msg_id:
            return EmailResult(success=False, error="Resend send failed", provider=self.name)
        return EmailResult(success=True, message_id=msg_id, provider=self.name)

    async def _ping(self) -> bool:
        # Resend has no ping endpoint; a key is all we can check without sending.
        return True


class SmtpProvider(EmailProvider):
    """Raw SMTP transport via aiosmtplib."""
    name = "smtp"

    def __init__(self, host: str, port: int = 587, username: str = "", password: str = "", use_tls: bool = False, timeout: float = 30.0):
        self.host = (host or "").strip()
        self.port = port
        self.username = username or ""
        self.password = password or ""
        self.use_tls = use_tls or port == 465
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    def _build_message(self, template: EmailTemplate) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = template.from_email
        msg["To"] = template.to
        msg["Subject"] = template.subject
        msg["Message-ID"] = make_msgid()
        if template.metadata:
            msg["X-Metadata"] = json.dumps(template.metadata, default=str)
        msg.set_content(template.text or "")
        msg.add_alternative(template.html, subtype="html")
        return msg

    def _connection_kwargs(self) -> dict[str, Any]:
        return {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "password": self.password,
            "use_tls": self.use_tls,
            "start_tls": False if self.use_tls else None,
            "timeout": self.timeout,
        }

    async def _send(self, template: EmailTemplate) -> EmailResult:
        import aiosmtplib

        msg = self._build_message(template)
        try:
            await aiosmtplib.send(msg, **self._connection_kwargs())
        except aiosmtplib.SMTPResponseException as e:
            return EmailResult(success=False, error=f"{e.code} {e.message}", provider=self.name)
        return EmailResult(success=True, message_id=msg["Message-ID"], provider=self.name)

    async def _ping(self) -> bool:
        import aiosmtplib

        kwargs = self._connection_kwargs()
        username, password = kwargs.pop("username"), kwargs.pop("password")
        smtp = aiosmtplib.SMTP(**kwargs)
        await smtp.connect()
        try:
            await smtp.login(username, password)
        finally:
            await smtp.quit()
        return True


PROVIDER_ORDER = ("mailgun", "sendgrid", "resend", "smtp")


def _make_provider(name: str, settings: Settings) -> EmailProvider:
    if name == "mailgun":
        return MailgunProvider(settings.mailgun_api_key, settings.mailgun_domain, settings.mailgun_base_url)
    if name == "sendgrid":
        return SendGridProvider(settings.sendgrid_api_key)
    if name == "resend":
        return ResendProvider(settings.resend_api_key)
    if name == "smtp":
        return SmtpProvider(
            settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    raise ValueError(f"Unknown email provider: {name}")


def build_email_providers(settings: Settings) -> list[EmailProvider]:
    """Select backends at startup. 'auto' keeps every configured backend, in failover order."""
    choice = (settings.email_provider or "auto").strip().lower()
    if choice != "auto":
        return [_make_provider(choice, settings)]
    providers = [_make_provider(name, settings) for name in PROVIDER_ORDER]
    return [p for p in providers if p.is_configured()]
