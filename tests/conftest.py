import asyncio
import re
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.config import Settings
from app.exceptions import DuplicateEntryError
from app.models.waitlist_entry import WaitlistEntry
from app.services.crypto import EmailCipher
from app.services.email_providers import EmailProvider, EmailResult, EmailTemplate
from app.services.notifications import EmailService
from app.services.rate_limit import MemoryRateLimitBackend, RateLimiter, rules_from_settings
from app.services.store import WaitlistStore, build_summary
from app.services.waitlist import WaitlistService

ADMIN_KEY = "admin-secret-key"
BASE_URL = "https://waitlist.example"
# What a real browser sends; httpx's own defaults look like a script.
BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Accept": "application/json, text/html;q=0.9, */*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
}


def _snapshot(entry: WaitlistEntry) -> WaitlistEntry:
    """Detached copy, like a row read back from a database."""
    return WaitlistEntry(**{c.name: getattr(entry, c.name) for c in WaitlistEntry.__table__.columns})


class InMemoryStore(WaitlistStore):
    """Store fake. Each conditional update runs without an await, so it is atomic on the loop."""

    def __init__(self):
        self.rows: dict[str, WaitlistEntry] = {}

    async def _find(self, attr: str, value) -> WaitlistEntry | None:
        await asyncio.sleep(0)
        for row in self.rows.values():
            if getattr(row, attr) == value:
                return _snapshot(row)
        return None

    async def get_by_hash(self, email_hash):
        return await self._find("email_hash", email_hash)

    async def get_by_verification_token(self, token):
        return await self._find("verification_token", token)

    async def get_by_unsubscribe_token(self, token):
        return await self._find("unsubscribe_token", token)

    async def create(self, entry):
        await asyncio.sleep(0)
        if any(r.email_hash == entry.email_hash for r in self.rows.values()):
            raise DuplicateEntryError("Email already on the waitlist")
        if entry.id is None:
            entry.id = str(uuid.uuid4())
        self.rows[entry.id] = _snapshot(entry)
        return entry

    async def mark_verified(self, entry_id):
        await asyncio.sleep(0)
        row = self.rows.get(entry_id)
        if row is None or row.verified or row.unsubscribed:
            return False
        row.verified = True
        row.verified_at = datetime.now(timezone.utc)
        return True

    async def mark_unsubscribed(self, entry_id):
        await asyncio.sleep(0)
        row = self.rows.get(entry_id)
        if row is None or row.unsubscribed:
            return False
        row.unsubscribed = True
        row.unsubscribed_at = datetime.now(timezone.utc)
        return True

    async def update_verification_token(self, entry_id, token):
        await asyncio.sleep(0)
        row = self.rows.get(entry_id)
        if row is None or row.verified or row.unsubscribed:
            return False
        row.verification_token = token
        row.verification_sent_at = datetime.now(timezone.utc)
        return True

    async def count_verified(self):
        return sum(1 for r in self.rows.values() if r.verified and not r.unsubscribed)

    async def summarize(self, now):
        live = [r for r in self.rows.values() if not r.unsubscribed]
        sources: dict = {}
        for r in live:
            sources[r.source] = sources.get(r.source, 0) + 1
        return build_summary(
            [(r.created_at, r.verified) for r in live],
            list(sources.items()),
            len(live),
            sum(1 for r in live if r.verified),
            now,
        )


class RecordingProvider(EmailProvider):
    """Captures every template instead of delivering it."""
    name = "recording"

    def __init__(self, configured: bool = True, fail: bool = False):
        self.configured = configured
        self.fail = fail
        self.sent: list[EmailTemplate] = []

    def is_configured(self) -> bool:
        return self.configured

    async def _send(self, template):
        await asyncio.sleep(0)
        if self.fail:
            return EmailResult(success=False, error="simulated outage", provider=self.name)
        self.sent.append(template)
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}", provider=self.name)

    async def _ping(self):
        return not self.fail

    def tagged(self, tag: str) -> list[EmailTemplate]:
        return [t for t in self.sent if tag in t.tags]


def link_token(template: EmailTemplate, path: str) -> str:
    match = re.search(rf"/waitlist/{path}\?token=([0-9a-f.]+)", template.text)
    assert match, f"no {path} link in email"
    return match.group(1)


def make_settings(**overrides) -> Settings:
    values = dict(
        app_env="test",
        encryption_key="test-encryption-key-0123456789",
        admin_api_key=ADMIN_KEY,
        public_url=BASE_URL,
        redis_url="",
        rate_limit_signup=100,
        rate_limit_verification=100,
        rate_limit_general=100,
        rate_limit_admin=100,
    )
    values.update(overrides)
    return Settings(**values)


def make_service(settings: Settings, provider: EmailProvider, store: WaitlistStore | None = None) -> WaitlistService:
    return WaitlistService(
        store=store if store is not None else InMemoryStore(),
        cipher=EmailCipher(settings.encryption_key, settings.encryption_salt),
        email_service=EmailService([provider], from_email="hello@waitlist.example", base_url=settings.public_url),
        rate_limiter=RateLimiter(MemoryRateLimitBackend(), rules_from_settings(settings)),
        settings=settings,
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def service(settings, provider, store):
    return make_service(settings, provider, store)


def api_client(app, **kwargs) -> AsyncClient:
    kwargs.setdefault("headers", BROWSER_HEADERS)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test", **kwargs)


@pytest_asyncio.fixture
async def client(settings, service):
    from app.main import create_app

    app = create_app(settings, service)
    async with api_client(app) as ac:
        yield ac
