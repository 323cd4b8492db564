import asyncio
import logging

import pytest

from app.exceptions import (
    NotFoundError,
    RateLimitedError,
    TerminalStateError,
    TransportError,
    ValidationError,
)
from app.services.crypto import generate_verification_token, hash_email
from app.services.rate_limit import RouteCategory
from app.services.waitlist import ClientContext, SignupSubmission, looks_like_bot, suggest_corrections
from tests.conftest import (
    BROWSER_HEADERS,
    InMemoryStore,
    RecordingProvider,
    link_token,
    make_service,
    make_settings,
)


def client_ctx(identity: str = "203.0.113.7") -> ClientContext:
    return ClientContext(identity=identity)


async def signup(service, email="Jane@Example.com", **kwargs):
    return await service.signup(SignupSubmission(email=email, **kwargs), client_ctx())


@pytest.mark.asyncio
async def test_signup_verify_and_repeat_verify(service, provider, store):
    outcome = await signup(service, source="twitter")
    assert outcome.status_code == 201
    assert outcome.data["verification_required"] is True

    entry = await store.get_by_hash(hash_email("jane@example.com"))
    assert entry.email_encrypted != "jane@example.com"
    assert entry.source == "twitter"
    assert not entry.verified and not entry.unsubscribed

    [verification] = provider.tagged("verification")
    assert verification.to == "jane@example.com"
    token = link_token(verification, "verify")
    assert token == entry.verification_token

    verified = await service.verify(token, client_ctx())
    assert verified.message == "Email verified successfully! Welcome to the waitlist."
    assert verified.email == "jane@example.com"
    [welcome] = provider.tagged("welcome")
    assert welcome.metadata["waitlistPosition"] == 1
    assert "#1" in welcome.text

    again = await service.verify(token, client_ctx())
    assert again.message == "Email already verified. Welcome to the waitlist!"
    assert len(provider.tagged("welcome")) == 1


@pytest.mark.asyncio
async def test_signup_existing_verified_is_idempotent(service, provider):
    await signup(service)
    await service.verify(link_token(provider.sent[0], "verify"), client_ctx())
    sent = len(provider.sent)

    outcome = await signup(service, email="  JANE@example.com ")
    assert outcome.status_code == 200
    assert outcome.message == "You are already on our waitlist!"
    assert len(provider.sent) == sent


@pytest.mark.asyncio
async def test_signup_existing_unverified_rotates_token(service, provider, store):
    await signup(service)
    first = link_token(provider.sent[0], "verify")
    await asyncio.sleep(0.002)

    outcome = await signup(service)
    assert outcome.status_code == 200
    assert outcome.message == "Verification email sent! Please check your inbox."
    second = link_token(provider.sent[1], "verify")
    assert second != first
    assert len(store.rows) == 1

    with pytest.raises(NotFoundError):
        await service.verify(first, client_ctx())
    assert (await service.verify(second, client_ctx())).success


@pytest.mark.asyncio
async def test_unsubscribe_is_terminal(service, provider):
    await signup(service)
    template = provider.sent[0]
    verify_token = link_token(template, "verify")
    unsubscribe_token = link_token(template, "unsubscribe")

    first = await service.unsubscribe(unsubscribe_token, client_ctx())
    assert first.message == "You have been successfully unsubscribed from our mailing list."
    assert first.email == "jane@example.com"
    second = await service.unsubscribe(unsubscribe_token, client_ctx())
    assert second.message == "You have already been unsubscribed from our mailing list."

    with pytest.raises(TerminalStateError) as exc:
        await service.verify(verify_token, client_ctx())
    assert exc.value.status_code == 400
    with pytest.raises(TerminalStateError) as exc:
        await signup(service)
    assert "contact support" in exc.value.message
    assert provider.tagged("welcome") == []


@pytest.mark.asyncio
async def test_unsubscribe_after_verify_wins(service, provider):
    await signup(service)
    verify_token = link_token(provider.sent[0], "verify")
    await service.verify(verify_token, client_ctx())
    await service.unsubscribe(link_token(provider.sent[0], "unsubscribe"), client_ctx())
    with pytest.raises(TerminalStateError):
        await service.verify(verify_token, client_ctx())


@pytest.mark.asyncio
async def test_concurrent_verifies_send_one_welcome(service, provider):
    await signup(service)
    token = link_token(provider.sent[0], "verify")

    outcomes = await asyncio.gather(*(service.verify(token, client_ctx(f"10.0.0.{i}")) for i in range(8)))

    assert all(o.success for o in outcomes)
    assert sum(o.message.startswith("Email verified successfully") for o in outcomes) == 1
    assert len(provider.tagged("welcome")) == 1


@pytest.mark.asyncio
async def test_verify_rejects_malformed_stale_and_unknown(service, settings):
    with pytest.raises(ValidationError):
        await service.verify("short", client_ctx())

    stale = generate_verification_token(now_ms=1_000)
    with pytest.raises(NotFoundError) as stale_exc:
        await service.verify(stale, client_ctx())

    unknown = generate_verification_token()
    with pytest.raises(NotFoundError) as unknown_exc:
        await service.verify(unknown, client_ctx())
    assert stale_exc.value.message == unknown_exc.value.message == "Invalid or expired verification token"


@pytest.mark.asyncio
async def test_unsubscribe_rejects_malformed_and_unknown(service):
    with pytest.raises(ValidationError):
        await service.unsubscribe("x", client_ctx())
    with pytest.raises(NotFoundError):
        await service.unsubscribe("0" * 64, client_ctx())


@pytest.mark.asyncio
async def test_deferred_welcome_runs_after_return(service, provider):
    await signup(service)
    deferred = []
    outcome = await service.verify(
        link_token(provider.sent[0], "verify"),
        client_ctx(),
        defer=lambda fn, *args: deferred.append((fn, args)),
    )
    assert outcome.success
    assert provider.tagged("welcome") == []
    fn, args = deferred[0]
    await fn(*args)
    assert len(provider.tagged("welcome")) == 1


@pytest.mark.asyncio
async def test_welcome_failure_does_not_fail_verify(settings):
    provider = RecordingProvider()
    service = make_service(settings, provider)
    await signup(service)
    provider.fail = True
    outcome = await service.verify(link_token(provider.sent[0], "verify"), client_ctx())
    assert outcome.success


@pytest.mark.asyncio
async def test_verification_send_failure_is_transport_error(settings):
    service = make_service(settings, RecordingProvider(fail=True))
    with pytest.raises(TransportError) as exc:
        await signup(service)
    assert exc.value.status_code == 500
    assert exc.value.public_message == "Something went wrong. Please try again later."


@pytest.mark.asyncio
async def test_honeypot_fakes_success_without_store(service, store, provider):
    outcome = await signup(service, website="http://spam.example")
    assert outcome.success
    assert store.rows == {}
    assert provider.sent == []


@pytest.mark.asyncio
async def test_disposable_domain_rejected(service, store):
    with pytest.raises(ValidationError):
        await signup(service, email="bot@mailinator.com")
    assert store.rows == {}


@pytest.mark.asyncio
async def test_signup_rate_limited_after_budget(provider):
    service = make_service(make_settings(rate_limit_signup=3), provider)
    for i in range(3):
        await signup(service, email=f"user{i}@example.com")
    with pytest.raises(RateLimitedError) as exc:
        await signup(service, email="user9@example.com")
    assert exc.value.status_code == 429
    assert exc.value.retry_after_seconds > 0


@pytest.mark.asyncio
async def test_resend_verification(service, provider):
    await signup(service)
    outcome = await service.resend_verification("jane@example.com", client_ctx())
    assert outcome.success
    assert len(provider.tagged("verification")) == 2

    with pytest.raises(NotFoundError):
        await service.resend_verification("nobody@example.com", client_ctx())

    await service.verify(link_token(provider.sent[-1], "verify"), client_ctx())
    with pytest.raises(ValidationError):
        await service.resend_verification("jane@example.com", client_ctx())


@pytest.mark.asyncio
async def test_count_and_stats(service, provider):
    await signup(service, email="a@example.com", source="twitter")
    await signup(service, email="b@example.com")
    await service.verify(link_token(provider.sent[0], "verify"), client_ctx())

    assert await service.verified_count(client_ctx()) == 1
    stats = await service.stats(client_ctx())
    assert stats["total_signups"] == 2
    assert stats["verified_signups"] == 1
    assert stats["recent_signups"] == 2
    assert stats["conversion_rate"] == 50.0
    assert {"source": "twitter", "count": 1} in stats["top_sources"]
    assert len(stats["daily_stats"]) == 7
    assert stats["daily_stats"][-1]["signups"] == 2


class CountOutageStore(InMemoryStore):
    async def count_verified(self):
        raise TransportError("Store count failed", provider="database", details="OperationalError")


@pytest.mark.asyncio
async def test_position_lookup_failure_still_sends_welcome(settings, provider):
    store = CountOutageStore()
    service = make_service(settings, provider, store)
    await signup(service)
    outcome = await service.verify(link_token(provider.sent[0], "verify"), client_ctx())
    assert outcome.success
    (row,) = store.rows.values()
    assert row.verified is True
    welcome = provider.tagged("welcome")
    assert len(welcome) == 1
    assert welcome[0].metadata["waitlistPosition"] == 0


@pytest.mark.asyncio
async def test_throttle_charges_each_category_once_per_request(provider):
    service = make_service(make_settings(rate_limit_admin=2), provider)
    client = client_ctx()
    for _ in range(3):
        await service.throttle(client, RouteCategory.admin)
    assert client.rate_limit.remaining == 1
    with pytest.raises(RateLimitedError):
        for _ in range(2):
            await service.throttle(client_ctx(), RouteCategory.admin)


def browser_ctx(**kwargs) -> ClientContext:
    values = dict(
        identity="198.51.100.4",
        user_agent=BROWSER_HEADERS["User-Agent"],
        ip_address="198.51.100.4",
        headers={"accept": "text/html", "accept-language": "en", "accept-encoding": "gzip"},
    )
    values.update(kwargs)
    return ClientContext(**values)


@pytest.mark.parametrize("user_agent, headers, expected", [
    (BROWSER_HEADERS["User-Agent"], {"accept": "*/*", "accept-language": "en", "accept-encoding": "br"}, False),
    ("Googlebot/2.1", {"accept": "*/*", "accept-language": "en", "accept-encoding": "br"}, True),
    ("python-requests/2.31", {"accept": "*/*", "accept-language": "en", "accept-encoding": "br"}, True),
    (BROWSER_HEADERS["User-Agent"], {"accept": "*/*", "accept-encoding": "br"}, True),
    ("", {}, True),
])
def test_looks_like_bot(user_agent, headers, expected):
    assert looks_like_bot(user_agent, headers) is expected


@pytest.mark.asyncio
async def test_bot_signup_fakes_success_without_store(service, store, provider):
    outcome = await service.signup(SignupSubmission(email="jane@example.com"), browser_ctx(user_agent="Wget/1.21"))
    assert outcome.success
    assert outcome.message == "Thank you for joining our waitlist!"
    assert store.rows == {}
    assert provider.sent == []


@pytest.mark.asyncio
async def test_bot_screening_can_be_disabled(provider):
    store = InMemoryStore()
    service = make_service(make_settings(bot_detection=False), provider, store)
    outcome = await service.signup(SignupSubmission(email="jane@example.com"), browser_ctx(user_agent="curl/8.4.0"))
    assert outcome.status_code == 201
    (row,) = store.rows.values()
    assert row.user_agent == "curl/8.4.0"


@pytest.mark.asyncio
async def test_signup_stores_client_details_and_suggestions(service, store):
    outcome = await service.signup(SignupSubmission(email="Jane@Hotmial.com"), browser_ctx())
    assert outcome.status_code == 201
    assert outcome.data["suggestions"] == ["jane@hotmail.com"]
    (row,) = store.rows.values()
    assert row.user_agent == BROWSER_HEADERS["User-Agent"]
    assert row.ip_address == "198.51.100.4"

    plain = await signup(service, email="sam@example.com")
    assert "suggestions" not in plain.data
    assert suggest_corrections("a@outlok.com") == ["a@outlook.com"]


@pytest.mark.asyncio
async def test_honeypot_log_names_masked_client(service, caplog):
    caplog.set_level(logging.INFO, logger="app.services.waitlist")
    await signup(service, website="http://spam.example")
    (record,) = [r for r in caplog.records if r.getMessage().startswith("Honeypot triggered")]
    message = record.getMessage()
    assert "identity=[REDACTED](len=11)" in message
    assert "203.0.113.7" not in message
    assert "Jane@Example.com" not in message
