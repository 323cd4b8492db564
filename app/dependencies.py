"""Shared dependencies: settings, services, client context, operator credential."""
import logging
import secrets

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from app.config import Settings
from app.exceptions import AuthenticationError
from app.services.rate_limit import RouteCategory, client_ip_address, resolve_client_identity
from app.services.waitlist import BROWSER_HEADERS, ClientContext, WaitlistService

logger = logging.getLogger(__name__)

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_waitlist_service(request: Request) -> WaitlistService:
    return request.app.state.waitlist_service


def debug_bypass_requested(request: Request, settings: Settings) -> bool:
    """X-Debug-Bypass: true counts only when the deployment allows it."""
    if not settings.allow_debug_bypass:
        return False
    return (request.headers.get("x-debug-bypass") or "").strip().lower() == "true"


def get_client_context(request: Request, settings: Settings = Depends(get_app_settings)) -> ClientContext:
    trusted_ip = request.client.host if settings.trust_client_host and request.client else None
    identity = resolve_client_identity(request.headers, trusted_ip)
    client = ClientContext(
        identity=identity,
        bypass=debug_bypass_requested(request, settings),
        user_agent=request.headers.get("user-agent", ""),
        ip_address=client_ip_address(identity),
        headers={name: request.headers.get(name, "") for name in BROWSER_HEADERS},
    )
    # Exception handlers read this to attach rate-limit headers to error responses.
    request.state.client = client
    return client


async def require_admin(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
    api_key: str | None = Depends(admin_key_header),
) -> None:
    """
    Privileged routes: X-Admin-Key must match ADMIN_API_KEY, or an allowed debug bypass.

    The admin budget is charged before the key is compared, so wrong guesses
    run into 429 like any other request.
    """
    await service.throttle(client, RouteCategory.admin)
    if client.bypass:
        logger.info("Admin check bypassed via X-Debug-Bypass")
        return
    expected = settings.admin_api_key
    provided = (api_key or "").strip()
    if not expected or not provided or not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Unauthorized")
