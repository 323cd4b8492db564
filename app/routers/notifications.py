"""Email delivery status and test send (operator only)."""
import html
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response

from app.dependencies import get_client_context, get_waitlist_service, require_admin
from app.exceptions import TransportError
from app.schemas.waitlist import TestEmailRequest
from app.services.email_providers import EmailTemplate
from app.services.redaction import mask_email
from app.services.waitlist import ClientContext, WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/email", tags=["email"], dependencies=[Depends(require_admin)])


@router.get("/status")
async def email_status(
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    """Which providers are configured and reachable."""
    response.headers.update(client.rate_limit.headers())
    status = await service.email_service.connection_status()
    return {"ok": True, **status}


@router.post("/test")
async def send_test_email(
    body: TestEmailRequest,
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    """
    Send a test email through the configured providers (with failover).
    Uses EMAIL_PROVIDER / FROM_EMAIL and the per-provider credentials from .env.
    """
    response.headers.update(client.rate_limit.headers())
    email_service = service.email_service
    brand = html.escape(service.settings.app_name)
    template = EmailTemplate(
        to=body.to,
        from_email=email_service.from_email,
        subject=f"[{brand}] Test email",
        html=f"<p>Hello,</p><p>This is a test email from <strong>{brand}</strong>.</p>"
             "<p>If you received this, email delivery is configured correctly.</p>",
        text=f"This is a test email from {brand}. If you received this, email delivery is configured correctly.",
        tags=["test"],
        metadata={"type": "test", "timestamp": datetime.now(timezone.utc).isoformat()},
    )
    result = await email_service.send(template)
    if not result.success:
        raise TransportError("Test email failed", provider=result.provider, details=result.error)
    logger.info("Test email sent to %s via %s", mask_email(body.to), result.provider)
    return {"ok": True, "message": f"Test email sent to {body.to}.", "result": result.to_dict()}
