"""Waitlist routes: signup, count, verify, unsubscribe, resend, stats."""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response
from fastapi.responses import HTMLResponse

from app.config import Settings
from app.dependencies import get_app_settings, get_client_context, get_waitlist_service, require_admin
from app.exceptions import WaitlistError
from app.schemas.waitlist import (
    ResendRequest,
    TokenActionResponse,
    TokenRequest,
    WaitlistCount,
    WaitlistResponse,
    WaitlistSignup,
)
from app.services.pages import UNSUBSCRIBE_PAGES, VERIFY_PAGES, page_for, render_status_page
from app.services.waitlist import ClientContext, Outcome, SignupSubmission, WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["waitlist"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


def _apply(response: Response, client: ClientContext, outcome: Outcome | None = None) -> None:
    if client.rate_limit is not None:
        response.headers.update(client.rate_limit.headers())
    if outcome is not None:
        response.status_code = outcome.status_code


def _preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@router.post("", response_model=WaitlistResponse, response_model_exclude_none=True)
async def join_waitlist(
    data: WaitlistSignup,
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    """Add an email to the waitlist and send the verification email. 201 for a new entry."""
    outcome = await service.signup(SignupSubmission(**data.model_dump()), client)
    _apply(response, client, outcome)
    return WaitlistResponse(success=outcome.success, message=outcome.message, data=outcome.data)


@router.get("", response_model=WaitlistCount)
async def waitlist_count(
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    count = await service.verified_count(client)
    _apply(response, client)
    return WaitlistCount(count=count)


@router.options("")
def waitlist_options():
    return _preflight()


@router.post("/verify", response_model=TokenActionResponse, response_model_exclude_none=True)
async def verify_email(
    data: TokenRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    outcome = await service.verify(data.token, client, defer=background_tasks.add_task)
    _apply(response, client, outcome)
    return TokenActionResponse(success=outcome.success, message=outcome.message, email=outcome.email)


@router.get("/verify", response_class=HTMLResponse)
async def verify_email_link(
    background_tasks: BackgroundTasks,
    token: str = Query(""),
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
    settings: Settings = Depends(get_app_settings),
):
    """Target of the emailed verification link. Same semantics as POST, rendered as a page."""
    try:
        await service.verify(token, client, defer=background_tasks.add_task)
        status_code, message, success = 200, None, True
    except WaitlistError as e:
        if e.status_code >= 500:
            logger.error("GET verification error: %s", e.message)
        status_code, message, success = e.status_code, e.public_message, False
    title, text = page_for(VERIFY_PAGES, status_code, message)
    headers = client.rate_limit.headers() if client.rate_limit else None
    return render_status_page(
        title, text, status_code, success=success, brand=settings.app_name, home_url=settings.public_url, headers=headers
    )


@router.options("/verify")
def verify_options():
    return _preflight()


@router.post("/unsubscribe", response_model=TokenActionResponse, response_model_exclude_none=True)
async def unsubscribe(
    data: TokenRequest,
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    outcome = await service.unsubscribe(data.token, client)
    _apply(response, client, outcome)
    return TokenActionResponse(success=outcome.success, message=outcome.message, email=outcome.email)


@router.get("/unsubscribe", response_class=HTMLResponse)
async def unsubscribe_link(
    response: Response,
    token: str = Query(""),
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
    settings: Settings = Depends(get_app_settings),
):
    """Target of the emailed unsubscribe link; runs the POST handler and renders the result."""
    try:
        result = await unsubscribe(TokenRequest(token=token), response, client, service)
        status_code, message, success = 200, result.message, True
    except WaitlistError as e:
        if e.status_code >= 500:
            logger.error("GET unsubscribe error: %s", e.message)
        status_code, message, success = e.status_code, e.public_message, False
    title, text = page_for(UNSUBSCRIBE_PAGES, status_code, message)
    headers = client.rate_limit.headers() if client.rate_limit else None
    return render_status_page(
        title, text, status_code, success=success, brand=settings.app_name, home_url=settings.public_url, headers=headers
    )


@router.options("/unsubscribe")
def unsubscribe_options():
    return _preflight()


@router.post(
    "/resend",
    response_model=WaitlistResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_admin)],
)
async def resend_verification(
    data: ResendRequest,
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    """Operator only: rotate the verification token and email it again."""
    outcome = await service.resend_verification(data.email, client)
    _apply(response, client, outcome)
    return WaitlistResponse(success=outcome.success, message=outcome.message, data=outcome.data)


@router.options("/resend")
def resend_options():
    return _preflight()


@router.get("/stats", dependencies=[Depends(require_admin)])
async def waitlist_stats(
    response: Response,
    client: ClientContext = Depends(get_client_context),
    service: WaitlistService = Depends(get_waitlist_service),
):
    stats = await service.stats(client)
    _apply(response, client)
    return {"success": True, "data": stats}


@router.options("/stats")
def stats_options():
    return _preflight()
