"""Waitlist service – FastAPI application."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.database import create_all, make_engine, make_session_factory
from app.exceptions import GENERIC_ERROR_MESSAGE, RateLimitedError, WaitlistError
from app.routers import notifications, waitlist
from app.services.crypto import build_cipher
from app.services.notifications import EmailService
from app.services.rate_limit import build_rate_limiter, purge_memory_limiter
from app.services.redaction import sanitize_for_logs
from app.services.store import SqlAlchemyWaitlistStore
from app.services.waitlist import WaitlistService

logger = logging.getLogger("app")

PURGE_INTERVAL_MINUTES = 15


def _log_email_setup(email_service: EmailService) -> None:
    names = [p.name for p in email_service.providers if p.is_configured()]
    if names:
        logger.info("[Email] providers in order: %s (from=%s)", ", ".join(names), email_service.from_email)
    else:
        logger.warning("[Email] Not configured - verification emails will fail; set EMAIL_PROVIDER and credentials in .env and restart")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    engine = None
    service: WaitlistService | None = app.state.waitlist_service
    if service is None:
        engine = make_engine(settings.database_url)
        await create_all(engine)
        email_service = EmailService.from_settings(settings)
        service = WaitlistService(
            store=SqlAlchemyWaitlistStore(make_session_factory(engine)),
            cipher=build_cipher(settings),
            email_service=email_service,
            rate_limiter=build_rate_limiter(settings),
            settings=settings,
        )
        app.state.waitlist_service = service
        _log_email_setup(email_service)

    # Scheduler: drop expired in-process rate-limit windows
    from apscheduler.schedulers.background import BackgroundScheduler
    scheduler = BackgroundScheduler()
    if not service.rate_limiter.is_distributed:
        scheduler.add_job(purge_memory_limiter, "interval", minutes=PURGE_INTERVAL_MINUTES, args=[service.rate_limiter])
    scheduler.start()
    try:
        yield
    finally:
        scheduler.shutdown(wait=False)
        await service.rate_limiter.close()
        if engine is not None:
            await engine.dispose()


def _rate_limit_headers(request: Request, exc: Exception) -> dict[str, str]:
    if isinstance(exc, RateLimitedError):
        return exc.result.headers()
    client = getattr(request.state, "client", None)
    if client is not None and client.rate_limit is not None:
        return client.rate_limit.headers()
    return {}


async def waitlist_error_handler(request: Request, exc: WaitlistError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s %s",
            request.method, request.url.path, type(exc).__name__,
            sanitize_for_logs({"message": exc.message, "detail": exc.details, "provider": getattr(exc, "provider", None)}),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.public_message},
        headers=_rate_limit_headers(request, exc),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        field = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        msg = errors[0].get("msg", message)
        message = f"{field}: {msg}" if field else msg
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": message},
        headers=_rate_limit_headers(request, exc),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": GENERIC_ERROR_MESSAGE})


def create_app(settings: Settings | None = None, service: WaitlistService | None = None) -> FastAPI:
    """Build the app. Pass ``service`` to skip the database/provider wiring done at startup."""
    settings = settings or get_settings()
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.setLevel(settings.log_level.upper())

    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
    app.state.settings = settings
    app.state.waitlist_service = service
    # Mirrors the headers the explicit OPTIONS routes advertise.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.add_exception_handler(WaitlistError, waitlist_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(waitlist.router)
    app.include_router(notifications.router)

    @app.get("/")
    def root():
        return {"app": settings.app_name, "status": "ok"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


app = create_app()
