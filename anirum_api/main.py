"""Anirum FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from anirum_api.config import settings, validate_secret_key
from anirum_api.database import close_database
from anirum_api.logging_config import get_logger, setup_logging
from anirum_api.middleware import CorrelationIdMiddleware
from anirum_api.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from anirum_api.routers import guides, health, phone_verification, telegram_webhook
from anirum_api.services.container import build_services
from anirum_api.services.scheduler import start_scheduler, stop_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)

validate_secret_key()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(
        "Anirum API started",
        whatsapp_configured=app.state.services.whatsapp.is_configured,
        telegram_configured=app.state.services.telegram.is_configured,
    )
    if settings.telegram_code_fallback_enabled:
        logger.warning("Telegram manual code fallback is enabled")

    start_scheduler(app.state.services.stores)

    yield

    logger.info("Shutting down Anirum API...")
    stop_scheduler()
    await close_database()
    logger.info("Anirum API shutdown complete")


app = FastAPI(
    title="Anirum API",
    description="Messenger verification and guide tagging for Anirum",
    version="0.1.0",
    lifespan=lifespan,
)

# Long-lived gateways, session stores and flows
app.state.services = build_services()

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(phone_verification.router)
app.include_router(telegram_webhook.router)
app.include_router(guides.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "Anirum API",
        "version": "0.1.0",
        "docs": "/docs",
    }
