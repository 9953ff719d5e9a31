"""Telegram webhook router.

Telegram posts every bot update here. The endpoint cannot require user
authentication; when a webhook secret is configured Telegram echoes it
in ``X-Telegram-Bot-Api-Secret-Token`` and anything else is rejected.
"""

import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from anirum_api.config import settings
from anirum_api.core.auth import CurrentUser
from anirum_api.logging_config import get_logger
from anirum_api.middleware.rate_limit import WEBHOOK_LIMIT, limiter
from anirum_api.schemas.telegram import TelegramWebhookAck, TelegramWebhookInfoResponse
from anirum_api.services.container import AppServices, get_services
from anirum_api.services.telegram_bot import TelegramBotError

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/telegram-webhook",
    tags=["telegram"],
)


def _check_secret(received: str | None) -> None:
    expected = settings.telegram_webhook_secret
    if not expected:
        return
    if received is None or not secrets.compare_digest(received, expected):
        logger.warning("Telegram webhook rejected: bad secret token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook secret",
        )


@router.post("", response_model=TelegramWebhookAck)
@limiter.limit(WEBHOOK_LIMIT)
async def receive_update(
    request: Request,
    services: AppServices = Depends(get_services),
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> TelegramWebhookAck:
    """Handle one Telegram update.

    Always acknowledges accepted requests, even when the update is
    ignored or a reply fails, so Telegram does not redeliver it.
    """
    _check_secret(x_telegram_bot_api_secret_token)

    try:
        payload: Any = await request.json()
    except ValueError:
        logger.warning("Telegram webhook body is not JSON")
        return TelegramWebhookAck()

    if not isinstance(payload, dict):
        return TelegramWebhookAck()

    outcome = await services.webhook_dispatcher.dispatch(payload)
    logger.debug("Telegram update handled", outcome=outcome.value)
    return TelegramWebhookAck()


@router.get("/info", response_model=TelegramWebhookInfoResponse)
async def webhook_info(
    user: CurrentUser,
    services: AppServices = Depends(get_services),
) -> TelegramWebhookInfoResponse:
    """Telegram's view of the registered webhook, for operators."""
    if not services.telegram.is_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is not configured",
        )

    try:
        info = await services.telegram.get_webhook_info()
        bot_username = await services.telegram.get_bot_info()
    except TelegramBotError as e:
        logger.error("Telegram webhook info unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Telegram bot is temporarily unavailable",
        )

    return TelegramWebhookInfoResponse(
        url=info.get("url", ""),
        has_custom_certificate=info.get("has_custom_certificate", False),
        pending_update_count=info.get("pending_update_count", 0),
        last_error_date=info.get("last_error_date"),
        last_error_message=info.get("last_error_message"),
        bot_username=bot_username,
    )
