"""Messenger verification router.

WhatsApp codes are sent immediately. Telegram returns a deep link to
the bot; the code is delivered when the user sends /start there (see
the Telegram webhook router). Both channels are confirmed through the
same verify endpoint.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from anirum_api.core.auth import CurrentUser
from anirum_api.database import get_db
from anirum_api.logging_config import get_logger
from anirum_api.middleware.rate_limit import (
    SEND_CODE_LIMIT,
    VERIFY_CODE_LIMIT,
    limiter,
)
from anirum_api.schemas.phone_verification import (
    PendingHandshakeStats,
    SendCodeRequest,
    SendCodeResponse,
    TelegramHandshake,
    VerificationStatusResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from anirum_api.services.container import AppServices, get_services
from anirum_api.services.messenger import Channel, DeliveryFailureReason
from anirum_api.services.profile import (
    ProfileNotFoundError,
    mark_channel_verified,
    verification_flags,
)
from anirum_api.services.verification_results import (
    CodeVerified,
    VerificationErrorKind,
    VerificationFailure,
)

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/phone-verification",
    tags=["phone-verification"],
)

_UNPROCESSABLE = 422

_CHANNEL_NAMES = {Channel.WHATSAPP: "WhatsApp", Channel.TELEGRAM: "Telegram"}

_FAILURE_STATUS = {
    VerificationErrorKind.INVALID_FORMAT: _UNPROCESSABLE,
    VerificationErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    VerificationErrorKind.CODE_NOT_FOUND: status.HTTP_400_BAD_REQUEST,
    VerificationErrorKind.CODE_EXPIRED: status.HTTP_410_GONE,
    VerificationErrorKind.TOO_MANY_ATTEMPTS: status.HTTP_429_TOO_MANY_REQUESTS,
    VerificationErrorKind.INVALID_CODE: status.HTTP_400_BAD_REQUEST,
    VerificationErrorKind.CODE_NOT_DELIVERED: status.HTTP_409_CONFLICT,
}

_DELIVERY_STATUS = {
    DeliveryFailureReason.RECIPIENT_NOT_FOUND: _UNPROCESSABLE,
    DeliveryFailureReason.RECIPIENT_BLOCKED: _UNPROCESSABLE,
    DeliveryFailureReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    DeliveryFailureReason.AUTH_CONFIG_INVALID: status.HTTP_503_SERVICE_UNAVAILABLE,
    DeliveryFailureReason.UNKNOWN: status.HTTP_502_BAD_GATEWAY,
}


def failure_to_http(failure: VerificationFailure) -> HTTPException:
    """Convert a flow failure into an HTTPException with a structured detail."""
    detail: dict[str, Any] = {"code": failure.kind.value, "message": failure.message}
    headers: dict[str, str] | None = None

    if failure.kind == VerificationErrorKind.DELIVERY_FAILED:
        reason = failure.delivery_reason or DeliveryFailureReason.UNKNOWN
        status_code = _DELIVERY_STATUS[reason]
        detail["reason"] = reason.value
    else:
        status_code = _FAILURE_STATUS[failure.kind]

    if failure.remaining_attempts is not None:
        detail["remaining_attempts"] = failure.remaining_attempts
    if failure.retry_after_seconds is not None:
        detail["retry_after_seconds"] = failure.retry_after_seconds
        headers = {"Retry-After": str(failure.retry_after_seconds)}

    return HTTPException(status_code=status_code, detail=detail, headers=headers)


@router.post("/send-code", response_model=SendCodeResponse, response_model_exclude_none=True)
@limiter.limit(SEND_CODE_LIMIT)
async def send_code(
    request: Request,
    body: SendCodeRequest,
    user: CurrentUser,
    services: AppServices = Depends(get_services),
) -> SendCodeResponse:
    """Start verification of a WhatsApp number or Telegram account."""
    if body.messenger == Channel.TELEGRAM:
        started = await services.handshake_flow.request_code(body.recipient, user.id)
        if isinstance(started, VerificationFailure):
            raise failure_to_http(started)
        return SendCodeResponse(
            message=(
                "Open the Telegram bot and press Start to receive your code"
                if not started.requires_manual_fallback
                else "Enter the code shown on the screen"
            ),
            messenger=Channel.TELEGRAM,
            handle=started.handle,
            expires_at=started.expires_at,
            telegram=TelegramHandshake(
                deep_link=started.deep_link,
                expires_at=started.expires_at,
                requires_manual_fallback=started.requires_manual_fallback,
                fallback_code=started.fallback_code,
            ),
        )

    sent = await services.direct_flow.request_code(body.recipient, body.messenger, user.id)
    if isinstance(sent, VerificationFailure):
        raise failure_to_http(sent)
    return SendCodeResponse(
        message=f"Code sent to {_CHANNEL_NAMES[sent.channel]}",
        messenger=sent.channel,
        phone=sent.recipient,
        expires_at=sent.expires_at,
    )


@router.post("/verify-code", response_model=VerifyCodeResponse)
@limiter.limit(VERIFY_CODE_LIMIT)
async def verify_code(
    request: Request,
    body: VerifyCodeRequest,
    user: CurrentUser,
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> VerifyCodeResponse:
    """Confirm a code and mark the channel as verified on the profile."""
    result: CodeVerified | VerificationFailure
    if body.messenger == Channel.TELEGRAM:
        result = await services.handshake_flow.verify_code(body.recipient, body.code, user.id)
    else:
        result = await services.direct_flow.verify_code(
            body.recipient, body.code, user.id, channel=body.messenger
        )
    if isinstance(result, VerificationFailure):
        raise failure_to_http(result)

    try:
        await mark_channel_verified(db, result)
    except ProfileNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "profile_not_found", "message": "User profile not found"},
        )

    return VerifyCodeResponse(
        message=f"{_CHANNEL_NAMES[result.channel]} verified successfully",
        messenger=result.channel,
    )


@router.get("/status", response_model=VerificationStatusResponse)
async def get_status(
    user: CurrentUser,
    services: AppServices = Depends(get_services),
) -> VerificationStatusResponse:
    """Verification flags of the caller plus their live sessions."""
    active = 0
    for store in services.stores:
        active += len(await store.sessions_for_owner(user.id))
    pending = await services.handshake_flow.pending_stats(user.id)

    return VerificationStatusResponse(
        **verification_flags(user),
        active_sessions=active,
        pending_handshakes=PendingHandshakeStats(**pending),
    )
