"""Messenger verification schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from anirum_api.services.messenger import Channel


class SendCodeRequest(BaseModel):
    """Request schema for POST /api/phone-verification/send-code.

    WhatsApp needs ``phone``. Telegram needs ``handle``; ``phone`` is
    accepted as an alias for clients that send one field for both.
    """

    phone: str | None = Field(default=None, max_length=64)
    handle: str | None = Field(default=None, max_length=64)
    messenger: Channel = Channel.WHATSAPP

    @model_validator(mode="after")
    def require_recipient(self) -> "SendCodeRequest":
        if not (self.recipient or "").strip():
            field = "phone" if self.messenger == Channel.WHATSAPP else "handle"
            msg = f"{field} is required for {self.messenger.value}"
            raise ValueError(msg)
        return self

    @property
    def recipient(self) -> str | None:
        if self.messenger == Channel.WHATSAPP:
            return self.phone
        return self.handle or self.phone


class VerifyCodeRequest(SendCodeRequest):
    """Request schema for POST /api/phone-verification/verify-code.

    The code's format is checked by the verification flow so that a
    malformed code gets the same structured error as every other failure.
    """

    code: str = Field(..., max_length=32)


class TelegramHandshake(BaseModel):
    """Deep-link instructions returned when Telegram is the messenger."""

    model_config = ConfigDict(populate_by_name=True)

    requires_deep_link: Literal[True] = Field(default=True, alias="requiresDeepLink")
    deep_link: str = Field(..., alias="deepLink")
    expires_at: datetime = Field(..., alias="expiresAt")
    requires_manual_fallback: bool = Field(default=False, alias="requiresManualFallback")
    fallback_code: str | None = Field(default=None, alias="fallbackCode")


class SendCodeResponse(BaseModel):
    """Response schema for POST /api/phone-verification/send-code."""

    success: bool = True
    message: str
    messenger: Channel
    phone: str | None = None
    handle: str | None = None
    expires_at: datetime | None = None
    telegram: TelegramHandshake | None = None


class VerifyCodeResponse(BaseModel):
    """Response schema for POST /api/phone-verification/verify-code."""

    success: bool = True
    message: str
    verified: bool = True
    messenger: Channel


class PendingHandshakeStats(BaseModel):
    total: int = 0
    correlated: int = 0
    delivered: int = 0


class VerificationStatusResponse(BaseModel):
    """Response schema for GET /api/phone-verification/status."""

    whatsapp_verified: bool
    telegram_verified: bool
    active_sessions: int
    pending_handshakes: PendingHandshakeStats
