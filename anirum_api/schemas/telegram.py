"""Telegram Bot API update schemas.

Only the fields the webhook dispatcher reads are modelled; everything
else Telegram sends is ignored.
"""

from pydantic import BaseModel, ConfigDict, Field


class TelegramUser(BaseModel):
    """Sender of a message."""

    model_config = ConfigDict(extra="ignore")

    id: int
    is_bot: bool = False
    username: str | None = None
    first_name: str | None = None


class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    type: str | None = None


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message_id: int
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None


class TelegramUpdate(BaseModel):
    """Incoming update delivered to the webhook."""

    model_config = ConfigDict(extra="ignore")

    update_id: int
    message: TelegramMessage | None = None


class TelegramWebhookAck(BaseModel):
    """Response schema for POST /api/telegram-webhook."""

    ok: bool = True


class TelegramWebhookInfoResponse(BaseModel):
    """Response schema for GET /api/telegram-webhook/info."""

    url: str = ""
    has_custom_certificate: bool = False
    pending_update_count: int = 0
    last_error_date: int | None = None
    last_error_message: str | None = None
    bot_username: str | None = None
