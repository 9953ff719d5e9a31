"""Telegram Bot API gateway.

Telegram is the handshake verification channel: a bot cannot open a
conversation, so the code is only sent after the user has written
``/start`` to the bot and the webhook has told us their chat id.
Besides sending, this module wraps the bot management calls used by
operators (getMe, setWebhook, getWebhookInfo).
"""

import html
import re
from typing import Any

import httpx

from anirum_api.config import settings
from anirum_api.logging_config import get_logger
from anirum_api.services.messenger import (
    Channel,
    DeliveryFailureReason,
    DeliveryReceipt,
    InvalidRecipientError,
    MessengerGateway,
    safe_json,
)

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot"

# Telegram usernames: 5-32 chars, letters, digits and underscores
_USERNAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{4,31}$")
_CHAT_ID_RE = re.compile(r"^-?\d+$")

# Bot API error_code -> failure reason
TELEGRAM_ERROR_REASONS = {
    400: DeliveryFailureReason.RECIPIENT_NOT_FOUND,  # chat not found / bad username
    401: DeliveryFailureReason.AUTH_CONFIG_INVALID,
    403: DeliveryFailureReason.RECIPIENT_BLOCKED,  # blocked by user / deactivated
    404: DeliveryFailureReason.AUTH_CONFIG_INVALID,  # malformed token
    429: DeliveryFailureReason.RATE_LIMITED,
}


class TelegramBotError(Exception):
    """Error calling a Telegram bot management method."""


def normalize_handle(handle: str) -> str:
    """Canonical form of a Telegram username: no leading @, lower case.

    Raises:
        InvalidRecipientError: If the handle is not a valid username.
    """
    candidate = (handle or "").strip().removeprefix("@")
    if not _USERNAME_RE.match(candidate):
        raise InvalidRecipientError(
            "Telegram username must be 5-32 characters: letters, digits or underscores"
        )
    return candidate.lower()


class TelegramGateway(MessengerGateway):
    """Sends messages and manages the bot through the Telegram Bot API."""

    channel = Channel.TELEGRAM
    error_reasons = TELEGRAM_ERROR_REASONS

    def __init__(
        self,
        bot_token: str | None = None,
        bot_username: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(timeout=timeout or settings.messenger_timeout_seconds)
        self.bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        configured_username = (
            bot_username if bot_username is not None else settings.telegram_bot_username
        )
        self._bot_username: str | None = configured_username.removeprefix("@") or None

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def _api_url(self, method: str) -> str:
        return f"{TELEGRAM_API_BASE}{self.bot_token}/{method}"

    def normalize_recipient(self, recipient: str | int) -> str:
        """Chat ids pass through unchanged; usernames become ``@handle``."""
        if isinstance(recipient, int):
            return str(recipient)
        value = recipient.strip()
        if _CHAT_ID_RE.match(value):
            return value
        return f"@{normalize_handle(value)}"

    def format_code_message(self, code: str, ttl_minutes: int) -> str:
        return (
            f"🔐 <b>Anirum verification code:</b> <code>{html.escape(code)}</code>\n\n"
            f"The code is valid for <b>{ttl_minutes} minutes</b>.\n\n"
            "⚠️ <i>Never share this code with anyone!</i>"
        )

    async def send(self, recipient: str | int, message: str) -> DeliveryReceipt:
        chat_id = self.normalize_recipient(recipient)

        if not self.is_configured:
            raise self._fail(
                DeliveryFailureReason.AUTH_CONFIG_INVALID,
                detail="Telegram bot token is not configured",
            )

        response = await self._post_json(
            self._api_url("sendMessage"),
            {"chat_id": chat_id, "text": message, "parse_mode": "HTML"},
        )
        data = safe_json(response)

        if response.status_code != 200 or not data.get("ok"):
            error_code = data.get("error_code") or response.status_code
            retry_after = (data.get("parameters") or {}).get("retry_after")
            raise self._fail(
                self.map_error(error_code),
                detail=data.get("description"),
                status_code=error_code,
                retry_after=retry_after,
            )

        result = data.get("result") or {}
        message_id = result.get("message_id")
        logger.info("Telegram message sent", chat_id=chat_id, message_id=message_id)
        return DeliveryReceipt(
            channel=self.channel,
            recipient=chat_id,
            message_id=str(message_id) if message_id is not None else None,
        )

    # ------------------------------------------------------------------
    # Bot management
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        if not self.is_configured:
            raise TelegramBotError("Telegram bot token is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if payload is None:
                    response = await client.get(self._api_url(method))
                else:
                    response = await client.post(self._api_url(method), json=payload)
        except httpx.HTTPError as e:
            raise TelegramBotError(f"Telegram API unreachable: {e}") from e

        if response.status_code != 200:
            raise TelegramBotError(
                f"Telegram API error: {response.status_code} {response.text}"
            )

        data = safe_json(response)
        if not data.get("ok"):
            raise TelegramBotError(
                f"Telegram API returned error: {data.get('description', 'Unknown')}"
            )
        return data.get("result")

    async def get_bot_info(self) -> str:
        """Return the bot's username (without @), calling getMe once.

        Raises:
            TelegramBotError: If the token is missing/invalid or the call fails.
        """
        if self._bot_username is not None:
            return self._bot_username

        result = await self._call("getMe")
        self._bot_username = result["username"]
        return self._bot_username

    async def deep_link(self, payload: str = "verify") -> str:
        """Link that opens the bot with a /start command prefilled."""
        username = await self.get_bot_info()
        return f"https://t.me/{username}?start={payload}"

    async def set_webhook(self, url: str, secret_token: str | None = None) -> bool:
        """Point the bot's updates at ``url``; pending updates are dropped."""
        payload: dict[str, Any] = {
            "url": url,
            "allowed_updates": ["message"],
            "drop_pending_updates": True,
        }
        if secret_token:
            payload["secret_token"] = secret_token
        result = await self._call("setWebhook", payload)
        logger.info("Telegram webhook registered", url=url)
        return bool(result)

    async def get_webhook_info(self) -> dict[str, Any]:
        """Return Telegram's view of the current webhook."""
        return await self._call("getWebhookInfo")

    def reset_cache(self) -> None:
        """Forget the cached bot username."""
        self._bot_username = None
