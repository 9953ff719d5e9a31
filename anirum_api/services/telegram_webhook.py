"""Inbound Telegram update handling.

The webhook is unauthenticated by necessity, so every update is treated
as untrusted input: malformed payloads are ignored, and nothing here
raises for delivery problems. ``/start`` (with or without a deep-link
payload) is the only command that touches verification state.
"""

import enum
import re
from typing import Any

from pydantic import ValidationError

from anirum_api.logging_config import get_logger
from anirum_api.schemas.telegram import TelegramUpdate
from anirum_api.services.handshake_verification import HandshakeVerificationFlow
from anirum_api.services.messenger import DeliveryError, InvalidRecipientError

logger = get_logger(__name__)

# "/start", "/start verify", "/start@AnirumBot verify"
_START_RE = re.compile(r"^/start(?:@\w+)?(?:\s+(\S+))?\s*$")

HELP_MESSAGE = (
    "ℹ️ This bot only confirms Telegram accounts for Anirum.\n\n"
    "Start verification on the Anirum website, then send /start here."
)


class UpdateOutcome(str, enum.Enum):
    IGNORED = "ignored"
    HELP_SENT = "help_sent"
    NO_SESSION = "no_session"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"


def parse_start_command(text: str) -> tuple[bool, str | None]:
    """Return (is_start, payload) for a message text."""
    match = _START_RE.match(text.strip())
    if match is None:
        return False, None
    return True, match.group(1)


class TelegramWebhookDispatcher:
    """Routes Telegram updates to the handshake flow."""

    def __init__(self, handshake: HandshakeVerificationFlow) -> None:
        self.handshake = handshake

    async def dispatch(self, payload: dict[str, Any]) -> UpdateOutcome:
        try:
            update = TelegramUpdate.model_validate(payload)
        except ValidationError:
            logger.warning("Ignoring malformed Telegram update")
            return UpdateOutcome.IGNORED

        message = update.message
        if message is None or not message.text:
            return UpdateOutcome.IGNORED
        if message.from_user is not None and message.from_user.is_bot:
            return UpdateOutcome.IGNORED

        chat_id = message.chat.id
        is_start, start_payload = parse_start_command(message.text)

        if is_start:
            sender = message.from_user.username if message.from_user else None
            logger.info(
                "Telegram /start received",
                update_id=update.update_id,
                chat_id=chat_id,
                start_payload=start_payload,
            )
            outcome = await self.handshake.on_inbound_start(sender, chat_id)
            return UpdateOutcome(outcome.value)

        try:
            await self.handshake.gateway.send(chat_id, HELP_MESSAGE)
        except (DeliveryError, InvalidRecipientError):
            logger.warning("Telegram help reply failed", chat_id=chat_id)
            return UpdateOutcome.IGNORED
        return UpdateOutcome.HELP_SENT
