"""WhatsApp gateway backed by Green API.

Green API can message any WhatsApp number directly, which makes
WhatsApp the direct-send verification channel.
"""

import re

from anirum_api.config import settings
from anirum_api.logging_config import get_logger, mask_phone
from anirum_api.services.messenger import (
    Channel,
    DeliveryFailureReason,
    DeliveryReceipt,
    InvalidRecipientError,
    MessengerGateway,
    safe_json,
)

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"\D")
_CHAT_SUFFIX = "@c.us"
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

# Green API HTTP statuses -> failure reasons
GREEN_API_ERROR_REASONS = {
    400: DeliveryFailureReason.RECIPIENT_NOT_FOUND,
    401: DeliveryFailureReason.AUTH_CONFIG_INVALID,
    403: DeliveryFailureReason.AUTH_CONFIG_INVALID,
    404: DeliveryFailureReason.AUTH_CONFIG_INVALID,
    429: DeliveryFailureReason.RATE_LIMITED,
    466: DeliveryFailureReason.RATE_LIMITED,  # instance quota exhausted
}


def normalize_phone(phone: str) -> str:
    """Reduce a phone number to international digits.

    Local Russian formats are fixed up: ``8XXXXXXXXXX`` becomes
    ``7XXXXXXXXXX`` and a bare 10-digit ``9XXXXXXXXX`` gets ``7``
    prefixed.

    Raises:
        InvalidRecipientError: If fewer than 10 or more than 15 digits remain.
    """
    raw = (phone or "").strip()
    if raw.endswith(_CHAT_SUFFIX):
        raw = raw[: -len(_CHAT_SUFFIX)]
    digits = _NON_DIGITS.sub("", raw)

    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    elif len(digits) == 10 and digits.startswith("9"):
        digits = "7" + digits

    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise InvalidRecipientError(
            "Phone number must contain 10 to 15 digits including country code"
        )
    return digits


class WhatsAppGateway(MessengerGateway):
    """Sends WhatsApp messages through a Green API instance."""

    channel = Channel.WHATSAPP
    error_reasons = GREEN_API_ERROR_REASONS

    def __init__(
        self,
        api_url: str | None = None,
        id_instance: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(timeout=timeout or settings.messenger_timeout_seconds)
        self.api_url = api_url if api_url is not None else settings.green_api_url
        self.id_instance = (
            id_instance if id_instance is not None else settings.green_api_id_instance
        )
        self.api_token = (
            api_token if api_token is not None else settings.green_api_token_instance
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.id_instance and self.api_token)

    def _send_url(self) -> str:
        host = self.api_url.removeprefix("https://").rstrip("/")
        return f"https://{host}/waInstance{self.id_instance}/sendMessage/{self.api_token}"

    def normalize_recipient(self, recipient: str | int) -> str:
        return normalize_phone(str(recipient))

    def format_code_message(self, code: str, ttl_minutes: int) -> str:
        return (
            f"🔐 Anirum verification code: {code}\n\n"
            f"The code is valid for {ttl_minutes} minutes.\n\n"
            "*Never share this code with anyone!*"
        )

    async def send(self, recipient: str | int, message: str) -> DeliveryReceipt:
        phone = self.normalize_recipient(recipient)

        if not self.is_configured:
            raise self._fail(
                DeliveryFailureReason.AUTH_CONFIG_INVALID,
                detail="Green API credentials are not configured",
            )

        chat_id = f"{phone}{_CHAT_SUFFIX}"
        response = await self._post_json(
            self._send_url(),
            {"chatId": chat_id, "message": message},
        )
        data = safe_json(response)

        if response.status_code != 200:
            raise self._fail(
                self.map_error(response.status_code),
                detail=data.get("message") or data.get("error") or response.text,
                status_code=response.status_code,
            )

        logger.info(
            "WhatsApp message sent",
            phone=mask_phone(phone),
            message_id=data.get("idMessage"),
        )
        return DeliveryReceipt(
            channel=self.channel,
            recipient=phone,
            message_id=data.get("idMessage"),
        )
