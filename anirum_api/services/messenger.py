"""Outbound messenger gateway abstraction.

A gateway sends one text message to one recipient on one channel and
either returns a receipt or raises DeliveryError with a reason that
callers use to pick a fallback. Provider error codes are translated
through a per-gateway table; gateways never retry, because a repeated
send is a duplicate message on the user's phone.
"""

import abc
import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from anirum_api.logging_config import get_logger

logger = get_logger(__name__)


class Channel(str, enum.Enum):
    """Messaging channels used for verification."""

    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class DeliveryFailureReason(str, enum.Enum):
    """Why a message could not be delivered."""

    RECIPIENT_NOT_FOUND = "recipient_not_found"
    RECIPIENT_BLOCKED = "recipient_blocked"
    RATE_LIMITED = "rate_limited"
    AUTH_CONFIG_INVALID = "auth_config_invalid"
    UNKNOWN = "unknown"


DELIVERY_HINTS: dict[Channel, dict[DeliveryFailureReason, str]] = {
    Channel.WHATSAPP: {
        DeliveryFailureReason.RECIPIENT_NOT_FOUND: (
            "This number is not registered in WhatsApp. Check the phone number."
        ),
        DeliveryFailureReason.RECIPIENT_BLOCKED: (
            "WhatsApp refused delivery to this number."
        ),
        DeliveryFailureReason.RATE_LIMITED: (
            "Too many WhatsApp messages right now. Please try again later."
        ),
        DeliveryFailureReason.AUTH_CONFIG_INVALID: (
            "WhatsApp delivery is temporarily unavailable."
        ),
        DeliveryFailureReason.UNKNOWN: (
            "Could not send the code via WhatsApp. Please try again."
        ),
    },
    Channel.TELEGRAM: {
        DeliveryFailureReason.RECIPIENT_NOT_FOUND: (
            "Telegram user not found. Check the username and make sure you "
            "have started a conversation with the bot."
        ),
        DeliveryFailureReason.RECIPIENT_BLOCKED: (
            "The bot is blocked or the account is deactivated. Unblock the "
            "bot and try again."
        ),
        DeliveryFailureReason.RATE_LIMITED: (
            "Too many Telegram requests. Please try again later."
        ),
        DeliveryFailureReason.AUTH_CONFIG_INVALID: (
            "Telegram delivery is temporarily unavailable."
        ),
        DeliveryFailureReason.UNKNOWN: (
            "Could not send the code via Telegram. Please try again."
        ),
    },
}


class InvalidRecipientError(ValueError):
    """The recipient identifier is malformed for the channel."""


class DeliveryError(Exception):
    """A message could not be delivered.

    Attributes:
        channel: Channel the send was attempted on
        reason: Mapped failure reason
        detail: Provider description, for logs only
        status_code: Provider error code, if any
        retry_after: Seconds the provider asked us to wait, if any
    """

    def __init__(
        self,
        channel: Channel,
        reason: DeliveryFailureReason,
        detail: str | None = None,
        status_code: int | None = None,
        retry_after: int | None = None,
    ):
        self.channel = channel
        self.reason = reason
        self.detail = detail
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"{channel.value} delivery failed: {reason.value}")

    @property
    def hint(self) -> str:
        """Human-readable, channel-specific explanation for end users."""
        return DELIVERY_HINTS[self.channel][self.reason]


@dataclass(frozen=True)
class DeliveryReceipt:
    """Proof that the provider accepted a message."""

    channel: Channel
    recipient: str
    message_id: str | None = None


class MessengerGateway(abc.ABC):
    """Base class for a single-channel message sender.

    Subclasses declare ``channel`` and ``error_reasons`` (provider code to
    reason) and implement recipient normalization, credential checks and
    the provider request itself.
    """

    channel: Channel
    error_reasons: Mapping[int, DeliveryFailureReason] = {}

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    @abc.abstractmethod
    def normalize_recipient(self, recipient: str | int) -> str:
        """Return the canonical recipient identifier.

        Raises:
            InvalidRecipientError: If the identifier is malformed.
        """

    @abc.abstractmethod
    async def send(self, recipient: str | int, message: str) -> DeliveryReceipt:
        """Send one message.

        Raises:
            InvalidRecipientError: If the recipient is malformed.
            DeliveryError: If the provider did not accept the message.
        """

    @abc.abstractmethod
    def format_code_message(self, code: str, ttl_minutes: int) -> str:
        """Render the verification message for this channel."""

    def map_error(self, code: int | None) -> DeliveryFailureReason:
        """Translate a provider error code into a failure reason."""
        if code is None:
            return DeliveryFailureReason.UNKNOWN
        return self.error_reasons.get(code, DeliveryFailureReason.UNKNOWN)

    def _fail(
        self,
        reason: DeliveryFailureReason,
        detail: str | None = None,
        status_code: int | None = None,
        retry_after: int | None = None,
    ) -> DeliveryError:
        logger.warning(
            "Message delivery failed",
            channel=self.channel.value,
            reason=reason.value,
            status_code=status_code,
            detail=detail,
        )
        return DeliveryError(
            self.channel,
            reason,
            detail=detail,
            status_code=status_code,
            retry_after=retry_after,
        )

    async def _post_json(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        """Issue exactly one POST to the provider.

        Transport failures (timeouts, connection errors) become
        DeliveryError(UNKNOWN); HTTP error statuses are returned to the
        caller for provider-specific mapping.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise self._fail(DeliveryFailureReason.UNKNOWN, detail=f"timeout: {e}")
        except httpx.HTTPError as e:
            raise self._fail(DeliveryFailureReason.UNKNOWN, detail=str(e))


def safe_json(response: httpx.Response) -> dict[str, Any]:
    """Decode a provider response body, tolerating non-JSON errors."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
