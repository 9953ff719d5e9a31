"""Typed outcomes of the verification flows.

Each flow operation returns either its success value or a
VerificationFailure; nothing in the flows raises for an expected
user-facing condition.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from anirum_api.services.messenger import Channel, DeliveryFailureReason


class VerificationErrorKind(str, enum.Enum):
    INVALID_FORMAT = "invalid_format"
    RATE_LIMITED = "rate_limited"
    CODE_NOT_FOUND = "code_not_found"
    CODE_EXPIRED = "code_expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_CODE = "invalid_code"
    CODE_NOT_DELIVERED = "code_not_delivered"
    DELIVERY_FAILED = "delivery_failed"


@dataclass(frozen=True)
class VerificationFailure:
    """A flow operation did not succeed.

    Only the fields relevant to ``kind`` are set: ``remaining_attempts``
    for INVALID_CODE, ``retry_after_seconds`` for RATE_LIMITED, and
    ``delivery_reason`` for DELIVERY_FAILED.
    """

    kind: VerificationErrorKind
    message: str
    channel: Channel | None = None
    remaining_attempts: int | None = None
    retry_after_seconds: int | None = None
    delivery_reason: DeliveryFailureReason | None = None


@dataclass(frozen=True)
class CodeSent:
    """A code was issued and accepted by the messenger."""

    channel: Channel
    recipient: str
    expires_at: datetime


@dataclass(frozen=True)
class HandshakeStarted:
    """A pending handshake session exists; the user must open the bot.

    ``fallback_code`` is only set when the deployment exposes the code
    to the HTTP caller because bot delivery is unreliable.
    """

    handle: str
    deep_link: str
    expires_at: datetime
    fallback_code: str | None = None

    @property
    def requires_manual_fallback(self) -> bool:
        return self.fallback_code is not None


@dataclass(frozen=True)
class CodeVerified:
    """The submitted code matched; the session has been consumed."""

    channel: Channel
    recipient: str
    owner_user_id: uuid.UUID
    chat_id: str | None = None
