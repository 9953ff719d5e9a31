"""Direct-send verification (WhatsApp).

The server can message the recipient right away, so a code is issued,
stored only as a bcrypt hash, and sent in the same request. States:
no session -> issued -> verified | expired | attempts exceeded |
superseded; every terminal state needs a fresh request.
"""

import math
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta

from anirum_api.core.security import (
    generate_numeric_code,
    hash_code,
    normalize_submitted_code,
    verify_code_hash,
)
from anirum_api.logging_config import get_logger, mask_phone
from anirum_api.services.messenger import (
    Channel,
    DeliveryError,
    InvalidRecipientError,
    MessengerGateway,
)
from anirum_api.services.session_store import (
    Clock,
    SessionRateLimitedError,
    SessionStore,
    VerificationSession,
    utcnow,
)
from anirum_api.services.verification_results import (
    CodeSent,
    CodeVerified,
    VerificationErrorKind,
    VerificationFailure,
)

logger = get_logger(__name__)

MAX_SUPERSEDED_HASHES = 3


@dataclass(kw_only=True)
class DirectSendSession(VerificationSession):
    channel: Channel
    recipient: str
    code_hash: str
    # Hashes of codes this session replaced, newest first
    superseded_hashes: tuple[str, ...] = ()


def session_key(channel: Channel, recipient: str, user_id: uuid.UUID) -> str:
    return f"{channel.value}:{recipient}:{user_id}"


def _invalid_code_format() -> VerificationFailure:
    return VerificationFailure(
        kind=VerificationErrorKind.INVALID_FORMAT,
        message="The code must contain exactly 6 digits.",
    )


class DirectSendVerificationFlow:
    """Issues and checks codes on channels that can push immediately.

    Args:
        gateways: Gateway per supported channel
        store: Session table shared by all requests of this flow
        code_generator: Produces the plaintext code (injectable for tests)
        code_ttl: Lifetime of an issued code
        max_attempts: Number of code comparisons allowed per session
        resend_interval: Minimum age of a session before it can be replaced
        hash_rounds: bcrypt cost for code hashes
        clock: Current time source, shared with the store
    """

    def __init__(
        self,
        gateways: Mapping[Channel, MessengerGateway],
        store: SessionStore[DirectSendSession],
        *,
        code_generator: Callable[[], str] = generate_numeric_code,
        code_ttl: timedelta = timedelta(minutes=5),
        max_attempts: int = 3,
        resend_interval: timedelta = timedelta(seconds=60),
        hash_rounds: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._gateways = dict(gateways)
        self.store = store
        self._code_generator = code_generator
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self.resend_interval = resend_interval
        self._hash_rounds = hash_rounds
        self._clock = clock

    @property
    def channels(self) -> frozenset[Channel]:
        return frozenset(self._gateways)

    def _rate_limited(self, retry_after: timedelta, channel: Channel) -> VerificationFailure:
        seconds = max(1, math.ceil(retry_after.total_seconds()))
        return VerificationFailure(
            kind=VerificationErrorKind.RATE_LIMITED,
            message=f"Please wait {seconds} seconds before requesting a new code.",
            channel=channel,
            retry_after_seconds=seconds,
        )

    def _resolve(
        self, channel: Channel, recipient: str
    ) -> tuple[MessengerGateway, str] | VerificationFailure:
        gateway = self._gateways.get(channel)
        if gateway is None:
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_FORMAT,
                message=f"Direct verification is not available for {channel.value}.",
                channel=channel,
            )
        try:
            return gateway, gateway.normalize_recipient(recipient)
        except InvalidRecipientError as e:
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_FORMAT,
                message=str(e),
                channel=channel,
            )

    async def request_code(
        self,
        recipient: str,
        channel: Channel,
        requesting_user_id: uuid.UUID,
    ) -> CodeSent | VerificationFailure:
        """Issue a code and send it through the channel's gateway."""
        resolved = self._resolve(channel, recipient)
        if isinstance(resolved, VerificationFailure):
            return resolved
        gateway, normalized = resolved
        key = session_key(channel, normalized, requesting_user_id)

        # Cheap pre-check so a rejected request never generates a code;
        # the store repeats the check atomically inside create().
        existing = await self.store.get(key)
        superseded: tuple[str, ...] = ()
        if existing is not None:
            age = self._clock() - existing.created_at
            if age < self.resend_interval:
                return self._rate_limited(self.resend_interval - age, channel)
            superseded = (existing.code_hash, *existing.superseded_hashes)
            superseded = superseded[:MAX_SUPERSEDED_HASHES]

        code = self._code_generator()
        try:
            session = await self.store.create(
                key,
                self.code_ttl,
                min_interval=self.resend_interval,
                owner_user_id=requesting_user_id,
                channel=channel,
                recipient=normalized,
                code_hash=hash_code(code, self._hash_rounds),
                superseded_hashes=superseded,
            )
        except SessionRateLimitedError as e:
            return self._rate_limited(e.retry_after, channel)

        ttl_minutes = max(1, int(self.code_ttl.total_seconds() // 60))
        try:
            await gateway.send(normalized, gateway.format_code_message(code, ttl_minutes))
        except DeliveryError as e:
            await self.store.delete(key, expected_id=session.id)
            return VerificationFailure(
                kind=VerificationErrorKind.DELIVERY_FAILED,
                message=e.hint,
                channel=channel,
                retry_after_seconds=e.retry_after,
                delivery_reason=e.reason,
            )

        logger.info(
            "Verification code sent",
            channel=channel.value,
            recipient=mask_phone(normalized),
            user_id=str(requesting_user_id),
        )
        return CodeSent(channel=channel, recipient=normalized, expires_at=session.expires_at)

    async def verify_code(
        self,
        recipient: str,
        submitted_code: str,
        requesting_user_id: uuid.UUID,
        channel: Channel = Channel.WHATSAPP,
    ) -> CodeVerified | VerificationFailure:
        """Check a submitted code; a match consumes the session."""
        code = normalize_submitted_code(submitted_code)
        if code is None:
            return _invalid_code_format()

        resolved = self._resolve(channel, recipient)
        if isinstance(resolved, VerificationFailure):
            return resolved
        _, normalized = resolved
        key = session_key(channel, normalized, requesting_user_id)

        lookup = await self.store.lookup(key)
        if lookup.session is None:
            if lookup.expired:
                return VerificationFailure(
                    kind=VerificationErrorKind.CODE_EXPIRED,
                    message="The code has expired. Request a new code.",
                    channel=channel,
                )
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_FOUND,
                message="No code found. Request a new code.",
                channel=channel,
            )

        session = await self.store.record_attempt(key, lookup.session.id)
        if session is None:
            # Expired, replaced or consumed since the lookup
            current = await self.store.lookup(key)
            if current.expired:
                return VerificationFailure(
                    kind=VerificationErrorKind.CODE_EXPIRED,
                    message="The code has expired. Request a new code.",
                    channel=channel,
                )
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_FOUND,
                message=(
                    "This code was replaced by a newer one. Use the latest code."
                    if current.session is not None
                    else "No code found. Request a new code."
                ),
                channel=channel,
            )

        if session.attempts > self.max_attempts:
            await self.store.delete(key, expected_id=session.id)
            logger.warning(
                "Verification attempts exhausted",
                channel=channel.value,
                user_id=str(requesting_user_id),
            )
            return VerificationFailure(
                kind=VerificationErrorKind.TOO_MANY_ATTEMPTS,
                message="Too many attempts. Request a new code.",
                channel=channel,
                remaining_attempts=0,
            )

        if not verify_code_hash(code, session.code_hash):
            if any(verify_code_hash(code, h) for h in session.superseded_hashes):
                return VerificationFailure(
                    kind=VerificationErrorKind.CODE_NOT_FOUND,
                    message="This code was replaced by a newer one. Use the latest code.",
                    channel=channel,
                )
            remaining = self.max_attempts - session.attempts
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_CODE,
                message=f"Invalid code. Attempts remaining: {remaining}",
                channel=channel,
                remaining_attempts=remaining,
            )

        if not await self.store.delete(key, expected_id=session.id):
            # Consumed or superseded by a concurrent request
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_FOUND,
                message="No code found. Request a new code.",
                channel=channel,
            )

        logger.info(
            "Verification code confirmed",
            channel=channel.value,
            user_id=str(requesting_user_id),
        )
        return CodeVerified(
            channel=channel,
            recipient=normalized,
            owner_user_id=requesting_user_id,
        )
