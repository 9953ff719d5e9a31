"""Handshake verification (Telegram).

A Telegram bot cannot write first, so verification spans two unrelated
entry points correlated only by the user's public handle:

1. ``request_code`` (authenticated API call) creates a *pending* session
   for the handle and returns a deep link to the bot. Nothing is sent.
2. ``on_inbound_start`` (unauthenticated webhook, any time later or
   never) finds the pending session for the sender's handle, records
   the chat id and delivers the code.
3. ``verify_code`` (authenticated API call) checks the code the user
   read in Telegram.

States: no session -> pending -> correlated -> delivered ->
verified | expired | superseded. Correlation and delivery happen in
one inbound event; if delivery fails the session stays correlated and
the next ``/start`` retries with the same code.

Unlike the direct-send flow, the session keeps the code in plaintext:
delivery happens at an unknown later time and a hash cannot be sent.
Exposure is bounded by the short TTL and by deleting the session as
soon as it is verified, superseded or expired.
"""

import enum
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from anirum_api.core.security import (
    generate_numeric_code,
    hash_code,
    normalize_submitted_code,
    verify_code_hash,
)
from anirum_api.logging_config import get_logger
from anirum_api.services.messenger import (
    Channel,
    DeliveryError,
    DeliveryFailureReason,
    InvalidRecipientError,
)
from anirum_api.services.session_store import SessionStore, VerificationSession
from anirum_api.services.telegram_bot import (
    TelegramBotError,
    TelegramGateway,
    normalize_handle,
)
from anirum_api.services.verification_results import (
    CodeVerified,
    HandshakeStarted,
    VerificationErrorKind,
    VerificationFailure,
)

logger = get_logger(__name__)

DEEP_LINK_PAYLOAD = "verify"
MAX_SUPERSEDED_HASHES = 3

NO_PENDING_MESSAGE = (
    "👋 Welcome to Anirum!\n\n"
    "This bot confirms Telegram accounts. There is no pending verification "
    "for your account right now.\n\n"
    "To verify: enter your Telegram username on the Anirum website, press "
    "\"Open Telegram\" and send /start here."
)

NO_USERNAME_MESSAGE = (
    "Your Telegram account has no username. Set one in Telegram settings, "
    "enter it on the Anirum website and send /start again."
)

RETRY_DELIVERY_MESSAGE = (
    "We could not send your verification code just now. "
    "Please send /start again in a moment."
)


@dataclass(kw_only=True)
class HandshakeSession(VerificationSession):
    handle: str
    code: str
    chat_id: str | None = None
    delivered: bool = False
    # bcrypt hashes of codes this session replaced, newest first
    superseded_hashes: tuple[str, ...] = ()


class InboundOutcome(str, enum.Enum):
    """What an inbound /start did."""

    NO_SESSION = "no_session"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"


class HandshakeVerificationFlow:
    """Two-phase verification correlated by Telegram handle.

    Args:
        gateway: Telegram gateway used for every outbound message
        store: Pending sessions keyed by normalized handle
        code_generator: Produces the plaintext code (injectable for tests)
        code_ttl: Lifetime of a pending session
        max_attempts: Number of code comparisons allowed per session
        fallback_enabled: Return the code to the HTTP caller as well
        hash_rounds: bcrypt cost for hashes of superseded codes
    """

    def __init__(
        self,
        gateway: TelegramGateway,
        store: SessionStore[HandshakeSession],
        *,
        code_generator: Callable[[], str] = generate_numeric_code,
        code_ttl: timedelta = timedelta(minutes=5),
        max_attempts: int = 3,
        fallback_enabled: bool = False,
        hash_rounds: int | None = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self._code_generator = code_generator
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self.fallback_enabled = fallback_enabled
        self._hash_rounds = hash_rounds

    @property
    def _ttl_minutes(self) -> int:
        return max(1, int(self.code_ttl.total_seconds() // 60))

    async def _reply_best_effort(self, chat_id: str, text: str) -> None:
        try:
            await self.gateway.send(chat_id, text)
        except (DeliveryError, InvalidRecipientError):
            logger.warning("Best-effort Telegram reply failed", chat_id=chat_id)

    async def request_code(
        self,
        handle: str,
        requesting_user_id: uuid.UUID,
    ) -> HandshakeStarted | VerificationFailure:
        """Create a pending session for ``handle`` and return the deep link."""
        try:
            normalized = normalize_handle(handle)
        except InvalidRecipientError as e:
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_FORMAT,
                message=str(e),
                channel=Channel.TELEGRAM,
            )

        superseded: tuple[str, ...] = ()
        previous = await self.store.get(normalized)
        if previous is not None:
            superseded = (
                hash_code(previous.code, self._hash_rounds),
                *previous.superseded_hashes,
            )[:MAX_SUPERSEDED_HASHES]

        session = await self.store.create(
            normalized,
            self.code_ttl,
            owner_user_id=requesting_user_id,
            handle=normalized,
            code=self._code_generator(),
            superseded_hashes=superseded,
        )

        try:
            deep_link = await self.gateway.deep_link(DEEP_LINK_PAYLOAD)
        except TelegramBotError:
            logger.error("Telegram bot unavailable for deep link", handle=normalized)
            await self.store.delete(normalized, expected_id=session.id)
            return VerificationFailure(
                kind=VerificationErrorKind.DELIVERY_FAILED,
                message="Telegram verification is temporarily unavailable.",
                channel=Channel.TELEGRAM,
                delivery_reason=DeliveryFailureReason.AUTH_CONFIG_INVALID,
            )

        logger.info(
            "Pending Telegram verification created",
            handle=normalized,
            user_id=str(requesting_user_id),
            expires_at=session.expires_at.isoformat(),
        )

        if not self.fallback_enabled:
            return HandshakeStarted(
                handle=normalized,
                deep_link=deep_link,
                expires_at=session.expires_at,
            )

        # The HTTP response itself delivers the code in this mode
        await self.store.update(normalized, session.id, delivered=True)
        logger.warning(
            "Verification code exposed to HTTP caller (manual fallback)",
            handle=normalized,
            user_id=str(requesting_user_id),
        )
        return HandshakeStarted(
            handle=normalized,
            deep_link=deep_link,
            expires_at=session.expires_at,
            fallback_code=session.code,
        )

    async def on_inbound_start(
        self,
        sender_handle: str | None,
        chat_id: str | int,
    ) -> InboundOutcome:
        """Deliver the pending code for ``sender_handle`` to ``chat_id``.

        Safe to call repeatedly: each /start within the TTL re-sends the
        same code and never generates a new one. Never raises for
        delivery problems; the sender only gets best-effort replies.

        The session is correlated and read under the store lock, and the
        send starts without yielding in between, so a replacement made
        before this call is always the one delivered. A replacement that
        lands while the send is in flight cannot recall the message: the
        older code still arrives, the newer session stays undelivered,
        and the next /start delivers the newer code.
        """
        chat = str(chat_id)

        try:
            handle = normalize_handle(sender_handle or "")
        except InvalidRecipientError:
            await self._reply_best_effort(chat, NO_USERNAME_MESSAGE)
            return InboundOutcome.NO_SESSION

        session = await self.store.get(handle)
        if session is not None:
            session = await self.store.update(handle, session.id, chat_id=chat)
        if session is None:
            logger.info("Inbound /start without pending session", handle=handle)
            await self._reply_best_effort(chat, NO_PENDING_MESSAGE)
            return InboundOutcome.NO_SESSION

        message = (
            self.gateway.format_code_message(session.code, self._ttl_minutes)
            + "\n\nEnter this code on the Anirum website."
        )
        try:
            await self.gateway.send(chat, message)
        except (DeliveryError, InvalidRecipientError):
            logger.warning(
                "Pending verification code delivery failed",
                handle=handle,
                chat_id=chat,
            )
            await self._reply_best_effort(chat, RETRY_DELIVERY_MESSAGE)
            return InboundOutcome.DELIVERY_FAILED

        if await self.store.update(handle, session.id, delivered=True) is None:
            logger.warning(
                "Pending session replaced during delivery",
                handle=handle,
                session_id=session.id,
            )
        else:
            logger.info("Pending verification code delivered", handle=handle, chat_id=chat)
        return InboundOutcome.DELIVERED

    async def verify_code(
        self,
        handle: str,
        submitted_code: str,
        requesting_user_id: uuid.UUID,
    ) -> CodeVerified | VerificationFailure:
        """Check a code the user received from the bot."""
        code = normalize_submitted_code(submitted_code)
        if code is None:
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_FORMAT,
                message="The code must contain exactly 6 digits.",
                channel=Channel.TELEGRAM,
            )
        try:
            normalized = normalize_handle(handle)
        except InvalidRecipientError as e:
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_FORMAT,
                message=str(e),
                channel=Channel.TELEGRAM,
            )

        lookup = await self.store.lookup(normalized)
        session = lookup.session
        if session is None and lookup.expired:
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_EXPIRED,
                message="The code has expired. Request a new code.",
                channel=Channel.TELEGRAM,
            )
        if session is None or session.owner_user_id != requesting_user_id:
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_FOUND,
                message="No code found. Request a new code.",
                channel=Channel.TELEGRAM,
            )

        if not session.delivered:
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_DELIVERED,
                message=(
                    "The code has not been delivered yet. Open the bot in "
                    "Telegram and send /start."
                ),
                channel=Channel.TELEGRAM,
            )

        session = await self.store.record_attempt(normalized, lookup.session.id)
        if session is None:
            # Expired, replaced or consumed since the lookup
            current = await self.store.lookup(normalized)
            if current.expired:
                return VerificationFailure(
                    kind=VerificationErrorKind.CODE_EXPIRED,
                    message="The code has expired. Request a new code.",
                    channel=Channel.TELEGRAM,
                )
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_FOUND,
                message=(
                    "This code was replaced by a newer one. Use the latest code."
                    if current.session is not None
                    else "No code found. Request a new code."
                ),
                channel=Channel.TELEGRAM,
            )

        if session.attempts > self.max_attempts:
            await self.store.delete(normalized, expected_id=session.id)
            return VerificationFailure(
                kind=VerificationErrorKind.TOO_MANY_ATTEMPTS,
                message="Too many attempts. Request a new code.",
                channel=Channel.TELEGRAM,
                remaining_attempts=0,
            )

        if not secrets.compare_digest(code, session.code):
            if any(verify_code_hash(code, h) for h in session.superseded_hashes):
                return VerificationFailure(
                    kind=VerificationErrorKind.CODE_NOT_FOUND,
                    message="This code was replaced by a newer one. Use the latest code.",
                    channel=Channel.TELEGRAM,
                )
            remaining = self.max_attempts - session.attempts
            return VerificationFailure(
                kind=VerificationErrorKind.INVALID_CODE,
                message=f"Invalid code. Attempts remaining: {remaining}",
                channel=Channel.TELEGRAM,
                remaining_attempts=remaining,
            )

        if not await self.store.delete(normalized, expected_id=session.id):
            return VerificationFailure(
                kind=VerificationErrorKind.CODE_NOT_FOUND,
                message="No code found. Request a new code.",
                channel=Channel.TELEGRAM,
            )

        logger.info(
            "Telegram verification confirmed",
            handle=normalized,
            user_id=str(requesting_user_id),
        )
        return CodeVerified(
            channel=Channel.TELEGRAM,
            recipient=normalized,
            owner_user_id=requesting_user_id,
            chat_id=session.chat_id,
        )

    async def pending_stats(self, owner_user_id: uuid.UUID) -> dict[str, int]:
        """Counts of the user's live pending sessions by progress."""
        sessions = await self.store.sessions_for_owner(owner_user_id)
        return {
            "total": len(sessions),
            "correlated": sum(1 for s in sessions if s.chat_id is not None),
            "delivered": sum(1 for s in sessions if s.delivered),
        }
