"""Tests for the handshake (Telegram) verification flow."""

import uuid
from datetime import timedelta

import pytest

from anirum_api.services.handshake_verification import (
    NO_PENDING_MESSAGE,
    NO_USERNAME_MESSAGE,
    RETRY_DELIVERY_MESSAGE,
    HandshakeSession,
    HandshakeVerificationFlow,
    InboundOutcome,
)
from anirum_api.services.messenger import (
    Channel,
    DeliveryError,
    DeliveryFailureReason,
)
from anirum_api.services.session_store import InMemorySessionStore
from anirum_api.services.telegram_bot import TelegramGateway
from anirum_api.services.verification_results import (
    CodeVerified,
    HandshakeStarted,
    VerificationErrorKind,
    VerificationFailure,
)
from conftest import FakeClock, SequenceCodes, make_telegram_gateway

HANDLE = "@Artist_One"
NORMALIZED = "artist_one"
CHAT_ID = 555001


@pytest.fixture
def gateway() -> TelegramGateway:
    return make_telegram_gateway()


@pytest.fixture
def store(clock: FakeClock) -> InMemorySessionStore[HandshakeSession]:
    return InMemorySessionStore(
        HandshakeSession, clock=clock, tombstone_retention=timedelta(minutes=5)
    )


def _flow(gateway, store, codes, fallback_enabled=False) -> HandshakeVerificationFlow:
    return HandshakeVerificationFlow(
        gateway,
        store,
        code_generator=codes,
        fallback_enabled=fallback_enabled,
        hash_rounds=4,
    )


@pytest.fixture
def flow(gateway, store, codes: SequenceCodes) -> HandshakeVerificationFlow:
    return _flow(gateway, store, codes)


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


class TestRequestCode:
    """Tests for creating pending sessions."""

    @pytest.mark.asyncio
    async def test_returns_deep_link_and_sends_nothing(self, flow, gateway, store, user_id):
        """Requesting a code only creates a pending session."""
        result = await flow.request_code(HANDLE, user_id)

        assert isinstance(result, HandshakeStarted)
        assert result.handle == NORMALIZED
        assert result.deep_link == "https://t.me/AnirumBot?start=verify"
        assert result.fallback_code is None
        assert result.requires_manual_fallback is False
        gateway.send.assert_not_awaited()

        session = await store.get(NORMALIZED)
        assert session.code == "482913"
        assert session.chat_id is None
        assert session.delivered is False

    @pytest.mark.asyncio
    async def test_invalid_handle(self, flow, codes, user_id):
        result = await flow.request_code("ab", user_id)

        assert isinstance(result, VerificationFailure)
        assert result.kind == VerificationErrorKind.INVALID_FORMAT
        assert codes.issued == []

    @pytest.mark.asyncio
    async def test_bot_unavailable_removes_session(self, store, codes, user_id):
        """Without a token or username there is no deep link to hand out."""
        gateway = TelegramGateway(bot_token="", bot_username="")
        flow = _flow(gateway, store, codes)

        result = await flow.request_code(HANDLE, user_id)

        assert result.kind == VerificationErrorKind.DELIVERY_FAILED
        assert result.delivery_reason == DeliveryFailureReason.AUTH_CONFIG_INVALID
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_fallback_mode_returns_code(self, gateway, store, codes, user_id):
        flow = _flow(gateway, store, codes, fallback_enabled=True)

        result = await flow.request_code(HANDLE, user_id)

        assert result.fallback_code == "482913"
        assert result.requires_manual_fallback is True
        assert (await store.get(NORMALIZED)).delivered is True

        verified = await flow.verify_code(HANDLE, "482913", user_id)
        assert isinstance(verified, CodeVerified)

    @pytest.mark.asyncio
    async def test_new_request_replaces_pending_code(self, flow, store, user_id):
        await flow.request_code(HANDLE, user_id)
        await flow.request_code(HANDLE, user_id)

        session = await store.get(NORMALIZED)
        assert session.code == "105577"
        assert len(session.superseded_hashes) == 1
        assert len(store) == 1


class TestInboundStart:
    """Tests for correlating /start with a pending session."""

    @pytest.mark.asyncio
    async def test_delivers_pending_code_once(self, flow, gateway, store, user_id):
        await flow.request_code(HANDLE, user_id)

        outcome = await flow.on_inbound_start("Artist_One", CHAT_ID)

        assert outcome == InboundOutcome.DELIVERED
        gateway.send.assert_awaited_once()
        chat, message = gateway.send.await_args.args
        assert chat == str(CHAT_ID)
        assert "<code>482913</code>" in message
        assert "Anirum website" in message

        session = await store.get(NORMALIZED)
        assert session.chat_id == str(CHAT_ID)
        assert session.delivered is True

    @pytest.mark.asyncio
    async def test_repeated_start_resends_same_code(self, flow, gateway, codes, user_id):
        """A second /start within the TTL never issues a new code."""
        await flow.request_code(HANDLE, user_id)
        await flow.on_inbound_start("artist_one", CHAT_ID)
        await flow.on_inbound_start("artist_one", CHAT_ID)

        assert gateway.send.await_count == 2
        for call in gateway.send.await_args_list:
            assert "482913" in call.args[1]
        assert codes.issued == ["482913"]

    @pytest.mark.asyncio
    async def test_without_pending_session_sends_welcome(self, flow, gateway):
        outcome = await flow.on_inbound_start("someone_else", CHAT_ID)

        assert outcome == InboundOutcome.NO_SESSION
        gateway.send.assert_awaited_once_with(str(CHAT_ID), NO_PENDING_MESSAGE)

    @pytest.mark.asyncio
    async def test_sender_without_username(self, flow, gateway, user_id):
        await flow.request_code(HANDLE, user_id)

        outcome = await flow.on_inbound_start(None, CHAT_ID)

        assert outcome == InboundOutcome.NO_SESSION
        gateway.send.assert_awaited_once_with(str(CHAT_ID), NO_USERNAME_MESSAGE)

    @pytest.mark.asyncio
    async def test_expired_session_is_not_delivered(self, flow, gateway, clock, user_id):
        await flow.request_code(HANDLE, user_id)
        clock.advance(minutes=6)

        outcome = await flow.on_inbound_start("artist_one", CHAT_ID)

        assert outcome == InboundOutcome.NO_SESSION
        gateway.send.assert_awaited_once_with(str(CHAT_ID), NO_PENDING_MESSAGE)

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_session_correlated(
        self, flow, gateway, store, user_id
    ):
        await flow.request_code(HANDLE, user_id)
        working_send = gateway.send.side_effect
        gateway.send.side_effect = DeliveryError(
            Channel.TELEGRAM, DeliveryFailureReason.RATE_LIMITED
        )

        outcome = await flow.on_inbound_start("artist_one", CHAT_ID)

        assert outcome == InboundOutcome.DELIVERY_FAILED
        assert gateway.send.await_args.args == (str(CHAT_ID), RETRY_DELIVERY_MESSAGE)
        session = await store.get(NORMALIZED)
        assert session.chat_id == str(CHAT_ID)
        assert session.delivered is False

        gateway.send.side_effect = working_send
        assert await flow.on_inbound_start("artist_one", CHAT_ID) == InboundOutcome.DELIVERED
        assert (await store.get(NORMALIZED)).code == "482913"

    @pytest.mark.asyncio
    async def test_start_after_replacement_delivers_only_newer_code(
        self, flow, gateway, user_id
    ):
        await flow.request_code(HANDLE, user_id)
        await flow.request_code(HANDLE, user_id)

        outcome = await flow.on_inbound_start("artist_one", CHAT_ID)

        assert outcome == InboundOutcome.DELIVERED
        gateway.send.assert_awaited_once()
        message = gateway.send.await_args.args[1]
        assert "105577" in message
        assert "482913" not in message

        old = await flow.verify_code(HANDLE, "482913", user_id)
        assert old.kind == VerificationErrorKind.CODE_NOT_FOUND
        assert isinstance(await flow.verify_code(HANDLE, "105577", user_id), CodeVerified)

    @pytest.mark.asyncio
    async def test_replacement_during_send_leaves_newer_session_pending(
        self, flow, gateway, store, user_id
    ):
        await flow.request_code(HANDLE, user_id)
        working_send = gateway.send.side_effect

        async def replace_while_sending(recipient, message):
            await flow.request_code(HANDLE, user_id)
            return working_send(recipient, message)

        gateway.send.side_effect = replace_while_sending
        assert await flow.on_inbound_start("artist_one", CHAT_ID) == InboundOutcome.DELIVERED
        assert "482913" in gateway.send.await_args.args[1]

        pending = await store.get(NORMALIZED)
        assert pending.code == "105577"
        assert pending.delivered is False

        gateway.send.side_effect = working_send
        await flow.on_inbound_start("artist_one", CHAT_ID)
        assert "105577" in gateway.send.await_args.args[1]
        assert (await store.get(NORMALIZED)).delivered is True


class TestVerifyCode:
    """Tests for checking codes delivered by the bot."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, flow, store, user_id):
        await flow.request_code(HANDLE, user_id)
        await flow.on_inbound_start("artist_one", CHAT_ID)

        result = await flow.verify_code("artist_one", "482 913", user_id)

        assert isinstance(result, CodeVerified)
        assert result.channel == Channel.TELEGRAM
        assert result.recipient == NORMALIZED
        assert result.chat_id == str(CHAT_ID)
        assert len(store) == 0

        again = await flow.verify_code(HANDLE, "482913", user_id)
        assert again.kind == VerificationErrorKind.CODE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_not_delivered_consumes_no_attempt(self, flow, store, user_id):
        await flow.request_code(HANDLE, user_id)

        result = await flow.verify_code(HANDLE, "482913", user_id)

        assert result.kind == VerificationErrorKind.CODE_NOT_DELIVERED
        assert (await store.get(NORMALIZED)).attempts == 0

    @pytest.mark.asyncio
    async def test_other_user_cannot_verify(self, flow, user_id):
        await flow.request_code(HANDLE, user_id)
        await flow.on_inbound_start("artist_one", CHAT_ID)

        result = await flow.verify_code(HANDLE, "482913", uuid.uuid4())

        assert result.kind == VerificationErrorKind.CODE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_wrong_code_then_lockout(self, flow, store, user_id):
        await flow.request_code(HANDLE, user_id)
        await flow.on_inbound_start("artist_one", CHAT_ID)

        remaining = [
            (await flow.verify_code(HANDLE, "000000", user_id)).remaining_attempts
            for _ in range(3)
        ]
        locked = await flow.verify_code(HANDLE, "482913", user_id)

        assert remaining == [2, 1, 0]
        assert locked.kind == VerificationErrorKind.TOO_MANY_ATTEMPTS
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_malformed_code(self, flow, user_id):
        result = await flow.verify_code(HANDLE, "48291", user_id)
        assert result.kind == VerificationErrorKind.INVALID_FORMAT

    @pytest.mark.asyncio
    async def test_expired(self, flow, clock, user_id):
        await flow.request_code(HANDLE, user_id)
        await flow.on_inbound_start("artist_one", CHAT_ID)
        clock.advance(minutes=5, seconds=1)

        result = await flow.verify_code(HANDLE, "482913", user_id)

        assert result.kind == VerificationErrorKind.CODE_EXPIRED

    @pytest.mark.asyncio
    async def test_superseded_code_is_reported_as_replaced(self, flow, user_id):
        await flow.request_code(HANDLE, user_id)
        await flow.request_code(HANDLE, user_id)
        await flow.on_inbound_start("artist_one", CHAT_ID)

        old = await flow.verify_code(HANDLE, "482913", user_id)
        new = await flow.verify_code(HANDLE, "105577", user_id)

        assert old.kind == VerificationErrorKind.CODE_NOT_FOUND
        assert "newer" in old.message
        assert isinstance(new, CodeVerified)


class TestPendingStats:
    @pytest.mark.asyncio
    async def test_counts_by_progress(self, flow, user_id):
        await flow.request_code("first_handle", user_id)
        await flow.request_code("second_handle", user_id)
        await flow.request_code("third_handle", uuid.uuid4())
        await flow.on_inbound_start("first_handle", CHAT_ID)

        stats = await flow.pending_stats(user_id)

        assert stats == {"total": 2, "correlated": 1, "delivered": 1}
