"""Tests for the messenger verification endpoints."""

import importlib.util
import warnings
from pathlib import Path

import pytest

from anirum_api.routers import phone_verification
from anirum_api.services.messenger import Channel, DeliveryError, DeliveryFailureReason
from anirum_api.services.verification_results import VerificationErrorKind
from conftest import auth_headers, get_user

SEND_URL = "/api/phone-verification/send-code"
VERIFY_URL = "/api/phone-verification/verify-code"
STATUS_URL = "/api/phone-verification/status"

PHONE = "+7 912 345 67 89"


def _start_update(username: str, chat_id: int = 555001) -> dict:
    return {
        "update_id": 1,
        "message": {
            "message_id": 10,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": chat_id, "is_bot": False, "username": username},
            "text": "/start verify",
        },
    }


class TestWhatsAppVerification:
    """Direct-send flow over HTTP."""

    @pytest.mark.asyncio
    async def test_send_and_verify(self, client, services, user):
        headers = auth_headers(user)

        sent = await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)

        assert sent.status_code == 200
        body = sent.json()
        assert body["success"] is True
        assert body["messenger"] == "whatsapp"
        assert body["phone"] == "79123456789"
        assert body["message"] == "Code sent to WhatsApp"
        assert "telegram" not in body
        assert "482913" not in sent.text
        services.whatsapp.send.assert_awaited_once()

        verified = await client.post(
            VERIFY_URL, json={"phone": PHONE, "code": "482913"}, headers=headers
        )

        assert verified.status_code == 200
        assert verified.json()["message"] == "WhatsApp verified successfully"
        assert verified.json()["verified"] is True

        stored = await get_user(user.id)
        assert stored.whatsapp_phone_verified is True
        assert stored.whatsapp_phone == "79123456789"
        assert stored.telegram_phone_verified is False

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client):
        response = await client.post(SEND_URL, json={"phone": PHONE})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_phone(self, client, user):
        response = await client.post(SEND_URL, json={}, headers=auth_headers(user))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_phone(self, client, user):
        response = await client.post(SEND_URL, json={"phone": "123"}, headers=auth_headers(user))

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "invalid_format"

    @pytest.mark.asyncio
    async def test_resend_window(self, client, clock, user):
        headers = auth_headers(user)
        await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)
        clock.advance(seconds=20)

        response = await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)

        assert response.status_code == 429
        detail = response.json()["detail"]
        assert detail["code"] == "rate_limited"
        assert detail["retry_after_seconds"] == 40
        assert response.headers["Retry-After"] == "40"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("reason", "status_code"),
        [
            (DeliveryFailureReason.RECIPIENT_NOT_FOUND, 422),
            (DeliveryFailureReason.RECIPIENT_BLOCKED, 422),
            (DeliveryFailureReason.RATE_LIMITED, 429),
            (DeliveryFailureReason.AUTH_CONFIG_INVALID, 503),
            (DeliveryFailureReason.UNKNOWN, 502),
        ],
    )
    async def test_delivery_failures(self, client, services, user, reason, status_code):
        services.whatsapp.send.side_effect = DeliveryError(Channel.WHATSAPP, reason)

        response = await client.post(SEND_URL, json={"phone": PHONE}, headers=auth_headers(user))

        assert response.status_code == status_code
        detail = response.json()["detail"]
        assert detail["code"] == "delivery_failed"
        assert detail["reason"] == reason.value

    @pytest.mark.asyncio
    async def test_wrong_code_reports_remaining_attempts(self, client, user):
        headers = auth_headers(user)
        await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)

        response = await client.post(
            VERIFY_URL, json={"phone": PHONE, "code": "000000"}, headers=headers
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "invalid_code"
        assert detail["remaining_attempts"] == 2

    @pytest.mark.asyncio
    async def test_lockout_after_three_attempts(self, client, user):
        headers = auth_headers(user)
        await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)
        for _ in range(3):
            await client.post(VERIFY_URL, json={"phone": PHONE, "code": "000000"}, headers=headers)

        response = await client.post(
            VERIFY_URL, json={"phone": PHONE, "code": "482913"}, headers=headers
        )

        assert response.status_code == 429
        assert response.json()["detail"]["code"] == "too_many_attempts"

    @pytest.mark.asyncio
    async def test_malformed_code(self, client, user):
        response = await client.post(
            VERIFY_URL, json={"phone": PHONE, "code": "12ab"}, headers=auth_headers(user)
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "invalid_format"

    @pytest.mark.asyncio
    async def test_code_never_requested(self, client, user):
        response = await client.post(
            VERIFY_URL, json={"phone": PHONE, "code": "482913"}, headers=auth_headers(user)
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "code_not_found"

    @pytest.mark.asyncio
    async def test_expired_code(self, client, clock, user):
        headers = auth_headers(user)
        await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)
        clock.advance(minutes=6)

        response = await client.post(
            VERIFY_URL, json={"phone": PHONE, "code": "482913"}, headers=headers
        )

        assert response.status_code == 410
        assert response.json()["detail"]["code"] == "code_expired"


class TestTelegramVerification:
    """Handshake flow over HTTP and the webhook."""

    @pytest.mark.asyncio
    async def test_send_returns_deep_link(self, client, services, user):
        response = await client.post(
            SEND_URL,
            json={"handle": "@Artist_One", "messenger": "telegram"},
            headers=auth_headers(user),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["handle"] == "artist_one"
        assert "phone" not in body
        telegram = body["telegram"]
        assert telegram["requiresDeepLink"] is True
        assert telegram["deepLink"] == "https://t.me/AnirumBot?start=verify"
        assert telegram["requiresManualFallback"] is False
        assert "fallbackCode" not in telegram
        services.telegram.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_phone_field_is_accepted_as_handle(self, client, user):
        response = await client.post(
            SEND_URL,
            json={"phone": "artist_one", "messenger": "telegram"},
            headers=auth_headers(user),
        )

        assert response.status_code == 200
        assert response.json()["handle"] == "artist_one"

    @pytest.mark.asyncio
    async def test_verify_before_delivery_conflicts(self, client, user):
        headers = auth_headers(user)
        await client.post(
            SEND_URL, json={"handle": "artist_one", "messenger": "telegram"}, headers=headers
        )

        response = await client.post(
            VERIFY_URL,
            json={"handle": "artist_one", "messenger": "telegram", "code": "482913"},
            headers=headers,
        )

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "code_not_delivered"

    @pytest.mark.asyncio
    async def test_full_handshake(self, client, services, user):
        headers = auth_headers(user)
        await client.post(
            SEND_URL, json={"handle": "@Artist_One", "messenger": "telegram"}, headers=headers
        )

        webhook = await client.post("/api/telegram-webhook", json=_start_update("Artist_One"))
        assert webhook.status_code == 200
        assert webhook.json() == {"ok": True}
        chat_id, message = services.telegram.send.await_args.args
        assert chat_id == "555001"
        assert "482913" in message

        verified = await client.post(
            VERIFY_URL,
            json={"handle": "artist_one", "messenger": "telegram", "code": "482913"},
            headers=headers,
        )

        assert verified.status_code == 200
        assert verified.json()["message"] == "Telegram verified successfully"
        stored = await get_user(user.id)
        assert stored.telegram_phone_verified is True
        assert stored.telegram_username == "artist_one"
        assert stored.telegram_chat_id == 555001
        assert stored.whatsapp_phone_verified is False


class TestStatus:
    @pytest.mark.asyncio
    async def test_reports_flags_and_sessions(self, client, user):
        headers = auth_headers(user)
        await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)
        await client.post(
            SEND_URL, json={"handle": "artist_one", "messenger": "telegram"}, headers=headers
        )

        response = await client.get(STATUS_URL, headers=headers)

        assert response.status_code == 200
        assert response.json() == {
            "whatsapp_verified": False,
            "telegram_verified": False,
            "active_sessions": 2,
            "pending_handshakes": {"total": 1, "correlated": 0, "delivered": 0},
        }

    @pytest.mark.asyncio
    async def test_verified_flag_after_success(self, client, user):
        headers = auth_headers(user)
        await client.post(SEND_URL, json={"phone": PHONE}, headers=headers)
        await client.post(VERIFY_URL, json={"phone": PHONE, "code": "482913"}, headers=headers)

        response = await client.get(STATUS_URL, headers=headers)

        assert response.json()["whatsapp_verified"] is True
        assert response.json()["active_sessions"] == 0


class TestStatusMapping:
    def test_module_uses_no_deprecated_status_names(self):
        """Loading the router must not touch renamed Starlette status constants."""
        path = Path(phone_verification.__file__)
        spec = importlib.util.spec_from_file_location("phone_verification_fresh", path)
        module = importlib.util.module_from_spec(spec)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            spec.loader.exec_module(module)

        assert not [w for w in caught if "HTTP_422" in str(w.message)]
        assert module._DELIVERY_STATUS[DeliveryFailureReason.RECIPIENT_BLOCKED] == 422
        assert module._FAILURE_STATUS[VerificationErrorKind.INVALID_FORMAT] == 422
