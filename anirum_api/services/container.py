"""Construction of the long-lived verification and tagging services.

Everything stateful (session stores, gateways, flows) is created once
per application by ``build_services`` and stored on ``app.state``.
Routers reach it through the dependencies below, and tests swap in a
freshly built container per test case.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from fastapi import Request

from anirum_api.config import Settings, settings
from anirum_api.core.security import generate_numeric_code
from anirum_api.integrations.openai_client import OpenAITagger
from anirum_api.services.direct_verification import (
    DirectSendSession,
    DirectSendVerificationFlow,
)
from anirum_api.services.guide_tagging import GuideBatchTagger
from anirum_api.services.handshake_verification import (
    HandshakeSession,
    HandshakeVerificationFlow,
)
from anirum_api.services.messenger import Channel
from anirum_api.services.session_store import Clock, InMemorySessionStore, utcnow
from anirum_api.services.tagging import TagAggregator
from anirum_api.services.telegram_bot import TelegramGateway
from anirum_api.services.telegram_webhook import TelegramWebhookDispatcher
from anirum_api.services.whatsapp import WhatsAppGateway


@dataclass
class AppServices:
    whatsapp: WhatsAppGateway
    telegram: TelegramGateway
    direct_store: InMemorySessionStore[DirectSendSession]
    handshake_store: InMemorySessionStore[HandshakeSession]
    direct_flow: DirectSendVerificationFlow
    handshake_flow: HandshakeVerificationFlow
    webhook_dispatcher: TelegramWebhookDispatcher
    tag_aggregator: TagAggregator

    def batch_tagger(self, batch_size: int, delay_seconds: float) -> GuideBatchTagger:
        return GuideBatchTagger(
            self.tag_aggregator,
            batch_size=batch_size,
            delay_seconds=delay_seconds,
        )

    @property
    def stores(self) -> tuple[InMemorySessionStore, ...]:
        return (self.direct_store, self.handshake_store)


def build_services(
    config: Settings | None = None,
    *,
    clock: Clock = utcnow,
    code_generator: Callable[[], str] = generate_numeric_code,
    whatsapp: WhatsAppGateway | None = None,
    telegram: TelegramGateway | None = None,
    tag_aggregator: TagAggregator | None = None,
) -> AppServices:
    """Wire gateways, stores and flows from configuration."""
    config = config or settings
    code_ttl = timedelta(minutes=config.verification_code_ttl_minutes)

    whatsapp = whatsapp or WhatsAppGateway(
        api_url=config.green_api_url,
        id_instance=config.green_api_id_instance,
        api_token=config.green_api_token_instance,
        timeout=config.messenger_timeout_seconds,
    )
    telegram = telegram or TelegramGateway(
        bot_token=config.telegram_bot_token,
        bot_username=config.telegram_bot_username,
        timeout=config.messenger_timeout_seconds,
    )

    # Tombstones live one TTL so late verifies still report "expired"
    direct_store = InMemorySessionStore(
        DirectSendSession, clock=clock, tombstone_retention=code_ttl
    )
    handshake_store = InMemorySessionStore(
        HandshakeSession, clock=clock, tombstone_retention=code_ttl
    )

    direct_flow = DirectSendVerificationFlow(
        {Channel.WHATSAPP: whatsapp},
        direct_store,
        code_generator=code_generator,
        code_ttl=code_ttl,
        max_attempts=config.verification_max_attempts,
        resend_interval=timedelta(seconds=config.verification_resend_seconds),
        hash_rounds=config.verification_code_hash_rounds,
        clock=clock,
    )
    handshake_flow = HandshakeVerificationFlow(
        telegram,
        handshake_store,
        code_generator=code_generator,
        code_ttl=code_ttl,
        max_attempts=config.verification_max_attempts,
        fallback_enabled=config.telegram_code_fallback_enabled,
        hash_rounds=config.verification_code_hash_rounds,
    )

    if tag_aggregator is None:
        tagger = OpenAITagger(
            api_key=config.openai_api_key,
            image_model=config.openai_image_tag_model,
            text_model=config.openai_text_tag_model,
        )
        tag_aggregator = TagAggregator(
            image_source=tagger,
            text_source=tagger,
            max_length=config.tag_max_length,
        )

    return AppServices(
        whatsapp=whatsapp,
        telegram=telegram,
        direct_store=direct_store,
        handshake_store=handshake_store,
        direct_flow=direct_flow,
        handshake_flow=handshake_flow,
        webhook_dispatcher=TelegramWebhookDispatcher(handshake_flow),
        tag_aggregator=tag_aggregator,
    )


def get_services(request: Request) -> AppServices:
    """FastAPI dependency returning the application's service container."""
    return request.app.state.services


def get_direct_flow(request: Request) -> DirectSendVerificationFlow:
    return get_services(request).direct_flow


def get_handshake_flow(request: Request) -> HandshakeVerificationFlow:
    return get_services(request).handshake_flow


def get_webhook_dispatcher(request: Request) -> TelegramWebhookDispatcher:
    return get_services(request).webhook_dispatcher


def get_tag_aggregator(request: Request) -> TagAggregator:
    return get_services(request).tag_aggregator
