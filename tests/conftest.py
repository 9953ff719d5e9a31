"""Pytest configuration and shared fixtures.

The suite runs against SQLite (aiosqlite) in a temporary directory, so
no database server is needed. Verification services are rebuilt for
every test with a controllable clock, a deterministic code generator
and mocked messenger gateways.
"""

import os
import tempfile
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

# Configure settings BEFORE importing the app
_TEST_DB_DIR = tempfile.mkdtemp(prefix="anirum-tests-")
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_DIR}/test.db"
os.environ["SECRET_KEY"] = "test-secret-key-with-at-least-32-characters"
os.environ["VERIFICATION_CODE_HASH_ROUNDS"] = "4"
os.environ["SESSION_SWEEP_ENABLED"] = "false"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TELEGRAM_WEBHOOK_SECRET"] = ""
os.environ["TELEGRAM_CODE_FALLBACK_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = ""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from anirum_api.config import settings

settings.testing = True

from anirum_api.core.security import create_access_token
from anirum_api.database import close_database, get_engine, get_session_maker
from anirum_api.main import app
from anirum_api.models import Base, User
from anirum_api.services.container import AppServices, build_services
from anirum_api.services.messenger import Channel, DeliveryReceipt
from anirum_api.services.tagging import TagAggregator
from anirum_api.services.telegram_bot import TelegramGateway
from anirum_api.services.whatsapp import WhatsAppGateway


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class SequenceCodes:
    """Code generator returning predefined codes in order."""

    def __init__(self, *codes: str) -> None:
        self.codes = list(codes)
        self.issued: list[str] = []

    def __call__(self) -> str:
        code = self.codes.pop(0) if self.codes else f"{len(self.issued):06d}"
        self.issued.append(code)
        return code


def make_whatsapp_gateway() -> WhatsAppGateway:
    """Real gateway (for normalization) with a mocked send."""
    gateway = WhatsAppGateway(api_url="api.green-api.com", id_instance="1101", api_token="tok")
    gateway.send = AsyncMock(
        side_effect=lambda recipient, message: DeliveryReceipt(
            channel=Channel.WHATSAPP, recipient=str(recipient), message_id="wa-1"
        )
    )
    return gateway


def make_telegram_gateway() -> TelegramGateway:
    gateway = TelegramGateway(bot_token="123:abc", bot_username="AnirumBot")
    gateway.send = AsyncMock(
        side_effect=lambda recipient, message: DeliveryReceipt(
            channel=Channel.TELEGRAM, recipient=str(recipient), message_id="1"
        )
    )
    return gateway


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codes() -> SequenceCodes:
    return SequenceCodes("482913", "105577", "774210", "000123")


@pytest.fixture
def image_source() -> AsyncMock:
    source = AsyncMock()
    source.tags_from_image = AsyncMock(return_value=[])
    return source


@pytest.fixture
def text_source() -> AsyncMock:
    source = AsyncMock()
    source.tags_from_text = AsyncMock(return_value=[])
    return source


@pytest.fixture
def services(clock, codes, image_source, text_source) -> AppServices:
    """Fresh service container installed on the app for one test."""
    built = build_services(
        clock=clock,
        code_generator=codes,
        whatsapp=make_whatsapp_gateway(),
        telegram=make_telegram_gateway(),
        tag_aggregator=TagAggregator(image_source=image_source, text_source=text_source),
    )
    previous = app.state.services
    app.state.services = built
    yield built
    app.state.services = previous


@pytest_asyncio.fixture(autouse=True)
async def db_tables() -> AsyncGenerator[None, None]:
    """Create all tables before each test and drop them afterwards."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await close_database()


async def create_test_user(email: str | None = None) -> User:
    """Insert a user and return it."""
    async with get_session_maker()() as db:
        user = User(id=uuid.uuid4(), email=email or f"{uuid.uuid4().hex[:8]}@example.com")
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user


async def get_user(user_id: uuid.UUID) -> User | None:
    async with get_session_maker()() as db:
        return await db.get(User, user_id)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


@pytest_asyncio.fixture
async def user() -> User:
    return await create_test_user("artist@example.com")


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the app with fresh services."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
