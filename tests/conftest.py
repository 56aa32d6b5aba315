import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

import db
from app.types.errors import DeliveryFailed
from app.utils.channels import ChannelGateway
from app.utils.telegram import escape_markdown_v2

UTC = timezone.utc


def at(*args) -> datetime:
    """UTC datetime shorthand: at(2026, 10, 16, 9, 3)."""
    return datetime(*args, tzinfo=UTC)


class FakeGateway(ChannelGateway):
    name = "telegram"

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail
        self.delay = delay

    def escape(self, text: str) -> str:
        return escape_markdown_v2(text)

    def bold(self, escaped: str) -> str:
        return f"*{escaped}*"

    async def send(self, identity, text, credential=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DeliveryFailed("Telegram sendMessage failed: Bad Request")
        self.sent.append((identity, text))


@pytest_asyncio.fixture
async def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'delivery.db'}")
    monkeypatch.delenv("DATABASE_PUBLIC_URL", raising=False)
    await db.dispose_engine()
    await db.create_all()
    yield
    await db.dispose_engine()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_config(database):
    async def _make(user_id: str = "user-1", **overrides) -> db.DeliveryConfig:
        values = dict(
            user_id=user_id,
            channel="telegram",
            channel_identity="1001",
            channel_credential=None,
            timezone="UTC",
            morning_time="09:00",
            evening_time="18:00",
            is_active=True,
            content_source="owned",
        )
        values.update(overrides)
        return await db.insert_config(db.DeliveryConfig(**values))

    return _make
