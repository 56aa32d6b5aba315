import asyncio
from datetime import date, timedelta

import pytest

import db
from app.services import verification
from conftest import FakeGateway, at

NOW = at(2026, 10, 16, 12, 0)


@pytest.mark.parametrize(
    "text, code",
    [
        ("123456", "123456"),
        ("my code is 654321 thanks", "654321"),
        ("1234567", None),
        ("12345", None),
        ("code:000042!", "000042"),
    ],
)
def test_extract_code(text, code):
    assert verification.extract_code(text) == code


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Hello", True),
        ("hey there", True),
        ("HI!", True),
        ("this is great", False),
        ("ship it", False),
        ("they said so", False),
    ],
)
def test_is_greeting_uses_word_boundaries(text, expected):
    assert verification.is_greeting(text) is expected


@pytest.mark.asyncio
async def test_issue_code_format_and_ttl(database):
    row = await verification.issue_code("user-1", "Europe/Berlin", now=NOW)
    assert len(row.code) == 6 and row.code.isdigit()
    assert db.as_utc(row.expires_at) == NOW + timedelta(minutes=10)
    assert row.timezone == "Europe/Berlin"


@pytest.mark.asyncio
async def test_link_by_code_creates_config(database, gateway):
    row = await verification.issue_code("user-1", "Asia/Tokyo", now=NOW)

    outcome = await verification.consume(row.code, "telegram", "555", gateway, NOW + timedelta(minutes=1))

    assert outcome.linked
    assert outcome.user_id == "user-1"
    assert outcome.via == "code"
    config = await db.get_config("user-1")
    assert config.channel_identity == "555"
    assert config.timezone == "Asia/Tokyo"
    assert config.morning_time == "09:00"
    assert config.evening_time == "18:00"
    assert config.is_active is False
    assert config.content_source == "external"
    assert gateway.sent[0][0] == "555"
    assert "Account linked" in gateway.sent[0][1]


@pytest.mark.asyncio
async def test_link_without_detected_timezone_uses_default(database, gateway):
    row = await verification.issue_code("user-1", now=NOW)
    await verification.consume(row.code, "telegram", "555", gateway, NOW)
    config = await db.get_config("user-1")
    assert config.timezone == "America/New_York"


@pytest.mark.asyncio
async def test_link_activates_owned_content(database, gateway):
    await db.insert_owned_prompt("user-1", date(2026, 10, 17), "morning", ["q"])
    row = await verification.issue_code("user-1", now=NOW)

    await verification.consume(row.code, "telegram", "555", gateway, NOW)

    config = await db.get_config("user-1")
    assert config.is_active is True
    assert config.content_source == "owned"


@pytest.mark.asyncio
async def test_relink_updates_existing_config(make_config, gateway):
    await make_config(channel_identity="old", timezone="Europe/London", is_active=False,
                      content_source="external")
    row = await verification.issue_code("user-1", "Asia/Tokyo", now=NOW)

    await verification.consume(row.code, "telegram", "new", gateway, NOW)

    config = await db.get_config("user-1")
    assert config.channel_identity == "new"
    assert config.timezone == "Europe/London"
    assert config.is_active is False


@pytest.mark.asyncio
async def test_code_cannot_be_reused(database, gateway):
    row = await verification.issue_code("user-1", now=NOW)
    first = await verification.consume(row.code, "telegram", "555", gateway, NOW)
    second = await verification.consume(row.code, "telegram", "666", gateway, NOW)

    assert first.linked
    assert second.status == "link_expired"
    config = await db.get_config("user-1")
    assert config.channel_identity == "555"


@pytest.mark.asyncio
async def test_concurrent_consumption_links_once(database):
    row = await verification.issue_code("user-1", now=NOW)
    gw_a, gw_b = FakeGateway(), FakeGateway()

    results = await asyncio.gather(
        verification.consume(row.code, "telegram", "555", gw_a, NOW),
        verification.consume(row.code, "telegram", "666", gw_b, NOW),
    )

    assert sum(1 for r in results if r.linked) == 1
    assert {r.status for r in results if not r.linked} <= {"link_expired"}


@pytest.mark.asyncio
async def test_expired_code(database, gateway):
    row = await verification.issue_code("user-1", now=NOW)

    outcome = await verification.consume(row.code, "telegram", "555", gateway, NOW + timedelta(minutes=11))

    assert outcome.status == "link_expired"
    assert "To link your account" in gateway.sent[0][1]
    assert await db.get_config("user-1") is None


@pytest.mark.asyncio
async def test_unknown_code(database, gateway):
    outcome = await verification.consume("999999", "telegram", "555", gateway, NOW)
    assert outcome.status == "link_not_found"
    assert len(gateway.sent) == 1


@pytest.mark.asyncio
async def test_greeting_binds_most_recent_live_code(database, gateway):
    await verification.issue_code("user-old", now=NOW - timedelta(minutes=5))
    await verification.issue_code("user-new", now=NOW - timedelta(minutes=1))

    outcome = await verification.consume("Hey!", "telegram", "555", gateway, NOW)

    assert outcome.linked
    assert outcome.via == "greeting"
    assert outcome.user_id == "user-new"


@pytest.mark.asyncio
async def test_greeting_without_live_code(database, gateway):
    outcome = await verification.consume("hello", "telegram", "555", gateway, NOW)
    assert outcome.status == "link_not_found"


@pytest.mark.asyncio
async def test_plain_text_is_ignored(database, gateway):
    outcome = await verification.consume("this is great", "telegram", "555", gateway, NOW)
    assert outcome.status == "ignored"
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_repeated_failures_lock_the_sender(database, gateway):
    for minute in range(5):
        outcome = await verification.consume("111111", "telegram", "555", gateway, NOW + timedelta(minutes=minute))
        assert outcome.status == "link_not_found"

    row = await verification.issue_code("user-1", now=NOW + timedelta(minutes=5))
    locked = await verification.consume(row.code, "telegram", "555", gateway, NOW + timedelta(minutes=6))
    assert locked.status == "locked"

    # other senders are unaffected
    other = await verification.consume(row.code, "telegram", "777", gateway, NOW + timedelta(minutes=6))
    assert other.linked


@pytest.mark.asyncio
async def test_lockout_expires(database, gateway):
    for minute in range(5):
        await verification.consume("111111", "telegram", "555", gateway, NOW + timedelta(minutes=minute))

    later = NOW + timedelta(minutes=30)
    row = await verification.issue_code("user-1", now=later)
    outcome = await verification.consume(row.code, "telegram", "555", gateway, later)
    assert outcome.linked
    assert await db.get_attempt("555") is None


@pytest.mark.asyncio
async def test_purge_removes_only_expired_codes(database):
    await verification.issue_code("user-1", now=NOW - timedelta(hours=1))
    live = await verification.issue_code("user-2", now=NOW)

    removed = await verification.purge_expired(NOW)

    assert removed == 1
    assert await db.find_live_verification(NOW, live.code) is not None
