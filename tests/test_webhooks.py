from datetime import date
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import db
import main
from app.services import reply_router, scheduler, verification
from app.types.delivery_contract import DeliveryOutcome, SweepReport
from config import settings
from conftest import at


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")
    monkeypatch.setattr(settings, "TELEGRAM_WEBHOOK_SECRET", "tg-secret")
    monkeypatch.setattr(settings, "INTERNAL_API_TOKEN", "internal")
    monkeypatch.setattr(settings, "TELNYX_PUBLIC_KEY", None)
    return TestClient(main.app)


@pytest.fixture
def inbound(monkeypatch):
    calls = []

    async def fake_handle_inbound(channel, identity, text, gateway=None, now=None):
        calls.append((channel, identity, text))

    monkeypatch.setattr(reply_router, "handle_inbound", fake_handle_inbound)
    return calls


def _update(text="hello", chat_id=1001):
    message = {"message_id": 7, "chat": {"id": chat_id, "type": "private"}, "date": 0}
    if text is not None:
        message["text"] = text
    return {"update_id": 1, "message": message}


# --------------------------------------------
# Cron trigger
# --------------------------------------------
def test_cron_requires_secret(client):
    resp = client.get("/v1/cron/deliver", params={"type": "morning"})
    assert resp.status_code == 401


def test_cron_rejects_bad_slot(client):
    resp = client.get(
        "/v1/cron/deliver", params={"type": "noon"}, headers={"x-cron-secret": "cron-secret"}
    )
    assert resp.status_code == 400
    assert "morning" in resp.json()["detail"]


def test_cron_runs_sweep(client, monkeypatch):
    seen = []

    async def fake_sweep(slot, now=None):
        seen.append(slot)
        return SweepReport(
            slot=slot,
            ran_at=at(2026, 10, 16, 9, 0),
            results=[
                DeliveryOutcome(user_id="u1", slot=slot, status="delivered", item_id="p1",
                                local_date=date(2026, 10, 16)),
                DeliveryOutcome(user_id="u2", slot=slot, status="not_due"),
                DeliveryOutcome(user_id="u3", slot=slot, status="source_unavailable", reason="503"),
            ],
        )

    monkeypatch.setattr(scheduler, "run_sweep", fake_sweep)

    resp = client.post("/v1/cron/deliver?type=Evening&secret=cron-secret")

    assert resp.status_code == 200
    body = resp.json()
    assert seen == ["evening"]
    assert body["processed"] == 2
    assert body["delivered"] == 1
    assert body["failed"] == 1
    assert [r["user_id"] for r in body["results"]] == ["u1", "u3"]


def test_cron_sweep_failure_is_500(client, monkeypatch):
    async def broken(slot, now=None):
        raise RuntimeError("db down")

    monkeypatch.setattr(scheduler, "run_sweep", broken)
    resp = client.get(
        "/v1/cron/deliver", params={"type": "morning"}, headers={"x-cron-secret": "cron-secret"}
    )
    assert resp.status_code == 500


# --------------------------------------------
# Telegram
# --------------------------------------------
TG_HEADERS = {"x-telegram-bot-api-secret-token": "tg-secret"}


def test_telegram_rejects_wrong_secret(client, inbound):
    resp = client.post("/v1/telegram/webhook", json=_update(), headers={"x-telegram-bot-api-secret-token": "nope"})
    assert resp.status_code == 401
    assert inbound == []


def test_telegram_dispatches_text(client, inbound):
    resp = client.post("/v1/telegram/webhook", json=_update("123456"), headers=TG_HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert inbound == [("telegram", "1001", "123456")]


def test_telegram_ignores_non_text(client, inbound):
    resp = client.post("/v1/telegram/webhook", json=_update(text=None), headers=TG_HEADERS)
    assert resp.status_code == 200
    assert inbound == []


def test_telegram_ignores_garbage_body(client, inbound):
    resp = client.post("/v1/telegram/webhook", content=b"not json", headers=TG_HEADERS)
    assert resp.status_code == 200
    assert inbound == []


def test_per_user_webhook_checks_chat_id(client, monkeypatch):
    routed = []
    config = db.DeliveryConfig(user_id="user-1", channel="telegram", channel_identity="1001")

    async def fake_get_config(user_id):
        return config if user_id == "user-1" else None

    async def fake_route(cfg, text, gateway, source=None):
        routed.append((cfg.user_id, text))

    monkeypatch.setattr(db, "get_config", fake_get_config)
    monkeypatch.setattr(reply_router, "route", fake_route)

    client.post("/v1/telegram/webhook/user-1", json=_update("A", chat_id=2002), headers=TG_HEADERS)
    client.post("/v1/telegram/webhook/nobody", json=_update("A"), headers=TG_HEADERS)
    resp = client.post("/v1/telegram/webhook/user-1", json=_update("B"), headers=TG_HEADERS)

    assert resp.json() == {"ok": True}
    assert routed == [("user-1", "B")]


# --------------------------------------------
# Telnyx
# --------------------------------------------
def test_telnyx_dev_mode_dispatches(client, inbound):
    payload = {"data": {"payload": {"from": {"phone_number": "+15550001111"}, "text": " hi "}}}
    resp = client.post("/v1/sms/telnyx", json=payload)
    assert resp.status_code == 200
    assert resp.text == "OK"
    assert inbound == [("sms", "+15550001111", "hi")]


def test_telnyx_ping_and_empty(client, inbound):
    ping = client.post("/v1/sms/telnyx", json={"data": {"payload": {"type": "ping"}}})
    empty = client.post("/v1/sms/telnyx", json={"data": {"payload": {"from": {}, "text": ""}}})
    assert ping.text == "PONG"
    assert empty.text == "IGNORED"
    assert inbound == []


def test_telnyx_bad_body(client):
    resp = client.post("/v1/sms/telnyx", content=b"{}")
    assert resp.status_code == 400


# --------------------------------------------
# Link code issue
# --------------------------------------------
def test_link_code_issue(client, monkeypatch):
    expires = at(2026, 10, 16, 12, 10)

    async def fake_issue(user_id, detected_timezone=None, now=None):
        assert (user_id, detected_timezone) == ("user-1", "Europe/Paris")
        return SimpleNamespace(code="042042", expires_at=expires)

    monkeypatch.setattr(verification, "issue_code", fake_issue)

    resp = client.post(
        "/v1/link/code",
        json={"user_id": "user-1", "timezone": "Europe/Paris"},
        headers={"x-internal-token": "internal"},
    )
    assert resp.status_code == 200
    assert resp.json()["code"] == "042042"


def test_link_code_requires_token(client):
    resp = client.post("/v1/link/code", json={"user_id": "user-1"})
    assert resp.status_code == 401


def test_link_code_rejects_bad_timezone(client):
    resp = client.post(
        "/v1/link/code",
        json={"user_id": "user-1", "timezone": "Mars/Olympus"},
        headers={"x-internal-token": "internal"},
    )
    assert resp.status_code == 422


def test_healthz(client):
    assert client.get("/healthz").text == "OK"
