import pytest
from pydantic import ValidationError

from app.types.delivery_contract import (
    ContentItem,
    DeliveryOutcome,
    LinkCodeRequest,
    TelegramUpdate,
    parse_slot,
    parse_time_of_day,
)


@pytest.mark.parametrize(
    "raw, slot",
    [("morning", "morning"), (" Evening ", "evening"), ("noon", None), (None, None), ("", None)],
)
def test_parse_slot(raw, slot):
    assert parse_slot(raw) == slot


def test_parse_time_of_day():
    assert parse_time_of_day("09:00") == (9, 0)
    assert parse_time_of_day("18:30:00") == (18, 30)
    for bad in ("9am", "24:00", "12:60", "12"):
        with pytest.raises(ValueError):
            parse_time_of_day(bad)


def test_link_code_request_validation():
    assert LinkCodeRequest(user_id=" u1 ", timezone="Asia/Tokyo").user_id == "u1"
    assert LinkCodeRequest(user_id="u1").timezone is None
    with pytest.raises(ValidationError):
        LinkCodeRequest(user_id="u1", timezone="Not/AZone")
    with pytest.raises(ValidationError):
        LinkCodeRequest(user_id="  ")


def test_telegram_update_ignores_unknown_fields():
    update = TelegramUpdate.model_validate(
        {
            "update_id": 5,
            "message": {
                "message_id": 1,
                "chat": {"id": 42, "type": "private", "first_name": "A"},
                "from": {"id": 42},
                "text": "hello",
            },
        }
    )
    assert update.message.chat.id == 42
    assert update.message.text == "hello"
    assert TelegramUpdate.model_validate({"update_id": 6}).message is None


def test_content_item_body():
    item = ContentItem(id="p", entries=["one", "  ", "two"])
    assert item.topic == "Daily Prompt"
    assert item.body == "one\n\ntwo"
    assert not item.is_empty
    assert ContentItem(id="p", entries=[" "]).is_empty


def test_outcome_flags():
    assert DeliveryOutcome(user_id="u", slot="morning", status="delivered").sent
    assert DeliveryOutcome(user_id="u", slot="morning", status="delivery_failed").failed
    assert not DeliveryOutcome(user_id="u", slot="morning", status="already_delivered").failed
