from datetime import date

import pytest

import db
from app.services.scheduler import is_due, slot_occurrence
from app.types.errors import ConfigurationError
from conftest import at


def _config(tz="UTC", morning="09:00", evening="18:00"):
    return db.DeliveryConfig(
        user_id="u1", timezone=tz, morning_time=morning, evening_time=evening
    )


@pytest.mark.parametrize(
    "minute, expected",
    [(3, True), (5, True), (6, False), (7, False), (0, True)],
)
def test_due_within_five_minutes_after(minute, expected):
    assert is_due(_config(), "morning", at(2026, 10, 16, 9, minute)) is expected


def test_due_check_ignores_seconds():
    assert is_due(_config(), "morning", at(2026, 10, 16, 9, 5, 59))
    assert not is_due(_config(), "morning", at(2026, 10, 16, 9, 6, 0))


def test_due_before_scheduled_time():
    assert is_due(_config(), "morning", at(2026, 10, 16, 8, 55))
    assert not is_due(_config(), "morning", at(2026, 10, 16, 8, 54))


def test_evening_slot_uses_evening_time():
    cfg = _config()
    assert is_due(cfg, "evening", at(2026, 10, 16, 18, 2))
    assert not is_due(cfg, "morning", at(2026, 10, 16, 18, 2))


def test_due_across_local_midnight():
    cfg = _config(evening="23:58")
    assert is_due(cfg, "evening", at(2026, 10, 17, 0, 2))
    assert not is_due(cfg, "evening", at(2026, 10, 17, 0, 4))


def test_occurrence_after_midnight_belongs_to_previous_day():
    cfg = _config(evening="23:58")
    occurrence = slot_occurrence(cfg, "evening", at(2026, 10, 17, 0, 2))
    assert occurrence.date() == date(2026, 10, 16)


def test_occurrence_before_midnight_belongs_to_next_day():
    cfg = _config(morning="00:01")
    occurrence = slot_occurrence(cfg, "morning", at(2026, 10, 16, 23, 58))
    assert occurrence.date() == date(2026, 10, 17)


def test_due_check_uses_config_timezone():
    # New York is UTC-4 in October
    cfg = _config(tz="America/New_York")
    assert is_due(cfg, "morning", at(2026, 10, 16, 13, 2))
    assert not is_due(cfg, "morning", at(2026, 10, 16, 9, 2))


def test_local_date_differs_from_utc_date():
    # 09:00 in Tokyo is 00:00 UTC the same day; 08:58 Tokyo is the previous UTC day
    cfg = _config(tz="Asia/Tokyo")
    now = at(2026, 10, 15, 23, 58)
    assert is_due(cfg, "morning", now)
    assert slot_occurrence(cfg, "morning", now).date() == date(2026, 10, 16)


def test_invalid_timezone_is_configuration_error():
    with pytest.raises(ConfigurationError):
        is_due(_config(tz="Mars/Olympus"), "morning", at(2026, 10, 16, 9, 0))


def test_invalid_slot_time_is_configuration_error():
    with pytest.raises(ConfigurationError):
        is_due(_config(morning="9am"), "morning", at(2026, 10, 16, 9, 0))
