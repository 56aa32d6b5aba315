"""Scheduled prompt delivery.

An external trigger (Celery beat, the cron endpoint or the CLI script) calls
``run_sweep(slot)`` a few times around every configured slot time. For each
active user ``evaluate_and_deliver`` decides whether the slot is due, makes
sure it goes out at most once per local calendar day, fetches the prompt,
sends it and records what was sent so replies can be routed back.

Idempotency relies on the claim/commit compare-and-set helpers in ``db``:
the claim is taken before the send and the delivery is committed (or the
claim released) afterwards, so overlapping sweeps for one user never both
send, and a failed attempt never blocks the next sweep. If the message went
out but the state write fails, the claim is kept until the due window has
passed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import db
from app.services.content_sources import ContentSource, content_source_for
from app.types.delivery_contract import (
    SLOT_TYPES,
    ContentItem,
    DeliveryOutcome,
    SweepReport,
    parse_time_of_day,
)
from app.types.errors import ConfigurationError, EngineError
from app.utils.channels import ChannelGateway, gateway_for
from config import settings

_LOGGER = logging.getLogger(__name__)

UTC = timezone.utc

GREETINGS = {"morning": "Good morning!", "evening": "Good afternoon!"}
SLOT_EMOJI = {"morning": "\U0001F305", "evening": "\U0001F306"}
TOPIC_EMOJI = "\U0001F3AF"
REPLY_EMOJI = "\U0001F4AC"
CALL_TO_ACTION = "Reply to this message to log your response."


def _zone(config: db.DeliveryConfig) -> ZoneInfo:
    try:
        return ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"invalid timezone '{config.timezone}'")


def _scheduled_time(config: db.DeliveryConfig, slot: str) -> tuple[int, int]:
    try:
        return parse_time_of_day(config.slot_time(slot))
    except ValueError as exc:
        raise ConfigurationError(str(exc))


def slot_occurrence(config: db.DeliveryConfig, slot: str, now: datetime) -> datetime:
    """Local datetime of the scheduled occurrence of ``slot`` nearest to ``now``.

    Near midnight this may fall on the previous or next local day, e.g. a
    23:58 slot evaluated at 00:02 belongs to yesterday.
    """
    tz = _zone(config)
    local_now = now.astimezone(tz)
    hour, minute = _scheduled_time(config, slot)
    candidates = []
    for offset in (-1, 0, 1):
        day = local_now.date() + timedelta(days=offset)
        candidates.append(
            datetime(day.year, day.month, day.day, hour, minute, tzinfo=tz)
        )
    return min(candidates, key=lambda c: abs(c.astimezone(UTC) - now.astimezone(UTC)))


def is_due(
    config: db.DeliveryConfig,
    slot: str,
    now: datetime,
    tolerance_minutes: int | None = None,
) -> bool:
    """True iff local wall-clock ``now`` is within tolerance of the slot time.

    Works at minute granularity: seconds are dropped, so with the default
    tolerance 09:05:59 is still due for a 09:00 slot. Compared on local
    minutes-of-day with wrap-around, so the window spans midnight.
    """
    if tolerance_minutes is None:
        tolerance_minutes = settings.DUE_TOLERANCE_MINUTES
    local_now = now.astimezone(_zone(config))
    hour, minute = _scheduled_time(config, slot)
    current = local_now.hour * 60 + local_now.minute
    scheduled = hour * 60 + minute
    diff = abs(current - scheduled) % (24 * 60)
    return min(diff, 24 * 60 - diff) <= tolerance_minutes


def claim_ttl_seconds() -> int:
    """Age after which an unfinished claim is treated as abandoned.

    Never shorter than the whole due window, so a claim left behind by a
    send whose state write failed keeps blocking that slot occurrence.
    """
    return max(settings.DELIVERY_CLAIM_TTL_SECONDS, 2 * settings.DUE_TOLERANCE_MINUTES * 60)


def _already_delivered(
    state: db.DeliveryState | None,
    slot: str,
    slot_date: date,
    tz: ZoneInfo,
) -> bool:
    if state is None or state.last_slot_type != slot:
        return False
    delivered_on = state.last_local_date
    if delivered_on is None and state.last_delivered_at is not None:
        delivered_on = db.as_utc(state.last_delivered_at).astimezone(tz).date()
    return delivered_on == slot_date


def format_prompt_message(
    gateway: ChannelGateway,
    slot: str,
    local_date: date,
    item: ContentItem,
) -> str:
    esc = gateway.escape
    shown_date = local_date.strftime("%A %Y-%m-%d")
    label = slot.capitalize()
    return (
        f"{gateway.bold(esc(GREETINGS[slot]))}\n\n"
        f"{SLOT_EMOJI[slot]} {esc(f'{shown_date} - {label}')}\n"
        f"{TOPIC_EMOJI} {esc(item.topic)}\n\n"
        f"{esc(item.body)}\n\n"
        f"{REPLY_EMOJI} {esc(CALL_TO_ACTION)}"
    )


def _outcome(config, slot, status, reason=None, **kw) -> DeliveryOutcome:
    return DeliveryOutcome(user_id=config.user_id, slot=slot, status=status, reason=reason, **kw)


async def evaluate_and_deliver(
    config: db.DeliveryConfig,
    slot: str,
    now: datetime | None = None,
    gateway: ChannelGateway | None = None,
    source: ContentSource | None = None,
) -> DeliveryOutcome:
    """Send today's ``slot`` prompt to one user if it is due and not yet sent."""
    if slot not in SLOT_TYPES:
        raise ValueError(f"unknown slot type '{slot}'")
    now = now or datetime.now(tz=UTC)

    # 1. due check
    try:
        if not is_due(config, slot, now):
            return _outcome(config, slot, "not_due")
        occurrence = slot_occurrence(config, slot, now)
    except ConfigurationError as exc:
        return _outcome(config, slot, exc.status, exc.reason)
    slot_date = occurrence.date()
    tz = occurrence.tzinfo

    if not config.is_active:
        return _outcome(config, slot, "inactive", local_date=slot_date)
    if not config.channel_identity:
        return _outcome(
            config, slot, "configuration_error", "no channel identity linked", local_date=slot_date
        )

    # 2. idempotency: cheap read first, then the atomic claim
    state = await db.get_delivery_state(config.user_id)
    if _already_delivered(state, slot, slot_date, tz):
        return _outcome(config, slot, "already_delivered", local_date=slot_date)

    claim = await db.claim_delivery(config.user_id, slot, slot_date, now, claim_ttl_seconds())
    if claim != "claimed":
        return _outcome(config, slot, claim, local_date=slot_date)
    claim_key = db.claim_key_for(slot, slot_date)

    # 3-5. fetch, format, send; any failure releases the claim
    try:
        source = source or content_source_for(config)
        gateway = gateway or gateway_for(config.channel)
        item = await source.fetch_due(config.user_id, slot_date, slot)
        text = format_prompt_message(gateway, slot, slot_date, item)
        await gateway.send(config.channel_identity, text, config.channel_credential)
    except EngineError as exc:
        await db.release_claim(config.user_id, claim_key)
        _LOGGER.warning(
            "Prompt not delivered user=%s slot=%s status=%s reason=%s",
            config.user_id, slot, exc.status, exc.reason,
        )
        return _outcome(config, slot, exc.status, exc.reason, local_date=slot_date)
    except Exception as exc:  # noqa: BLE001
        await db.release_claim(config.user_id, claim_key)
        _LOGGER.exception("Unexpected delivery error user=%s slot=%s", config.user_id, slot)
        return _outcome(
            config, slot, "delivery_failed", f"unexpected error: {exc.__class__.__name__}",
            local_date=slot_date,
        )

    # 6. commit; on failure the claim stays held so no later sweep re-sends
    try:
        committed = await db.commit_delivery(
            config.user_id, claim_key, slot, slot_date, now, item.id
        )
    except Exception as exc:  # noqa: BLE001
        _LOGGER.exception(
            "Prompt sent but delivery state not saved user=%s slot=%s item=%s",
            config.user_id, slot, item.id,
        )
        return _outcome(
            config, slot, "delivery_failed",
            f"message sent but delivery state not saved: {exc.__class__.__name__}",
            item_id=item.id, local_date=slot_date,
        )
    if not committed:
        _LOGGER.warning("Delivery claim for user=%s expired before commit", config.user_id)
    _LOGGER.info("Prompt delivered user=%s slot=%s item=%s", config.user_id, slot, item.id)
    return _outcome(config, slot, "delivered", item_id=item.id, local_date=slot_date)


async def run_sweep(slot: str, now: datetime | None = None) -> SweepReport:
    """Evaluate every active config for ``slot``; users are independent."""
    if slot not in SLOT_TYPES:
        raise ValueError(f"unknown slot type '{slot}'")
    now = now or datetime.now(tz=UTC)
    configs = await db.list_active_configs()
    limiter = asyncio.Semaphore(max(1, settings.SWEEP_CONCURRENCY))

    async def _one(config: db.DeliveryConfig) -> DeliveryOutcome:
        async with limiter:
            try:
                return await evaluate_and_deliver(config, slot, now)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("Sweep failed for user=%s", config.user_id)
                return _outcome(
                    config, slot, "delivery_failed", f"unexpected error: {exc.__class__.__name__}"
                )

    results = await asyncio.gather(*(_one(c) for c in configs))
    report = SweepReport(slot=slot, ran_at=now, results=list(results))
    _LOGGER.info(
        "Sweep %s finished: %d configs, %d delivered, %d failed",
        slot, len(configs), report.delivered, report.failed,
    )
    return report
