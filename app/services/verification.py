"""Linking a messaging identity to a user account.

The dashboard asks for a short-lived six digit code (``issue_code``) and the
user sends it to the bot. ``consume`` binds the sender to the code's owner,
creates or updates their ``DeliveryConfig`` and confirms on the channel.

A bare greeting ("hello", "hi", "hey") without a code binds to the most
recently issued live code of *any* user. This mirrors how the onboarding
flow has always worked but is deliberately weak: whoever greets the bot
first while a code is pending gets linked. Failed attempts are counted per
sender and lock the sender out for a while to slow down guessing.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone

import db
from app.types.delivery_contract import LinkOutcome
from app.types.errors import DeliveryFailed, LinkExpired, LinkNotFound
from app.utils.channels import ChannelGateway
from config import settings

_LOGGER = logging.getLogger(__name__)

UTC = timezone.utc
CODE_LENGTH = 6

_CODE_RE = re.compile(r"(?<!\d)(\d{6})(?!\d)")
_GREETING_RE = re.compile(r"\b(hello|hi|hey)\b")

LINKED_MESSAGE = (
    "✅ Account linked!\n\n"
    "Your account has been successfully linked. "
    "You can now receive prompts and log replies."
)
HELP_MESSAGE = (
    "\U0001F44B Hello!\n\n"
    "To link your account, please:\n\n"
    "1. Go to your dashboard\n"
    "2. Click \"Connect\"\n"
    "3. Send the verification code here\n\n"
    "Or just say \"hello\" if you have an active verification code."
)
LOCKED_MESSAGE = "Too many attempts. Please wait a few minutes and try again."


def normalize(text: str) -> str:
    return (text or "").strip().casefold()


def extract_code(text: str) -> str | None:
    match = _CODE_RE.search(normalize(text))
    return match.group(1) if match else None


def is_greeting(text: str) -> bool:
    return _GREETING_RE.search(normalize(text)) is not None


def looks_like_link_attempt(text: str) -> bool:
    return extract_code(text) is not None or is_greeting(text)


def _new_code() -> str:
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


async def issue_code(
    user_id: str,
    detected_timezone: str | None = None,
    now: datetime | None = None,
) -> db.PendingVerification:
    """Store a fresh pending verification and return it (``.code`` for display)."""
    now = now or datetime.now(tz=UTC)
    code = _new_code()
    for _ in range(5):
        if await db.find_live_verification(now, code) is None:
            break
        code = _new_code()
    expires_at = now + timedelta(minutes=settings.VERIFICATION_CODE_TTL_MINUTES)
    row = await db.insert_verification(code, user_id, now, expires_at, detected_timezone)
    _LOGGER.info("Verification code issued user=%s expires_at=%s", user_id, expires_at.isoformat())
    return row


async def _bootstrap_config(
    verification: db.PendingVerification, channel: str, identity: str
) -> db.DeliveryConfig:
    has_owned = await db.user_has_owned_prompts(verification.user_id)
    existing = await db.get_config(verification.user_id)
    if existing is None:
        config = db.DeliveryConfig(
            user_id=verification.user_id,
            channel=channel,
            channel_identity=identity,
            channel_credential=None,
            timezone=verification.timezone or settings.DEFAULT_TIMEZONE,
            morning_time=settings.DEFAULT_MORNING_TIME,
            evening_time=settings.DEFAULT_EVENING_TIME,
            is_active=has_owned,
            content_source="owned" if has_owned else "external",
        )
        return await db.insert_config(config)

    values: dict = {"channel": channel, "channel_identity": identity}
    if has_owned:
        values.update(is_active=True, content_source="owned")
    await db.update_config(verification.user_id, **values)
    return await db.get_config(verification.user_id)


async def _notify(gateway: ChannelGateway, identity: str, text: str) -> None:
    try:
        await gateway.send(identity, gateway.escape(text))
    except DeliveryFailed as exc:
        _LOGGER.warning("Could not message %s: %s", identity, exc.reason)


async def _locked_until(identity: str, now: datetime) -> datetime | None:
    attempt = await db.get_attempt(identity)
    if attempt is None:
        return None
    until = db.as_utc(attempt.locked_until)
    return until if until is not None and until > now else None


async def _miss(
    gateway: ChannelGateway, identity: str, now: datetime, error: LinkNotFound | LinkExpired
) -> LinkOutcome:
    await db.record_failed_attempt(
        identity,
        now,
        settings.VERIFICATION_MAX_ATTEMPTS,
        timedelta(minutes=settings.VERIFICATION_LOCKOUT_MINUTES),
    )
    await _notify(gateway, identity, HELP_MESSAGE)
    _LOGGER.info("Link attempt failed identity=%s status=%s", identity, error.status)
    return LinkOutcome(status=error.status, reason=error.reason)


async def consume(
    text: str,
    channel: str,
    identity: str,
    gateway: ChannelGateway,
    now: datetime | None = None,
) -> LinkOutcome:
    """Try to bind ``identity`` using the code or greeting in ``text``."""
    now = now or datetime.now(tz=UTC)
    code = extract_code(text)
    greeting = is_greeting(text)
    if code is None and not greeting:
        return LinkOutcome(status="ignored")

    if await _locked_until(identity, now) is not None:
        await _notify(gateway, identity, LOCKED_MESSAGE)
        return LinkOutcome(status="locked", reason="too many failed attempts")

    verification = await db.find_live_verification(now, code)
    if verification is None:
        if code is not None and await db.find_latest_verification_by_code(code) is not None:
            error = LinkExpired("verification code expired or already used")
        else:
            error = LinkNotFound("no matching verification code")
        return await _miss(gateway, identity, now, error)

    if not await db.consume_verification(verification.id, channel, identity, now):
        # lost the race to a concurrent message with the same code
        return await _miss(gateway, identity, now, LinkExpired("verification code already used"))

    await db.clear_attempts(identity)
    config = await _bootstrap_config(verification, channel, identity)
    await _notify(gateway, identity, LINKED_MESSAGE)
    via = "code" if code is not None else "greeting"
    _LOGGER.info(
        "Channel identity linked user=%s channel=%s via=%s active=%s",
        config.user_id, channel, via, config.is_active,
    )
    return LinkOutcome(status="linked", user_id=verification.user_id, via=via)


async def purge_expired(now: datetime | None = None) -> int:
    """Drop expired codes and stale attempt counters. Never needed for correctness."""
    now = now or datetime.now(tz=UTC)
    removed = await db.purge_expired_verifications(now)
    await db.purge_stale_attempts(now - timedelta(days=7))
    _LOGGER.info("Purged %d expired verification codes", removed)
    return removed
