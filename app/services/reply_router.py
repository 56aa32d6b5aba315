"""Routing inbound channel messages.

``handle_inbound`` is the single entry point used by every webhook. It
decides whether a message is a link attempt or a reply to the last prompt,
and it never raises: the channel gets its acknowledgment no matter what.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import db
from app.services import verification
from app.services.content_sources import ContentSource, content_source_for
from app.types.delivery_contract import InboundResult, ReplyOutcome
from app.types.errors import DeliveryFailed, EngineError, ReplyTargetMissing
from app.utils.channels import ChannelGateway, gateway_for

_LOGGER = logging.getLogger(__name__)

NOTHING_TO_REPLY_MESSAGE = (
    "There is no prompt to reply to yet. Your next prompt will arrive at its scheduled time."
)


async def route(
    config: db.DeliveryConfig,
    text: str,
    gateway: ChannelGateway,
    source: ContentSource | None = None,
) -> ReplyOutcome:
    """Append ``text`` to the prompt last delivered to ``config.user_id``."""
    state = await db.get_delivery_state(config.user_id)
    if state is None or not state.last_item_id:
        missing = ReplyTargetMissing("No active prompt to reply to")
        try:
            await gateway.send(
                config.channel_identity,
                gateway.escape(NOTHING_TO_REPLY_MESSAGE),
                config.channel_credential,
            )
        except DeliveryFailed as exc:
            _LOGGER.warning("Could not notify user=%s: %s", config.user_id, exc.reason)
        return ReplyOutcome(user_id=config.user_id, status=missing.status, reason=missing.reason)

    try:
        source = source or content_source_for(config)
        await source.append_reply(state.last_item_id, text)
    except EngineError as exc:
        _LOGGER.error(
            "Failed to handle reply user=%s item=%s status=%s reason=%s",
            config.user_id, state.last_item_id, exc.status, exc.reason,
        )
        return ReplyOutcome(
            user_id=config.user_id, status=exc.status, reason=exc.reason, item_id=state.last_item_id
        )

    _LOGGER.info(
        "Reply logged user=%s item=%s length=%d", config.user_id, state.last_item_id, len(text)
    )
    return ReplyOutcome(user_id=config.user_id, status="logged", item_id=state.last_item_id)


async def handle_inbound(
    channel: str,
    identity: str,
    text: str | None,
    gateway: ChannelGateway | None = None,
    now: datetime | None = None,
) -> InboundResult:
    """Dispatch one inbound message to the linker or the reply router.

    * an explicit six digit code always goes to the linker first, so a linked
      user can re-link; if it matches nothing and the sender is linked the
      message is treated as an ordinary reply;
    * a linked sender's message is a reply;
    * anything else from an unknown sender goes to the linker, which ignores
      text that is neither a code nor a greeting.
    """
    if not text or not text.strip():
        return InboundResult(handled_by="none")
    try:
        gateway = gateway or gateway_for(channel)
        config = await db.get_config_by_identity(channel, identity)

        code = verification.extract_code(text)
        if code is not None:
            if config is None:
                link = await verification.consume(text, channel, identity, gateway, now)
                return InboundResult(handled_by="linker", link=link)
            live = await db.find_live_verification(now or datetime.now(tz=timezone.utc), code)
            if live is not None:
                link = await verification.consume(text, channel, identity, gateway, now)
                return InboundResult(handled_by="linker", link=link)

        if config is not None:
            reply = await route(config, text, gateway)
            return InboundResult(handled_by="router", reply=reply)

        link = await verification.consume(text, channel, identity, gateway, now)
        if link.status == "ignored":
            _LOGGER.info("No user found for %s identity=%s", channel, identity)
            return InboundResult(handled_by="none", link=link)
        return InboundResult(handled_by="linker", link=link)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Inbound message handling failed channel=%s identity=%s", channel, identity)
        return InboundResult(handled_by="none")
