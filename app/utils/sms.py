"""Telnyx SMS gateway. SMS has no markup, so escaping is a no-op."""

from __future__ import annotations

import asyncio
import logging

import telnyx

from app.types.errors import DeliveryFailed
from app.utils.channels import ChannelGateway
from config import settings

_LOGGER = logging.getLogger(__name__)


def send_sms(to: str, body: str, from_number: str | None = None) -> None:
    api_key = settings.TELNYX_API_KEY
    from_num = from_number or settings.TELNYX_FROM_NUMBER
    if not api_key or not from_num:
        _LOGGER.info("[SMS] DEV mode: would send to %s: %d chars", to, len(body))
        return
    telnyx.api_key = api_key
    telnyx.Message.create(from_=from_num, to=to, text=body)


class SmsGateway(ChannelGateway):
    name = "sms"

    def escape(self, text: str) -> str:
        return text

    async def send(self, identity: str, text: str, credential: str | None = None) -> None:
        # ``credential`` is an optional per-user sending number
        try:
            await asyncio.wait_for(
                asyncio.to_thread(send_sms, identity, text, credential),
                timeout=settings.EXTERNAL_CALL_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise DeliveryFailed("SMS send timed out")
        except Exception as exc:  # noqa: BLE001
            raise DeliveryFailed(f"SMS send failed: {exc}")
