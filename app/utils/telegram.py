"""Telegram Bot API gateway (MarkdownV2)."""

from __future__ import annotations

import logging
import re

import httpx

from app.types.errors import ConfigurationError, DeliveryFailed
from app.utils.channels import ChannelGateway
from config import settings

_LOGGER = logging.getLogger(__name__)

# Characters Telegram requires to be backslash-escaped in MarkdownV2 text.
_MDV2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")

MAX_MESSAGE_LENGTH = 4096


def escape_markdown_v2(text: str) -> str:
    return _MDV2_SPECIAL.sub(r"\\\1", text)


class TelegramGateway(ChannelGateway):
    name = "telegram"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def escape(self, text: str) -> str:
        return escape_markdown_v2(text)

    def bold(self, escaped: str) -> str:
        return f"*{escaped}*"

    def _token(self, credential: str | None) -> str:
        token = credential or settings.TELEGRAM_BOT_TOKEN
        if not token:
            raise ConfigurationError("no Telegram bot token configured")
        return token

    async def _call(self, token: str, method: str, payload: dict) -> dict:
        url = f"{settings.TELEGRAM_API_BASE}/bot{token}/{method}"
        async with httpx.AsyncClient(
            timeout=settings.EXTERNAL_CALL_TIMEOUT, transport=self._transport
        ) as client:
            resp = await client.post(url, json=payload)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400 or not data.get("ok", False):
            description = data.get("description") or f"HTTP {resp.status_code}"
            raise DeliveryFailed(f"Telegram {method} failed: {description}")
        return data

    async def send(self, identity: str, text: str, credential: str | None = None) -> None:
        try:
            token = self._token(credential)
        except ConfigurationError as exc:
            raise DeliveryFailed(exc.reason)
        if len(text) > MAX_MESSAGE_LENGTH:
            # cut on a line boundary so no escape sequence is split
            text = text[:MAX_MESSAGE_LENGTH].rsplit("\n", 1)[0]
        payload = {
            "chat_id": identity,
            "text": text,
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": True,
        }
        try:
            await self._call(token, "sendMessage", payload)
        except httpx.TimeoutException:
            raise DeliveryFailed("Telegram sendMessage timed out")
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"Telegram sendMessage failed: {exc.__class__.__name__}")
        _LOGGER.info("Telegram message sent chat_id=%s length=%d", identity, len(text))

    async def set_webhook(self, url: str, secret_token: str | None = None) -> bool:
        payload: dict = {"url": url, "allowed_updates": ["message"]}
        if secret_token:
            payload["secret_token"] = secret_token
        data = await self._call(self._token(None), "setWebhook", payload)
        return bool(data.get("result"))
