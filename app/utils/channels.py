"""Outbound messaging channels.

A gateway knows how to push one text message to a channel identity and how
to make untrusted text inert for that channel's markup.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class ChannelGateway(ABC):
    name: str = "abstract"

    @abstractmethod
    async def send(self, identity: str, text: str, credential: str | None = None) -> None:
        """Deliver ``text`` (already formatted for this channel).

        Raises ``DeliveryFailed`` on any error or timeout; never retries.
        """

    @abstractmethod
    def escape(self, text: str) -> str:
        """Return ``text`` safe to embed inside a formatted message."""

    def bold(self, escaped: str) -> str:
        return escaped


def gateway_for(channel: str) -> ChannelGateway:
    if channel == "telegram":
        from app.utils.telegram import TelegramGateway
        return TelegramGateway()
    if channel == "sms":
        from app.utils.sms import SmsGateway
        return SmsGateway()
    raise ValueError(f"unknown channel '{channel}'")
