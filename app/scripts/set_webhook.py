"""Point the Telegram bot at this deployment's webhook.
    python -m app.scripts.set_webhook https://example.com/v1/telegram/webhook
"""

from __future__ import annotations

import asyncio
import sys

from app.utils.telegram import TelegramGateway
from config import settings


async def main(url: str) -> bool:
    return await TelegramGateway().set_webhook(url, settings.TELEGRAM_WEBHOOK_SECRET)


if __name__ == "__main__":  # pragma: no cover
    if len(sys.argv) != 2:
        print("usage: python -m app.scripts.set_webhook <url>", file=sys.stderr)
        sys.exit(2)
    ok = asyncio.run(main(sys.argv[1]))
    print("Webhook set" if ok else "Webhook not set")
    sys.exit(0 if ok else 1)
