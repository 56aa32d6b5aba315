"""Process-wide logging setup.

Keeps credentials out of the logs: values under sensitive-looking keys are
masked and bot tokens embedded in Telegram API URLs are replaced.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

SENSITIVE_KEYS = (
    "token", "secret", "password", "key", "auth", "credential", "bearer",
)
REDACTED = "[REDACTED]"

_BOT_TOKEN_RE = re.compile(r"/bot\d+:[A-Za-z0-9_-]+")


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    return any(s in key for s in SENSITIVE_KEYS)


def sanitize(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: (REDACTED if isinstance(k, str) and _is_sensitive(k) else sanitize(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize(v) for v in value)
    if isinstance(value, str):
        return _BOT_TOKEN_RE.sub("/bot" + REDACTED, value)
    return value


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize(record.msg)
        if isinstance(record.args, dict):
            record.args = sanitize(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(sanitize(a) for a in record.args)
        return True


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    handler.addFilter(RedactingFilter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs full request URLs, which carry the bot token
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
