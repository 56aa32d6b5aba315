"""Pydantic models shared by the delivery engine, its HTTP surface and tests.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

SlotType = Literal["morning", "evening"]

SLOT_TYPES: tuple[str, ...] = ("morning", "evening")


def parse_slot(value: str | None) -> str | None:
    """Return the canonical slot name or ``None`` when unrecognised."""
    if not value:
        return None
    value = value.strip().lower()
    return value if value in SLOT_TYPES else None


def validate_timezone(v: str) -> str:
    try:
        from zoneinfo import ZoneInfo
        ZoneInfo(v)
    except Exception:
        raise ValueError(f"timezone '{v}' is not a valid Olson timezone string")
    return v


def parse_time_of_day(v: str) -> tuple[int, int]:
    """``"HH:MM"`` (or Postgres-style ``"HH:MM:SS"``) → ``(hour, minute)``."""
    parts = v.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"time of day '{v}' must look like HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"time of day '{v}' is out of range")
    return hour, minute


# ──────────────────────────────
# Content
# ──────────────────────────────


class ContentItem(BaseModel):
    """One prompt for one user/date/slot, as produced by a content source."""

    id: str
    topic: str = "Daily Prompt"
    entries: List[str] = Field(default_factory=list)

    @property
    def body(self) -> str:
        return "\n\n".join(e for e in self.entries if e.strip())

    @property
    def is_empty(self) -> bool:
        return not self.body.strip()


# ──────────────────────────────
# Outcomes
# ──────────────────────────────

DeliveryStatus = Literal[
    "delivered",
    "not_due",
    "already_delivered",
    "in_progress",
    "inactive",
    "content_not_found",
    "source_unavailable",
    "delivery_failed",
    "configuration_error",
]


class DeliveryOutcome(BaseModel):
    user_id: str
    slot: SlotType
    status: DeliveryStatus
    reason: Optional[str] = None
    item_id: Optional[str] = None
    local_date: Optional[date] = None

    @property
    def sent(self) -> bool:
        return self.status == "delivered"

    @property
    def failed(self) -> bool:
        return self.status in (
            "content_not_found",
            "source_unavailable",
            "delivery_failed",
            "configuration_error",
        )


class ReplyOutcome(BaseModel):
    user_id: str
    status: Literal[
        "logged",
        "reply_target_missing",
        "source_unavailable",
        "content_not_found",
        "configuration_error",
    ]
    reason: Optional[str] = None
    item_id: Optional[str] = None


class LinkOutcome(BaseModel):
    status: Literal["linked", "ignored", "link_not_found", "link_expired", "locked"]
    user_id: Optional[str] = None
    via: Optional[Literal["code", "greeting"]] = None
    reason: Optional[str] = None

    @property
    def linked(self) -> bool:
        return self.status == "linked"


class InboundResult(BaseModel):
    """What the inbound handler did with one channel message."""

    handled_by: Literal["linker", "router", "none"]
    link: Optional[LinkOutcome] = None
    reply: Optional[ReplyOutcome] = None


class SweepReport(BaseModel):
    slot: SlotType
    ran_at: datetime
    results: List[DeliveryOutcome] = Field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.sent)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)


# ──────────────────────────────
# Inbound payloads / requests
# ──────────────────────────────


class TelegramChat(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: Optional[int] = None
    chat: TelegramChat
    text: Optional[str] = None


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None


class LinkCodeRequest(BaseModel):
    user_id: str
    timezone: Optional[str] = None

    @field_validator("user_id")
    def _non_empty(cls, v):  # noqa: N805
        if not v.strip():
            raise ValueError("user_id must be a non-empty string")
        return v.strip()

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        return validate_timezone(v) if v else None


class LinkCodeResponse(BaseModel):
    code: str
    expires_at: datetime
