"""
Async DB helpers for the prompt delivery engine.
Uses SQLAlchemy 2.0 + asyncpg driver; no raw SQL strings in app code.

Every write that guards an invariant (delivery idempotency, single-use
verification codes, reply appends) is one conditional UPDATE whose rowcount
decides the winner, so concurrent sweeps in separate processes agree without
any in-process lock.
"""

from __future__ import annotations

import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncGenerator
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint, JSON, Date, DateTime, String, Text, UniqueConstraint, delete, func, or_, select, update
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column
)
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from sqlalchemy.pool import NullPool

UTC = timezone.utc

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite"):
        return url
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        url = _build_url()
        if url.startswith("sqlite"):
            _engine = create_async_engine(url, poolclass=NullPool)
        else:
            _engine = create_async_engine(url, pool_size=5, max_overflow=5)
    return _engine

def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async def _session_scope():
        async with _session_maker() as session:
            yield session
    return _session_scope()


def as_utc(value: datetime | None) -> datetime | None:
    """Backends without tz support hand back naive UTC; make it aware again."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _require_aware(value: datetime, field: str) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"{field} must be timezone-aware")
    return value.astimezone(UTC)

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class DeliveryConfig(Base):
    __tablename__ = "delivery_configs"
    __table_args__ = (
        CheckConstraint("content_source IN ('external', 'owned')", name="ck_delivery_configs_source"),
    )

    user_id:              Mapped[str] = mapped_column(primary_key=True)
    channel:              Mapped[str] = mapped_column(default="telegram")
    channel_identity:     Mapped[str | None] = mapped_column(index=True)
    channel_credential:   Mapped[str | None]
    timezone:             Mapped[str] = mapped_column(default="UTC")
    morning_time:         Mapped[str] = mapped_column(String(8), default="09:00")
    evening_time:         Mapped[str] = mapped_column(String(8), default="18:00")
    is_active:            Mapped[bool] = mapped_column(default=False)
    content_source:       Mapped[str] = mapped_column(default="external")
    external_token:       Mapped[str | None]
    external_database_id: Mapped[str | None]
    created_at:           Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at:           Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def slot_time(self, slot: str) -> str:
        if slot == "morning":
            return self.morning_time
        if slot == "evening":
            return self.evening_time
        raise ValueError(f"unknown slot type '{slot}'")


class DeliveryState(Base):
    __tablename__ = "delivery_states"
    __table_args__ = (
        CheckConstraint(
            "last_slot_type IS NULL OR last_delivered_at IS NOT NULL",
            name="ck_delivery_states_slot_has_timestamp",
        ),
    )

    user_id:           Mapped[str] = mapped_column(primary_key=True)
    last_slot_type:    Mapped[str | None]
    last_delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_local_date:   Mapped[date | None] = mapped_column(Date)
    last_item_id:      Mapped[str | None]
    claim_key:         Mapped[str | None]
    claimed_at:        Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at:        Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PendingVerification(Base):
    __tablename__ = "pending_verifications"

    id:               Mapped[str] = mapped_column(primary_key=True)
    code:             Mapped[str] = mapped_column(String(6), index=True)
    user_id:          Mapped[str] = mapped_column(index=True)
    timezone:         Mapped[str | None]
    created_at:       Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at:       Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    consumed_at:      Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    channel:          Mapped[str | None]
    channel_identity: Mapped[str | None]


class VerificationAttempt(Base):
    __tablename__ = "verification_attempts"

    channel_identity: Mapped[str] = mapped_column(primary_key=True)
    attempt_count:    Mapped[int] = mapped_column(default=0)
    last_attempt_at:  Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_until:     Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OwnedPrompt(Base):
    __tablename__ = "owned_prompts"
    __table_args__ = (
        UniqueConstraint("user_id", "date", "slot_type", name="uq_owned_prompts_user_date_slot"),
        CheckConstraint("slot_type IN ('morning', 'evening')", name="ck_owned_prompts_slot"),
    )

    id:         Mapped[str] = mapped_column(primary_key=True)
    user_id:    Mapped[str] = mapped_column(index=True)
    day:        Mapped[date] = mapped_column("date", Date)
    slot_type:  Mapped[str]
    name:       Mapped[str] = mapped_column(default="")
    theme:      Mapped[str | None]
    entries:    Mapped[list[str]] = mapped_column(JSON, default=list)
    response:   Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup or from Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. CRUD helpers
# ──────────────────────────────────────────────────────────────────────

# 5.1 Delivery configs -------------------------------------------------
async def get_config(user_id: str) -> DeliveryConfig | None:
    async for s in get_session():
        return await s.get(DeliveryConfig, user_id)


async def get_config_by_identity(channel: str, identity: str) -> DeliveryConfig | None:
    async for s in get_session():
        stmt = (
            select(DeliveryConfig)
            .where(
                DeliveryConfig.channel == channel,
                DeliveryConfig.channel_identity == identity,
            )
            .order_by(DeliveryConfig.updated_at.desc())
            .limit(1)
        )
        res = await s.execute(stmt)
        return res.scalar_one_or_none()


async def list_active_configs() -> list[DeliveryConfig]:
    async for s in get_session():
        res = await s.execute(
            select(DeliveryConfig)
            .where(DeliveryConfig.is_active.is_(True))
            .order_by(DeliveryConfig.user_id)
        )
        return list(res.scalars().all())


async def insert_config(config: DeliveryConfig) -> DeliveryConfig:
    async for s in get_session():
        s.add(config)
        await s.commit()
        return config


async def update_config(user_id: str, **values: Any) -> None:
    async for s in get_session():
        await s.execute(
            update(DeliveryConfig)
            .where(DeliveryConfig.user_id == user_id)
            .values(**values, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await s.commit()


# 5.2 Delivery state / claims -----------------------------------------
def claim_key_for(slot: str, local_date: date) -> str:
    return f"{slot}:{local_date.isoformat()}"


async def get_delivery_state(user_id: str) -> DeliveryState | None:
    async for s in get_session():
        return await s.get(DeliveryState, user_id)


async def _ensure_state_row(s: AsyncSession, user_id: str) -> None:
    if await s.get(DeliveryState, user_id) is not None:
        return
    s.add(DeliveryState(user_id=user_id))
    try:
        await s.commit()
    except IntegrityError:
        # another sweep created it first
        await s.rollback()


async def claim_delivery(
    user_id: str,
    slot: str,
    local_date: date,
    now: datetime,
    claim_ttl_seconds: int,
) -> str:
    """Take the per-user in-flight claim for ``slot`` on ``local_date``.

    Returns ``"claimed"``, ``"already_delivered"`` or ``"in_progress"``.
    A claim older than ``claim_ttl_seconds`` is considered abandoned.
    """
    now = _require_aware(now, "now")
    key = claim_key_for(slot, local_date)
    stale_before = now - timedelta(seconds=claim_ttl_seconds)
    async for s in get_session():
        await _ensure_state_row(s, user_id)
        stmt = (
            update(DeliveryState)
            .where(
                DeliveryState.user_id == user_id,
                or_(
                    DeliveryState.last_slot_type.is_(None),
                    DeliveryState.last_slot_type != slot,
                    DeliveryState.last_local_date.is_(None),
                    DeliveryState.last_local_date != local_date,
                ),
                or_(
                    DeliveryState.claim_key.is_(None),
                    DeliveryState.claimed_at.is_(None),
                    DeliveryState.claimed_at < stale_before,
                ),
            )
            .values(claim_key=key, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        res = await s.execute(stmt)
        await s.commit()
        if res.rowcount == 1:
            return "claimed"

        state = (
            await s.execute(
                select(DeliveryState)
                .where(DeliveryState.user_id == user_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        if state.last_slot_type == slot and state.last_local_date == local_date:
            return "already_delivered"
        return "in_progress"


async def commit_delivery(
    user_id: str,
    claim_key: str,
    slot: str,
    local_date: date,
    delivered_at: datetime,
    item_id: str,
) -> bool:
    """Record a successful send and release the claim in one statement.

    Returns ``False`` when the claim had already been taken over; the
    delivery is still recorded in that case because the message went out.
    """
    delivered_at = _require_aware(delivered_at, "delivered_at")
    values = dict(
        last_slot_type=slot,
        last_delivered_at=delivered_at,
        last_local_date=local_date,
        last_item_id=item_id,
    )
    async for s in get_session():
        res = await s.execute(
            update(DeliveryState)
            .where(DeliveryState.user_id == user_id, DeliveryState.claim_key == claim_key)
            .values(**values, claim_key=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            await s.commit()
            return True
        await s.execute(
            update(DeliveryState)
            .where(DeliveryState.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return False


async def release_claim(user_id: str, claim_key: str) -> None:
    async for s in get_session():
        await s.execute(
            update(DeliveryState)
            .where(DeliveryState.user_id == user_id, DeliveryState.claim_key == claim_key)
            .values(claim_key=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await s.commit()


# 5.3 Pending verifications -------------------------------------------
async def insert_verification(
    code: str,
    user_id: str,
    created_at: datetime,
    expires_at: datetime,
    tz: str | None = None,
) -> PendingVerification:
    row = PendingVerification(
        id=str(uuid4()),
        code=code,
        user_id=user_id,
        timezone=tz,
        created_at=_require_aware(created_at, "created_at"),
        expires_at=_require_aware(expires_at, "expires_at"),
    )
    async for s in get_session():
        s.add(row)
        await s.commit()
    return row


async def find_live_verification(now: datetime, code: str | None = None) -> PendingVerification | None:
    """Unconsumed, unexpired verification; newest first when no code is given."""
    now = _require_aware(now, "now")
    async for s in get_session():
        stmt = select(PendingVerification).where(
            PendingVerification.consumed_at.is_(None),
            PendingVerification.expires_at > now,
        )
        if code is not None:
            stmt = stmt.where(PendingVerification.code == code)
        stmt = stmt.order_by(PendingVerification.created_at.desc()).limit(1)
        res = await s.execute(stmt)
        return res.scalar_one_or_none()


async def find_latest_verification_by_code(code: str) -> PendingVerification | None:
    async for s in get_session():
        res = await s.execute(
            select(PendingVerification)
            .where(PendingVerification.code == code)
            .order_by(PendingVerification.created_at.desc())
            .limit(1)
        )
        return res.scalar_one_or_none()


async def consume_verification(
    verification_id: str, channel: str, identity: str, now: datetime
) -> bool:
    """Compare-and-set: first caller wins, everyone else gets ``False``."""
    now = _require_aware(now, "now")
    async for s in get_session():
        res = await s.execute(
            update(PendingVerification)
            .where(
                PendingVerification.id == verification_id,
                PendingVerification.consumed_at.is_(None),
                PendingVerification.expires_at > now,
            )
            .values(consumed_at=now, channel=channel, channel_identity=identity)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount == 1


async def purge_expired_verifications(now: datetime) -> int:
    now = _require_aware(now, "now")
    async for s in get_session():
        res = await s.execute(
            delete(PendingVerification)
            .where(
                PendingVerification.expires_at < now,
                PendingVerification.consumed_at.is_(None),
            )
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount or 0


# 5.4 Verification attempts (brute-force lockout) ---------------------
async def get_attempt(identity: str) -> VerificationAttempt | None:
    async for s in get_session():
        return await s.get(VerificationAttempt, identity)


async def record_failed_attempt(
    identity: str,
    now: datetime,
    max_attempts: int,
    lockout: timedelta,
    window: timedelta = timedelta(hours=1),
) -> VerificationAttempt | None:
    now = _require_aware(now, "now")
    async for s in get_session():
        row = await s.get(VerificationAttempt, identity)
        if row is None:
            row = VerificationAttempt(channel_identity=identity, attempt_count=0)
            s.add(row)
        last = as_utc(row.last_attempt_at)
        if last is not None and last < now - window:
            row.attempt_count = 0
            row.locked_until = None
        row.attempt_count = (row.attempt_count or 0) + 1
        row.last_attempt_at = now
        if row.attempt_count >= max_attempts:
            row.locked_until = now + lockout
        try:
            await s.commit()
        except IntegrityError:
            await s.rollback()
            return None
        return row


async def clear_attempts(identity: str) -> None:
    async for s in get_session():
        await s.execute(
            delete(VerificationAttempt)
            .where(VerificationAttempt.channel_identity == identity)
            .execution_options(synchronize_session=False)
        )
        await s.commit()


async def purge_stale_attempts(before: datetime) -> int:
    before = _require_aware(before, "before")
    async for s in get_session():
        res = await s.execute(
            delete(VerificationAttempt)
            .where(VerificationAttempt.last_attempt_at < before)
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount or 0


# 5.5 Owned prompts ---------------------------------------------------
async def insert_owned_prompt(
    user_id: str,
    day: date,
    slot_type: str,
    entries: list[str],
    theme: str | None = None,
    name: str = "",
    response: str | None = None,
) -> str:
    pid = str(uuid4())
    prompt = OwnedPrompt(
        id=pid,
        user_id=user_id,
        day=day,
        slot_type=slot_type,
        name=name,
        theme=theme,
        entries=list(entries),
        response=response,
    )
    async for s in get_session():
        s.add(prompt)
        await s.commit()
    return pid


async def fetch_owned_prompt(user_id: str, day: date, slot_type: str) -> OwnedPrompt | None:
    async for s in get_session():
        res = await s.execute(
            select(OwnedPrompt).where(
                OwnedPrompt.user_id == user_id,
                OwnedPrompt.day == day,
                OwnedPrompt.slot_type == slot_type,
            )
        )
        return res.scalar_one_or_none()


async def get_owned_prompt(prompt_id: str) -> OwnedPrompt | None:
    async for s in get_session():
        return await s.get(OwnedPrompt, prompt_id)


async def user_has_owned_prompts(user_id: str) -> bool:
    async for s in get_session():
        res = await s.execute(
            select(OwnedPrompt.id).where(OwnedPrompt.user_id == user_id).limit(1)
        )
        return res.first() is not None


async def append_owned_response(prompt_id: str, expected: str | None, new_value: str) -> bool:
    """Write ``new_value`` only if the stored response is still ``expected``."""
    async for s in get_session():
        current = (
            OwnedPrompt.response.is_(None)
            if expected is None
            else OwnedPrompt.response == expected
        )
        res = await s.execute(
            update(OwnedPrompt)
            .where(OwnedPrompt.id == prompt_id, current)
            .values(response=new_value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await s.commit()
        return res.rowcount == 1


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _session_maker = None
