"""Celery tasks driving the delivery engine.

Tasks never retry: a failed user is picked up again by the next beat tick
while the slot is still inside its due window.
"""

from __future__ import annotations

import asyncio

import db
from app.celery_app import celery_app
from app.services import scheduler, verification


async def _sweep(slot: str) -> list[dict]:
    try:
        report = await scheduler.run_sweep(slot)
        return [r.model_dump(mode="json") for r in report.results if r.status != "not_due"]
    finally:
        # each task runs in its own event loop; don't keep pooled connections
        await db.dispose_engine()


async def _purge() -> int:
    try:
        return await verification.purge_expired()
    finally:
        await db.dispose_engine()


@celery_app.task(name="app.workers.delivery.sweep", bind=True, max_retries=0)
def sweep(self, slot: str):  # noqa: D401
    """Run one delivery sweep for ``slot`` and return the non-trivial outcomes."""
    return asyncio.run(_sweep(slot))


@celery_app.task(name="app.workers.delivery.purge_verifications", bind=True, max_retries=0)
def purge_verifications(self):  # noqa: D401
    """Garbage-collect expired verification codes."""
    return asyncio.run(_purge())
