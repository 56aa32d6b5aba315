"""Run one delivery sweep from the command line.
Useful as a platform cron job when Celery beat is not running:
    python -m app.scripts.run_sweep morning
"""

from __future__ import annotations

import asyncio
import json
import sys

import db
from app.services import scheduler
from app.types.delivery_contract import parse_slot
from app.utils.log import configure_logging
from config import settings


async def main(slot: str) -> int:
    try:
        report = await scheduler.run_sweep(slot)
    finally:
        await db.dispose_engine()
    for outcome in report.results:
        if outcome.status != "not_due":
            print(json.dumps(outcome.model_dump(mode="json")))
    return 1 if report.failed and not report.delivered else 0


if __name__ == "__main__":  # pragma: no cover
    configure_logging(settings.LOG_LEVEL)
    slot = parse_slot(sys.argv[1] if len(sys.argv) > 1 else None)
    if slot is None:
        print("usage: python -m app.scripts.run_sweep morning|evening", file=sys.stderr)
        sys.exit(2)
    print(f"[CRON] run_sweep {slot}: job started")
    try:
        code = asyncio.run(main(slot))
        print(f"[CRON] run_sweep {slot}: job completed")
    except Exception as e:
        print(f"[CRON] run_sweep {slot}: job failed: {e}")
        code = 1
    sys.exit(code)
