"""Purge idempotency records older than the retention window.

Run periodically (e.g. daily cron). Only the database ledger needs this;
the Redis ledger expires its keys on their own.

    python -m scripts.purge_webhook_events [--days N]
"""

import argparse
import asyncio
from datetime import UTC, datetime, timedelta

from app.core.config import get_settings
from app.db.base import close_db, get_session_factory, init_db
from app.services.idempotency_ledger import DatabaseIdempotencyLedger


async def purge(retention_days: int) -> int:
    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    await init_db()
    try:
        ledger = DatabaseIdempotencyLedger(get_session_factory())
        return await ledger.purge_expired(cutoff)
    finally:
        await close_db()


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--days", type=int, default=settings.idempotency_retention_days)
    args = parser.parse_args()

    if settings.idempotency_backend.lower() != "database":
        print(f"Idempotency backend is '{settings.idempotency_backend}'; nothing to purge.")
        return

    removed = asyncio.run(purge(args.days))
    print(f"Removed {removed} webhook event record(s) older than {args.days} day(s).")


if __name__ == "__main__":
    main()
