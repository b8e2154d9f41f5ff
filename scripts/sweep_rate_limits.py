"""Delete stale rate-limit attempts.

Run periodically (cron / scheduled task) from repo root:
    python -m scripts.sweep_rate_limits --older-than-hours 24
"""

import argparse
import asyncio

from app.core.config import get_settings
from app.core.logging import configure_structlog
from app.db.base import close_db, get_session_factory, init_db
from app.services.rate_limiter import RateLimiter


async def main(older_than_hours: int) -> int:
    await init_db()
    try:
        async with get_session_factory()() as session:
            deleted = await RateLimiter().sweep(session, older_than_hours=older_than_hours)
            await session.commit()
    finally:
        await close_db()
    return deleted


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--older-than-hours", type=int, default=24)
    args = parser.parse_args()

    configure_structlog(json_logs=not get_settings().debug)
    deleted = asyncio.run(main(args.older_than_hours))
    print(f"Deleted {deleted} rate-limit attempt(s).")
