"""
Purge expired usage records, assessments and patterns.

Applies the retention windows from settings (USAGE_RETENTION_DAYS,
ASSESSMENT_RETENTION_DAYS, PATTERN_RETENTION_DAYS). Intended to run as
a daily cron/job against the configured store backend.
"""

import asyncio

from fraud_engine import FraudEngine
from fraud_engine.config import settings
from fraud_engine.utils.logger import get_logger


async def purge_expired() -> dict[str, int]:
    engine = FraudEngine(settings=settings)
    await engine.store.initialize()
    try:
        return await engine.purge_expired()
    finally:
        await engine.close()


if __name__ == "__main__":
    get_logger("fraud_engine")
    removed = asyncio.run(purge_expired())
    print(
        f"Purged {removed['usage']} usage records, "
        f"{removed['assessments']} assessments, "
        f"{removed['patterns']} patterns."
    )
