"""
Run card risk pattern detection once.

Scans the fingerprint registry and usage ledger of the configured
store backend and stores the detected patterns. Intended to run on a
schedule (e.g. every 15 minutes).
"""

import argparse
import asyncio
from datetime import datetime, timedelta, UTC

from fraud_engine import FraudEngine
from fraud_engine.config import settings
from fraud_engine.utils.logger import get_logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Detect multi-user, velocity and card testing patterns",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--show-recent-hours",
        type=int,
        default=0,
        help="Also list patterns stored in the last N hours (0 disables)",
    )
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    get_logger("fraud_engine")

    engine = FraudEngine(settings=settings)
    await engine.store.initialize()
    try:
        patterns = await engine.run_pattern_detection()

        print("=" * 60)
        print("PATTERN DETECTION")
        print("=" * 60)
        print(f"  Store:     {engine.store.backend}")
        print(f"  Detected:  {len(patterns)}")
        for pattern in patterns:
            print(
                f"  - [{pattern.severity.value}] {pattern.pattern_type.value}: "
                f"{pattern.description} (confidence {pattern.confidence:.2f})"
            )

        if args.show_recent_hours > 0:
            since = datetime.now(UTC) - timedelta(hours=args.show_recent_hours)
            recent = await engine.list_patterns(since=since)
            print(f"\n  Stored in the last {args.show_recent_hours}h: {len(recent)}")
    finally:
        await engine.close()


if __name__ == "__main__":
    asyncio.run(main())
