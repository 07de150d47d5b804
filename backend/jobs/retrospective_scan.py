"""
Scan recent material price movements for missed predictions.

Can be run:
- Manually: python backend/jobs/retrospective_scan.py
- Over an explicit window: python backend/jobs/retrospective_scan.py --hours 72
- Continuously: python backend/jobs/retrospective_scan.py --loop --interval 900
"""

import argparse
import sys
import time
from datetime import timedelta
from pathlib import Path

from loguru import logger

sys.path.insert(0, str(Path(__file__).parent.parent))

import newsimpact.log_config  # noqa: F401,E402  configures sinks on import
from newsimpact.db.session import init_db  # noqa: E402
from newsimpact.services.learning_engine import build_engine  # noqa: E402


def run_scan(engine, hours: int = None) -> dict:
    end = engine.clock.now()
    start = end - timedelta(hours=hours) if hours else None
    return engine.run_retrospective_pass(start=start, end=end)


def main() -> int:
    parser = argparse.ArgumentParser(description="Retrospective Movement Scan Job")
    parser.add_argument("--hours", type=int, default=None, help="Window to scan (default: configured lookback)")
    parser.add_argument("--loop", action="store_true", help="Run continuously")
    parser.add_argument("--interval", type=int, default=900, help="Loop interval in seconds (default: 900)")
    args = parser.parse_args()

    init_db()
    engine = build_engine()

    if not args.loop:
        result = run_scan(engine, args.hours)
        return 1 if result["failures"] else 0

    logger.info(f"Starting continuous retrospective scan (interval: {args.interval}s)...")
    while True:
        try:
            run_scan(engine, args.hours)
        except Exception as e:
            logger.exception(f"Unhandled error in retrospective scan loop: {e}")

        logger.info(f"Sleeping for {args.interval}s until next run...")
        time.sleep(args.interval)


if __name__ == "__main__":
    sys.exit(main())
