"""
Compile the daily report.

Refreshes time-based and market patterns and compiles the report for one date
(yesterday by default). Reports are write-once; re-running for a date that
already has one is a no-op.

Can be run:
- Manually: python backend/jobs/daily_report.py
- For a given date: python backend/jobs/daily_report.py --date 2024-03-01
"""

import argparse
import sys
from datetime import date, timedelta
from pathlib import Path

from loguru import logger

sys.path.insert(0, str(Path(__file__).parent.parent))

import newsimpact.log_config  # noqa: F401,E402  configures sinks on import
from newsimpact.db.session import init_db  # noqa: E402
from newsimpact.services.learning_engine import build_engine  # noqa: E402
from newsimpact.utils.errors import ReportAlreadyExistsError  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Daily Report Job")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Report date (YYYY-MM-DD), default yesterday")
    parser.add_argument("--skip-patterns", action="store_true", help="Do not refresh time-based and market patterns")
    args = parser.parse_args()

    init_db()
    engine = build_engine()
    report_date = args.date or (engine.clock.now() - timedelta(days=1)).date()

    if not args.skip_patterns:
        engine.analyze_time_based_patterns()
        engine.analyze_market_patterns()

    try:
        report = engine.compile_daily_report(report_date)
    except ReportAlreadyExistsError:
        logger.info(f"Daily report for {report_date} already exists, nothing to do")
        return 0

    logger.info(
        f"Report {report.report_date}: {report.total_predictions} predictions, "
        f"{len(report.insights)} insights, {len(report.recommendations)} recommendations"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
