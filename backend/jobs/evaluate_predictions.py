"""
Evaluate due predictions against observed price movement.

Reconciles any evaluation whose rule/pattern update did not complete, then
scores every pending prediction whose deadline has passed and whose price
data is available.

Can be run:
- Manually: python backend/jobs/evaluate_predictions.py
- Continuously: python backend/jobs/evaluate_predictions.py --loop --interval 300
- Scheduled via APScheduler in the API process
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

from loguru import logger

sys.path.insert(0, str(Path(__file__).parent.parent))

import newsimpact.log_config  # noqa: F401,E402  configures sinks on import
from newsimpact.db.session import init_db  # noqa: E402
from newsimpact.services.learning_engine import build_engine  # noqa: E402

stop_event = threading.Event()


def run_evaluation(engine=None) -> dict:
    engine = engine or build_engine()
    return engine.run_evaluation_pass(cancel_event=stop_event)


def main() -> int:
    parser = argparse.ArgumentParser(description="Prediction Evaluation Job")
    parser.add_argument("--loop", action="store_true", help="Run continuously")
    parser.add_argument("--interval", type=int, default=300, help="Loop interval in seconds (default: 300)")
    args = parser.parse_args()

    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    signal.signal(signal.SIGINT, lambda *_: stop_event.set())

    init_db()
    engine = build_engine()

    if not args.loop:
        result = run_evaluation(engine)
        return 1 if result["failures"] else 0

    logger.info(f"Starting continuous evaluation (interval: {args.interval}s)...")
    while not stop_event.is_set():
        try:
            run_evaluation(engine)
        except Exception as e:
            logger.exception(f"Unhandled error in evaluation loop: {e}")
        stop_event.wait(args.interval)

    logger.info("Evaluation loop stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
