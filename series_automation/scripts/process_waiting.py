"""
Backstop Sweep.

Run this script from cron (or any interval scheduler) to resume waiting
Progress rows whose 'wait_until' has passed: duration and date waits, and
blocks scheduled for a retry.

Usage:
    python -m series_automation.scripts.process_waiting [--series-limit N] [--waiting-limit N]
"""

import argparse
import logging

from series_automation.app.dependencies import (
    get_progress_repository,
    get_runtime_service,
    get_series_engine,
    get_series_repository,
)


def process_waiting(series_limit=None, waiting_limit=None):
    runtime = get_runtime_service(
        series_repo=get_series_repository(),
        progress_repo=get_progress_repository(),
        engine=get_series_engine(),
    )
    return runtime.process_waiting_progress(series_limit, waiting_limit)


def main():
    parser = argparse.ArgumentParser(description="Resume series progress whose wait has elapsed.")
    parser.add_argument("--series-limit", type=int, default=None)
    parser.add_argument("--waiting-limit", type=int, default=None, help="Due rows per series")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    result = process_waiting(args.series_limit, args.waiting_limit)
    if result.reason:
        print(f"Sweep skipped: {result.reason}")
    else:
        print(f"Processed {result.processed} of {result.scanned} due progress rows.")


if __name__ == "__main__":
    main()
