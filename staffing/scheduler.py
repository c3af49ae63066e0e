"""Daily trigger: top up every active template to its generation horizon.

Run from cron (or any external scheduler) once a day::

    staffing-generate --horizon 14
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
from typing import List, Optional

from staffing import database
from staffing.generator.api import get_shifts_to_generate, run_scheduled_generation
from staffing.validation import remove_duplicate_shifts


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate shift instances for every active template up to its horizon."
    )
    parser.add_argument(
        "--horizon",
        type=int,
        default=None,
        help="Days ahead to generate. Defaults to each template's own horizon.",
    )
    parser.add_argument(
        "--today",
        help="ISO date (YYYY-MM-DD) to treat as today. Defaults to the current date.",
    )
    parser.add_argument(
        "--dedupe",
        action="store_true",
        help="Run the duplicate sweep after generating.",
    )
    parser.add_argument(
        "--report-missing",
        action="store_true",
        help="Only report templates with missing dates; do not generate.",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("STAFFING_LOG_LEVEL", "INFO"),
        help="Logging level (default INFO, or STAFFING_LOG_LEVEL).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    today = None
    if args.today:
        try:
            today = datetime.date.fromisoformat(args.today)
        except ValueError as exc:
            raise SystemExit(f"Invalid --today value: {exc}") from exc

    database.init_database()
    if args.report_missing:
        report = get_shifts_to_generate(database.SessionLocal, args.horizon or 30, today=today)
        payload = [
            {"template_id": item["template"].id, "name": item["template"].name, "missing_dates": item["missing_dates"]}
            for item in report
        ]
        print(json.dumps(payload, indent=2))
        return 0

    summary = run_scheduled_generation(database.SessionLocal, horizon_days=args.horizon, today=today)
    if args.dedupe:
        summary["duplicates_removed"] = remove_duplicate_shifts(database.SessionLocal)
    print(json.dumps(summary, indent=2))
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
