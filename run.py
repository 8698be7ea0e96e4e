#!/usr/bin/env python3
"""
Repayment Engine Daily Jobs Entry Point

Runs the nightly arrears sweep, interest accrual and portfolio
classification against the configured database.
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from repayment_engine.config import get_config
from repayment_engine.engine import RepaymentEngine
from repayment_engine.logging_config import setup_logging_from_config


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run repayment engine daily jobs")
    parser.add_argument(
        "--as-of",
        type=date.fromisoformat,
        default=None,
        help="Business date YYYY-MM-DD (default: today)"
    )
    parser.add_argument(
        "--job",
        choices=["all", "sweep", "accrual", "classify"],
        default="all",
        help="Job to run (default: all, in order sweep, accrual, classify)"
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override REPAYMENT_DATABASE_URL"
    )
    parser.add_argument(
        "--currency",
        default=None,
        help="Currency of the portfolio snapshot printed after classification "
             "(default: REPAYMENT_DEFAULT_CURRENCY)"
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = get_config()
    if args.database_url:
        config.database_url = args.database_url
    logger = setup_logging_from_config(config)

    engine = RepaymentEngine(config=config)
    try:
        if args.job == "all":
            reports = engine.run_daily_jobs(args.as_of)
        elif args.job == "sweep":
            reports = {"arrears_sweep": engine.run_arrears_sweep(args.as_of)}
        elif args.job == "accrual":
            reports = {"interest_accrual": engine.run_interest_accrual(args.as_of)}
        else:
            reports = {"classification": engine.classify_portfolio(args.as_of)}

        summary = {name: {k: v for k, v in report.to_dict().items() if k != "results"}
                   for name, report in reports.items()}
        if "classification" in reports:
            snapshot = engine.portfolio_snapshot(reports["classification"], args.currency)
            summary["portfolio"] = snapshot.to_dict()
        print(json.dumps(summary, indent=2))

        failed = sum(report.loans_failed for report in reports.values())
        return 1 if failed else 0
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
