"""CLI entry point for the automated billing run.

Invoked by the scheduler (cron or similar) once per business day.

Usage:
    python -m src.cli.billing_run
    python -m src.cli.billing_run --date 2024-07-01
    python -m src.cli.billing_run --strict   (only contracts due exactly today)

Exit Codes:
    0 - Success or partial success: report stored and sent
    1 - Failure: every billing attempt failed, a run already exists for the
        day, or an unexpected error occurred
"""

import argparse
import logging
import sys
from datetime import date

from dotenv import load_dotenv

from src.models.billing_run import BillingRunStatus
from src.services.errors import BillingRunConflict, DrawdownError

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run automated contract billing")
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Business date to bill (YYYY-MM-DD, default: today)",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Only bill contracts whose next run date is exactly the business date",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the billing run CLI.

    Returns:
        Exit code: 0 for success, 1 for failure
    """
    args = parse_args(argv)
    load_dotenv()

    try:
        # Importing the services package builds the engine from the settings
        from src.services.config import load_config

        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    from src.services import SessionLocal, init_db
    from src.services.billing_run_service import BillingRunService
    from src.services.logging import setup_server_logging

    setup_server_logging(config.log_file, level=config.log_level)
    if args.strict:
        config.billing_catch_up = False

    init_db()
    db = SessionLocal()
    try:
        report = BillingRunService(db, config=config).run(today=args.date, triggered_by="cli")
        return 1 if report.status == BillingRunStatus.FAILED else 0
    except BillingRunConflict as e:
        logger.warning("%s", e.message)
        return 1
    except DrawdownError as e:
        logger.error("Billing run failed: %s", e.message, exc_info=True)
        return 1
    except KeyboardInterrupt:
        logger.warning("Billing run interrupted by user")
        return 1
    except Exception as e:
        logger.error("Billing run aborted: %s", e, exc_info=True)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
