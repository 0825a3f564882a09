import argparse
from datetime import date
from pathlib import Path

from dotenv import load_dotenv

from leasedesk.api.ledger_store import LedgerError, LedgerStore, open_database
from leasedesk.api.settings import ConfigError, configure_logging


def get_repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Flag pending or sent invoices whose due date has passed")
    parser.add_argument("--today", type=date.fromisoformat, default=None, help="Override the run date (YYYY-MM-DD)")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    repo_root = get_repo_root()
    load_dotenv(repo_root / ".env")
    logger = configure_logging("mark_overdue_invoices", "mark_overdue_invoices", logs_dir=repo_root / "logs")

    run_date = args.today or date.today()
    try:
        updated = LedgerStore(open_database()).mark_overdue(run_date)
    except (ConfigError, LedgerError):
        logger.exception("Overdue sweep failed run_date=%s", run_date.isoformat())
        return 1

    logger.info("Overdue sweep complete run_date=%s invoices_updated=%s", run_date.isoformat(), updated)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
