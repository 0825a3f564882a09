import argparse
import logging
from datetime import date
from pathlib import Path

from dotenv import load_dotenv

from client_csv import parse_client_csv
from leasedesk.api.billing_periods import due_date, parse_billing_date
from leasedesk.api.documents import DocumentStorage
from leasedesk.api.invoicing import InvoiceGenerator
from leasedesk.api.ledger_store import LedgerError, LedgerStore, open_database
from leasedesk.api.settings import ConfigError, configure_logging, get_documents_dir


def build_generator() -> InvoiceGenerator:
    return InvoiceGenerator(LedgerStore(open_database()), DocumentStorage(get_documents_dir()))


def parse_cli_date(value: str) -> date:
    try:
        parsed = parse_billing_date(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}") from exc
    if parsed is None:
        raise argparse.ArgumentTypeError("Date must not be empty")
    return parsed


def import_clients(store: LedgerStore, csv_path: Path, logger: logging.Logger) -> tuple[int, int]:
    created = updated = 0
    for row in parse_client_csv(csv_path):
        existing = store.find_client_by_name(row["client_name"])
        if existing is None:
            store.create_client(**row)
            created += 1
        else:
            store.update_client(existing.id, **{key: value for key, value in row.items() if key != "client_name"})
            updated += 1
    logger.info("Imported clients from %s created=%s updated=%s", csv_path, created, updated)
    return created, updated


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lease billing ledger: clients, invoices and payments")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create ledger tables if they do not exist")

    import_cmd = commands.add_parser("import-clients", help="Create or update clients from a CSV roster")
    import_cmd.add_argument("csv_path", type=Path)

    for name, help_text in (
        ("preview", "List billing periods that would be invoiced"),
        ("generate", "Generate invoices for new billing periods"),
    ):
        cmd = commands.add_parser(name, help=help_text)
        cmd.add_argument("client_id")
        cmd.add_argument("--up-to", type=parse_cli_date, default=None, help="Last period start date to bill (default today)")
        cmd.add_argument("--include-future", action="store_true", help="Also bill periods that have not started yet")

    overdue_cmd = commands.add_parser("mark-overdue", help="Flag unpaid invoices past their due date")
    overdue_cmd.add_argument("--today", type=parse_cli_date, default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logger = configure_logging("leasedesk_cli", "leasedesk_cli")
    args = build_parser().parse_args(argv)

    try:
        if args.command == "init-db":
            LedgerStore(open_database())
            logger.info("Ledger schema ready")
            return 0

        if args.command == "import-clients":
            import_clients(LedgerStore(open_database()), args.csv_path, logger)
            return 0

        generator = build_generator()
        if args.command == "preview":
            periods = generator.preview_periods(args.client_id, args.up_to, args.include_future)
            for period in periods:
                print(f"{period.start.isoformat()}  {period.end.isoformat()}  due {due_date(period.start).isoformat()}")
            logger.info("Previewed %s period(s) for client=%s", len(periods), args.client_id)
            return 0

        if args.command == "generate":
            invoices = generator.generate_for_client(args.client_id, args.up_to, args.include_future)
            for invoice in invoices:
                print(f"{invoice.invoice_number}  {invoice.billing_period_start.isoformat()}  {invoice.total_amount:.2f}")
            return 0

        if args.command == "mark-overdue":
            generator.mark_overdue(args.today)
            return 0
    except ConfigError:
        logger.exception("Configuration error")
        return 2
    except (LedgerError, ValueError, OSError):
        logger.exception("Command %s failed", args.command)
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
