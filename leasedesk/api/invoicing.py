from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal

from leasedesk.api.amounts import DEFAULT_RULES, BillingRules, resolve_amounts, to_decimal
from leasedesk.api.billing_periods import BillingPeriod, due_date, filter_new_periods, generate_periods
from leasedesk.api.documents import DocumentStorage, render_invoice_pdf, render_receipt_pdf
from leasedesk.api.ledger_store import Client, Invoice, InvoiceDraft, LedgerStore, Payment


logger = logging.getLogger(__name__)

NON_CODE_CHARS = re.compile(r"[^A-Z0-9]")


def client_code(client_name: str) -> str:
    words = client_name.upper().split()
    code = NON_CODE_CHARS.sub("", words[0][:10]) if words else ""
    return code or "CLIENT"


def generate_receipt_number(now: datetime | None = None) -> str:
    return f"RCP{(now or datetime.now()):%Y%m%d%H%M%S%f}"


class InvoiceGenerator:
    def __init__(self, store: LedgerStore, storage: DocumentStorage, rules: BillingRules = DEFAULT_RULES) -> None:
        self.store = store
        self.storage = storage
        self.rules = rules

    def contract_span(self, client: Client) -> tuple[date, date]:
        contract = self.store.latest_active_contract(client.id)
        if contract is not None:
            return contract.start_date, contract.end_date
        return client.start_date, client.end_date

    def preview_periods(
        self,
        client_id: str,
        up_to_date: date | None = None,
        include_future: bool = False,
    ) -> list[BillingPeriod]:
        client = self.store.get_client(client_id)
        start, end = self.contract_span(client)
        all_periods = generate_periods(start, end, client.cadence, client.custom_billing_months)
        return filter_new_periods(
            all_periods,
            self.store.existing_period_keys(client.id),
            up_to_date or date.today(),
            include_future,
        )

    def generate_for_client(
        self,
        client_id: str,
        up_to_date: date | None = None,
        include_future: bool = False,
    ) -> list[Invoice]:
        client = self.store.get_client(client_id)
        periods = self.preview_periods(client.id, up_to_date, include_future)
        if not periods:
            logger.info("No new billing periods for client=%s", client.client_name)
            return []

        amounts = resolve_amounts(client.rental_rate, client.vat_inclusive, self.rules.vat_rate)
        drafts = [
            InvoiceDraft(
                billing_period_start=period.start,
                billing_period_end=period.end,
                due_date=due_date(period.start, self.rules.due_date_offset_days),
                amount=amounts.net_amount,
                vat_amount=amounts.vat_amount,
                total_amount=amounts.total_amount,
            )
            for period in periods
        ]
        created = self.store.create_invoices(client.id, client_code(client.client_name), drafts)
        logger.info("Generated %s invoice(s) for client=%s", len(created), client.client_name)
        return [self.attach_invoice_pdf(invoice, client) for invoice in created]

    def create_manual_invoice(
        self,
        client_id: str,
        period_start: date,
        period_end: date,
        invoice_due_date: date,
        amount: Decimal | None = None,
    ) -> Invoice:
        client = self.store.get_client(client_id)
        period = BillingPeriod(start=period_start, end=period_end)
        rate = to_decimal(amount) if amount is not None else client.rental_rate
        if rate < 0:
            raise ValueError("Invoice amount must not be negative")

        amounts = resolve_amounts(rate, client.vat_inclusive, self.rules.vat_rate)
        draft = InvoiceDraft(
            billing_period_start=period.start,
            billing_period_end=period.end,
            due_date=invoice_due_date,
            amount=amounts.net_amount,
            vat_amount=amounts.vat_amount,
            total_amount=amounts.total_amount,
        )
        (invoice,) = self.store.create_invoices(client.id, client_code(client.client_name), [draft])
        logger.info("Created invoice %s for client=%s", invoice.invoice_number, client.client_name)
        return self.attach_invoice_pdf(invoice, client)

    def attach_invoice_pdf(self, invoice: Invoice, client: Client | None = None) -> Invoice:
        client = client or self.store.get_client(invoice.client_id)
        try:
            content = render_invoice_pdf(invoice, client, self.store.get_company(), date.today())
            path = self.storage.save("invoices", client_code(client.client_name), f"{invoice.invoice_number}.pdf", content)
        except OSError:
            logger.exception("Failed to store PDF for invoice %s", invoice.invoice_number)
            return invoice
        self.store.set_invoice_file(invoice.id, path)
        return self.store.get_invoice(invoice.id)

    def invoice_pdf(self, invoice_id: str) -> bytes:
        invoice = self.store.get_invoice(invoice_id)
        if not self.storage.exists(invoice.file_path):
            invoice = self.attach_invoice_pdf(invoice)
        if invoice.file_path is None:
            raise FileNotFoundError(f"No PDF stored for invoice {invoice.invoice_number}")
        return self.storage.read(invoice.file_path)

    def send_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.store.set_invoice_status(invoice_id, "sent", allowed_from=("pending", "overdue"))
        logger.info("Marked invoice %s as sent", invoice.invoice_number)
        return invoice

    def record_payment(
        self,
        invoice_id: str,
        amount: Decimal,
        payment_date: date,
        payment_method: str,
        reference_number: str | None = None,
        remarks: str | None = None,
    ) -> tuple[Payment, Invoice]:
        payment, invoice = self.store.record_payment(
            invoice_id,
            amount,
            payment_date,
            payment_method,
            reference_number=reference_number,
            remarks=remarks,
            receipt_number=generate_receipt_number(),
        )
        logger.info(
            "Recorded payment %s on invoice %s (status=%s)",
            payment.amount,
            invoice.invoice_number,
            invoice.status,
        )

        try:
            client = self.store.get_client(invoice.client_id)
            content = render_receipt_pdf(payment, invoice, client, self.store.get_company())
            path = self.storage.save("receipts", client_code(client.client_name), f"{payment.receipt_number}.pdf", content)
            self.store.set_payment_receipt(payment.id, path)
            payment = self.store.get_payment(payment.id)
        except Exception:
            logger.exception("Receipt generation failed for payment %s", payment.id)
        return payment, invoice

    def mark_overdue(self, today: date | None = None) -> int:
        count = self.store.mark_overdue(today or date.today())
        logger.info("Marked %s invoice(s) overdue", count)
        return count
