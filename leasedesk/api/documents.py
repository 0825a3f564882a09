from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from io import BytesIO
from pathlib import Path

from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas

from leasedesk.api.ledger_store import Client, Company, Invoice, Payment


CURRENCY = "PHP"
SAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]")


def _money(value: Decimal) -> str:
    return f"{CURRENCY} {value:,.2f}"


def _long_date(value: date) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def _draw_party(pdf: canvas.Canvas, x: float, y: float, title: str, lines: list[str | None]) -> None:
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(x, y, title)
    pdf.setFont("Helvetica", 9)
    offset = 0.5 * cm
    for line in lines:
        if line:
            pdf.drawString(x, y - offset, line[:60])
            offset += 0.45 * cm


def _finish(pdf: canvas.Canvas, buffer: BytesIO) -> bytes:
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def render_invoice_pdf(invoice: Invoice, client: Client, company: Company | None, issued_on: date) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=LETTER)
    width, height = LETTER
    provider = company or Company(name="", address="", email=None, mobile=None, telephone=None)

    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawString(2 * cm, height - 2.5 * cm, provider.name or "INVOICE")
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawRightString(width - 2 * cm, height - 2.5 * cm, "INVOICE")

    pdf.setFont("Helvetica", 10)
    pdf.drawRightString(width - 2 * cm, height - 3.2 * cm, f"No. {invoice.invoice_number}")
    pdf.drawRightString(width - 2 * cm, height - 3.7 * cm, f"Date: {_long_date(issued_on)}")
    pdf.drawRightString(width - 2 * cm, height - 4.2 * cm, f"Due: {_long_date(invoice.due_date)}")

    top = height - 5.5 * cm
    _draw_party(pdf, 2 * cm, top, "From", [provider.name, provider.address, provider.email, provider.mobile, provider.telephone])
    _draw_party(pdf, 11 * cm, top, "Bill To", [client.client_name, client.address, client.email, client.mobile])

    table_y = height - 10 * cm
    pdf.setFont("Helvetica-Bold", 10)
    pdf.drawString(2 * cm, table_y, "Description")
    pdf.drawRightString(width - 2 * cm, table_y, "Amount")
    pdf.line(2 * cm, table_y - 0.3 * cm, width - 2 * cm, table_y - 0.3 * cm)

    pdf.setFont("Helvetica", 10)
    period = f"{_long_date(invoice.billing_period_start)} - {_long_date(invoice.billing_period_end)}"
    pdf.drawString(2 * cm, table_y - 0.9 * cm, f"Lease rental ({client.billing_terms})")
    pdf.drawString(2 * cm, table_y - 1.4 * cm, f"Billing period: {period}")
    pdf.drawRightString(width - 2 * cm, table_y - 0.9 * cm, _money(invoice.amount))

    totals_y = table_y - 3 * cm
    vat_label = "VAT 12% (inclusive)" if client.vat_inclusive else "VAT 12%"
    pdf.drawString(11 * cm, totals_y, "Net amount")
    pdf.drawRightString(width - 2 * cm, totals_y, _money(invoice.amount))
    pdf.drawString(11 * cm, totals_y - 0.5 * cm, vat_label)
    pdf.drawRightString(width - 2 * cm, totals_y - 0.5 * cm, _money(invoice.vat_amount))
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(11 * cm, totals_y - 1.2 * cm, "TOTAL DUE")
    pdf.drawRightString(width - 2 * cm, totals_y - 1.2 * cm, _money(invoice.total_amount))

    pdf.setFont("Helvetica", 8)
    pdf.drawString(2 * cm, 2 * cm, "Please settle this invoice on or before the due date.")
    return _finish(pdf, buffer)


def render_receipt_pdf(payment: Payment, invoice: Invoice, client: Client, company: Company | None) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=LETTER)
    width, height = LETTER
    provider = company or Company(name="", address="", email=None, mobile=None, telephone=None)

    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawString(2 * cm, height - 2.5 * cm, provider.name or "RECEIPT")
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawRightString(width - 2 * cm, height - 2.5 * cm, "OFFICIAL RECEIPT")

    pdf.setFont("Helvetica", 10)
    pdf.drawRightString(width - 2 * cm, height - 3.2 * cm, f"No. {payment.receipt_number or ''}")
    pdf.drawRightString(width - 2 * cm, height - 3.7 * cm, f"Date: {_long_date(payment.payment_date)}")

    _draw_party(pdf, 2 * cm, height - 5.5 * cm, "Received From", [client.client_name, client.address])

    rows = [
        ("Invoice", invoice.invoice_number),
        ("Invoice total", _money(invoice.total_amount)),
        ("Amount received", _money(payment.amount)),
        ("Payment method", payment.payment_method),
        ("Reference", payment.reference_number or "-"),
        ("Remaining balance", _money(invoice.balance)),
    ]
    y = height - 9 * cm
    for label, value in rows:
        pdf.setFont("Helvetica-Bold", 10)
        pdf.drawString(2 * cm, y, label)
        pdf.setFont("Helvetica", 10)
        pdf.drawRightString(width - 2 * cm, y, value)
        y -= 0.6 * cm

    if payment.remarks:
        pdf.setFont("Helvetica-Oblique", 9)
        pdf.drawString(2 * cm, y - 0.4 * cm, payment.remarks[:100])
    return _finish(pdf, buffer)


class DocumentStorage:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def save(self, kind: str, folder: str, filename: str, content: bytes) -> str:
        kind, folder, filename = (SAFE_SEGMENT.sub("", part) for part in (kind, folder, filename))
        target_dir = self.root / kind / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / filename).write_bytes(content)
        return f"/{kind}/{folder}/{filename}"

    def resolve(self, public_path: str) -> Path:
        relative = Path(public_path.lstrip("/"))
        if ".." in relative.parts:
            raise ValueError(f"Invalid document path: {public_path}")
        return self.root / relative

    def read(self, public_path: str) -> bytes:
        return self.resolve(public_path).read_bytes()

    def exists(self, public_path: str | None) -> bool:
        return bool(public_path) and self.resolve(public_path).is_file()
