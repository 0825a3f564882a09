import os
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Iterator

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from leasedesk.api.billing_periods import BillingCadence, BillingPeriod, UnsupportedCadenceError, add_months_clamped, at_noon, due_date
from leasedesk.api.documents import DocumentStorage
from leasedesk.api.invoicing import InvoiceGenerator
from leasedesk.api.ledger_store import (
    Client,
    Company,
    Contract,
    Invoice,
    LedgerConflictError,
    LedgerStore,
    NotFoundError,
    Payment,
    PaymentRejectedError,
    open_database,
)
from leasedesk.api.settings import ConfigError, configure_logging, get_documents_dir, get_ledger_backend

load_dotenv()

logger = configure_logging("leasedesk_api", "leasedesk_api")

_ledger_lock = Lock()
_ledger: LedgerStore | None = None


def get_store() -> LedgerStore:
    global _ledger
    with _ledger_lock:
        if _ledger is None:
            _ledger = LedgerStore(open_database())
        return _ledger


def get_report_store() -> LedgerStore:
    if get_ledger_backend() == "mssql":
        return LedgerStore(open_database(read_only=True), init_schema=False)
    return get_store()


def get_generator() -> InvoiceGenerator:
    return InvoiceGenerator(get_store(), DocumentStorage(get_documents_dir()))


@contextmanager
def ledger_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerConflictError as exc:
        logger.warning("Ledger conflict: %s", exc)
        raise HTTPException(status_code=409, detail="Record conflicts with an existing entry") from exc
    except (PaymentRejectedError, UnsupportedCadenceError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CompanyIn(ApiModel):
    name: str = Field(min_length=1)
    address: str = ""
    email: str | None = None
    mobile: str | None = None
    telephone: str | None = None


class ClientIn(ApiModel):
    client_name: str = Field(min_length=1)
    address: str = ""
    email: str | None = None
    mobile: str | None = None
    rental_rate: Decimal = Field(ge=0)
    vat_inclusive: bool = False
    billing_terms: str = "Monthly"
    custom_billing_months: int | None = Field(default=None, gt=0)
    rental_terms_months: int = Field(default=12, gt=0)
    start_date: date
    end_date: date | None = None
    lease_inclusions: str | None = None


class ClientUpdate(ApiModel):
    client_name: str | None = Field(default=None, min_length=1)
    address: str | None = None
    email: str | None = None
    mobile: str | None = None
    rental_rate: Decimal | None = Field(default=None, ge=0)
    vat_inclusive: bool | None = None
    billing_terms: str | None = None
    custom_billing_months: int | None = Field(default=None, gt=0)
    rental_terms_months: int | None = Field(default=None, gt=0)
    start_date: date | None = None
    end_date: date | None = None
    lease_inclusions: str | None = None


class ContractIn(ApiModel):
    client_id: str
    start_date: date
    end_date: date


class ContractUpdate(ApiModel):
    status: str | None = None
    mark_as_sent: bool = False
    mark_as_signed: bool = False


class InvoiceIn(ApiModel):
    client_id: str
    billing_period_start: date
    billing_period_end: date
    due_date: date | None = None
    amount: Decimal | None = Field(default=None, ge=0)


class GenerateIn(ApiModel):
    client_id: str
    up_to_date: date | None = None
    include_future: bool = False


class PaymentIn(ApiModel):
    invoice_id: str
    amount: Decimal = Field(gt=0)
    payment_date: date
    payment_method: str = Field(min_length=1)
    reference_number: str | None = None
    remarks: str | None = None


def company_to_dict(company: Company | None) -> dict[str, Any]:
    if company is None:
        return {}
    return {
        "name": company.name,
        "address": company.address,
        "email": company.email,
        "mobile": company.mobile,
        "telephone": company.telephone,
    }


def client_to_dict(client: Client) -> dict[str, Any]:
    return {
        "id": client.id,
        "clientName": client.client_name,
        "address": client.address,
        "email": client.email,
        "mobile": client.mobile,
        "rentalRate": float(client.rental_rate),
        "vatInclusive": client.vat_inclusive,
        "billingTerms": client.billing_terms,
        "customBillingMonths": client.custom_billing_months,
        "rentalTermsMonths": client.rental_terms_months,
        "startDate": client.start_date.isoformat(),
        "endDate": client.end_date.isoformat(),
        "leaseInclusions": client.lease_inclusions,
        "createdAt": client.created_at,
    }


def contract_to_dict(contract: Contract) -> dict[str, Any]:
    return {
        "id": contract.id,
        "clientId": contract.client_id,
        "contractNumber": contract.contract_number,
        "status": contract.status,
        "startDate": contract.start_date.isoformat(),
        "endDate": contract.end_date.isoformat(),
        "sentAt": contract.sent_at,
        "signedAt": contract.signed_at,
        "createdAt": contract.created_at,
    }


def invoice_to_dict(invoice: Invoice) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "clientId": invoice.client_id,
        "invoiceNumber": invoice.invoice_number,
        "billingPeriodStart": invoice.billing_period_start.isoformat(),
        "billingPeriodEnd": invoice.billing_period_end.isoformat(),
        "dueDate": invoice.due_date.isoformat(),
        "amount": float(invoice.amount),
        "vatAmount": float(invoice.vat_amount),
        "totalAmount": float(invoice.total_amount),
        "status": invoice.status,
        "filePath": invoice.file_path,
        "totalPaid": float(invoice.total_paid),
        "balance": float(invoice.balance),
        "createdAt": invoice.created_at,
    }


def payment_to_dict(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "invoiceId": payment.invoice_id,
        "clientId": payment.client_id,
        "amount": float(payment.amount),
        "paymentDate": payment.payment_date.isoformat(),
        "paymentMethod": payment.payment_method,
        "referenceNumber": payment.reference_number,
        "remarks": payment.remarks,
        "receiptNumber": payment.receipt_number,
        "receiptPath": payment.receipt_path,
        "createdAt": payment.created_at,
    }


def period_to_dict(period: BillingPeriod) -> dict[str, Any]:
    return {
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        "dueDate": due_date(period.start).isoformat(),
    }


def require_cadence_months(billing_terms: str, custom_months: int | None) -> None:
    if BillingCadence.from_label(billing_terms) is BillingCadence.CUSTOM and custom_months is None:
        raise HTTPException(
            status_code=400,
            detail=f"Billing terms {billing_terms!r} require customBillingMonths",
        )


def pdf_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


app = FastAPI(title="LeaseDesk Billing API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def auth_middleware(request: Request, call_next: Callable[..., Any]) -> JSONResponse:
    if request.url.path.startswith("/api"):
        auth_token = os.getenv("API_AUTH_TOKEN", "").strip()
        if auth_token:
            provided = request.headers.get("X-Auth-Token", "") or request.query_params.get("token", "")
            if provided != auth_token:
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
    return await call_next(request)


@app.get("/api/health")
def get_health() -> dict[str, Any]:
    db_connected = False
    backend = None
    try:
        backend = get_ledger_backend()
        db_connected = get_store().ping()
    except ConfigError:
        logger.exception("Ledger configuration error")
    except Exception:
        logger.exception("Health check DB failure")

    return {
        "serverTime": datetime.now().isoformat(),
        "dbConnected": db_connected,
        "backend": backend,
    }


@app.get("/api/company")
def get_company() -> dict[str, Any]:
    return company_to_dict(get_store().get_company())


@app.put("/api/company")
def put_company(body: CompanyIn) -> dict[str, Any]:
    company = get_store().save_company(Company(**body.model_dump()))
    logger.info("Company settings updated name=%s", company.name)
    return company_to_dict(company)


@app.get("/api/clients")
def list_clients() -> dict[str, Any]:
    return {"clients": [client_to_dict(client) for client in get_store().list_clients()]}


@app.post("/api/clients", status_code=201)
def create_client(body: ClientIn) -> dict[str, Any]:
    require_cadence_months(body.billing_terms, body.custom_billing_months)
    fields = body.model_dump()
    if fields["end_date"] is None:
        fields["end_date"] = add_months_clamped(at_noon(body.start_date), body.rental_terms_months).date()
    with ledger_errors():
        client = get_store().create_client(**fields)
    logger.info("Created client %s (%s)", client.client_name, client.id)
    return client_to_dict(client)


@app.get("/api/clients/{client_id}")
def get_client(client_id: str) -> dict[str, Any]:
    with ledger_errors():
        store = get_store()
        client = store.get_client(client_id)
        contracts = store.list_contracts(client_id=client_id)
        invoices = store.list_invoices(client_id=client_id)
    return {
        **client_to_dict(client),
        "contracts": [contract_to_dict(contract) for contract in contracts],
        "invoices": [invoice_to_dict(invoice) for invoice in invoices],
    }


@app.put("/api/clients/{client_id}")
def update_client(client_id: str, body: ClientUpdate) -> dict[str, Any]:
    changes = body.model_dump(exclude_unset=True)
    with ledger_errors():
        store = get_store()
        current = store.get_client(client_id)
        require_cadence_months(
            changes.get("billing_terms", current.billing_terms),
            changes.get("custom_billing_months", current.custom_billing_months),
        )
        client = store.update_client(client_id, **changes)
    return client_to_dict(client)


@app.delete("/api/clients/{client_id}")
def delete_client(client_id: str) -> dict[str, Any]:
    with ledger_errors():
        get_store().delete_client(client_id)
    logger.info("Deleted client %s", client_id)
    return {"deleted": client_id}


@app.get("/api/contracts")
def list_contracts(client_id: str | None = None, status: str | None = None) -> dict[str, Any]:
    contracts = get_store().list_contracts(client_id=client_id, status=status)
    return {"contracts": [contract_to_dict(contract) for contract in contracts]}


@app.post("/api/contracts", status_code=201)
def create_contract(body: ContractIn) -> dict[str, Any]:
    with ledger_errors():
        contract = get_store().create_contract(body.client_id, body.start_date, body.end_date)
    logger.info("Created contract %s for client %s", contract.contract_number, contract.client_id)
    return contract_to_dict(contract)


@app.get("/api/contracts/{contract_id}")
def get_contract(contract_id: str) -> dict[str, Any]:
    with ledger_errors():
        return contract_to_dict(get_store().get_contract(contract_id))


@app.put("/api/contracts/{contract_id}")
def update_contract(contract_id: str, body: ContractUpdate) -> dict[str, Any]:
    with ledger_errors():
        contract = get_store().update_contract(
            contract_id,
            status=body.status,
            mark_sent=body.mark_as_sent,
            mark_signed=body.mark_as_signed,
        )
    return contract_to_dict(contract)


@app.get("/api/invoices")
def list_invoices(client_id: str | None = None, status: str | None = None) -> dict[str, Any]:
    invoices = get_store().list_invoices(client_id=client_id, status=status)
    return {"invoices": [invoice_to_dict(invoice) for invoice in invoices]}


@app.post("/api/invoices", status_code=201)
def create_invoice(body: InvoiceIn) -> dict[str, Any]:
    with ledger_errors():
        invoice = get_generator().create_manual_invoice(
            body.client_id,
            body.billing_period_start,
            body.billing_period_end,
            body.due_date or due_date(body.billing_period_start),
            amount=body.amount,
        )
    return invoice_to_dict(invoice)


@app.post("/api/invoices/preview")
def preview_invoices(body: GenerateIn) -> dict[str, Any]:
    with ledger_errors():
        periods = get_generator().preview_periods(body.client_id, body.up_to_date, body.include_future)
    return {"periods": [period_to_dict(period) for period in periods]}


@app.post("/api/invoices/generate")
def generate_invoices(body: GenerateIn) -> dict[str, Any]:
    with ledger_errors():
        invoices = get_generator().generate_for_client(body.client_id, body.up_to_date, body.include_future)
    if not invoices:
        return {"message": "No new billing periods to generate invoices for", "invoices": []}
    return {
        "message": f"Generated {len(invoices)} invoice(s)",
        "invoices": [invoice_to_dict(invoice) for invoice in invoices],
    }


@app.post("/api/invoices/mark-overdue")
def mark_overdue_invoices() -> dict[str, Any]:
    return {"updated": get_generator().mark_overdue()}


@app.get("/api/invoices/{invoice_id}")
def get_invoice(invoice_id: str) -> dict[str, Any]:
    with ledger_errors():
        store = get_store()
        invoice = store.get_invoice(invoice_id)
        payments = store.list_payments(invoice_id=invoice_id)
    return {**invoice_to_dict(invoice), "payments": [payment_to_dict(payment) for payment in payments]}


@app.post("/api/invoices/{invoice_id}/send")
def send_invoice(invoice_id: str) -> dict[str, Any]:
    with ledger_errors():
        return invoice_to_dict(get_generator().send_invoice(invoice_id))


@app.get("/api/invoices/{invoice_id}/download")
def download_invoice(invoice_id: str) -> Response:
    with ledger_errors():
        generator = get_generator()
        invoice = generator.store.get_invoice(invoice_id)
        try:
            content = generator.invoice_pdf(invoice_id)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
    return pdf_response(content, f"{invoice.invoice_number}.pdf")


@app.get("/api/payments")
def list_payments(client_id: str | None = None, invoice_id: str | None = None) -> dict[str, Any]:
    payments = get_store().list_payments(client_id=client_id, invoice_id=invoice_id)
    return {"payments": [payment_to_dict(payment) for payment in payments]}


@app.post("/api/payments", status_code=201)
def create_payment(body: PaymentIn) -> dict[str, Any]:
    with ledger_errors():
        payment, invoice = get_generator().record_payment(
            body.invoice_id,
            body.amount,
            body.payment_date,
            body.payment_method,
            reference_number=body.reference_number,
            remarks=body.remarks,
        )
    return {"payment": payment_to_dict(payment), "invoice": invoice_to_dict(invoice)}


@app.get("/api/payments/{payment_id}/receipt")
def download_receipt(payment_id: str) -> Response:
    with ledger_errors():
        generator = get_generator()
        payment = generator.store.get_payment(payment_id)
        if not generator.storage.exists(payment.receipt_path):
            raise HTTPException(status_code=404, detail="Receipt not available")
        content = generator.storage.read(payment.receipt_path)
    return pdf_response(content, f"{payment.receipt_number}.pdf")


@app.get("/api/reports/billing")
def get_billing_report() -> dict[str, Any]:
    return get_report_store().billing_report(date.today())


@app.get("/api/reports/revenue")
def get_revenue_report() -> dict[str, Any]:
    return get_report_store().revenue_report(date.today())


@app.get("/api/reports/renewals")
def get_renewals_report() -> dict[str, Any]:
    return get_report_store().renewals_report(date.today())
