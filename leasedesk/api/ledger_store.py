from __future__ import annotations

import sqlite3
import uuid
from calendar import month_abbr
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterator

from leasedesk.api.amounts import outstanding_balance, to_decimal
from leasedesk.api.billing_periods import BillingCadence, to_calendar_date
from leasedesk.api.settings import (
    get_ledger_backend,
    get_sql_connection_string,
    get_sqlite_path,
)


INVOICE_STATUSES = ("pending", "sent", "paid", "overdue")
CONTRACT_STATUSES = ("draft", "active", "expired", "terminated")
COMPANY_ROW_ID = "default"


class LedgerError(Exception):
    """Base error for ledger persistence failures."""


class NotFoundError(LedgerError):
    """Raised when a record id does not exist."""


class LedgerConflictError(LedgerError):
    """Raised when a write violates a uniqueness constraint."""


class PaymentRejectedError(LedgerError):
    """Raised when a payment amount is not acceptable for the invoice."""


@dataclass(frozen=True)
class Database:
    dialect: str
    connect: Callable[[], Any]
    integrity_errors: tuple[type[BaseException], ...]
    driver_errors: tuple[type[BaseException], ...]


def sqlite_database(db_path: str | Path) -> Database:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    def connect() -> sqlite3.Connection:
        return sqlite3.connect(path)

    return Database(
        dialect="sqlite",
        connect=connect,
        integrity_errors=(sqlite3.IntegrityError,),
        driver_errors=(sqlite3.Error,),
    )


def mssql_database(connection_string: str) -> Database:
    import pyodbc  # needs the ODBC driver manager; only loaded for SQL Server deployments

    def connect() -> Any:
        return pyodbc.connect(connection_string, autocommit=False)

    return Database(
        dialect="mssql",
        connect=connect,
        integrity_errors=(pyodbc.IntegrityError,),
        driver_errors=(pyodbc.Error,),
    )


def open_database(read_only: bool = False) -> Database:
    if get_ledger_backend() == "mssql":
        return mssql_database(get_sql_connection_string(read_only=read_only))
    return sqlite_database(get_sqlite_path())


SQLITE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS company (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        email TEXT,
        mobile TEXT,
        telephone TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        client_name TEXT NOT NULL,
        address TEXT NOT NULL DEFAULT '',
        email TEXT,
        mobile TEXT,
        rental_rate TEXT NOT NULL,
        vat_inclusive INTEGER NOT NULL DEFAULT 0,
        billing_terms TEXT NOT NULL,
        custom_billing_months INTEGER,
        rental_terms_months INTEGER NOT NULL DEFAULT 12,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        lease_inclusions TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contracts (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        contract_number TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        sent_at TEXT,
        signed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL,
        invoice_number TEXT NOT NULL UNIQUE,
        billing_period_start TEXT NOT NULL,
        billing_period_end TEXT NOT NULL,
        due_date TEXT NOT NULL,
        amount TEXT NOT NULL,
        vat_amount TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        status TEXT NOT NULL,
        file_path TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(client_id, billing_period_start, billing_period_end)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        invoice_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        payment_date TEXT NOT NULL,
        payment_method TEXT NOT NULL,
        reference_number TEXT,
        remarks TEXT,
        receipt_number TEXT,
        receipt_path TEXT,
        created_at TEXT NOT NULL
    )
    """,
)

MSSQL_SCHEMA = (
    """
    IF OBJECT_ID(N'company', N'U') IS NULL
    CREATE TABLE company (
        id NVARCHAR(36) NOT NULL PRIMARY KEY,
        name NVARCHAR(200) NOT NULL,
        address NVARCHAR(500) NOT NULL DEFAULT '',
        email NVARCHAR(200) NULL,
        mobile NVARCHAR(50) NULL,
        telephone NVARCHAR(50) NULL,
        updated_at DATETIME2 NOT NULL
    )
    """,
    """
    IF OBJECT_ID(N'clients', N'U') IS NULL
    CREATE TABLE clients (
        id NVARCHAR(36) NOT NULL PRIMARY KEY,
        client_name NVARCHAR(200) NOT NULL,
        address NVARCHAR(500) NOT NULL DEFAULT '',
        email NVARCHAR(200) NULL,
        mobile NVARCHAR(50) NULL,
        rental_rate DECIMAL(18, 4) NOT NULL,
        vat_inclusive BIT NOT NULL DEFAULT 0,
        billing_terms NVARCHAR(50) NOT NULL,
        custom_billing_months INT NULL,
        rental_terms_months INT NOT NULL DEFAULT 12,
        start_date DATE NOT NULL,
        end_date DATE NOT NULL,
        lease_inclusions NVARCHAR(MAX) NULL,
        created_at DATETIME2 NOT NULL
    )
    """,
    """
    IF OBJECT_ID(N'contracts', N'U') IS NULL
    CREATE TABLE contracts (
        id NVARCHAR(36) NOT NULL PRIMARY KEY,
        client_id NVARCHAR(36) NOT NULL,
        contract_number NVARCHAR(40) NOT NULL UNIQUE,
        status NVARCHAR(20) NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE NOT NULL,
        sent_at DATETIME2 NULL,
        signed_at DATETIME2 NULL,
        created_at DATETIME2 NOT NULL
    )
    """,
    """
    IF OBJECT_ID(N'invoices', N'U') IS NULL
    CREATE TABLE invoices (
        id NVARCHAR(36) NOT NULL PRIMARY KEY,
        client_id NVARCHAR(36) NOT NULL,
        invoice_number NVARCHAR(40) NOT NULL UNIQUE,
        billing_period_start DATE NOT NULL,
        billing_period_end DATE NOT NULL,
        due_date DATE NOT NULL,
        amount DECIMAL(18, 4) NOT NULL,
        vat_amount DECIMAL(18, 4) NOT NULL,
        total_amount DECIMAL(18, 4) NOT NULL,
        status NVARCHAR(20) NOT NULL,
        file_path NVARCHAR(400) NULL,
        created_at DATETIME2 NOT NULL,
        CONSTRAINT UQ_invoices_client_period UNIQUE (client_id, billing_period_start, billing_period_end)
    )
    """,
    """
    IF OBJECT_ID(N'payments', N'U') IS NULL
    CREATE TABLE payments (
        id NVARCHAR(36) NOT NULL PRIMARY KEY,
        invoice_id NVARCHAR(36) NOT NULL,
        client_id NVARCHAR(36) NOT NULL,
        amount DECIMAL(18, 4) NOT NULL,
        payment_date DATE NOT NULL,
        payment_method NVARCHAR(50) NOT NULL,
        reference_number NVARCHAR(100) NULL,
        remarks NVARCHAR(MAX) NULL,
        receipt_number NVARCHAR(40) NULL,
        receipt_path NVARCHAR(400) NULL,
        created_at DATETIME2 NOT NULL
    )
    """,
)


@dataclass(frozen=True)
class Company:
    name: str
    address: str
    email: str | None
    mobile: str | None
    telephone: str | None


@dataclass(frozen=True)
class Client:
    id: str
    client_name: str
    address: str
    email: str | None
    mobile: str | None
    rental_rate: Decimal
    vat_inclusive: bool
    billing_terms: str
    custom_billing_months: int | None
    rental_terms_months: int
    start_date: date
    end_date: date
    lease_inclusions: str | None
    created_at: str

    @property
    def cadence(self) -> BillingCadence:
        return BillingCadence.from_label(self.billing_terms)


@dataclass(frozen=True)
class Contract:
    id: str
    client_id: str
    contract_number: str
    status: str
    start_date: date
    end_date: date
    sent_at: str | None
    signed_at: str | None
    created_at: str


@dataclass(frozen=True)
class Invoice:
    id: str
    client_id: str
    invoice_number: str
    billing_period_start: date
    billing_period_end: date
    due_date: date
    amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    status: str
    file_path: str | None
    created_at: str
    total_paid: Decimal = Decimal("0")

    @property
    def balance(self) -> Decimal:
        return self.total_amount - self.total_paid


@dataclass(frozen=True)
class InvoiceDraft:
    billing_period_start: date
    billing_period_end: date
    due_date: date
    amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class Payment:
    id: str
    invoice_id: str
    client_id: str
    amount: Decimal
    payment_date: date
    payment_method: str
    reference_number: str | None
    remarks: str | None
    receipt_number: str | None
    receipt_path: str | None
    created_at: str


CLIENT_COLUMNS = (
    "client_name",
    "address",
    "email",
    "mobile",
    "rental_rate",
    "vat_inclusive",
    "billing_terms",
    "custom_billing_months",
    "rental_terms_months",
    "start_date",
    "end_date",
    "lease_inclusions",
)
NULLABLE_CLIENT_COLUMNS = frozenset({"email", "mobile", "custom_billing_months", "lease_inclusions"})


def format_invoice_number(client_code: str, sequence: int) -> str:
    return f"INV-{client_code}-{sequence:04d}"


def format_contract_number(year: int, sequence: int) -> str:
    return f"VO-SA-{year}-{sequence:04d}"


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _as_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return to_calendar_date(value)
    return date.fromisoformat(str(value)[:10])


def _as_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return to_decimal(value)


def _as_timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    return str(value)


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _fetchall(conn: Any, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    cursor = conn.cursor()
    try:
        cursor.execute(sql, tuple(_to_db(p) for p in params))
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]
    finally:
        cursor.close()


def _fetchone(conn: Any, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
    rows = _fetchall(conn, sql, params)
    return rows[0] if rows else None


def _execute(conn: Any, sql: str, params: tuple[Any, ...] = ()) -> int:
    cursor = conn.cursor()
    try:
        cursor.execute(sql, tuple(_to_db(p) for p in params))
        return cursor.rowcount
    finally:
        cursor.close()


def _last_sequence(conn: Any, table: str, column: str, prefix: str) -> int:
    # Highest suffix in use, not a row count: deleted rows must not let numbers repeat.
    rows = _fetchall(conn, f"SELECT {column} AS number FROM {table} WHERE {column} LIKE ?", (f"{prefix}%",))
    suffixes = (str(row["number"])[len(prefix):] for row in rows)
    return max((int(suffix) for suffix in suffixes if suffix.isdigit()), default=0)


def _row_to_client(row: dict[str, Any]) -> Client:
    custom_months = row["custom_billing_months"]
    return Client(
        id=row["id"],
        client_name=row["client_name"],
        address=row["address"] or "",
        email=row["email"],
        mobile=row["mobile"],
        rental_rate=to_decimal(row["rental_rate"]),
        vat_inclusive=bool(row["vat_inclusive"]),
        billing_terms=row["billing_terms"],
        custom_billing_months=int(custom_months) if custom_months is not None else None,
        rental_terms_months=int(row["rental_terms_months"]),
        start_date=_as_date(row["start_date"]),
        end_date=_as_date(row["end_date"]),
        lease_inclusions=row["lease_inclusions"],
        created_at=_as_timestamp(row["created_at"]),
    )


def _row_to_contract(row: dict[str, Any]) -> Contract:
    return Contract(
        id=row["id"],
        client_id=row["client_id"],
        contract_number=row["contract_number"],
        status=row["status"],
        start_date=_as_date(row["start_date"]),
        end_date=_as_date(row["end_date"]),
        sent_at=_as_timestamp(row["sent_at"]),
        signed_at=_as_timestamp(row["signed_at"]),
        created_at=_as_timestamp(row["created_at"]),
    )


def _row_to_invoice(row: dict[str, Any], total_paid: Decimal = Decimal("0")) -> Invoice:
    return Invoice(
        id=row["id"],
        client_id=row["client_id"],
        invoice_number=row["invoice_number"],
        billing_period_start=_as_date(row["billing_period_start"]),
        billing_period_end=_as_date(row["billing_period_end"]),
        due_date=_as_date(row["due_date"]),
        amount=to_decimal(row["amount"]),
        vat_amount=to_decimal(row["vat_amount"]),
        total_amount=to_decimal(row["total_amount"]),
        status=row["status"],
        file_path=row["file_path"],
        created_at=_as_timestamp(row["created_at"]),
        total_paid=total_paid,
    )


def _row_to_payment(row: dict[str, Any]) -> Payment:
    return Payment(
        id=row["id"],
        invoice_id=row["invoice_id"],
        client_id=row["client_id"],
        amount=to_decimal(row["amount"]),
        payment_date=_as_date(row["payment_date"]),
        payment_method=row["payment_method"],
        reference_number=row["reference_number"],
        remarks=row["remarks"],
        receipt_number=row["receipt_number"],
        receipt_path=row["receipt_path"],
        created_at=_as_timestamp(row["created_at"]),
    )


class LedgerStore:
    def __init__(self, database: Database, init_schema: bool = True) -> None:
        self.database = database
        self._lock = Lock()
        if init_schema:
            self.init_schema()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            conn = self.database.connect()
        except self.database.driver_errors as exc:
            raise LedgerError(f"Cannot open ledger database: {exc}") from exc

        try:
            yield conn
            conn.commit()
        except self.database.integrity_errors as exc:
            conn.rollback()
            raise LedgerConflictError(str(exc)) from exc
        except self.database.driver_errors as exc:
            conn.rollback()
            raise LedgerError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        statements = MSSQL_SCHEMA if self.database.dialect == "mssql" else SQLITE_SCHEMA
        with self._lock, self._transaction() as conn:
            for statement in statements:
                _execute(conn, statement)

    def ping(self) -> bool:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT 1 AS ok")
        return bool(row and row["ok"] == 1)

    # Company

    def get_company(self) -> Company | None:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT name, address, email, mobile, telephone FROM company WHERE id = ?", (COMPANY_ROW_ID,))
        if row is None:
            return None
        return Company(
            name=row["name"],
            address=row["address"] or "",
            email=row["email"],
            mobile=row["mobile"],
            telephone=row["telephone"],
        )

    def save_company(self, company: Company) -> Company:
        values = (company.name, company.address, company.email, company.mobile, company.telephone, _now())
        with self._lock, self._transaction() as conn:
            updated = _execute(
                conn,
                """
                UPDATE company
                SET name = ?, address = ?, email = ?, mobile = ?, telephone = ?, updated_at = ?
                WHERE id = ?
                """,
                values + (COMPANY_ROW_ID,),
            )
            if updated == 0:
                _execute(
                    conn,
                    """
                    INSERT INTO company(id, name, address, email, mobile, telephone, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (COMPANY_ROW_ID,) + values,
                )
        return company

    # Clients

    def create_client(self, **fields: Any) -> Client:
        client_id = _new_id()
        values = [fields.get(column) for column in CLIENT_COLUMNS]
        placeholders = ", ".join("?" for _ in range(len(CLIENT_COLUMNS) + 2))
        with self._lock, self._transaction() as conn:
            _execute(
                conn,
                f"INSERT INTO clients(id, {', '.join(CLIENT_COLUMNS)}, created_at) VALUES ({placeholders})",
                (client_id, *values, _now()),
            )
        return self.get_client(client_id)

    def get_client(self, client_id: str) -> Client:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT * FROM clients WHERE id = ?", (client_id,))
        if row is None:
            raise NotFoundError(f"Client not found: {client_id}")
        return _row_to_client(row)

    def find_client_by_name(self, client_name: str) -> Client | None:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT * FROM clients WHERE client_name = ?", (client_name,))
        return _row_to_client(row) if row else None

    def list_clients(self) -> list[Client]:
        with self._transaction() as conn:
            rows = _fetchall(conn, "SELECT * FROM clients ORDER BY client_name ASC")
        return [_row_to_client(row) for row in rows]

    def update_client(self, client_id: str, **changes: Any) -> Client:
        unknown = set(changes) - set(CLIENT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown client fields: {', '.join(sorted(unknown))}")
        cleared = sorted(
            column for column, value in changes.items() if value is None and column not in NULLABLE_CLIENT_COLUMNS
        )
        if cleared:
            raise ValueError(f"Client fields cannot be empty: {', '.join(cleared)}")
        if not changes:
            return self.get_client(client_id)

        columns = sorted(changes)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._lock, self._transaction() as conn:
            updated = _execute(
                conn,
                f"UPDATE clients SET {assignments} WHERE id = ?",
                tuple(changes[column] for column in columns) + (client_id,),
            )
        if updated == 0:
            raise NotFoundError(f"Client not found: {client_id}")
        return self.get_client(client_id)

    def delete_client(self, client_id: str) -> None:
        with self._lock, self._transaction() as conn:
            _execute(conn, "DELETE FROM payments WHERE client_id = ?", (client_id,))
            _execute(conn, "DELETE FROM invoices WHERE client_id = ?", (client_id,))
            _execute(conn, "DELETE FROM contracts WHERE client_id = ?", (client_id,))
            deleted = _execute(conn, "DELETE FROM clients WHERE id = ?", (client_id,))
            if deleted == 0:
                raise NotFoundError(f"Client not found: {client_id}")

    # Contracts

    def create_contract(self, client_id: str, start_date: date, end_date: date, today: date | None = None) -> Contract:
        self.get_client(client_id)
        year = (today or date.today()).year
        contract_id = _new_id()
        with self._lock, self._transaction() as conn:
            sequence = _last_sequence(conn, "contracts", "contract_number", f"VO-SA-{year}-") + 1
            _execute(
                conn,
                """
                INSERT INTO contracts(id, client_id, contract_number, status, start_date, end_date, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (contract_id, client_id, format_contract_number(year, sequence), "draft", start_date, end_date, _now()),
            )
        return self.get_contract(contract_id)

    def get_contract(self, contract_id: str) -> Contract:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT * FROM contracts WHERE id = ?", (contract_id,))
        if row is None:
            raise NotFoundError(f"Contract not found: {contract_id}")
        return _row_to_contract(row)

    def list_contracts(self, client_id: str | None = None, status: str | None = None) -> list[Contract]:
        clauses, params = _filters(client_id=client_id, status=status)
        with self._transaction() as conn:
            rows = _fetchall(conn, f"SELECT * FROM contracts{clauses} ORDER BY start_date DESC, contract_number DESC", params)
        return [_row_to_contract(row) for row in rows]

    def latest_active_contract(self, client_id: str) -> Contract | None:
        contracts = self.list_contracts(client_id=client_id, status="active")
        return contracts[0] if contracts else None

    def update_contract(
        self,
        contract_id: str,
        status: str | None = None,
        mark_sent: bool = False,
        mark_signed: bool = False,
    ) -> Contract:
        changes: dict[str, Any] = {}
        if status is not None:
            if status not in CONTRACT_STATUSES:
                raise ValueError(f"Invalid contract status: {status}")
            changes["status"] = status
        if mark_sent:
            changes["sent_at"] = _now()
            changes["status"] = "active"
        if mark_signed:
            changes["signed_at"] = _now()
        if not changes:
            return self.get_contract(contract_id)

        columns = sorted(changes)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self._lock, self._transaction() as conn:
            updated = _execute(
                conn,
                f"UPDATE contracts SET {assignments} WHERE id = ?",
                tuple(changes[column] for column in columns) + (contract_id,),
            )
        if updated == 0:
            raise NotFoundError(f"Contract not found: {contract_id}")
        return self.get_contract(contract_id)

    # Invoices

    def existing_period_keys(self, client_id: str) -> set[tuple[date, date]]:
        with self._transaction() as conn:
            rows = _fetchall(
                conn,
                "SELECT billing_period_start, billing_period_end FROM invoices WHERE client_id = ?",
                (client_id,),
            )
        return {(_as_date(row["billing_period_start"]), _as_date(row["billing_period_end"])) for row in rows}

    def create_invoices(self, client_id: str, client_code: str, drafts: list[InvoiceDraft]) -> list[Invoice]:
        if not drafts:
            return []

        invoice_ids: list[str] = []
        with self._lock, self._transaction() as conn:
            sequence = _last_sequence(conn, "invoices", "invoice_number", f"INV-{client_code}-")
            for draft in drafts:
                sequence += 1
                invoice_id = _new_id()
                _execute(
                    conn,
                    """
                    INSERT INTO invoices(
                        id, client_id, invoice_number, billing_period_start, billing_period_end,
                        due_date, amount, vat_amount, total_amount, status, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        invoice_id,
                        client_id,
                        format_invoice_number(client_code, sequence),
                        draft.billing_period_start,
                        draft.billing_period_end,
                        draft.due_date,
                        draft.amount,
                        draft.vat_amount,
                        draft.total_amount,
                        "pending",
                        _now(),
                    ),
                )
                invoice_ids.append(invoice_id)
        return [self.get_invoice(invoice_id) for invoice_id in invoice_ids]

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT * FROM invoices WHERE id = ?", (invoice_id,))
            if row is None:
                raise NotFoundError(f"Invoice not found: {invoice_id}")
            payments = _fetchall(conn, "SELECT amount FROM payments WHERE invoice_id = ?", (invoice_id,))
        return _row_to_invoice(row, sum((to_decimal(p["amount"]) for p in payments), Decimal("0")))

    def list_invoices(self, client_id: str | None = None, status: str | None = None) -> list[Invoice]:
        clauses, params = _filters(client_id=client_id, status=status)
        with self._transaction() as conn:
            rows = _fetchall(conn, f"SELECT * FROM invoices{clauses} ORDER BY created_at DESC, invoice_number DESC", params)
            payment_rows = _fetchall(conn, "SELECT invoice_id, amount FROM payments")

        paid: dict[str, Decimal] = {}
        for payment in payment_rows:
            paid[payment["invoice_id"]] = paid.get(payment["invoice_id"], Decimal("0")) + to_decimal(payment["amount"])
        return [_row_to_invoice(row, paid.get(row["id"], Decimal("0"))) for row in rows]

    def set_invoice_file(self, invoice_id: str, file_path: str) -> None:
        with self._lock, self._transaction() as conn:
            _execute(conn, "UPDATE invoices SET file_path = ? WHERE id = ?", (file_path, invoice_id))

    def set_invoice_status(self, invoice_id: str, status: str, allowed_from: tuple[str, ...] | None = None) -> Invoice:
        if status not in INVOICE_STATUSES:
            raise ValueError(f"Invalid invoice status: {status}")
        invoice = self.get_invoice(invoice_id)
        if allowed_from is not None and invoice.status not in allowed_from:
            raise ValueError(f"Invoice {invoice.invoice_number} is {invoice.status}; expected one of {', '.join(allowed_from)}")
        with self._lock, self._transaction() as conn:
            _execute(conn, "UPDATE invoices SET status = ? WHERE id = ?", (status, invoice_id))
        return self.get_invoice(invoice_id)

    def mark_overdue(self, today: date) -> int:
        with self._lock, self._transaction() as conn:
            return _execute(
                conn,
                "UPDATE invoices SET status = 'overdue' WHERE status IN ('pending', 'sent') AND due_date < ?",
                (today,),
            )

    # Payments

    def record_payment(
        self,
        invoice_id: str,
        amount: Decimal,
        payment_date: date,
        payment_method: str,
        reference_number: str | None = None,
        remarks: str | None = None,
        receipt_number: str | None = None,
    ) -> tuple[Payment, Invoice]:
        amount = to_decimal(amount)
        if amount <= 0:
            raise PaymentRejectedError("Invalid payment amount")

        payment_id = _new_id()
        with self._lock, self._transaction() as conn:
            invoice_row = _fetchone(conn, "SELECT * FROM invoices WHERE id = ?", (invoice_id,))
            if invoice_row is None:
                raise NotFoundError(f"Invoice not found: {invoice_id}")
            prior = _fetchall(conn, "SELECT amount FROM payments WHERE invoice_id = ?", (invoice_id,))
            total_amount = to_decimal(invoice_row["total_amount"])
            balance = outstanding_balance(total_amount, (p["amount"] for p in prior))
            if amount > balance:
                raise PaymentRejectedError(f"Payment amount exceeds balance of {balance:.2f}")

            _execute(
                conn,
                """
                INSERT INTO payments(
                    id, invoice_id, client_id, amount, payment_date, payment_method,
                    reference_number, remarks, receipt_number, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payment_id,
                    invoice_id,
                    invoice_row["client_id"],
                    amount,
                    payment_date,
                    payment_method,
                    reference_number,
                    remarks,
                    receipt_number,
                    _now(),
                ),
            )
            if balance - amount <= 0:
                _execute(conn, "UPDATE invoices SET status = 'paid' WHERE id = ?", (invoice_id,))

        return self.get_payment(payment_id), self.get_invoice(invoice_id)

    def set_payment_receipt(self, payment_id: str, receipt_path: str) -> None:
        with self._lock, self._transaction() as conn:
            _execute(conn, "UPDATE payments SET receipt_path = ? WHERE id = ?", (receipt_path, payment_id))

    def get_payment(self, payment_id: str) -> Payment:
        with self._transaction() as conn:
            row = _fetchone(conn, "SELECT * FROM payments WHERE id = ?", (payment_id,))
        if row is None:
            raise NotFoundError(f"Payment not found: {payment_id}")
        return _row_to_payment(row)

    def list_payments(self, client_id: str | None = None, invoice_id: str | None = None) -> list[Payment]:
        clauses, params = _filters(client_id=client_id, invoice_id=invoice_id)
        with self._transaction() as conn:
            rows = _fetchall(conn, f"SELECT * FROM payments{clauses} ORDER BY payment_date DESC, created_at DESC", params)
        return [_row_to_payment(row) for row in rows]

    # Reports

    def billing_report(self, today: date) -> dict[str, Any]:
        invoices = self.list_invoices()
        client_names = {client.id: client.client_name for client in self.list_clients()}

        total_amount = sum((inv.total_amount for inv in invoices), Decimal("0"))
        total_paid = sum((inv.total_paid for inv in invoices), Decimal("0"))
        summary = {
            "totalInvoices": len(invoices),
            "pending": sum(1 for inv in invoices if inv.status == "pending"),
            "sent": sum(1 for inv in invoices if inv.status == "sent"),
            "paid": sum(1 for inv in invoices if inv.status == "paid"),
            "overdue": sum(1 for inv in invoices if inv.status == "overdue"),
            "totalAmount": float(total_amount),
            "totalPaid": float(total_paid),
            "totalOutstanding": float(total_amount - total_paid),
        }

        by_client: dict[str, dict[str, Any]] = {}
        for inv in invoices:
            entry = by_client.setdefault(
                inv.client_id,
                {
                    "clientId": inv.client_id,
                    "clientName": client_names.get(inv.client_id, ""),
                    "invoiceCount": 0,
                    "totalAmount": Decimal("0"),
                    "totalPaid": Decimal("0"),
                },
            )
            entry["invoiceCount"] += 1
            entry["totalAmount"] += inv.total_amount
            entry["totalPaid"] += inv.total_paid

        client_summaries = [
            {
                **entry,
                "totalAmount": float(entry["totalAmount"]),
                "totalPaid": float(entry["totalPaid"]),
                "outstanding": float(entry["totalAmount"] - entry["totalPaid"]),
            }
            for entry in sorted(by_client.values(), key=lambda item: item["totalAmount"], reverse=True)
        ]

        overdue = [
            {
                "id": inv.id,
                "invoiceNumber": inv.invoice_number,
                "clientId": inv.client_id,
                "clientName": client_names.get(inv.client_id, ""),
                "totalAmount": float(inv.total_amount),
                "dueDate": inv.due_date.isoformat(),
                "daysOverdue": (today - inv.due_date).days,
                "balance": float(inv.balance),
            }
            for inv in invoices
            if inv.status != "paid" and inv.due_date < today
        ]
        overdue.sort(key=lambda item: item["daysOverdue"], reverse=True)

        return {"summary": summary, "byClient": client_summaries, "overdueInvoices": overdue}

    def revenue_report(self, today: date) -> dict[str, Any]:
        payments = [p for p in self.list_payments() if p.payment_date.year == today.year]
        client_names = {client.id: client.client_name for client in self.list_clients()}
        invoice_numbers = {inv.id: inv.invoice_number for inv in self.list_invoices()}
        zero = Decimal("0")

        monthly = [
            {"month": month_abbr[month], "revenue": zero, "count": 0}
            for month in range(1, 13)
        ]
        by_client: dict[str, dict[str, Any]] = {}
        by_method: dict[str, Decimal] = {}
        for payment in payments:
            bucket = monthly[payment.payment_date.month - 1]
            bucket["revenue"] += payment.amount
            bucket["count"] += 1

            entry = by_client.setdefault(
                payment.client_id,
                {
                    "clientId": payment.client_id,
                    "clientName": client_names.get(payment.client_id, ""),
                    "totalPayments": zero,
                    "paymentCount": 0,
                },
            )
            entry["totalPayments"] += payment.amount
            entry["paymentCount"] += 1

            method = payment.payment_method or "other"
            by_method[method] = by_method.get(method, zero) + payment.amount

        total_revenue = sum((p.amount for p in payments), zero)
        current = monthly[today.month - 1]["revenue"]
        previous = monthly[today.month - 2]["revenue"] if today.month > 1 else zero
        change = ((current - previous) / previous * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP) if previous > 0 else zero

        return {
            "summary": {
                "totalRevenue": float(total_revenue),
                "currentMonthRevenue": float(current),
                "previousMonthRevenue": float(previous),
                "revenueChange": float(change),
                "totalPayments": len(payments),
                "averagePayment": float(total_revenue / len(payments)) if payments else 0.0,
            },
            "monthlyRevenue": [{**bucket, "revenue": float(bucket["revenue"])} for bucket in monthly],
            "byClient": [
                {**entry, "totalPayments": float(entry["totalPayments"])}
                for entry in sorted(by_client.values(), key=lambda item: item["totalPayments"], reverse=True)
            ],
            "paymentMethods": [
                {"method": method, "amount": float(amount)}
                for method, amount in sorted(by_method.items(), key=lambda item: item[1], reverse=True)
            ],
            "recentPayments": [
                {
                    "id": p.id,
                    "amount": float(p.amount),
                    "paymentDate": p.payment_date.isoformat(),
                    "paymentMethod": p.payment_method,
                    "invoiceNumber": invoice_numbers.get(p.invoice_id, "N/A"),
                    "clientName": client_names.get(p.client_id, "N/A"),
                }
                for p in payments[:10]
            ],
        }

    def renewals_report(self, today: date) -> dict[str, Any]:
        clients = {client.id: client for client in self.list_clients()}
        windows = {"next30Days": (0, 30), "next60Days": (31, 60), "next90Days": (61, 90)}
        renewals: dict[str, list[dict[str, Any]]] = {name: [] for name in windows}

        for contract in sorted(self.list_contracts(status="active"), key=lambda c: c.end_date):
            days_left = (contract.end_date - today).days
            for name, (low, high) in windows.items():
                if low <= days_left <= high:
                    client = clients.get(contract.client_id)
                    renewals[name].append(
                        {
                            "id": contract.id,
                            "contractNumber": contract.contract_number,
                            "clientId": contract.client_id,
                            "clientName": client.client_name if client else "",
                            "rentalRate": float(client.rental_rate) if client else 0.0,
                            "billingTerms": client.billing_terms if client else "",
                            "startDate": contract.start_date.isoformat(),
                            "endDate": contract.end_date.isoformat(),
                            "daysUntilExpiry": days_left,
                        }
                    )

        summary = {name: len(items) for name, items in renewals.items()}
        summary["total"] = sum(summary.values())
        return {"summary": summary, "renewals": renewals}


def _filters(**filters: Any) -> tuple[str, tuple[Any, ...]]:
    active = [(column, value) for column, value in filters.items() if value is not None]
    if not active:
        return "", ()
    clauses = " AND ".join(f"{column} = ?" for column, _ in active)
    return f" WHERE {clauses}", tuple(value for _, value in active)
