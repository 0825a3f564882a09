from datetime import date
from decimal import Decimal

import pytest

from leasedesk.api.documents import DocumentStorage
from leasedesk.api.invoicing import InvoiceGenerator
from leasedesk.api.ledger_store import Company, LedgerStore, sqlite_database


@pytest.fixture
def store(tmp_path) -> LedgerStore:
    return LedgerStore(sqlite_database(tmp_path / "ledger.sqlite"))


@pytest.fixture
def generator(store, tmp_path) -> InvoiceGenerator:
    store.save_company(Company(name="Acme Leasing", address="1 Main St", email="billing@acme.test", mobile=None, telephone=None))
    return InvoiceGenerator(store, DocumentStorage(tmp_path / "documents"))


def _client_fields(**overrides):
    fields = {
        "client_name": "Servtrix Solutions Inc.",
        "address": "12 Ayala Ave",
        "email": "ap@servtrix.test",
        "mobile": "9171234567",
        "rental_rate": Decimal("11200"),
        "vat_inclusive": True,
        "billing_terms": "Quarterly",
        "custom_billing_months": None,
        "rental_terms_months": 12,
        "start_date": date(2024, 1, 1),
        "end_date": date(2024, 12, 31),
        "lease_inclusions": None,
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def client_fields():
    return _client_fields
