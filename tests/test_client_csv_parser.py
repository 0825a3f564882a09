from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from client_csv import parse_client_csv


def test_parse_client_csv_mapping_and_dedupe(tmp_path: Path) -> None:
    csv_text = """ClientName*,Address*,Email,Mobile,RentalRate*,VAT*,BillingTerms*,StartDate*,EndDate,RentalTermsMonths,LeaseInclusions
Servtrix Solutions Inc.,12 Ayala Ave,ap@servtrix.test,9171234567,"11,200.00",Inclusive,Quarterly,01/01/2024,12/31/2024,12,Parking slot
Northwind Traders,5 Pier Rd,,,10000,N,Monthly,2024-03-15,,6,
Servtrix Solutions Inc.,14 Ayala Ave,ap@servtrix.test,9171234567,12000,Y,Semi-Annual,01/01/2024,12/31/2024,12,
"""
    path = tmp_path / "clients.csv"
    path.write_text(csv_text, encoding="utf-8")

    rows = parse_client_csv(path)

    assert [row["client_name"] for row in rows] == ["Servtrix Solutions Inc.", "Northwind Traders"]
    servtrix = rows[0]
    assert servtrix["address"] == "14 Ayala Ave"
    assert servtrix["rental_rate"] == Decimal("12000")
    assert servtrix["vat_inclusive"] is True
    assert servtrix["billing_terms"] == "Semi-Annual"
    assert servtrix["end_date"] == date(2024, 12, 31)
    assert servtrix["lease_inclusions"] is None

    northwind = rows[1]
    assert northwind["email"] is None
    assert northwind["vat_inclusive"] is False
    assert northwind["start_date"] == date(2024, 3, 15)
    assert northwind["rental_terms_months"] == 6
    assert northwind["end_date"] == date(2024, 9, 15)


def test_first_row_keeps_thousands_separator_rate(tmp_path: Path) -> None:
    path = tmp_path / "clients.csv"
    path.write_text(
        "ClientName,Address,RentalRate,VAT,BillingTerms,StartDate\n"
        'Acme,1 Main St,"11,200.50",Y,Annual,01/31/2025\n',
        encoding="utf-8",
    )

    (row,) = parse_client_csv(path)

    assert row["rental_rate"] == Decimal("11200.50")
    assert row["rental_terms_months"] == 12
    assert row["end_date"] == date(2026, 1, 31)
    assert row["custom_billing_months"] is None


def test_missing_required_columns_are_reported(tmp_path: Path) -> None:
    path = tmp_path / "clients.csv"
    path.write_text("ClientName,Address,RentalRate\nAcme,1 Main St,100\n", encoding="utf-8")

    with pytest.raises(ValueError, match="BillingTerms, StartDate, VAT"):
        parse_client_csv(path)


@pytest.mark.parametrize(
    "rate, start, message",
    [
        ("-5", "01/01/2024", "must not be negative"),
        ("abc", "01/01/2024", "Invalid rental rate"),
        ("NaN", "01/01/2024", "Invalid rental rate"),
        ("Infinity", "01/01/2024", "Invalid rental rate"),
        ("100", "2024/13/01", "Unrecognized date"),
    ],
)
def test_bad_rows_name_their_line(tmp_path: Path, rate: str, start: str, message: str) -> None:
    path = tmp_path / "clients.csv"
    path.write_text(
        "ClientName,Address,RentalRate,VAT,BillingTerms,StartDate\n"
        "Good Co,1 Main St,100,Y,Monthly,01/01/2024\n"
        f"Bad Co,2 Main St,{rate},Y,Monthly,{start}\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match=f"Row 3: .*{message}"):
        parse_client_csv(path)


def test_blank_client_names_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "clients.csv"
    path.write_text(
        "ClientName,Address,RentalRate,VAT,BillingTerms,StartDate\n"
        ",1 Main St,100,Y,Monthly,01/01/2024\n",
        encoding="utf-8",
    )

    assert parse_client_csv(path) == []


@pytest.mark.parametrize(
    "terms, months, message",
    [
        ("Other", "", "require CustomBillingMonths"),
        ("Quartely", "", "require CustomBillingMonths"),
        ("Other", "0", "must be positive"),
    ],
)
def test_custom_terms_need_positive_month_count(tmp_path: Path, terms: str, months: str, message: str) -> None:
    path = tmp_path / "clients.csv"
    path.write_text(
        "ClientName,Address,RentalRate,VAT,BillingTerms,StartDate,CustomBillingMonths\n"
        f"Bimo Corp,1 Main St,100,Y,{terms},01/01/2024,{months}\n",
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match=f"Row 2: .*{message}"):
        parse_client_csv(path)


def test_custom_terms_with_month_count_are_kept(tmp_path: Path) -> None:
    path = tmp_path / "clients.csv"
    path.write_text(
        "ClientName,Address,RentalRate,VAT,BillingTerms,StartDate,CustomBillingMonths\n"
        "Bimo Corp,1 Main St,100,Y,Other,01/01/2024,2\n",
        encoding="utf-8",
    )

    (row,) = parse_client_csv(path)

    assert row["billing_terms"] == "Other"
    assert row["custom_billing_months"] == 2
