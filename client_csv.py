from __future__ import annotations

import csv
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path

from leasedesk.api.billing_periods import BillingCadence, add_months_clamped, at_noon


REQUIRED_COLUMNS = {
    "ClientName",
    "Address",
    "RentalRate",
    "VAT",
    "BillingTerms",
    "StartDate",
}


def _parse_date(value: str) -> date:
    raw = value.strip()
    for fmt in ("%m/%d/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value!r}")


def _parse_flag(value: str) -> bool:
    return (value or "").strip().upper() in {"Y", "YES", "INCLUSIVE", "1", "TRUE"}


def _parse_rate(value: str) -> Decimal:
    try:
        rate = Decimal(value.strip().replace(",", ""))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid rental rate: {value!r}") from exc
    if not rate.is_finite():
        raise ValueError(f"Invalid rental rate: {value!r}")
    if rate < 0:
        raise ValueError(f"Rental rate must not be negative: {value!r}")
    return rate


def _optional_int(value: str | None) -> int | None:
    raw = (value or "").strip()
    return int(raw) if raw else None


def _billing_months(terms: str, value: str | None) -> int | None:
    months = _optional_int(value)
    if months is not None and months <= 0:
        raise ValueError(f"CustomBillingMonths must be positive: {value!r}")
    if BillingCadence.from_label(terms) is BillingCadence.CUSTOM and months is None:
        raise ValueError(f"Billing terms {terms!r} require CustomBillingMonths")
    return months


def parse_client_csv(path: Path) -> list[dict]:
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        if reader.fieldnames is None:
            raise ValueError(f"CSV has no header row: {path}")

        normalized_headers = [header.strip().rstrip("*") for header in reader.fieldnames]
        missing_columns = REQUIRED_COLUMNS - set(normalized_headers)
        if missing_columns:
            missing = ", ".join(sorted(missing_columns))
            raise ValueError(f"CSV missing required columns: {missing}")

        deduped: dict[str, dict] = {}
        for line_number, raw_row in enumerate(reader, start=2):
            row = {str(key).strip().rstrip("*"): (value or "") for key, value in raw_row.items() if key is not None}
            client_name = row["ClientName"].strip()
            if not client_name:
                continue

            try:
                start_date = _parse_date(row["StartDate"])
                rental_terms_months = _optional_int(row.get("RentalTermsMonths")) or 12
                end_raw = row.get("EndDate", "").strip()
                end_date = (
                    _parse_date(end_raw)
                    if end_raw
                    else add_months_clamped(at_noon(start_date), rental_terms_months).date()
                )
                billing_terms = row["BillingTerms"].strip()
                deduped[client_name] = {
                    "client_name": client_name,
                    "address": row["Address"].strip(),
                    "email": row.get("Email", "").strip() or None,
                    "mobile": row.get("Mobile", "").strip() or None,
                    "rental_rate": _parse_rate(row["RentalRate"]),
                    "vat_inclusive": _parse_flag(row["VAT"]),
                    "billing_terms": billing_terms,
                    "custom_billing_months": _billing_months(billing_terms, row.get("CustomBillingMonths")),
                    "rental_terms_months": rental_terms_months,
                    "start_date": start_date,
                    "end_date": end_date,
                    "lease_inclusions": row.get("LeaseInclusions", "").strip() or None,
                }
            except ValueError as exc:
                raise ValueError(f"Row {line_number}: {exc}") from exc

    return list(deduped.values())
