from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable


DUE_DATE_OFFSET_DAYS = 3
NOON = time(12, 0, 0)


class UnsupportedCadenceError(ValueError):
    """Raised when a custom billing cadence has no usable month count."""


class BillingCadence(Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUAL = "Semi-Annual"
    ANNUAL = "Annual"
    CUSTOM = "Other"

    @property
    def months(self) -> int | None:
        return _CADENCE_MONTHS.get(self)

    @classmethod
    def from_label(cls, label: str | None) -> BillingCadence:
        wanted = _normalize_label(label or "")
        for cadence in cls:
            if wanted in {_normalize_label(cadence.value), _normalize_label(cadence.name)}:
                return cadence
        return cls.CUSTOM


_CADENCE_MONTHS = {
    BillingCadence.MONTHLY: 1,
    BillingCadence.QUARTERLY: 3,
    BillingCadence.SEMI_ANNUAL: 6,
    BillingCadence.ANNUAL: 12,
}


def _normalize_label(label: str) -> str:
    return "".join(ch for ch in label.lower() if ch.isalnum())


@dataclass(frozen=True)
class BillingPeriod:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Billing period end {self.end} is before start {self.start}")

    @property
    def key(self) -> tuple[date, date]:
        return self.start, self.end


def parse_billing_date(raw: str | None) -> date | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return to_calendar_date(parsed)


def at_noon(value: date | datetime) -> datetime:
    # Only the calendar day matters; pinning to noon keeps offsets and DST from moving it.
    if isinstance(value, datetime):
        return value.replace(hour=12, minute=0, second=0, microsecond=0, tzinfo=None)
    return datetime.combine(value, NOON)


def to_calendar_date(value: date | datetime) -> date:
    return at_noon(value).date()


def add_months_clamped(dt: datetime, months: int) -> datetime:
    month_index = (dt.month - 1) + months
    year = dt.year + month_index // 12
    month = (month_index % 12) + 1
    day = min(dt.day, monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def resolve_cadence_months(cadence: BillingCadence | str, custom_months: int | None = None) -> int:
    if not isinstance(cadence, BillingCadence):
        cadence = BillingCadence.from_label(cadence)
    if cadence is not BillingCadence.CUSTOM:
        return cadence.months

    if custom_months is None:
        raise UnsupportedCadenceError("Custom billing cadence requires an explicit month count")
    if isinstance(custom_months, bool) or not isinstance(custom_months, int) or custom_months <= 0:
        raise UnsupportedCadenceError(f"Custom billing month count must be a positive integer, got {custom_months!r}")
    return custom_months


def generate_periods(
    contract_start: date | datetime,
    contract_end: date | datetime,
    cadence: BillingCadence | str,
    custom_months: int | None = None,
) -> list[BillingPeriod]:
    months = resolve_cadence_months(cadence, custom_months)
    anchor = at_noon(contract_start)
    end_cap = at_noon(contract_end)

    periods: list[BillingPeriod] = []
    index = 0
    period_start = anchor
    while period_start < end_cap:
        # Offsets are taken from the anchor so a 31st start does not drift after February.
        next_start = add_months_clamped(anchor, (index + 1) * months)
        period_end = min(next_start - timedelta(days=1), end_cap)
        periods.append(BillingPeriod(start=period_start.date(), end=period_end.date()))
        index += 1
        period_start = next_start

    return periods


def due_date(period_start: date | datetime, offset_days: int = DUE_DATE_OFFSET_DAYS) -> date:
    return (at_noon(period_start) - timedelta(days=offset_days)).date()


def filter_new_periods(
    all_periods: Iterable[BillingPeriod],
    existing_periods: Iterable[tuple[date | datetime, date | datetime]],
    up_to_date: date | datetime,
    include_future: bool,
) -> list[BillingPeriod]:
    existing_keys = {(to_calendar_date(start), to_calendar_date(end)) for start, end in existing_periods}
    cutoff = to_calendar_date(up_to_date)

    return [
        period
        for period in all_periods
        if period.key not in existing_keys and (include_future or period.start <= cutoff)
    ]
