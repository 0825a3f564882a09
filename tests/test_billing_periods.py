import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from datetime import date, datetime, timedelta, timezone

import pytest

from leasedesk.api.billing_periods import (
    BillingCadence,
    BillingPeriod,
    UnsupportedCadenceError,
    add_months_clamped,
    due_date,
    filter_new_periods,
    generate_periods,
    parse_billing_date,
)


def _assert_contiguous(periods: list[BillingPeriod]) -> None:
    for previous, current in zip(periods, periods[1:]):
        assert current.start == previous.end + timedelta(days=1)


def test_add_months_clamped_anchor_31_into_feb_and_apr() -> None:
    anchor = datetime(2025, 1, 31, 12, 0, 0)
    assert add_months_clamped(anchor, 1) == datetime(2025, 2, 28, 12, 0, 0)
    assert add_months_clamped(anchor, 3) == datetime(2025, 4, 30, 12, 0, 0)


def test_monthly_calendar_year_yields_twelve_month_periods() -> None:
    periods = generate_periods(date(2024, 1, 1), date(2024, 12, 31), BillingCadence.MONTHLY)

    assert len(periods) == 12
    assert [p.start for p in periods] == [date(2024, m, 1) for m in range(1, 13)]
    assert periods[1].end == date(2024, 2, 29)
    assert periods[-1].end == date(2024, 12, 31)
    _assert_contiguous(periods)


def test_final_period_is_capped_at_contract_end() -> None:
    periods = generate_periods(date(2024, 3, 15), date(2025, 9, 1), BillingCadence.ANNUAL)

    assert periods == [
        BillingPeriod(start=date(2024, 3, 15), end=date(2025, 3, 14)),
        BillingPeriod(start=date(2025, 3, 15), end=date(2025, 9, 1)),
    ]


def test_quarterly_periods_are_contiguous_and_never_pass_contract_end() -> None:
    contract_end = date(2026, 3, 15)
    periods = generate_periods(date(2024, 1, 31), contract_end, "Quarterly")

    _assert_contiguous(periods)
    assert periods[0] == BillingPeriod(start=date(2024, 1, 31), end=date(2024, 4, 29))
    assert periods[-1].end <= contract_end
    assert all(p.start <= p.end for p in periods)


def test_month_end_anchor_does_not_drift_after_february() -> None:
    periods = generate_periods(date(2025, 1, 31), date(2025, 5, 31), BillingCadence.MONTHLY)

    assert [p.start for p in periods] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]
    _assert_contiguous(periods)


@pytest.mark.parametrize(
    "start, end",
    [
        (date(2024, 6, 1), date(2024, 6, 1)),
        (date(2024, 6, 1), date(2024, 5, 1)),
    ],
)
def test_empty_or_inverted_range_has_no_periods(start: date, end: date) -> None:
    assert generate_periods(start, end, BillingCadence.MONTHLY) == []


def test_datetime_inputs_keep_their_calendar_day() -> None:
    late_evening = datetime(2024, 1, 1, 23, 30, tzinfo=timezone(timedelta(hours=8)))
    periods = generate_periods(late_evening, datetime(2024, 3, 31, 0, 15), BillingCadence.MONTHLY)

    assert periods[0].start == date(2024, 1, 1)
    assert periods[-1].end == date(2024, 3, 31)
    assert len(periods) == 3


def test_custom_cadence_requires_explicit_month_count() -> None:
    with pytest.raises(UnsupportedCadenceError):
        generate_periods(date(2024, 1, 1), date(2024, 12, 31), BillingCadence.CUSTOM)

    periods = generate_periods(date(2024, 1, 1), date(2024, 12, 31), BillingCadence.CUSTOM, custom_months=2)
    assert len(periods) == 6
    assert periods[0].end == date(2024, 2, 29)


def test_unknown_label_is_custom_not_monthly() -> None:
    assert BillingCadence.from_label("Bi-Monthly") is BillingCadence.CUSTOM
    assert BillingCadence.from_label(None) is BillingCadence.CUSTOM
    with pytest.raises(UnsupportedCadenceError):
        generate_periods(date(2024, 1, 1), date(2024, 12, 31), "Bi-Monthly")


@pytest.mark.parametrize("label", ["Semi-Annual", "semi annual", "SEMI_ANNUAL"])
def test_label_parsing_ignores_case_and_separators(label: str) -> None:
    cadence = BillingCadence.from_label(label)
    assert cadence is BillingCadence.SEMI_ANNUAL
    assert cadence.months == 6


def test_due_date_is_three_days_before_period_start() -> None:
    assert due_date(date(2024, 4, 1)) == date(2024, 3, 29)
    assert due_date(datetime(2024, 3, 1, 0, 5)) == date(2024, 2, 27)


def test_parse_billing_date_accepts_iso_with_zulu() -> None:
    assert parse_billing_date("2025-01-17T00:00:00Z") == date(2025, 1, 17)
    assert parse_billing_date("  ") is None


def _quarters() -> list[BillingPeriod]:
    return generate_periods(date(2024, 1, 1), date(2024, 12, 31), BillingCadence.QUARTERLY)


def test_filter_drops_already_invoiced_periods_in_order() -> None:
    quarters = _quarters()
    existing = {quarters[0].key, quarters[1].key}

    result = filter_new_periods(quarters, existing, date(2024, 1, 1), include_future=True)

    assert result == quarters[2:]


def test_filter_is_idempotent() -> None:
    quarters = _quarters()
    existing = {quarters[1].key}

    once = filter_new_periods(quarters, existing, date(2024, 8, 1), include_future=False)
    twice = filter_new_periods(once, existing, date(2024, 8, 1), include_future=False)

    assert once == twice


def test_filter_excludes_future_periods_unless_requested() -> None:
    quarters = _quarters()

    current = filter_new_periods(quarters, set(), date(2024, 7, 1), include_future=False)

    assert [p.start for p in current] == [date(2024, 1, 1), date(2024, 4, 1), date(2024, 7, 1)]


def test_filter_matches_existing_keys_stored_as_datetimes() -> None:
    quarters = _quarters()
    existing = [(datetime(2024, 1, 1, 12, 0), datetime(2024, 3, 31, 12, 0))]

    result = filter_new_periods(quarters, existing, date(2024, 12, 31), include_future=False)

    assert result == quarters[1:]


def test_billing_period_rejects_inverted_bounds() -> None:
    with pytest.raises(ValueError):
        BillingPeriod(start=date(2024, 2, 1), end=date(2024, 1, 31))
