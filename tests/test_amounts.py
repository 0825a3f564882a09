import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from decimal import Decimal

import pytest

from leasedesk.api.amounts import VAT_RATE, BillingRules, money2, outstanding_balance, resolve_amounts


def test_vat_inclusive_rate_is_split_into_net_and_vat() -> None:
    result = resolve_amounts(Decimal("11200"), vat_inclusive=True)

    assert result.net_amount == Decimal("10000.00")
    assert result.vat_amount == Decimal("1200.00")
    assert result.total_amount == Decimal("11200.00")


def test_vat_exclusive_rate_gets_vat_added() -> None:
    result = resolve_amounts(Decimal("10000"), vat_inclusive=False)

    assert result.net_amount == Decimal("10000.00")
    assert result.vat_amount == Decimal("1200.00")
    assert result.total_amount == Decimal("11200.00")


@pytest.mark.parametrize("rate", ["0", "0.01", "999.99", "12345.67", "15000.555", "1000000"])
def test_given_side_is_preserved_exactly(rate: str) -> None:
    value = Decimal(rate)

    assert resolve_amounts(value, vat_inclusive=True).total_amount == value
    assert resolve_amounts(value, vat_inclusive=False).net_amount == value


@pytest.mark.parametrize("rate", ["0.01", "1.00", "333.33", "12345.67", "99999.99"])
def test_parts_add_up_within_a_cent(rate: str) -> None:
    for vat_inclusive in (True, False):
        result = resolve_amounts(Decimal(rate), vat_inclusive)
        assert abs(result.net_amount + result.vat_amount - result.total_amount) <= Decimal("0.01")


def test_derived_values_round_half_up() -> None:
    # 0.125 * 0.12 = 0.015 -> 0.02
    result = resolve_amounts(Decimal("0.125"), vat_inclusive=False)

    assert result.vat_amount == Decimal("0.02")
    assert result.total_amount == Decimal("0.14")


def test_float_and_int_rates_go_through_their_string_form() -> None:
    assert resolve_amounts(0.1, vat_inclusive=False).net_amount == Decimal("0.1")
    assert resolve_amounts(5600, vat_inclusive=True).net_amount == Decimal("5000.00")


def test_vat_rate_can_be_supplied_per_call() -> None:
    rules = BillingRules(vat_rate=Decimal("0.05"))

    result = resolve_amounts(Decimal("1000"), vat_inclusive=False, vat_rate=rules.vat_rate)

    assert result.vat_amount == Decimal("50.00")
    assert BillingRules().vat_rate == VAT_RATE == Decimal("0.12")
    assert BillingRules().due_date_offset_days == 3


def test_money2_and_outstanding_balance() -> None:
    assert money2("2.345") == Decimal("2.35")
    assert outstanding_balance(Decimal("11200.00"), [Decimal("5000"), "1200.00"]) == Decimal("5000.00")
    assert outstanding_balance(Decimal("100"), []) == Decimal("100")
