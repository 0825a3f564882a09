from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from leasedesk.api.billing_periods import DUE_DATE_OFFSET_DAYS


VAT_RATE = Decimal("0.12")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class BillingRules:
    vat_rate: Decimal = VAT_RATE
    due_date_offset_days: int = DUE_DATE_OFFSET_DAYS


DEFAULT_RULES = BillingRules()


@dataclass(frozen=True)
class AmountBreakdown:
    net_amount: Decimal
    vat_amount: Decimal
    total_amount: Decimal


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money2(value: Decimal | int | float | str) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_amounts(
    rate: Decimal | int | float | str,
    vat_inclusive: bool,
    vat_rate: Decimal = VAT_RATE,
) -> AmountBreakdown:
    # Rate is already per billing period; the given side is returned untouched.
    given = to_decimal(rate)
    multiplier = Decimal(1) + vat_rate

    if vat_inclusive:
        net_amount = given / multiplier
        return AmountBreakdown(
            net_amount=money2(net_amount),
            vat_amount=money2(given - net_amount),
            total_amount=given,
        )

    vat_amount = given * vat_rate
    return AmountBreakdown(
        net_amount=given,
        vat_amount=money2(vat_amount),
        total_amount=money2(given + vat_amount),
    )


def outstanding_balance(total_amount: Decimal, payments: Iterable[Decimal]) -> Decimal:
    return to_decimal(total_amount) - sum((to_decimal(p) for p in payments), Decimal("0"))
