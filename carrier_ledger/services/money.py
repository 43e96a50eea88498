from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from carrier_ledger.config import settings
from carrier_ledger.errors import LedgerValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')

COD_PAYMENT_METHODS = {'cod', 'cash_on_delivery', 'cash', 'contra_entrega', 'efectivo'}


def quantize_money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(
    value,
    *,
    field: str = 'amount',
    allow_zero: bool = True,
    maximum: Decimal | None = None,
) -> Decimal:
    if value is None or isinstance(value, bool):
        raise LedgerValidationError(f'{field} is required', field=field, code='INVALID_AMOUNT')
    try:
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except InvalidOperation as exc:
        raise LedgerValidationError(f'{field} is not a valid amount', field=field, code='INVALID_AMOUNT') from exc
    if not amount.is_finite():
        raise LedgerValidationError(f'{field} must be a finite amount', field=field, code='INVALID_AMOUNT')
    if amount < 0:
        raise LedgerValidationError(f'{field} cannot be negative', field=field, code='INVALID_AMOUNT')
    if amount == 0 and not allow_zero:
        raise LedgerValidationError(f'{field} must be greater than zero', field=field, code='INVALID_AMOUNT')
    ceiling = maximum if maximum is not None else settings.max_amount
    if amount > ceiling:
        raise LedgerValidationError(
            f'{field} exceeds the maximum of {ceiling}',
            field=field,
            code='AMOUNT_TOO_LARGE',
        )
    if amount != amount.quantize(CENT):
        raise LedgerValidationError(f'{field} has more than two decimal places', field=field, code='INVALID_AMOUNT')
    return quantize_money(amount)


def is_cod_order(*, is_prepaid: bool, payment_method: str | None) -> bool:
    if is_prepaid:
        return False
    return (payment_method or '').strip().lower() in COD_PAYMENT_METHODS


def failed_attempt_fee(carrier_fee: Decimal, percent: Decimal) -> Decimal:
    return quantize_money(Decimal(carrier_fee) * Decimal(percent) / Decimal('100'))


def _even_reductions(expected: list[Decimal], shortfall: Decimal) -> list[Decimal]:
    # Smallest orders first, so an order that cannot absorb its full share
    # passes the rest on to the larger ones.
    reductions = [ZERO] * len(expected)
    left = shortfall
    remaining = len(expected)
    for index in sorted(range(len(expected)), key=lambda i: expected[i]):
        reductions[index] = min(expected[index], left / remaining)
        left -= reductions[index]
        remaining -= 1
    return reductions


def distribute_collected(expected: list[Decimal], total_collected: Decimal) -> list[Decimal]:
    """Spread the gap between total_collected and the expected amounts evenly.

    A surplus is shared equally. A shortfall is shared equally too, except
    that no order is cut below zero; whatever a small order cannot absorb is
    spread over the larger ones. Shares are rounded to cents and the rounding
    remainder lands on the largest entry, so the result always sums to
    total_collected exactly.
    """
    if not expected:
        return []
    total_collected = quantize_money(total_collected)
    discrepancy = total_collected - sum(expected, ZERO)
    if discrepancy >= 0:
        share = quantize_money(discrepancy / len(expected))
        amounts = [quantize_money(amount + share) for amount in expected]
    else:
        reductions = _even_reductions(expected, -discrepancy)
        amounts = [quantize_money(amount - cut) for amount, cut in zip(expected, reductions)]
    largest = max(range(len(amounts)), key=lambda i: (amounts[i], i))
    amounts[largest] += total_collected - sum(amounts, ZERO)
    return amounts
