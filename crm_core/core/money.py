from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

MONEY_QUANT = Decimal("0.01")
ZERO_MONEY = Decimal("0.00")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def line_total(quantity: int, price: Decimal | int | float | str) -> Decimal:
    return to_money(Decimal(quantity) * to_money(price))


def sum_line_totals(lines: Iterable[tuple[int, Decimal | int | float | str]]) -> Decimal:
    total = ZERO_MONEY
    for quantity, price in lines:
        total += line_total(quantity, price)
    return to_money(total)
