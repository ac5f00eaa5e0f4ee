from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union


def to_cents(value: Union[Decimal, str, int]) -> int:
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("Amount must be a number") from exc
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise ValueError("Amount must be greater than 0")
    return cents


def cents_to_amount(cents: int) -> float:
    return cents / 100


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
