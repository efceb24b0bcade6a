"""
Money conversion and formatting for goal amounts.

Storage and ledger arithmetic always use integer cents; these helpers are
only for presentation boundaries.

Usage:
    from gymgoals.utils.money import format_amount

    format_amount(123450)  -> "1.234,5€"
    format_amount(50000)   -> "500€"
    format_amount(0)       -> "0€"
"""
from decimal import Decimal, ROUND_HALF_UP

CURRENCY_SYMBOL = "€"

_CENTS_IN_UNIT = Decimal(100)


def cents_to_euros(cents: int) -> Decimal:
    """123450 -> Decimal("1234.50")"""
    return (Decimal(cents) / _CENTS_IN_UNIT).quantize(Decimal("0.01"))


def euros_to_cents(euros) -> int:
    """
    Convert a euro amount (int / float / Decimal / str) to integer cents.

    Half-up rounding to the cent: "10.005" -> 1001.
    """
    if not isinstance(euros, Decimal):
        euros = Decimal(str(euros))
    return int((euros * _CENTS_IN_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(cents: int) -> str:
    """
    Отформатировать сумму в евро: разделитель тысяч ".", дробной части ",".

    Trailing zeros of the fraction are dropped ("500€", "12,5€", "0,99€").
    """
    euros = cents_to_euros(cents)
    sign = "-" if euros < 0 else ""
    integer_part, _, fraction = f"{abs(euros):.2f}".partition(".")
    grouped = f"{int(integer_part):,}".replace(",", ".")
    fraction = fraction.rstrip("0")
    if fraction:
        return f"{sign}{grouped},{fraction}{CURRENCY_SYMBOL}"
    return f"{sign}{grouped}{CURRENCY_SYMBOL}"
