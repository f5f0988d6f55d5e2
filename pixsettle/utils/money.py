from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_decimal(amount: object) -> Decimal | None:
    """Parse a reported BRL amount ("3.00", 3, 3.0, "3,00") into a Decimal; None if unparseable."""
    if amount is None or isinstance(amount, bool):
        return None
    if isinstance(amount, Decimal):
        value = amount
    elif isinstance(amount, (int, float)):
        value = Decimal(str(amount))
    elif isinstance(amount, str):
        text = amount.strip().replace("R$", "").strip()
        if "," in text and "." in text:
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", ".")
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    if not value.is_finite():
        return None
    return value


def to_minor(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(CENT)


def brl(amount_minor: int) -> str:
    d = from_minor(amount_minor)
    s = f"{d:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {s}"
