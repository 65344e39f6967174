from __future__ import annotations

from datetime import datetime
from decimal import Decimal

CENTS = Decimal("0.01")


def format_decimal(value: Decimal) -> str:
    quantized = value.normalize()
    # Avoid scientific notation for integers.
    if quantized == quantized.to_integral():
        return f"{quantized:.0f}"
    return format(quantized, "f")


def format_currency(value: Decimal, currency: str | None = None) -> str:
    cents = value.quantize(CENTS)
    if currency:
        return f"{cents:.2f} {currency}"
    return f"{cents:.2f}"


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")
