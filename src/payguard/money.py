"""Token amount helpers using integer base units (USDC-style 6 decimals)."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation


DEFAULT_DECIMALS = 6


def to_base_units(value: Decimal | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a human token amount ("2.5") to integer base units.

    Rejects amounts with more precision than the token carries instead of
    rounding, so a signed amount is never silently altered.
    """
    if isinstance(value, (bool, float)):
        raise ValueError("Token amounts must be given as str, int or Decimal")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid token amount: {value!r}") from e
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"Invalid token amount: {value!r}")
    scaled = dec.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {value} has more than {decimals} decimals")
    return int(scaled)


def from_base_units(value: int, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal token amount."""
    return Decimal(value).scaleb(-decimals)


def format_base_units(value: int, decimals: int = DEFAULT_DECIMALS, symbol: str = "USDC") -> str:
    """Format base units for display, e.g. 2500000 -> '2.500000 USDC'."""
    return f"{from_base_units(value, decimals):.{decimals}f} {symbol}"
