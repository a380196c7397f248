"""Exact conversions between token base units and decimal amounts.

Balances and transfer values are kept as integer base units end-to-end (the
same way amounts are kept in integer cents elsewhere); decimals only appear at
the API boundary.
"""

from decimal import Context, Decimal, InvalidOperation


# Wide enough for any uint256 value, so scaling never rounds.
_EXACT = Context(prec=80)


def to_base_units(amount: Decimal | str | int, decimals: int) -> int:
    """Scale a decimal token amount to integer base units.

    Raises `ValueError` for non-finite values or for amounts carrying more
    fractional digits than the token supports.
    """

    try:
        value = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid amount: {amount!r}")
    scaled = value.scaleb(decimals, context=_EXACT)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"amount {amount} exceeds token precision of {decimals} decimals")
    return int(scaled)


def from_base_units(units: int, decimals: int) -> Decimal:
    """Return the exact decimal token amount for `units` base units."""

    return Decimal(int(units)).scaleb(-decimals, context=_EXACT)


def format_units(units: int, decimals: int) -> str:
    """Render base units as a fixed-point string with the token's precision."""

    return f"{from_base_units(units, decimals):.{decimals}f}"
