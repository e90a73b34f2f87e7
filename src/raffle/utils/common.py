"""Common utility functions for the raffle service."""

from decimal import Decimal, InvalidOperation


def shorten_address(address: str) -> str:
    """Shorten an Ethereum-style address for display: '0x123456...abcd'.
    Returns the first 6 and last 4 hex characters, separated by '...'.
    Identifiers that are not hex addresses are returned unchanged.
    """
    if not address:
        return ""
    if not address.lower().startswith("0x"):
        return address
    addr = address.lower()[2:]
    if len(addr) < 10:
        return f"0x{addr}"
    return f"0x{addr[:6]}...{addr[-4:]}"


def to_decimal(value) -> Decimal:
    """Normalize an amount (int, str, Decimal) to Decimal.

    Floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount
