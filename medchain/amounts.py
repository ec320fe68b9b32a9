"""
Conversions between the ledger's smallest unit (wei) and decimal ether strings.

The integer path is exact: ``to_smallest_unit`` and ``to_decimal_string`` never
round, and every transaction amount is derived from integers. Rounding happens
only in the display helpers, whose output must never be parsed back into an
amount.
"""

import re
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import Union

from medchain.constants import DECIMALS, DISPLAY_DECIMALS
from medchain.errors import MalformedAmount

WEI_PER_ETHER = 10 ** DECIMALS
MAX_UINT256 = 2 ** 256 - 1

_AMOUNT_RE = re.compile(r"^(?:(\d+)(?:\.(\d*))?|\.(\d+))$")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def to_smallest_unit(amount: Union[str, int, Decimal]) -> int:
    """
    Convert a decimal ether amount to wei.

    Args:
        amount: A non-negative decimal numeral ("0.05", "12", ".5"), an int
            number of whole ether, or a finite Decimal

    Returns:
        int: The amount in wei

    Raises:
        MalformedAmount: If the input is negative, not a decimal numeral, has
            more than 18 fractional digits or exceeds a uint256
    """
    if _is_int(amount):
        if amount < 0:
            raise MalformedAmount(detail=f"negative amount: {amount}")
        text = str(amount)
    elif isinstance(amount, Decimal):
        if not amount.is_finite():
            raise MalformedAmount(detail=f"not a finite number: {amount}")
        text = format(amount, "f")
    elif isinstance(amount, str):
        text = amount.strip()
    else:
        # floats are rejected: they cannot carry exact monetary values
        raise MalformedAmount(detail=f"unsupported amount type: {type(amount).__name__}")

    match = _AMOUNT_RE.match(text)
    if not match:
        raise MalformedAmount(detail=f"not a non-negative decimal numeral: {amount!r}")

    whole = match.group(1) or "0"
    fraction = match.group(2) if match.group(1) is not None else match.group(3)
    fraction = fraction or ""
    if len(fraction) > DECIMALS:
        raise MalformedAmount(detail=f"more than {DECIMALS} fractional digits: {amount!r}")

    wei = int(whole) * WEI_PER_ETHER + int(fraction.ljust(DECIMALS, "0"))
    if wei > MAX_UINT256:
        raise MalformedAmount(detail=f"amount exceeds uint256: {amount!r}")
    return wei


def to_decimal_string(wei: int) -> str:
    """Exact decimal ether string for a wei amount ("1.5", "0.000000000000000001", "3")."""
    if not _is_int(wei) or wei < 0:
        raise MalformedAmount(detail=f"not a non-negative integer wei amount: {wei!r}")
    whole, fraction = divmod(wei, WEI_PER_ETHER)
    if not fraction:
        return str(whole)
    return f"{whole}.{fraction:0{DECIMALS}d}".rstrip("0")


def format_amount(wei: int, places: int = DISPLAY_DECIMALS) -> str:
    """Display string rounded half-up to ``places`` decimals. Never feed this back into a transaction."""
    exact = Decimal(to_decimal_string(wei))
    with localcontext() as ctx:
        ctx.prec = 100
        quantum = Decimal(1).scaleb(-places)
        return str(exact.quantize(quantum, rounding=ROUND_HALF_UP))


def to_display_float(wei: int) -> float:
    """Float ether value for charts and display only."""
    return float(Decimal(to_decimal_string(wei)))


def discounted_unit_price(price_wei: int, discount_percent: int) -> int:
    """Unit price after discount: ``price * (100 - discount) // 100``."""
    if not _is_int(price_wei) or price_wei < 0:
        raise MalformedAmount(detail=f"invalid price: {price_wei!r}")
    if not _is_int(discount_percent) or not 0 <= discount_percent <= 100:
        raise MalformedAmount(detail=f"discount must be between 0 and 100: {discount_percent!r}")
    return price_wei * (100 - discount_percent) // 100


def purchase_total(price_wei: int, discount_percent: int, quantity: int) -> int:
    """Amount to attach when buying ``quantity`` units."""
    return quantity * discounted_unit_price(price_wei, discount_percent)
