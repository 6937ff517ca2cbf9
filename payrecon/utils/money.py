"""Amount and reference helpers shared by the entry points and the engine."""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

_WHITESPACE = re.compile(r"\s+")


def to_minor_units(amount: Union[Decimal, int, float, str]) -> int:
    """
    Convert a major-unit amount (e.g. 50.00) to integer minor units (5000).

    Raises ValueError for non-numeric or non-finite input.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Malformed amount: {amount!r}") from e

    if not value.is_finite():
        raise ValueError(f"Malformed amount: {amount!r}")

    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_reference(reference: Optional[str]) -> str:
    """Strip all whitespace and upper-case; empty string means no reference."""
    if not reference:
        return ""
    return _WHITESPACE.sub("", reference).upper()
