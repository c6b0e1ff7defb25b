"""
Exact conversion between human-entered decimal amounts and a token's
indivisible integer unit.

Amounts never pass through a binary float. Text is parsed into a Decimal,
then scaled with pure integer arithmetic so that values of any size and any
precision (ERC-20 tokens commonly use 18 decimals) are represented exactly.
An amount with more significant fractional digits than the token supports
is rejected instead of being rounded.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable, Union

from csv_airdrop.errors import InvalidAmount, PrecisionExceeded

logger = logging.getLogger(__name__)

# uint256 is the widest amount the distribute() call can carry.
MAX_UINT256 = 2**256 - 1
MAX_UINT256_DIGITS = len(str(MAX_UINT256))

AmountLike = Union[str, Decimal]


def parse_amount(text: str) -> Decimal:
    """
    Parse a plain decimal string into a strictly positive, finite Decimal.

    Raises InvalidAmount for empty input, thousands separators, signs other
    than a leading '+', NaN/Infinity and values <= 0.
    """
    raw = (text or "").strip()
    if not raw:
        raise InvalidAmount("amount is empty")
    if "," in raw or "_" in raw or " " in raw:
        raise InvalidAmount(f"'{raw}' contains separators")
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise InvalidAmount(f"'{raw}' is not a number")
    if not value.is_finite():
        raise InvalidAmount(f"'{raw}' is not a finite number")
    if value <= 0:
        raise InvalidAmount(f"'{raw}' must be greater than zero")
    return value


def _check_precision(precision: int) -> None:
    if isinstance(precision, bool) or not isinstance(precision, int) or precision < 0:
        raise ValueError(f"precision must be a non-negative integer, got {precision!r}")


def normalize(amount: AmountLike, precision: int) -> int:
    """
    Convert a decimal amount into the token's indivisible unit.

    >>> normalize("1.5", 18)
    1500000000000000000
    """
    _check_precision(precision)
    value = amount if isinstance(amount, Decimal) else parse_amount(amount)

    sign, digits, exponent = value.as_tuple()
    if sign or not isinstance(exponent, int):
        raise InvalidAmount(f"'{amount}' must be a positive finite number")

    # Work on the digit tuple; no power of ten is built until the result is
    # known to fit in a uint256, whatever the exponent.
    shift = exponent + precision
    if shift < 0:
        cut = max(len(digits) + shift, 0)
        if any(digits[cut:]):
            raise PrecisionExceeded(
                f"'{amount}' has more fractional digits than the token's "
                f"precision of {precision}"
            )
        digits = digits[:cut]
        shift = 0

    significant = "".join(str(d) for d in digits).lstrip("0")
    if len(significant) + shift > MAX_UINT256_DIGITS:
        raise InvalidAmount(f"'{amount}' does not fit in a uint256")
    units = int(significant or "0") * 10**shift

    if units > MAX_UINT256:
        raise InvalidAmount(f"'{amount}' does not fit in a uint256")
    if units == 0:
        raise InvalidAmount(f"'{amount}' is zero in the token's smallest unit")
    return units


def denormalize(units: int, precision: int) -> Decimal:
    """Inverse of normalize(): the exact Decimal value of an integer amount."""
    _check_precision(precision)
    if units < 0:
        raise ValueError("units must be non-negative")
    return Decimal((0, tuple(int(d) for d in str(units)), -precision))


def format_units(units: int, precision: int) -> str:
    """Render an integer amount as plain decimal text, without trailing zeros."""
    text = format(denormalize(units, precision), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class AmountNormalizer:
    """Normalizes every amount of a batch against one token precision."""

    def __init__(self, precision: int):
        _check_precision(precision)
        self.precision = precision

    def normalize(self, amount: AmountLike) -> int:
        return normalize(amount, self.precision)

    def normalize_all(self, entries: Iterable) -> list[int]:
        """
        Normalize entries in order. The first failure aborts the whole batch
        and is re-raised with the 1-indexed row of the offending entry.
        """
        amounts = []
        for entry in entries:
            try:
                amounts.append(normalize(entry.amount, self.precision))
            except (PrecisionExceeded, InvalidAmount) as e:
                logger.info("Normalization failed at row %s: %s", entry.row, e.detail)
                raise type(e)(e.detail, row=entry.row) from e
        return amounts
