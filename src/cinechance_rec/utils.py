"""Utility helpers for cinechance_rec."""

import math
import logging
from typing import TypeVar, Iterable, Iterator

logger = logging.getLogger(__name__)

T = TypeVar('T')


def round_half_up(value: float, ndigits: int = 0) -> float:
    """
    Round with halves going up (towards +inf), unlike Python's banker's rounding.

    Scores and percentages are rounded this way everywhere so that e.g.
    72.5 -> 73 and -2.5 -> -2.

    Args:
        value: Number to round
        ndigits: Decimal places to keep

    Returns:
        Rounded value (int when ndigits == 0)
    """
    factor = 10 ** ndigits
    rounded = math.floor(value * factor + 0.5) / factor
    if ndigits == 0:
        return int(rounded)
    return rounded


def percent(part: int | float, whole: int | float) -> int:
    """Integer percentage of part in whole, 0 when whole is 0."""
    if not whole:
        return 0
    return round_half_up(part / whole * 100)


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield successive lists of at most `size` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive, got {size}")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch
