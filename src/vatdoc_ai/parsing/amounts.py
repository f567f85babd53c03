"""Helpers for reading and locating monetary amounts in text."""

import math
import re
from typing import Iterator, Optional, Tuple

# 1,234.56 | 1234.56 | 1.234,56 | 111,36
AMOUNT_PATTERN = re.compile(
    r"(?<![\d.,])(\d{1,3}(?:[.,]\d{3})+|\d+)([.,]\d{2})(?![\d])"
)

# Any printed figure, including 500 | 1,500 | 93.5
PRINTED_AMOUNT_PATTERN = re.compile(
    r"(?<![\d.,])(?:\d{1,3}(?:[.,]\d{3})+|\d+)(?:[.,]\d{1,2})?(?![\d])"
)

DEFAULT_MAX_VALUE = 10_000_000.0


def parse_amount(value, max_value: float = DEFAULT_MAX_VALUE) -> Optional[float]:
    """
    Coerce a model-supplied value into a valid amount.

    Args:
        value: Number or string such as "€1,234.56" or "111,36"
        max_value: Values above this are treated as absurd

    Returns:
        A finite, non-negative float, or None when the value is invalid
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        number = _parse_amount_text(value)
        if number is None:
            return None
    else:
        return None

    if not math.isfinite(number) or number < 0 or number > max_value:
        return None
    return number


def _parse_amount_text(text: str) -> Optional[float]:
    cleaned = re.sub(r"[^\d.,\-]", "", text.strip())
    if not cleaned or cleaned in {"-", ".", ","}:
        return None

    if "," in cleaned and "." in cleaned:
        # Whichever separator comes last is the decimal point
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) in (1, 2):
            cleaned = head.replace(",", "") + "." + tail
        else:
            cleaned = cleaned.replace(",", "")

    try:
        return float(cleaned)
    except ValueError:
        return None


def iter_amounts(text: str, pattern: re.Pattern = AMOUNT_PATTERN) -> Iterator[Tuple[float, int, int]]:
    """Yield (value, start, end) for every amount token in ``text``, decimal-only by default."""
    for match in pattern.finditer(text):
        value = _parse_amount_text(match.group(0))
        if value is not None:
            yield value, match.start(), match.end()


def find_amount_positions(
    text: str, amount: float, tolerance: float = 0.005, pattern: re.Pattern = AMOUNT_PATTERN
) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) spans where ``amount`` is printed in ``text``."""
    for value, start, end in iter_amounts(text, pattern):
        if abs(value - amount) <= tolerance:
            yield start, end


def cents(value: float) -> float:
    return round(value, 2)
