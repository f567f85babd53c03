"""
Exclusion filter for candidate tax amounts.

An amount is dropped when it was proven wrong by an earlier correction, when
it exceeds the sanity ceiling for a tax figure, or when it is printed within
``window`` characters of payment/lease vocabulary.
"""

import logging
import re
from typing import Iterable, List, Optional, Tuple

from ..parsing.amounts import PRINTED_AMOUNT_PATTERN, find_amount_positions
from ..parsing.schema import ValidationFlag

logger = logging.getLogger(__name__)

PAYMENT_VOCABULARY = [
    'monthly payment',
    'lease payment',
    'rental',
    'instalment',
    'installment',
    'payment due',
    'amount due',
    'repayment',
]

# Amounts closer than this are considered the same figure
AMOUNT_MATCH_TOLERANCE = 0.005


class ExclusionFilter:
    """Decides whether a candidate amount is a tax figure at all."""

    def __init__(
        self,
        ceiling: float = 50000.0,
        window: int = 25,
        vocabulary: Optional[List[str]] = None,
    ):
        """
        Args:
            ceiling: Largest believable tax amount on one document
            window: Character distance between an amount and payment vocabulary
            vocabulary: Payment/lease phrases, case-insensitive
        """
        self.ceiling = ceiling
        self.window = window
        self.vocabulary = list(PAYMENT_VOCABULARY if vocabulary is None else vocabulary)
        self._vocabulary_pattern = (
            re.compile("|".join(re.escape(term) for term in self.vocabulary), re.IGNORECASE)
            if self.vocabulary else None
        )

    def check(
        self,
        amount: float,
        text: str,
        rejected_amounts: Iterable[float] = (),
    ) -> Optional[ValidationFlag]:
        """
        Return the exclusion flag for ``amount``, or None when it is admitted.

        Rules are applied in order: previously rejected, above ceiling,
        suspected payment.
        """
        if any(abs(amount - rejected) <= AMOUNT_MATCH_TOLERANCE for rejected in rejected_amounts):
            logger.warning(f"Excluding {amount:.2f}: rejected by an earlier correction")
            return ValidationFlag.AMOUNT_EXCLUDED_PREVIOUSLY_REJECTED

        if amount > self.ceiling:
            logger.warning(f"Excluding {amount:.2f}: above tax ceiling {self.ceiling:.2f}")
            return ValidationFlag.AMOUNT_EXCLUDED_ABOVE_CEILING

        if self.near_payment_vocabulary(amount, text):
            logger.warning(f"Excluding {amount:.2f}: printed next to payment/lease vocabulary")
            return ValidationFlag.AMOUNT_EXCLUDED_SUSPECTED_PAYMENT

        return None

    def near_payment_vocabulary(self, amount: float, text: str) -> bool:
        """True when any printed occurrence of ``amount`` lies within the window of a vocabulary term."""
        if not text or self._vocabulary_pattern is None:
            return False
        terms = self._term_spans(text)
        if not terms:
            return False
        for amount_start, amount_end in find_amount_positions(
            text, amount, AMOUNT_MATCH_TOLERANCE, PRINTED_AMOUNT_PATTERN
        ):
            for term_start, term_end in terms:
                gap = max(amount_start - term_end, term_start - amount_end, 0)
                if gap <= self.window:
                    return True
        return False

    def _term_spans(self, text: str) -> List[Tuple[int, int]]:
        return [(match.start(), match.end()) for match in self._vocabulary_pattern.finditer(text)]
