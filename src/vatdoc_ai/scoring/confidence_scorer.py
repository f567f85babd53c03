"""
Confidence scoring for categorized VAT results.

The score is built in a fixed order:
1. Base score from the number and plausibility of the amounts found
2. Additive boosts for structural evidence, capped at 0.98
3. A penalty per validation flag
4. Multiplication by the learned calibration factor for
   (document type, extraction method), then a clamp to [0.1, 0.99]
"""

import logging
import math
from typing import Dict, List, Optional

from ..categorization.engine import CategorizedResult
from ..learning.records import Template
from ..learning.stores import LearningStore
from ..parsing.schema import DocumentType, ParsedExtraction, ValidationFlag

logger = logging.getLogger(__name__)

# Irish VAT rates, in percent
DEFAULT_VALID_RATES = [0.0, 4.8, 9.0, 13.5, 23.0]

NO_AMOUNT_CONFIDENCE = 0.1
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.99
BOOSTED_CAP = 0.98
FLAG_PENALTY = 0.05

BOOSTS = {
    'valid_rate': 0.05,
    'line_items': 0.05,
    'explicit_total': 0.10,
    'document_type': 0.05,
    'template': 0.05,
}


class ConfidenceScorer:
    """
    Confidence model for categorized results.

    Calibration factors are read from the learning store; without a store
    every factor is 1.0.
    """

    def __init__(
        self,
        store: Optional[LearningStore] = None,
        valid_rates: Optional[List[float]] = None,
        plausible_min: float = 0.01,
        plausible_max: float = 10000.0,
        tolerance: float = 0.02,
    ):
        """
        Initialize the confidence scorer.

        Args:
            store: Learning store holding calibration entries
            valid_rates: Known valid VAT rates in percent
            plausible_min: Smallest plausible single tax amount
            plausible_max: Largest plausible single tax amount
            tolerance: Tolerance for breakdown and rate matching
        """
        self.store = store
        self.valid_rates = list(DEFAULT_VALID_RATES if valid_rates is None else valid_rates)
        self.plausible_min = plausible_min
        self.plausible_max = plausible_max
        self.tolerance = tolerance

    def score(self, result: CategorizedResult, template: Optional[Template] = None) -> float:
        """
        Compute and store the confidence of ``result``.

        Args:
            result: Categorized result to score
            template: Template matched for this document, if any

        Returns:
            Confidence in [0.1, 0.99]
        """
        amounts = result.all_amounts
        if not amounts:
            result.confidence = NO_AMOUNT_CONFIDENCE
            return result.confidence

        base = self.base_score(amounts, result.parsed)
        boosts = self.boosts(result.parsed, template)
        raw = min(base + sum(boosts.values()), BOOSTED_CAP)
        raw -= FLAG_PENALTY * len(result.validation_flags)
        raw = round(raw, 4)

        factor = self.calibration_factor(result.document_type.value, result.extraction_method.value)
        confidence = max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, raw * factor))

        logger.debug(
            f"Confidence: base {base:.2f}, boosts {sorted(boosts)}, "
            f"flags {len(result.validation_flags)}, factor {factor:.3f} -> {confidence:.3f}"
        )
        result.confidence = confidence
        return confidence

    def base_score(self, amounts: List[float], parsed: ParsedExtraction) -> float:
        if len(amounts) == 1:
            amount = amounts[0]
            if self.matches_breakdown(amount, parsed):
                return 0.9
            if self.plausible_min <= amount <= self.plausible_max:
                return 0.75
            return 0.5
        return 0.8 + min(0.02 * (len(amounts) - 1), 0.15)

    def matches_breakdown(self, amount: float, parsed: ParsedExtraction) -> bool:
        """True when line items sum to ``amount`` or subtotal + amount equals the grand total."""
        item_amounts = [
            item.tax_amount for item in parsed.line_items
            if item.tax_amount is not None and item.tax_amount > 0
        ]
        if len(item_amounts) >= 2 and abs(math.fsum(item_amounts) - amount) <= self.tolerance:
            return True
        if parsed.subtotal is not None and parsed.grand_total is not None:
            return abs(parsed.subtotal + amount - parsed.grand_total) <= self.tolerance
        return False

    def boosts(self, parsed: ParsedExtraction, template: Optional[Template] = None) -> Dict[str, float]:
        """Boosts that apply to ``parsed``, by name."""
        applied = {}
        if self.has_valid_rate(parsed):
            applied['valid_rate'] = BOOSTS['valid_rate']
        if parsed.has_structured_line_items:
            applied['line_items'] = BOOSTS['line_items']
        if parsed.tax_total is not None and ValidationFlag.FALLBACK_STRUCTURE not in parsed.flags:
            applied['explicit_total'] = BOOSTS['explicit_total']
        classification_confidence = parsed.classification.confidence
        if (
            parsed.document_type != DocumentType.OTHER
            and classification_confidence is not None
            and classification_confidence >= 0.8
        ):
            applied['document_type'] = BOOSTS['document_type']
        if template is not None and template.success_rate >= 0.8:
            applied['template'] = BOOSTS['template']
        return applied

    def has_valid_rate(self, parsed: ParsedExtraction) -> bool:
        rates = list(parsed.tax_rates)
        # Fall back to the effective rate implied by the totals
        if not rates and parsed.tax_total and parsed.subtotal:
            rates.append(round(parsed.tax_total / parsed.subtotal * 100, 1))
        return any(
            abs(rate - valid) <= 0.1 for rate in rates for valid in self.valid_rates
        )

    def calibration_factor(self, document_type: str, extraction_method: str) -> float:
        if self.store is None:
            return 1.0
        entry = self.store.get_calibration(document_type, extraction_method)
        return entry.factor if entry is not None else 1.0
