"""
Categorization and reconciliation of extracted VAT amounts.

Turns a ParsedExtraction into a CategorizedResult:
1. Collect candidate amounts (line-item tax amounts, else the stated tax total)
2. Drop amounts caught by the exclusion filter
3. Decide SALES or PURCHASES (caller hint, vocabulary, model, default)
4. Reconcile itemized amounts against the stated tax total

The engine is a pure function of its inputs; running it twice on the same
extraction, text, hint and rejected-amount list gives equal results.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..classifiers.document_classifier import DocumentTypeAnalyzer
from ..parsing.amounts import cents
from ..parsing.schema import (
    Category,
    CategoryHint,
    DocumentType,
    ExtractionAttempt,
    ExtractionMethod,
    ParsedExtraction,
    ValidationFlag,
)
from .exclusion import ExclusionFilter

logger = logging.getLogger(__name__)


@dataclass
class CategorizedResult:
    """Canonical VAT record for one document."""

    parsed: ParsedExtraction
    sales_amounts: List[float] = field(default_factory=list)
    purchase_amounts: List[float] = field(default_factory=list)
    classification: Category = Category.PURCHASES
    reasoning: str = ""
    confidence: float = 0.0  # Set by the confidence scorer
    validation_flags: List[ValidationFlag] = field(default_factory=list)
    extraction_method: ExtractionMethod = ExtractionMethod.VISION
    document_id: Optional[str] = None
    template_id: Optional[str] = None
    attempts: List[ExtractionAttempt] = field(default_factory=list)
    itemized_sum: Optional[float] = None
    stated_total: Optional[float] = None

    @property
    def document_type(self) -> DocumentType:
        return self.parsed.document_type

    @property
    def all_amounts(self) -> List[float]:
        return self.sales_amounts + self.purchase_amounts

    @property
    def total_amount(self) -> float:
        return cents(math.fsum(self.all_amounts))

    @property
    def needs_review(self) -> bool:
        return ValidationFlag.MISMATCH_UNRESOLVED in self.validation_flags

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view of the result."""
        parsed = self.parsed
        return {
            'document_id': self.document_id,
            'document_type': parsed.document_type.value,
            'classification': self.classification.value,
            'reasoning': self.reasoning,
            'sales_amounts': list(self.sales_amounts),
            'purchase_amounts': list(self.purchase_amounts),
            'total_amount': self.total_amount,
            'confidence': self.confidence,
            'validation_flags': [flag.value for flag in self.validation_flags],
            'extraction_method': self.extraction_method.value,
            'template_id': self.template_id,
            'itemized_sum': self.itemized_sum,
            'stated_total': self.stated_total,
            'business': {
                'name': parsed.business.name,
                'vat_number': parsed.business.tax_id,
                'address': parsed.business.address,
            },
            'transaction': {
                'date': parsed.transaction.date,
                'reference': parsed.transaction.reference,
                'currency': parsed.transaction.currency,
            },
            'tax_rates': list(parsed.tax_rates),
            'attempts': [
                {
                    'model': attempt.model,
                    'started_at': attempt.started_at.isoformat(),
                    'duration_seconds': round(attempt.duration_seconds, 3),
                    'outcome': attempt.outcome.value,
                    'error': attempt.error,
                }
                for attempt in self.attempts
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CategorizedResult":
        """
        Rebuild enough of a result from ``to_dict`` output to submit feedback on it.

        Line items, raw text and attempts are not restored.
        """
        parsed = ParsedExtraction(document_type=DocumentType.parse(data.get('document_type')))
        return cls(
            parsed=parsed,
            sales_amounts=[float(value) for value in data.get('sales_amounts', [])],
            purchase_amounts=[float(value) for value in data.get('purchase_amounts', [])],
            classification=Category.parse(data.get('classification')) or Category.PURCHASES,
            reasoning=data.get('reasoning', ''),
            confidence=float(data.get('confidence', 0.0)),
            validation_flags=[ValidationFlag(flag) for flag in data.get('validation_flags', [])],
            extraction_method=ExtractionMethod(data.get('extraction_method', ExtractionMethod.VISION.value)),
            document_id=data.get('document_id'),
            template_id=data.get('template_id'),
            itemized_sum=data.get('itemized_sum'),
            stated_total=data.get('stated_total'),
        )


class CategorizationEngine:
    """
    Assigns surviving tax amounts to SALES or PURCHASES and reconciles them.

    Reconciliation rules, for two or more surviving itemized amounts:
    - sum within tolerance of the stated total: consolidate to ``[total]``
    - mismatch, stated total plausible: replace with ``[total]``,
      flag MISMATCH_RESOLVED_BY_TOTAL
    - mismatch, stated total implausible: keep itemized amounts,
      flag MISMATCH_UNRESOLVED
    """

    def __init__(
        self,
        exclusion_filter: Optional[ExclusionFilter] = None,
        analyzer: Optional[DocumentTypeAnalyzer] = None,
        tolerance: float = 0.02,
    ):
        self.exclusion_filter = exclusion_filter or ExclusionFilter()
        self.analyzer = analyzer or DocumentTypeAnalyzer()
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, settings) -> "CategorizationEngine":
        return cls(
            exclusion_filter=ExclusionFilter(
                ceiling=settings.tax_ceiling,
                window=settings.exclusion_window,
            ),
            tolerance=settings.reconciliation_tolerance,
        )

    def categorize(
        self,
        parsed: ParsedExtraction,
        document_text: Optional[str] = None,
        category_hint: CategoryHint = CategoryHint.UNKNOWN,
        rejected_amounts: Iterable[float] = (),
        extraction_method: ExtractionMethod = ExtractionMethod.VISION,
    ) -> CategorizedResult:
        """
        Build the canonical record for one extraction.

        Args:
            parsed: Decoded model (or heuristic) output
            document_text: Text of the document; defaults to the extracted text
            category_hint: Category supplied by the caller
            rejected_amounts: Amounts proven wrong by earlier corrections
            extraction_method: How ``parsed`` was produced

        Returns:
            CategorizedResult with confidence still unset
        """
        text = document_text if document_text else parsed.extracted_text
        rejected = tuple(rejected_amounts)
        flags: List[ValidationFlag] = list(parsed.flags)

        itemized: List[float] = []
        for item in parsed.line_items:
            if item.tax_amount is None or item.tax_amount <= 0:
                continue
            excluded = self.exclusion_filter.check(item.tax_amount, text, rejected)
            if excluded:
                flags.append(excluded)
            else:
                itemized.append(cents(item.tax_amount))

        stated: Optional[float] = None
        if parsed.tax_total is not None and parsed.tax_total > 0:
            excluded = self.exclusion_filter.check(parsed.tax_total, text, rejected)
            if excluded:
                flags.append(excluded)
            else:
                stated = cents(parsed.tax_total)

        category, reasoning = self._decide_category(parsed, text, category_hint)
        amounts, reconciliation_flag, itemized_sum, stated_total = self._reconcile(
            itemized, stated, parsed.grand_total
        )
        if reconciliation_flag:
            flags.append(reconciliation_flag)

        result = CategorizedResult(
            parsed=parsed,
            classification=category,
            reasoning=reasoning,
            extraction_method=extraction_method,
            itemized_sum=itemized_sum,
            stated_total=stated_total,
        )
        if category == Category.SALES:
            result.sales_amounts = amounts
        else:
            result.purchase_amounts = amounts

        if not amounts:
            flags.append(ValidationFlag.NO_AMOUNTS_FOUND)
        result.validation_flags = list(dict.fromkeys(flags))

        logger.info(
            f"Categorized as {category.value}: sales={result.sales_amounts} "
            f"purchases={result.purchase_amounts} flags={[f.value for f in result.validation_flags]}"
        )
        return result

    def _decide_category(
        self, parsed: ParsedExtraction, text: str, category_hint: CategoryHint
    ) -> Tuple[Category, str]:
        if category_hint == CategoryHint.SALES:
            return Category.SALES, "Category supplied by caller"
        if category_hint == CategoryHint.PURCHASES:
            return Category.PURCHASES, "Category supplied by caller"

        analysis = self.analyzer.analyze(text)
        if analysis.suggested_category is not None:
            terms = ", ".join(analysis.matched_terms)
            return analysis.suggested_category, f"Lease/financial-services document ({terms})"

        model_category = parsed.classification.category
        if model_category is not None:
            reasoning = parsed.classification.reasoning or "Model classification"
            return model_category, reasoning

        return Category.PURCHASES, "No category signal; defaulted to purchases"

    def _reconcile(
        self,
        itemized: List[float],
        stated: Optional[float],
        grand_total: Optional[float],
    ) -> Tuple[List[float], Optional[ValidationFlag], Optional[float], Optional[float]]:
        """Return (amounts, flag, itemized_sum, stated_total)."""
        if not itemized:
            return ([stated] if stated is not None else []), None, None, None
        if len(itemized) == 1 or stated is None:
            return list(itemized), None, None, None

        itemized_sum = cents(math.fsum(itemized))
        if abs(itemized_sum - stated) <= self.tolerance:
            return [stated], None, None, None

        if self._is_plausible_total(stated, itemized, grand_total):
            logger.warning(
                f"Itemized sum {itemized_sum:.2f} disagrees with stated total {stated:.2f} - using stated total"
            )
            return [stated], ValidationFlag.MISMATCH_RESOLVED_BY_TOTAL, itemized_sum, stated

        logger.warning(
            f"Itemized sum {itemized_sum:.2f} disagrees with implausible stated total {stated:.2f} "
            f"- keeping itemized amounts for review"
        )
        return list(itemized), ValidationFlag.MISMATCH_UNRESOLVED, itemized_sum, stated

    def _is_plausible_total(
        self, stated: float, itemized: List[float], grand_total: Optional[float]
    ) -> bool:
        if stated <= 0 or stated > self.exclusion_filter.ceiling:
            return False
        if stated < max(itemized) - self.tolerance:
            return False
        if grand_total is not None and stated > grand_total + self.tolerance:
            return False
        return True
