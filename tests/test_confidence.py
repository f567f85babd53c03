"""
Tests for the confidence scorer.
"""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc_ai.categorization import CategorizedResult
from vatdoc_ai.learning import CalibrationEntry, InMemoryLearningStore
from vatdoc_ai.learning.fingerprint import fingerprint
from vatdoc_ai.learning.records import Template
from vatdoc_ai.parsing.schema import (
    DocumentType,
    ExtractionMethod,
    LineItem,
    ModelClassification,
    ParsedExtraction,
    ValidationFlag,
)
from vatdoc_ai.scoring import ConfidenceScorer


def invoice_result(amounts, flags=(), **parsed_fields):
    parsed = ParsedExtraction(**parsed_fields)
    return CategorizedResult(
        parsed=parsed,
        purchase_amounts=list(amounts),
        validation_flags=list(flags),
        extraction_method=ExtractionMethod.VISION,
    )


class TestConfidenceScorer:
    """Test cases for ConfidenceScorer."""

    def setup_method(self):
        """Set up test fixtures."""
        self.scorer = ConfidenceScorer()

    def test_no_amounts_is_exactly_minimum(self):
        """Test a result without amounts scores 0.1 whatever else it carries."""
        result = invoice_result([], tax_total=None, document_type=DocumentType.INVOICE,
                                classification=ModelClassification(confidence=0.99))
        assert self.scorer.score(result) == 0.1
        assert result.confidence == 0.1

    def test_breakdown_match_with_all_boosts_is_capped(self):
        """Test an amount matching subtotal + VAT = total reaches the 0.98 cap."""
        result = invoice_result(
            [111.36],
            document_type=DocumentType.INVOICE,
            subtotal=484.17,
            tax_total=111.36,
            grand_total=595.53,
            classification=ModelClassification(confidence=0.95),
        )
        assert self.scorer.score(result) == pytest.approx(0.98)

    def test_single_plausible_amount(self):
        """Test a lone plausible amount with an explicit total."""
        result = invoice_result([50.0], tax_total=50.0)
        assert self.scorer.score(result) == pytest.approx(0.85)

    def test_single_implausible_amount(self):
        """Test an amount outside the plausible range gets the low base score."""
        result = invoice_result([25000.0], tax_total=25000.0)
        assert self.scorer.score(result) == pytest.approx(0.6)

    def test_several_amounts(self):
        """Test several amounts with line items at a valid rate."""
        items = tuple(LineItem(tax_rate=23.0, tax_amount=value) for value in (10.0, 20.0, 30.0))
        result = invoice_result([10.0, 20.0, 30.0], line_items=items)
        # 0.8 + 0.04 base, valid rate and line item boosts
        assert self.scorer.score(result) == pytest.approx(0.94)

    def test_line_items_summing_to_amount_match_breakdown(self):
        """Test two or more line items adding up to the amount count as a breakdown."""
        items = (LineItem(tax_amount=1.51), LineItem(tax_amount=109.85))
        parsed = ParsedExtraction(line_items=items, tax_total=111.36)
        assert self.scorer.matches_breakdown(111.36, parsed)
        assert not self.scorer.matches_breakdown(103.16, parsed)

    def test_flag_penalty(self):
        """Test each validation flag costs 0.05."""
        flags = [ValidationFlag.MISMATCH_RESOLVED_BY_TOTAL, ValidationFlag.AMOUNT_EXCLUDED_ABOVE_CEILING]
        result = invoice_result([50.0], flags=flags, tax_total=50.0)
        assert self.scorer.score(result) == pytest.approx(0.75)

    def test_fallback_structure_is_not_an_explicit_total(self):
        """Test a total synthesised from raw text earns no explicit-total boost."""
        parsed = ParsedExtraction(tax_total=50.0, flags=(ValidationFlag.FALLBACK_STRUCTURE,))
        result = CategorizedResult(
            parsed=parsed, purchase_amounts=[50.0], validation_flags=[ValidationFlag.FALLBACK_STRUCTURE]
        )
        assert "explicit_total" not in self.scorer.boosts(result.parsed)
        assert self.scorer.score(result) == pytest.approx(0.7)

    def test_effective_rate_counts_as_valid_rate(self):
        """Test a tax/subtotal ratio at a national rate earns the rate boost."""
        assert self.scorer.has_valid_rate(ParsedExtraction(subtotal=100.0, tax_total=13.5))
        assert not self.scorer.has_valid_rate(ParsedExtraction(subtotal=100.0, tax_total=17.0))

    def test_low_document_type_confidence_gives_no_boost(self):
        """Test the document-type boost needs classification confidence of 0.8."""
        parsed = ParsedExtraction(document_type=DocumentType.INVOICE,
                                  classification=ModelClassification(confidence=0.6))
        assert "document_type" not in self.scorer.boosts(parsed)

    def test_template_boost(self):
        """Test a reliable matched template adds a boost."""
        template = Template(id="t1", name="ACME", fingerprint=fingerprint("ACME"), document_type="INVOICE",
                            success_rate=0.9)
        weak = Template(id="t2", name="Other", fingerprint=fingerprint("Other"), document_type="INVOICE",
                        success_rate=0.5)
        parsed = ParsedExtraction()
        assert "template" in self.scorer.boosts(parsed, template)
        assert "template" not in self.scorer.boosts(parsed, weak)


class TestCalibration:
    """Test cases for the calibration factor."""

    def test_factor_is_applied_after_boosts(self):
        """Test the factor multiplies the capped, penalised score."""
        store = InMemoryLearningStore()
        store.save_calibration(CalibrationEntry("OTHER", "AI_VISION", factor=0.5))
        scorer = ConfidenceScorer(store=store)

        result = invoice_result([50.0], tax_total=50.0)
        assert scorer.score(result) == pytest.approx(0.425)

    def test_clamped_to_upper_bound(self):
        """Test confidence never exceeds 0.99."""
        store = InMemoryLearningStore()
        store.save_calibration(CalibrationEntry("OTHER", "AI_VISION", factor=2.0))
        scorer = ConfidenceScorer(store=store)

        assert scorer.score(invoice_result([50.0], tax_total=50.0)) == 0.99

    def test_clamped_to_lower_bound(self):
        """Test confidence never drops below 0.1 once amounts exist."""
        store = InMemoryLearningStore()
        store.save_calibration(CalibrationEntry("OTHER", "AI_VISION", factor=0.25))
        scorer = ConfidenceScorer(store=store)

        flags = [ValidationFlag.MISMATCH_UNRESOLVED] * 6
        assert scorer.score(invoice_result([25000.0], flags=flags)) == 0.1

    def test_other_keys_are_unaffected(self):
        """Test a factor only applies to its own (document type, method) key."""
        store = InMemoryLearningStore()
        store.save_calibration(CalibrationEntry("INVOICE", "AI_TEXT", factor=0.5))
        scorer = ConfidenceScorer(store=store)

        assert scorer.calibration_factor("INVOICE", "AI_VISION") == 1.0
        assert scorer.calibration_factor("INVOICE", "AI_TEXT") == 0.5
