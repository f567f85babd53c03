"""
Tests for amount parsing, JSON recovery and the heuristic extractor.
"""

import json
import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc_ai.parsing import (
    Category,
    DocumentType,
    HeuristicExtractor,
    RecoveryLevel,
    ValidationFlag,
    decode_extraction,
    parse_model_response,
    recover_json,
)
from vatdoc_ai.parsing.amounts import find_amount_positions, iter_amounts, parse_amount
from vatdoc_ai.parsing.json_recovery import first_balanced_object

SAMPLE_INVOICE = """ACME Office Supplies Ltd
12 Harbour Road, Dublin 2
VAT No: IE1234567T
Invoice Number: INV-2041
Date: 15/03/2024
Subtotal: 484.17
Total Amount VAT: €111.36
Total Due: €595.53
"""


class TestParseAmount:
    """Test cases for amount coercion."""

    @pytest.mark.parametrize("raw, expected", [
        (111.36, 111.36),
        (0, 0.0),
        ("€1,234.56", 1234.56),
        ("1.234,56", 1234.56),
        ("111,36", 111.36),
        ("12,000", 12000.0),
    ])
    def test_valid_amounts(self, raw, expected):
        """Test numbers and formatted strings are accepted."""
        assert parse_amount(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [None, True, -5, "-5.00", "NaN", float("nan"), float("inf"), "n/a", [1.0]])
    def test_invalid_amounts(self, raw):
        """Test negative, non-finite and non-numeric values are dropped."""
        assert parse_amount(raw) is None

    def test_value_above_ceiling_is_dropped(self):
        """Test values above max_value are treated as absurd."""
        assert parse_amount(60000.0, max_value=50000.0) is None

    def test_find_amount_positions(self):
        """Test printed amounts are located in text."""
        text = "VAT: €111.36 Total: 595.53"
        spans = list(find_amount_positions(text, 111.36))
        assert len(spans) == 1
        start, end = spans[0]
        assert text[start:end] == "111.36"

    def test_iter_amounts_ignores_integers_and_dates(self):
        """Test only decimal amount tokens are reported."""
        values = [value for value, _, _ in iter_amounts("Date 15/03/2024 qty 3 price 24.99")]
        assert values == [24.99]


class TestJsonRecovery:
    """Test cases for recovering JSON objects from model responses."""

    def test_strict_json(self):
        """Test a clean JSON response parses strictly."""
        payload, level = recover_json('{"documentType": "INVOICE"}')
        assert payload == {"documentType": "INVOICE"}
        assert level == RecoveryLevel.STRICT

    def test_json_wrapped_in_markdown_and_prose(self):
        """Test the first balanced object is recovered from surrounding text."""
        raw = 'Here you go:\n```json\n{"vatData": {"totalVatAmount": 23.0}}\n```\nAnything else?'
        payload, level = recover_json(raw)
        assert payload == {"vatData": {"totalVatAmount": 23.0}}
        assert level == RecoveryLevel.BALANCED

    def test_braces_inside_strings_are_ignored(self):
        """Test braces inside JSON strings do not end the object early."""
        raw = 'Result: {"extractedText": "Total {VAT} \\"net\\" €111.36", "vatData": {"totalVatAmount": "111.36"}} done'
        parsed, level = parse_model_response(raw)
        assert level == RecoveryLevel.BALANCED
        assert parsed.tax_total == pytest.approx(111.36)
        assert parsed.extracted_text == 'Total {VAT} "net" €111.36'

    def test_unbalanced_returns_none(self):
        """Test an unterminated object yields no balanced substring."""
        assert first_balanced_object('{"vatData": [1, 2') is None
        assert first_balanced_object('{"a": {"b": 1}') == '{"b": 1}'

    def test_truncated_response_falls_back_to_minimal_structure(self):
        """Test a truncated response yields the largest amount, flagged."""
        raw = '{"vatData": {"totalVatAmount": 111.36, "grandTotal": 595'
        parsed, level = parse_model_response(raw)
        assert level == RecoveryLevel.MINIMAL
        assert parsed.tax_total == pytest.approx(111.36)
        assert parsed.line_items == ()
        assert ValidationFlag.FALLBACK_STRUCTURE in parsed.flags

    def test_minimal_structure_prefers_amount_after_vat_label(self):
        """Test the amount printed after a VAT label wins over larger amounts."""
        raw = "I could not produce JSON. The VAT on this invoice is 23.45 and the total is 125.45."
        parsed, level = parse_model_response(raw)
        assert level == RecoveryLevel.MINIMAL
        assert parsed.tax_total == pytest.approx(23.45)

    def test_minimal_structure_without_amounts(self):
        """Test a response without any amount yields an empty flagged structure."""
        parsed, level = parse_model_response("I cannot read this document.")
        assert level == RecoveryLevel.MINIMAL
        assert parsed.tax_total is None
        assert parsed.flags == (ValidationFlag.FALLBACK_STRUCTURE,)


class TestDecodeExtraction:
    """Test cases for strict decoding of recovered payloads."""

    def test_full_payload(self):
        """Test every section of a well-formed payload is decoded."""
        payload = {
            "documentType": "credit note",
            "businessDetails": {"businessName": "ACME Ltd", "vatNumber": "IE1234567T"},
            "transactionData": {"date": "15/03/2024", "invoiceNumber": "CN-7", "currency": "gbp"},
            "vatData": {
                "lineItems": [
                    {"description": "Paper", "quantity": 10, "unitPrice": 24.99, "vatRate": 23,
                     "vatAmount": 57.48, "totalAmount": 307.38},
                ],
                "subtotal": "249.90",
                "totalVatAmount": 57.48,
                "grandTotal": 307.38,
            },
            "classification": {"category": "Sales", "confidence": 95, "reasoning": "Issued by us"},
            "extractedText": "Credit note CN-7",
        }
        parsed = decode_extraction(payload)

        assert parsed.document_type == DocumentType.CREDIT_NOTE
        assert parsed.business.name == "ACME Ltd"
        assert parsed.transaction.currency == "GBP"
        assert parsed.transaction.reference == "CN-7"
        assert parsed.subtotal == pytest.approx(249.90)
        assert parsed.line_items[0].tax_rate == 23.0
        assert parsed.tax_rates == (23.0,)
        assert parsed.has_structured_line_items
        assert parsed.classification.category == Category.SALES
        assert parsed.classification.confidence == pytest.approx(0.95)
        assert parsed.flags == ()

    def test_invalid_values_are_dropped_and_flagged(self):
        """Test negative, non-numeric, absurd and out-of-range values are dropped."""
        payload = {
            "vatData": {
                "lineItems": [
                    {"vatAmount": -5, "vatRate": 230},
                    {"vatAmount": "NaN"},
                    "not an item",
                ],
                "totalVatAmount": 20.0,
                "grandTotal": 1e12,
            },
        }
        parsed = decode_extraction(payload)

        assert len(parsed.line_items) == 2
        assert all(item.tax_amount is None for item in parsed.line_items)
        assert parsed.line_items[0].tax_rate is None
        assert parsed.grand_total is None
        assert parsed.tax_total == 20.0
        assert parsed.flags == (ValidationFlag.VALUE_DROPPED_INVALID,)

    def test_missing_sections_use_defaults(self):
        """Test an empty object decodes to defaults."""
        parsed = decode_extraction({})
        assert parsed.document_type == DocumentType.OTHER
        assert parsed.transaction.currency == "EUR"
        assert parsed.classification.category is None
        assert parsed.line_items == ()

    def test_unknown_category_is_none(self):
        """Test an unrecognised category is not guessed."""
        parsed, _ = parse_model_response(json.dumps({"classification": {"category": "expenses?"}}))
        assert parsed.classification.category is None


class TestHeuristicExtractor:
    """Test cases for the text-only fallback extractor."""

    def setup_method(self):
        """Set up test fixtures."""
        self.extractor = HeuristicExtractor()

    def test_labelled_invoice(self):
        """Test labelled totals and identity fields are extracted."""
        parsed = self.extractor.extract(SAMPLE_INVOICE)

        assert parsed.tax_total == pytest.approx(111.36)
        assert parsed.subtotal == pytest.approx(484.17)
        assert parsed.grand_total == pytest.approx(595.53)
        assert parsed.document_type == DocumentType.INVOICE
        assert parsed.business.name == "ACME Office Supplies Ltd"
        assert parsed.business.tax_id == "IE1234567T"
        assert parsed.transaction.date == "15/03/2024"
        assert parsed.transaction.reference == "INV-2041"
        assert parsed.transaction.currency == "EUR"
        assert parsed.flags == (ValidationFlag.FALLBACK_USED,)

    def test_rate_is_not_taken_as_amount(self):
        """Test a percentage printed after the label is skipped."""
        parsed = self.extractor.extract("Goods 200.00\nVAT 23.00% 46.00\nTotal Due 246.00")
        assert parsed.tax_total == pytest.approx(46.00)

    def test_no_labels_no_amounts(self):
        """Test text without VAT labels yields no tax figure."""
        parsed = self.extractor.extract("Thank you for shopping with us 12.50")
        assert parsed.tax_total is None
        assert parsed.document_type == DocumentType.OTHER

    def test_grand_total_not_mistaken_for_vat(self):
        """Test a VAT figure equal to the grand total is discarded."""
        parsed = self.extractor.extract("VAT included - Total Due 25.00")
        assert parsed.grand_total == pytest.approx(25.00)
        assert parsed.tax_total is None
