"""
Tests for the main VAT document processing pipeline.
"""

import asyncio
import hashlib
import json
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc_ai.categorization import CategorizedResult
from vatdoc_ai.config import VatDocSettings
from vatdoc_ai.llm.document_service import BaseDocumentService, ServiceResponse
from vatdoc_ai.parsing.schema import EXCLUSION_FLAGS, Category, CategoryHint, ExtractionMethod, ValidationFlag
from vatdoc_ai.pipeline import TerminalFailure, VatDocumentProcessor


def invoice_text(reference="2041", vat="111.36", subtotal="484.17", total="595.53"):
    return (
        "ACME Office Supplies Ltd\n"
        "12 Harbour Road, Dublin 2\n"
        "VAT No: IE1234567T\n"
        f"Invoice Number: INV-{reference}\n"
        "Date: 15/03/2024\n"
        f"Subtotal: {subtotal}\n"
        f"Total Amount VAT: €{vat}\n"
        f"Total Due: €{total}\n"
    )


def model_response(vat_data, document_type="INVOICE", confidence=0.95, text="Total Amount VAT: €111.36"):
    payload = {
        "documentType": document_type,
        "vatData": vat_data,
        "classification": {"category": "PURCHASES", "confidence": confidence},
        "extractedText": text,
    }
    return ServiceResponse(text=json.dumps(payload), input_tokens=500, output_tokens=120, model="gpt-4o-mini")


FULL_RESPONSE = model_response({"totalVatAmount": 111.36, "subtotal": 484.17, "grandTotal": 595.53})


class TestVatDocumentProcessor:
    """Test cases for VatDocumentProcessor."""

    def setup_method(self):
        """Set up test fixtures."""
        self.service = Mock(spec=BaseDocumentService)
        self.service.complete.return_value = FULL_RESPONSE
        self.processor = VatDocumentProcessor(
            settings=VatDocSettings(api_key="test-key", store_path=None),
            service=self.service,
            background_learning=False,
        )

    def teardown_method(self):
        self.processor.close()

    def _process(self, text, hint=CategoryHint.PURCHASES):
        return asyncio.run(self.processor.process(text.encode("utf-8"), "text/plain", "invoice.txt", hint))

    def test_initialization(self):
        """Test processor initialization."""
        assert self.processor.orchestrator is not None
        assert self.processor.engine is not None
        assert self.processor.scorer is not None
        assert self.processor.template_store is not None
        assert self.processor.learner is not None

    def test_end_to_end_purchase_invoice(self):
        """Test a purchase invoice with a consistent breakdown scores high."""
        document = invoice_text()
        result = self._process(document)

        assert isinstance(result, CategorizedResult)
        assert result.purchase_amounts == [111.36]
        assert result.sales_amounts == []
        assert result.classification == Category.PURCHASES
        assert result.confidence >= 0.9
        assert result.confidence == pytest.approx(0.98)
        assert result.extraction_method == ExtractionMethod.TEXT
        assert result.document_id == hashlib.sha256(document.encode("utf-8")).hexdigest()
        assert len(result.attempts) == 1
        assert not EXCLUSION_FLAGS.intersection(result.validation_flags)

    def test_document_without_amounts_has_minimum_confidence(self):
        """Test a document with no VAT amounts scores at most 0.1."""
        self.service.complete.return_value = model_response({}, text="Thank you")
        result = self._process("Thank you for your business")

        assert result.all_amounts == []
        assert result.confidence <= 0.1
        assert ValidationFlag.NO_AMOUNTS_FOUND in result.validation_flags

    def test_template_created_then_matched(self):
        """Test a confident result creates a template that fills gaps in the next document."""
        first = self._process(invoice_text())
        templates = self.processor.store.list_templates()
        assert len(templates) == 1
        assert first.template_id is None

        self.service.complete.return_value = model_response({"totalVatAmount": 98.10}, text="")
        second = self._process(invoice_text(reference="3310", vat="98.10", subtotal="426.52", total="524.62"))

        assert second.template_id == templates[0].id
        assert second.purchase_amounts == [98.10]
        assert second.parsed.subtotal == pytest.approx(426.52)
        assert second.parsed.grand_total == pytest.approx(524.62)
        assert self.processor.store.get_template(templates[0].id).usage_count == 2
        assert len(self.processor.store.list_templates()) == 1

    def test_correction_updates_calibration(self):
        """Test a correction lowers the factor for its document type and method."""
        result = self._process(invoice_text())

        self.processor.submit_correction(result, [], [100.00], "wrong_amount")

        entry = self.processor.store.get_calibration("INVOICE", "AI_TEXT")
        assert entry.factor < 1.0
        assert entry.correction_count == 1
        assert self.processor.store.rejected_amounts() == [111.36]

        stats = self.processor.get_processing_stats()
        assert stats['calibrations']['INVOICE_AI_TEXT']['corrections'] == 1
        assert stats['pending_corrections'] == 1
        assert stats['rejected_amounts'] == 1

    def test_rejected_amount_is_excluded_next_time(self):
        """Test an amount rejected by a correction is excluded from the next result."""
        result = self._process(invoice_text())
        self.processor.submit_correction(result, [], [100.00], "wrong_amount")

        again = self._process(invoice_text())

        assert 111.36 not in again.all_amounts
        assert ValidationFlag.AMOUNT_EXCLUDED_PREVIOUSLY_REJECTED in again.validation_flags
        excluded = EXCLUSION_FLAGS.intersection(again.validation_flags)
        assert excluded == {ValidationFlag.AMOUNT_EXCLUDED_PREVIOUSLY_REJECTED}

    def test_terminal_failure_is_returned(self):
        """Test an unsupported upload returns a TerminalFailure."""
        result = asyncio.run(self.processor.process(b"PK\x03\x04", "application/zip", "archive.zip"))

        assert isinstance(result, TerminalFailure)
        assert result.error_code == "UNSUPPORTED_MEDIA_TYPE"

    def test_get_processing_stats(self):
        """Test processing statistics."""
        stats = self.processor.get_processing_stats()

        assert stats['text_models'] == ["gpt-4o-mini", "gpt-4-turbo"]
        assert stats['governor']['circuit_open'] is False
        assert stats['templates'] == {'total': 0, 'active': 0}
        assert stats['pending_corrections'] == 0

    def test_run_learning(self):
        """Test an explicit learning pass consumes pending corrections."""
        result = self._process(invoice_text())
        self.processor.submit_correction(result, [], [111.36], "correct")

        report = self.processor.run_learning()

        assert report.corrections_processed == 1
        assert self.processor.get_processing_stats()['pending_corrections'] == 0


class TestWithoutService:
    """Test cases for a processor without an API key."""

    def setup_method(self):
        """Set up test fixtures."""
        self.processor = VatDocumentProcessor(
            settings=VatDocSettings(api_key=None, store_path=None),
            background_learning=False,
        )

    def teardown_method(self):
        self.processor.close()

    def test_text_documents_use_heuristics(self):
        """Test text documents are handled by the heuristic extractor."""
        result = asyncio.run(self.processor.process(invoice_text().encode("utf-8"), "text/plain", "invoice.txt"))

        assert self.processor.service is None
        assert result.extraction_method == ExtractionMethod.HEURISTIC
        assert result.purchase_amounts == [111.36]
        assert ValidationFlag.FALLBACK_USED in result.parsed.flags

    def test_images_fail(self):
        """Test images cannot be processed without a vision model."""
        from io import BytesIO

        from PIL import Image

        buffer = BytesIO()
        Image.new("RGB", (10, 10)).save(buffer, format="PNG")
        result = asyncio.run(self.processor.process(buffer.getvalue(), "image/png", "receipt.png"))

        assert isinstance(result, TerminalFailure)
        assert result.attempts == ()

    def test_process_batch(self, tmp_path):
        """Test batch processing keeps input order and isolates failures."""
        invoice = tmp_path / "invoice.txt"
        invoice.write_text(invoice_text(), encoding="utf-8")
        archive = tmp_path / "archive.zip"
        archive.write_bytes(b"PK\x03\x04")
        missing = tmp_path / "missing.txt"

        results = asyncio.run(self.processor.process_batch([invoice, archive, missing]))

        assert [path for path, _ in results] == [str(invoice), str(archive), str(missing)]
        assert isinstance(results[0][1], CategorizedResult)
        assert results[0][1].purchase_amounts == [111.36]
        assert results[1][1].error_code == "UNSUPPORTED_MEDIA_TYPE"
        assert isinstance(results[2][1], TerminalFailure)

    def test_learning_survives_restart(self, tmp_path):
        """Test corrections written to a JSON store are loaded by a new processor."""
        settings = VatDocSettings(api_key=None, store_path=str(tmp_path / "learning.json"))
        processor = VatDocumentProcessor(settings=settings, background_learning=False)
        result = asyncio.run(processor.process(invoice_text().encode("utf-8"), "text/plain", "invoice.txt"))
        processor.submit_correction(result, [], [100.00], "wrong_amount")
        processor.close()

        restarted = VatDocumentProcessor(settings=settings, background_learning=False)
        try:
            assert restarted.store.get_calibration("INVOICE", "HEURISTIC").correction_count == 1
            assert restarted.store.rejected_amounts() == [111.36]
        finally:
            restarted.close()
