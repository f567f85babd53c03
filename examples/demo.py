#!/usr/bin/env python3
"""
Demo script for VatDoc-AI system.

This script demonstrates the VAT document processing pipeline offline: a
canned document service stands in for the remote model, so the governor,
fallback chain, reconciliation, scoring and learning loop all run for real.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc_ai import VatDocSettings, VatDocumentProcessor
from vatdoc_ai.learning import FeedbackTag
from vatdoc_ai.llm import BaseDocumentService, ServiceRequest, ServiceResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SAMPLE_INVOICE = """ACME Office Supplies Ltd
12 Harbour Road, Dublin 2
VAT No: IE1234567T
Invoice Number: INV-2041
Date: 15/03/2024

Printer paper      10 x 24.99     249.90
Toner cartridge     2 x 117.13    234.27

Subtotal: 484.17
Total Amount VAT: €111.36
Total Due: €595.53
"""

SAMPLE_RESPONSE = {
    "documentType": "INVOICE",
    "businessDetails": {"businessName": "ACME Office Supplies Ltd", "vatNumber": "IE1234567T"},
    "transactionData": {"date": "15/03/2024", "invoiceNumber": "INV-2041", "currency": "EUR"},
    "vatData": {
        "lineItems": [],
        "subtotal": 484.17,
        "totalVatAmount": 111.36,
        "grandTotal": 595.53,
    },
    "classification": {"category": "PURCHASES", "confidence": 0.95, "reasoning": "Supplier invoice"},
    "extractedText": SAMPLE_INVOICE,
}


class CannedDocumentService(BaseDocumentService):
    """Answers every request with the same extraction."""

    def __init__(self, payload: dict, wrap_in_prose: bool = False):
        self.payload = payload
        self.wrap_in_prose = wrap_in_prose

    def complete(self, request: ServiceRequest) -> ServiceResponse:
        text = json.dumps(self.payload)
        if self.wrap_in_prose:
            text = f"Here is the extracted data:\n```json\n{text}\n```\nLet me know if you need more."
        return ServiceResponse(text=text, input_tokens=850, output_tokens=240, model=request.model)


def demo_pipeline(processor: VatDocumentProcessor):
    """Demonstrate complete pipeline processing."""
    print("\n" + "=" * 50)
    print("COMPLETE PIPELINE DEMO")
    print("=" * 50)

    result = asyncio.run(processor.process(
        SAMPLE_INVOICE.encode("utf-8"), "text/plain", "acme-inv-2041.txt", "PURCHASES"
    ))
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return result


def demo_heuristic(processor: VatDocumentProcessor):
    """Demonstrate the text heuristic used when no model answers."""
    print("\n" + "=" * 50)
    print("HEURISTIC FALLBACK DEMO")
    print("=" * 50)

    parsed = processor.orchestrator.heuristic_extractor.extract(SAMPLE_INVOICE)
    print(f"Document Type: {parsed.document_type.value}")
    print(f"Business: {parsed.business.name} ({parsed.business.tax_id})")
    print(f"Tax total: {parsed.tax_total}  Subtotal: {parsed.subtotal}  Grand total: {parsed.grand_total}")


def demo_feedback(processor: VatDocumentProcessor, result):
    """Demonstrate learning from a confirmed result."""
    print("\n" + "=" * 50)
    print("FEEDBACK LEARNING DEMO")
    print("=" * 50)

    record = processor.submit_correction(result, [], result.purchase_amounts, FeedbackTag.CORRECT)
    print(f"Correction accuracy: {record.accuracy:.2f}")

    report = processor.run_learning()
    print(f"Corrections processed: {report.corrections_processed}")
    print(f"Patterns updated: {report.patterns_updated}")
    print(f"Metrics: {report.metrics}")
    print(f"\nPipeline stats: {json.dumps(processor.get_processing_stats(), indent=2)}")


def main():
    parser = argparse.ArgumentParser(description="VatDoc-AI Demo")
    parser.add_argument("--prose", action="store_true", help="Wrap the canned response in prose")
    parser.add_argument("--demo_type", type=str, choices=["all", "pipeline", "heuristic", "feedback"],
                        default="all", help="Type of demo to run")

    args = parser.parse_args()

    print("VatDoc-AI Demo")
    print("=" * 50)

    try:
        print("Initializing VatDocumentProcessor...")
        settings = VatDocSettings(api_key="demo", store_path=None)
        processor = VatDocumentProcessor(
            settings=settings,
            service=CannedDocumentService(SAMPLE_RESPONSE, wrap_in_prose=args.prose),
            background_learning=False,
        )
        print("Processor initialized successfully!")

        result = None
        if args.demo_type in ["all", "pipeline", "feedback"]:
            result = demo_pipeline(processor)

        if args.demo_type in ["all", "heuristic"]:
            demo_heuristic(processor)

        if args.demo_type in ["all", "feedback"] and result is not None:
            demo_feedback(processor, result)

        processor.close()

        print("\n" + "=" * 50)
        print("DEMO COMPLETED SUCCESSFULLY!")
        print("=" * 50)

    except Exception as e:
        logger.error(f"Demo failed: {e}")
        print(f"Demo failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
