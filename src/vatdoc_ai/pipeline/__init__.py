"""Extraction orchestration and the caller-facing processor."""

from .extraction_orchestrator import ExtractionOrchestrator, ExtractionOutcome, TerminalFailure
from .vat_document_processor import VatDocumentProcessor

__all__ = ["ExtractionOrchestrator", "ExtractionOutcome", "TerminalFailure", "VatDocumentProcessor"]
