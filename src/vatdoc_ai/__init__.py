"""
VatDoc-AI: VAT Document Extraction & Categorization System

Extracts VAT amounts from invoices, receipts and statements through a governed
chain of document-understanding models, categorizes them as sales or
purchases, scores confidence and learns from user corrections.
"""

__version__ = "1.0.0"
__author__ = "VatDoc-AI Team"

from .categorization.engine import CategorizationEngine, CategorizedResult
from .config import VatDocSettings
from .governor.request_governor import Priority, RequestGovernor
from .learning.feedback_learner import FeedbackLearner
from .learning.template_store import TemplateStore
from .pipeline.extraction_orchestrator import ExtractionOrchestrator, TerminalFailure
from .pipeline.vat_document_processor import VatDocumentProcessor
from .scoring.confidence_scorer import ConfidenceScorer

__all__ = [
    "VatDocumentProcessor",
    "VatDocSettings",
    "RequestGovernor",
    "Priority",
    "ExtractionOrchestrator",
    "TerminalFailure",
    "CategorizationEngine",
    "CategorizedResult",
    "ConfidenceScorer",
    "TemplateStore",
    "FeedbackLearner",
]
