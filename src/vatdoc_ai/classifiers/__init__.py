"""Document-type classifiers."""

from .document_classifier import DocumentAnalysis, DocumentTypeAnalyzer

__all__ = ["DocumentTypeAnalyzer", "DocumentAnalysis"]
