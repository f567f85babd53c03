"""Confidence model."""

from .confidence_scorer import DEFAULT_VALID_RATES, ConfidenceScorer

__all__ = ["ConfidenceScorer", "DEFAULT_VALID_RATES"]
