"""Categorization, exclusion and reconciliation of VAT amounts."""

from .engine import CategorizationEngine, CategorizedResult
from .exclusion import PAYMENT_VOCABULARY, ExclusionFilter

__all__ = ["CategorizationEngine", "CategorizedResult", "ExclusionFilter", "PAYMENT_VOCABULARY"]
