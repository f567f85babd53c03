"""
Document-type heuristics for VAT categorization.

Lease agreements and invoices from finance companies are almost always
purchases for the uploading business, whatever the model says. This module
recognises that vocabulary in the document text.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..parsing.schema import Category

logger = logging.getLogger(__name__)

LEASE_PATTERNS = [
    r'\blease\b',
    r'\bleasing\b',
    r'\brental\b',
    r'\bmonthly payment\b',
    r'\bvehicle finance\b',
    r'\bcar finance\b',
    r'\bfinance agreement\b',
    r'\bhire agreement\b',
    r'\bhire purchase\b',
]

FINANCIAL_SERVICE_PATTERNS = [
    r'\bfinancial services\b',
    r'\bfinance (?:limited|ltd|dac|plc)\b',
    r'\bbank\b',
    r'\blending\b',
    r'\bcredit agreement\b',
]


@dataclass
class DocumentAnalysis:
    """Outcome of the vocabulary scan over one document."""

    is_lease: bool = False
    is_financial_services: bool = False
    business_type: str = "UNKNOWN"
    suggested_category: Optional[Category] = None
    confidence: float = 0.5
    matched_terms: List[str] = field(default_factory=list)


class DocumentTypeAnalyzer:
    """
    Keyword classifier for lease and financial-services documents.

    Only ever suggests PURCHASES; anything else is left to the caller's hint
    or the model's own classification.
    """

    def __init__(
        self,
        lease_patterns: Optional[List[str]] = None,
        financial_patterns: Optional[List[str]] = None,
    ):
        self.lease_patterns = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in (LEASE_PATTERNS if lease_patterns is None else lease_patterns)
        ]
        self.financial_patterns = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in (FINANCIAL_SERVICE_PATTERNS if financial_patterns is None else financial_patterns)
        ]

    def analyze(self, text: str) -> DocumentAnalysis:
        """
        Scan document text for lease and financial-services vocabulary.

        Args:
            text: Extracted document text

        Returns:
            DocumentAnalysis with a PURCHASES suggestion when vocabulary matched
        """
        text = text or ""
        lease_terms = self._matches(self.lease_patterns, text)
        financial_terms = self._matches(self.financial_patterns, text)

        analysis = DocumentAnalysis(
            is_lease=bool(lease_terms),
            is_financial_services=bool(financial_terms),
            matched_terms=lease_terms + financial_terms,
        )
        if analysis.is_lease or analysis.is_financial_services:
            analysis.business_type = "FINANCIAL_SERVICES"
            analysis.suggested_category = Category.PURCHASES
            analysis.confidence = 0.8
            logger.debug(f"Lease/financial vocabulary found: {', '.join(analysis.matched_terms)}")

        return analysis

    @staticmethod
    def _matches(patterns: List[re.Pattern], text: str) -> List[str]:
        terms = []
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                terms.append(match.group().lower())
        return terms
