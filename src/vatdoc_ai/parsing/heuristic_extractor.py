"""
Text-only heuristic extractor.

Used when no model produced a usable response but the document text is known
(PDF or plain-text uploads). Fields are pulled with regex rules; only amounts
printed next to a VAT/tax label are reported as tax figures, so a document
without such labels yields no amounts at all.
"""

import logging
import re
from typing import Dict, List, Optional

from .amounts import DEFAULT_MAX_VALUE, iter_amounts
from .schema import (
    BusinessIdentity,
    DocumentType,
    ParsedExtraction,
    TransactionInfo,
    ValidationFlag,
)

logger = logging.getLogger(__name__)

# Labels that introduce a VAT figure, strongest first
TAX_TOTAL_LABELS = [
    r'total\s+(?:amount\s+)?vat',
    r'vat\s+total',
    r'total\s+tax',
    r'vat\s+amount',
    r'vat\s*(?:@|at)?\s*\d{1,2}(?:[.,]\d)?\s*%',
    r'\bvat\b',
    r'\btax\b',
]

SUBTOTAL_LABELS = [
    r'sub[\s-]?total',
    r'net\s+(?:amount|total)',
    r'total\s+(?:excl?|excluding)\.?\s+vat',
]

GRAND_TOTAL_LABELS = [
    r'grand\s+total',
    r'total\s+(?:incl?|including)\.?\s+vat',
    r'amount\s+payable',
    r'total\s+due',
]

DOCUMENT_TYPE_KEYWORDS = {
    DocumentType.CREDIT_NOTE: ['credit note', 'credit memo'],
    DocumentType.STATEMENT: ['statement of account', 'account statement'],
    DocumentType.RECEIPT: ['receipt', 'till no', 'cash sale'],
    DocumentType.INVOICE: ['invoice', 'tax invoice', 'bill to'],
}

VAT_NUMBER_PATTERN = re.compile(r'\b(?:IE|GB|DE|FR|NL|ES|IT)\s?\d[\dA-Z+*]\d{5}[A-Z]{1,2}\b')
DATE_PATTERNS = [
    r'\b\d{1,2}/\d{1,2}/\d{4}\b',  # DD/MM/YYYY
    r'\b\d{1,2}-\d{1,2}-\d{4}\b',  # DD-MM-YYYY
    r'\b\d{4}-\d{1,2}-\d{1,2}\b',  # YYYY-MM-DD
    r'\b\d{1,2} (?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]* \d{4}\b',
]
REFERENCE_PATTERN = re.compile(
    r'(?:invoice|receipt|credit note)\s*(?:no\.?|number|#)\s*[:.]?\s*([A-Z0-9][A-Z0-9/\-]{2,})',
    re.IGNORECASE,
)

# How far after a label an amount may be printed
LABEL_REACH = 40


class HeuristicExtractor:
    """Regex-based extraction of VAT fields from plain document text."""

    def __init__(self, max_value: float = DEFAULT_MAX_VALUE):
        self.max_value = max_value

    def extract(self, text: str) -> ParsedExtraction:
        """
        Extract a ParsedExtraction from document text.

        Args:
            text: Plain text of the document

        Returns:
            ParsedExtraction flagged FALLBACK_USED
        """
        text = text or ""
        tax_total = self._labelled_amount(text, TAX_TOTAL_LABELS)
        subtotal = self._labelled_amount(text, SUBTOTAL_LABELS)
        grand_total = self._labelled_amount(text, GRAND_TOTAL_LABELS)

        # A bare "VAT" label can pick up the grand total on one-line receipts
        if tax_total is not None and grand_total is not None and tax_total >= grand_total:
            tax_total = None

        parsed = ParsedExtraction(
            document_type=self._document_type(text),
            business=BusinessIdentity(
                name=self._business_name(text),
                tax_id=self._first_match(VAT_NUMBER_PATTERN, text),
            ),
            transaction=TransactionInfo(
                date=self._date(text),
                reference=self._reference(text),
                currency=self._currency(text),
            ),
            subtotal=subtotal,
            tax_total=tax_total,
            grand_total=grand_total,
            extracted_text=text,
            flags=(ValidationFlag.FALLBACK_USED,),
        )

        logger.info(
            f"Heuristic extraction found tax total {tax_total}, subtotal {subtotal}, grand total {grand_total}"
        )
        return parsed

    def _labelled_amount(self, text: str, labels: List[str]) -> Optional[float]:
        for pattern in labels:
            values = self._amounts_after(text, pattern)
            if values:
                return values[0]
        return None

    def _amounts_after(self, text: str, label_pattern: str) -> List[float]:
        amounts = [(value, start, end) for value, start, end in iter_amounts(text) if value <= self.max_value]
        values = []
        for label in re.finditer(label_pattern, text, re.IGNORECASE):
            for value, start, end in amounts:
                if label.end() <= start <= label.end() + LABEL_REACH:
                    # Skip the rate itself ("VAT 23.00%")
                    if text[end:end + 1] == "%":
                        continue
                    values.append(value)
                    break
        return values

    @staticmethod
    def _document_type(text: str) -> DocumentType:
        lowered = text.lower()
        for document_type, keywords in DOCUMENT_TYPE_KEYWORDS.items():
            if any(keyword in lowered for keyword in keywords):
                return document_type
        return DocumentType.OTHER

    @staticmethod
    def _business_name(text: str) -> Optional[str]:
        for line in text.splitlines()[:5]:
            line = line.strip()
            if len(line) > 3 and line[0].isupper() and not any(char.isdigit() for char in line):
                return line
        return None

    @staticmethod
    def _first_match(pattern: re.Pattern, text: str) -> Optional[str]:
        match = pattern.search(text)
        return match.group().replace(" ", "") if match else None

    @staticmethod
    def _date(text: str) -> Optional[str]:
        for pattern in DATE_PATTERNS:
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                return match.group()
        return None

    @staticmethod
    def _reference(text: str) -> Optional[str]:
        match = REFERENCE_PATTERN.search(text)
        return match.group(1) if match else None

    @staticmethod
    def _currency(text: str) -> str:
        counts: Dict[str, int] = {
            "EUR": text.count("€") + len(re.findall(r'\bEUR\b', text)),
            "GBP": text.count("£") + len(re.findall(r'\bGBP\b', text)),
            "USD": text.count("$") + len(re.findall(r'\bUSD\b', text)),
        }
        best = max(counts, key=counts.get)
        return best if counts[best] else "EUR"
