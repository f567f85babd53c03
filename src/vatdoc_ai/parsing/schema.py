"""
Data model for the extraction pipeline.

Requests, attempts and parsed extractions are immutable values. Numeric fields
on a ParsedExtraction are either None or finite and non-negative; invalid
values are dropped during decoding, never clamped.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    RECEIPT = "RECEIPT"
    CREDIT_NOTE = "CREDIT_NOTE"
    STATEMENT = "STATEMENT"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value) -> "DocumentType":
        if not isinstance(value, str):
            return cls.OTHER
        key = value.strip().upper().replace(" ", "_").replace("-", "_")
        return cls.__members__.get(key, cls.OTHER)


class Category(str, Enum):
    SALES = "SALES"
    PURCHASES = "PURCHASES"
    MIXED = "MIXED"

    @classmethod
    def parse(cls, value) -> Optional["Category"]:
        if not isinstance(value, str):
            return None
        key = value.strip().upper()
        if key.startswith("SALE"):
            return cls.SALES
        if key.startswith("PURCHASE"):
            return cls.PURCHASES
        if key == "MIXED":
            return cls.MIXED
        return None


class CategoryHint(str, Enum):
    """Category supplied by the caller, usually from the upload slot."""

    SALES = "SALES"
    PURCHASES = "PURCHASES"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value) -> "CategoryHint":
        if isinstance(value, CategoryHint):
            return value
        if not value:
            return cls.UNKNOWN
        text = str(value).upper()
        # Upload slots are named e.g. "SALES_INVOICE" or "PURCHASE_RECEIPT"
        if "SALES" in text:
            return cls.SALES
        if "PURCHASE" in text:
            return cls.PURCHASES
        return cls.UNKNOWN


class ExtractionMethod(str, Enum):
    VISION = "AI_VISION"
    TEXT = "AI_TEXT"
    HEURISTIC = "HEURISTIC"


class AttemptOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    DEGRADED = "DEGRADED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class ValidationFlag(str, Enum):
    NO_AMOUNTS_FOUND = "NO_AMOUNTS_FOUND"
    FALLBACK_USED = "FALLBACK_USED"
    FALLBACK_STRUCTURE = "FALLBACK_STRUCTURE"
    VALUE_DROPPED_INVALID = "VALUE_DROPPED_INVALID"
    AMOUNT_EXCLUDED_SUSPECTED_PAYMENT = "AMOUNT_EXCLUDED_SUSPECTED_PAYMENT"
    AMOUNT_EXCLUDED_PREVIOUSLY_REJECTED = "AMOUNT_EXCLUDED_PREVIOUSLY_REJECTED"
    AMOUNT_EXCLUDED_ABOVE_CEILING = "AMOUNT_EXCLUDED_ABOVE_CEILING"
    MISMATCH_RESOLVED_BY_TOTAL = "MISMATCH_RESOLVED_BY_TOTAL"
    MISMATCH_UNRESOLVED = "MISMATCH_UNRESOLVED"


EXCLUSION_FLAGS = frozenset({
    ValidationFlag.AMOUNT_EXCLUDED_SUSPECTED_PAYMENT,
    ValidationFlag.AMOUNT_EXCLUDED_PREVIOUSLY_REJECTED,
    ValidationFlag.AMOUNT_EXCLUDED_ABOVE_CEILING,
})


@dataclass(frozen=True)
class ExtractionRequest:
    """One document submitted for extraction."""

    document: bytes = field(repr=False)
    media_type: str
    filename: str
    category_hint: CategoryHint = CategoryHint.UNKNOWN
    user_id: Optional[str] = None

    @property
    def document_id(self) -> str:
        """Content hash, stable across reprocessing of the same bytes."""
        return hashlib.sha256(self.document).hexdigest()


@dataclass(frozen=True)
class ExtractionAttempt:
    """One try against one model or strategy."""

    model: str
    started_at: datetime
    duration_seconds: float
    outcome: AttemptOutcome
    raw_response: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    tax_rate: Optional[float] = None
    tax_amount: Optional[float] = None
    line_total: Optional[float] = None


@dataclass(frozen=True)
class BusinessIdentity:
    name: Optional[str] = None
    tax_id: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class TransactionInfo:
    date: Optional[str] = None
    reference: Optional[str] = None
    currency: str = "EUR"


@dataclass(frozen=True)
class ModelClassification:
    """The model's own opinion of the document category."""

    category: Optional[Category] = None
    confidence: Optional[float] = None
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class ParsedExtraction:
    """Best-effort structured decode of a model response."""

    document_type: DocumentType = DocumentType.OTHER
    business: BusinessIdentity = field(default_factory=BusinessIdentity)
    transaction: TransactionInfo = field(default_factory=TransactionInfo)
    line_items: Tuple[LineItem, ...] = ()
    subtotal: Optional[float] = None
    tax_total: Optional[float] = None
    grand_total: Optional[float] = None
    classification: ModelClassification = field(default_factory=ModelClassification)
    extracted_text: str = ""
    flags: Tuple[ValidationFlag, ...] = ()

    @property
    def tax_rates(self) -> Tuple[float, ...]:
        return tuple(item.tax_rate for item in self.line_items if item.tax_rate is not None)

    @property
    def has_structured_line_items(self) -> bool:
        return any(item.tax_amount is not None for item in self.line_items)
