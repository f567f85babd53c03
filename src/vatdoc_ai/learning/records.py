"""
Persisted learning records.

Everything the learning loop stores lives here as a plain dataclass so the
stores can serialize it without knowing how it was produced.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class FeedbackTag(str, Enum):
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    PARTIALLY_CORRECT = "PARTIALLY_CORRECT"


class CorrectionReason(str, Enum):
    """Why a user corrected a result; each maps onto a FeedbackTag."""

    WRONG_AMOUNT = "WRONG_AMOUNT"
    MISSING_VAT = "MISSING_VAT"
    WRONG_CATEGORY = "WRONG_CATEGORY"
    DUPLICATE_VAT = "DUPLICATE_VAT"
    OTHER = "OTHER"

    @property
    def feedback(self) -> FeedbackTag:
        if self in (CorrectionReason.WRONG_AMOUNT, CorrectionReason.MISSING_VAT):
            return FeedbackTag.INCORRECT
        return FeedbackTag.PARTIALLY_CORRECT


@dataclass
class LayoutFeatures:
    line_count: int = 0
    text_density: float = 0.0
    column_count: int = 1
    has_table: bool = False
    header_pattern: str = ""
    footer_pattern: str = ""


@dataclass
class DocumentFingerprint:
    """Structural signature of one processed document."""

    document_id: str
    structural_hash: str
    text_patterns: List[str] = field(default_factory=list)
    business_signatures: List[str] = field(default_factory=list)
    layout: LayoutFeatures = field(default_factory=LayoutFeatures)
    success_rate: float = 1.0
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class TemplateRule:
    """One extraction rule: a regex whose first group yields ``field_name``."""

    field_name: str
    pattern: str
    confidence: float = 0.8


@dataclass
class Template:
    id: str
    name: str
    fingerprint: DocumentFingerprint
    document_type: str
    business_name: Optional[str] = None
    category: Optional[str] = None
    rules: List[TemplateRule] = field(default_factory=list)
    validation_rules: List[str] = field(default_factory=list)
    usage_count: int = 0
    success_rate: float = 1.0
    average_confidence: float = 0.0
    is_active: bool = True
    created_from: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_used: Optional[datetime] = None


@dataclass
class CalibrationEntry:
    """Multiplicative confidence factor for one (document type, extraction method)."""

    document_type: str
    extraction_method: str
    factor: float = 1.0
    correction_count: int = 0
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> str:
        return calibration_key(self.document_type, self.extraction_method)


def calibration_key(document_type: str, extraction_method: str) -> str:
    return f"{document_type}_{extraction_method}"


@dataclass
class CorrectionRecord:
    id: str
    document_id: Optional[str]
    document_type: str
    extraction_method: str
    feedback: FeedbackTag
    original_confidence: float
    original_amounts: List[float]
    corrected_amounts: List[float]
    accuracy: float
    original_category: Optional[str] = None
    corrected_category: Optional[str] = None
    reason: Optional[CorrectionReason] = None
    template_id: Optional[str] = None
    consumed: bool = False
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ConfidencePattern:
    """Aggregate of consumed corrections for one amount bucket."""

    id: str
    document_type: str
    extraction_method: str
    range_min: float
    range_max: float
    mean_confidence: float
    mean_accuracy: float
    correction_count: int
    updated_at: datetime = field(default_factory=datetime.now)
