"""Fingerprints, templates, calibration and the feedback loop."""

from .feedback_learner import FeedbackLearner, LearningReport, calculate_accuracy
from .fingerprint import fingerprint, similarity
from .records import (
    CalibrationEntry,
    ConfidencePattern,
    CorrectionReason,
    CorrectionRecord,
    DocumentFingerprint,
    FeedbackTag,
    Template,
    TemplateRule,
)
from .stores import InMemoryLearningStore, JsonFileLearningStore, LearningStore
from .template_store import TemplateMatch, TemplateStore

__all__ = [
    "FeedbackLearner",
    "LearningReport",
    "calculate_accuracy",
    "fingerprint",
    "similarity",
    "CalibrationEntry",
    "ConfidencePattern",
    "CorrectionReason",
    "CorrectionRecord",
    "DocumentFingerprint",
    "FeedbackTag",
    "Template",
    "TemplateRule",
    "InMemoryLearningStore",
    "JsonFileLearningStore",
    "LearningStore",
    "TemplateMatch",
    "TemplateStore",
]
