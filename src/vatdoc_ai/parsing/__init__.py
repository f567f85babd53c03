"""Data model, amount parsing and model-response recovery."""

from .heuristic_extractor import HeuristicExtractor
from .json_recovery import RecoveryLevel, decode_extraction, parse_model_response, recover_json
from .schema import (
    AttemptOutcome,
    BusinessIdentity,
    Category,
    CategoryHint,
    DocumentType,
    ExtractionAttempt,
    ExtractionMethod,
    ExtractionRequest,
    LineItem,
    ModelClassification,
    ParsedExtraction,
    TransactionInfo,
    ValidationFlag,
)

__all__ = [
    "HeuristicExtractor",
    "RecoveryLevel",
    "decode_extraction",
    "parse_model_response",
    "recover_json",
    "AttemptOutcome",
    "BusinessIdentity",
    "Category",
    "CategoryHint",
    "DocumentType",
    "ExtractionAttempt",
    "ExtractionMethod",
    "ExtractionRequest",
    "LineItem",
    "ModelClassification",
    "ParsedExtraction",
    "TransactionInfo",
    "ValidationFlag",
]
