"""
JSON recovery for free-form model responses.

The document service is asked for a JSON object but may wrap it in prose or
markdown, truncate it, or ignore the instruction altogether. Recovery runs in
three stages:

1. Strict parse of the whole response
2. Parse of the first balanced ``{...}`` substring
3. Minimal structure synthesised from decimal tokens, flagged FALLBACK_STRUCTURE

Decoding into a ParsedExtraction is strict about types: anything that is not
a finite, non-negative number inside the configured ceiling is dropped.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .amounts import DEFAULT_MAX_VALUE, iter_amounts, parse_amount
from .schema import (
    BusinessIdentity,
    Category,
    DocumentType,
    LineItem,
    ModelClassification,
    ParsedExtraction,
    TransactionInfo,
    ValidationFlag,
)

logger = logging.getLogger(__name__)

_TAX_CONTEXT = re.compile(r"(?:vat|tax)\b", re.IGNORECASE)


class RecoveryLevel(str, Enum):
    STRICT = "STRICT"
    BALANCED = "BALANCED"
    MINIMAL = "MINIMAL"


def recover_json(raw: str) -> Tuple[Optional[Dict[str, Any]], RecoveryLevel]:
    """
    Recover a JSON object from a raw model response.

    Returns:
        (payload, level) where payload is None when only the minimal
        fallback remains
    """
    text = (raw or "").strip()

    payload = _loads_object(text)
    if payload is not None:
        return payload, RecoveryLevel.STRICT

    candidate = first_balanced_object(text)
    if candidate is not None:
        payload = _loads_object(candidate)
        if payload is not None:
            return payload, RecoveryLevel.BALANCED

    return None, RecoveryLevel.MINIMAL


def first_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring, honouring JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)
    return None


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def parse_model_response(
    raw: str, max_value: float = DEFAULT_MAX_VALUE
) -> Tuple[ParsedExtraction, RecoveryLevel]:
    """Run the full recovery procedure and decode the result."""
    payload, level = recover_json(raw)
    if payload is None:
        logger.warning("Model response contained no usable JSON - synthesising minimal structure")
        return minimal_extraction(raw, max_value=max_value), level
    if level == RecoveryLevel.BALANCED:
        logger.info("Recovered JSON object from surrounding text in model response")
    return decode_extraction(payload, max_value=max_value), level


def minimal_extraction(raw: str, max_value: float = DEFAULT_MAX_VALUE) -> ParsedExtraction:
    """
    Build a minimal structure from decimal tokens in the raw response.

    The best guess is the first amount printed shortly after a VAT/tax label,
    otherwise the largest amount. No line items are produced.
    """
    text = raw or ""
    amounts = [(value, start) for value, start, _ in iter_amounts(text) if value <= max_value]
    if not amounts:
        return ParsedExtraction(flags=(ValidationFlag.FALLBACK_STRUCTURE,))

    guess = None
    for label in _TAX_CONTEXT.finditer(text):
        following = [value for value, start in amounts if label.end() <= start <= label.end() + 40]
        if following:
            guess = following[0]
            break
    if guess is None:
        guess = max(value for value, _ in amounts)

    return ParsedExtraction(tax_total=guess, flags=(ValidationFlag.FALLBACK_STRUCTURE,))


def decode_extraction(payload: Dict[str, Any], max_value: float = DEFAULT_MAX_VALUE) -> ParsedExtraction:
    """
    Decode a recovered JSON object into a ParsedExtraction.

    Args:
        payload: JSON object in the shape requested from the model
        max_value: Ceiling above which numbers are considered absurd

    Returns:
        ParsedExtraction with invalid values dropped
    """
    dropped: List[str] = []

    def amount(container: Dict[str, Any], *keys: str) -> Optional[float]:
        raw = _pick(container, *keys)
        value = parse_amount(raw, max_value=max_value)
        if raw is not None and value is None:
            dropped.append(keys[0])
        return value

    def rate(container: Dict[str, Any], *keys: str) -> Optional[float]:
        value = amount(container, *keys)
        if value is not None and value > 100:
            dropped.append(keys[0])
            return None
        return value

    business_raw = _as_dict(_pick(payload, "businessDetails", "business_details", "business"))
    transaction_raw = _as_dict(_pick(payload, "transactionData", "transaction_data", "transaction"))
    vat_raw = _as_dict(_pick(payload, "vatData", "vat_data", "taxData"))
    classification_raw = _as_dict(_pick(payload, "classification"))

    line_items = []
    for item in _as_list(_pick(vat_raw, "lineItems", "line_items")):
        if not isinstance(item, dict):
            continue
        line_items.append(LineItem(
            description=_text(_pick(item, "description")),
            quantity=amount(item, "quantity", "qty"),
            unit_price=amount(item, "unitPrice", "unit_price"),
            tax_rate=rate(item, "vatRate", "vat_rate", "taxRate"),
            tax_amount=amount(item, "vatAmount", "vat_amount", "taxAmount"),
            line_total=amount(item, "totalAmount", "total_amount", "lineTotal"),
        ))

    confidence = parse_amount(_pick(classification_raw, "confidence"))
    if confidence is not None and confidence > 1:
        confidence = confidence / 100 if confidence <= 100 else None

    currency = _text(_pick(transaction_raw, "currency")) or "EUR"

    parsed = ParsedExtraction(
        document_type=DocumentType.parse(_pick(payload, "documentType", "document_type")),
        business=BusinessIdentity(
            name=_text(_pick(business_raw, "businessName", "business_name", "name")),
            tax_id=_text(_pick(business_raw, "vatNumber", "vat_number", "taxId")),
            address=_text(_pick(business_raw, "address")),
        ),
        transaction=TransactionInfo(
            date=_text(_pick(transaction_raw, "date")),
            reference=_text(_pick(transaction_raw, "invoiceNumber", "invoice_number", "reference")),
            currency=currency.upper(),
        ),
        line_items=tuple(line_items),
        subtotal=amount(vat_raw, "subtotal", "subTotal"),
        tax_total=amount(vat_raw, "totalVatAmount", "total_vat_amount", "taxTotal"),
        grand_total=amount(vat_raw, "grandTotal", "grand_total", "total"),
        classification=ModelClassification(
            category=Category.parse(_pick(classification_raw, "category")),
            confidence=confidence,
            reasoning=_text(_pick(classification_raw, "reasoning")),
        ),
        extracted_text=_text(_pick(payload, "extractedText", "extracted_text")) or "",
        flags=(ValidationFlag.VALUE_DROPPED_INVALID,) if dropped else (),
    )

    if dropped:
        logger.warning(f"Dropped invalid numeric values from model output: {', '.join(dropped)}")
    return parsed


def _pick(container: Optional[Dict[str, Any]], *keys: str) -> Any:
    if not container:
        return None
    for key in keys:
        if key in container and container[key] is not None:
            return container[key]
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
