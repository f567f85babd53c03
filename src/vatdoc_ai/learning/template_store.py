"""
Template synthesis, matching and application.

A template binds a fingerprint to a handful of regex rules learned from one
high-confidence extraction. When a later document matches the fingerprint,
the rules fill in fields the model left empty.
"""

import logging
import re
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..parsing.amounts import find_amount_positions, parse_amount
from ..parsing.schema import ParsedExtraction
from .fingerprint import similarity
from .records import DocumentFingerprint, Template, TemplateRule
from .stores import LearningStore

logger = logging.getLogger(__name__)

AMOUNT_VALUE = r'(\d{1,3}(?:[.,]\d{3})*[.,]\d{2})'
TEXT_VALUE = r'([A-Z0-9][A-Z0-9/\-]{2,})'
DATE_VALUE = r'(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{4}-\d{1,2}-\d{1,2})'
VAT_NUMBER_VALUE = r'([A-Z]{2}\s?\d[\dA-Z+*]\d{5}[A-Z]{1,2})'

AMOUNT_FIELDS = ('tax_total', 'subtotal', 'grand_total')

# Used when the printed label in front of a value cannot be found
GENERIC_RULES = {
    'tax_total': r'Total\s+(?:Amount\s+)?VAT[:.]?\s*[€$£]?\s*' + AMOUNT_VALUE,
    'subtotal': r'Sub[\s-]?total[:.]?\s*[€$£]?\s*' + AMOUNT_VALUE,
    'grand_total': r'(?:Grand\s+)?Total(?:\s+Due)?[:.]?\s*[€$£]?\s*' + AMOUNT_VALUE,
    'business.tax_id': r'VAT\s+(?:Reg\.?\s+)?(?:No\.?|Number)[:.]?\s*' + VAT_NUMBER_VALUE,
    'transaction.date': r'Date[:.]?\s*' + DATE_VALUE,
    'transaction.reference': r'Invoice\s+(?:No\.?|Number|#)[:.]?\s*' + TEXT_VALUE,
}

VALIDATION_RULES = {
    'tax_total': 'POSITIVE',
    'subtotal': 'POSITIVE',
    'grand_total': 'POSITIVE',
    'business.tax_id': 'VAT_NUMBER',
    'transaction.date': 'DATE',
}


@dataclass
class TemplateMatch:
    template: Template
    similarity: float


class TemplateStore:
    """Finds, creates and maintains extraction templates in a LearningStore."""

    def __init__(
        self,
        store: LearningStore,
        match_threshold: float = 0.6,
        creation_threshold: float = 0.8,
        identity_weight: float = 0.2,
    ):
        self.store = store
        self.match_threshold = match_threshold
        self.creation_threshold = creation_threshold
        self.identity_weight = identity_weight

    def find_best_template(
        self, fp: DocumentFingerprint, threshold: Optional[float] = None
    ) -> Optional[TemplateMatch]:
        """Highest-similarity active template at or above ``threshold``, or None."""
        threshold = self.match_threshold if threshold is None else threshold
        best: Optional[TemplateMatch] = None
        for template in self.store.list_templates(active_only=True):
            score = similarity(fp, template.fingerprint, self.identity_weight)
            if score >= threshold and (best is None or score > best.similarity):
                best = TemplateMatch(template=template, similarity=score)

        if best:
            logger.info(f"Matched template '{best.template.name}' (similarity {best.similarity:.2f})")
        return best

    def record_match(self, template: Template):
        template.usage_count += 1
        template.last_used = datetime.now()
        self.store.save_template(template)

    def apply_template(self, template: Template, parsed: ParsedExtraction, text: str) -> ParsedExtraction:
        """
        Fill empty fields of ``parsed`` using the template's rules.

        Fields the model already supplied are never overwritten.
        """
        updates: Dict[str, Dict[str, Any]] = {'': {}, 'business': {}, 'transaction': {}}
        for rule in template.rules:
            section, _, name = rule.field_name.rpartition('.')
            container = getattr(parsed, section) if section else parsed
            if getattr(container, name, None) is not None:
                continue

            value = self._apply_rule(rule, text)
            if value is None or not self._passes(template, rule.field_name, value):
                continue
            updates[section][name] = value

        if not any(updates.values()):
            return parsed

        filled = [f"{section + '.' if section else ''}{name}" for section in updates for name in updates[section]]
        logger.info(f"Template '{template.name}' filled fields: {', '.join(filled)}")
        return replace(
            parsed,
            business=replace(parsed.business, **updates['business']),
            transaction=replace(parsed.transaction, **updates['transaction']),
            **updates[''],
        )

    def maybe_create_template(
        self,
        parsed: ParsedExtraction,
        fp: DocumentFingerprint,
        text: str,
        confidence: float,
        category: Optional[str] = None,
    ) -> Optional[Template]:
        """
        Synthesize a template from a successful, template-free extraction.

        Returns:
            The new template, or None when confidence is not above the
            creation threshold or no rule could be inferred
        """
        if confidence <= self.creation_threshold:
            return None

        rules = infer_rules(parsed, text)
        if not rules:
            logger.debug("No extraction rules could be inferred - template not created")
            return None

        business_name = parsed.business.name
        document_type = parsed.document_type.value
        if business_name:
            name = f"{business_name} - {document_type}"
        else:
            name = f"{document_type} Template - {datetime.now().date().isoformat()}"

        template = Template(
            id=str(uuid.uuid4()),
            name=name,
            fingerprint=fp,
            document_type=document_type,
            business_name=business_name,
            category=category,
            rules=rules,
            validation_rules=[
                f"{rule.field_name}:{VALIDATION_RULES[rule.field_name]}"
                for rule in rules if rule.field_name in VALIDATION_RULES
            ],
            usage_count=1,
            success_rate=1.0,
            average_confidence=confidence,
            created_from=[fp.document_id] if fp.document_id else [],
            last_used=datetime.now(),
        )
        self.store.save_template(template)
        logger.info(f"Created template '{template.name}' with {len(rules)} rules")
        return template

    def record_outcome(self, template_id: str, accuracy: float, learning_rate: float = 0.1) -> Optional[Template]:
        """Move a template's success rate towards ``accuracy`` by EMA."""
        template = self.store.get_template(template_id)
        if template is None:
            logger.warning(f"Template {template_id} not found for feedback")
            return None
        template.success_rate = (1 - learning_rate) * template.success_rate + learning_rate * accuracy
        self.store.save_template(template)
        return template

    def deactivate_weak_templates(self, min_success_rate: float = 0.4, min_usage: int = 5) -> List[str]:
        """Deactivate (never delete) templates that keep producing wrong results."""
        deactivated = []
        for template in self.store.list_templates(active_only=True):
            if template.usage_count >= min_usage and template.success_rate < min_success_rate:
                template.is_active = False
                self.store.save_template(template)
                deactivated.append(template.id)
                logger.warning(
                    f"Deactivated template '{template.name}' (success rate {template.success_rate:.2f} "
                    f"after {template.usage_count} uses)"
                )
        return deactivated

    @staticmethod
    def _apply_rule(rule: TemplateRule, text: str):
        try:
            match = re.search(rule.pattern, text, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"Invalid template rule for {rule.field_name}: {e}")
            return None
        if not match:
            return None
        raw = match.group(1) if match.groups() else match.group()
        if rule.field_name.rpartition('.')[2] in AMOUNT_FIELDS:
            return parse_amount(raw)
        return raw.strip() or None

    @staticmethod
    def _passes(template: Template, field_name: str, value) -> bool:
        for entry in template.validation_rules:
            name, _, check = entry.partition(':')
            if name != field_name:
                continue
            if check == 'POSITIVE' and not (isinstance(value, float) and value > 0):
                return False
            if check == 'VAT_NUMBER' and not re.fullmatch(VAT_NUMBER_VALUE, str(value)):
                return False
            if check == 'DATE' and not re.fullmatch(DATE_VALUE, str(value)):
                return False
        return True


def infer_rules(parsed: ParsedExtraction, text: str) -> List[TemplateRule]:
    """
    Infer one rule per non-empty field of ``parsed``.

    The printed label in front of the value becomes the anchor of the rule;
    when the value cannot be located in ``text`` a generic pattern is used.
    """
    rules: List[TemplateRule] = []
    values = {
        'tax_total': parsed.tax_total,
        'subtotal': parsed.subtotal,
        'grand_total': parsed.grand_total,
        'business.tax_id': parsed.business.tax_id,
        'transaction.date': parsed.transaction.date,
        'transaction.reference': parsed.transaction.reference,
    }

    for field_name, value in values.items():
        if value is None:
            continue
        if field_name in AMOUNT_FIELDS:
            start = next((span[0] for span in find_amount_positions(text, value)), None)
            value_pattern = AMOUNT_VALUE
        else:
            start = text.find(str(value)) if text else -1
            start = start if start >= 0 else None
            value_pattern = VAT_NUMBER_VALUE if field_name == 'business.tax_id' else (
                DATE_VALUE if field_name == 'transaction.date' else TEXT_VALUE
            )

        label = _label_before(text, start) if start is not None else None
        if label:
            pattern = label + r'[^\d\n]{0,10}?' + value_pattern
            rules.append(TemplateRule(field_name=field_name, pattern=pattern, confidence=0.9))
        else:
            rules.append(TemplateRule(field_name=field_name, pattern=GENERIC_RULES[field_name], confidence=0.7))
    return rules


def _label_before(text: str, start: int) -> Optional[str]:
    line_start = text.rfind('\n', 0, start) + 1
    words = re.findall(r'[A-Za-z]+', text[line_start:start])[-4:]
    if not words:
        return None
    return r'\s+'.join(re.escape(word) for word in words)
