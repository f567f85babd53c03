"""
Document fingerprints.

A fingerprint summarises the layout of a document rather than its values, so
two invoices from the same supplier produce the same structural hash even when
every amount differs.
"""

import hashlib
import re
from typing import List, Sequence

from .records import DocumentFingerprint, LayoutFeatures

# Regexes run on digit-normalised text ("#" stands for a digit run)
KEY_PATTERNS = [
    re.compile(r'VAT\s+[A-Z][a-z]+[:.]?\s*[#X]+', re.IGNORECASE),
    re.compile(r'Total\s*[:.]?\s*[€$£]?\s*#', re.IGNORECASE),
    re.compile(r'Date[:.]?\s*#', re.IGNORECASE),
    re.compile(r'Invoice\s+(?:No\.?|Number)[:.]?\s*#', re.IGNORECASE),
]

MAX_SIGNATURES = 5
SIGNATURE_LINES = 20


def structural_text(text: str) -> str:
    """Replace digits and letter runs with placeholder tokens."""
    structural = re.sub(r'\d+', '#', text)
    structural = re.sub(r'[A-Z]{2,}', 'XX', structural)
    structural = re.sub(r'[a-z]+', 'x', structural)
    return re.sub(r'\s+', ' ', structural).strip()


def structural_hash(text: str) -> str:
    return hashlib.md5(structural_text(text).encode('utf-8')).hexdigest()


def extract_text_patterns(text: str) -> List[str]:
    normalized = re.sub(r'\d+', '#', text)
    patterns: List[str] = []
    for regex in KEY_PATTERNS:
        for match in regex.finditer(normalized):
            pattern = re.sub(r'\s+', ' ', match.group()).strip()
            if pattern not in patterns:
                patterns.append(pattern)
    return patterns


def extract_business_signatures(text: str) -> List[str]:
    signatures: List[str] = []
    for line in text.splitlines()[:SIGNATURE_LINES]:
        line = line.strip()
        if len(line) > 10 and line[0].isupper() and line not in signatures:
            signatures.append(line)
    return signatures[:MAX_SIGNATURES]


def analyze_layout(text: str) -> LayoutFeatures:
    lines = text.split('\n')
    words = text.split()
    columns = max((len(re.split(r'\s{3,}', line.strip())) for line in lines), default=1)
    return LayoutFeatures(
        line_count=len(lines),
        text_density=round(len(words) / max(len(lines), 1), 3),
        column_count=columns,
        has_table=bool(re.search(r'\S\s{3,}\S', text)),
        header_pattern=re.sub(r'\d+', '#', ' '.join(lines[:3])).strip(),
        footer_pattern=re.sub(r'\d+', '#', ' '.join(lines[-3:])).strip(),
    )


def fingerprint(text: str, document_id: str = "") -> DocumentFingerprint:
    """
    Derive the structural signature of a document's text.

    Args:
        text: Document text
        document_id: Identifier recorded on the fingerprint

    Returns:
        DocumentFingerprint
    """
    text = text or ""
    return DocumentFingerprint(
        document_id=document_id,
        structural_hash=structural_hash(text),
        text_patterns=extract_text_patterns(text),
        business_signatures=extract_business_signatures(text),
        layout=analyze_layout(text),
    )


def similarity(a: DocumentFingerprint, b: DocumentFingerprint, identity_weight: float = 0.2) -> float:
    """
    Weighted similarity of two fingerprints in [0, 1].

    Structural hash equality counts 0.4, text-pattern overlap 0.3, business
    signature overlap ``identity_weight`` (0.2 or 0.3) and layout agreement 0.1.
    """
    score = 0.0
    if a.structural_hash == b.structural_hash:
        score += 0.4
    score += 0.3 * _overlap(a.text_patterns, b.text_patterns)
    score += identity_weight * _overlap(a.business_signatures, b.business_signatures)
    score += 0.1 * _layout_agreement(a.layout, b.layout)
    return min(score, 1.0)


def _overlap(first: Sequence[str], second: Sequence[str]) -> float:
    if not first or not second:
        return 0.0
    common = set(first) & set(second)
    return len(common) / max(len(set(first)), len(set(second)))


def _layout_agreement(a: LayoutFeatures, b: LayoutFeatures) -> float:
    checks = [
        a.column_count == b.column_count,
        a.has_table == b.has_table,
        a.header_pattern == b.header_pattern,
        _within(a.line_count, b.line_count, 0.2),
    ]
    return sum(checks) / len(checks)


def _within(first: float, second: float, fraction: float) -> bool:
    largest = max(first, second)
    if largest == 0:
        return True
    return abs(first - second) / largest <= fraction
