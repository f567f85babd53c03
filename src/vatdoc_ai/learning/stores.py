"""
Persistence for fingerprints, templates, calibration entries and corrections.

The learning components only need create/read/update by key, so the store
interface is deliberately narrow. Two implementations are provided:

- InMemoryLearningStore: process-local dictionaries behind a lock
- JsonFileLearningStore: the same, written through to a JSON file so that
  learning survives restarts (used by the CLI)
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..parsing.amounts import cents
from .records import (
    CalibrationEntry,
    ConfidencePattern,
    CorrectionRecord,
    DocumentFingerprint,
    Template,
    calibration_key,
)

logger = logging.getLogger(__name__)


class LearningStore(ABC):
    """Create/read/update-by-key storage used by the learning loop."""

    @abstractmethod
    def get_calibration(self, document_type: str, extraction_method: str) -> Optional[CalibrationEntry]:
        pass

    @abstractmethod
    def save_calibration(self, entry: CalibrationEntry):
        pass

    @abstractmethod
    def list_calibrations(self) -> List[CalibrationEntry]:
        pass

    @abstractmethod
    def get_template(self, template_id: str) -> Optional[Template]:
        pass

    @abstractmethod
    def save_template(self, template: Template):
        pass

    @abstractmethod
    def list_templates(self, active_only: bool = False) -> List[Template]:
        pass

    @abstractmethod
    def get_fingerprint(self, document_id: str) -> Optional[DocumentFingerprint]:
        pass

    @abstractmethod
    def save_fingerprint(self, fingerprint: DocumentFingerprint):
        pass

    @abstractmethod
    def add_correction(self, record: CorrectionRecord):
        pass

    @abstractmethod
    def list_corrections(self, consumed: Optional[bool] = None) -> List[CorrectionRecord]:
        pass

    @abstractmethod
    def mark_consumed(self, correction_ids: Iterable[str]):
        pass

    @abstractmethod
    def add_rejected_amounts(self, amounts: Iterable[float]):
        pass

    @abstractmethod
    def rejected_amounts(self) -> List[float]:
        pass

    @abstractmethod
    def save_pattern(self, pattern: ConfidencePattern):
        pass

    @abstractmethod
    def list_patterns(self) -> List[ConfidencePattern]:
        pass


class InMemoryLearningStore(LearningStore):
    """Dictionary-backed store; a single lock serializes writers."""

    def __init__(self):
        self._lock = threading.RLock()
        self._calibrations: Dict[str, CalibrationEntry] = {}
        self._templates: Dict[str, Template] = {}
        self._fingerprints: Dict[str, DocumentFingerprint] = {}
        self._corrections: Dict[str, CorrectionRecord] = {}
        self._rejected: List[float] = []
        self._patterns: Dict[str, ConfidencePattern] = {}

    def get_calibration(self, document_type: str, extraction_method: str) -> Optional[CalibrationEntry]:
        with self._lock:
            return self._calibrations.get(calibration_key(document_type, extraction_method))

    def save_calibration(self, entry: CalibrationEntry):
        with self._lock:
            self._calibrations[entry.key] = entry
            self._changed()

    def list_calibrations(self) -> List[CalibrationEntry]:
        with self._lock:
            return list(self._calibrations.values())

    def get_template(self, template_id: str) -> Optional[Template]:
        with self._lock:
            return self._templates.get(template_id)

    def save_template(self, template: Template):
        with self._lock:
            self._templates[template.id] = template
            self._changed()

    def list_templates(self, active_only: bool = False) -> List[Template]:
        with self._lock:
            templates = list(self._templates.values())
        if active_only:
            templates = [template for template in templates if template.is_active]
        return templates

    def get_fingerprint(self, document_id: str) -> Optional[DocumentFingerprint]:
        with self._lock:
            return self._fingerprints.get(document_id)

    def save_fingerprint(self, fingerprint: DocumentFingerprint):
        with self._lock:
            self._fingerprints[fingerprint.document_id] = fingerprint
            self._changed()

    def add_correction(self, record: CorrectionRecord):
        with self._lock:
            self._corrections[record.id] = record
            self._changed()

    def list_corrections(self, consumed: Optional[bool] = None) -> List[CorrectionRecord]:
        with self._lock:
            records = list(self._corrections.values())
        if consumed is not None:
            records = [record for record in records if record.consumed == consumed]
        return records

    def mark_consumed(self, correction_ids: Iterable[str]):
        with self._lock:
            for correction_id in correction_ids:
                record = self._corrections.get(correction_id)
                if record is not None:
                    record.consumed = True
            self._changed()

    def add_rejected_amounts(self, amounts: Iterable[float]):
        with self._lock:
            for amount in amounts:
                amount = cents(amount)
                if amount > 0 and amount not in self._rejected:
                    self._rejected.append(amount)
            self._changed()

    def rejected_amounts(self) -> List[float]:
        with self._lock:
            return list(self._rejected)

    def save_pattern(self, pattern: ConfidencePattern):
        with self._lock:
            self._patterns[pattern.id] = pattern
            self._changed()

    def list_patterns(self) -> List[ConfidencePattern]:
        with self._lock:
            return list(self._patterns.values())

    def _changed(self):
        """Hook called with the lock held after every mutation."""


class _StoreSnapshot(BaseModel):
    """On-disk layout of a JsonFileLearningStore."""

    version: int = 1
    calibrations: List[CalibrationEntry] = Field(default_factory=list)
    templates: List[Template] = Field(default_factory=list)
    fingerprints: List[DocumentFingerprint] = Field(default_factory=list)
    corrections: List[CorrectionRecord] = Field(default_factory=list)
    rejected_amounts: List[float] = Field(default_factory=list)
    patterns: List[ConfidencePattern] = Field(default_factory=list)


class JsonFileLearningStore(InMemoryLearningStore):
    """In-memory store written through to a JSON file after every change."""

    def __init__(self, path):
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            self._load()
        else:
            logger.info(f"Learning store {self.path} not found - starting empty")

    def _load(self):
        with open(self.path, 'r', encoding='utf-8') as f:
            snapshot = _StoreSnapshot.model_validate(json.load(f))

        self._calibrations = {entry.key: entry for entry in snapshot.calibrations}
        self._templates = {template.id: template for template in snapshot.templates}
        self._fingerprints = {fp.document_id: fp for fp in snapshot.fingerprints}
        self._corrections = {record.id: record for record in snapshot.corrections}
        self._rejected = list(snapshot.rejected_amounts)
        self._patterns = {pattern.id: pattern for pattern in snapshot.patterns}

        logger.info(
            f"Loaded learning store {self.path}: {len(self._calibrations)} calibrations, "
            f"{len(self._templates)} templates, {len(self._corrections)} corrections"
        )

    def _changed(self):
        snapshot = _StoreSnapshot(
            calibrations=list(self._calibrations.values()),
            templates=list(self._templates.values()),
            fingerprints=list(self._fingerprints.values()),
            corrections=list(self._corrections.values()),
            rejected_amounts=list(self._rejected),
            patterns=list(self._patterns.values()),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Sibling temp file + os.replace keeps the swap atomic
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(snapshot.model_dump_json(indent=2))
            os.replace(tmp_path, self.path)
        except OSError:
            os.unlink(tmp_path)
            raise
