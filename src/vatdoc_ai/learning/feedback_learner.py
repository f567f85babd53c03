"""
Feedback learner.

Turns user corrections into:
1. Calibration factor updates (EMA, keyed by document type + extraction method)
2. Template and fingerprint success-rate updates
3. A list of amounts proven wrong, read back by the exclusion filter
4. A periodic batch pass that aggregates patterns and deactivates weak templates
"""

import logging
import math
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..categorization.engine import CategorizedResult
from ..evaluation.metrics import compute_learning_metrics
from ..parsing.schema import Category
from .records import (
    CalibrationEntry,
    ConfidencePattern,
    CorrectionReason,
    CorrectionRecord,
    FeedbackTag,
)
from .stores import LearningStore
from .template_store import TemplateStore

logger = logging.getLogger(__name__)

MIN_FACTOR = 0.25
MAX_FACTOR = 2.0
MIN_ORIGINAL_CONFIDENCE = 0.1
AMOUNT_MATCH_TOLERANCE = 0.005


@dataclass
class LearningReport:
    """Outcome of one batch pass over unconsumed corrections."""

    corrections_processed: int = 0
    patterns_updated: int = 0
    templates_deactivated: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=datetime.now)


def resolve_feedback(tag: Union[FeedbackTag, CorrectionReason, str]) -> Tuple[FeedbackTag, Optional[CorrectionReason]]:
    """Accept a feedback tag or a correction reason and return both."""
    if isinstance(tag, FeedbackTag):
        return tag, None
    if isinstance(tag, CorrectionReason):
        return tag.feedback, tag
    value = str(tag).strip().upper()
    if value in FeedbackTag.__members__:
        return FeedbackTag[value], None
    if value in CorrectionReason.__members__:
        reason = CorrectionReason[value]
        return reason.feedback, reason
    raise ValueError(f"Unknown feedback tag: {tag}")


def calculate_accuracy(
    original_amounts: Sequence[float], corrected_amounts: Sequence[float], feedback: FeedbackTag
) -> float:
    """
    Accuracy of an original result given the user's correction.

    CORRECT is 1.0 and INCORRECT 0.2. PARTIALLY_CORRECT scores the relative
    distance between the totals, floored at 0.3 and capped at 0.9.
    """
    if feedback == FeedbackTag.CORRECT:
        return 1.0
    if feedback == FeedbackTag.INCORRECT:
        return 0.2

    original_total = math.fsum(original_amounts)
    corrected_total = math.fsum(corrected_amounts)
    if corrected_total == 0:
        return 0.3
    accuracy = max(0.3, 1 - abs(original_total - corrected_total) / corrected_total)
    return min(0.9, accuracy)


class FeedbackLearner:
    """Applies corrections to the learning store and runs batch passes."""

    def __init__(
        self,
        store: LearningStore,
        template_store: Optional[TemplateStore] = None,
        learning_rate: float = 0.1,
        batch_size: int = 10,
        background: bool = True,
    ):
        """
        Args:
            store: Learning store for calibrations, corrections and fingerprints
            template_store: Template store sharing ``store``
            learning_rate: EMA weight of each new observation
            batch_size: Unconsumed corrections that trigger a batch pass
            background: Run batch passes on a worker thread instead of inline
        """
        self.store = store
        self.template_store = template_store or TemplateStore(store)
        self.learning_rate = learning_rate
        self.batch_size = batch_size
        self.background = background

        self.last_report: Optional[LearningReport] = None
        self._batch_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[Future] = None

    def submit_correction(
        self,
        original: CategorizedResult,
        corrected_sales: Sequence[float],
        corrected_purchases: Sequence[float],
        tag: Union[FeedbackTag, CorrectionReason, str],
        corrected_category: Optional[Category] = None,
    ) -> CorrectionRecord:
        """
        Learn from one user correction.

        Args:
            original: Result the user reviewed
            corrected_sales: Sales VAT amounts according to the user
            corrected_purchases: Purchase VAT amounts according to the user
            tag: FeedbackTag or CorrectionReason
            corrected_category: Category according to the user, if it changed

        Returns:
            The stored CorrectionRecord
        """
        feedback, reason = resolve_feedback(tag)
        original_amounts = original.all_amounts
        corrected_amounts = list(corrected_sales) + list(corrected_purchases)
        accuracy = calculate_accuracy(original_amounts, corrected_amounts, feedback)

        document_type = original.document_type.value
        method = original.extraction_method.value
        entry = self.update_calibration(document_type, method, original.confidence, accuracy, feedback)

        if original.template_id:
            self.template_store.record_outcome(original.template_id, accuracy, self.learning_rate)
        if original.document_id:
            self._update_fingerprint(original.document_id, accuracy)

        if feedback != FeedbackTag.CORRECT:
            rejected = [
                amount for amount in original_amounts
                if not any(abs(amount - kept) <= AMOUNT_MATCH_TOLERANCE for kept in corrected_amounts)
            ]
            if rejected:
                self.store.add_rejected_amounts(rejected)
                logger.info(f"Recorded rejected amounts: {rejected}")

        record = CorrectionRecord(
            id=str(uuid.uuid4()),
            document_id=original.document_id,
            document_type=document_type,
            extraction_method=method,
            feedback=feedback,
            reason=reason,
            original_confidence=original.confidence,
            original_amounts=list(original_amounts),
            corrected_amounts=corrected_amounts,
            accuracy=accuracy,
            original_category=original.classification.value,
            corrected_category=corrected_category.value if corrected_category else None,
            template_id=original.template_id,
        )
        self.store.add_correction(record)

        logger.info(
            f"Correction for {document_type}/{method}: {feedback.value}, accuracy {accuracy:.2f}, "
            f"calibration factor now {entry.factor:.3f}"
        )

        if len(self.store.list_corrections(consumed=False)) >= self.batch_size:
            self._schedule_batch()
        return record

    def update_calibration(
        self,
        document_type: str,
        extraction_method: str,
        original_confidence: float,
        accuracy: float,
        feedback: FeedbackTag,
    ) -> CalibrationEntry:
        """
        EMA update of the calibration factor for one key.

        CORRECT feedback never lowers the factor and INCORRECT never raises it.
        """
        entry = self.store.get_calibration(document_type, extraction_method)
        if entry is None:
            entry = CalibrationEntry(document_type=document_type, extraction_method=extraction_method)

        current = entry.factor
        target = accuracy / max(original_confidence, MIN_ORIGINAL_CONFIDENCE)
        updated = (1 - self.learning_rate) * current + self.learning_rate * target

        if feedback == FeedbackTag.CORRECT:
            updated = max(updated, current)
        elif feedback == FeedbackTag.INCORRECT:
            updated = min(updated, current)

        entry.factor = max(MIN_FACTOR, min(MAX_FACTOR, updated))
        entry.correction_count += 1
        entry.updated_at = datetime.now()
        self.store.save_calibration(entry)
        return entry

    def run_batch(self) -> LearningReport:
        """Aggregate unconsumed corrections, deactivate weak templates and report metrics."""
        with self._batch_lock:
            corrections = self.store.list_corrections(consumed=False)
            if not corrections:
                report = LearningReport()
                self.last_report = report
                return report

            patterns = self._aggregate_patterns(corrections)
            deactivated = self.template_store.deactivate_weak_templates()
            metrics = compute_learning_metrics(corrections)
            self.store.mark_consumed(record.id for record in corrections)

            report = LearningReport(
                corrections_processed=len(corrections),
                patterns_updated=patterns,
                templates_deactivated=deactivated,
                metrics=metrics,
            )
            self.last_report = report
            logger.info(
                f"Learning pass consumed {len(corrections)} corrections, updated {patterns} patterns, "
                f"deactivated {len(deactivated)} templates"
            )
            return report

    def wait(self, timeout: Optional[float] = None) -> Optional[LearningReport]:
        """Block until a scheduled background pass finishes."""
        pending = self._pending
        if pending is None:
            return self.last_report
        return pending.result(timeout=timeout)

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _schedule_batch(self):
        if not self.background:
            self.run_batch()
            return
        if self._pending is not None and not self._pending.done():
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vatdoc-learning")
        self._pending = self._executor.submit(self.run_batch)
        self._pending.add_done_callback(self._log_batch_failure)

    @staticmethod
    def _log_batch_failure(future: Future):
        error = future.exception()
        if error is not None:
            logger.error(f"Background learning pass failed: {error}")

    def _update_fingerprint(self, document_id: str, accuracy: float):
        fp = self.store.get_fingerprint(document_id)
        if fp is None:
            return
        fp.success_rate = (1 - self.learning_rate) * fp.success_rate + self.learning_rate * accuracy
        fp.last_used = datetime.now()
        self.store.save_fingerprint(fp)

    def _aggregate_patterns(self, corrections: List[CorrectionRecord]) -> int:
        groups: Dict[str, List[CorrectionRecord]] = {}
        bounds: Dict[str, Tuple[float, float]] = {}
        for record in corrections:
            total = math.fsum(record.original_amounts)
            range_size = max(50.0, total * 0.2)
            range_min = math.floor(total / range_size) * range_size
            pattern_id = f"{record.document_type}_{range_min:.0f}_{record.extraction_method}"
            groups.setdefault(pattern_id, []).append(record)
            bounds[pattern_id] = (range_min, range_min + range_size)

        existing = {pattern.id: pattern for pattern in self.store.list_patterns()}
        for pattern_id, records in groups.items():
            count = len(records)
            mean_confidence = math.fsum(r.original_confidence for r in records) / count
            mean_accuracy = math.fsum(r.accuracy for r in records) / count

            pattern = existing.get(pattern_id)
            if pattern is None:
                pattern = ConfidencePattern(
                    id=pattern_id,
                    document_type=records[0].document_type,
                    extraction_method=records[0].extraction_method,
                    range_min=bounds[pattern_id][0],
                    range_max=bounds[pattern_id][1],
                    mean_confidence=mean_confidence,
                    mean_accuracy=mean_accuracy,
                    correction_count=count,
                )
            else:
                total = pattern.correction_count + count
                pattern.mean_confidence = (
                    pattern.mean_confidence * pattern.correction_count + mean_confidence * count
                ) / total
                pattern.mean_accuracy = (
                    pattern.mean_accuracy * pattern.correction_count + mean_accuracy * count
                ) / total
                pattern.correction_count = total
                pattern.updated_at = datetime.now()
            self.store.save_pattern(pattern)
        return len(groups)
