"""
Main VAT Document Processor Pipeline.

This module implements the caller-facing pipeline that orchestrates all
components for VAT document processing: extraction, template matching,
categorization, confidence scoring and learning from corrections.
"""

import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..categorization.engine import CategorizationEngine, CategorizedResult
from ..config import VatDocSettings
from ..governor.request_governor import Priority, RequestGovernor
from ..learning.feedback_learner import FeedbackLearner, LearningReport
from ..learning.fingerprint import fingerprint
from ..learning.records import CorrectionReason, CorrectionRecord, FeedbackTag
from ..learning.stores import InMemoryLearningStore, JsonFileLearningStore, LearningStore
from ..learning.template_store import TemplateStore
from ..llm.document_service import BaseDocumentService, OpenAIDocumentService
from ..ocr.text_extractors import BaseTextExtractor
from ..parsing.schema import Category, CategoryHint, ExtractionRequest
from ..scoring.confidence_scorer import ConfidenceScorer
from .extraction_orchestrator import ExtractionOrchestrator, TerminalFailure

logger = logging.getLogger(__name__)

ProcessResult = Union[CategorizedResult, TerminalFailure]


class VatDocumentProcessor:
    """
    Main pipeline for processing VAT documents.

    This class orchestrates the complete VAT document processing pipeline:
    1. Extraction through the governed model fallback chain
    2. Template matching on the document fingerprint
    3. Categorization and reconciliation of tax amounts
    4. Confidence scoring with learned calibration
    5. Template synthesis for high-confidence results
    """

    def __init__(
        self,
        settings: Optional[VatDocSettings] = None,
        service: Optional[BaseDocumentService] = None,
        store: Optional[LearningStore] = None,
        governor: Optional[RequestGovernor] = None,
        text_extractor: Optional[BaseTextExtractor] = None,
        background_learning: bool = True,
    ):
        """
        Initialize the VatDocumentProcessor.

        Args:
            settings: Pipeline settings; loaded from the environment when omitted
            service: Document-understanding service; built from settings when omitted
            store: Learning store; a JSON-file store when settings name a path
            governor: Request governor; built from settings when omitted
            text_extractor: Text extractor for PDFs and text files
            background_learning: Run learning batch passes on a worker thread
        """
        self.settings = settings or VatDocSettings()
        self._initialize_components(service, store, governor, text_extractor, background_learning)

        logger.info("VatDocumentProcessor initialized successfully")

    def _initialize_components(
        self,
        service: Optional[BaseDocumentService],
        store: Optional[LearningStore],
        governor: Optional[RequestGovernor],
        text_extractor: Optional[BaseTextExtractor],
        background_learning: bool,
    ):
        """Initialize all pipeline components."""
        settings = self.settings

        self.store = store or self._initialize_store()
        self.governor = governor or RequestGovernor.from_settings(settings)
        self.service = service or self._initialize_service()

        overrides: Dict[str, Any] = {'text_extractor': text_extractor}
        if self.service is None:
            # Without a service only the text heuristic can run
            overrides.update(vision_models=[], text_models=[])
        self.orchestrator = ExtractionOrchestrator.from_settings(
            settings, self.service, self.governor, **overrides
        )

        self.engine = CategorizationEngine.from_settings(settings)
        self.scorer = ConfidenceScorer(
            store=self.store,
            valid_rates=settings.valid_vat_rates,
            plausible_min=settings.plausible_min,
            plausible_max=settings.plausible_max,
            tolerance=settings.reconciliation_tolerance,
        )
        self.template_store = TemplateStore(
            self.store,
            match_threshold=settings.template_match_threshold,
            creation_threshold=settings.template_creation_threshold,
        )
        self.learner = FeedbackLearner(
            self.store,
            template_store=self.template_store,
            learning_rate=settings.learning_rate,
            batch_size=settings.correction_batch_size,
            background=background_learning,
        )

    def _initialize_store(self) -> LearningStore:
        if self.settings.store_path:
            return JsonFileLearningStore(self.settings.store_path)
        return InMemoryLearningStore()

    def _initialize_service(self) -> Optional[BaseDocumentService]:
        if self.settings.ai_enabled:
            return OpenAIDocumentService.from_settings(self.settings)
        logger.warning("No API key configured - only text heuristics are available")
        return None

    async def process(
        self,
        document: bytes,
        media_type: str,
        filename: str,
        category_hint: Union[CategoryHint, str] = CategoryHint.UNKNOWN,
        user_id: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> ProcessResult:
        """
        Process a single document.

        Args:
            document: Raw document bytes
            media_type: MIME type of the document
            filename: Original file name, used in logs
            category_hint: SALES, PURCHASES or UNKNOWN as known by the caller
            user_id: Optional identifier of the submitting user
            priority: Governor priority of this document's service calls

        Returns:
            CategorizedResult, or TerminalFailure with the attempt log

        Raises:
            asyncio.CancelledError: The caller cancelled processing
        """
        start_time = time.time()
        hint = CategoryHint.parse(category_hint)
        request = ExtractionRequest(
            document=document,
            media_type=media_type,
            filename=filename,
            category_hint=hint,
            user_id=user_id,
        )
        logger.info(f"Processing document: {filename} ({media_type})")

        outcome = await self.orchestrator.extract(request, priority=priority)
        if isinstance(outcome, TerminalFailure):
            return outcome

        text = outcome.document_text or outcome.parsed.extracted_text
        fp = fingerprint(text, request.document_id)
        parsed = outcome.parsed

        match = self.template_store.find_best_template(fp) if text else None
        if match:
            parsed = self.template_store.apply_template(match.template, parsed, text)
            self.template_store.record_match(match.template)

        result = self.engine.categorize(
            parsed,
            document_text=text,
            category_hint=hint,
            rejected_amounts=self.store.rejected_amounts(),
            extraction_method=outcome.method,
        )
        result.document_id = request.document_id
        result.template_id = match.template.id if match else None
        result.attempts = list(outcome.attempts)
        self.scorer.score(result, match.template if match else None)

        if text:
            self.store.save_fingerprint(fp)
            if match is None and result.all_amounts:
                self.template_store.maybe_create_template(
                    parsed, fp, text, result.confidence, result.classification.value
                )

        processing_time = time.time() - start_time
        logger.info(
            f"Processed {filename} in {processing_time:.2f}s: {result.classification.value} "
            f"{result.all_amounts} (confidence {result.confidence:.2f}, via {outcome.model})"
        )
        return result

    async def process_file(
        self,
        path: Union[str, Path],
        category_hint: Union[CategoryHint, str] = CategoryHint.UNKNOWN,
        priority: Priority = Priority.MEDIUM,
    ) -> ProcessResult:
        """Read a file from disk and process it; the media type is guessed from the name."""
        path = Path(path)
        media_type = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
        document = await asyncio.to_thread(path.read_bytes)
        return await self.process(document, media_type, path.name, category_hint, priority=priority)

    async def process_batch(
        self,
        paths: Sequence[Union[str, Path]],
        category_hint: Union[CategoryHint, str] = CategoryHint.UNKNOWN,
        priority: Priority = Priority.LOW,
    ) -> List[Tuple[str, ProcessResult]]:
        """
        Process multiple documents concurrently.

        Concurrency is bounded by the governor. One document failing never
        affects the others.

        Args:
            paths: Paths of the documents
            category_hint: Hint applied to every document
            priority: Governor priority for the whole batch

        Returns:
            (path, result or failure) pairs in input order
        """
        logger.info(f"Processing batch of {len(paths)} documents")
        outcomes = await asyncio.gather(
            *(self.process_file(path, category_hint, priority) for path in paths),
            return_exceptions=True,
        )

        results: List[Tuple[str, ProcessResult]] = []
        for path, outcome in zip(paths, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.error(f"Failed to process {path}: {outcome}")
                outcome = TerminalFailure(reason=str(outcome), error_code=getattr(outcome, 'code', None))
            results.append((str(path), outcome))
        return results

    def submit_correction(
        self,
        original: CategorizedResult,
        corrected_sales: Sequence[float],
        corrected_purchases: Sequence[float],
        tag: Union[FeedbackTag, CorrectionReason, str],
        corrected_category: Optional[Category] = None,
    ) -> CorrectionRecord:
        """Feed a user correction back into calibration and templates."""
        return self.learner.submit_correction(
            original, corrected_sales, corrected_purchases, tag, corrected_category
        )

    def run_learning(self) -> LearningReport:
        return self.learner.run_batch()

    def get_processing_stats(self) -> Dict[str, Any]:
        """Get statistics about the processing pipeline."""
        templates = self.store.list_templates()
        return {
            'service': type(self.service).__name__ if self.service else None,
            'vision_models': self.orchestrator.vision_models,
            'text_models': self.orchestrator.text_models,
            'governor': self.governor.status(),
            'calibrations': {
                entry.key: {'factor': round(entry.factor, 4), 'corrections': entry.correction_count}
                for entry in self.store.list_calibrations()
            },
            'templates': {
                'total': len(templates),
                'active': sum(1 for template in templates if template.is_active),
            },
            'pending_corrections': len(self.store.list_corrections(consumed=False)),
            'rejected_amounts': len(self.store.rejected_amounts()),
        }

    def close(self):
        self.learner.shutdown()
