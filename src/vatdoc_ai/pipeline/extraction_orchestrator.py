"""
Extraction orchestrator.

Drives one document through the candidate models:

1. Prepare the document (image payload, or plain text for PDFs and text files)
2. For each model in order, try up to ``attempts_per_model`` times through the
   request governor, backing off between retryable failures
3. Run JSON recovery on every response; a response that only yields the
   minimal structure is kept as a degraded candidate and the next model is tried
4. When every model is exhausted, fall back to the degraded candidate or the
   text heuristic extractor, otherwise return a TerminalFailure

Model attempts for one request are strictly sequential.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..exceptions import (
    AuthenticationError,
    GovernorError,
    QuotaExceededError,
    ServiceTimeoutError,
    TerminalRequestError,
    UnsupportedMediaTypeError,
    VatDocError,
)
from ..governor.request_governor import Priority, RequestGovernor
from ..llm.document_service import BaseDocumentService, ServiceRequest
from ..ocr.text_extractors import (
    BaseTextExtractor,
    DocumentTextExtractor,
    ImagePayload,
    is_image,
    is_text_document,
    prepare_image,
)
from ..parsing.amounts import DEFAULT_MAX_VALUE
from ..parsing.heuristic_extractor import HeuristicExtractor
from ..parsing.json_recovery import RecoveryLevel, parse_model_response
from ..parsing.schema import (
    AttemptOutcome,
    ExtractionAttempt,
    ExtractionMethod,
    ExtractionRequest,
    ParsedExtraction,
)

logger = logging.getLogger(__name__)

PREPARE_STEP = "document-preparation"
HEURISTIC_STEP = "heuristic"


@dataclass
class ExtractionOutcome:
    """A usable extraction together with how it was obtained."""

    parsed: ParsedExtraction
    method: ExtractionMethod
    attempts: List[ExtractionAttempt]
    document_text: str = ""
    model: Optional[str] = None


@dataclass(frozen=True)
class TerminalFailure:
    """No usable extraction; carries the last error and the full attempt log."""

    reason: str
    attempts: Tuple[ExtractionAttempt, ...] = ()
    error_code: Optional[str] = None
    document_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': 'failed',
            'document_id': self.document_id,
            'reason': self.reason,
            'error_code': self.error_code,
            'attempts': [
                {
                    'model': attempt.model,
                    'started_at': attempt.started_at.isoformat(),
                    'duration_seconds': round(attempt.duration_seconds, 3),
                    'outcome': attempt.outcome.value,
                    'error': attempt.error,
                }
                for attempt in self.attempts
            ],
        }


@dataclass
class _RunState:
    attempts: List[ExtractionAttempt] = field(default_factory=list)
    last_error: Optional[VatDocError] = None
    degraded: Optional[ParsedExtraction] = None
    degraded_model: Optional[str] = None
    service_unavailable: bool = False
    aborted: bool = False


class ExtractionOrchestrator:
    """Runs the per-request model fallback state machine."""

    def __init__(
        self,
        service: Optional[BaseDocumentService],
        governor: RequestGovernor,
        text_extractor: Optional[BaseTextExtractor] = None,
        heuristic_extractor: Optional[HeuristicExtractor] = None,
        vision_models: Optional[List[str]] = None,
        text_models: Optional[List[str]] = None,
        instructions: str = "",
        attempts_per_model: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 8.0,
        max_output_tokens: int = 2000,
        temperature: float = 0.1,
        max_image_edge: int = 2048,
        max_value: float = DEFAULT_MAX_VALUE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            service: Document-understanding service client
            governor: Request governor wrapping every service call
            text_extractor: Text extractor for PDFs and text files
            heuristic_extractor: Regex fallback for documents with text
            vision_models: Ordered model candidates for images
            text_models: Ordered model candidates for extracted text
            instructions: Extraction instructions sent with every call
            attempts_per_model: Tries per model before moving on
            retry_base_delay: First delay between tries, in seconds
            retry_max_delay: Delay cap, in seconds
            max_output_tokens: Output length limit per call
            temperature: Sampling temperature per call
            max_image_edge: Longest image edge sent to vision models
            max_value: Ceiling above which decoded numbers are dropped
            clock: Monotonic clock, injectable for tests
            sleep: Async sleep, injectable for tests
        """
        self.service = service
        self.governor = governor
        self.text_extractor = text_extractor or DocumentTextExtractor()
        self.heuristic_extractor = heuristic_extractor or HeuristicExtractor(max_value=max_value)
        self.vision_models = list(["gpt-4o", "gpt-4o-mini"] if vision_models is None else vision_models)
        self.text_models = list(["gpt-4o-mini"] if text_models is None else text_models)
        self.instructions = instructions
        self.attempts_per_model = attempts_per_model
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.max_image_edge = max_image_edge
        self.max_value = max_value
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, service: BaseDocumentService, governor: RequestGovernor, **overrides):
        params = dict(
            vision_models=settings.vision_models,
            text_models=settings.text_models,
            instructions=settings.instructions,
            attempts_per_model=settings.attempts_per_model,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            max_output_tokens=settings.max_output_tokens,
            temperature=settings.temperature,
            max_image_edge=settings.max_image_edge,
        )
        params.update(overrides)
        return cls(service, governor, **params)

    def retry_delay(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)

    async def extract(
        self, request: ExtractionRequest, priority: Priority = Priority.MEDIUM
    ) -> Union[ExtractionOutcome, TerminalFailure]:
        """
        Extract structured data from one document.

        Args:
            request: Document and metadata
            priority: Governor priority for this request's calls

        Returns:
            ExtractionOutcome, or TerminalFailure with the attempt log

        Raises:
            asyncio.CancelledError: The caller cancelled the request
        """
        state = _RunState()
        document_id = request.document_id

        try:
            image, document_text, models, method = await self._prepare(request)
        except TerminalRequestError as e:
            self._record(state, PREPARE_STEP, datetime.now(), self._clock(), AttemptOutcome.ERROR, error=e)
            logger.error(f"Could not prepare {request.filename}: {e.message}")
            return TerminalFailure(e.message, tuple(state.attempts), e.code, document_id)

        for model in models:
            outcome = await self._try_model(model, image, document_text, method, state, priority)
            if outcome is not None:
                return outcome
            if state.aborted or state.service_unavailable:
                break

        if state.aborted:
            error = state.last_error
            logger.error(f"Extraction of {request.filename} aborted: {error.message}")
            return TerminalFailure(error.message, tuple(state.attempts), error.code, document_id)

        return self._fall_back(request, state, document_text, method)

    async def _prepare(
        self, request: ExtractionRequest
    ) -> Tuple[Optional[ImagePayload], Optional[str], List[str], ExtractionMethod]:
        media_type = request.media_type.lower()
        if is_image(media_type):
            image = await asyncio.to_thread(
                prepare_image, request.document, media_type, self.max_image_edge
            )
            return image, None, self.vision_models, ExtractionMethod.VISION
        if is_text_document(media_type):
            text = await asyncio.to_thread(self.text_extractor.extract_text, request.document, media_type)
            return None, text, self.text_models, ExtractionMethod.TEXT
        raise UnsupportedMediaTypeError(f"Unsupported media type: {request.media_type}")

    async def _try_model(
        self,
        model: str,
        image: Optional[ImagePayload],
        document_text: Optional[str],
        method: ExtractionMethod,
        state: _RunState,
        priority: Priority,
    ) -> Optional[ExtractionOutcome]:
        service_request = ServiceRequest(
            model=model,
            instructions=self.instructions,
            image_base64=image.data_base64 if image else None,
            image_media_type=image.media_type if image else None,
            document_text=document_text,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
        )

        started_at = datetime.now()
        start = self._clock()

        def call():
            nonlocal started_at, start
            started_at = datetime.now()
            start = self._clock()
            return asyncio.to_thread(self.service.complete, service_request)

        def record_governor_retry(error: VatDocError, retry: int):
            # Each governor-level retry is a separate service call
            self._record(state, model, started_at, start, self._failure_outcome(error), error=error)
            logger.info(f"{model} call failed ({error.code}) - governor retry {retry}")

        for attempt in range(1, self.attempts_per_model + 1):
            started_at = datetime.now()
            start = self._clock()
            try:
                response = await self.governor.submit(
                    call,
                    estimated_cost=service_request.estimated_cost,
                    priority=priority,
                    on_retry=record_governor_retry,
                )
            except GovernorError as e:
                self._record(state, model, started_at, start, AttemptOutcome.ERROR, error=e)
                state.service_unavailable = True
                logger.warning(f"Governor refused {model}: {e.message} - no further service calls")
                return None
            except VatDocError as e:
                self._record(state, model, started_at, start, self._failure_outcome(e), error=e)
                if isinstance(e, (AuthenticationError, QuotaExceededError)):
                    state.aborted = True
                    return None
                if e.retryable and attempt < self.attempts_per_model:
                    delay = self.retry_delay(attempt)
                    logger.info(f"{model} attempt {attempt} failed ({e.code}) - retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    continue
                logger.warning(f"Giving up on {model} after {attempt} attempt(s): {e.message}")
                return None

            parsed, level = parse_model_response(response.text, max_value=self.max_value)
            if level == RecoveryLevel.MINIMAL:
                self._record(state, model, started_at, start, AttemptOutcome.DEGRADED, raw=response.text)
                if state.degraded is None or (state.degraded.tax_total is None and parsed.tax_total is not None):
                    state.degraded = parsed
                    state.degraded_model = model
                logger.warning(f"{model} returned no usable JSON - trying next model")
                return None

            self._record(state, model, started_at, start, AttemptOutcome.SUCCESS, raw=response.text)
            logger.info(f"Extraction succeeded with {model} ({level.value} parse)")
            return ExtractionOutcome(
                parsed=parsed,
                method=method,
                attempts=state.attempts,
                document_text=document_text or parsed.extracted_text,
                model=model,
            )
        return None

    def _fall_back(
        self,
        request: ExtractionRequest,
        state: _RunState,
        document_text: Optional[str],
        method: ExtractionMethod,
    ) -> Union[ExtractionOutcome, TerminalFailure]:
        degraded = state.degraded
        if degraded is not None and degraded.tax_total is not None:
            logger.warning(f"Using degraded structure from {state.degraded_model} for {request.filename}")
            return ExtractionOutcome(degraded, method, state.attempts, document_text or "", state.degraded_model)

        if document_text:
            started_at = datetime.now()
            start = self._clock()
            parsed = self.heuristic_extractor.extract(document_text)
            if parsed.tax_total is not None:
                self._record(state, HEURISTIC_STEP, started_at, start, AttemptOutcome.SUCCESS)
                logger.warning(f"Using heuristic extraction for {request.filename}")
                return ExtractionOutcome(
                    parsed, ExtractionMethod.HEURISTIC, state.attempts, document_text, HEURISTIC_STEP
                )
            self._record(
                state, HEURISTIC_STEP, started_at, start, AttemptOutcome.ERROR,
                message="No labelled VAT amount found in document text",
            )

        if degraded is not None:
            return ExtractionOutcome(degraded, method, state.attempts, document_text or "", state.degraded_model)

        error = state.last_error
        reason = error.message if error else "No model produced a usable extraction"
        logger.error(f"Extraction of {request.filename} failed after {len(state.attempts)} attempts: {reason}")
        return TerminalFailure(reason, tuple(state.attempts), error.code if error else None, request.document_id)

    @staticmethod
    def _failure_outcome(error: VatDocError) -> AttemptOutcome:
        return AttemptOutcome.TIMEOUT if isinstance(error, ServiceTimeoutError) else AttemptOutcome.ERROR

    def _record(
        self,
        state: _RunState,
        model: str,
        started_at: datetime,
        start: float,
        outcome: AttemptOutcome,
        error: Optional[VatDocError] = None,
        raw: Optional[str] = None,
        message: Optional[str] = None,
    ):
        if error is not None:
            state.last_error = error
            message = f"{error.code}: {error.message}"
        state.attempts.append(ExtractionAttempt(
            model=model,
            started_at=started_at,
            duration_seconds=max(self._clock() - start, 0.0),
            outcome=outcome,
            raw_response=raw,
            error=message,
        ))
