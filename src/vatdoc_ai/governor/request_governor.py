"""
Request governor for calls to the document-understanding service.

Every outbound call goes through a single RequestGovernor, which provides:
1. A sliding one-minute window of request and cost counters
2. A bounded priority queue with a fixed number of concurrent slots
3. Exponential backoff for retryable failures
4. A circuit breaker that fails fast after consecutive failures

The governor knows nothing about documents; it only runs awaitable callables.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from ..exceptions import (
    CircuitOpenError,
    GovernorError,
    QueueFullError,
    ServerError,
    ServiceTimeoutError,
    TerminalRequestError,
    VatDocError,
)

logger = logging.getLogger(__name__)

AsyncCall = Callable[[], Awaitable[Any]]


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class _Ticket:
    """A request waiting for (or holding) an admission slot."""

    id: int
    priority: Priority
    estimated_cost: int
    retries: int = 0
    admitted: Optional[asyncio.Future] = field(default=None, repr=False)


class RequestGovernor:
    """
    Concurrency and rate guard in front of the external service.

    Admission is strictly ordered by queue position; high priority requests
    and retries are placed at the head of the queue.
    """

    def __init__(
        self,
        requests_per_minute: int = 50,
        cost_per_minute: int = 40000,
        utilization_threshold: float = 0.8,
        queue_capacity: int = 100,
        max_concurrency: int = 4,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        call_timeout: float = 30.0,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the governor.

        Args:
            requests_per_minute: Request ceiling for one window
            cost_per_minute: Estimated-cost (token) ceiling for one window
            utilization_threshold: Fraction of either ceiling that triggers a wait
            queue_capacity: Maximum number of requests waiting for a slot
            max_concurrency: Number of calls allowed in flight at once
            max_retries: Re-queue attempts for retryable failures
            base_delay: First backoff delay in seconds
            max_delay: Backoff cap in seconds
            failure_threshold: Consecutive failures that open the circuit
            cooldown_seconds: How long the circuit stays open
            call_timeout: Hard timeout for a single call
            window_seconds: Length of the rate window
            clock: Monotonic clock, injectable for tests
            sleep: Async sleep, injectable for tests
        """
        self.requests_per_minute = requests_per_minute
        self.cost_per_minute = cost_per_minute
        self.utilization_threshold = utilization_threshold
        self.queue_capacity = queue_capacity
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.call_timeout = call_timeout
        self.window_seconds = window_seconds

        self._clock = clock
        self._sleep = sleep
        self._ids = itertools.count(1)

        self._queue: Deque[_Ticket] = deque()
        self._active = 0

        self._window_start = clock()
        self._requests_in_window = 0
        self._cost_in_window = 0

        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @classmethod
    def from_settings(cls, settings, **overrides) -> "RequestGovernor":
        """Build a governor from a VatDocSettings instance."""
        params = dict(
            requests_per_minute=settings.requests_per_minute,
            cost_per_minute=settings.cost_per_minute,
            utilization_threshold=settings.utilization_threshold,
            queue_capacity=settings.queue_capacity,
            max_concurrency=settings.max_concurrency,
            max_retries=settings.governor_max_retries,
            base_delay=settings.governor_base_delay,
            max_delay=settings.governor_max_delay,
            failure_threshold=settings.failure_threshold,
            cooldown_seconds=settings.cooldown_seconds,
            call_timeout=settings.call_timeout_seconds,
        )
        params.update(overrides)
        return cls(**params)

    async def submit(
        self,
        call: AsyncCall,
        estimated_cost: int = 1000,
        priority: Priority = Priority.MEDIUM,
        on_retry: Optional[Callable[[VatDocError, int], None]] = None,
    ) -> Any:
        """
        Run ``call`` under rate, concurrency and circuit-breaker control.

        Args:
            call: Zero-argument callable returning an awaitable
            estimated_cost: Estimated token cost charged to the window
            priority: Queue priority
            on_retry: Called with the failure and retry number before each re-queue

        Returns:
            Whatever the awaited call returns

        Raises:
            QueueFullError: The queue is at capacity
            CircuitOpenError: The circuit breaker is open
            VatDocError: The call failed terminally or ran out of retries
        """
        self._check_circuit()
        if len(self._queue) >= self.queue_capacity:
            raise QueueFullError(
                f"Request queue full ({self.queue_capacity} waiting) - try again later"
            )

        ticket = _Ticket(id=next(self._ids), priority=priority, estimated_cost=estimated_cost)
        self._enqueue(ticket, front=priority == Priority.HIGH)
        logger.debug(
            f"Queued request {ticket.id} (priority: {priority.value}, queue length: {len(self._queue)})"
        )

        while True:
            await self._acquire(ticket)
            failure: Optional[VatDocError] = None
            try:
                self._check_circuit()
                await self._wait_for_window(ticket.estimated_cost)
                result = await asyncio.wait_for(call(), timeout=self.call_timeout)
            except GovernorError:
                raise
            except Exception as exc:
                failure = self._classify(exc)
            finally:
                self._release()

            if failure is None:
                self._record_success()
                return result

            self._record_failure(failure)
            if not failure.retryable or ticket.retries >= self.max_retries:
                logger.warning(
                    f"Request {ticket.id} failed permanently after {ticket.retries} retries: {failure}"
                )
                raise failure

            ticket.retries += 1
            if on_retry is not None:
                on_retry(failure, ticket.retries)
            delay = self.backoff_delay(ticket.retries)
            logger.info(f"Retrying request {ticket.id} in {delay:.1f}s (retry {ticket.retries})")
            await self._sleep(delay)

            # The breaker may have opened while this request was backing off
            self._check_circuit()
            self._enqueue(ticket, front=True)

    def backoff_delay(self, retry: int) -> float:
        """Exponential delay for the given 1-based retry number."""
        return min(self.base_delay * (2 ** max(retry - 1, 0)), self.max_delay)

    @property
    def circuit_open(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self.cooldown_seconds

    def status(self) -> Dict[str, Any]:
        """Snapshot of queue, window and breaker state."""
        return {
            "queue_length": len(self._queue),
            "active_calls": self._active,
            "requests_this_window": self._requests_in_window,
            "cost_this_window": self._cost_in_window,
            "circuit_open": self.circuit_open,
            "consecutive_failures": self._consecutive_failures,
        }

    # Queue and slots

    def _enqueue(self, ticket: _Ticket, front: bool = False):
        ticket.admitted = asyncio.get_running_loop().create_future()
        if front:
            self._queue.appendleft(ticket)
        else:
            self._queue.append(ticket)
        self._dispatch()

    def _dispatch(self):
        while self._queue and self._active < self.max_concurrency:
            ticket = self._queue.popleft()
            if ticket.admitted.done():
                continue
            self._active += 1
            ticket.admitted.set_result(True)

    async def _acquire(self, ticket: _Ticket):
        try:
            await ticket.admitted
        except asyncio.CancelledError:
            if ticket in self._queue:
                self._queue.remove(ticket)
            elif ticket.admitted.done() and not ticket.admitted.cancelled():
                # Admitted in the same tick as the cancellation
                self._release()
            raise

    def _release(self):
        self._active -= 1
        self._dispatch()

    # Rate window

    async def _wait_for_window(self, estimated_cost: int):
        # Other waiters may have rolled the window and charged it while this one slept
        while True:
            now = self._clock()
            elapsed = now - self._window_start
            if elapsed >= self.window_seconds:
                self._reset_window(now)
                elapsed = 0.0

            usage = max(
                self._requests_in_window / self.requests_per_minute,
                self._cost_in_window / self.cost_per_minute,
            )
            if usage < self.utilization_threshold:
                break
            wait = self.window_seconds - elapsed
            logger.info(f"Rate limit protection: waiting {wait:.1f}s (window usage {usage:.0%})")
            await self._sleep(wait)

        self._requests_in_window += 1
        self._cost_in_window += estimated_cost

    def _reset_window(self, now: float):
        self._window_start = now
        self._requests_in_window = 0
        self._cost_in_window = 0

    # Circuit breaker

    def _check_circuit(self):
        if self._opened_at is None:
            return
        elapsed = self._clock() - self._opened_at
        if elapsed < self.cooldown_seconds:
            raise CircuitOpenError(
                "Circuit breaker open - document service experiencing issues",
                retry_after=self.cooldown_seconds - elapsed,
            )
        self._opened_at = None
        self._consecutive_failures = 0
        logger.info("Circuit breaker reset - resuming requests")

    def _record_success(self):
        self._consecutive_failures = 0

    def _record_failure(self, error: VatDocError):
        self._consecutive_failures += 1
        if self._opened_at is None and self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                f"Circuit breaker opened after {self._consecutive_failures} consecutive failures "
                f"(last: {error.code})"
            )

    @staticmethod
    def _classify(exc: Exception) -> VatDocError:
        if isinstance(exc, VatDocError):
            return exc
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            error: VatDocError = ServiceTimeoutError("Document service call timed out")
        elif isinstance(exc, ConnectionError):
            error = ServerError(f"Connection to document service failed: {exc}")
        else:
            error = TerminalRequestError(f"Unexpected error from document service: {exc}")
        error.__cause__ = exc
        return error
