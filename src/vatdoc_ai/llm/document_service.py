"""
Client for the document-understanding service.

Speaks the OpenAI-compatible ``/chat/completions`` protocol with ``requests``.
Every failure is mapped onto the pipeline's error taxonomy so the governor and
orchestrator can decide between retrying, switching model and aborting.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from ..exceptions import (
    AuthenticationError,
    EmptyResponseError,
    MalformedRequestError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    ServiceTimeoutError,
    TerminalRequestError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceRequest:
    model: str
    instructions: str
    image_base64: Optional[str] = None
    image_media_type: Optional[str] = None
    document_text: Optional[str] = None
    max_output_tokens: int = 2000
    temperature: float = 0.1

    @property
    def estimated_cost(self) -> int:
        """Rough token estimate used for rate accounting."""
        prompt = len(self.instructions) + len(self.document_text or "")
        image = 1000 if self.image_base64 else 0
        return prompt // 4 + image + self.max_output_tokens


@dataclass(frozen=True)
class ServiceResponse:
    text: str
    input_tokens: int
    output_tokens: int
    model: str


class BaseDocumentService(ABC):
    """Abstract base class for document-understanding services."""

    @abstractmethod
    def complete(self, request: ServiceRequest) -> ServiceResponse:
        """Send one request and return the raw response text."""
        pass


class OpenAIDocumentService(BaseDocumentService):
    """
    Document-understanding service backed by an OpenAI-compatible API.

    Images are sent inline as data URLs; text documents are appended to the
    user message.
    """

    def __init__(self, api_key: str, base_url: str = "https://api.openai.com/v1", timeout: float = 30.0):
        """
        Initialize the service client.

        Args:
            api_key: API key for authentication
            base_url: Base URL of the API
            timeout: HTTP timeout in seconds
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json"
        }
        self.session = requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "OpenAIDocumentService":
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.call_timeout_seconds,
        )

    def complete(self, request: ServiceRequest) -> ServiceResponse:
        """
        Send a request to the chat completions endpoint.

        Args:
            request: Model, instructions and document payload

        Returns:
            ServiceResponse with the raw text and token usage

        Raises:
            RetryableError: Timeout, server error, rate limit or empty answer
            TerminalRequestError: Authentication, quota or malformed request
        """
        payload = self._build_payload(request)
        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions",
                headers=self.headers,
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ServiceTimeoutError(f"Request to {request.model} timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise ServerError(f"Could not connect to document service: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TerminalRequestError(f"Document service request failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_for(response, request.model)

        try:
            result = response.json()
            text = result["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ServerError(f"Unexpected response shape from {request.model}") from e

        if not text.strip():
            raise EmptyResponseError(f"{request.model} returned an empty response")

        usage = result.get("usage") or {}
        logger.info(f"Received {len(text)} characters from {request.model}")
        return ServiceResponse(
            text=text,
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
            model=result.get("model", request.model),
        )

    def _build_payload(self, request: ServiceRequest) -> Dict[str, Any]:
        content = [{"type": "text", "text": request.instructions}]
        if request.document_text:
            content.append({"type": "text", "text": f"Document text:\n{request.document_text}"})
        if request.image_base64:
            content.append({
                "type": "image_url",
                "image_url": {
                    "url": f"data:{request.image_media_type or 'image/png'};base64,{request.image_base64}",
                    "detail": "high",
                },
            })
        return {
            "model": request.model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": request.max_output_tokens,
            "temperature": request.temperature,
        }

    @staticmethod
    def _error_for(response: requests.Response, model: str):
        status = response.status_code
        try:
            body = response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if not isinstance(error, dict):
                error = {"message": str(error)} if error else {}
            detail = error.get("message") or response.text
            code = str(error.get("code") or error.get("type") or "")
        except ValueError:
            detail, code = response.text, ""

        message = f"{model}: HTTP {status} {detail}".strip()
        if status in (401, 403):
            return AuthenticationError(message, status=status)
        if status == 429:
            if "insufficient_quota" in code or "quota" in detail.lower():
                return QuotaExceededError(message, status=status)
            return RateLimitError(message, status=status)
        if status in (400, 404, 422):
            return MalformedRequestError(message, status=status)
        if status >= 500:
            return ServerError(message, status=status)
        return TerminalRequestError(message, status=status)
