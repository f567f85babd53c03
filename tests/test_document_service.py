"""
Tests for the document-understanding service client.
"""

import sys
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc_ai.exceptions import (
    AuthenticationError,
    EmptyResponseError,
    MalformedRequestError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    ServiceTimeoutError,
)
from vatdoc_ai.llm.document_service import OpenAIDocumentService, ServiceRequest


def http_response(status_code, body=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    if body is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = body
    return response


def completion(content, model="gpt-4o-mini"):
    return {
        "model": model,
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 812, "completion_tokens": 140},
    }


class TestOpenAIDocumentService:
    """Test cases for OpenAIDocumentService."""

    def setup_method(self):
        """Set up test fixtures."""
        self.service = OpenAIDocumentService(api_key="test-key", base_url="https://example.test/v1/")
        self.service.session = Mock()
        self.request = ServiceRequest(
            model="gpt-4o-mini",
            instructions="Extract VAT data as JSON.",
            document_text="Total VAT 23.00",
        )

    def test_successful_completion(self):
        """Test the response text and token usage are returned."""
        self.service.session.post.return_value = http_response(200, completion('{"documentType": "INVOICE"}'))

        response = self.service.complete(self.request)

        assert response.text == '{"documentType": "INVOICE"}'
        assert response.input_tokens == 812
        assert response.output_tokens == 140
        assert response.model == "gpt-4o-mini"

        args, kwargs = self.service.session.post.call_args
        assert args[0] == "https://example.test/v1/chat/completions"
        assert kwargs["headers"]["Authorization"] == "Bearer test-key"
        content = kwargs["json"]["messages"][0]["content"]
        assert content[0]["text"] == "Extract VAT data as JSON."
        assert content[1]["text"].endswith("Total VAT 23.00")

    def test_image_payload(self):
        """Test images are sent inline as data URLs."""
        self.service.session.post.return_value = http_response(200, completion("{}"))
        request = ServiceRequest(
            model="gpt-4o", instructions="Read", image_base64="aGVsbG8=", image_media_type="image/jpeg"
        )

        self.service.complete(request)

        content = self.service.session.post.call_args[1]["json"]["messages"][0]["content"]
        assert content[-1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="

    @pytest.mark.parametrize("status, body, error_type", [
        (401, {"error": {"message": "Invalid API key"}}, AuthenticationError),
        (403, {"error": {"message": "Forbidden"}}, AuthenticationError),
        (429, {"error": {"message": "You exceeded your current quota", "code": "insufficient_quota"}},
         QuotaExceededError),
        (429, {"error": {"message": "Rate limit reached", "code": "rate_limit_exceeded"}}, RateLimitError),
        (400, {"error": {"message": "Invalid image"}}, MalformedRequestError),
        (404, {"error": {"message": "Unknown model"}}, MalformedRequestError),
        (500, None, ServerError),
        (503, None, ServerError),
    ])
    def test_http_errors_are_classified(self, status, body, error_type):
        """Test HTTP failures map onto the error taxonomy."""
        self.service.session.post.return_value = http_response(status, body, text="upstream failure")

        with pytest.raises(error_type) as exc_info:
            self.service.complete(self.request)
        assert exc_info.value.status == status

    def test_retryable_classification(self):
        """Test rate limits are retryable and quota errors are not."""
        assert RateLimitError("slow down").retryable
        assert not QuotaExceededError("no credit").retryable

    def test_timeout(self):
        """Test HTTP timeouts become service timeouts."""
        self.service.session.post.side_effect = requests.exceptions.Timeout("read timeout")
        with pytest.raises(ServiceTimeoutError):
            self.service.complete(self.request)

    def test_connection_error(self):
        """Test connection failures are retryable server errors."""
        self.service.session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ServerError):
            self.service.complete(self.request)

    def test_unexpected_shape(self):
        """Test a response without choices is a server error."""
        self.service.session.post.return_value = http_response(200, {"object": "list"})
        with pytest.raises(ServerError):
            self.service.complete(self.request)

    def test_empty_answer(self):
        """Test a blank answer is retryable."""
        self.service.session.post.return_value = http_response(200, completion("   "))
        with pytest.raises(EmptyResponseError):
            self.service.complete(self.request)

    def test_estimated_cost(self):
        """Test the rate-accounting estimate counts prompt, image and output."""
        request = ServiceRequest(model="m", instructions="x" * 400, image_base64="abc", max_output_tokens=500)
        assert request.estimated_cost == 100 + 1000 + 500
