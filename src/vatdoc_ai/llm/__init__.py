"""Document-understanding service clients."""

from .document_service import BaseDocumentService, OpenAIDocumentService, ServiceRequest, ServiceResponse

__all__ = ["BaseDocumentService", "OpenAIDocumentService", "ServiceRequest", "ServiceResponse"]
