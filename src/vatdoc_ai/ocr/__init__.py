"""Text extraction and image preparation."""

from .text_extractors import (
    BaseTextExtractor,
    DocumentTextExtractor,
    ImagePayload,
    is_image,
    is_text_document,
    prepare_image,
)

__all__ = [
    "BaseTextExtractor",
    "DocumentTextExtractor",
    "ImagePayload",
    "is_image",
    "is_text_document",
    "prepare_image",
]
