"""
Text extraction and image preparation for uploaded documents.

Two kinds of documents reach the pipeline:
1. Images, which are normalised with Pillow and sent to a vision model
2. PDFs and plain text, which are turned into text (pdfplumber for PDFs)
   and sent to a text model

Failures are raised as DocumentReadError carrying a ReadFailure reason.
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from io import BytesIO

import pdfplumber
from PIL import Image, UnidentifiedImageError

from ..exceptions import DocumentReadError, ReadFailure, UnsupportedMediaTypeError

logger = logging.getLogger(__name__)

IMAGE_MEDIA_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
TEXT_MEDIA_TYPES = {"application/pdf", "text/plain", "text/csv"}


def is_image(media_type: str) -> bool:
    return media_type.lower() in IMAGE_MEDIA_TYPES


def is_text_document(media_type: str) -> bool:
    return media_type.lower() in TEXT_MEDIA_TYPES


@dataclass(frozen=True)
class ImagePayload:
    data_base64: str
    media_type: str
    width: int
    height: int


class BaseTextExtractor(ABC):
    """Abstract base class for text-extraction collaborators."""

    @abstractmethod
    def extract_text(self, document: bytes, media_type: str) -> str:
        """Return the plain text of ``document`` or raise DocumentReadError."""
        pass


class DocumentTextExtractor(BaseTextExtractor):
    """
    Text extractor for PDFs and plain-text uploads.

    PDF pages are read with pdfplumber and joined with blank lines.
    """

    def __init__(self, max_pages: int = 20):
        self.max_pages = max_pages

    def extract_text(self, document: bytes, media_type: str) -> str:
        """
        Extract text from a document.

        Args:
            document: Raw document bytes
            media_type: Declared media type

        Returns:
            Extracted text

        Raises:
            DocumentReadError: The document is encrypted, corrupted, empty or unsupported
        """
        media_type = media_type.lower()
        if not document:
            raise DocumentReadError("Document is empty", ReadFailure.EMPTY)

        if media_type == "application/pdf":
            text = self._extract_pdf(document)
        elif media_type in ("text/plain", "text/csv"):
            text = self._decode_text(document)
        else:
            raise DocumentReadError(f"No text extractor for {media_type}", ReadFailure.UNSUPPORTED)

        if not text.strip():
            raise DocumentReadError("Document contains no extractable text", ReadFailure.EMPTY)

        logger.info(f"Extracted {len(text)} characters from {media_type} document")
        return text

    def _extract_pdf(self, document: bytes) -> str:
        pages = []
        try:
            with pdfplumber.open(BytesIO(document)) as pdf:
                for page in pdf.pages[:self.max_pages]:
                    pages.append(page.extract_text() or "")
        except Exception as e:
            message = repr(e).lower()
            if "password" in message or "encrypt" in message:
                raise DocumentReadError("PDF is encrypted", ReadFailure.ENCRYPTED) from e
            logger.error(f"pdfplumber could not read document: {e}")
            raise DocumentReadError(f"PDF could not be read: {e}", ReadFailure.CORRUPTED) from e
        return "\n\n".join(page for page in pages if page)

    @staticmethod
    def _decode_text(document: bytes) -> str:
        for encoding in ("utf-8-sig", "cp1252"):
            try:
                return document.decode(encoding)
            except UnicodeDecodeError:
                continue
        raise DocumentReadError("Text document has an unknown encoding", ReadFailure.CORRUPTED)


def prepare_image(document: bytes, media_type: str, max_edge: int = 2048) -> ImagePayload:
    """
    Decode, downscale and re-encode an image for a vision model.

    Args:
        document: Raw image bytes
        media_type: Declared media type
        max_edge: Longest edge after downscaling

    Returns:
        ImagePayload with base64 data

    Raises:
        UnsupportedMediaTypeError: ``media_type`` is not an image type
        DocumentReadError: The image cannot be decoded
    """
    if not is_image(media_type):
        raise UnsupportedMediaTypeError(f"Not an image media type: {media_type}")
    if not document:
        raise DocumentReadError("Image is empty", ReadFailure.EMPTY)

    try:
        image = Image.open(BytesIO(document))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DocumentReadError(f"Image could not be decoded: {e}", ReadFailure.CORRUPTED) from e

    if max(image.size) > max_edge:
        image.thumbnail((max_edge, max_edge))
        logger.debug(f"Downscaled image to {image.size[0]}x{image.size[1]}")

    if media_type.lower() == "image/jpeg":
        output_format, output_type = "JPEG", "image/jpeg"
        image = image.convert("RGB")
    else:
        output_format, output_type = "PNG", "image/png"
        if image.mode not in ("RGB", "RGBA", "L"):
            image = image.convert("RGBA")

    buffer = BytesIO()
    image.save(buffer, format=output_format)
    return ImagePayload(
        data_base64=base64.b64encode(buffer.getvalue()).decode(),
        media_type=output_type,
        width=image.size[0],
        height=image.size[1],
    )
